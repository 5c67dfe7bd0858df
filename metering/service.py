"""Meter operations exposed to the HTTP layer.

Every operation that reads or changes a meter settles its consumption first,
so balances and wattage decisions are always made against current state.
"""
from __future__ import annotations

import logging
import secrets
from dataclasses import dataclass
from datetime import datetime
from typing import Any, List, Optional, Tuple

from .clock import Clock
from .engine import AccrualEngine, SweepReport
from .errors import InvalidInputError, NotFoundError, StorageError
from .models import Meter, TokenRecord, UsageRecord, User
from .store import MeterStore
from .usage import UsageLedger

logger = logging.getLogger(__name__)

TOKEN_CODE_DIGITS = 20
TOKEN_CODE_ATTEMPTS = 5
RECENT_USERS_LIMIT = 5


def generate_token_code() -> str:
    """Twenty random digits shown in groups of four, e.g. ``0123-4567-...``."""
    digits = "".join(secrets.choice("0123456789") for _ in range(TOKEN_CODE_DIGITS))
    return "-".join(digits[i:i + 4] for i in range(0, TOKEN_CODE_DIGITS, 4))


@dataclass
class TopUpResult:
    token: TokenRecord
    meter: Meter

    @property
    def token_code(self) -> str:
        return self.token.token_code

    @property
    def kwh_added(self) -> float:
        return self.token.kwh_added

    @property
    def token_balance(self) -> int:
        return self.meter.token_balance


@dataclass
class DashboardView:
    user: User
    meter: Meter
    kwh_today: float


@dataclass
class MonitoringView:
    meter: Meter
    kwh_today: float
    history: List[UsageRecord]


@dataclass
class FleetSummary:
    total_users: int
    total_meters: int
    total_kwh: float
    total_token_price: int
    low_token_meters: int
    recent_users: List[Tuple[User, int]]


@dataclass
class FleetMonitoring:
    total_kwh_today: float
    active_users: int
    meters: List[Tuple[Meter, Optional[User]]]


class MeterService:
    def __init__(
        self,
        store: MeterStore,
        engine: AccrualEngine,
        ledger: UsageLedger,
        *,
        history_days: int = 5,
        low_balance_threshold: int = 10000,
    ) -> None:
        self.store = store
        self.engine = engine
        self.ledger = ledger
        self.history_days = history_days
        self.low_balance_threshold = low_balance_threshold

    @classmethod
    def from_settings(
        cls,
        store: MeterStore,
        engine: AccrualEngine,
        ledger: UsageLedger,
        settings: Any,
    ) -> "MeterService":
        return cls(
            store,
            engine,
            ledger,
            history_days=int(getattr(settings, "history_days", 5)),
            low_balance_threshold=int(getattr(settings, "low_balance_threshold", 10000)),
        )

    @property
    def clock(self) -> Clock:
        return self.engine.clock

    @property
    def tariff_per_kwh(self) -> int:
        return self.engine.config.tariff_per_kwh

    # ------------------------------------------------------------------
    # Users
    # ------------------------------------------------------------------
    def register_user(self, name: str, email: str) -> Tuple[User, Meter]:
        if not name or not name.strip():
            raise InvalidInputError("name is required")
        if not email or "@" not in email or email.strip().startswith("@") or email.strip().endswith("@"):
            raise InvalidInputError("email must include '@'")
        now = self.clock.now()
        with self.store.transaction():
            user = self.store.create_user(name=name, email=email, now=now)
            meter = self.store.create_meter(user_id=user.id, now=now)
        logger.info("Registered user %s with meter %s", user.id, meter.meter_number)
        return user, meter

    def _require_user(self, user_id: int) -> User:
        user = self.store.get_user(user_id)
        if user is None:
            raise NotFoundError("User not found")
        return user

    def _require_meter_for_user(self, user_id: int) -> Meter:
        self._require_user(user_id)
        meter = self.store.meter_for_user(user_id)
        if meter is None:
            raise NotFoundError("Meter not found")
        return meter

    def _settled(self, meter_id: int, now: Optional[datetime] = None) -> Meter:
        meter = self.engine.accrue(meter_id, now)
        if meter is None:
            raise NotFoundError("Meter not found")
        return meter

    # ------------------------------------------------------------------
    # Balance and load changes
    # ------------------------------------------------------------------
    def top_up(self, meter_id: int, amount: int) -> TopUpResult:
        """Settle consumption, then credit ``amount`` tokens and log the purchase."""
        if isinstance(amount, bool) or not isinstance(amount, int) or amount <= 0:
            raise InvalidInputError("amount must be a positive integer")
        with self.engine.locks.hold(meter_id):
            now = self.clock.now()
            self._settled(meter_id, now)
            kwh_added = amount / self.tariff_per_kwh
            with self.store.transaction():
                token = self.store.append_token(
                    meter_id=meter_id,
                    token_code=self._unused_token_code(),
                    kwh_added=kwh_added,
                    price=amount,
                    now=now,
                )
                current = self.store.get_meter(meter_id)
                if current is None:
                    raise NotFoundError("Meter not found")
                meter = self.store.update_meter(
                    meter_id,
                    expected_version=current.version,
                    token_balance=current.token_balance + amount,
                    last_update=max(now, current.last_update),
                )
        logger.info(
            "[meter %s] Topped up %s tokens (%.3f kWh); balance %s",
            meter_id,
            amount,
            kwh_added,
            meter.token_balance,
        )
        return TopUpResult(token=token, meter=meter)

    def top_up_for_user(self, user_id: int, amount: int) -> TopUpResult:
        if isinstance(amount, bool) or not isinstance(amount, int) or amount <= 0:
            raise InvalidInputError("amount must be a positive integer")
        meter = self._require_meter_for_user(user_id)
        return self.top_up(meter.id, amount)

    def _unused_token_code(self) -> str:
        for _ in range(TOKEN_CODE_ATTEMPTS):
            code = generate_token_code()
            if not self.store.has_token_code(code):
                return code
        raise StorageError("Could not allocate a unique token code")

    def set_wattage(self, meter_id: int, watt: int) -> Meter:
        """Settle consumption at the old load, then switch to ``watt``.

        A meter with no balance still records the requested load; the next
        accrual cuts it off again.
        """
        if isinstance(watt, bool) or not isinstance(watt, int) or watt < 0:
            raise InvalidInputError("watt must be a non-negative integer")
        with self.engine.locks.hold(meter_id):
            now = self.clock.now()
            settled = self._settled(meter_id, now)
            meter = self.store.update_meter(
                meter_id,
                expected_version=settled.version,
                wattage=watt,
                last_update=max(now, settled.last_update),
            )
        logger.info("[meter %s] Load set to %s W (balance %s)", meter_id, watt, meter.token_balance)
        return meter

    def set_wattage_for_user(self, user_id: int, watt: int) -> Meter:
        if isinstance(watt, bool) or not isinstance(watt, int) or watt < 0:
            raise InvalidInputError("watt must be a non-negative integer")
        meter = self._require_meter_for_user(user_id)
        return self.set_wattage(meter.id, watt)

    # ------------------------------------------------------------------
    # User views
    # ------------------------------------------------------------------
    def user_dashboard(self, user_id: int) -> DashboardView:
        user = self._require_user(user_id)
        meter = self.store.meter_for_user(user_id)
        if meter is None:
            raise NotFoundError("User or meter not found")
        now = self.clock.now()
        meter = self._settled(meter.id, now)
        return DashboardView(user=user, meter=meter, kwh_today=self.ledger.today_total(meter.id, now))

    def user_monitoring(self, user_id: int) -> MonitoringView:
        self._require_user(user_id)
        now = self.clock.now()
        meter, created = self.store.meter_for_user_or_create(user_id, now)
        if created:
            logger.info("Created meter %s for user %s on first monitoring request", meter.meter_number, user_id)
        meter = self._settled(meter.id, now)
        return MonitoringView(
            meter=meter,
            kwh_today=self.ledger.today_total(meter.id, now),
            history=self.ledger.recent(meter.id, self.history_days),
        )

    def token_history(self, meter_id: int) -> List[TokenRecord]:
        if self.store.get_meter(meter_id) is None:
            raise NotFoundError("Meter not found")
        return list(reversed(self.store.list_tokens(meter_id=meter_id)))

    # ------------------------------------------------------------------
    # Fleet views
    # ------------------------------------------------------------------
    def sweep(self, now: Optional[datetime] = None) -> SweepReport:
        report = self.engine.accrue_all(now)
        if report.failures:
            logger.warning("Sweep finished with %s failed meters: %s", report.failed, sorted(report.failures))
        return report

    def admin_dashboard(self) -> FleetSummary:
        self.sweep()
        users = [user for user in self.store.list_users() if user.role == "user"]
        meters = self.store.list_meters()
        tokens = self.store.list_tokens()

        recent = sorted(users, key=lambda user: (user.created_at, user.id), reverse=True)[:RECENT_USERS_LIMIT]
        recent_users: List[Tuple[User, int]] = []
        for user in recent:
            meter = self.store.meter_for_user(user.id)
            recent_users.append((user, meter.token_balance if meter else 0))

        return FleetSummary(
            total_users=len(users),
            total_meters=len(meters),
            total_kwh=sum(meter.cumulative_kwh for meter in meters),
            total_token_price=sum(token.price for token in tokens),
            low_token_meters=sum(1 for meter in meters if meter.token_balance < self.low_balance_threshold),
            recent_users=recent_users,
        )

    def admin_monitoring(self) -> FleetMonitoring:
        now = self.clock.now()
        self.sweep(now)
        meters = self.store.list_meters()
        return FleetMonitoring(
            total_kwh_today=self.ledger.fleet_total_for_day(now),
            active_users=len(meters),
            meters=[(meter, self.store.get_user(meter.user_id)) for meter in meters],
        )
