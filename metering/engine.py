"""Energy accrual: turn elapsed time at a meter's wattage into spent tokens."""
from __future__ import annotations

import logging
import math
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from .clock import Clock, SystemClock
from .errors import ConflictError
from .locks import MeterLocks
from .models import Meter
from .store import MeterStore
from .usage import UsageLedger

logger = logging.getLogger(__name__)

SECONDS_PER_HOUR = 3600.0
WATTS_PER_KILOWATT = 1000.0


@dataclass(frozen=True)
class AccrualConfig:
    """Process-wide accrual parameters, fixed at startup."""

    tariff_per_kwh: int = 1000
    time_accel: float = 1.0
    max_retries: int = 3

    def __post_init__(self) -> None:
        if self.tariff_per_kwh <= 0:
            raise ValueError("tariff_per_kwh must be positive")
        if self.max_retries < 0:
            raise ValueError("max_retries must not be negative")

    @property
    def effective_accel(self) -> float:
        # A zero or negative multiplier would freeze or rewind consumption.
        return self.time_accel if self.time_accel > 0 else 1.0

    @classmethod
    def from_settings(cls, settings: Any) -> "AccrualConfig":
        return cls(
            tariff_per_kwh=int(settings.tariff_per_kwh),
            time_accel=float(settings.time_accel),
            max_retries=int(getattr(settings, "accrual_max_retries", 3)),
        )


@dataclass
class SweepReport:
    processed: int = 0
    skipped: int = 0
    failures: Dict[int, str] = field(default_factory=dict)

    @property
    def failed(self) -> int:
        return len(self.failures)


class AccrualEngine:
    def __init__(
        self,
        store: MeterStore,
        ledger: UsageLedger,
        config: AccrualConfig,
        *,
        clock: Optional[Clock] = None,
        locks: Optional[MeterLocks] = None,
    ) -> None:
        self.store = store
        self.ledger = ledger
        self.config = config
        self.clock: Clock = clock or SystemClock()
        self.locks = locks or MeterLocks()

    def accrue(self, meter_id: int, now: Optional[datetime] = None) -> Optional[Meter]:
        """Bring a meter's balance, energy and ledger up to ``now``.

        Returns the updated meter, or None when the meter does not exist.
        Calling again with the same ``now`` only re-stamps ``last_update``.
        """
        with self.locks.hold(meter_id):
            moment = now or self.clock.now()
            if moment.tzinfo is None:
                moment = moment.replace(tzinfo=timezone.utc)
            attempt = 0
            while True:
                try:
                    return self._accrue_once(meter_id, moment)
                except ConflictError as exc:
                    attempt += 1
                    if attempt > self.config.max_retries:
                        logger.error("[meter %s] Accrual gave up after %s conflicts", meter_id, attempt)
                        raise
                    logger.warning("[meter %s] Accrual conflict, retrying (%s/%s): %s",
                                   meter_id, attempt, self.config.max_retries, exc)

    def accrue_all(self, now: Optional[datetime] = None) -> SweepReport:
        """Accrue every meter in turn. One meter failing never stops the rest."""
        report = SweepReport()
        for meter_id in self.store.meter_ids():
            try:
                meter = self.accrue(meter_id, now)
            except Exception as exc:  # noqa: BLE001
                logger.exception("[meter %s] Accrual failed during sweep: %s", meter_id, exc)
                report.failures[meter_id] = str(exc)
                continue
            if meter is None:
                report.skipped += 1
            else:
                report.processed += 1
        logger.debug(
            "Sweep finished: processed=%s skipped=%s failed=%s",
            report.processed,
            report.skipped,
            report.failed,
        )
        return report

    def _accrue_once(self, meter_id: int, now: datetime) -> Optional[Meter]:
        meter = self.store.get_meter(meter_id)
        if meter is None:
            logger.debug("[meter %s] Unknown meter; skipping accrual", meter_id)
            return None

        tariff = self.config.tariff_per_kwh
        elapsed_hours = (
            (now - meter.last_update).total_seconds() / SECONDS_PER_HOUR * self.config.effective_accel
        )
        # last_update never moves backwards.
        stamp = max(now, meter.last_update)

        if elapsed_hours <= 0 or meter.wattage <= 0 or meter.token_balance <= 0:
            changes: Dict[str, Any] = {"last_update": stamp}
            if meter.token_balance <= 0:
                changes["wattage"] = 0
                if meter.wattage > 0:
                    logger.info("[meter %s] No balance left; cutting off %s W load", meter.id, meter.wattage)
            return self.store.update_meter(meter.id, expected_version=meter.version, **changes)

        ideal_kwh = meter.wattage * elapsed_hours / WATTS_PER_KILOWATT
        affordable_kwh = meter.token_balance / tariff
        actual_kwh = min(ideal_kwh, affordable_kwh)

        if actual_kwh <= 0:
            logger.info("[meter %s] Balance exhausted; cutting off", meter.id)
            return self.store.update_meter(
                meter.id,
                expected_version=meter.version,
                wattage=0,
                token_balance=0,
                last_update=stamp,
            )

        if ideal_kwh >= affordable_kwh:
            # Capped at what the balance buys: the whole balance is spent.
            cost = meter.token_balance
        else:
            cost = min(math.floor(actual_kwh * tariff), meter.token_balance)
        balance = meter.token_balance - cost
        changes = {
            "cumulative_kwh": meter.cumulative_kwh + actual_kwh,
            "token_balance": balance,
            "last_update": stamp,
        }
        if balance <= 0:
            changes["wattage"] = 0

        with self.store.transaction():
            self.ledger.record(meter.id, now, actual_kwh)
            updated = self.store.update_meter(meter.id, expected_version=meter.version, **changes)

        if balance <= 0:
            logger.info("[meter %s] Balance depleted after %.6f kWh; load cut off", meter.id, actual_kwh)
        logger.debug(
            "[meter %s] Accrued %.6f kWh (ideal %.6f) for %s tokens; balance %s",
            meter.id,
            actual_kwh,
            ideal_kwh,
            cost,
            balance,
        )
        return updated
