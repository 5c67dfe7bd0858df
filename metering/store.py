"""JSON-backed store for users, meters, daily usage and token purchases.

Everything lives in a single document so that a meter update and the usage
record written alongside it reach disk in one ``Path.replace``. Writers group
their changes with :meth:`MeterStore.transaction`; if anything inside the
block raises (including the final persist) the in-memory document is rolled
back to the snapshot taken on entry.
"""
from __future__ import annotations

import copy
import json
import logging
import threading
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional, Tuple

from .clock import isoformat
from .errors import ConflictError, NotFoundError, StorageError
from .models import Meter, TokenRecord, UsageRecord, User

logger = logging.getLogger(__name__)

_COLLECTIONS = ("users", "meters", "usage", "tokens")
_MUTABLE_METER_FIELDS = {"wattage", "token_balance", "cumulative_kwh", "last_update", "alias"}


def _empty_document() -> Dict[str, Any]:
    document: Dict[str, Any] = {name: {} for name in _COLLECTIONS}
    document["next_ids"] = {name: 1 for name in _COLLECTIONS}
    return document


class MeterStore:
    def __init__(self, path: Path) -> None:
        self.path = path
        self._lock = threading.RLock()
        self._depth = 0
        self._data: Dict[str, Any] = _empty_document()
        self._load()

    # ------------------------------------------------------------------
    # Persistence helpers
    # ------------------------------------------------------------------
    def _load(self) -> None:
        if not self.path.exists():
            self.path.parent.mkdir(parents=True, exist_ok=True)
            return
        with self.path.open("r", encoding="utf-8") as handle:
            try:
                raw = json.load(handle)
            except json.JSONDecodeError:
                logger.error("Meter store %s is not valid JSON; starting empty", self.path)
                raw = {}
        document = _empty_document()
        if isinstance(raw, dict):
            for name in _COLLECTIONS:
                records = raw.get(name)
                if isinstance(records, dict):
                    document[name] = {
                        str(key): dict(value) for key, value in records.items() if isinstance(value, dict)
                    }
            next_ids = raw.get("next_ids")
            if isinstance(next_ids, dict):
                for name in _COLLECTIONS:
                    try:
                        document["next_ids"][name] = max(int(next_ids.get(name, 1)), 1)
                    except (TypeError, ValueError):
                        continue
        for name in _COLLECTIONS:
            highest = max((int(key) for key in document[name]), default=0)
            document["next_ids"][name] = max(document["next_ids"][name], highest + 1)
        self._data = document

    def _persist(self) -> None:
        tmp_path = self.path.with_suffix(".tmp")
        try:
            with tmp_path.open("w", encoding="utf-8") as handle:
                json.dump(self._data, handle, indent=2, sort_keys=True)
            tmp_path.replace(self.path)
        except (OSError, TypeError, ValueError) as exc:
            raise StorageError(f"Failed to persist meter store: {exc}") from exc

    @contextmanager
    def transaction(self) -> Iterator["MeterStore"]:
        """Group writes so they commit together or not at all.

        Nested blocks join the outermost one; only the outermost block
        persists or rolls back.
        """
        with self._lock:
            outermost = self._depth == 0
            snapshot = copy.deepcopy(self._data) if outermost else None
            self._depth += 1
            try:
                yield self
                if outermost:
                    self._persist()
            except BaseException:
                if outermost:
                    self._data = snapshot
                raise
            finally:
                self._depth -= 1

    def _next_id(self, collection: str) -> int:
        value = int(self._data["next_ids"][collection])
        self._data["next_ids"][collection] = value + 1
        return value

    # ------------------------------------------------------------------
    # Users
    # ------------------------------------------------------------------
    def create_user(self, *, name: str, email: str, now: datetime, role: str = "user") -> User:
        email_norm = email.strip().lower()
        with self.transaction():
            for record in self._data["users"].values():
                if str(record.get("email", "")).lower() == email_norm:
                    raise ConflictError("Email already registered")
            user = User(id=self._next_id("users"), name=name.strip(), email=email_norm, role=role, created_at=now)
            self._data["users"][str(user.id)] = user.to_record()
        return user

    def get_user(self, user_id: int) -> Optional[User]:
        with self._lock:
            record = self._data["users"].get(str(user_id))
            return User.from_record(record) if record else None

    def list_users(self) -> List[User]:
        with self._lock:
            return [User.from_record(record) for record in self._data["users"].values()]

    # ------------------------------------------------------------------
    # Meters
    # ------------------------------------------------------------------
    def create_meter(
        self,
        *,
        user_id: int,
        now: datetime,
        alias: str = "Main meter",
        power_limit_va: int = 1300,
    ) -> Meter:
        with self.transaction():
            if str(user_id) not in self._data["users"]:
                raise NotFoundError("User not found")
            meter = Meter(
                id=self._next_id("meters"),
                user_id=user_id,
                meter_number=f"MT-{user_id:06d}",
                alias=alias,
                power_limit_va=power_limit_va,
                wattage=0,
                token_balance=0,
                cumulative_kwh=0.0,
                last_update=now,
                created_at=now,
                version=0,
            )
            self._data["meters"][str(meter.id)] = meter.to_record()
        return meter

    def get_meter(self, meter_id: int) -> Optional[Meter]:
        with self._lock:
            record = self._data["meters"].get(str(meter_id))
            return Meter.from_record(record) if record else None

    def meter_for_user(self, user_id: int) -> Optional[Meter]:
        with self._lock:
            owned = [record for record in self._data["meters"].values() if int(record["user_id"]) == user_id]
            if not owned:
                return None
            return Meter.from_record(min(owned, key=lambda record: int(record["id"])))

    def meter_for_user_or_create(self, user_id: int, now: datetime) -> Tuple[Meter, bool]:
        """Return the user's meter, creating one when they have none.

        Lookup and insert share one transaction, so concurrent callers never
        create a second meter for the same user.
        """
        with self.transaction():
            meter = self.meter_for_user(user_id)
            if meter is not None:
                return meter, False
            return self.create_meter(user_id=user_id, now=now), True

    def list_meters(self) -> List[Meter]:
        with self._lock:
            meters = [Meter.from_record(record) for record in self._data["meters"].values()]
        meters.sort(key=lambda meter: meter.id)
        return meters

    def meter_ids(self) -> List[int]:
        with self._lock:
            return sorted(int(key) for key in self._data["meters"])

    def update_meter(self, meter_id: int, *, expected_version: int, **changes: Any) -> Meter:
        """Compare-and-swap write of mutable meter fields.

        Raises :class:`ConflictError` when the stored version differs from
        ``expected_version``.
        """
        unknown = set(changes) - _MUTABLE_METER_FIELDS
        if unknown:
            raise ValueError(f"Unsupported meter fields: {sorted(unknown)}")
        with self.transaction():
            record = self._data["meters"].get(str(meter_id))
            if record is None:
                raise NotFoundError("Meter not found")
            current_version = int(record.get("version") or 0)
            if current_version != expected_version:
                raise ConflictError(
                    f"Meter {meter_id} changed concurrently (expected v{expected_version}, found v{current_version})"
                )
            updated = dict(record)
            for key, value in changes.items():
                updated[key] = isoformat(value) if isinstance(value, datetime) else value
            updated["version"] = current_version + 1
            self._data["meters"][str(meter_id)] = updated
            return Meter.from_record(updated)

    # ------------------------------------------------------------------
    # Usage history
    # ------------------------------------------------------------------
    def find_usage(self, meter_id: int, day: str) -> Optional[UsageRecord]:
        with self._lock:
            for record in self._data["usage"].values():
                if int(record["meter_id"]) == meter_id and record.get("day") == day:
                    return UsageRecord.from_record(record)
            return None

    def create_usage(self, *, meter_id: int, day: str, usage_date: datetime, kwh_used: float) -> UsageRecord:
        with self.transaction():
            if self.find_usage(meter_id, day) is not None:
                raise ConflictError(f"Usage record for meter {meter_id} on {day} already exists")
            usage = UsageRecord(
                id=self._next_id("usage"),
                meter_id=meter_id,
                day=day,
                usage_date=usage_date,
                kwh_used=kwh_used,
            )
            self._data["usage"][str(usage.id)] = usage.to_record()
        return usage

    def increment_usage(self, record_id: int, delta: float) -> UsageRecord:
        with self.transaction():
            record = self._data["usage"].get(str(record_id))
            if record is None:
                raise NotFoundError("Usage record not found")
            updated = dict(record)
            updated["kwh_used"] = float(record.get("kwh_used") or 0.0) + delta
            self._data["usage"][str(record_id)] = updated
            return UsageRecord.from_record(updated)

    def list_usage(self, *, meter_id: Optional[int] = None, day: Optional[str] = None) -> List[UsageRecord]:
        with self._lock:
            records = [
                UsageRecord.from_record(record)
                for record in self._data["usage"].values()
                if (meter_id is None or int(record["meter_id"]) == meter_id)
                and (day is None or record.get("day") == day)
            ]
        records.sort(key=lambda usage: (usage.day, usage.id))
        return records

    # ------------------------------------------------------------------
    # Token history
    # ------------------------------------------------------------------
    def append_token(
        self,
        *,
        meter_id: int,
        token_code: str,
        kwh_added: float,
        price: int,
        now: datetime,
    ) -> TokenRecord:
        with self.transaction():
            if self.has_token_code(token_code):
                raise ConflictError("Token code already issued")
            token = TokenRecord(
                id=self._next_id("tokens"),
                meter_id=meter_id,
                token_code=token_code,
                kwh_added=kwh_added,
                price=price,
                created_at=now,
            )
            self._data["tokens"][str(token.id)] = token.to_record()
        return token

    def has_token_code(self, token_code: str) -> bool:
        with self._lock:
            return any(record.get("token_code") == token_code for record in self._data["tokens"].values())

    def list_tokens(self, *, meter_id: Optional[int] = None) -> List[TokenRecord]:
        with self._lock:
            tokens = [
                TokenRecord.from_record(record)
                for record in self._data["tokens"].values()
                if meter_id is None or int(record["meter_id"]) == meter_id
            ]
        tokens.sort(key=lambda token: token.id)
        return tokens
