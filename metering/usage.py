"""Per-meter, per-day energy ledger."""
from __future__ import annotations

from datetime import datetime, tzinfo
from typing import List, Optional

from .clock import local_day
from .models import UsageRecord
from .store import MeterStore


class UsageLedger:
    """Day-bucketed view over the store's usage records.

    A day is the local calendar date of a timestamp in ``tz`` (the process'
    local zone when ``tz`` is None), spanning 00:00:00.000 to 23:59:59.999.
    """

    def __init__(self, store: MeterStore, tz: Optional[tzinfo] = None) -> None:
        self.store = store
        self.tz = tz

    def day_key(self, as_of: datetime) -> str:
        return local_day(as_of, self.tz).isoformat()

    def find_or_create_today_record(self, meter_id: int, as_of: datetime) -> UsageRecord:
        """Return the record for ``as_of``'s day, creating an empty one if needed.

        Lookup and insert run under the store lock, so two callers racing on
        the first accrual of a day end up sharing one record.
        """
        day = self.day_key(as_of)
        with self.store.transaction():
            existing = self.store.find_usage(meter_id, day)
            if existing is not None:
                return existing
            return self.store.create_usage(meter_id=meter_id, day=day, usage_date=as_of, kwh_used=0.0)

    def increment(self, record_id: int, delta: float) -> UsageRecord:
        return self.store.increment_usage(record_id, delta)

    def record(self, meter_id: int, as_of: datetime, kwh: float) -> UsageRecord:
        """Add ``kwh`` to the meter's bucket for ``as_of``'s day."""
        with self.store.transaction():
            today = self.find_or_create_today_record(meter_id, as_of)
            return self.increment(today.id, kwh)

    def today_total(self, meter_id: int, as_of: datetime) -> float:
        record = self.store.find_usage(meter_id, self.day_key(as_of))
        return record.kwh_used if record else 0.0

    def recent(self, meter_id: int, days: int) -> List[UsageRecord]:
        """The ``days`` most recent buckets, oldest first."""
        if days <= 0:
            return []
        return self.store.list_usage(meter_id=meter_id)[-days:]

    def fleet_total_for_day(self, as_of: datetime) -> float:
        return sum(record.kwh_used for record in self.store.list_usage(day=self.day_key(as_of)))

    def total_for_meter(self, meter_id: int) -> float:
        return sum(record.kwh_used for record in self.store.list_usage(meter_id=meter_id))
