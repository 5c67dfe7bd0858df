"""Record types persisted by :class:`metering.store.MeterStore`."""
from __future__ import annotations

from dataclasses import asdict, dataclass
from datetime import datetime
from typing import Any, Dict

from .clock import isoformat, parse_iso8601


@dataclass
class User:
    id: int
    name: str
    email: str
    role: str
    created_at: datetime

    @classmethod
    def from_record(cls, record: Dict[str, Any]) -> "User":
        return cls(
            id=int(record["id"]),
            name=str(record.get("name") or ""),
            email=str(record.get("email") or ""),
            role=str(record.get("role") or "user"),
            created_at=parse_iso8601(record["created_at"]),
        )

    def to_record(self) -> Dict[str, Any]:
        record = asdict(self)
        record["created_at"] = isoformat(self.created_at)
        return record


@dataclass
class Meter:
    id: int
    user_id: int
    meter_number: str
    alias: str
    power_limit_va: int
    wattage: int
    token_balance: int
    cumulative_kwh: float
    last_update: datetime
    created_at: datetime
    version: int = 0

    @classmethod
    def from_record(cls, record: Dict[str, Any]) -> "Meter":
        return cls(
            id=int(record["id"]),
            user_id=int(record["user_id"]),
            meter_number=str(record.get("meter_number") or ""),
            alias=str(record.get("alias") or ""),
            power_limit_va=int(record.get("power_limit_va") or 0),
            wattage=int(record.get("wattage") or 0),
            token_balance=int(record.get("token_balance") or 0),
            cumulative_kwh=float(record.get("cumulative_kwh") or 0.0),
            last_update=parse_iso8601(record["last_update"]),
            created_at=parse_iso8601(record["created_at"]),
            version=int(record.get("version") or 0),
        )

    def to_record(self) -> Dict[str, Any]:
        record = asdict(self)
        record["last_update"] = isoformat(self.last_update)
        record["created_at"] = isoformat(self.created_at)
        return record


@dataclass
class UsageRecord:
    """Energy drawn by one meter over one local calendar day."""

    id: int
    meter_id: int
    day: str
    usage_date: datetime
    kwh_used: float

    @classmethod
    def from_record(cls, record: Dict[str, Any]) -> "UsageRecord":
        return cls(
            id=int(record["id"]),
            meter_id=int(record["meter_id"]),
            day=str(record["day"]),
            usage_date=parse_iso8601(record["usage_date"]),
            kwh_used=float(record.get("kwh_used") or 0.0),
        )

    def to_record(self) -> Dict[str, Any]:
        record = asdict(self)
        record["usage_date"] = isoformat(self.usage_date)
        return record


@dataclass
class TokenRecord:
    id: int
    meter_id: int
    token_code: str
    kwh_added: float
    price: int
    created_at: datetime

    @classmethod
    def from_record(cls, record: Dict[str, Any]) -> "TokenRecord":
        return cls(
            id=int(record["id"]),
            meter_id=int(record["meter_id"]),
            token_code=str(record["token_code"]),
            kwh_added=float(record.get("kwh_added") or 0.0),
            price=int(record.get("price") or 0),
            created_at=parse_iso8601(record["created_at"]),
        )

    def to_record(self) -> Dict[str, Any]:
        record = asdict(self)
        record["created_at"] = isoformat(self.created_at)
        return record
