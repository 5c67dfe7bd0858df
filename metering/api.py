"""HTTP API for meter owners and fleet administrators."""
from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional

from fastapi import Depends, FastAPI, HTTPException, Query, Request, status
from fastapi.responses import JSONResponse
from pydantic import AliasChoices, BaseModel, Field, field_validator

from .clock import isoformat
from .config import MeterSettings
from .errors import MeterError
from .models import Meter, TokenRecord, UsageRecord, User
from .service import MeterService

logger = logging.getLogger(__name__)


class RegistrationPayload(BaseModel):
    name: str = Field(min_length=1, max_length=128)
    email: str = Field(min_length=3, max_length=255)

    @field_validator("email")
    @classmethod
    def validate_email(cls, value: str) -> str:
        candidate = value.strip()
        if "@" not in candidate or candidate.startswith("@") or candidate.endswith("@"):
            raise ValueError("email must include '@'")
        return candidate


class BuyTokenPayload(BaseModel):
    user_id: int = Field(gt=0, validation_alias=AliasChoices("user_id", "userId"))
    amount: int = Field(gt=0)


class SetWattPayload(BaseModel):
    user_id: int = Field(gt=0, validation_alias=AliasChoices("user_id", "userId"))
    watt: int = Field(ge=0)


class AdminTopUpPayload(BaseModel):
    meter_id: int = Field(gt=0, validation_alias=AliasChoices("meter_id", "meterId"))
    amount: int = Field(gt=0)


class UserRecord(BaseModel):
    id: int
    name: str
    email: str
    role: str


class MeterRecord(BaseModel):
    id: int
    user_id: int
    meter_number: str
    alias: str
    power_limit_va: int
    wattage: int
    token_balance: int
    cumulative_kwh: float
    last_update: str


class UsagePoint(BaseModel):
    day: str
    date: str
    kwh_used: float


class TokenHistoryRecord(BaseModel):
    id: int
    meter_id: int
    token_code: str
    kwh_added: float
    price: int
    created_at: str


class RegistrationResponse(BaseModel):
    user: UserRecord
    meter: MeterRecord
    message: str


class DashboardResponse(BaseModel):
    user: UserRecord
    meter: MeterRecord
    kwh_today: float


class MonitoringResponse(BaseModel):
    meter: MeterRecord
    kwh_today: float
    history: List[UsagePoint]


class TopUpResponse(BaseModel):
    token_code: str
    kwh_added: float
    meter: MeterRecord
    message: str


class SetWattResponse(BaseModel):
    meter: MeterRecord
    message: str


class RecentUser(BaseModel):
    id: int
    name: str
    email: str
    token_balance: int


class AdminDashboardResponse(BaseModel):
    total_users: int
    total_meters: int
    total_kwh: float
    total_token_price: int
    low_token_meters: int
    recent_users: List[RecentUser]


class MonitoringEntry(BaseModel):
    meter_id: int
    user_id: int
    name: Optional[str]
    token_balance: int
    cumulative_kwh: float
    wattage: int


class AdminMonitoringResponse(BaseModel):
    total_kwh_today: float
    active_users: int
    meters: List[MonitoringEntry]


class SweepResponse(BaseModel):
    processed: int
    skipped: int
    failed: int
    failures: Dict[str, str]


class TokenHistoryResponse(BaseModel):
    meter_id: int
    tokens: List[TokenHistoryRecord]


def _user_model(user: User) -> UserRecord:
    return UserRecord(id=user.id, name=user.name, email=user.email, role=user.role)


def _meter_model(meter: Meter) -> MeterRecord:
    return MeterRecord(
        id=meter.id,
        user_id=meter.user_id,
        meter_number=meter.meter_number,
        alias=meter.alias,
        power_limit_va=meter.power_limit_va,
        wattage=meter.wattage,
        token_balance=meter.token_balance,
        cumulative_kwh=meter.cumulative_kwh,
        last_update=isoformat(meter.last_update),
    )


def _usage_model(record: UsageRecord) -> UsagePoint:
    return UsagePoint(day=record.day, date=isoformat(record.usage_date), kwh_used=record.kwh_used)


def _token_model(token: TokenRecord) -> TokenHistoryRecord:
    return TokenHistoryRecord(
        id=token.id,
        meter_id=token.meter_id,
        token_code=token.token_code,
        kwh_added=token.kwh_added,
        price=token.price,
        created_at=isoformat(token.created_at),
    )


def create_app(service: MeterService, settings: MeterSettings) -> FastAPI:
    app = FastAPI(title="Prepaid Meter", version="1.0.0")

    def _provided_token(request: Request) -> Optional[str]:
        return request.headers.get("X-Admin-Token")

    async def require_admin(request: Request) -> None:
        token = settings.api_admin_token
        if not token:
            return
        provided = _provided_token(request)
        if provided != token:
            raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Admin token required")

    @app.exception_handler(MeterError)
    async def meter_error_handler(request: Request, exc: MeterError) -> JSONResponse:
        if exc.status_code >= 500:
            logger.error("%s %s failed: %s", request.method, request.url.path, exc)
        return JSONResponse(status_code=exc.status_code, content={"detail": str(exc)})

    @app.post("/api/users", response_model=RegistrationResponse, status_code=status.HTTP_201_CREATED)
    def register_user(payload: RegistrationPayload) -> RegistrationResponse:
        user, meter = service.register_user(payload.name, payload.email)
        return RegistrationResponse(
            user=_user_model(user),
            meter=_meter_model(meter),
            message="Registered",
        )

    def resolve_user_id(
        user_id: Optional[int] = Query(None, gt=0),
        camel_user_id: Optional[int] = Query(None, gt=0, alias="userId"),
    ) -> int:
        resolved = user_id if user_id is not None else camel_user_id
        if resolved is None:
            raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail="user_id is required")
        return resolved

    @app.get("/api/user/dashboard", response_model=DashboardResponse)
    def user_dashboard(user_id: int = Depends(resolve_user_id)) -> DashboardResponse:
        view = service.user_dashboard(user_id)
        return DashboardResponse(
            user=_user_model(view.user),
            meter=_meter_model(view.meter),
            kwh_today=view.kwh_today,
        )

    @app.get("/api/user/monitoring", response_model=MonitoringResponse)
    def user_monitoring(user_id: int = Depends(resolve_user_id)) -> MonitoringResponse:
        view = service.user_monitoring(user_id)
        return MonitoringResponse(
            meter=_meter_model(view.meter),
            kwh_today=view.kwh_today,
            history=[_usage_model(record) for record in view.history],
        )

    @app.post("/api/user/buy-token", response_model=TopUpResponse)
    def buy_token(payload: BuyTokenPayload) -> TopUpResponse:
        result = service.top_up_for_user(payload.user_id, payload.amount)
        return TopUpResponse(
            token_code=result.token_code,
            kwh_added=result.kwh_added,
            meter=_meter_model(result.meter),
            message="Token purchased",
        )

    @app.post("/api/user/set-watt", response_model=SetWattResponse)
    def set_watt(payload: SetWattPayload) -> SetWattResponse:
        meter = service.set_wattage_for_user(payload.user_id, payload.watt)
        return SetWattResponse(meter=_meter_model(meter), message="Load updated")

    @app.get("/api/admin/dashboard", response_model=AdminDashboardResponse)
    def admin_dashboard(_: Any = Depends(require_admin)) -> AdminDashboardResponse:
        summary = service.admin_dashboard()
        return AdminDashboardResponse(
            total_users=summary.total_users,
            total_meters=summary.total_meters,
            total_kwh=summary.total_kwh,
            total_token_price=summary.total_token_price,
            low_token_meters=summary.low_token_meters,
            recent_users=[
                RecentUser(id=user.id, name=user.name, email=user.email, token_balance=balance)
                for user, balance in summary.recent_users
            ],
        )

    @app.get("/api/admin/monitoring", response_model=AdminMonitoringResponse)
    def admin_monitoring(_: Any = Depends(require_admin)) -> AdminMonitoringResponse:
        fleet = service.admin_monitoring()
        return AdminMonitoringResponse(
            total_kwh_today=fleet.total_kwh_today,
            active_users=fleet.active_users,
            meters=[
                MonitoringEntry(
                    meter_id=meter.id,
                    user_id=meter.user_id,
                    name=user.name if user else None,
                    token_balance=meter.token_balance,
                    cumulative_kwh=meter.cumulative_kwh,
                    wattage=meter.wattage,
                )
                for meter, user in fleet.meters
            ],
        )

    @app.post("/api/admin/top-up", response_model=TopUpResponse)
    def admin_top_up(payload: AdminTopUpPayload, _: Any = Depends(require_admin)) -> TopUpResponse:
        result = service.top_up(payload.meter_id, payload.amount)
        return TopUpResponse(
            token_code=result.token_code,
            kwh_added=result.kwh_added,
            meter=_meter_model(result.meter),
            message="Top-up applied",
        )

    @app.post("/api/admin/sweep", response_model=SweepResponse)
    def admin_sweep(_: Any = Depends(require_admin)) -> SweepResponse:
        report = service.sweep()
        return SweepResponse(
            processed=report.processed,
            skipped=report.skipped,
            failed=report.failed,
            failures={str(meter_id): reason for meter_id, reason in report.failures.items()},
        )

    @app.get("/api/admin/meters/{meter_id}/tokens", response_model=TokenHistoryResponse)
    def token_history(meter_id: int, _: Any = Depends(require_admin)) -> TokenHistoryResponse:
        tokens = service.token_history(meter_id)
        return TokenHistoryResponse(meter_id=meter_id, tokens=[_token_model(token) for token in tokens])

    return app


def run_api(app: FastAPI, settings: MeterSettings) -> None:
    """Run the FastAPI app using uvicorn."""
    import uvicorn  # Imported lazily to avoid mandatory dependency in tests

    config = uvicorn.Config(
        app,
        host=settings.api_host,
        port=settings.api_port,
        log_level="info",
        root_path=settings.api_root_path,
    )
    server = uvicorn.Server(config)
    server.install_signal_handlers = False
    server.run()


__all__ = ["create_app", "run_api"]
