"""CLI entrypoint for the prepaid meter backend."""
from __future__ import annotations

import logging
import sys
import threading

from .api import create_app, run_api
from .clock import SystemClock, resolve_timezone
from .config import settings
from .engine import AccrualConfig, AccrualEngine
from .service import MeterService
from .store import MeterStore
from .sweeper import SweepWorker
from .usage import UsageLedger


def configure_logging() -> None:
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s:%(lineno)d | %(message)s",
        stream=sys.stdout,
    )


def build_service() -> MeterService:
    store = MeterStore(settings.data_path)
    ledger = UsageLedger(store, tz=resolve_timezone(settings.timezone))
    engine = AccrualEngine(store, ledger, AccrualConfig.from_settings(settings), clock=SystemClock())
    return MeterService.from_settings(store, engine, ledger, settings)


def main() -> None:
    configure_logging()
    logger = logging.getLogger(__name__)

    logger.info("Starting prepaid meter backend")
    service = build_service()
    config = service.engine.config
    if settings.time_accel <= 0:
        logger.warning("METER_TIME_ACCEL=%s is not positive; using 1", settings.time_accel)
    logger.info(
        "Tariff %s per kWh, time acceleration x%s, data at %s",
        config.tariff_per_kwh,
        config.effective_accel,
        settings.data_path,
    )

    app = create_app(service, settings)
    api_thread = threading.Thread(
        target=run_api,
        name="meter-api",
        args=(app, settings),
        daemon=True,
    )
    api_thread.start()
    logger.info("HTTP API available at http://%s:%s", settings.api_host, settings.api_port)

    SweepWorker(service, settings.sweep_interval_seconds).run_forever()


if __name__ == "__main__":
    main()
