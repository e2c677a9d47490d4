import signal

from loguru import logger

from station_reconciler.clients.telemetry import TelemetryClient
from station_reconciler.config.logging import setup_logging
from station_reconciler.config.settings import Settings, validate_settings
from station_reconciler.db.database import ensure_schema, get_engine, get_sessionmaker
from station_reconciler.db.ledger import LedgerStore
from station_reconciler.monitoring.metrics import init_app_info, start_metrics_server
from station_reconciler.services.reconciliation import (
    ReconciliationEngine,
    ReconciliationPolicy,
)
from station_reconciler.services.scheduler import ReconciliationScheduler

__version__ = "0.1.0"


def build_scheduler(settings: Settings) -> ReconciliationScheduler:
    engine = get_engine(settings.database_url, settings.ledger_timeout_sec)
    ensure_schema(engine)

    ledger = LedgerStore(get_sessionmaker(engine), settings)
    telemetry = TelemetryClient(settings)
    reconciliation = ReconciliationEngine(ReconciliationPolicy.from_settings(settings))
    return ReconciliationScheduler(settings, ledger, telemetry, reconciliation)


def main():
    settings = validate_settings(Settings())
    setup_logging(settings.log_level)

    if settings.metrics_port:
        start_metrics_server(settings.metrics_port)
        logger.info(f"Metrics server started on port {settings.metrics_port}")
    init_app_info(__version__)

    logger.info(
        f"Starting station reconciler: interval={settings.reconcile_interval_sec}s, "
        f"grace={settings.grace_period_sec}s, "
        f"concurrency={settings.fetch_concurrency}, "
        f"auto_close_overdue={settings.auto_close_overdue}"
    )

    scheduler = build_scheduler(settings)

    def _stop(signum, _frame):
        logger.info(f"Received signal {signum}")
        scheduler.shutdown()

    signal.signal(signal.SIGINT, _stop)
    signal.signal(signal.SIGTERM, _stop)

    scheduler.run_forever()


if __name__ == "__main__":
    main()
