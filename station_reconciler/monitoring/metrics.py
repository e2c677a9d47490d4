from prometheus_client import Counter, Gauge, Histogram, Info, start_http_server

# Business metrics - reconciliation specific
reconciliation_passes_total = Counter(
    "station_reconciler_passes_total",
    "Total number of reconciliation passes",
    ["service", "outcome"],  # outcome=completed/skipped/aborted/failed
)

reconciliation_pass_duration = Histogram(
    "station_reconciler_pass_duration_seconds",
    "Duration of one reconciliation pass",
    ["service"],
    buckets=[0.5, 1.0, 2.5, 5.0, 10.0, 30.0, 60.0, 120.0],
)

stations_by_status = Gauge(
    "station_reconciler_stations",
    "Stations per snapshot status in the last pass",
    ["service", "status"],  # status=Online/Degraded/Offline
)

rental_closures_total = Counter(
    "station_reconciler_rental_closures_total",
    "Rental closures decided by the engine",
    ["service", "reason", "outcome"],  # outcome=applied/noop/failed/deferred
)

data_anomalies_total = Counter(
    "station_reconciler_data_anomalies_total",
    "Data anomalies detected during reconciliation",
    ["service", "kind"],
)

open_rentals_gauge = Gauge(
    "station_reconciler_open_rentals",
    "Open rentals after the last pass",
    ["service", "state"],  # state=open/overdue
)

# Technical metrics
external_api_requests = Counter(
    "station_reconciler_external_api_requests_total",
    "Total external API requests",
    ["service", "api_service", "endpoint", "status"],
)

external_api_duration = Histogram(
    "station_reconciler_external_api_duration_seconds",
    "External API request duration",
    ["service", "api_service", "endpoint"],
    buckets=[0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0],
)

circuit_breaker_state = Gauge(
    "station_reconciler_circuit_breaker_state",
    "Circuit breaker state (0=closed, 1=open, 2=half_open)",
    ["service", "circuit_name"],
)

circuit_breaker_failures = Counter(
    "station_reconciler_circuit_breaker_failures_total",
    "Total circuit breaker failures",
    ["service", "circuit_name"],
)

database_query_duration = Histogram(
    "station_reconciler_database_query_duration_seconds",
    "Ledger query duration",
    ["service", "operation"],
    buckets=[0.001, 0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0],
)

worker_errors_total = Counter(
    "station_reconciler_worker_errors_total",
    "Total worker errors",
    ["service", "error_type"],
)

# Application info
app_info = Info("station_reconciler_app_info", "Application information")


def init_app_info(version: str = "0.1.0"):
    app_info.info(
        {"version": version, "service": MetricsCollector.SERVICE_NAME, "component": "worker"}
    )


def start_metrics_server(port: int = 8002):
    start_http_server(port)


class MetricsCollector:
    SERVICE_NAME = "station-reconciler"

    @staticmethod
    def record_pass(outcome: str, duration: float | None = None):
        reconciliation_passes_total.labels(
            service=MetricsCollector.SERVICE_NAME, outcome=outcome
        ).inc()
        if duration is not None:
            reconciliation_pass_duration.labels(
                service=MetricsCollector.SERVICE_NAME
            ).observe(duration)

    @staticmethod
    def record_station_statuses(counts: dict[str, int]):
        for status in ("Online", "Degraded", "Offline"):
            stations_by_status.labels(
                service=MetricsCollector.SERVICE_NAME, status=status
            ).set(counts.get(status, 0))

    @staticmethod
    def record_closure(reason: str, outcome: str):
        rental_closures_total.labels(
            service=MetricsCollector.SERVICE_NAME, reason=reason, outcome=outcome
        ).inc()

    @staticmethod
    def record_anomaly(kind: str):
        data_anomalies_total.labels(
            service=MetricsCollector.SERVICE_NAME, kind=kind
        ).inc()

    @staticmethod
    def record_open_rentals(open_count: int, overdue_count: int):
        open_rentals_gauge.labels(service=MetricsCollector.SERVICE_NAME, state="open").set(
            open_count
        )
        open_rentals_gauge.labels(
            service=MetricsCollector.SERVICE_NAME, state="overdue"
        ).set(overdue_count)

    @staticmethod
    def record_external_api_call(
        api_service: str, endpoint: str, duration: float, success: bool
    ):
        status = "success" if success else "error"
        external_api_requests.labels(
            service=MetricsCollector.SERVICE_NAME,
            api_service=api_service,
            endpoint=endpoint,
            status=status,
        ).inc()
        external_api_duration.labels(
            service=MetricsCollector.SERVICE_NAME,
            api_service=api_service,
            endpoint=endpoint,
        ).observe(duration)

    @staticmethod
    def record_circuit_breaker_state(circuit_name: str, state: str):
        state_value = {"closed": 0, "open": 1, "half-open": 2, "half_open": 2}.get(
            state, 0
        )
        circuit_breaker_state.labels(
            service=MetricsCollector.SERVICE_NAME, circuit_name=circuit_name
        ).set(state_value)

    @staticmethod
    def record_circuit_breaker_failure(circuit_name: str):
        circuit_breaker_failures.labels(
            service=MetricsCollector.SERVICE_NAME, circuit_name=circuit_name
        ).inc()

    @staticmethod
    def record_database_query(operation: str, duration: float):
        database_query_duration.labels(
            service=MetricsCollector.SERVICE_NAME, operation=operation
        ).observe(duration)

    @staticmethod
    def record_worker_error(error_type: str):
        worker_errors_total.labels(
            service=MetricsCollector.SERVICE_NAME, error_type=error_type
        ).inc()
