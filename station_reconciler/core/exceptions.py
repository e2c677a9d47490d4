from typing import Any, Dict, Optional


class ReconcilerException(Exception):
    pass


class ConfigurationError(ReconcilerException):
    pass


class TelemetryUnreachable(ReconcilerException):
    def __init__(self, station_id: str, reason: str):
        super().__init__(f"Station {station_id} unreachable: {reason}")
        self.station_id = station_id
        self.reason = reason


class LedgerReadFailure(ReconcilerException):
    pass


class LedgerWriteFailure(ReconcilerException):
    def __init__(
        self,
        message: str,
        rental_id: Optional[str] = None,
        station_id: Optional[str] = None,
    ):
        super().__init__(message)
        self.rental_id = rental_id
        self.station_id = station_id


class DataAnomaly(ReconcilerException):
    """Inconsistent input that is reported on the snapshot, never raised past a station."""

    def __init__(
        self, kind: str, station_id: Optional[str], detail: str, **context: Any
    ):
        super().__init__(f"[{kind}] station={station_id}: {detail}")
        self.kind = kind
        self.station_id = station_id
        self.detail = detail
        self.context: Dict[str, Any] = context
