"""
Ingestion Error Taxonomy

Exceptions raised by the upstream gateway, the analysis client, the history
store and the gap scanner. Gateway errors carry the HTTP status that should
be returned to the immediate caller and a machine-readable reason.
"""

from typing import Any, Dict, Optional


class IngestionError(Exception):
    """Base class for all ingestion pipeline errors."""
    pass


class GatewayError(IngestionError):
    """Failure of an upstream gateway call."""

    status_code: int = 502
    reason: str = "Gateway error"

    def __init__(self,
                 message: Optional[str] = None,
                 status_code: Optional[int] = None,
                 reason: Optional[str] = None,
                 upstream_status: Optional[int] = None):
        self.status_code = status_code if status_code is not None else self.status_code
        self.reason = reason or self.reason
        self.upstream_status = upstream_status
        super().__init__(message or self.reason)

    def to_dict(self) -> Dict[str, Any]:
        """Body returned to the caller of the gateway."""
        body: Dict[str, Any] = {'error': self.reason}
        if self.upstream_status is not None:
            body['status'] = self.upstream_status
        message = str(self)
        if message != self.reason:
            body['details'] = message
        return body


class InvalidActionError(GatewayError):
    status_code = 400
    reason = "Invalid action"


class UpstreamUnavailableError(GatewayError):
    """Upstream answered with HTML or another non-JSON body."""
    status_code = 502
    reason = "Upstream unavailable"


class InvalidUpstreamJSONError(GatewayError):
    """Upstream declared JSON but the body does not parse."""
    status_code = 502
    reason = "Invalid JSON"


class UpstreamHTTPError(GatewayError):
    """Upstream application error; its status is passed through."""
    reason = "Service error"

    def __init__(self, upstream_status: int, message: Optional[str] = None):
        super().__init__(message, status_code=upstream_status, upstream_status=upstream_status)


class RateLimitedError(UpstreamHTTPError):
    reason = "Rate limited"

    def __init__(self, message: Optional[str] = None):
        super().__init__(429, message)


class CircuitOpenError(GatewayError):
    status_code = 503
    reason = "Circuit open"


class AnalysisError(IngestionError):
    """The external analysis function failed or returned garbage."""

    def __init__(self, message: str, status: Optional[int] = None):
        self.status = status
        super().__init__(message)


class PersistenceError(IngestionError):
    """A write to the derived-record store failed."""
    pass


class GapScanError(IngestionError):
    """Units for a backfill could not be enumerated."""
    pass
