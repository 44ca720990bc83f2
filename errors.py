"""
Error taxonomy shared by the services, the jobs and the HTTP layer.

Every error carries an HTTP status so the API can map it without a lookup
table; background jobs only care about the class.
"""

from typing import Any, Dict, Optional


class KarmaError(Exception):
    status_code = 400

    def __init__(self, message: str, **details: Any):
        super().__init__(message)
        self.message = message
        self.details: Dict[str, Any] = details

    def to_dict(self) -> Dict[str, Any]:
        return {"detail": self.message, "error": type(self).__name__, **self.details}


class ValidationError(KarmaError):
    """Malformed input: out-of-range coordinates, bad ids, bad amounts."""


class NotFoundError(KarmaError):
    status_code = 404


class AuthorizationError(KarmaError):
    status_code = 403


class StateError(KarmaError):
    """Transition attempted from a status that does not allow it."""
    status_code = 409


class GeofenceError(KarmaError):
    def __init__(self, required_meters: int, distance_meters: int):
        super().__init__(
            f"You must be within {required_meters}m of the donation location. "
            f"Current distance: {distance_meters}m",
            required_meters=required_meters,
            distance_meters=distance_meters,
        )


class WindowExpiredError(KarmaError):
    status_code = 409


class InsufficientBalanceError(KarmaError):
    def __init__(self, message: str = "Not enough points", **details: Any):
        super().__init__(message, **details)


class ExternalLedgerError(KarmaError):
    status_code = 502

    def __init__(self, message: str, retry_after: Optional[int] = None, **details: Any):
        if retry_after is not None:
            details["retry_after"] = retry_after
        super().__init__(message, **details)


class LedgerUnavailableError(ExternalLedgerError):
    """Transient failure talking to the ledger (timeout, node down)."""
    status_code = 503


class LedgerRejectedError(ExternalLedgerError):
    """The ledger executed the call and reverted it."""

    def __init__(self, reason: str, **details: Any):
        super().__init__(reason, **details)
        self.reason = reason


class PointsCapExceededError(LedgerRejectedError):
    pass
