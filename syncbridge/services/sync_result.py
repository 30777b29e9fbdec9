"""Sync results and error classification."""

from dataclasses import dataclass
from enum import Enum
from typing import Optional

import httpx

from syncbridge.services.lock_service import LockTimeoutError
from syncbridge.services.odoo_client import OdooAuthError, OdooError

# Odoo business errors: retrying will not fix them
PERMANENT_MARKERS = (
    "access denied",
    "accesserror",
    "validationerror",
    "usererror",
    "userinputerror",
    "missing required",
    "constraint",
)

TRANSIENT_MARKERS = (
    "http error",
    "timed out",
    "timeout",
    "connection refused",
    "connection reset",
    "could not resolve",
)


class ErrorType(str, Enum):
    """How a failed job should be handled.

    TRANSIENT jobs are retried with backoff. PERMANENT jobs are dropped and
    reported. CONFIG jobs are dropped and need operator action.
    """

    TRANSIENT = "transient"
    PERMANENT = "permanent"
    CONFIG = "config"


class ConfigurationError(RuntimeError):
    """Operator configuration is missing or wrong (for example a pipeline id)."""


@dataclass(frozen=True)
class SyncResult:
    """Outcome of one push or pull."""

    succeeded: bool
    entity_id: Optional[int] = None
    message: str = ""
    error_type: Optional[ErrorType] = None

    @classmethod
    def success(cls, entity_id: Optional[int] = None, message: str = "") -> "SyncResult":
        return cls(True, entity_id, message, None)

    @classmethod
    def failure(
        cls,
        message: str,
        error_type: ErrorType = ErrorType.TRANSIENT,
        entity_id: Optional[int] = None
    ) -> "SyncResult":
        return cls(False, entity_id, message, error_type)

    @property
    def is_retryable(self) -> bool:
        return not self.succeeded and self.error_type == ErrorType.TRANSIENT


def classify_exception(exc: BaseException) -> ErrorType:
    """Classify an exception raised while talking to Odoo.

    Business errors are checked before status codes because some Odoo
    versions wrap them in HTTP 500. Unknown errors are transient.
    """
    if isinstance(exc, (OdooAuthError, ConfigurationError)):
        return ErrorType.CONFIG

    message = str(exc).lower()
    if any(marker in message for marker in PERMANENT_MARKERS):
        return ErrorType.PERMANENT

    if isinstance(exc, (httpx.TimeoutException, httpx.NetworkError, LockTimeoutError, TimeoutError)):
        return ErrorType.TRANSIENT

    code = getattr(exc, "code", None) if isinstance(exc, OdooError) else None
    if code is not None:
        if code in (429, 503) or 500 <= code < 600:
            return ErrorType.TRANSIENT
        if 400 <= code < 500:
            return ErrorType.PERMANENT

    if any(marker in message for marker in TRANSIENT_MARKERS):
        return ErrorType.TRANSIENT

    if isinstance(exc, (ValueError, KeyError, TypeError)):
        return ErrorType.PERMANENT

    return ErrorType.TRANSIENT
