"""
Error Classifier

Maps a delivery outcome to a typed, severity-tagged error. Exceptions
are matched on the httpx exception hierarchy, never on message text.
Pure: no I/O.
"""
import asyncio
from dataclasses import dataclass

import httpx

from relay.models.webhook import ErrorKind, ErrorSnapshot, Severity


@dataclass(frozen=True)
class ClassifiedError:
    kind: ErrorKind
    message: str
    retryable: bool
    severity: Severity
    code: str | None = None

    def snapshot(self) -> ErrorSnapshot:
        return ErrorSnapshot(
            message=self.message,
            kind=self.kind,
            code=self.code,
            severity=self.severity,
        )


def classify_exception(error: BaseException) -> ClassifiedError:
    """
    Classify an exception raised while sending a delivery.

    Network-layer failures and timeouts are retryable at medium
    severity; anything else is still retried but flagged high.
    """
    message = str(error) or type(error).__name__

    if isinstance(error, httpx.NetworkError):
        return ClassifiedError(
            kind=ErrorKind.NETWORK,
            message=message,
            retryable=True,
            severity=Severity.MEDIUM,
        )

    if isinstance(error, (httpx.TimeoutException, asyncio.TimeoutError)):
        return ClassifiedError(
            kind=ErrorKind.TIMEOUT,
            message=message,
            retryable=True,
            severity=Severity.MEDIUM,
        )

    return ClassifiedError(
        kind=ErrorKind.NETWORK,
        message=message,
        retryable=True,
        severity=Severity.HIGH,
    )


def classify_response(status_code: int, reason: str = "") -> ClassifiedError | None:
    """
    Classify a received HTTP response.

    Returns:
        None for 2xx, otherwise the classified error
    """
    code = str(status_code)
    status_line = f"{status_code} {reason}".strip()

    if 200 <= status_code < 300:
        return None

    if 500 <= status_code < 600:
        return ClassifiedError(
            kind=ErrorKind.SERVER,
            message=f"Server error: {status_line}",
            code=code,
            retryable=True,
            severity=Severity.MEDIUM,
        )

    if status_code == 408:
        return ClassifiedError(
            kind=ErrorKind.TIMEOUT,
            message=f"Request timeout: {status_line}",
            code=code,
            retryable=True,
            severity=Severity.MEDIUM,
        )

    # Rate limited: retried with backoff, unlike other 4xx
    if status_code == 429:
        return ClassifiedError(
            kind=ErrorKind.CLIENT,
            message=f"Rate limited: {status_line}",
            code=code,
            retryable=True,
            severity=Severity.MEDIUM,
        )

    if 400 <= status_code < 500:
        return ClassifiedError(
            kind=ErrorKind.CLIENT,
            message=f"Client error: {status_line}",
            code=code,
            retryable=False,
            severity=Severity.HIGH,
        )

    # 1xx/3xx: the target did not accept the event
    return ClassifiedError(
        kind=ErrorKind.NETWORK,
        message=f"Unexpected response: {status_line}",
        code=code,
        retryable=True,
        severity=Severity.HIGH,
    )
