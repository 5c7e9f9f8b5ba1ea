"""
Failure buckets for the processing client.

Most failures seen by a client mid-upload or mid-processing are transport
blips while the server keeps working. Everything except FATAL is treated as
possibly transient: the client goes back to the server and polls the
document's real status before declaring anything failed.
"""
import enum

import httpx


class ClientErrorKind(str, enum.Enum):
    NETWORK = "network"
    TIMEOUT = "timeout"
    TEMPORARY = "temporary"    # 502/503/504
    STREAMING = "streaming"    # SSE body unreadable or ended early
    FATAL = "fatal"

    @property
    def recoverable(self) -> bool:
        return self is not ClientErrorKind.FATAL


class ProcessingClientError(Exception):
    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.message = message
        self.status_code = status_code


# Checked in order; the first bucket with a matching keyword wins
_KEYWORDS: list[tuple[ClientErrorKind, tuple[str, ...]]] = [
    (ClientErrorKind.NETWORK, ("fetch", "network", "connection", "failed to upload document")),
    (ClientErrorKind.TIMEOUT, ("timeout", "timed out", "failed to process document", "abort")),
    (ClientErrorKind.TEMPORARY, ("502", "503", "504", "server temporarily unavailable")),
    (ClientErrorKind.STREAMING, ("failed to parse extracted data", "streaming completed without result")),
]


def classify_client_error(message: str) -> ClientErrorKind:
    text = (message or "").lower()
    for kind, keywords in _KEYWORDS:
        if any(k in text for k in keywords):
            return kind
    return ClientErrorKind.FATAL


def classify_exception(exc: BaseException) -> ClientErrorKind:
    # httpx messages are often empty; the exception type is the better signal
    if isinstance(exc, httpx.TimeoutException):
        return ClientErrorKind.TIMEOUT
    if isinstance(exc, httpx.TransportError):
        return ClientErrorKind.NETWORK
    return classify_client_error(str(exc))
