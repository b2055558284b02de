"""
Error taxonomy and transient-failure classification.

Per-container failures derive from ContainerError so the scheduler can
isolate them; everything else is scoped to the cycle or to a log line.
"""

import socket
import ssl
from concurrent.futures import CancelledError
from typing import Optional

import requests


class UpToDateError(Exception):
    """Base class for all errors raised by the updater."""


class ConfigError(UpToDateError):
    """Credential store could not be loaded; updates continue unauthenticated."""


class EngineError(UpToDateError):
    """A call to the container engine failed."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class EngineNotFound(EngineError):
    """The engine answered 404 for the requested object."""


class ListError(UpToDateError):
    """Listing eligible containers failed; the whole cycle is skipped."""


class ContainerError(UpToDateError):
    """Failure isolated to a single container."""


class InspectError(ContainerError):
    pass


class EmptyImageReference(ContainerError):
    pass


class PullFailed(ContainerError):
    pass


class ImageInspectFailed(ContainerError):
    pass


class ExecutorError(ContainerError):
    """
    A strategy step failed.

    needs_attention is set when the failure happened after the point of no
    return and the host may need an operator to reconcile it.
    """

    def __init__(self, step: str, message: str, needs_attention: bool = False):
        super().__init__(f"{step}: {message}")
        self.step = step
        self.needs_attention = needs_attention


class HealthCheckFailed(ExecutorError):
    def __init__(self, message: str):
        super().__init__('health check', message)


class HealthCheckTimeout(HealthCheckFailed):
    pass


class CleanupError(UpToDateError):
    pass


class NotificationError(UpToDateError):
    """A notifier could not deliver its message."""


_TRANSIENT_TYPES = (
    CancelledError,
    TimeoutError,
    socket.timeout,
    socket.gaierror,
    ssl.SSLError,
    ConnectionResetError,
    ConnectionRefusedError,
    ConnectionAbortedError,
    requests.Timeout,
    requests.ConnectionError,
)

_TRANSIENT_MESSAGES = (
    'timeout',
    'context deadline exceeded',
    'tls handshake',
    'connection refused',
    'connection reset',
    'connection aborted',
    'no such host',
    'temporary failure in name resolution',
    'i/o timeout',
    'network is unreachable',
)


def _error_chain(err: BaseException):
    seen = set()
    while err is not None and id(err) not in seen:
        seen.add(id(err))
        yield err
        err = err.__cause__ or err.__context__


def is_transient(err: Optional[BaseException]) -> bool:
    """
    Classify a failure as transient (network hiccup, deadline, cancellation).

    Only decides whether a failure is worth notifying about; nothing is
    retried on the strength of this answer.
    """
    if err is None:
        return False

    chain = list(_error_chain(err))
    if any(isinstance(e, _TRANSIENT_TYPES) for e in chain):
        return True

    for e in chain:
        msg = str(e).lower()
        if any(pattern in msg for pattern in _TRANSIENT_MESSAGES):
            return True
    return False
