from __future__ import annotations

from enum import IntEnum


class ExitCode(IntEnum):
    OK = 0
    CONFIG_ERROR = 2
    TRANSPORT_ERROR = 3
    DATA_ERROR = 4
    RUNTIME_ERROR = 5


class AccountFactsError(Exception):
    """Base error for the account facts reporting pipeline."""


class ConfigError(AccountFactsError):
    """Raised for configuration or argument issues."""


class CacheError(ConfigError):
    """Raised when a cached fetch cannot be reused."""


class TransportError(AccountFactsError):
    """Raised when the PuppetDB query cannot be completed."""

    def __init__(self, message: str, *, url: str | None = None, status: int | None = None) -> None:
        super().__init__(message)
        self.url = url
        self.status = status


class DataError(AccountFactsError):
    """Raised when fact data cannot be turned into records."""


class EmptyResponseError(DataError):
    """Raised when a query returns no fact fragments."""


class MalformedResponseError(DataError):
    """Raised when a query response is not a list of fact-contents rows."""


class MissingFieldError(DataError):
    """Raised when a record slot lacks a required leaf field."""

    def __init__(self, field: str, slot: int, machine: str) -> None:
        super().__init__(f"missing field '{field}' at slot {slot} on machine {machine}")
        self.field = field
        self.slot = slot
        self.machine = machine


class RenderError(AccountFactsError):
    """Raised when writing a report fails."""


def as_exit_code(exc: BaseException) -> int:
    if isinstance(exc, (ConfigError, ValueError)):
        return int(ExitCode.CONFIG_ERROR)
    if isinstance(exc, TransportError):
        return int(ExitCode.TRANSPORT_ERROR)
    if isinstance(exc, DataError):
        return int(ExitCode.DATA_ERROR)
    if isinstance(exc, (RenderError, AccountFactsError, OSError)):
        return int(ExitCode.RUNTIME_ERROR)
    return 1
