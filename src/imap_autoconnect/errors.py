"""Custom exceptions for the autoconnect domain."""

from __future__ import annotations

from typing import Any


class ImapAutoconnectError(Exception):
    """Base exception for this project."""


class ConfigError(ImapAutoconnectError):
    """Raised when runtime configuration is invalid."""


class FetchError(ImapAutoconnectError):
    """Raised when an autoconfiguration document cannot be fetched."""


class ResolutionError(ImapAutoconnectError):
    """Raised when MX records cannot be resolved."""


class DiscoveryError(ImapAutoconnectError):
    """Raised when every discovery stage was exhausted without a connection."""

    def __init__(self, message: str, report: Any = None) -> None:
        super().__init__(message)
        self.report = report


class PreconditionError(ImapAutoconnectError):
    """Raised when an operation is invoked before its prerequisites are met."""

    def __init__(self, operation: str, requirement: str) -> None:
        super().__init__(f"{operation}: {requirement}")
        self.operation = operation
        self.requirement = requirement


class MailboxNotFoundError(ImapAutoconnectError):
    """Raised when a mailbox name is absent from the cached folder list."""

    def __init__(self, name: str) -> None:
        super().__init__(f"Folder '{name}' not found")
        self.name = name


class InvalidMessageIdError(ImapAutoconnectError, ValueError):
    """Raised when a caller-supplied message identifier is malformed."""


class NamespaceError(ImapAutoconnectError):
    """Raised when a personal namespace cannot be enumerated."""


class ProtocolError(ImapAutoconnectError):
    """Raised when the IMAP engine fails during a mailbox operation."""


class OperationCancelled(ImapAutoconnectError):
    """Raised when the actor's cancellation signal aborts a network call."""

    def __init__(self, operation: str, message: str | None = None) -> None:
        super().__init__(message or f"{operation} was cancelled")
        self.operation = operation


class OperationTimeout(OperationCancelled):
    """Raised when a call-specific deadline fires before the call completes."""

    def __init__(self, operation: str, timeout: float) -> None:
        super().__init__(operation, f"{operation} timed out after {timeout:g}s")
        self.timeout = timeout
