"""devchronicle error types and cancellation helpers."""

from __future__ import annotations

import threading


class DevChronicleError(Exception):
    """Base exception for devchronicle."""

    pass


class InvalidScope(DevChronicleError):
    """Session configuration cannot be turned into an enumeration plan."""

    pass


class EnumerationFailed(DevChronicleError):
    """The git subprocess failed or produced output we could not parse."""

    def __init__(self, message: str, diagnostic: str = "", command: list[str] | None = None):
        super().__init__(message)
        self.diagnostic = diagnostic
        self.command = command or []

    def __str__(self) -> str:
        base = super().__str__()
        if self.diagnostic:
            return f"{base}: {self.diagnostic.strip()}"
        return base


class MalformedManifest(DevChronicleError):
    pass


class MalformedMarker(DevChronicleError):
    def __init__(self, message: str, line_no: int | None = None):
        if line_no is not None:
            message = f"line {line_no}: {message}"
        super().__init__(message)
        self.line_no = line_no


class UnmanagedDocumentRejected(DevChronicleError):
    """In-place synchronization refused for a document without a valid manifest."""

    pass


class WriteFailed(DevChronicleError):
    pass


class Canceled(DevChronicleError):
    pass


class SessionBusy(DevChronicleError):
    """Another mining or synchronization run holds this session."""

    pass


class SessionNotFound(DevChronicleError):
    pass


class InvalidStatusTransition(DevChronicleError):
    pass


class SummarizationFailed(DevChronicleError):
    pass


def check_canceled(cancel: threading.Event | None) -> None:
    """Raise Canceled if the cancellation signal is set."""
    if cancel is not None and cancel.is_set():
        raise Canceled("Operation canceled")
