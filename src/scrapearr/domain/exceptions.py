"""Error taxonomy shared by all components."""

from __future__ import annotations

from enum import Enum
from typing import ClassVar


class ErrorKind(str, Enum):
    """Stable failure categories surfaced to callers and outcomes."""

    UNREACHABLE = "unreachable"
    INVALID_MANIFEST = "invalid_manifest"
    DUPLICATE_REPOSITORY = "duplicate_repository"
    NOT_FOUND = "not_found"
    TIMEOUT = "timeout"
    SCRIPT_FAULT = "script_fault"
    MALFORMED_OUTPUT = "malformed_output"
    PORT_EXHAUSTED = "port_exhausted"
    INVALID_PROPOSAL = "invalid_proposal"


class ScrapearrError(Exception):
    """Base class for all typed errors."""

    kind: ClassVar[ErrorKind]

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


# --- Repository management ---


class UnreachableError(ScrapearrError):
    """Raised when a manifest or script URL cannot be fetched."""

    kind = ErrorKind.UNREACHABLE


class InvalidManifestError(ScrapearrError):
    """Raised when a repository document does not match the manifest shape."""

    kind = ErrorKind.INVALID_MANIFEST


class ScriptValidationError(InvalidManifestError):
    """Raised when a scraper script fails the static sandbox checks."""


class DuplicateRepositoryError(ScrapearrError):
    """Raised when an equivalent canonical URL is already installed."""

    kind = ErrorKind.DUPLICATE_REPOSITORY


class RepositoryNotFoundError(ScrapearrError):
    kind = ErrorKind.NOT_FOUND


class ScraperNotFoundError(ScrapearrError):
    kind = ErrorKind.NOT_FOUND


# --- Sandbox invocation ---


class InvocationError(ScrapearrError):
    """Base class for failures of a single sandboxed scraper invocation."""


class InvocationTimeoutError(InvocationError):
    kind = ErrorKind.TIMEOUT


class ScriptFaultError(InvocationError):
    """Uncaught exception raised by the scraper script."""

    kind = ErrorKind.SCRIPT_FAULT


class MalformedOutputError(InvocationError):
    """Script returned something that is not a list of stream items."""

    kind = ErrorKind.MALFORMED_OUTPUT


class ScriptNetworkError(InvocationError):
    """Unhandled network failure inside the sandbox fetch capability."""

    kind = ErrorKind.UNREACHABLE


# --- Pairing ---


class PortExhaustedError(ScrapearrError):
    """No candidate port in the pairing range could be bound."""

    kind = ErrorKind.PORT_EXHAUSTED


class ProposalValidationError(ScrapearrError):
    """A proposed URL list contained URLs that are not fetchable manifests."""

    kind = ErrorKind.INVALID_PROPOSAL

    def __init__(self, message: str, invalid_urls: list[str]) -> None:
        super().__init__(message)
        self.invalid_urls = invalid_urls
