from __future__ import annotations


class PlannerSyncError(RuntimeError):
    """Base class for errors raised by plannersync."""


class ConfigurationError(PlannerSyncError):
    """CalDAV settings are missing or malformed."""


class DiscoveryError(PlannerSyncError):
    """No usable calendar collection could be discovered. Fatal to a run."""


class TransportError(PlannerSyncError):
    """A request produced no usable reply, or the server refused the credentials."""

    def __init__(self, method: str, url: str, cause: Exception) -> None:
        self.method = method
        self.url = url
        self.cause = cause
        super().__init__(f"{method} {url} failed: {type(cause).__name__}: {cause}")
