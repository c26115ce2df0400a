"""Custom exception hierarchy for pylaban."""

from __future__ import annotations


class LabanError(Exception):
    """Base exception for all pylaban errors."""


class LabanConfigError(LabanError):
    """Invalid or missing configuration."""


class TransientRemoteError(LabanError):
    """Remote backend could not be reached or rejected the call.

    Network failures, timeouts, non-2xx responses and undecodable bodies all
    map to this error. The sync coordinator treats it as a signal to take the
    offline path; it is never surfaced to end users.
    """

    def __init__(
        self,
        message: str,
        *,
        status_code: int | None = None,
        endpoint: str = "",
    ) -> None:
        self.status_code = status_code
        self.endpoint = endpoint
        super().__init__(message)


class PersistenceError(LabanError):
    """Durable local write failed.

    Raised to the caller of ``SyncCoordinator.submit`` and never retried
    internally.
    """

    def __init__(self, message: str, *, key: str = "") -> None:
        self.key = key
        super().__init__(message)


class OfflineNoDataError(LabanError):
    """Read requested while offline and nothing is cached for it."""

    def __init__(self, entity_type: str) -> None:
        self.entity_type = entity_type
        super().__init__(f"No data available offline for {entity_type!r}")


class MeshEnvelopeParseError(LabanError):
    """Malformed or foreign-protocol entry found in the shared medium."""

    def __init__(self, message: str, *, key: str = "") -> None:
        self.key = key
        super().__init__(message)
