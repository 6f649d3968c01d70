"""Application-level exception types.

Convention:
- ``SyncValidationError``: malformed collection data (bad identifiers, nesting
  too deep, missing metadata).  It subclasses ``ValueError`` so the global
  ``ValueError`` handler returns ``str(exc)`` as the 422 detail.  Never
  auto-corrected: the whole operation fails.
- ``ProviderError``: the remote Git host could not be reached or answered with
  an unexpected status.  The provider's message is kept verbatim.
- ``ProviderConflictError``: the remote rejected a single-file write because the
  supplied expected-state token is stale.
- ``SyncConflictError``: remote state drifted from the last recorded
  fingerprints.  Carries the affected paths so the caller can offer
  keep-local / keep-remote.
- ``CollectionNotFoundError``: the named local collection does not exist.
"""

from __future__ import annotations

from collections.abc import Iterable


class SyncValidationError(ValueError):
    """Raised when serialized collection data violates a structural rule."""


class InvalidIdentifierError(SyncValidationError):
    """Raised when an entity id is not a UUID."""


class FolderDepthExceededError(SyncValidationError):
    """Raised when folders are nested deeper than the supported maximum."""


class RemoteNotConfiguredError(Exception):
    """Raised when no provider, repository, or token is configured."""

    def __init__(self, message: str = "Remote not configured") -> None:
        super().__init__(message)


class ProviderError(Exception):
    """Raised when a Git host request fails."""

    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class ProviderConflictError(ProviderError):
    """Raised when a write is rejected because the expected remote state is stale."""


class SyncConflictError(Exception):
    """Raised when remote files changed since the last recorded sync."""

    def __init__(self, paths: Iterable[str], message: str | None = None) -> None:
        self.paths = list(paths)
        super().__init__(message or f"Sync conflict on files: {', '.join(self.paths)}")


class CollectionNotFoundError(LookupError):
    """Raised when a sync operation names a collection that does not exist locally."""

    def __init__(self, collection_id: str) -> None:
        super().__init__(f"Collection not found: {collection_id}")
        self.collection_id = collection_id
