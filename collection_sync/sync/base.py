"""Base protocol and data classes for Git host providers."""

from __future__ import annotations

from collections.abc import Iterable, Mapping
from dataclasses import dataclass
from typing import Literal, Protocol, runtime_checkable


@dataclass
class RemoteFile:
    """A file stored in the remote repository.

    ``content`` is empty for listings that do not download file bodies.
    """

    path: str
    content: str
    sha: str | None = None
    commit_sha: str | None = None


@dataclass
class RemoteTreeItem:
    """An entry of a recursive directory listing."""

    type: Literal["file", "dir"]
    path: str
    sha: str


@dataclass
class FileVersion:
    """Version identifiers returned by a single-file write."""

    sha: str
    commit_sha: str | None = None


@runtime_checkable
class GitHostProvider(Protocol):
    """Protocol for host-specific repository access.

    Not-found conditions are reported as ``None`` or an empty list.  Stale
    expected-state tokens on single-file writes raise ``ProviderConflictError``;
    every other failure raises ``ProviderError``.
    """

    name: str

    async def test_connection(self) -> bool:
        """Return True when the repository is reachable with the configured token."""
        ...

    async def list_files(self, path: str) -> list[RemoteFile]:
        """List ``.yaml`` files directly inside ``path`` (without contents)."""
        ...

    async def list_directory_recursive(self, path: str) -> list[RemoteTreeItem]:
        """List every file and directory under ``path``."""
        ...

    async def get_directory_tree(self, path: str) -> list[RemoteFile]:
        """Download every ``.yaml`` file under ``path``."""
        ...

    async def get_file(self, path: str) -> RemoteFile | None:
        """Download a single file."""
        ...

    async def create_file(self, path: str, content: str, message: str) -> FileVersion:
        """Create a file in its own commit."""
        ...

    async def update_file(
        self, path: str, content: str, expected_sha: str, message: str
    ) -> FileVersion:
        """Overwrite a file, failing with a conflict if ``expected_sha`` is stale."""
        ...

    async def delete_file(self, path: str, sha: str, message: str) -> None:
        """Delete a single file. Missing files are ignored."""
        ...

    async def delete_directory(self, path: str, message: str) -> None:
        """Delete every file under ``path`` in one commit."""
        ...

    async def commit_multiple_files(
        self,
        files: Mapping[str, str],
        message: str,
        delete_paths: Iterable[str] = (),
    ) -> str:
        """Write and delete several files in one atomic commit. Returns the commit SHA."""
        ...

    def expected_token(self, remote_sha: str | None, commit_sha: str | None) -> str | None:
        """Pick the expected-state token ``update_file`` needs from stored fingerprints."""
        ...

    async def aclose(self) -> None:
        """Release the underlying HTTP client."""
        ...
