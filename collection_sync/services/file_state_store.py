"""Persistent per-path fingerprints of the last successful sync."""

from __future__ import annotations

import hashlib
from collections.abc import Iterable, Mapping
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

from sqlalchemy import delete, select

from collection_sync.models.sync import SyncFileState
from collection_sync.services.datetime_service import now_iso

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession

    from collection_sync.sync.base import RemoteFile


@dataclass
class FileState:
    """What the engine knows about one remote file.

    ``content_hash`` is the SHA-256 of the serialized text, ``remote_sha`` the
    git blob SHA on the remote and ``commit_sha`` the last commit known to
    touch the file (needed for GitLab single-file updates).
    """

    content_hash: str
    remote_sha: str | None = None
    commit_sha: str | None = None


def content_hash(content: str) -> str:
    """SHA-256 hex digest of UTF-8 text."""
    return hashlib.sha256(content.encode("utf-8")).hexdigest()


def git_blob_sha(content: str) -> str:
    """Blob SHA git assigns to ``content``: sha1 of ``blob {size}\\0{bytes}``."""
    data = content.encode("utf-8")
    return hashlib.sha1(b"blob %d\x00" % len(data) + data, usedforsecurity=False).hexdigest()


def normalize_file_state(raw: Mapping[str, Any]) -> dict[str, FileState]:
    """Accept stored state in either shape and return ``FileState`` values.

    Older records map a path straight to its blob SHA string; current ones
    hold ``{content_hash, remote_sha, commit_sha}``.
    """
    normalized: dict[str, FileState] = {}
    for path, value in raw.items():
        if isinstance(value, FileState):
            normalized[path] = value
        elif isinstance(value, str):
            normalized[path] = FileState(content_hash="", remote_sha=value)
        elif isinstance(value, Mapping):
            normalized[path] = FileState(
                content_hash=value.get("content_hash") or "",
                remote_sha=value.get("remote_sha"),
                commit_sha=value.get("commit_sha"),
            )
    return normalized


def build_file_state_from_remote(files: Iterable[RemoteFile]) -> dict[str, FileState]:
    """Fingerprint freshly downloaded remote files."""
    return {
        remote.path: FileState(
            content_hash=content_hash(remote.content),
            remote_sha=remote.sha,
            commit_sha=remote.commit_sha,
        )
        for remote in files
    }


class FileStateStore:
    """Load and replace the FileState map of a collection.

    Writes join the caller's transaction; the store never commits.
    """

    async def load(self, session: AsyncSession, collection_id: str) -> dict[str, FileState]:
        result = await session.scalars(
            select(SyncFileState).where(SyncFileState.collection_id == collection_id)
        )
        return {
            row.file_path: FileState(
                content_hash=row.content_hash,
                remote_sha=row.remote_sha,
                commit_sha=row.commit_sha,
            )
            for row in result.all()
        }

    async def save(
        self,
        session: AsyncSession,
        collection_id: str,
        states: Mapping[str, FileState],
    ) -> None:
        """Replace the stored map with ``states``."""
        await self.clear(session, collection_id)
        synced_at = now_iso()
        session.add_all(
            SyncFileState(
                collection_id=collection_id,
                file_path=path,
                content_hash=state.content_hash,
                remote_sha=state.remote_sha,
                commit_sha=state.commit_sha,
                synced_at=synced_at,
            )
            for path, state in states.items()
        )
        await session.flush()

    async def clear(self, session: AsyncSession, collection_id: str) -> None:
        await session.execute(
            delete(SyncFileState).where(SyncFileState.collection_id == collection_id)
        )
