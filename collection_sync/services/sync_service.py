"""Remote sync service: pull, push, conflict detection and resolution.

The only memory of previous syncs is the FileState map of each collection
(see ``file_state_store``).  A collection is considered changed on the remote
when the listing under its directory differs from the stored fingerprints:
a tracked path has a different blob SHA, a tracked path disappeared, or a
new path appeared.

Every operation on one collection runs under that collection's lock in its
own database session.  Import writes, the new FileState map and the
collection markers (``remote_sha``, ``is_dirty``, ``remote_synced_at``) are
committed together; any failure rolls all of them back.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator, Callable, Iterable, Mapping
from contextlib import asynccontextmanager
from dataclasses import asdict, dataclass, field
from typing import TYPE_CHECKING, Any

import yaml
from sqlalchemy import or_, select
from sqlalchemy.exc import SQLAlchemyError

from collection_sync.exceptions import (
    CollectionNotFoundError,
    FolderDepthExceededError,
    ProviderConflictError,
    ProviderError,
    RemoteNotConfiguredError,
    SyncConflictError,
)
from collection_sync.models.collection import Collection, Folder, Request
from collection_sync.services.datetime_service import now_iso
from collection_sync.services.file_state_store import (
    FileState,
    FileStateStore,
    build_file_state_from_remote,
    content_hash,
    git_blob_sha,
    normalize_file_state,
)
from collection_sync.services.settings_service import SyncConfig, load_sync_config
from collection_sync.services.sync_log import SyncLog
from collection_sync.services.yaml_serializer import (
    COLLECTION_FILE,
    MAX_FOLDER_DEPTH,
    import_from_directory,
    serialize_request,
    serialize_to_directory,
)
from collection_sync.sync.registry import PROVIDERS, get_provider

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

    from collection_sync.config import Settings
    from collection_sync.sync.base import GitHostProvider, RemoteFile, RemoteTreeItem

logger = logging.getLogger(__name__)

ProviderFactory = Callable[[SyncConfig], "GitHostProvider"]

# Failures that abort one collection without stopping a batch
_COLLECTION_ERRORS = (ProviderError, ValueError, yaml.YAMLError, SQLAlchemyError)


@dataclass
class SyncConflictInfo:
    """A collection that changed both locally and on the remote."""

    collection_id: str
    collection_name: str
    local_updated_at: str | None
    paths: list[str] = field(default_factory=list)


@dataclass
class SyncResult:
    """Aggregate outcome of a multi-collection operation."""

    success: bool = True
    message: str = ""
    pulled: int = 0
    pushed: int = 0
    conflicts: list[SyncConflictInfo] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


def drifted_paths(stored: Mapping[str, Any], items: Iterable[RemoteTreeItem]) -> list[str]:
    """Return remote paths whose state differs from the stored fingerprints.

    Directory entries are ignored.  A path drifts when its blob SHA changed,
    when it is new on the remote, or when a tracked path is missing.
    """
    states = normalize_file_state(stored)
    remote_shas = {item.path: item.sha for item in items if item.type == "file"}
    drifted = [
        path
        for path, sha in remote_shas.items()
        if path not in states or states[path].remote_sha != sha
    ]
    drifted.extend(path for path in states if path not in remote_shas)
    return sorted(drifted)


def has_remote_file_changes(stored: Mapping[str, Any], items: Iterable[RemoteTreeItem]) -> bool:
    """True when any remote file was added, changed or removed since the last sync."""
    return bool(drifted_paths(stored, items))


def _yaml_files(items: Iterable[RemoteTreeItem]) -> list[RemoteTreeItem]:
    return [item for item in items if item.type == "file" and item.path.endswith(".yaml")]


def _summarize(result: SyncResult, verb: str, count: int) -> str:
    if result.errors:
        return f"Failed to process {len(result.errors)} collection(s): {'; '.join(result.errors)}"
    if count or result.conflicts:
        message = f"{verb} {count} collection(s)"
        if result.conflicts:
            message += f", {len(result.conflicts)} conflict(s)"
        return message
    return "Everything up to date"


class RemoteSyncService:
    """Keeps local collections consistent with a remote repository."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        settings: Settings,
        *,
        file_states: FileStateStore | None = None,
        sync_log: SyncLog | None = None,
        provider_factory: ProviderFactory | None = None,
    ) -> None:
        self._session_factory = session_factory
        self._settings = settings
        self._file_states = file_states or FileStateStore()
        self.sync_log = sync_log or SyncLog(settings.sync_log_max_entries)
        self._provider_factory = provider_factory or self._default_provider
        self._locks: dict[str, asyncio.Lock] = {}
        self._lock_users: dict[str, int] = {}

    @property
    def root(self) -> str:
        return self._settings.remote_collections_path.strip("/")

    def _collection_path(self, collection_id: str) -> str:
        return f"{self.root}/{collection_id}"

    def _default_provider(self, config: SyncConfig) -> GitHostProvider:
        api_url = (
            self._settings.github_api_url
            if config.provider == "github"
            else self._settings.gitlab_api_url
        )
        return get_provider(
            config.provider or "",
            config.repository or "",
            config.token or "",
            config.branch,
            api_url=api_url,
            timeout=self._settings.http_timeout_seconds,
        )

    # ── Configuration ──

    async def load_config(self, workspace_id: str | None = None) -> SyncConfig:
        async with self._session_factory() as session:
            return await load_sync_config(session, self._settings.secret_key, workspace_id)

    async def is_configured(self, workspace_id: str | None = None) -> bool:
        config = await self.load_config(workspace_id)
        return config.is_complete and config.provider in PROVIDERS

    @asynccontextmanager
    async def _provider(self, workspace_id: str | None) -> AsyncIterator[GitHostProvider]:
        config = await self.load_config(workspace_id)
        if not config.is_complete or config.provider not in PROVIDERS:
            raise RemoteNotConfiguredError
        provider = self._provider_factory(config)
        try:
            yield provider
        finally:
            await provider.aclose()

    @asynccontextmanager
    async def _collection_lock(self, collection_id: str) -> AsyncIterator[None]:
        lock = self._locks.setdefault(collection_id, asyncio.Lock())
        if lock.locked():
            logger.info("Waiting for in-flight sync of collection %s", collection_id)
        self._lock_users[collection_id] = self._lock_users.get(collection_id, 0) + 1
        try:
            async with lock:
                yield
        finally:
            # Drop the lock once no holder or waiter is left
            self._lock_users[collection_id] -= 1
            if not self._lock_users[collection_id]:
                del self._lock_users[collection_id]
                del self._locks[collection_id]

    async def test_connection(self, workspace_id: str | None = None) -> bool:
        if not await self.is_configured(workspace_id):
            return False
        async with self._provider(workspace_id) as provider:
            return await provider.test_connection()

    # ── Shared steps ──

    async def _get_collection(self, session: AsyncSession, collection_id: str) -> Collection:
        collection = await session.get(Collection, collection_id)
        if collection is None:
            raise CollectionNotFoundError(collection_id)
        return collection

    async def _apply_remote(
        self,
        session: AsyncSession,
        files: list[RemoteFile],
        existing_collection_id: str | None,
        workspace_id: str | None,
    ) -> Collection:
        """Import downloaded files and record their fingerprints. Does not commit."""
        collection_id = await import_from_directory(
            session,
            {remote.path: remote.content for remote in files},
            existing_collection_id=existing_collection_id,
            workspace_id=workspace_id,
        )
        states = build_file_state_from_remote(files)
        await self._file_states.save(session, collection_id, states)

        collection = await self._get_collection(session, collection_id)
        collection_file = next(
            (remote for remote in files if remote.path.endswith(f"/{COLLECTION_FILE}")), None
        )
        collection.remote_sha = collection_file.sha if collection_file else None
        collection.remote_synced_at = now_iso()
        collection.is_dirty = False
        collection.sync_enabled = True
        return collection

    # ── Pull ──

    async def pull(self, workspace_id: str | None = None) -> SyncResult:
        """Import every remote collection that changed since the last sync."""
        result = SyncResult()
        try:
            async with self._provider(workspace_id) as provider:
                try:
                    items = await provider.list_directory_recursive(self.root)
                except ProviderError as exc:
                    result.success = False
                    result.message = f"Failed to list remote directories: {exc}"
                    self.sync_log.add("pull", self.root, result.message, success=False)
                    return result

                collection_dirs: dict[str, str] = {}
                for item in items:
                    relative = item.path[len(self.root) + 1 :].split("/")
                    if item.type == "file" and len(relative) == 2 and relative[1] == COLLECTION_FILE:
                        collection_dirs[relative[0]] = self._collection_path(relative[0])

                for collection_id, dir_path in collection_dirs.items():
                    prefix = f"{dir_path}/"
                    remote_items = _yaml_files(item for item in items if item.path.startswith(prefix))
                    try:
                        await self._pull_collection(
                            provider, collection_id, dir_path, remote_items, workspace_id, result
                        )
                    except _COLLECTION_ERRORS as exc:
                        result.success = False
                        result.errors.append(f"{collection_id}: {exc}")
                        self.sync_log.add("pull", collection_id, f"Pull failed: {exc}", success=False)
        except RemoteNotConfiguredError as exc:
            return SyncResult(success=False, message=str(exc))

        result.message = _summarize(result, "Pulled", result.pulled)
        return result

    async def _pull_collection(
        self,
        provider: GitHostProvider,
        collection_id: str,
        dir_path: str,
        remote_items: list[RemoteTreeItem],
        workspace_id: str | None,
        result: SyncResult,
    ) -> None:
        async with self._collection_lock(collection_id), self._session_factory() as session:
            collection = await session.get(Collection, collection_id)

            if collection is not None:
                if not collection.sync_enabled:
                    logger.debug("Skipping pull of unsynced collection %s", collection_id)
                    return
                stored = await self._file_states.load(session, collection_id)
                drift = drifted_paths(stored, remote_items)
                if not drift:
                    return
                if collection.is_dirty:
                    result.conflicts.append(
                        SyncConflictInfo(
                            collection_id=collection.id,
                            collection_name=collection.name,
                            local_updated_at=collection.updated_at,
                            paths=drift,
                        )
                    )
                    self.sync_log.add(
                        "pull", collection.name, "Conflict detected - both sides changed", success=False
                    )
                    return

            files = await provider.get_directory_tree(dir_path)
            if not files:
                return
            imported = await self._apply_remote(
                session, files, collection.id if collection else None, workspace_id
            )
            await session.commit()

        result.pulled += 1
        if collection is None:
            self.sync_log.add("pull", imported.name, "New collection imported from remote")
        else:
            self.sync_log.add("pull", imported.name, "Updated from remote")

    async def pull_single_collection(
        self, collection_id: str, workspace_id: str | None = None
    ) -> bool:
        """Pull one collection. Returns False when the remote has nothing new.

        Raises SyncConflictError when the collection also has local changes.
        """
        async with self._provider(workspace_id) as provider:
            base = self._collection_path(collection_id)
            async with self._collection_lock(collection_id), self._session_factory() as session:
                collection = await self._get_collection(session, collection_id)
                remote_items = _yaml_files(await provider.list_directory_recursive(base))
                if not remote_items:
                    return False
                stored = await self._file_states.load(session, collection_id)
                drift = drifted_paths(stored, remote_items)
                if not drift:
                    return False
                if collection.is_dirty:
                    self.sync_log.add(
                        "pull", collection.name, "Conflict detected - both sides changed", success=False
                    )
                    msg = (
                        f"Conflict: local changes exist for '{collection.name}' "
                        "and remote has been updated"
                    )
                    raise SyncConflictError(drift, message=msg)

                files = await provider.get_directory_tree(base)
                if not files:
                    msg = f"Remote directory is empty: {base}"
                    raise ProviderError(msg, status_code=404)
                await self._apply_remote(session, files, collection_id, workspace_id)
                await session.commit()
                self.sync_log.add("pull", collection.name, "Pulled from remote successfully")
                return True

    # ── Push ──

    async def _push(
        self,
        provider: GitHostProvider,
        collection_id: str,
        *,
        sanitize: bool = False,
        force: bool = False,
    ) -> bool:
        """Push one collection. Returns False when nothing had to be committed."""
        base = self._collection_path(collection_id)
        async with self._collection_lock(collection_id), self._session_factory() as session:
            collection = await self._get_collection(session, collection_id)
            serialized = await serialize_to_directory(session, collection, sanitize=sanitize)
            local_files = {f"{self.root}/{path}": content for path, content in serialized.items()}

            remote_items = [
                item for item in await provider.list_directory_recursive(base) if item.type == "file"
            ]
            stored = await self._file_states.load(session, collection_id)
            if stored and not force:
                drift = drifted_paths(stored, remote_items)
                if drift:
                    self.sync_log.add(
                        "push", collection.name, "Conflict detected - both sides changed", success=False
                    )
                    raise SyncConflictError(drift)

            remote_shas = {item.path: item.sha for item in remote_items}
            to_push: dict[str, str] = {}
            for path, content in local_files.items():
                previous = stored.get(path)
                if (
                    force
                    or previous is None
                    or path not in remote_shas
                    or previous.content_hash != content_hash(content)
                ):
                    to_push[path] = content
            to_delete = sorted(path for path in remote_shas if path not in local_files)

            if not to_push and not to_delete:
                collection.is_dirty = False
                await session.commit()
                return False

            message = (
                f"Force sync (keep local): {collection.name}" if force else f"Sync: {collection.name}"
            )
            commit_sha = await provider.commit_multiple_files(
                to_push, message, delete_paths=to_delete
            )

            states: dict[str, FileState] = {}
            for path, content in local_files.items():
                if path in to_push:
                    states[path] = FileState(content_hash(content), git_blob_sha(content), commit_sha)
                else:
                    previous = stored[path]
                    states[path] = FileState(
                        content_hash(content), remote_shas[path], previous.commit_sha
                    )
            await self._file_states.save(session, collection_id, states)

            collection.remote_sha = states[f"{base}/{COLLECTION_FILE}"].remote_sha
            collection.remote_synced_at = now_iso()
            collection.is_dirty = False
            collection.sync_enabled = True
            await session.commit()

            logger.info(
                "Pushed collection %s: %d written, %d deleted",
                collection_id,
                len(to_push),
                len(to_delete),
            )
            self.sync_log.add(
                "push",
                collection.name,
                "Force pushed (keep local)" if force else "Pushed to remote successfully",
            )
            return True

    async def push_collection(
        self,
        collection_id: str,
        *,
        sanitize: bool = False,
        workspace_id: str | None = None,
    ) -> bool:
        """Push local changes of one collection in a single commit.

        Raises SyncConflictError, without writing anything, when the remote
        drifted since the last sync.
        """
        async with self._provider(workspace_id) as provider:
            return await self._push(provider, collection_id, sanitize=sanitize)

    async def push_all(self, workspace_id: str | None = None) -> SyncResult:
        """Push every sync-enabled collection that is dirty or was never pushed."""
        result = SyncResult()
        async with self._session_factory() as session:
            stmt = select(Collection.id, Collection.name, Collection.updated_at).where(
                Collection.sync_enabled.is_(True),
                or_(Collection.is_dirty.is_(True), Collection.remote_sha.is_(None)),
            )
            if workspace_id is None:
                stmt = stmt.where(Collection.workspace_id.is_(None))
            else:
                stmt = stmt.where(Collection.workspace_id == workspace_id)
            pending = (await session.execute(stmt.order_by(Collection.order))).all()

        try:
            async with self._provider(workspace_id) as provider:
                for collection_id, name, updated_at in pending:
                    try:
                        await self._push(provider, collection_id)
                    except SyncConflictError as exc:
                        result.conflicts.append(
                            SyncConflictInfo(
                                collection_id=collection_id,
                                collection_name=name,
                                local_updated_at=updated_at,
                                paths=exc.paths,
                            )
                        )
                    except _COLLECTION_ERRORS as exc:
                        result.success = False
                        result.errors.append(f"Failed to push '{name}': {exc}")
                        self.sync_log.add("push", name, f"Push failed: {exc}", success=False)
                    else:
                        result.pushed += 1
        except RemoteNotConfiguredError as exc:
            return SyncResult(success=False, message=str(exc))

        result.message = _summarize(result, "Pushed", result.pushed)
        return result

    # ── Conflict resolution ──

    async def force_keep_local(self, collection_id: str, workspace_id: str | None = None) -> None:
        """Overwrite the remote with the local collection, ignoring drift."""
        async with self._provider(workspace_id) as provider:
            await self._push(provider, collection_id, force=True)

    async def force_keep_remote(self, collection_id: str, workspace_id: str | None = None) -> None:
        """Overwrite the local collection with the remote one, ignoring local edits."""
        async with self._provider(workspace_id) as provider:
            base = self._collection_path(collection_id)
            async with self._collection_lock(collection_id), self._session_factory() as session:
                collection = await self._get_collection(session, collection_id)
                files = await provider.get_directory_tree(base)
                if not files:
                    msg = f"Remote directory not found or empty: {base}"
                    raise ProviderError(msg, status_code=404)
                await self._apply_remote(session, files, collection_id, workspace_id)
                await session.commit()
                self.sync_log.add("pull", collection.name, "Force pulled (keep remote)")

    # ── Removal ──

    async def delete_remote_collection(
        self, collection_id: str, workspace_id: str | None = None
    ) -> bool:
        """Delete the collection directory on the remote in one commit.

        The collection is unsynced as well, so push_all does not upload it
        again. Returns False when the collection was never pushed.
        """
        async with self._session_factory() as session:
            collection = await self._get_collection(session, collection_id)
            if collection.remote_sha is None:
                return False

        async with self._provider(workspace_id) as provider:
            async with self._collection_lock(collection_id), self._session_factory() as session:
                collection = await self._get_collection(session, collection_id)
                await provider.delete_directory(
                    self._collection_path(collection_id), f"Delete collection: {collection.name}"
                )
                await self._file_states.clear(session, collection_id)
                collection.sync_enabled = False
                collection.is_dirty = False
                collection.remote_sha = None
                collection.remote_synced_at = None
                await session.commit()
                self.sync_log.add("delete", collection.name, "Deleted from remote")
                return True

    async def disable_sync(self, collection_id: str) -> None:
        """Stop syncing a collection and forget its remote fingerprints."""
        async with self._collection_lock(collection_id), self._session_factory() as session:
            collection = await self._get_collection(session, collection_id)
            await self._file_states.clear(session, collection_id)
            collection.sync_enabled = False
            collection.is_dirty = False
            collection.remote_sha = None
            collection.remote_synced_at = None
            await session.commit()
            logger.info("Disabled sync for collection %s", collection_id)

    # ── Single request ──

    async def _folder_path(
        self, session: AsyncSession, collection_id: str, folder_id: str | None
    ) -> str:
        """Return ``{folder_id}/...`` segments from the top-level folder down."""
        segments: list[str] = []
        visited: set[str] = set()
        current = folder_id
        while current is not None:
            if current in visited:
                logger.warning("Folder cycle detected at %s", current)
                break
            visited.add(current)
            folder = await session.get(Folder, current)
            if folder is None or folder.collection_id != collection_id:
                break
            segments.append(folder.id)
            if len(segments) > MAX_FOLDER_DEPTH:
                msg = f"Folder nesting depth exceeded maximum of {MAX_FOLDER_DEPTH} levels"
                raise FolderDepthExceededError(msg)
            current = folder.parent_id
        return "".join(f"{segment}/" for segment in reversed(segments))

    async def push_single_request(
        self,
        collection_id: str,
        request_id: str,
        *,
        sanitize: bool = False,
        workspace_id: str | None = None,
    ) -> bool:
        """Write one request file without a full collection push.

        When the provider fails, answers malformed data, or the request cannot
        be serialized, the collection is marked dirty so the next full push
        reconciles it, and False is returned. Database errors propagate.
        """
        if not await self.is_configured(workspace_id):
            return False

        async with self._provider(workspace_id) as provider:
            async with self._collection_lock(collection_id), self._session_factory() as session:
                collection = await session.get(Collection, collection_id)
                request = await session.get(Request, request_id)
                if collection is None or request is None or request.collection_id != collection_id:
                    return False

                try:
                    folder_path = await self._folder_path(session, collection_id, request.folder_id)
                    content = serialize_request(request, sanitize=sanitize)
                    path = f"{self._collection_path(collection_id)}/{folder_path}{request.id}.yaml"
                    states = await self._file_states.load(session, collection_id)
                    previous = states.get(path)

                    if previous is not None and previous.remote_sha:
                        token = (
                            provider.expected_token(previous.remote_sha, previous.commit_sha)
                            or previous.remote_sha
                        )
                        version = await provider.update_file(
                            path, content, token, f"Update: {request.name}"
                        )
                    else:
                        version = await provider.create_file(
                            path, content, f"Create: {request.name}"
                        )
                except ProviderConflictError as exc:
                    self.sync_log.add(
                        "push", request.name, f"Conflict, full push required: {exc}", success=False
                    )
                    collection.is_dirty = True
                    await session.commit()
                    return False
                except (ProviderError, ValueError, yaml.YAMLError) as exc:
                    self.sync_log.add("push", request.name, f"Push failed: {exc}", success=False)
                    collection.is_dirty = True
                    await session.commit()
                    return False

                states[path] = FileState(content_hash(content), version.sha, version.commit_sha)
                await self._file_states.save(session, collection_id, states)
                collection.remote_synced_at = now_iso()
                await session.commit()
                self.sync_log.add("push", request.name, f"Pushed to {collection.name}")
                return True

    # ── Auto sync ──

    async def auto_sync(self, workspace_id: str | None = None) -> SyncResult:
        """Pull, then push everything pending."""
        pulled = await self.pull(workspace_id)
        if not pulled.success and not pulled.errors:
            return pulled
        pushed = await self.push_all(workspace_id)
        return SyncResult(
            success=pulled.success and pushed.success,
            message=f"{pulled.message}; {pushed.message}",
            pulled=pulled.pulled,
            pushed=pushed.pushed,
            conflicts=[*pulled.conflicts, *pushed.conflicts],
            errors=[*pulled.errors, *pushed.errors],
        )
