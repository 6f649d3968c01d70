"""In-memory Git host used by the sync service tests."""

from __future__ import annotations

from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field

from collection_sync.exceptions import ProviderConflictError, ProviderError
from collection_sync.services.file_state_store import git_blob_sha
from collection_sync.sync.base import FileVersion, RemoteFile, RemoteTreeItem


@dataclass
class FakeRepository:
    """Repository state shared by every provider instance of one test."""

    files: dict[str, str] = field(default_factory=dict)
    commits: list[tuple[str, dict[str, str], list[str]]] = field(default_factory=list)
    downloads: int = 0
    fail_listing: bool = False

    def sha(self, path: str) -> str:
        return git_blob_sha(self.files[path])

    def commit(self, message: str, files: Mapping[str, str], deletes: Iterable[str]) -> str:
        delete_list = list(deletes)
        self.files.update(files)
        for path in delete_list:
            self.files.pop(path, None)
        self.commits.append((message, dict(files), delete_list))
        return f"commit-{len(self.commits)}"


class FakeProvider:
    """GitHostProvider over a FakeRepository; expected tokens are blob SHAs."""

    name = "fake"

    def __init__(self, repo: FakeRepository) -> None:
        self.repo = repo
        self.closed = False

    async def test_connection(self) -> bool:
        return True

    async def list_files(self, path: str) -> list[RemoteFile]:
        prefix = f"{path.rstrip('/')}/"
        return [
            RemoteFile(path=p, content="", sha=self.repo.sha(p))
            for p in sorted(self.repo.files)
            if p.startswith(prefix) and "/" not in p[len(prefix) :] and p.endswith(".yaml")
        ]

    async def list_directory_recursive(self, path: str) -> list[RemoteTreeItem]:
        if self.repo.fail_listing:
            msg = "listing unavailable"
            raise ProviderError(msg, status_code=503)
        prefix = f"{path.rstrip('/')}/"
        items: list[RemoteTreeItem] = []
        dirs: set[str] = set()
        for file_path in sorted(self.repo.files):
            if not file_path.startswith(prefix):
                continue
            items.append(RemoteTreeItem(type="file", path=file_path, sha=self.repo.sha(file_path)))
            parent = file_path.rpartition("/")[0]
            while parent.startswith(prefix) and parent not in dirs:
                dirs.add(parent)
                items.append(RemoteTreeItem(type="dir", path=parent, sha="tree"))
                parent = parent.rpartition("/")[0]
        return items

    async def get_directory_tree(self, path: str) -> list[RemoteFile]:
        self.repo.downloads += 1
        prefix = f"{path.rstrip('/')}/"
        return [
            RemoteFile(path=p, content=content, sha=git_blob_sha(content))
            for p, content in sorted(self.repo.files.items())
            if p.startswith(prefix) and p.endswith(".yaml")
        ]

    async def get_file(self, path: str) -> RemoteFile | None:
        self.repo.downloads += 1
        content = self.repo.files.get(path)
        if content is None:
            return None
        return RemoteFile(path=path, content=content, sha=git_blob_sha(content))

    async def create_file(self, path: str, content: str, message: str) -> FileVersion:
        if path in self.repo.files:
            msg = f"File already exists: {path}"
            raise ProviderConflictError(msg, status_code=422)
        commit_sha = self.repo.commit(message, {path: content}, [])
        return FileVersion(sha=git_blob_sha(content), commit_sha=commit_sha)

    async def update_file(
        self, path: str, content: str, expected_sha: str, message: str
    ) -> FileVersion:
        if path not in self.repo.files or self.repo.sha(path) != expected_sha:
            msg = f"File changed on remote: {path}"
            raise ProviderConflictError(msg, status_code=409)
        commit_sha = self.repo.commit(message, {path: content}, [])
        return FileVersion(sha=git_blob_sha(content), commit_sha=commit_sha)

    async def delete_file(self, path: str, sha: str, message: str) -> None:
        if path in self.repo.files:
            self.repo.commit(message, {}, [path])

    async def delete_directory(self, path: str, message: str) -> None:
        prefix = f"{path.rstrip('/')}/"
        doomed = [p for p in self.repo.files if p.startswith(prefix)]
        if doomed:
            self.repo.commit(message, {}, doomed)

    async def commit_multiple_files(
        self,
        files: Mapping[str, str],
        message: str,
        delete_paths: Iterable[str] = (),
    ) -> str:
        deletes = list(delete_paths)
        if not files and not deletes:
            msg = "Nothing to commit"
            raise ValueError(msg)
        return self.repo.commit(message, files, deletes)

    def expected_token(self, remote_sha: str | None, commit_sha: str | None) -> str | None:
        return remote_sha

    async def aclose(self) -> None:
        self.closed = True
