"""GitLab provider using the Repository API v4.

Multi-file commits are declarative: one ``POST repository/commits`` carrying
ordered ``create``/``update``/``delete`` actions.  GitLab guards single-file
updates with ``last_commit_id`` (a commit SHA) rather than the blob SHA.
"""

from __future__ import annotations

import base64
import logging
from typing import TYPE_CHECKING, Any, Literal
from urllib.parse import quote

import httpx

from collection_sync.exceptions import ProviderConflictError, ProviderError
from collection_sync.sync.base import FileVersion, RemoteFile, RemoteTreeItem

if TYPE_CHECKING:
    from collections.abc import Iterable, Mapping

logger = logging.getLogger(__name__)

GITLAB_API_URL = "https://gitlab.com/api/v4"
DEFAULT_TIMEOUT = 30.0
TREE_PAGE_SIZE = 100


def _encode(content: str) -> str:
    return base64.b64encode(content.encode("utf-8")).decode("ascii")


class GitLabProvider:
    """Repository access for GitLab (``group/project`` or numeric project id)."""

    name: str = "gitlab"

    def __init__(
        self,
        repository: str,
        token: str,
        branch: str = "main",
        *,
        api_url: str | None = None,
        timeout: float = DEFAULT_TIMEOUT,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self._repository = repository.strip().strip("/")
        self._project_id = quote(self._repository, safe="")
        self._token = token
        self._branch = branch
        self._api_url = (api_url or GITLAB_API_URL).rstrip("/")
        self._owns_client = client is None
        self._client = client if client is not None else httpx.AsyncClient(timeout=timeout)

    @property
    def _project_path(self) -> str:
        return f"/projects/{self._project_id}"

    def _file_path(self, path: str) -> str:
        return f"{self._project_path}/repository/files/{quote(path, safe='')}"

    async def _request(
        self,
        method: str,
        path: str,
        *,
        json: dict[str, Any] | None = None,
        params: dict[str, str] | None = None,
    ) -> httpx.Response:
        try:
            return await self._client.request(
                method,
                f"{self._api_url}{path}",
                headers={"PRIVATE-TOKEN": self._token},
                json=json,
                params=params,
            )
        except httpx.HTTPError as exc:
            msg = f"GitLab request failed: {exc}"
            raise ProviderError(msg) from exc

    @staticmethod
    def _error(resp: httpx.Response, action: str) -> ProviderError:
        return ProviderError(
            f"GitLab API error {action}: {resp.status_code}", status_code=resp.status_code
        )

    async def aclose(self) -> None:
        """Close the HTTP client if this provider created it."""
        if self._owns_client:
            await self._client.aclose()

    def expected_token(self, remote_sha: str | None, commit_sha: str | None) -> str | None:
        """GitLab guards single-file updates with the last commit touching the file.

        Without a recorded commit the blob SHA is sent instead; GitLab rejects it
        as stale, so the caller falls back to a full push.
        """
        return commit_sha or remote_sha

    async def test_connection(self) -> bool:
        resp = await self._request("GET", self._project_path)
        if not resp.is_success:
            logger.warning("GitLab connection test failed: %s", resp.status_code)
        return resp.is_success

    async def _paginate_tree(self, params: dict[str, str]) -> list[dict[str, Any]]:
        """Collect every page of ``repository/tree``, following ``x-next-page``."""
        entries: list[dict[str, Any]] = []
        page = "1"
        while page:
            resp = await self._request(
                "GET",
                f"{self._project_path}/repository/tree",
                params={**params, "per_page": str(TREE_PAGE_SIZE), "page": page},
            )
            if resp.status_code == 404:
                return entries
            if not resp.is_success:
                raise self._error(resp, "listing tree")
            entries.extend(resp.json())
            page = resp.headers.get("x-next-page", "").strip()
        return entries

    async def list_files(self, path: str) -> list[RemoteFile]:
        entries = await self._paginate_tree({"path": path, "ref": self._branch})
        return [
            RemoteFile(path=entry["path"], content="", sha=entry["id"])
            for entry in entries
            if entry.get("type") == "blob" and entry.get("name", "").endswith(".yaml")
        ]

    async def list_directory_recursive(self, path: str) -> list[RemoteTreeItem]:
        entries = await self._paginate_tree(
            {"path": path, "ref": self._branch, "recursive": "true"}
        )
        items: list[RemoteTreeItem] = []
        for entry in entries:
            kind: Literal["file", "dir"] = "dir" if entry.get("type") == "tree" else "file"
            items.append(RemoteTreeItem(type=kind, path=entry["path"], sha=entry["id"]))
        return items

    async def get_directory_tree(self, path: str) -> list[RemoteFile]:
        files: list[RemoteFile] = []
        for item in await self.list_directory_recursive(path):
            if item.type != "file" or not item.path.endswith(".yaml"):
                continue
            remote = await self.get_file(item.path)
            if remote is not None:
                files.append(remote)
        return files

    async def get_file(self, path: str) -> RemoteFile | None:
        resp = await self._request("GET", self._file_path(path), params={"ref": self._branch})
        if resp.status_code == 404:
            return None
        if not resp.is_success:
            raise self._error(resp, "getting file")
        data = resp.json()
        return RemoteFile(
            path=path,
            content=base64.b64decode(data.get("content", "")).decode("utf-8"),
            sha=data["blob_id"],
            commit_sha=data.get("last_commit_id"),
        )

    async def file_exists(self, path: str) -> bool:
        """Check for a file without downloading it."""
        resp = await self._request("HEAD", self._file_path(path), params={"ref": self._branch})
        if resp.status_code == 404:
            return False
        if not resp.is_success:
            raise self._error(resp, "checking file")
        return True

    async def _written_version(self, path: str) -> FileVersion:
        remote = await self.get_file(path)
        if remote is None or remote.sha is None:
            msg = f"File {path} missing after write"
            raise ProviderError(msg)
        return FileVersion(sha=remote.sha, commit_sha=remote.commit_sha)

    async def create_file(self, path: str, content: str, message: str) -> FileVersion:
        resp = await self._request(
            "POST",
            self._file_path(path),
            json={
                "branch": self._branch,
                "content": _encode(content),
                "encoding": "base64",
                "commit_message": message,
            },
        )
        if resp.status_code == 400:
            msg = f"File already exists on remote: {path}"
            raise ProviderConflictError(msg, status_code=400)
        if not resp.is_success:
            raise self._error(resp, "creating file")
        return await self._written_version(path)

    async def update_file(
        self, path: str, content: str, expected_sha: str, message: str
    ) -> FileVersion:
        if not expected_sha:
            msg = f"Refusing unguarded update of {path}: no expected commit id"
            raise ProviderConflictError(msg)
        payload: dict[str, Any] = {
            "branch": self._branch,
            "content": _encode(content),
            "encoding": "base64",
            "commit_message": message,
            "last_commit_id": expected_sha,
        }
        resp = await self._request("PUT", self._file_path(path), json=payload)
        if resp.status_code == 400:
            msg = f"Conflict: {path} has been modified on remote"
            raise ProviderConflictError(msg, status_code=400)
        if not resp.is_success:
            raise self._error(resp, "updating file")
        return await self._written_version(path)

    async def delete_file(self, path: str, sha: str, message: str) -> None:
        resp = await self._request(
            "DELETE",
            self._file_path(path),
            json={"branch": self._branch, "commit_message": message},
        )
        if resp.status_code == 404:
            return
        if not resp.is_success:
            raise self._error(resp, "deleting file")

    async def delete_directory(self, path: str, message: str) -> None:
        files = [
            item.path
            for item in await self.list_directory_recursive(path)
            if item.type == "file"
        ]
        if not files:
            return
        await self.commit_multiple_files({}, message, delete_paths=files)

    async def commit_multiple_files(
        self,
        files: Mapping[str, str],
        message: str,
        delete_paths: Iterable[str] = (),
    ) -> str:
        actions: list[dict[str, Any]] = []
        # Existence checks stay sequential to keep the request order deterministic
        for path, content in files.items():
            exists = await self.file_exists(path)
            actions.append(
                {
                    "action": "update" if exists else "create",
                    "file_path": path,
                    "content": _encode(content),
                    "encoding": "base64",
                }
            )
        actions.extend({"action": "delete", "file_path": path} for path in delete_paths)
        if not actions:
            msg = "Nothing to commit"
            raise ValueError(msg)

        resp = await self._request(
            "POST",
            f"{self._project_path}/repository/commits",
            json={"branch": self._branch, "commit_message": message, "actions": actions},
        )
        if not resp.is_success:
            raise self._error(resp, "creating commit")

        logger.info(
            "Committed %d action(s) to %s@%s", len(actions), self._repository, self._branch
        )
        return resp.json()["id"]
