"""GitHub provider using the Contents and Git Data APIs.

Single-file operations go through the Contents API.  Multi-file commits use
the Git Data API so every change lands in one commit:

1. ``GET  git/ref/heads/{branch}``   current head commit
2. ``GET  git/commits/{sha}``        its root tree
3. ``POST git/trees``                new tree on top of ``base_tree``
4. ``POST git/commits``              commit with the old head as parent
5. ``PATCH git/refs/heads/{branch}`` move the branch

Deletions are tree entries with ``sha: null``.
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

GITHUB_API_URL = "https://api.github.com"
GITHUB_API_VERSION = "2022-11-28"
DEFAULT_TIMEOUT = 30.0


class GitHubProvider:
    """Repository access for GitHub (``owner/repo``)."""

    name: str = "github"

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
        self._token = token
        self._branch = branch
        self._api_url = (api_url or GITHUB_API_URL).rstrip("/")
        self._owns_client = client is None
        self._client = client if client is not None else httpx.AsyncClient(timeout=timeout)

    @property
    def _repo_path(self) -> str:
        return f"/repos/{self._repository}"

    def _headers(self) -> dict[str, str]:
        return {
            "Authorization": f"Bearer {self._token}",
            "Accept": "application/vnd.github+json",
            "X-GitHub-Api-Version": GITHUB_API_VERSION,
        }

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
                headers=self._headers(),
                json=json,
                params=params,
            )
        except httpx.HTTPError as exc:
            msg = f"GitHub request failed: {exc}"
            raise ProviderError(msg) from exc

    @staticmethod
    def _error(resp: httpx.Response, action: str) -> ProviderError:
        return ProviderError(
            f"GitHub API error {action}: {resp.status_code}", status_code=resp.status_code
        )

    def _contents_path(self, path: str) -> str:
        return f"{self._repo_path}/contents/{quote(path, safe='/')}"

    async def aclose(self) -> None:
        """Close the HTTP client if this provider created it."""
        if self._owns_client:
            await self._client.aclose()

    def expected_token(self, remote_sha: str | None, commit_sha: str | None) -> str | None:
        """GitHub guards single-file updates with the file's blob SHA."""
        return remote_sha

    async def test_connection(self) -> bool:
        resp = await self._request("GET", self._repo_path)
        if not resp.is_success:
            logger.warning("GitHub connection test failed: %s", resp.status_code)
        return resp.is_success

    async def list_files(self, path: str) -> list[RemoteFile]:
        resp = await self._request(
            "GET", self._contents_path(path), params={"ref": self._branch}
        )
        if resp.status_code == 404:
            return []
        if not resp.is_success:
            raise self._error(resp, "listing files")
        items = resp.json()
        if not isinstance(items, list):
            return []
        return [
            RemoteFile(path=item["path"], content="", sha=item["sha"])
            for item in items
            if item.get("type") == "file" and item.get("name", "").endswith(".yaml")
        ]

    async def _head_commit_sha(self) -> str | None:
        resp = await self._request("GET", f"{self._repo_path}/git/ref/heads/{self._branch}")
        # 409 is returned for a repository without any commit
        if resp.status_code in (404, 409):
            return None
        if not resp.is_success:
            raise self._error(resp, "getting ref")
        return resp.json()["object"]["sha"]

    async def _tree_sha(self, commit_sha: str) -> str:
        resp = await self._request("GET", f"{self._repo_path}/git/commits/{commit_sha}")
        if not resp.is_success:
            raise self._error(resp, "getting commit")
        return resp.json()["tree"]["sha"]

    async def list_directory_recursive(self, path: str) -> list[RemoteTreeItem]:
        head_sha = await self._head_commit_sha()
        if head_sha is None:
            return []
        tree_sha = await self._tree_sha(head_sha)

        resp = await self._request(
            "GET", f"{self._repo_path}/git/trees/{tree_sha}", params={"recursive": "1"}
        )
        if not resp.is_success:
            raise self._error(resp, "getting tree")
        data = resp.json()
        if data.get("truncated"):
            msg = f"GitHub tree listing for {self._repository} was truncated"
            raise ProviderError(msg, status_code=resp.status_code)

        prefix = path if path.endswith("/") else f"{path}/"
        items: list[RemoteTreeItem] = []
        for entry in data.get("tree", []):
            entry_path = entry["path"]
            if not (entry_path.startswith(prefix) or entry_path == path):
                continue
            kind: Literal["file", "dir"] = "dir" if entry.get("type") == "tree" else "file"
            items.append(RemoteTreeItem(type=kind, path=entry_path, sha=entry["sha"]))
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
        resp = await self._request(
            "GET", self._contents_path(path), params={"ref": self._branch}
        )
        if resp.status_code == 404:
            return None
        if not resp.is_success:
            raise self._error(resp, "getting file")
        data = resp.json()
        if not isinstance(data, dict) or data.get("type", "file") != "file":
            return None
        content = base64.b64decode(data.get("content", "")).decode("utf-8")
        return RemoteFile(path=path, content=content, sha=data["sha"])

    async def _put_contents(
        self, path: str, content: str, message: str, sha: str | None
    ) -> httpx.Response:
        payload: dict[str, Any] = {
            "message": message,
            "content": base64.b64encode(content.encode("utf-8")).decode("ascii"),
            "branch": self._branch,
        }
        if sha is not None:
            payload["sha"] = sha
        return await self._request("PUT", self._contents_path(path), json=payload)

    @staticmethod
    def _file_version(resp: httpx.Response) -> FileVersion:
        try:
            data = resp.json()
            sha = data["content"]["sha"]
        except (ValueError, KeyError, TypeError) as exc:
            msg = f"Malformed contents response from GitHub: {exc}"
            raise ProviderError(msg, status_code=resp.status_code) from exc
        commit = data.get("commit") or {}
        return FileVersion(sha=sha, commit_sha=commit.get("sha"))

    async def create_file(self, path: str, content: str, message: str) -> FileVersion:
        resp = await self._put_contents(path, content, message, sha=None)
        if resp.status_code == 422:
            msg = f"File already exists on remote: {path}"
            raise ProviderConflictError(msg, status_code=422)
        if not resp.is_success:
            raise self._error(resp, "creating file")
        return self._file_version(resp)

    async def update_file(
        self, path: str, content: str, expected_sha: str, message: str
    ) -> FileVersion:
        resp = await self._put_contents(path, content, message, sha=expected_sha)
        if resp.status_code == 409:
            msg = f"SHA conflict: {path} has been modified on remote"
            raise ProviderConflictError(msg, status_code=409)
        if not resp.is_success:
            raise self._error(resp, "updating file")
        return self._file_version(resp)

    async def delete_file(self, path: str, sha: str, message: str) -> None:
        resp = await self._request(
            "DELETE",
            self._contents_path(path),
            json={"message": message, "sha": sha, "branch": self._branch},
        )
        if resp.status_code == 404:
            return
        if resp.status_code == 409:
            msg = f"SHA conflict: {path} has been modified on remote"
            raise ProviderConflictError(msg, status_code=409)
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
        tree_entries: list[dict[str, Any]] = [
            {"path": path, "mode": "100644", "type": "blob", "content": content}
            for path, content in files.items()
        ]
        tree_entries.extend(
            {"path": path, "mode": "100644", "type": "blob", "sha": None}
            for path in delete_paths
        )
        if not tree_entries:
            msg = "Nothing to commit"
            raise ValueError(msg)

        head_sha = await self._head_commit_sha()
        if head_sha is None:
            msg = f"Branch {self._branch!r} not found in {self._repository}"
            raise ProviderError(msg, status_code=404)
        base_tree = await self._tree_sha(head_sha)

        tree_resp = await self._request(
            "POST",
            f"{self._repo_path}/git/trees",
            json={"base_tree": base_tree, "tree": tree_entries},
        )
        if not tree_resp.is_success:
            raise self._error(tree_resp, "creating tree")

        commit_resp = await self._request(
            "POST",
            f"{self._repo_path}/git/commits",
            json={
                "message": message,
                "tree": tree_resp.json()["sha"],
                "parents": [head_sha],
            },
        )
        if not commit_resp.is_success:
            raise self._error(commit_resp, "creating commit")
        new_commit_sha: str = commit_resp.json()["sha"]

        ref_resp = await self._request(
            "PATCH",
            f"{self._repo_path}/git/refs/heads/{self._branch}",
            json={"sha": new_commit_sha},
        )
        if not ref_resp.is_success:
            raise self._error(ref_resp, "updating ref")

        logger.info(
            "Committed %d file(s) and %d deletion(s) to %s@%s",
            len(files),
            len(tree_entries) - len(files),
            self._repository,
            self._branch,
        )
        return new_commit_sha
