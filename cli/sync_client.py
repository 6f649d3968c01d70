"""Command-line client for the collection sync server."""

from __future__ import annotations

import argparse
import json
import sys
from pathlib import Path
from typing import Any
from urllib.parse import urlparse

import httpx

CONFIG_FILE = ".collection-sync.json"
_LOCALHOST_HOSTS = {"localhost", "127.0.0.1", "::1"}


class SyncApiClient:
    """Thin wrapper over the ``/api/sync`` endpoints."""

    def __init__(
        self,
        server_url: str,
        workspace_id: str | None = None,
        *,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        self.server_url = server_url.rstrip("/")
        self.workspace_id = workspace_id
        self.client = httpx.Client(base_url=self.server_url, timeout=120.0, transport=transport)

    def close(self) -> None:
        """Close the HTTP client."""
        self.client.close()

    def __enter__(self) -> SyncApiClient:
        return self

    def __exit__(self, *args: object) -> None:
        self.close()

    def _params(self, **extra: Any) -> dict[str, Any]:
        params = {key: value for key, value in extra.items() if value is not None}
        if self.workspace_id:
            params["workspace_id"] = self.workspace_id
        return params

    def _call(self, method: str, path: str, **kwargs: Any) -> Any:
        resp = self.client.request(method, f"/api/sync{path}", **kwargs)
        resp.raise_for_status()
        if resp.status_code == 204 or not resp.content:
            return None
        return resp.json()

    def get_config(self) -> dict[str, Any]:
        result: dict[str, Any] = self._call("GET", "/config", params=self._params())
        return result

    def update_config(self, **fields: Any) -> dict[str, Any]:
        body = {key: value for key, value in fields.items() if value is not None}
        result: dict[str, Any] = self._call("PUT", "/config", json=body, params=self._params())
        return result

    def test_connection(self) -> bool:
        result = self._call("POST", "/test-connection", params=self._params())
        return bool(result["success"])

    def pull(self) -> dict[str, Any]:
        result: dict[str, Any] = self._call("POST", "/pull", params=self._params())
        return result

    def push_all(self) -> dict[str, Any]:
        result: dict[str, Any] = self._call("POST", "/push-all", params=self._params())
        return result

    def auto_sync(self) -> dict[str, Any]:
        result: dict[str, Any] = self._call("POST", "/auto-sync", params=self._params())
        return result

    def push_collection(self, collection_id: str, *, sanitize: bool = False) -> dict[str, Any]:
        result: dict[str, Any] = self._call(
            "POST",
            f"/collections/{collection_id}/push",
            params=self._params(sanitize=str(sanitize).lower()),
        )
        return result

    def pull_collection(self, collection_id: str) -> bool:
        result = self._call("POST", f"/collections/{collection_id}/pull", params=self._params())
        return bool(result["pulled"])

    def resolve(self, collection_id: str, resolution: str) -> dict[str, Any]:
        result: dict[str, Any] = self._call(
            "POST",
            f"/collections/{collection_id}/resolve",
            json={"resolution": resolution},
            params=self._params(),
        )
        return result

    def delete_remote(self, collection_id: str) -> bool:
        result = self._call("DELETE", f"/collections/{collection_id}/remote", params=self._params())
        return bool(result["deleted"])

    def disable(self, collection_id: str) -> None:
        self._call("POST", f"/collections/{collection_id}/disable")

    def push_request(
        self, collection_id: str, request_id: str, *, sanitize: bool = False
    ) -> bool:
        result = self._call(
            "POST",
            f"/collections/{collection_id}/requests/{request_id}/push",
            params=self._params(sanitize=str(sanitize).lower()),
        )
        return bool(result["pushed"])

    def scan(self, collection_id: str) -> list[dict[str, Any]]:
        result: list[dict[str, Any]] = self._call("GET", f"/collections/{collection_id}/sensitive")
        return result

    def log(self) -> list[dict[str, Any]]:
        result: list[dict[str, Any]] = self._call("GET", "/log")
        return result


def validate_server_url(server_url: str, allow_insecure_http: bool = False) -> str:
    """Validate server URL and enforce HTTPS for non-localhost hosts by default."""
    normalized = server_url.strip().rstrip("/")
    parsed = urlparse(normalized)
    if parsed.scheme not in {"http", "https"} or not parsed.netloc:
        raise ValueError("Server URL must include scheme and host (e.g. http://localhost:8000)")

    hostname = parsed.hostname
    if parsed.scheme == "http" and not allow_insecure_http and hostname not in _LOCALHOST_HOSTS:
        raise ValueError(
            "HTTPS is required for non-localhost servers. "
            "Use --allow-insecure-http only on trusted networks."
        )

    return normalized


def load_config(dir_path: Path) -> dict[str, str]:
    """Load client config from file."""
    config_path = dir_path / CONFIG_FILE
    if not config_path.exists():
        return {}
    config: dict[str, str] = json.loads(config_path.read_text())
    return config


def save_config(dir_path: Path, config: dict[str, str]) -> None:
    """Save client config to file."""
    config_path = dir_path / CONFIG_FILE
    config_path.write_text(json.dumps(config, indent=2))


def format_result(result: dict[str, Any]) -> list[str]:
    """Render a sync result as printable lines."""
    lines = [result.get("message") or ("OK" if result.get("success") else "Failed")]
    for conflict in result.get("conflicts", []):
        paths = ", ".join(conflict.get("paths", [])) or "unknown paths"
        lines.append(f"  CONFLICT: {conflict['collection_name']} ({paths})")
    lines.extend(f"  Error: {error}" for error in result.get("errors", []))
    return lines


def _error_lines(exc: httpx.HTTPStatusError) -> list[str]:
    try:
        body = exc.response.json()
    except ValueError:
        return [f"Error: server returned {exc.response.status_code}"]
    lines = [f"Error: {body.get('detail', exc.response.status_code)}"]
    lines.extend(f"  drifted: {path}" for path in body.get("paths", []))
    return lines


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="collection-sync-cli",
        description="Drive a collection sync server from the command line",
    )
    parser.add_argument("--dir", "-d", default=".", help="Directory holding the client config")
    parser.add_argument("--server", "-s", help="Server URL")
    parser.add_argument("--workspace", "-w", help="Workspace whose sync settings apply")
    parser.add_argument(
        "--allow-insecure-http",
        action="store_true",
        help="Allow http:// server URLs for non-localhost hosts",
    )

    subparsers = parser.add_subparsers(dest="command")
    subparsers.add_parser("init", help="Save the server URL and workspace")

    config_parser = subparsers.add_parser("config", help="Show or update remote settings")
    config_parser.add_argument("--provider", choices=["github", "gitlab"])
    config_parser.add_argument("--repository")
    config_parser.add_argument("--token")
    config_parser.add_argument("--branch")
    config_parser.add_argument("--auto-sync", choices=["on", "off"])

    subparsers.add_parser("test", help="Test the connection to the remote")
    subparsers.add_parser("pull", help="Pull all changed collections")
    subparsers.add_parser("push-all", help="Push all pending collections")
    subparsers.add_parser("sync", help="Pull, then push everything pending")

    push_parser = subparsers.add_parser("push", help="Push one collection")
    push_parser.add_argument("collection_id")
    push_parser.add_argument("--sanitize", action="store_true", help="Strip secrets before push")

    pull_parser = subparsers.add_parser("pull-collection", help="Pull one collection")
    pull_parser.add_argument("collection_id")

    resolve_parser = subparsers.add_parser("resolve", help="Resolve a conflict")
    resolve_parser.add_argument("collection_id")
    resolve_parser.add_argument("resolution", choices=["keep-local", "keep-remote"])

    delete_parser = subparsers.add_parser("delete-remote", help="Delete a collection remotely")
    delete_parser.add_argument("collection_id")

    disable_parser = subparsers.add_parser("disable", help="Stop syncing a collection")
    disable_parser.add_argument("collection_id")

    request_parser = subparsers.add_parser("push-request", help="Push one request file")
    request_parser.add_argument("collection_id")
    request_parser.add_argument("request_id")
    request_parser.add_argument("--sanitize", action="store_true", help="Strip secrets before push")

    scan_parser = subparsers.add_parser("scan", help="List secrets a push would publish")
    scan_parser.add_argument("collection_id")

    subparsers.add_parser("log", help="Show recent sync operations")
    return parser


def run_command(client: SyncApiClient, args: argparse.Namespace) -> list[str]:
    """Execute one subcommand and return the lines to print."""
    if args.command == "config":
        auto_sync = None if args.auto_sync is None else args.auto_sync == "on"
        if any(
            value is not None
            for value in (args.provider, args.repository, args.token, args.branch, auto_sync)
        ):
            config = client.update_config(
                provider=args.provider,
                repository=args.repository,
                token=args.token,
                branch=args.branch,
                auto_sync=auto_sync,
            )
        else:
            config = client.get_config()
        return [
            f"Provider:   {config.get('provider') or '-'}",
            f"Repository: {config.get('repository') or '-'}",
            f"Branch:     {config.get('branch')}",
            f"Token:      {'set' if config.get('has_token') else 'not set'}",
            f"Auto sync:  {'on' if config.get('auto_sync') else 'off'}",
            f"Configured: {'yes' if config.get('configured') else 'no'}",
        ]
    if args.command == "test":
        return ["Connection OK" if client.test_connection() else "Connection failed"]
    if args.command == "pull":
        return format_result(client.pull())
    if args.command == "push-all":
        return format_result(client.push_all())
    if args.command == "sync":
        return format_result(client.auto_sync())
    if args.command == "push":
        return format_result(client.push_collection(args.collection_id, sanitize=args.sanitize))
    if args.command == "pull-collection":
        pulled = client.pull_collection(args.collection_id)
        return ["Pulled from remote" if pulled else "Already up to date"]
    if args.command == "resolve":
        return format_result(client.resolve(args.collection_id, args.resolution))
    if args.command == "delete-remote":
        deleted = client.delete_remote(args.collection_id)
        return ["Deleted from remote" if deleted else "Collection was never pushed"]
    if args.command == "disable":
        client.disable(args.collection_id)
        return ["Sync disabled"]
    if args.command == "push-request":
        pushed = client.push_request(args.collection_id, args.request_id, sanitize=args.sanitize)
        return ["Request pushed" if pushed else "Push failed; collection marked for full sync"]
    if args.command == "scan":
        findings = client.scan(args.collection_id)
        if not findings:
            return ["No sensitive values found"]
        return [
            f"  {f['request_name'] or '(collection)'}: {f['field']}.{f['key']} = {f['masked_value']}"
            for f in findings
        ]
    if args.command == "log":
        return [
            f"{entry['timestamp']} {'ok ' if entry['success'] else 'ERR'} "
            f"{entry['type']:<6} {entry['target']}: {entry['message']}"
            for entry in client.log()
        ]
    msg = f"Unknown command: {args.command}"
    raise ValueError(msg)


def main() -> None:
    """CLI entry point."""
    parser = build_parser()
    args = parser.parse_args()
    config_dir = Path(args.dir).resolve()

    if args.command is None:
        parser.print_help()
        return

    if args.command == "init":
        if not args.server:
            print("Error: --server required for init")
            sys.exit(1)
        try:
            server_url = validate_server_url(args.server, args.allow_insecure_http)
        except ValueError as exc:
            print(f"Error: {exc}")
            sys.exit(1)
        config = {"server": server_url}
        if args.workspace:
            config["workspace"] = args.workspace
        save_config(config_dir, config)
        print(f"Initialized client config in {config_dir / CONFIG_FILE}")
        return

    config = load_config(config_dir)
    configured_server_url = args.server or config.get("server")
    if not configured_server_url:
        print("Error: No server configured. Run 'collection-sync-cli init --server <url>' first.")
        sys.exit(1)
    try:
        server_url = validate_server_url(configured_server_url, args.allow_insecure_http)
    except ValueError as exc:
        print(f"Error: {exc}")
        sys.exit(1)

    workspace_id = args.workspace or config.get("workspace")
    with SyncApiClient(server_url, workspace_id) as client:
        try:
            lines = run_command(client, args)
        except httpx.HTTPStatusError as exc:
            for line in _error_lines(exc):
                print(line)
            sys.exit(1)
        except httpx.HTTPError as exc:
            print(f"Error: could not reach {server_url}: {exc}")
            sys.exit(1)
    for line in lines:
        print(line)


if __name__ == "__main__":
    main()
