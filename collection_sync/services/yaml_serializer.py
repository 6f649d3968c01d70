"""Collection serializer: relational tree <-> directory of YAML documents.

Layout, relative to the remote collections root::

    {collection_id}/_collection.yaml
    {collection_id}/_manifest.yaml
    {collection_id}/{request_id}.yaml
    {collection_id}/{folder_id}/_folder.yaml
    {collection_id}/{folder_id}/_manifest.yaml
    {collection_id}/{folder_id}/{request_id}.yaml
    ...

Each ``_manifest.yaml`` lists the children of its directory as
``{type, id}`` items in sibling order; it is the only source of ordering on
import.  Folder nesting is limited to ``MAX_FOLDER_DEPTH`` levels in both
directions.
"""

from __future__ import annotations

import json
import logging
import re
from collections import defaultdict
from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

import yaml
from sqlalchemy import delete, func, literal_column, select

from collection_sync.exceptions import (
    FolderDepthExceededError,
    InvalidIdentifierError,
    SyncValidationError,
)
from collection_sync.models.collection import Collection, Environment, Folder, Request
from collection_sync.services.datetime_service import now_iso
from collection_sync.services.sensitive_data_scanner import (
    sanitize_collection_data,
    sanitize_request_data,
)

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession

logger = logging.getLogger(__name__)

COLLECTION_FILE = "_collection.yaml"
FOLDER_FILE = "_folder.yaml"
MANIFEST_FILE = "_manifest.yaml"
MAX_FOLDER_DEPTH = 20

UUID_RE = re.compile(
    r"^[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}$", re.IGNORECASE
)


class _Dumper(yaml.SafeDumper):
    """Safe dumper that never emits anchors or aliases."""

    def ignore_aliases(self, data: Any) -> bool:
        return True


def to_yaml(data: Any) -> str:
    """Dump with two-space indent, no line wrapping, and insertion key order."""
    return yaml.dump(
        data,
        Dumper=_Dumper,
        indent=2,
        width=float("inf"),
        sort_keys=False,
        allow_unicode=True,
        default_flow_style=False,
    )


def parse_yaml(content: str, path: str) -> dict[str, Any]:
    """Parse a YAML document that must be a mapping."""
    data = yaml.safe_load(content)
    if not isinstance(data, dict):
        msg = f"Invalid or empty YAML content in {path}"
        raise SyncValidationError(msg)
    return data


def assert_uuid(value: Any, label: str) -> str:
    """Return ``value`` if it is a UUID string, else raise InvalidIdentifierError."""
    if not isinstance(value, str) or not UUID_RE.match(value):
        msg = f"Invalid UUID for {label}: {str(value)[:40]}"
        raise InvalidIdentifierError(msg)
    return value


def decode_json_list(raw: str | None) -> list[Any] | None:
    """Decode a JSON array column; anything else decodes to None."""
    if not raw:
        return None
    try:
        parsed = json.loads(raw)
    except json.JSONDecodeError:
        return None
    return parsed if isinstance(parsed, list) else None


def _decode_json_object(raw: str | None) -> Any:
    if not raw:
        return None
    try:
        return json.loads(raw)
    except json.JSONDecodeError:
        return None


def _encode_json(value: Any) -> str | None:
    return json.dumps(value) if value else None


# ── Serialization ──


def strip_file_references(body: str) -> str:
    """Blank local file values of a form-data body, keeping only the filename."""
    fields = _decode_json_object(body)
    if not isinstance(fields, list):
        return body
    cleaned: list[dict[str, Any]] = []
    for item in fields:
        if not isinstance(item, dict):
            continue
        field_type = item.get("type") or "text"
        if field_type == "file":
            cleaned.append(
                {
                    "key": item.get("key") or "",
                    "value": "",
                    "type": "file",
                    "filename": item.get("filename") or "",
                }
            )
        else:
            cleaned.append(
                {"key": item.get("key") or "", "value": item.get("value") or "", "type": field_type}
            )
    return json.dumps(cleaned)


def request_document(request: Request) -> dict[str, Any]:
    """Build the YAML document for one request."""
    data: dict[str, Any] = {
        "id": request.id,
        "name": request.name,
        "method": request.method,
        "url": request.url,
        "headers": decode_json_list(request.headers) or [],
        "query_params": decode_json_list(request.query_params) or [],
        "body": request.body,
        "body_type": request.body_type,
    }
    scripts = _decode_json_object(request.scripts)
    if scripts:
        data["scripts"] = scripts
    auth = _decode_json_object(request.auth)
    if auth:
        data["auth"] = auth
    if request.body_type == "form-data" and request.body:
        data["body"] = strip_file_references(request.body)
    return data


def serialize_request(request: Request, *, sanitize: bool = False) -> str:
    data = request_document(request)
    if sanitize:
        data = sanitize_request_data(data)
    return to_yaml(data)


def _manifest(folders: list[Folder], requests: list[Request]) -> str:
    items: list[tuple[int, str, str]] = [(f.order, "folder", f.id) for f in folders]
    items.extend((r.order, "request", r.id) for r in requests)
    # Stable sort: on equal order, folders stay ahead of requests
    items.sort(key=lambda item: item[0])
    return to_yaml({"items": [{"type": kind, "id": item_id} for _, kind, item_id in items]})


async def build_environment_hints(
    session: AsyncSession, environment_ids: list[str] | None
) -> dict[str, dict[str, str]]:
    """Return ``{env_id: {vault_path}}`` for referenced vault-backed environments."""
    if not environment_ids:
        return {}
    result = await session.execute(
        select(Environment.id, Environment.vault_path).where(
            Environment.id.in_(environment_ids), Environment.vault_synced.is_(True)
        )
    )
    return {env_id: {"vault_path": path} for env_id, path in result.all() if path}


async def serialize_to_directory(
    session: AsyncSession,
    collection: Collection,
    *,
    sanitize: bool = False,
) -> dict[str, str]:
    """Serialize a collection to ``{relative_path: yaml_text}``.

    Raises FolderDepthExceededError if folders nest deeper than MAX_FOLDER_DEPTH.
    """
    folder_rows = await session.scalars(
        select(Folder)
        .where(Folder.collection_id == collection.id)
        .order_by(Folder.order, literal_column("rowid"))
    )
    request_rows = await session.scalars(
        select(Request)
        .where(Request.collection_id == collection.id)
        .order_by(Request.order, literal_column("rowid"))
    )
    folders_by_parent: dict[str | None, list[Folder]] = defaultdict(list)
    for folder in folder_rows.all():
        folders_by_parent[folder.parent_id].append(folder)
    requests_by_folder: dict[str | None, list[Request]] = defaultdict(list)
    for request in request_rows.all():
        requests_by_folder[request.folder_id].append(request)

    base = collection.id
    files: dict[str, str] = {}

    environment_ids = decode_json_list(collection.environment_ids)
    collection_data: dict[str, Any] = {
        "id": collection.id,
        "name": collection.name,
        "description": collection.description,
        "variables": decode_json_list(collection.variables) or [],
        "environment_ids": environment_ids,
        "default_environment_id": collection.default_environment_id,
    }
    hints = await build_environment_hints(session, environment_ids)
    if hints:
        collection_data["environment_hints"] = hints
    if sanitize:
        collection_data = sanitize_collection_data(collection_data)
    files[f"{base}/{COLLECTION_FILE}"] = to_yaml(collection_data)

    files[f"{base}/{MANIFEST_FILE}"] = _manifest(
        folders_by_parent.get(None, []), requests_by_folder.get(None, [])
    )
    for request in requests_by_folder.get(None, []):
        files[f"{base}/{request.id}.yaml"] = serialize_request(request, sanitize=sanitize)

    # (folder, parent directory, nesting level); top-level folders are level 1
    stack: list[tuple[Folder, str, int]] = [
        (folder, base, 1) for folder in reversed(folders_by_parent.get(None, []))
    ]
    while stack:
        folder, parent_path, level = stack.pop()
        if level > MAX_FOLDER_DEPTH:
            msg = f"Folder nesting depth exceeded maximum of {MAX_FOLDER_DEPTH} levels"
            raise FolderDepthExceededError(msg)

        folder_path = f"{parent_path}/{folder.id}"
        folder_data: dict[str, Any] = {"id": folder.id, "name": folder.name}
        folder_env_ids = decode_json_list(folder.environment_ids)
        if folder_env_ids:
            folder_data["environment_ids"] = folder_env_ids
            folder_data["default_environment_id"] = folder.default_environment_id
            folder_hints = await build_environment_hints(session, folder_env_ids)
            if folder_hints:
                folder_data["environment_hints"] = folder_hints
        files[f"{folder_path}/{FOLDER_FILE}"] = to_yaml(folder_data)

        children = folders_by_parent.get(folder.id, [])
        child_requests = requests_by_folder.get(folder.id, [])
        files[f"{folder_path}/{MANIFEST_FILE}"] = _manifest(children, child_requests)
        for request in child_requests:
            files[f"{folder_path}/{request.id}.yaml"] = serialize_request(
                request, sanitize=sanitize
            )
        stack.extend((child, folder_path, level + 1) for child in reversed(children))

    return files


# ── Environment resolution ──


def _coerce_environment_ids(raw: Any) -> list[str]:
    """Accept a list, a JSON-encoded list, or a single id string."""
    if isinstance(raw, list):
        return [item for item in raw if isinstance(item, str) and item]
    if isinstance(raw, str) and raw:
        try:
            parsed = json.loads(raw)
        except json.JSONDecodeError:
            return [raw]
        if isinstance(parsed, list):
            return [item for item in parsed if isinstance(item, str) and item]
        return []
    return []


async def resolve_environment_refs(
    session: AsyncSession,
    data: Mapping[str, Any],
    workspace_id: str | None,
) -> tuple[list[str] | None, str | None]:
    """Map remote environment references onto local environments.

    1. ids that exist locally are kept;
    2. remaining ids whose ``environment_hints`` entry names a ``vault_path`` are
       remapped to a vault-synced environment of the same workspace with that path;
    3. ``default_environment_id`` follows the same mapping and is dropped when
       it does not resolve.

    Unresolved references are dropped.  Returns ``(environment_ids, default_id)``
    with ``environment_ids`` None when nothing resolves.
    """
    remote_ids = _coerce_environment_ids(data.get("environment_ids"))
    if not remote_ids:
        return None, None

    existing = set(
        (await session.scalars(select(Environment.id).where(Environment.id.in_(remote_ids)))).all()
    )

    mapping: dict[str, str] = {}
    hints = data.get("environment_hints")
    if isinstance(hints, dict):
        hint_paths: dict[str, str] = {}
        for remote_id in remote_ids:
            hint = hints.get(remote_id)
            if remote_id not in existing and isinstance(hint, dict) and hint.get("vault_path"):
                hint_paths[str(hint["vault_path"])] = remote_id
        if hint_paths:
            stmt = select(Environment).where(Environment.vault_synced.is_(True))
            if workspace_id is None:
                stmt = stmt.where(Environment.workspace_id.is_(None))
            else:
                stmt = stmt.where(Environment.workspace_id == workspace_id)
            for env in (await session.scalars(stmt.order_by(Environment.order))).all():
                if env.vault_path and env.vault_path in hint_paths:
                    mapping[hint_paths.pop(env.vault_path)] = env.id

    resolved: list[str] = []
    for remote_id in remote_ids:
        local_id = remote_id if remote_id in existing else mapping.get(remote_id)
        if local_id is not None and local_id not in resolved:
            resolved.append(local_id)

    default_id = data.get("default_environment_id")
    if isinstance(default_id, str):
        default_id = mapping.get(default_id, default_id)
    if default_id not in resolved:
        default_id = None

    return (resolved or None), default_id


# ── Import ──


@dataclass
class _PlannedFolder:
    id: str
    parent_id: str | None
    name: str
    order: int
    environment_ids: list[str] | None
    default_environment_id: str | None


@dataclass
class _PlannedRequest:
    data: dict[str, Any]
    folder_id: str | None
    order: int


@dataclass
class _ImportPlan:
    collection: dict[str, Any]
    environment_ids: list[str] | None
    default_environment_id: str | None
    folders: list[_PlannedFolder] = field(default_factory=list)
    requests: list[_PlannedRequest] = field(default_factory=list)


def _require_name(data: Mapping[str, Any], path: str) -> str:
    name = data.get("name")
    if not isinstance(name, str):
        msg = f"Missing name in {path}"
        raise SyncValidationError(msg)
    return name


def _manifest_items(files: Mapping[str, str], dir_path: str) -> list[tuple[str, str]]:
    manifest_path = f"{dir_path}/{MANIFEST_FILE}"
    content = files.get(manifest_path)
    if not content:
        return []
    items = parse_yaml(content, manifest_path).get("items") or []
    if not isinstance(items, list):
        msg = f"Manifest items must be a list in {manifest_path}"
        raise SyncValidationError(msg)
    parsed: list[tuple[str, str]] = []
    for item in items:
        if not isinstance(item, dict) or item.get("type") not in ("folder", "request"):
            msg = f"Invalid manifest item in {manifest_path}: {item!r}"
            raise SyncValidationError(msg)
        parsed.append((item["type"], assert_uuid(item.get("id"), f"{item['type']} in manifest")))
    return parsed


async def _plan_import(
    session: AsyncSession,
    files: Mapping[str, str],
    workspace_id: str | None,
) -> _ImportPlan:
    """Parse and validate every document without touching the database rows."""
    collection_path = next(
        (path for path in files if path.endswith(f"/{COLLECTION_FILE}") or path == COLLECTION_FILE),
        None,
    )
    if collection_path is None:
        msg = "Collection file not found"
        raise SyncValidationError(msg)
    base = collection_path.rpartition("/")[0]

    collection_data = parse_yaml(files[collection_path], collection_path)
    assert_uuid(collection_data.get("id"), "collection")
    _require_name(collection_data, collection_path)
    env_ids, default_env = await resolve_environment_refs(session, collection_data, workspace_id)
    plan = _ImportPlan(
        collection=collection_data, environment_ids=env_ids, default_environment_id=default_env
    )

    seen: set[str] = set()
    # (directory, owning folder id, nesting level of the directory)
    stack: list[tuple[str, str | None, int]] = [(base, None, 0)]
    while stack:
        dir_path, folder_id, level = stack.pop()
        pending: list[tuple[str, str | None, int]] = []
        order = 0
        for kind, item_id in _manifest_items(files, dir_path):
            if item_id in seen:
                msg = f"Duplicate {kind} id in {dir_path}: {item_id}"
                raise SyncValidationError(msg)

            if kind == "request":
                request_path = f"{dir_path}/{item_id}.yaml"
                if request_path not in files:
                    logger.warning("Manifest references missing request file %s", request_path)
                    continue
                data = parse_yaml(files[request_path], request_path)
                if assert_uuid(data.get("id"), "request") != item_id:
                    msg = f"Request id does not match manifest in {request_path}"
                    raise InvalidIdentifierError(msg)
                _require_name(data, request_path)
                seen.add(item_id)
                plan.requests.append(_PlannedRequest(data=data, folder_id=folder_id, order=order))
                order += 1
                continue

            if level + 1 > MAX_FOLDER_DEPTH:
                msg = f"Folder nesting depth exceeded maximum of {MAX_FOLDER_DEPTH} levels"
                raise FolderDepthExceededError(msg)
            child_dir = f"{dir_path}/{item_id}"
            folder_path = f"{child_dir}/{FOLDER_FILE}"
            if folder_path not in files:
                logger.warning("Manifest references missing folder file %s", folder_path)
                continue
            data = parse_yaml(files[folder_path], folder_path)
            if assert_uuid(data.get("id"), "folder") != item_id:
                msg = f"Folder id does not match manifest in {folder_path}"
                raise InvalidIdentifierError(msg)
            name = _require_name(data, folder_path)
            folder_env_ids, folder_default = await resolve_environment_refs(
                session, data, workspace_id
            )
            seen.add(item_id)
            plan.folders.append(
                _PlannedFolder(
                    id=item_id,
                    parent_id=folder_id,
                    name=name,
                    order=order,
                    environment_ids=folder_env_ids,
                    default_environment_id=folder_default,
                )
            )
            order += 1
            pending.append((child_dir, item_id, level + 1))
        stack.extend(reversed(pending))

    return plan


def _body_text(body: Any) -> str | None:
    if body is None:
        return None
    return body if isinstance(body, str) else json.dumps(body)


async def import_from_directory(
    session: AsyncSession,
    files: Mapping[str, str],
    existing_collection_id: str | None = None,
    workspace_id: str | None = None,
) -> str:
    """Create or overwrite a collection from ``{path: yaml_text}``.

    Every document is validated before the first write, so a malformed tree
    leaves the database untouched.  Writes are flushed but not committed:
    the caller owns the transaction.  Returns the collection id.
    """
    plan = await _plan_import(session, files, workspace_id)
    data = plan.collection
    now = now_iso()
    variables = data.get("variables")
    env_ids_text = json.dumps(plan.environment_ids) if plan.environment_ids else None

    collection = None
    if existing_collection_id is not None:
        collection = await session.get(Collection, existing_collection_id)
        if collection is None:
            msg = f"Collection not found: {existing_collection_id}"
            raise ValueError(msg)

    if collection is not None:
        collection.name = data["name"]
        collection.description = data.get("description")
        collection.variables = json.dumps(variables if variables is not None else [])
        collection.environment_ids = env_ids_text
        collection.default_environment_id = plan.default_environment_id
        collection.updated_at = now
        await session.execute(delete(Request).where(Request.collection_id == collection.id))
        await session.execute(delete(Folder).where(Folder.collection_id == collection.id))
        collection_id = collection.id
    else:
        max_order = await session.scalar(select(func.coalesce(func.max(Collection.order), 0)))
        collection_id = data["id"]
        session.add(
            Collection(
                id=collection_id,
                workspace_id=workspace_id,
                name=data["name"],
                description=data.get("description"),
                variables=json.dumps(variables if variables is not None else []),
                environment_ids=env_ids_text,
                default_environment_id=plan.default_environment_id,
                order=(max_order or 0) + 1,
                sync_enabled=True,
                is_dirty=False,
                created_at=now,
                updated_at=now,
            )
        )

    for planned in plan.folders:
        session.add(
            Folder(
                id=planned.id,
                collection_id=collection_id,
                parent_id=planned.parent_id,
                name=planned.name,
                order=planned.order,
                environment_ids=(
                    json.dumps(planned.environment_ids) if planned.environment_ids else None
                ),
                default_environment_id=planned.default_environment_id,
                created_at=now,
                updated_at=now,
            )
        )
    # Parents must exist before children reference them
    await session.flush()

    for planned_request in plan.requests:
        req = planned_request.data
        session.add(
            Request(
                id=req["id"],
                collection_id=collection_id,
                folder_id=planned_request.folder_id,
                name=req["name"],
                method=req.get("method") or "GET",
                url=req.get("url") or "",
                headers=json.dumps(req.get("headers") or []),
                query_params=json.dumps(req.get("query_params") or []),
                body=_body_text(req.get("body")),
                body_type=req.get("body_type") or "none",
                scripts=_encode_json(req.get("scripts")),
                auth=_encode_json(req.get("auth")),
                order=planned_request.order,
                created_at=now,
                updated_at=now,
            )
        )
    await session.flush()

    logger.info(
        "Imported collection %s (%d folders, %d requests)",
        collection_id,
        len(plan.folders),
        len(plan.requests),
    )
    return collection_id
