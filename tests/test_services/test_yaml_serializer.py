"""Tests for the collection YAML serializer."""

from __future__ import annotations

import json
import uuid
from typing import TYPE_CHECKING

import pytest
import yaml
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from collection_sync.exceptions import (
    FolderDepthExceededError,
    InvalidIdentifierError,
    SyncValidationError,
)
from collection_sync.models.base import Base
from collection_sync.models.collection import Collection, Environment, Folder, Request, Workspace
from collection_sync.services.yaml_serializer import (
    MAX_FOLDER_DEPTH,
    import_from_directory,
    resolve_environment_refs,
    serialize_request,
    serialize_to_directory,
    strip_file_references,
    to_yaml,
)
from tests.conftest import (
    COLLECTION_ID,
    FOLDER_ID,
    REQUEST_NESTED_ID,
    REQUEST_ROOT_ID,
    seed_collection,
)

if TYPE_CHECKING:
    from collections.abc import AsyncGenerator
    from pathlib import Path


@pytest.fixture
async def other_session(tmp_path: Path) -> AsyncGenerator[AsyncSession]:
    """A session on a second, empty database."""
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'other.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    factory = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
    async with factory() as session:
        yield session
    await engine.dispose()


def _new_id() -> str:
    return str(uuid.uuid4())


async def _folder_chain(session: AsyncSession, collection_id: str, depth: int) -> list[str]:
    """Create ``depth`` folders, each nested in the previous one."""
    ids: list[str] = []
    parent: str | None = None
    for level in range(depth):
        folder_id = _new_id()
        session.add(
            Folder(id=folder_id, collection_id=collection_id, parent_id=parent, name=f"L{level}")
        )
        ids.append(folder_id)
        parent = folder_id
    await session.commit()
    return ids


def _chain_files(depth: int) -> dict[str, str]:
    """Hand-written directory with ``depth`` nested folders."""
    collection_id = _new_id()
    files = {f"{collection_id}/_collection.yaml": to_yaml({"id": collection_id, "name": "Deep"})}
    path = collection_id
    for level in range(depth):
        folder_id = _new_id()
        files[f"{path}/_manifest.yaml"] = to_yaml({"items": [{"type": "folder", "id": folder_id}]})
        path = f"{path}/{folder_id}"
        files[f"{path}/_folder.yaml"] = to_yaml({"id": folder_id, "name": f"L{level}"})
    return files


class TestSerializeToDirectory:
    @pytest.mark.asyncio
    async def test_my_api_produces_six_documents(self, db_session: AsyncSession) -> None:
        collection = await seed_collection(db_session)
        files = await serialize_to_directory(db_session, collection)

        assert sorted(files) == sorted(
            [
                f"{COLLECTION_ID}/_collection.yaml",
                f"{COLLECTION_ID}/_manifest.yaml",
                f"{COLLECTION_ID}/{REQUEST_ROOT_ID}.yaml",
                f"{COLLECTION_ID}/{FOLDER_ID}/_folder.yaml",
                f"{COLLECTION_ID}/{FOLDER_ID}/_manifest.yaml",
                f"{COLLECTION_ID}/{FOLDER_ID}/{REQUEST_NESTED_ID}.yaml",
            ]
        )

    @pytest.mark.asyncio
    async def test_collection_document_keys_in_order(self, db_session: AsyncSession) -> None:
        collection = await seed_collection(db_session)
        files = await serialize_to_directory(db_session, collection)

        data = yaml.safe_load(files[f"{COLLECTION_ID}/_collection.yaml"])
        assert list(data) == [
            "id",
            "name",
            "description",
            "variables",
            "environment_ids",
            "default_environment_id",
        ]
        assert data["variables"] == [{"key": "baseUrl", "value": "https://api.example.com"}]
        assert data["environment_ids"] is None

    @pytest.mark.asyncio
    async def test_manifest_lists_children_by_order(self, db_session: AsyncSession) -> None:
        collection = await seed_collection(db_session)
        files = await serialize_to_directory(db_session, collection)

        root = yaml.safe_load(files[f"{COLLECTION_ID}/_manifest.yaml"])
        assert root == {
            "items": [
                {"type": "folder", "id": FOLDER_ID},
                {"type": "request", "id": REQUEST_ROOT_ID},
            ]
        }
        nested = yaml.safe_load(files[f"{COLLECTION_ID}/{FOLDER_ID}/_manifest.yaml"])
        assert nested == {"items": [{"type": "request", "id": REQUEST_NESTED_ID}]}

    @pytest.mark.asyncio
    async def test_equal_order_keeps_folders_first(self, db_session: AsyncSession) -> None:
        collection = await seed_collection(db_session)
        request = await db_session.get(Request, REQUEST_ROOT_ID)
        assert request is not None
        request.order = 0
        await db_session.commit()

        files = await serialize_to_directory(db_session, collection)
        items = yaml.safe_load(files[f"{COLLECTION_ID}/_manifest.yaml"])["items"]
        assert [item["type"] for item in items] == ["folder", "request"]

    @pytest.mark.asyncio
    async def test_request_document_omits_empty_auth_and_scripts(
        self, db_session: AsyncSession
    ) -> None:
        collection = await seed_collection(db_session)
        files = await serialize_to_directory(db_session, collection)

        data = yaml.safe_load(files[f"{COLLECTION_ID}/{FOLDER_ID}/{REQUEST_NESTED_ID}.yaml"])
        assert list(data) == [
            "id",
            "name",
            "method",
            "url",
            "headers",
            "query_params",
            "body",
            "body_type",
        ]
        assert data["headers"] == [{"key": "Accept", "value": "application/json"}]
        assert data["query_params"] == []

    @pytest.mark.asyncio
    async def test_output_has_no_aliases_or_wrapping(self, db_session: AsyncSession) -> None:
        collection = await seed_collection(db_session)
        long_url = "https://api.example.com/" + "segment/" * 40
        request = await db_session.get(Request, REQUEST_ROOT_ID)
        assert request is not None
        request.url = long_url
        request.headers = json.dumps([{"key": "A", "value": "x"}, {"key": "A", "value": "x"}])
        await db_session.commit()

        text = (await serialize_to_directory(db_session, collection))[
            f"{COLLECTION_ID}/{REQUEST_ROOT_ID}.yaml"
        ]
        assert f"url: {long_url}\n" in text
        assert "&id" not in text
        assert "*id" not in text

    @pytest.mark.asyncio
    async def test_environment_hints_for_vault_environments(
        self, db_session: AsyncSession
    ) -> None:
        env_id = _new_id()
        db_session.add(
            Environment(id=env_id, name="Prod", vault_synced=True, vault_path="kv/prod")
        )
        collection = await seed_collection(
            db_session, environment_ids=json.dumps([env_id]), default_environment_id=env_id
        )

        files = await serialize_to_directory(db_session, collection)
        data = yaml.safe_load(files[f"{COLLECTION_ID}/_collection.yaml"])
        assert data["environment_ids"] == [env_id]
        assert data["default_environment_id"] == env_id
        assert data["environment_hints"] == {env_id: {"vault_path": "kv/prod"}}

    @pytest.mark.asyncio
    async def test_twenty_levels_serialize(self, db_session: AsyncSession) -> None:
        collection = await seed_collection(db_session)
        await _folder_chain(db_session, COLLECTION_ID, MAX_FOLDER_DEPTH)

        files = await serialize_to_directory(db_session, collection)
        folder_files = [path for path in files if path.endswith("/_folder.yaml")]
        assert len(folder_files) == MAX_FOLDER_DEPTH + 1

    @pytest.mark.asyncio
    async def test_twenty_one_levels_fail(self, db_session: AsyncSession) -> None:
        collection = await seed_collection(db_session)
        await _folder_chain(db_session, COLLECTION_ID, MAX_FOLDER_DEPTH + 1)

        with pytest.raises(FolderDepthExceededError, match="maximum of 20 levels"):
            await serialize_to_directory(db_session, collection)


class TestRequestSerialization:
    def test_form_data_file_values_are_blanked(self) -> None:
        body = json.dumps(
            [
                {"key": "name", "value": "Ada", "type": "text"},
                {
                    "key": "avatar",
                    "value": "/home/ada/avatar.png",
                    "type": "file",
                    "filename": "avatar.png",
                },
            ]
        )
        assert json.loads(strip_file_references(body)) == [
            {"key": "name", "value": "Ada", "type": "text"},
            {"key": "avatar", "value": "", "type": "file", "filename": "avatar.png"},
        ]

    def test_non_list_body_is_unchanged(self) -> None:
        assert strip_file_references("plain text") == "plain text"

    def test_sanitize_blanks_secret_header(self) -> None:
        request = Request(
            id=REQUEST_ROOT_ID,
            collection_id=COLLECTION_ID,
            name="Secret",
            method="GET",
            url="https://api.example.com",
            headers=json.dumps([{"key": "X-Api-Key", "value": "sk_live_12345"}]),
            body_type="none",
            auth=json.dumps({"type": "bearer", "bearer_token": "tok_abcdef"}),
        )
        data = yaml.safe_load(serialize_request(request, sanitize=True))
        assert data["headers"] == [{"key": "X-Api-Key", "value": ""}]
        assert data["auth"] == {"type": "bearer", "bearer_token": ""}

        plain = yaml.safe_load(serialize_request(request))
        assert plain["headers"][0]["value"] == "sk_live_12345"


class TestImportFromDirectory:
    @pytest.mark.asyncio
    async def test_import_into_empty_database(
        self, db_session: AsyncSession, other_session: AsyncSession
    ) -> None:
        collection = await seed_collection(db_session)
        files = await serialize_to_directory(db_session, collection)

        imported_id = await import_from_directory(other_session, files)
        await other_session.commit()

        assert imported_id == COLLECTION_ID
        imported = await other_session.get(Collection, COLLECTION_ID)
        assert imported is not None
        assert imported.name == "My API"
        assert imported.sync_enabled is True
        assert imported.is_dirty is False
        folder = await other_session.get(Folder, FOLDER_ID)
        assert folder is not None
        assert folder.parent_id is None
        nested = await other_session.get(Request, REQUEST_NESTED_ID)
        assert nested is not None
        assert nested.folder_id == FOLDER_ID
        assert json.loads(nested.headers or "[]") == [
            {"key": "Accept", "value": "application/json"}
        ]

        assert await serialize_to_directory(other_session, imported) == files

    @pytest.mark.asyncio
    async def test_order_follows_manifest_position(
        self, db_session: AsyncSession, other_session: AsyncSession
    ) -> None:
        collection = await seed_collection(db_session)
        files = await serialize_to_directory(db_session, collection)

        await import_from_directory(other_session, files)
        folder = await other_session.get(Folder, FOLDER_ID)
        root_request = await other_session.get(Request, REQUEST_ROOT_ID)
        assert folder is not None
        assert root_request is not None
        assert (folder.order, root_request.order) == (0, 1)

    @pytest.mark.asyncio
    async def test_overwrite_existing_collection(self, db_session: AsyncSession) -> None:
        collection = await seed_collection(db_session)
        files = await serialize_to_directory(db_session, collection)
        manifest_path = f"{COLLECTION_ID}/_manifest.yaml"
        files[manifest_path] = to_yaml({"items": [{"type": "request", "id": REQUEST_ROOT_ID}]})
        files[f"{COLLECTION_ID}/_collection.yaml"] = to_yaml(
            {"id": COLLECTION_ID, "name": "Renamed", "variables": []}
        )
        db_session.expunge_all()

        await import_from_directory(db_session, files, existing_collection_id=COLLECTION_ID)
        await db_session.commit()

        updated = await db_session.get(Collection, COLLECTION_ID)
        assert updated is not None
        assert updated.name == "Renamed"
        remaining = (await db_session.scalars(select(Request.id))).all()
        assert remaining == [REQUEST_ROOT_ID]
        assert await db_session.scalar(select(func.count()).select_from(Folder)) == 0

    @pytest.mark.asyncio
    async def test_invalid_request_id_aborts_before_any_write(
        self, db_session: AsyncSession, other_session: AsyncSession
    ) -> None:
        collection = await seed_collection(db_session)
        files = await serialize_to_directory(db_session, collection)
        path = f"{COLLECTION_ID}/{FOLDER_ID}/{REQUEST_NESTED_ID}.yaml"
        data = yaml.safe_load(files[path])
        data["id"] = "../../etc/passwd"
        files[path] = to_yaml(data)

        with pytest.raises(InvalidIdentifierError):
            await import_from_directory(other_session, files)
        assert await other_session.scalar(select(func.count()).select_from(Collection)) == 0
        assert await other_session.scalar(select(func.count()).select_from(Request)) == 0

    @pytest.mark.asyncio
    async def test_invalid_manifest_id_is_rejected(self, other_session: AsyncSession) -> None:
        collection_id = _new_id()
        files = {
            f"{collection_id}/_collection.yaml": to_yaml({"id": collection_id, "name": "X"}),
            f"{collection_id}/_manifest.yaml": to_yaml(
                {"items": [{"type": "request", "id": "not-a-uuid"}]}
            ),
        }
        with pytest.raises(InvalidIdentifierError, match="Invalid UUID"):
            await import_from_directory(other_session, files)

    @pytest.mark.asyncio
    async def test_invalid_collection_id_is_rejected(self, other_session: AsyncSession) -> None:
        files = {"abc/_collection.yaml": to_yaml({"id": "abc", "name": "X"})}
        with pytest.raises(InvalidIdentifierError):
            await import_from_directory(other_session, files)

    @pytest.mark.asyncio
    async def test_missing_collection_file(self, other_session: AsyncSession) -> None:
        with pytest.raises(SyncValidationError, match="Collection file not found"):
            await import_from_directory(other_session, {"x/_manifest.yaml": "items: []\n"})

    @pytest.mark.asyncio
    async def test_missing_name_is_rejected(self, other_session: AsyncSession) -> None:
        collection_id = _new_id()
        files = {f"{collection_id}/_collection.yaml": to_yaml({"id": collection_id})}
        with pytest.raises(SyncValidationError, match="Missing name"):
            await import_from_directory(other_session, files)

    @pytest.mark.asyncio
    async def test_scalar_document_is_rejected(self, other_session: AsyncSession) -> None:
        with pytest.raises(SyncValidationError, match="Invalid or empty YAML"):
            await import_from_directory(other_session, {"c/_collection.yaml": "just a string\n"})

    @pytest.mark.asyncio
    async def test_missing_request_file_is_skipped(self, other_session: AsyncSession) -> None:
        collection_id = _new_id()
        files = {
            f"{collection_id}/_collection.yaml": to_yaml({"id": collection_id, "name": "X"}),
            f"{collection_id}/_manifest.yaml": to_yaml(
                {"items": [{"type": "request", "id": _new_id()}]}
            ),
        }
        await import_from_directory(other_session, files)
        assert await other_session.scalar(select(func.count()).select_from(Request)) == 0

    @pytest.mark.asyncio
    async def test_twenty_levels_import(self, other_session: AsyncSession) -> None:
        await import_from_directory(other_session, _chain_files(MAX_FOLDER_DEPTH))
        count = await other_session.scalar(select(func.count()).select_from(Folder))
        assert count == MAX_FOLDER_DEPTH

    @pytest.mark.asyncio
    async def test_twenty_one_levels_fail_before_any_write(
        self, other_session: AsyncSession
    ) -> None:
        with pytest.raises(FolderDepthExceededError):
            await import_from_directory(other_session, _chain_files(MAX_FOLDER_DEPTH + 1))
        assert await other_session.scalar(select(func.count()).select_from(Collection)) == 0

    @pytest.mark.asyncio
    async def test_missing_body_type_defaults_to_none(self, other_session: AsyncSession) -> None:
        collection_id = _new_id()
        request_id = _new_id()
        files = {
            f"{collection_id}/_collection.yaml": to_yaml({"id": collection_id, "name": "X"}),
            f"{collection_id}/_manifest.yaml": to_yaml(
                {"items": [{"type": "request", "id": request_id}]}
            ),
            f"{collection_id}/{request_id}.yaml": to_yaml({"id": request_id, "name": "R"}),
        }
        await import_from_directory(other_session, files)
        request = await other_session.get(Request, request_id)
        assert request is not None
        assert request.body_type == "none"
        assert request.method == "GET"
        assert request.url == ""

    @pytest.mark.asyncio
    async def test_auth_scripts_and_structured_body_are_imported(
        self, other_session: AsyncSession
    ) -> None:
        collection_id = _new_id()
        request_id = _new_id()
        auth = {"type": "bearer", "token": "{{token}}"}
        scripts = {"pre_request": "setHeader('X-Trace', '1')", "test": "expect(status).toBe(200)"}
        files = {
            f"{collection_id}/_collection.yaml": to_yaml({"id": collection_id, "name": "X"}),
            f"{collection_id}/_manifest.yaml": to_yaml(
                {"items": [{"type": "request", "id": request_id}]}
            ),
            f"{collection_id}/{request_id}.yaml": to_yaml(
                {
                    "id": request_id,
                    "name": "R",
                    "method": "POST",
                    "body": {"user": "ada"},
                    "body_type": "json",
                    "auth": auth,
                    "scripts": scripts,
                }
            ),
        }
        await import_from_directory(other_session, files)
        request = await other_session.get(Request, request_id)
        assert request is not None
        assert json.loads(request.auth or "null") == auth
        assert json.loads(request.scripts or "null") == scripts
        assert json.loads(request.body or "null") == {"user": "ada"}

        document = yaml.safe_load(serialize_request(request))
        assert document["auth"] == auth
        assert document["scripts"] == scripts


class TestResolveEnvironmentRefs:
    @pytest.mark.asyncio
    async def test_existing_ids_are_kept(self, db_session: AsyncSession) -> None:
        env_id = _new_id()
        db_session.add(Environment(id=env_id, name="Dev"))
        await db_session.commit()

        result = await resolve_environment_refs(
            db_session, {"environment_ids": [env_id], "default_environment_id": env_id}, None
        )
        assert result == ([env_id], env_id)

    @pytest.mark.asyncio
    async def test_vault_hint_remaps_unknown_id(self, db_session: AsyncSession) -> None:
        local_id = _new_id()
        remote_id = _new_id()
        db_session.add(
            Environment(id=local_id, name="Prod", vault_synced=True, vault_path="kv/prod")
        )
        await db_session.commit()

        data = {
            "environment_ids": [remote_id],
            "default_environment_id": remote_id,
            "environment_hints": {remote_id: {"vault_path": "kv/prod"}},
        }
        assert await resolve_environment_refs(db_session, data, None) == ([local_id], local_id)

    @pytest.mark.asyncio
    async def test_unresolved_refs_are_dropped(self, db_session: AsyncSession) -> None:
        remote_id = _new_id()
        data = {"environment_ids": [remote_id], "default_environment_id": remote_id}
        assert await resolve_environment_refs(db_session, data, None) == (None, None)

    @pytest.mark.asyncio
    async def test_json_encoded_id_list_is_accepted(self, db_session: AsyncSession) -> None:
        env_id = _new_id()
        db_session.add(Environment(id=env_id, name="Dev"))
        await db_session.commit()

        data = {"environment_ids": json.dumps([env_id])}
        assert await resolve_environment_refs(db_session, data, None) == ([env_id], None)

    @pytest.mark.asyncio
    async def test_hint_only_matches_same_workspace(self, db_session: AsyncSession) -> None:
        workspace_a = Workspace(id=_new_id(), name="A")
        workspace_b = Workspace(id=_new_id(), name="B")
        db_session.add_all([workspace_a, workspace_b])
        db_session.add(
            Environment(
                id=_new_id(),
                workspace_id=workspace_b.id,
                name="Prod",
                vault_synced=True,
                vault_path="kv/prod",
            )
        )
        await db_session.commit()

        remote_id = _new_id()
        data = {
            "environment_ids": [remote_id],
            "environment_hints": {remote_id: {"vault_path": "kv/prod"}},
        }
        assert await resolve_environment_refs(db_session, data, workspace_a.id) == (None, None)

    @pytest.mark.asyncio
    async def test_non_vault_environment_is_not_a_hint_target(
        self, db_session: AsyncSession
    ) -> None:
        db_session.add(
            Environment(id=_new_id(), name="Prod", vault_synced=False, vault_path="kv/prod")
        )
        await db_session.commit()

        remote_id = _new_id()
        data = {
            "environment_ids": [remote_id],
            "environment_hints": {remote_id: {"vault_path": "kv/prod"}},
        }
        assert await resolve_environment_refs(db_session, data, None) == (None, None)
