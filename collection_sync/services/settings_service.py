"""Stored sync settings with per-workspace overrides.

Global values live in ``app_settings``; a workspace may override any key in
the JSON object stored in ``workspaces.settings``.  The access token is
encrypted at rest with a Fernet key derived from the application secret.
"""

from __future__ import annotations

import base64
import hashlib
import json
import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

from cryptography.fernet import Fernet, InvalidToken
from sqlalchemy import select

from collection_sync.models.collection import Workspace
from collection_sync.models.settings import AppSetting
from collection_sync.services.datetime_service import now_iso

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession

logger = logging.getLogger(__name__)

SYNC_PROVIDER = "sync.provider"
SYNC_REPOSITORY = "sync.repository"
SYNC_TOKEN = "sync.token"
SYNC_BRANCH = "sync.branch"
SYNC_AUTO_SYNC = "sync.auto_sync"

SYNC_KEYS: tuple[str, ...] = (
    SYNC_PROVIDER,
    SYNC_REPOSITORY,
    SYNC_TOKEN,
    SYNC_BRANCH,
    SYNC_AUTO_SYNC,
)
SENSITIVE_KEYS: frozenset[str] = frozenset({SYNC_TOKEN})

DEFAULT_BRANCH = "main"

_TRUTHY = frozenset({"1", "true", "yes", "on"})


@dataclass(frozen=True)
class SyncConfig:
    """Resolved remote sync configuration for one scope."""

    provider: str | None
    repository: str | None
    token: str | None
    branch: str = DEFAULT_BRANCH
    auto_sync: bool = False

    @property
    def is_complete(self) -> bool:
        """True when provider, repository and token are all set."""
        return bool(self.provider and self.repository and self.token)


def _derive_key(secret_key: str) -> bytes:
    digest = hashlib.sha256(secret_key.encode()).digest()
    return base64.urlsafe_b64encode(digest)


def encrypt_value(plaintext: str, secret_key: str) -> str:
    """Encrypt a setting value and return the ciphertext as a URL-safe string."""
    return Fernet(_derive_key(secret_key)).encrypt(plaintext.encode()).decode()


def decrypt_value(ciphertext: str, secret_key: str) -> str:
    """Decrypt a setting value. Raises ValueError on failure."""
    try:
        return Fernet(_derive_key(secret_key)).decrypt(ciphertext.encode()).decode()
    except InvalidToken as exc:
        raise ValueError("Failed to decrypt setting value") from exc


def _decode_stored(key: str, value: str, secret_key: str) -> str:
    if key not in SENSITIVE_KEYS or not value:
        return value
    try:
        return decrypt_value(value, secret_key)
    except ValueError:
        # Stored before encryption was introduced
        logger.warning("Setting %s is stored unencrypted", key)
        return value


def _encode_stored(key: str, value: str, secret_key: str) -> str:
    if key in SENSITIVE_KEYS and value:
        return encrypt_value(value, secret_key)
    return value


def _workspace_settings(workspace: Workspace) -> dict[str, Any]:
    if not workspace.settings:
        return {}
    try:
        data = json.loads(workspace.settings)
    except json.JSONDecodeError:
        logger.warning("Workspace %s has malformed settings JSON", workspace.id)
        return {}
    return data if isinstance(data, dict) else {}


async def get_setting(
    session: AsyncSession,
    key: str,
    secret_key: str,
    workspace_id: str | None = None,
) -> str | None:
    """Return a setting value, preferring the workspace override when present."""
    if workspace_id is not None:
        workspace = await session.get(Workspace, workspace_id)
        if workspace is not None:
            overrides = _workspace_settings(workspace)
            if key in overrides and overrides[key] is not None:
                return _decode_stored(key, str(overrides[key]), secret_key)

    row = await session.get(AppSetting, key)
    if row is None:
        return None
    return _decode_stored(key, row.value, secret_key)


async def set_setting(
    session: AsyncSession,
    key: str,
    value: str | None,
    secret_key: str,
    workspace_id: str | None = None,
) -> None:
    """Store a setting (globally or as a workspace override). ``None`` removes it.

    Does not commit.
    """
    if workspace_id is not None:
        workspace = await session.get(Workspace, workspace_id)
        if workspace is None:
            msg = f"Workspace not found: {workspace_id}"
            raise ValueError(msg)
        overrides = _workspace_settings(workspace)
        if value is None:
            overrides.pop(key, None)
        else:
            overrides[key] = _encode_stored(key, value, secret_key)
        workspace.settings = json.dumps(overrides)
        workspace.updated_at = now_iso()
        return

    row = await session.get(AppSetting, key)
    if value is None:
        if row is not None:
            await session.delete(row)
        return
    stored = _encode_stored(key, value, secret_key)
    if row is None:
        session.add(AppSetting(key=key, value=stored))
    else:
        row.value = stored


async def load_sync_config(
    session: AsyncSession,
    secret_key: str,
    workspace_id: str | None = None,
) -> SyncConfig:
    """Resolve the sync configuration for a workspace, falling back to global values."""
    values = {key: await get_setting(session, key, secret_key, workspace_id) for key in SYNC_KEYS}
    auto_sync = (values[SYNC_AUTO_SYNC] or "").strip().lower() in _TRUTHY
    return SyncConfig(
        provider=values[SYNC_PROVIDER] or None,
        repository=values[SYNC_REPOSITORY] or None,
        token=values[SYNC_TOKEN] or None,
        branch=values[SYNC_BRANCH] or DEFAULT_BRANCH,
        auto_sync=auto_sync,
    )


async def list_sync_workspace_ids(session: AsyncSession) -> list[str]:
    """Return ids of workspaces that carry any sync override."""
    result = await session.execute(select(Workspace))
    return [
        ws.id
        for ws in result.scalars().all()
        if any(key in _workspace_settings(ws) for key in SYNC_KEYS)
    ]
