"""SQLAlchemy ORM models for collection sync."""

from collection_sync.models.base import Base
from collection_sync.models.collection import Collection, Environment, Folder, Request, Workspace
from collection_sync.models.settings import AppSetting
from collection_sync.models.sync import SyncFileState

__all__ = [
    "AppSetting",
    "Base",
    "Collection",
    "Environment",
    "Folder",
    "Request",
    "SyncFileState",
    "Workspace",
]
