"""
Runtime sync configuration stored in the key-value store.

Connection settings for the remote tracker, per-feature sync options, the
reconciliation schedule and the three translation tables are edited through
the admin API and read by every sync invocation.
"""

import logging
import re
from typing import List, Literal, Optional
from urllib.parse import urlparse

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

from app.core.kv_store import SqlKeyValueStore
from app.core.logging_utils import sanitize_url_for_logging
from app.core.translation import TABLE_STORAGE_KEYS, TranslationTable


logger = logging.getLogger(__name__)

SYNC_CONFIG_KEY = "syncConfig"
SYNC_OPTIONS_KEY = "syncOptions"
SCHEDULED_CONFIG_KEY = "scheduledSyncConfig"

_EMAIL_RE = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")
_PROJECT_KEY_RE = re.compile(r"^[A-Z][A-Z0-9_]*$")


class SyncConfigurationError(Exception):
    """Connection settings are missing or incomplete."""
    pass


class _StoredModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def to_storage(self) -> dict:
        return self.model_dump(by_alias=True)


class SyncConfig(_StoredModel):
    """Remote tracker connection and project scoping."""

    remote_url: str = ""
    remote_email: str = ""
    remote_api_token: str = Field(default="", max_length=1000)
    remote_project_key: str = ""
    allowed_projects: List[str] = Field(default_factory=list)
    sync_direction: Literal["one-way", "bidirectional"] = "one-way"
    webhook_secret: str = Field(default="", max_length=500)

    @field_validator("remote_url")
    @classmethod
    def _check_url(cls, value: str) -> str:
        value = value.strip().rstrip("/")
        if not value:
            return value
        parsed = urlparse(value)
        if parsed.scheme not in ("http", "https") or not parsed.netloc:
            raise ValueError("remote_url must be an http or https URL")
        return value

    @field_validator("remote_email")
    @classmethod
    def _check_email(cls, value: str) -> str:
        value = value.strip()
        if value and not _EMAIL_RE.match(value):
            raise ValueError("remote_email is not a valid email address")
        return value

    @field_validator("remote_project_key")
    @classmethod
    def _check_project_key(cls, value: str) -> str:
        value = value.strip().upper()
        if value and not _PROJECT_KEY_RE.match(value):
            raise ValueError("remote_project_key must be a tracker project key")
        return value

    @field_validator("allowed_projects")
    @classmethod
    def _check_allowed_projects(cls, value: List[str]) -> List[str]:
        cleaned = []
        for key in value:
            key = key.strip().upper()
            if not key:
                continue
            if not _PROJECT_KEY_RE.match(key):
                raise ValueError(f"Invalid project key in allowed_projects: {key}")
            if key not in cleaned:
                cleaned.append(key)
        return cleaned

    @property
    def is_configured(self) -> bool:
        return bool(self.remote_url and self.remote_email and self.remote_api_token and self.remote_project_key)

    def require_configured(self) -> None:
        missing = [
            name for name, value in (
                ("remote_url", self.remote_url),
                ("remote_email", self.remote_email),
                ("remote_api_token", self.remote_api_token),
                ("remote_project_key", self.remote_project_key),
            ) if not value
        ]
        if missing:
            raise SyncConfigurationError(f"Sync not configured: missing {', '.join(missing)}")

    @property
    def is_bidirectional(self) -> bool:
        return self.sync_direction == "bidirectional"


class SyncOptions(_StoredModel):
    """Feature switches for the sub-steps of an issue sync."""

    sync_comments: bool = True
    sync_attachments: bool = True
    sync_links: bool = True
    sync_sprints: bool = False


class ScheduledSyncConfig(_StoredModel):
    """Reconciliation scanner schedule."""

    enabled: bool = False
    interval_minutes: int = Field(default=60, ge=1, le=1440)
    sync_scope: Literal["recent", "all"] = "recent"


def is_project_allowed(project_key: Optional[str], config: SyncConfig) -> bool:
    """An empty allow list admits every project."""
    if not config.allowed_projects:
        return True
    return bool(project_key) and project_key.upper() in config.allowed_projects


class ConfigStore:
    """Load and save the stored sync configuration."""

    def __init__(self, kv: SqlKeyValueStore):
        self.kv = kv

    async def get_sync_config(self) -> SyncConfig:
        return SyncConfig.model_validate(await self.kv.get(SYNC_CONFIG_KEY) or {})

    async def save_sync_config(self, config: SyncConfig) -> None:
        await self.kv.set(SYNC_CONFIG_KEY, config.to_storage())
        logger.info(
            f"Saved sync configuration (remote: {sanitize_url_for_logging(config.remote_url)}, "
            f"project: {config.remote_project_key or 'unset'}, direction: {config.sync_direction})"
        )

    async def get_sync_options(self) -> SyncOptions:
        return SyncOptions.model_validate(await self.kv.get(SYNC_OPTIONS_KEY) or {})

    async def save_sync_options(self, options: SyncOptions) -> None:
        await self.kv.set(SYNC_OPTIONS_KEY, options.to_storage())

    async def get_scheduled_config(self) -> ScheduledSyncConfig:
        return ScheduledSyncConfig.model_validate(await self.kv.get(SCHEDULED_CONFIG_KEY) or {})

    async def save_scheduled_config(self, config: ScheduledSyncConfig) -> None:
        await self.kv.set(SCHEDULED_CONFIG_KEY, config.to_storage())

    async def get_table(self, table_name: str) -> TranslationTable:
        return TranslationTable.from_raw(await self.kv.get(TABLE_STORAGE_KEYS[table_name]))

    async def save_table(self, table_name: str, table: TranslationTable) -> List[str]:
        """
        Persist a translation table.

        Returns:
            Local ids mapped from more than one remote id. Such tables are
            saved anyway; inbound and outbound lookups may then disagree.
        """
        duplicates = table.duplicate_local_ids()
        if duplicates:
            logger.warning(
                f"Translation table '{table_name}' maps several remote ids to the same local id: "
                f"{', '.join(duplicates)}"
            )
        await self.kv.set(TABLE_STORAGE_KEYS[table_name], table.to_raw())
        return duplicates
