"""Persisted credential/config records keyed by provider identifier."""

import asyncio
import json
from abc import ABC, abstractmethod
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

import aiosqlite
from pydantic import BaseModel, Field, ValidationError

from synergy_core.config import get_config
from synergy_core.exceptions import ConfigurationError
from synergy_core.logging import get_logger

log = get_logger(__name__)


def _utcnow_iso() -> str:
    """Return current UTC timestamp in ISO format."""
    return datetime.now(UTC).isoformat()


def record_key(kind: str, provider_id: str) -> str:
    """Storage key for a provider record, e.g. ``client:jira``."""
    return f"{kind}:{provider_id}"


class ProviderRecord(BaseModel):
    """Credentials, config and activation flag for one provider."""

    credentials: dict[str, Any] = Field(default_factory=dict)
    config: dict[str, Any] = Field(default_factory=dict)
    is_active: bool | None = None

    @property
    def enabled(self) -> bool:
        """Only an explicit ``is_active: false`` disables a provider."""
        return self.is_active is not False


def _parse_record(key: str, raw: str) -> ProviderRecord:
    try:
        return ProviderRecord.model_validate(json.loads(raw))
    except (json.JSONDecodeError, ValidationError, TypeError) as e:
        raise ConfigurationError(f"Malformed provider record '{key}': {e}") from e


class ProviderConfigStore(ABC):
    """Keyed storage for provider records."""

    @abstractmethod
    async def get(self, key: str) -> ProviderRecord | None:
        """Load a record.

        Raises:
            ConfigurationError if the stored blob is malformed
        """
        pass

    @abstractmethod
    async def set(self, key: str, record: ProviderRecord) -> None:
        pass

    @abstractmethod
    async def delete(self, key: str) -> bool:
        pass

    @abstractmethod
    async def list_keys(self) -> list[str]:
        pass

    async def close(self) -> None:
        return None

    async def get_client_record(self, client_id: str) -> ProviderRecord | None:
        return await self.get(record_key("client", client_id))

    async def get_agent_record(self, agent_id: str) -> ProviderRecord | None:
        return await self.get(record_key("agent", agent_id))


class MemoryConfigStore(ProviderConfigStore):
    """In-process store; records are kept serialized like the SQLite store."""

    def __init__(self, records: dict[str, ProviderRecord | dict[str, Any]] | None = None):
        self._blobs: dict[str, str] = {}
        for key, record in (records or {}).items():
            if isinstance(record, dict):
                record = ProviderRecord.model_validate(record)
            self._blobs[key] = record.model_dump_json()

    def put_raw(self, key: str, raw: str) -> None:
        """Store an unvalidated blob (used to simulate corrupt storage)."""
        self._blobs[key] = raw

    async def get(self, key: str) -> ProviderRecord | None:
        raw = self._blobs.get(key)
        if raw is None:
            return None
        return _parse_record(key, raw)

    async def set(self, key: str, record: ProviderRecord) -> None:
        self._blobs[key] = record.model_dump_json()

    async def delete(self, key: str) -> bool:
        return self._blobs.pop(key, None) is not None

    async def list_keys(self) -> list[str]:
        return sorted(self._blobs)


class SQLiteConfigStore(ProviderConfigStore):
    """Provider records stored as JSON blobs in SQLite."""

    def __init__(self, db_path: Path | str | None = None):
        """Initialize the store.

        Args:
            db_path: Optional database path override
        """
        if db_path is None:
            self.db_path = get_config().resolved_store_path()
        else:
            self.db_path = Path(db_path).expanduser()

        self.db_path.parent.mkdir(parents=True, exist_ok=True)

        self._db: aiosqlite.Connection | None = None
        self._db_lock = asyncio.Lock()

    async def _ensure_db(self) -> None:
        """Ensure database is initialized; concurrent callers share one connection."""
        if self._db is not None:
            return
        async with self._db_lock:
            if self._db is not None:
                return
            db = await aiosqlite.connect(str(self.db_path))
            await db.execute("""
                CREATE TABLE IF NOT EXISTS provider_records (
                    key TEXT PRIMARY KEY,
                    data TEXT NOT NULL DEFAULT '{}',
                    updated_at TEXT NOT NULL
                )
            """)
            await db.commit()
            self._db = db

    async def get(self, key: str) -> ProviderRecord | None:
        await self._ensure_db()

        async with self._db.execute(
            "SELECT data FROM provider_records WHERE key = ?",
            (key,),
        ) as cursor:
            row = await cursor.fetchone()

        if not row:
            return None
        return _parse_record(key, row[0])

    async def set(self, key: str, record: ProviderRecord) -> None:
        await self._ensure_db()

        await self._db.execute(
            "INSERT OR REPLACE INTO provider_records (key, data, updated_at) VALUES (?, ?, ?)",
            (key, record.model_dump_json(), _utcnow_iso()),
        )
        await self._db.commit()
        log.debug("Saved provider record", key=key)

    async def delete(self, key: str) -> bool:
        await self._ensure_db()

        cursor = await self._db.execute(
            "DELETE FROM provider_records WHERE key = ?",
            (key,),
        )
        await self._db.commit()
        return cursor.rowcount > 0

    async def list_keys(self) -> list[str]:
        await self._ensure_db()

        async with self._db.execute("SELECT key FROM provider_records ORDER BY key") as cursor:
            rows = await cursor.fetchall()
        return [row[0] for row in rows]

    async def close(self) -> None:
        """Close the database connection."""
        if self._db:
            await self._db.close()
            self._db = None
