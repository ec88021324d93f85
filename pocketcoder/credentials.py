"""Encrypted credential storage and provider configuration storage."""

import os
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import aiosqlite
from cryptography.fernet import Fernet, InvalidToken

from pocketcoder.config import get_config
from pocketcoder.exceptions import ConfigurationError, PersistenceError
from pocketcoder.logging import get_logger
from pocketcoder.models import ProviderConfiguration

log = get_logger(__name__)

API_KEY = "api_key"
OAUTH_TOKEN = "oauth_token"
ACCESS_TOKEN = "access_token"
REFRESH_TOKEN = "refresh_token"
TOKEN_EXPIRY = "token_expiry"
ACCOUNT_ID = "account_id"

CREDENTIAL_NAMES = (API_KEY, OAUTH_TOKEN, ACCESS_TOKEN, REFRESH_TOKEN, TOKEN_EXPIRY, ACCOUNT_ID)


@dataclass
class ProviderCredentials:
    """Secrets held for one provider configuration."""

    api_key: str | None = None
    oauth_token: str | None = None
    access_token: str | None = None
    refresh_token: str | None = None
    token_expiry: float = 0.0  # epoch seconds, 0 when unknown
    account_id: str | None = None

    def access_token_expired(self, margin_seconds: float = 0.0, now: float | None = None) -> bool:
        """Return True when the access token is missing, has no expiry, or is past it."""
        if not (self.access_token or self.oauth_token):
            return True
        if self.token_expiry <= 0:
            return True
        current = time.time() if now is None else now
        return current >= self.token_expiry - margin_seconds


def load_or_create_key(key_path: Path | str) -> bytes:
    """Read the Fernet key from disk, generating one on first use."""
    path = Path(key_path).expanduser()
    if path.exists():
        return path.read_bytes().strip()
    path.parent.mkdir(parents=True, exist_ok=True)
    key = Fernet.generate_key()
    path.write_bytes(key)
    os.chmod(path, 0o600)
    log.info("Generated credential encryption key", path=str(path))
    return key


class CredentialStore:
    """Per-configuration secrets, Fernet-encrypted at rest in SQLite."""

    def __init__(self, db_path: Path | str | None = None, key: bytes | str | None = None):
        """Initialize credential store.

        Args:
            db_path: Optional database path override
            key: Optional Fernet key; otherwise taken from config or the key file
        """
        config = get_config()
        if db_path is None:
            self.db_path = Path(config.credentials.path).expanduser()
        else:
            self.db_path = Path(db_path).expanduser()
        self.db_path.parent.mkdir(parents=True, exist_ok=True)

        if key is None:
            key = config.credentials.key or load_or_create_key(config.credentials.key_path)
        try:
            self._fernet = Fernet(key)
        except (ValueError, TypeError) as e:
            raise ConfigurationError(f"Invalid credential encryption key: {e}") from e

        self._db: aiosqlite.Connection | None = None

    async def _ensure_db(self) -> None:
        """Ensure database is initialized."""
        if self._db is None:
            self._db = await aiosqlite.connect(str(self.db_path))
            await self._db.execute("""
                CREATE TABLE IF NOT EXISTS credentials (
                    config_id TEXT NOT NULL,
                    name TEXT NOT NULL,
                    value BLOB NOT NULL,
                    PRIMARY KEY (config_id, name)
                )
            """)
            await self._db.commit()

    async def get(self, config_id: str, name: str) -> str | None:
        """Return a decrypted secret, or None when absent or unreadable."""
        await self._ensure_db()
        async with self._db.execute(
            "SELECT value FROM credentials WHERE config_id = ? AND name = ?",
            (config_id, name),
        ) as cursor:
            row = await cursor.fetchone()
        if row is None:
            return None
        try:
            return self._fernet.decrypt(row[0]).decode("utf-8")
        except InvalidToken:
            log.warning("Credential could not be decrypted", config_id=config_id, name=name)
            return None

    async def set(self, config_id: str, name: str, value: str | None) -> None:
        """Store a secret; ``None`` or empty deletes it."""
        if name not in CREDENTIAL_NAMES:
            raise ValueError(f"Unknown credential name: {name}")
        if not value:
            await self.delete(config_id, name)
            return
        await self._ensure_db()
        token = self._fernet.encrypt(value.encode("utf-8"))
        try:
            await self._db.execute(
                """
                INSERT INTO credentials (config_id, name, value) VALUES (?, ?, ?)
                ON CONFLICT(config_id, name) DO UPDATE SET value = excluded.value
                """,
                (config_id, name, token),
            )
            await self._db.commit()
        except aiosqlite.Error as e:
            raise PersistenceError(f"Failed to store credential: {e}") from e

    async def delete(self, config_id: str, name: str | None = None) -> None:
        """Delete one secret, or every secret of a configuration."""
        await self._ensure_db()
        if name is None:
            await self._db.execute("DELETE FROM credentials WHERE config_id = ?", (config_id,))
        else:
            await self._db.execute(
                "DELETE FROM credentials WHERE config_id = ? AND name = ?", (config_id, name)
            )
        await self._db.commit()

    async def load(self, config_id: str) -> ProviderCredentials:
        """Load every secret of a configuration."""
        values = {name: await self.get(config_id, name) for name in CREDENTIAL_NAMES}
        expiry_raw = values.pop(TOKEN_EXPIRY)
        try:
            expiry = float(expiry_raw) if expiry_raw else 0.0
        except ValueError:
            expiry = 0.0
        return ProviderCredentials(token_expiry=expiry, **values)

    async def save_tokens(
        self,
        config_id: str,
        access_token: str,
        refresh_token: str | None,
        expires_at: float,
        account_id: str | None = None,
    ) -> None:
        """Persist a refreshed OAuth token set."""
        await self.set(config_id, ACCESS_TOKEN, access_token)
        await self.set(config_id, OAUTH_TOKEN, access_token)
        if refresh_token:
            await self.set(config_id, REFRESH_TOKEN, refresh_token)
        await self.set(config_id, TOKEN_EXPIRY, repr(float(expires_at)))
        if account_id:
            await self.set(config_id, ACCOUNT_ID, account_id)

    async def close(self) -> None:
        """Close database connection."""
        if self._db:
            await self._db.close()
            self._db = None


def _row_to_configuration(row: Any) -> ProviderConfiguration:
    return ProviderConfiguration(
        id=row[0],
        registry_id=row[1],
        display_name=row[2],
        base_url=row[3],
        is_oauth=bool(row[4]),
        default_model_id=row[5] or "",
        selected_model_id=row[6],
        is_active=bool(row[7]),
        created_at=float(row[8]),
    )


_CONFIG_COLUMNS = (
    "id, registry_id, display_name, base_url, is_oauth, "
    "default_model_id, selected_model_id, is_active, created_at"
)


class ProviderConfigStore:
    """Persisted provider configurations."""

    def __init__(self, db_path: Path | str | None = None):
        if db_path is None:
            config = get_config()
            self.db_path = Path(config.storage.path).expanduser()
        else:
            self.db_path = Path(db_path).expanduser()
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._db: aiosqlite.Connection | None = None

    async def _ensure_db(self) -> None:
        """Ensure database is initialized."""
        if self._db is None:
            self._db = await aiosqlite.connect(str(self.db_path))
            await self._db.execute("""
                CREATE TABLE IF NOT EXISTS provider_configs (
                    id TEXT PRIMARY KEY,
                    registry_id TEXT NOT NULL,
                    display_name TEXT NOT NULL,
                    base_url TEXT,
                    is_oauth INTEGER NOT NULL DEFAULT 0,
                    default_model_id TEXT NOT NULL DEFAULT '',
                    selected_model_id TEXT,
                    is_active INTEGER NOT NULL DEFAULT 1,
                    created_at REAL NOT NULL
                )
            """)
            await self._db.execute(
                "CREATE INDEX IF NOT EXISTS idx_provider_configs_registry "
                "ON provider_configs(registry_id, created_at DESC)"
            )
            await self._db.commit()

    async def save(self, configuration: ProviderConfiguration) -> ProviderConfiguration:
        """Insert or replace a configuration."""
        await self._ensure_db()
        try:
            await self._db.execute(
                f"INSERT OR REPLACE INTO provider_configs ({_CONFIG_COLUMNS}) "
                "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)",
                (
                    configuration.id,
                    configuration.registry_id,
                    configuration.display_name,
                    configuration.base_url,
                    int(configuration.is_oauth),
                    configuration.default_model_id,
                    configuration.selected_model_id,
                    int(configuration.is_active),
                    configuration.created_at,
                ),
            )
            await self._db.commit()
        except aiosqlite.Error as e:
            raise PersistenceError(f"Failed to save provider configuration: {e}") from e
        log.debug("Saved provider configuration", config_id=configuration.id, registry=configuration.registry_id)
        return configuration

    async def update(self, configuration: ProviderConfiguration) -> ProviderConfiguration:
        return await self.save(configuration)

    async def get(self, config_id: str) -> ProviderConfiguration | None:
        await self._ensure_db()
        async with self._db.execute(
            f"SELECT {_CONFIG_COLUMNS} FROM provider_configs WHERE id = ?", (config_id,)
        ) as cursor:
            row = await cursor.fetchone()
        return _row_to_configuration(row) if row else None

    async def list_active(self) -> list[ProviderConfiguration]:
        """Active configurations, most recently created first."""
        await self._ensure_db()
        async with self._db.execute(
            f"SELECT {_CONFIG_COLUMNS} FROM provider_configs WHERE is_active = 1 "
            "ORDER BY created_at DESC"
        ) as cursor:
            rows = await cursor.fetchall()
        return [_row_to_configuration(row) for row in rows]

    async def delete(self, config_id: str, credentials: CredentialStore | None = None) -> bool:
        """Delete a configuration and, when given, its stored secrets."""
        await self._ensure_db()
        cursor = await self._db.execute("DELETE FROM provider_configs WHERE id = ?", (config_id,))
        await self._db.commit()
        if credentials is not None:
            await credentials.delete(config_id)
        return cursor.rowcount > 0

    async def close(self) -> None:
        """Close database connection."""
        if self._db:
            await self._db.close()
            self._db = None
