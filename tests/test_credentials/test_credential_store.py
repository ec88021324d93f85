import sqlite3
import time
from contextlib import closing
from pathlib import Path

import pytest
from cryptography.fernet import Fernet

from pocketcoder.credentials import (
    ACCESS_TOKEN,
    API_KEY,
    CredentialStore,
    ProviderConfigStore,
    ProviderCredentials,
    load_or_create_key,
)
from pocketcoder.exceptions import ConfigurationError
from pocketcoder.models import ProviderConfiguration


@pytest.mark.asyncio
async def test_secrets_are_encrypted_at_rest(tmp_path: Path):
    db_path = tmp_path / "creds.db"
    store = CredentialStore(db_path=db_path, key=Fernet.generate_key())
    try:
        await store.set("cfg-1", API_KEY, "sk-very-secret")
        assert await store.get("cfg-1", API_KEY) == "sk-very-secret"
    finally:
        await store.close()

    with closing(sqlite3.connect(db_path)) as conn:
        raw = conn.execute("SELECT value FROM credentials").fetchone()[0]
    assert b"sk-very-secret" not in bytes(raw)


@pytest.mark.asyncio
async def test_wrong_key_reads_as_missing(tmp_path: Path):
    db_path = tmp_path / "creds.db"
    writer = CredentialStore(db_path=db_path, key=Fernet.generate_key())
    await writer.set("cfg-1", API_KEY, "sk")
    await writer.close()

    reader = CredentialStore(db_path=db_path, key=Fernet.generate_key())
    try:
        assert await reader.get("cfg-1", API_KEY) is None
    finally:
        await reader.close()


@pytest.mark.asyncio
async def test_empty_value_deletes_and_unknown_name_is_rejected(tmp_path: Path):
    store = CredentialStore(db_path=tmp_path / "creds.db", key=Fernet.generate_key())
    try:
        await store.set("cfg-1", API_KEY, "sk")
        await store.set("cfg-1", API_KEY, "")
        assert await store.get("cfg-1", API_KEY) is None

        with pytest.raises(ValueError):
            await store.set("cfg-1", "password", "hunter2")
    finally:
        await store.close()


@pytest.mark.asyncio
async def test_save_tokens_and_load(tmp_path: Path):
    store = CredentialStore(db_path=tmp_path / "creds.db", key=Fernet.generate_key())
    try:
        expires_at = time.time() + 600
        await store.save_tokens("cfg-1", "access", "refresh", expires_at, account_id="acct")

        loaded = await store.load("cfg-1")
        assert loaded.access_token == "access"
        assert loaded.oauth_token == "access"
        assert loaded.refresh_token == "refresh"
        assert loaded.account_id == "acct"
        assert loaded.token_expiry == pytest.approx(expires_at)
        assert loaded.api_key is None

        await store.delete("cfg-1")
        assert await store.get("cfg-1", ACCESS_TOKEN) is None
    finally:
        await store.close()


def test_access_token_expiry_rules():
    assert ProviderCredentials().access_token_expired() is True
    assert ProviderCredentials(access_token="a").access_token_expired() is True
    fresh = ProviderCredentials(access_token="a", token_expiry=1000.0)
    assert fresh.access_token_expired(now=900.0) is False
    assert fresh.access_token_expired(margin_seconds=120, now=900.0) is True


def test_load_or_create_key_persists_generated_key(tmp_path: Path):
    key_path = tmp_path / "keys" / "secret.key"

    first = load_or_create_key(key_path)
    second = load_or_create_key(key_path)

    assert first == second
    assert (key_path.stat().st_mode & 0o777) == 0o600
    Fernet(first)


def test_invalid_key_is_a_configuration_error(tmp_path: Path):
    with pytest.raises(ConfigurationError):
        CredentialStore(db_path=tmp_path / "creds.db", key="not-a-fernet-key")


@pytest.mark.asyncio
async def test_provider_configs_list_active_newest_first(tmp_path: Path):
    store = ProviderConfigStore(db_path=tmp_path / "providers.db")
    credentials = CredentialStore(db_path=tmp_path / "providers.db", key=Fernet.generate_key())
    try:
        old = await store.save(ProviderConfiguration("anthropic", "Work", created_at=1.0))
        new = await store.save(ProviderConfiguration("openai", "Personal", created_at=2.0, is_oauth=True))
        await store.save(ProviderConfiguration("groq", "Off", created_at=3.0, is_active=False))
        await credentials.set(old.id, API_KEY, "sk")

        active = await store.list_active()
        assert [c.id for c in active] == [new.id, old.id]
        assert active[0].is_oauth is True

        old.selected_model_id = "claude-haiku-4-5"
        await store.update(old)
        assert (await store.get(old.id)).effective_model_id == "claude-haiku-4-5"

        assert await store.delete(old.id, credentials=credentials) is True
        assert await store.get(old.id) is None
        assert await credentials.get(old.id, API_KEY) is None
    finally:
        await store.close()
        await credentials.close()
