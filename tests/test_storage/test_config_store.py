import asyncio

import pytest

import synergy_core.storage as storage_module
from synergy_core.exceptions import ConfigurationError
from synergy_core.storage import MemoryConfigStore, ProviderRecord, SQLiteConfigStore, record_key


def test_record_key_namespaces_kinds():
    assert record_key("client", "jira") == "client:jira"
    assert record_key("agent", "jira") == "agent:jira"


def test_only_explicit_false_disables_a_record():
    assert ProviderRecord().enabled is True
    assert ProviderRecord(is_active=True).enabled is True
    assert ProviderRecord(is_active=False).enabled is False


@pytest.mark.asyncio
async def test_sqlite_store_uses_db_path_override(tmp_path):
    db_path = tmp_path / "custom-providers.db"
    store = SQLiteConfigStore(db_path=db_path)
    try:
        await store.set("client:jira", ProviderRecord(credentials={"personal_token": "t"}))
        assert db_path.exists()
    finally:
        await store.close()


@pytest.mark.asyncio
async def test_sqlite_store_round_trip_list_and_delete(tmp_path):
    store = SQLiteConfigStore(db_path=tmp_path / "providers.db")
    try:
        await store.set(
            "client:jira",
            ProviderRecord(credentials={"base_url": "https://x"}, config={"a": 1}, is_active=True),
        )
        await store.set("agent:jira-agent", ProviderRecord(config={"default_project": "PROJ"}))

        loaded = await store.get_client_record("jira")
        assert loaded is not None
        assert loaded.credentials == {"base_url": "https://x"}
        assert loaded.config == {"a": 1}
        assert loaded.is_active is True

        agent = await store.get_agent_record("jira-agent")
        assert agent.config["default_project"] == "PROJ"

        assert await store.list_keys() == ["agent:jira-agent", "client:jira"]
        assert await store.delete("client:jira") is True
        assert await store.delete("client:jira") is False
        assert await store.get("client:jira") is None
    finally:
        await store.close()


@pytest.mark.asyncio
async def test_sqlite_store_persists_across_connections(tmp_path):
    db_path = tmp_path / "providers.db"
    store = SQLiteConfigStore(db_path=db_path)
    await store.set("client:browser", ProviderRecord(is_active=False))
    await store.close()

    reopened = SQLiteConfigStore(db_path=db_path)
    try:
        record = await reopened.get("client:browser")
        assert record is not None
        assert record.enabled is False
    finally:
        await reopened.close()


@pytest.mark.asyncio
async def test_memory_store_accepts_plain_dicts_and_flags_malformed_blobs():
    store = MemoryConfigStore({"client:jira": {"credentials": {"personal_token": "t"}}})
    record = await store.get_client_record("jira")
    assert record.credentials == {"personal_token": "t"}

    store.put_raw("client:broken", "{not json")
    with pytest.raises(ConfigurationError):
        await store.get("client:broken")

    store.put_raw("client:wrong", '{"credentials": "nope"}')
    with pytest.raises(ConfigurationError):
        await store.get("client:wrong")


@pytest.mark.asyncio
async def test_sqlite_store_opens_one_connection_under_concurrent_first_use(tmp_path, monkeypatch):
    connects = []
    real_connect = storage_module.aiosqlite.connect

    def counting_connect(*args, **kwargs):
        connects.append(args)
        return real_connect(*args, **kwargs)

    monkeypatch.setattr(storage_module.aiosqlite, "connect", counting_connect)
    store = SQLiteConfigStore(db_path=tmp_path / "providers.db")
    try:
        records = await asyncio.gather(*(store.get(f"client:c{n}") for n in range(5)))
        assert records == [None] * 5
        assert len(connects) == 1
    finally:
        await store.close()
