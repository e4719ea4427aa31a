import asyncio
from unittest.mock import MagicMock, patch

import pytest
import secretstorage

from keepass_http_mcp.errors import KeyStoreError
from keepass_http_mcp.key_store import (
    MemoryStorage,
    SecretServiceStorage,
    SharedKeyStore,
    create_storage,
    storage_key_for,
)


def test_storage_key_is_stable_and_distinct_per_url():
    a = storage_key_for("http://localhost:19455")
    assert a == storage_key_for("http://localhost:19455")
    assert a != storage_key_for("http://localhost:19456")
    assert a.startswith("keepass-http-shared-key:")


def test_get_set_clear_round_trip():
    store = SharedKeyStore(MemoryStorage(), "http://localhost:19455")

    async def scenario():
        assert await store.get() is None
        await store.set("abc")
        assert await store.get() == "abc"
        await store.clear()
        assert await store.get() is None
        # clearing twice is a no-op
        await store.clear()
        assert await store.get() is None

    asyncio.run(scenario())


def test_blank_stored_value_reads_as_absent():
    storage = MemoryStorage()
    store = SharedKeyStore(storage, "http://x")
    storage.set_item(store.storage_key, "   ")
    assert asyncio.run(store.get()) is None


def test_two_endpoints_do_not_clobber_each_other():
    storage = MemoryStorage()
    one = SharedKeyStore(storage, "http://one:19455")
    two = SharedKeyStore(storage, "http://two:19455")

    async def scenario():
        await one.set("key-one")
        await two.set("key-two")
        await one.clear()
        return await one.get(), await two.get()

    assert asyncio.run(scenario()) == (None, "key-two")


def test_secret_service_errors_become_key_store_errors():
    storage = MagicMock()
    storage.get_item.side_effect = secretstorage.exceptions.LockedException("locked")
    store = SharedKeyStore(storage, "http://x")
    with pytest.raises(KeyStoreError):
        asyncio.run(store.get())


def test_unexpected_storage_errors_become_key_store_errors():
    storage = MagicMock()
    storage.remove_item.side_effect = RuntimeError("org.freedesktop.DBus.Error.NoReply")
    store = SharedKeyStore(storage, "http://x")
    with pytest.raises(KeyStoreError) as e:
        asyncio.run(store.clear())
    assert isinstance(e.value.__cause__, RuntimeError)


def test_create_storage_memory_backend():
    assert isinstance(create_storage("memory"), MemoryStorage)


@patch("keepass_http_mcp.key_store.secretstorage")
def test_secret_service_get_item_unlocked(mock_ss):
    mock_ss.exceptions = secretstorage.exceptions
    item = MagicMock()
    item.is_locked.return_value = False
    item.get_secret.return_value = b"s3cr3t"
    mock_ss.search_items.return_value = iter([item])

    storage = SecretServiceStorage(bus=object())
    assert storage.get_item("k") == "s3cr3t"
    attrs = mock_ss.search_items.call_args[0][1]
    assert attrs == {"application": "keepass-http-mcp", "storage-key": "k"}


@patch("keepass_http_mcp.key_store.secretstorage")
def test_secret_service_get_item_locked_then_unlocks(mock_ss):
    mock_ss.exceptions = secretstorage.exceptions
    item = MagicMock()
    item.is_locked.side_effect = [True, True, False]
    item.unlock.return_value = False
    item.get_secret.return_value = b"token"
    mock_ss.search_items.return_value = iter([item])

    storage = SecretServiceStorage(bus=object())
    assert storage.get_item("k") == "token"
    assert item.unlock.called


@patch("keepass_http_mcp.key_store.secretstorage")
def test_secret_service_get_item_prompt_dismissed(mock_ss):
    mock_ss.exceptions = secretstorage.exceptions
    item = MagicMock()
    item.is_locked.return_value = True
    item.unlock.return_value = True
    mock_ss.search_items.return_value = iter([item])

    storage = SecretServiceStorage(bus=object())
    assert storage.get_item("k") is None
    item.get_secret.assert_not_called()


@patch("keepass_http_mcp.key_store.secretstorage")
def test_secret_service_set_and_remove(mock_ss):
    mock_ss.exceptions = secretstorage.exceptions
    collection = MagicMock()
    collection.is_locked.return_value = False
    mock_ss.get_default_collection.return_value = collection

    storage = SecretServiceStorage(bus=object())
    storage.set_item("k", "value")
    args, kwargs = collection.create_item.call_args
    assert args[1] == {"application": "keepass-http-mcp", "storage-key": "k"}
    assert args[2] == b"value"
    assert kwargs["replace"] is True

    first, second = MagicMock(), MagicMock()
    second.delete.side_effect = secretstorage.exceptions.ItemNotFoundException("gone")
    mock_ss.search_items.return_value = iter([first, second])
    storage.remove_item("k")
    first.delete.assert_called_once()
