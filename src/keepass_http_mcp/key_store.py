import asyncio
import hashlib
import logging
import time
from typing import Optional, Protocol

import secretstorage

from .errors import KeyStoreError

logger = logging.getLogger(__name__)

APPLICATION = "keepass-http-mcp"
STORAGE_KEY_PREFIX = "keepass-http-shared-key"


def storage_key_for(base_url: str) -> str:
    """Derive the storage key for one server endpoint.

    The URL is hashed rather than embedded so the key stays a fixed-width
    token; distinct URLs never share a key.
    """
    digest = hashlib.sha256(base_url.encode("utf-8")).hexdigest()
    return f"{STORAGE_KEY_PREFIX}:{digest}"


class KeyValueStorage(Protocol):
    def get_item(self, key: str) -> Optional[str]: ...

    def set_item(self, key: str, value: str) -> None: ...

    def remove_item(self, key: str) -> None: ...


class MemoryStorage:
    """Process-local storage; used in tests and for throwaway sessions."""

    def __init__(self, initial: Optional[dict[str, str]] = None):
        self._items: dict[str, str] = dict(initial or {})

    def get_item(self, key: str) -> Optional[str]:
        return self._items.get(key)

    def set_item(self, key: str, value: str) -> None:
        self._items[key] = value

    def remove_item(self, key: str) -> None:
        self._items.pop(key, None)

    def __contains__(self, key: str) -> bool:
        return key in self._items


class SecretServiceStorage:
    """
    Durable storage in the Freedesktop.org Secret Service via the
    secretstorage library. Each value is one item in the default collection,
    found again by its attributes.
    """

    def __init__(self, bus=None):
        self.bus = bus if bus is not None else secretstorage.dbus_init()

    def _attributes(self, key: str) -> dict[str, str]:
        return {"application": APPLICATION, "storage-key": key}

    def _unlock(self, item) -> bool:
        if not item.is_locked():
            return True
        logger.debug("Stored key is locked, requesting unlock…")
        try:
            dismissed = item.unlock()
        except secretstorage.exceptions.PromptDismissedException:
            dismissed = True
        if dismissed is True:
            logger.info("Unlock prompt dismissed by user.")
            return False

        # Bounded poll for up to 5 seconds while the unlock settles
        for _ in range(50):
            if not item.is_locked():
                return True
            time.sleep(0.1)
        logger.warning("Unlock failed or was denied after waiting.")
        return False

    def get_item(self, key: str) -> Optional[str]:
        for item in secretstorage.search_items(self.bus, self._attributes(key)):
            if not self._unlock(item):
                continue
            return item.get_secret().decode("utf-8")
        return None

    def set_item(self, key: str, value: str) -> None:
        collection = secretstorage.get_default_collection(self.bus)
        if collection.is_locked():
            collection.unlock()
        collection.create_item(
            f"KeePass HTTP shared key ({key})",
            self._attributes(key),
            value.encode("utf-8"),
            replace=True,
            content_type="text/plain",
        )
        logger.debug("Stored secret under %s", key)

    def remove_item(self, key: str) -> None:
        for item in secretstorage.search_items(self.bus, self._attributes(key)):
            try:
                item.delete()
            except secretstorage.exceptions.ItemNotFoundException:
                continue


def create_storage(backend: str) -> KeyValueStorage:
    if backend == "memory":
        return MemoryStorage()
    return SecretServiceStorage()


class SharedKeyStore:
    """The association key for one base URL.

    Storage calls may block (D-Bus), so they run in a worker thread.
    """

    def __init__(self, storage: KeyValueStorage, base_url: str):
        self.storage = storage
        self.base_url = base_url
        self.storage_key = storage_key_for(base_url)

    async def _run(self, func, *args):
        try:
            return await asyncio.to_thread(func, self.storage_key, *args)
        except secretstorage.exceptions.SecretStorageException as e:
            raise KeyStoreError(f"Secret Service unavailable: {e}") from e
        except Exception as e:
            # jeepney D-Bus errors and decode failures surface here unwrapped
            raise KeyStoreError(f"Could not access the stored shared key: {e}") from e

    async def get(self) -> Optional[str]:
        value = await self._run(self.storage.get_item)
        if isinstance(value, str) and value.strip():
            return value
        return None

    async def set(self, key: str) -> None:
        await self._run(self.storage.set_item, key)
        logger.info("Stored shared key for %s", self.base_url)

    async def clear(self) -> None:
        await self._run(self.storage.remove_item)
        logger.info("Cleared shared key for %s", self.base_url)
