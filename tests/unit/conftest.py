import pytest

from keepass_http_mcp.association import AssociationManager
from keepass_http_mcp.key_store import MemoryStorage, SharedKeyStore, storage_key_for

from fakes import BASE_URL, FakeClient


@pytest.fixture
def storage():
    return MemoryStorage()


@pytest.fixture
def stored_key(storage):
    """Put a shared key on file for BASE_URL and return it."""
    storage.set_item(storage_key_for(BASE_URL), "shared-key")
    return "shared-key"


@pytest.fixture
def make_manager(storage):
    def _make(replies=None):
        client = FakeClient(replies)
        return AssociationManager(client, SharedKeyStore(storage, BASE_URL)), client

    return _make
