import logging
from typing import Optional

from .errors import AssociationError, AssociationErrorKind, ProtocolError
from .key_store import SharedKeyStore
from .models import AssociateRequest, AssociationState, GetLoginsRequest, ProtocolResponse, TestAssociateRequest
from .protocol_client import ProtocolClient

logger = logging.getLogger(__name__)


class AssociationManager:
    """
    Handshake state on top of the protocol client and the key store.

    States: UNASSOCIATED (no key stored), UNVERIFIED (a key is stored but not
    confirmed this session), ASSOCIATED (the server accepted the key).
    Errors are raised to the caller; deciding what to do about a rejected
    key is left to the caller too.
    """

    def __init__(self, client: ProtocolClient, key_store: SharedKeyStore):
        self.client = client
        self.key_store = key_store
        self._verified_key: Optional[str] = None

    async def has_key(self) -> bool:
        """Whether a key is on file. No network I/O."""
        return await self.key_store.get() is not None

    async def state(self) -> AssociationState:
        key = await self.key_store.get()
        if key is None:
            self._verified_key = None
            return AssociationState.UNASSOCIATED
        if key == self._verified_key:
            return AssociationState.ASSOCIATED
        return AssociationState.UNVERIFIED

    async def associate(self) -> str:
        """Request a new key from the server and store it."""
        logger.info("Requesting association with %s", self.client.base_url)
        response = await self.client.send(AssociateRequest())
        if response.failed:
            raise ProtocolError(response.error or "KeePass HTTP associate request was rejected.")
        key = response.usable_key
        if key is None:
            raise ProtocolError("KeePass HTTP associate did not return a shared key.")
        await self.key_store.set(key)
        self._verified_key = key
        return key

    async def _require_key(self) -> str:
        key = await self.key_store.get()
        if key is None:
            raise AssociationError(AssociationErrorKind.MISSING)
        return key

    async def test_associate(self) -> None:
        """Confirm the stored key with the server.

        Raises AssociationError(MISSING) without any network call when no key
        is stored, and AssociationError(INVALID) when the server rejects it.
        The stored key is left in place either way.
        """
        key = await self._require_key()
        response = await self.client.send(TestAssociateRequest(key=key))
        if response.failed:
            self._verified_key = None
            logger.warning("Stored key was rejected by %s", self.client.base_url)
            raise AssociationError(
                AssociationErrorKind.INVALID,
                response.error or "KeePass HTTP association test failed.",
            )
        self._verified_key = key
        logger.debug("Association verified")

    async def get_logins(self, search: Optional[str] = None) -> ProtocolResponse:
        key = await self._require_key()
        search = (search or "").strip() or None
        response = await self.client.send(GetLoginsRequest(key=key, search=search))
        if response.failed:
            raise ProtocolError(response.error or "KeePass HTTP get-logins request failed.")
        return response

    async def forget(self) -> None:
        """Discard the stored key."""
        self._verified_key = None
        await self.key_store.clear()
