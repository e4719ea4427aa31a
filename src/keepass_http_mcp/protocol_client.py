import asyncio
import logging
from typing import Optional

import requests
from pydantic import ValidationError

from .config import DEFAULT_TIMEOUT_SECONDS, require_base_url
from .errors import DecodeError, TransportError
from .models import ProtocolRequest, ProtocolResponse

logger = logging.getLogger(__name__)

HEADERS = {
    "Accept": "application/json",
    "Content-Type": "application/json",
}


class ProtocolClient:
    """
    Sends KeePass HTTP requests: one JSON POST per call to the configured
    URL, no retries. Failures surface to the caller as TransportError or
    DecodeError.
    """

    def __init__(self, base_url: str, timeout: float = DEFAULT_TIMEOUT_SECONDS, session: Optional[requests.Session] = None):
        self.base_url = require_base_url(base_url)
        self.timeout = timeout
        self.session = session if session is not None else requests.Session()

    def _post(self, payload: dict) -> ProtocolResponse:
        try:
            response = self.session.post(self.base_url, json=payload, headers=HEADERS, timeout=self.timeout)
        except requests.RequestException as e:
            raise TransportError(f"Could not reach KeePass HTTP server: {e}") from e

        if not response.ok:
            raise TransportError(f"Server responded with {response.status_code}", status_code=response.status_code)

        try:
            body = response.json()
        except ValueError as e:
            raise DecodeError("Server response is not valid JSON.") from e
        if not isinstance(body, dict):
            raise DecodeError(f"Expected a JSON object from the server, got {type(body).__name__}.")
        try:
            return ProtocolResponse.model_validate(body)
        except ValidationError as e:
            raise DecodeError(f"Unexpected server response shape: {e.error_count()} invalid field(s).") from e

    async def send(self, request: ProtocolRequest) -> ProtocolResponse:
        payload = request.to_payload()
        logger.debug("Sending %s request to %s", payload["RequestType"], self.base_url)
        return await asyncio.to_thread(self._post, payload)

    def close(self) -> None:
        self.session.close()
