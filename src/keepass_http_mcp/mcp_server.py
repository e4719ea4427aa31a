import asyncio
import sys
import os
import logging
import re
from collections import deque
from typing import Annotated, Literal, Optional, get_args


_level = os.getenv("LOG_LEVEL", "INFO").upper()
logging.basicConfig(level=getattr(logging, _level, logging.INFO), stream=sys.stderr)
logger = logging.getLogger(__name__)

# Highlight insecure mode if enabled
if os.getenv("ALLOW_PLAINTEXT_SECRET", "false").lower() == "true":
    logger.warning("ALLOW_PLAINTEXT_SECRET=true: plaintext secret retrieval enabled; use only in trusted scenarios.")

from mcp.server.fastmcp import FastMCP
from pydantic import BaseModel, Field

from .association import AssociationManager
from .config import load_preferences
from .errors import KeePassHttpError
from .key_store import SharedKeyStore, create_storage
from .models import AssociationState, CredentialEntry, Notification
from .protocol_client import ProtocolClient
from .search_orchestrator import SearchOrchestrator
from .secret_handoff import write_secret_temp_file

# Built on first use so the MCP handshake is not blocked by D-Bus or a
# missing KEEPASS_HTTP_URL; the failure is reported by each tool instead.
_orchestrator: Optional[SearchOrchestrator] = None
_orchestrator_init_error: Optional[str] = None
_orchestrator_lock = asyncio.Lock()
_notifications: deque = deque(maxlen=20)


def _record_notification(notification: Notification) -> None:
    logger.info("%s: %s", notification.title, notification.message)
    _notifications.append(notification)


def build_orchestrator() -> SearchOrchestrator:
    preferences = load_preferences()
    storage = create_storage(preferences.key_backend)
    client = ProtocolClient(preferences.base_url, timeout=preferences.timeout)
    manager = AssociationManager(client, SharedKeyStore(storage, preferences.base_url))
    return SearchOrchestrator(manager, debounce_seconds=preferences.debounce_seconds, notify=_record_notification)


async def get_orchestrator() -> SearchOrchestrator:
    global _orchestrator
    global _orchestrator_init_error
    if _orchestrator is None and _orchestrator_init_error is None:
        # start() awaits, so concurrent first calls must wait for one build
        async with _orchestrator_lock:
            if _orchestrator is None and _orchestrator_init_error is None:
                try:
                    logger.debug("Creating SearchOrchestrator on first use…")
                    orchestrator = build_orchestrator()
                except Exception as e:
                    _orchestrator_init_error = f"KeePass HTTP client init failed: {e}"
                    logger.exception(_orchestrator_init_error)
                else:
                    await orchestrator.start()
                    _orchestrator = orchestrator
    if _orchestrator is None:
        raise RuntimeError(_orchestrator_init_error or "KeePass HTTP client unavailable")
    return _orchestrator


# Create an MCP server instance
mcp = FastMCP("KeePass HTTP Credential Search")


# ---------- Models ----------

class MessageResponse(BaseModel):
    message: str
    status_code: int = 200


class ErrorResponse(BaseModel):
    error: str
    status_code: int


class AssociationStatus(BaseModel):
    state: str
    has_key: bool
    association_required: bool
    is_associating: bool
    base_url: str
    notifications: list[Notification] = []


EntryField = Literal["password", "username", "notes", "url"]
ENTRY_FIELDS = get_args(EntryField)

ASSOCIATION_REQUIRED = "KeePass association required. Call request_association and approve it in KeePass."

# ---------- Validation helpers ----------

CONTROL_CHARS_RE = re.compile(r"[\x00\r\n]")


def _valid_query(q: str) -> bool:
    if not isinstance(q, str):
        return False
    if CONTROL_CHARS_RE.search(q):
        return False
    return len(q) <= 256


def _valid_entry_id(entry_id: str) -> bool:
    if not isinstance(entry_id, str):
        return False
    if not (1 <= len(entry_id) <= 512):
        return False
    return not CONTROL_CHARS_RE.search(entry_id)


def _plaintext_allowed() -> bool:
    return os.getenv("ALLOW_PLAINTEXT_SECRET", "false").lower() == "true"


def _find_entry(orchestrator: SearchOrchestrator, entry_id: str) -> Optional[CredentialEntry]:
    for entry in orchestrator.current_results():
        if entry.identity == entry_id:
            return entry
    return None


def _serialize(entry: CredentialEntry) -> dict:
    if _plaintext_allowed():
        data = entry.model_dump()
        data["id"] = entry.identity
        return data
    return entry.redacted()


# --- Define MCP Tools ---

@mcp.tool()
async def search_entries(query: str) -> list[dict] | ErrorResponse:
    """Search KeePass entries through the KeePass HTTP endpoint.

    An empty query asks the server for every entry it will return. Passwords
    are masked unless ALLOW_PLAINTEXT_SECRET=true; use
    get_entry_field_as_temp_file to hand one off.
    """
    if not _valid_query(query):
        return ErrorResponse(error="Invalid query", status_code=400)
    try:
        orchestrator = await get_orchestrator()
    except Exception as e:
        return ErrorResponse(error=str(e), status_code=503)

    orchestrator.on_query_change(query)
    await orchestrator.wait_until_idle()

    if orchestrator.association_required():
        return ErrorResponse(error=ASSOCIATION_REQUIRED, status_code=409)
    error = orchestrator.last_error()
    if error is not None:
        return ErrorResponse(error=str(error), status_code=502)
    return [_serialize(entry) for entry in orchestrator.current_results()]


@mcp.tool()
async def association_status() -> AssociationStatus | ErrorResponse:
    """Report whether this client holds a shared key and whether it was accepted."""
    try:
        orchestrator = await get_orchestrator()
    except Exception as e:
        return ErrorResponse(error=str(e), status_code=503)
    manager = orchestrator.manager
    try:
        state = await manager.state()
    except KeePassHttpError as e:
        logger.warning("Failed to read association state: %s", e)
        return ErrorResponse(error=str(e), status_code=503)
    return AssociationStatus(
        state=state.value,
        has_key=state is not AssociationState.UNASSOCIATED,
        association_required=orchestrator.association_required(),
        is_associating=orchestrator.is_associating(),
        base_url=manager.client.base_url,
        notifications=list(_notifications),
    )


@mcp.tool()
async def request_association() -> MessageResponse | ErrorResponse:
    """Ask KeePass for a new association. The user must approve it in KeePass."""
    try:
        orchestrator = await get_orchestrator()
    except Exception as e:
        return ErrorResponse(error=str(e), status_code=503)
    if orchestrator.is_associating():
        return ErrorResponse(error="An association request is already in progress.", status_code=409)
    if await orchestrator.request_association():
        return MessageResponse(message="Association approved.")
    error = orchestrator.last_error()
    return ErrorResponse(error=str(error) if error else "Association request failed.", status_code=502)


@mcp.tool()
async def get_entry_field(entry_id: str, field: EntryField = "password") -> dict | ErrorResponse:
    """Return one field of an entry from the latest search. Disabled unless ALLOW_PLAINTEXT_SECRET=true."""
    if not _plaintext_allowed():
        return ErrorResponse(
            error="Direct secret retrieval is disabled. Use get_entry_field_as_temp_file or set ALLOW_PLAINTEXT_SECRET=true.",
            status_code=403,
        )
    if not _valid_entry_id(entry_id):
        return ErrorResponse(error="Invalid entry_id", status_code=400)
    if field not in ENTRY_FIELDS:
        return ErrorResponse(error="Invalid field", status_code=400)
    try:
        orchestrator = await get_orchestrator()
    except Exception as e:
        return ErrorResponse(error=str(e), status_code=503)
    entry = _find_entry(orchestrator, entry_id)
    if entry is None:
        return ErrorResponse(error="Entry not found in the latest search results", status_code=404)
    value = getattr(entry, field)
    if value is None:
        return ErrorResponse(error=f"Entry has no {field}", status_code=404)
    return {field: value}


@mcp.tool()
async def get_entry_field_as_temp_file(
    entry_id: str,
    field: EntryField = "password",
    timeout: Annotated[int, Field(ge=1, le=3600, description="Seconds before the temporary file is deleted automatically.")] = 60,
) -> dict | ErrorResponse:
    """Write one field of an entry from the latest search to a temp file that deletes itself."""
    if not _valid_entry_id(entry_id):
        return ErrorResponse(error="Invalid entry_id", status_code=400)
    if field not in ENTRY_FIELDS:
        return ErrorResponse(error="Invalid field", status_code=400)
    if not isinstance(timeout, int) or timeout < 1 or timeout > 3600:
        return ErrorResponse(error="Invalid timeout (1-3600 seconds)", status_code=400)
    try:
        orchestrator = await get_orchestrator()
    except Exception as e:
        return ErrorResponse(error=str(e), status_code=503)
    entry = _find_entry(orchestrator, entry_id)
    if entry is None:
        return ErrorResponse(error="Entry not found in the latest search results", status_code=404)
    value = getattr(entry, field)
    if value is None:
        return ErrorResponse(error=f"Entry has no {field}", status_code=404)
    try:
        temp_file_path = write_secret_temp_file(value, timeout)
    except OSError:
        logger.exception("Failed to write secret to temporary file")
        return ErrorResponse(error="Failed to write secret to temp file.", status_code=500)
    return {"temp_file_path": temp_file_path}


async def _serve() -> None:
    try:
        await mcp.run_stdio_async()
    finally:
        if _orchestrator is not None:
            _orchestrator.close()
            _orchestrator.manager.client.close()


def main() -> None:
    """Entry point to run the MCP stdio server.

    Note: Never print to stdout from this process. JSON-RPC uses stdout;
    all logging is configured to stderr.
    """
    import asyncio
    asyncio.run(_serve())


# --- Run the MCP Application ---
if __name__ == "__main__":
    main()
