import asyncio
import logging
from typing import Callable, Optional

from .association import AssociationManager
from .config import DEFAULT_DEBOUNCE_MS
from .errors import AssociationError, KeePassHttpError
from .models import AssociationState, CredentialEntry, Notification, NotificationStyle
from .normalizer import normalize_all

logger = logging.getLogger(__name__)

ERROR_TITLE = "KeePass HTTP Error"
APPROVE_TITLE = "Approve KeePass Association"
APPROVE_MESSAGE = "Please approve the association request in KeePass."


def _log_notification(notification: Notification) -> None:
    logger.info("%s: %s", notification.title, notification.message)


class SearchOrchestrator:
    """
    Turns a stream of query edits into debounced, association-gated
    get-logins calls.

    Only one timer is ever pending; a new edit cancels it. Each retrieval
    that fires takes the next sequence number, and results or errors from
    any retrieval that is no longer the latest are dropped, so a slow
    earlier response never overwrites a newer one.
    """

    def __init__(
        self,
        manager: AssociationManager,
        debounce_seconds: float = DEFAULT_DEBOUNCE_MS / 1000.0,
        notify: Optional[Callable[[Notification], None]] = None,
    ):
        self.manager = manager
        self.debounce_seconds = debounce_seconds
        self._notify = notify or _log_notification

        self._query = ""
        self._results: list[CredentialEntry] = []
        self._loading = False
        self._checking = False
        self._association_required = False
        self._associating = False
        self._last_error: Optional[KeePassHttpError] = None

        self._timer: Optional[asyncio.TimerHandle] = None
        self._tasks: set[asyncio.Task] = set()
        self._sequence = 0
        self._closed = False

    # ---------- UI boundary ----------

    def current_results(self) -> list[CredentialEntry]:
        return list(self._results)

    def is_loading(self) -> bool:
        return self._loading or self._checking

    def association_required(self) -> bool:
        return self._association_required

    def is_associating(self) -> bool:
        return self._associating

    def last_error(self) -> Optional[KeePassHttpError]:
        return self._last_error

    @property
    def query(self) -> str:
        return self._query

    def on_query_change(self, text: str) -> None:
        """Record the latest query and restart the quiet period."""
        if self._closed:
            return
        self._query = text or ""
        self._cancel_timer()
        loop = asyncio.get_running_loop()
        self._timer = loop.call_later(self.debounce_seconds, self._fire)
        logger.debug("Scheduled retrieval in %.3fs", self.debounce_seconds)

    async def start(self) -> None:
        """Check the stored key, then confirm it with the server."""
        self._checking = True
        try:
            if not await self.manager.has_key():
                self._association_required = True
                return
            await self.manager.test_associate()
            self._association_required = False
        except AssociationError as e:
            await self._association_failed(e)
        except KeePassHttpError as e:
            self._report(e)
        finally:
            self._checking = False

    async def request_association(self) -> bool:
        """User-triggered handshake. A second call while one runs is ignored."""
        if self._associating or self._closed:
            return False
        self._associating = True
        self._notify(Notification(style=NotificationStyle.ANIMATED, title=APPROVE_TITLE, message=APPROVE_MESSAGE))
        try:
            await self.manager.associate()
        except KeePassHttpError as e:
            self._report(e)
            return False
        finally:
            self._associating = False

        self._association_required = False
        self._last_error = None
        self._notify(Notification(style=NotificationStyle.SUCCESS, title="KeePass Associated", message="Association approved."))
        self.on_query_change(self._query)
        return True

    async def wait_until_idle(self) -> None:
        """Resolve once no retrieval is scheduled or running."""
        loop = asyncio.get_running_loop()
        while not self._closed and (self._timer is not None or self._tasks):
            if self._tasks:
                await asyncio.wait(set(self._tasks))
            else:
                await asyncio.sleep(max(self._timer.when() - loop.time(), 0))

    def close(self) -> None:
        """Cancel the pending timer and any running retrieval."""
        self._closed = True
        self._cancel_timer()
        for task in list(self._tasks):
            task.cancel()
        self._tasks.clear()
        logger.debug("Search orchestrator closed")

    # ---------- internals ----------

    def _cancel_timer(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None

    def _fire(self) -> None:
        self._timer = None
        if self._closed:
            return
        self._sequence += 1
        task = asyncio.ensure_future(self._retrieve(self._sequence, self._query))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    def _is_current(self, sequence: int) -> bool:
        return sequence == self._sequence and not self._closed

    async def _retrieve(self, sequence: int, query: str) -> None:
        self._loading = True
        try:
            state = await self.manager.state()
            if state is AssociationState.UNASSOCIATED:
                if self._is_current(sequence):
                    self._association_required = True
                    self._results = []
                return
            if state is AssociationState.UNVERIFIED:
                await self.manager.test_associate()

            response = await self.manager.get_logins(query)
            entries = normalize_all(response.entries)
        except AssociationError as e:
            if self._is_current(sequence):
                await self._association_failed(e)
        except KeePassHttpError as e:
            if self._is_current(sequence):
                self._report(e)
        except Exception as e:
            logger.exception("Unexpected failure in retrieval #%d", sequence)
            if self._is_current(sequence):
                self._report(KeePassHttpError(f"Search failed: {e}"))
        else:
            if self._is_current(sequence):
                self._results = entries
                self._association_required = False
                self._last_error = None
            else:
                logger.debug("Dropped stale results for retrieval #%d", sequence)
        finally:
            if self._is_current(sequence):
                self._loading = False

    async def _association_failed(self, error: AssociationError) -> None:
        # A rejected key is always discarded so the next handshake starts clean.
        self._results = []
        self._association_required = True
        if error.is_invalid:
            logger.warning("Discarding rejected shared key: %s", error)
            try:
                await self.manager.forget()
            except KeePassHttpError as e:
                self._report(e)
                return
            self._last_error = error
            self._notify(Notification(style=NotificationStyle.FAILURE, title=ERROR_TITLE, message=str(error)))

    def _report(self, error: KeePassHttpError) -> None:
        logger.warning("Search failed: %s", error)
        self._results = []
        self._last_error = error
        self._notify(Notification(style=NotificationStyle.FAILURE, title=ERROR_TITLE, message=str(error)))
