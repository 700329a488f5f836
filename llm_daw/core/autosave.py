"""Debounced and explicit saves of a ProjectStore through the gateway.

At most one save per scheduler is in flight.  Requests that arrive while a
save runs coalesce into a single follow-up save of the newest state.
"""

from __future__ import annotations

import asyncio
import enum
import logging
from collections.abc import Callable

from .constants import AUTOSAVE_DELAY
from .errors import Ack, Failure
from .observers import ObserverRegistry, Unsubscribe
from .persistence import PersistenceGateway
from .store import ProjectStore, StoreChange

log = logging.getLogger(__name__)


class SaveStatus(enum.Enum):
    IDLE = "idle"
    PENDING = "pending"
    SAVING = "saving"
    SAVED = "saved"
    FAILED = "failed"


class SaveScheduler:
    """Keeps the durable copy of one project up to date.

    With ``autosave`` on, every store change (re)starts a ``delay``-second
    timer; the save fires once edits pause.  ``save_now`` bypasses the timer.
    A failed save is logged and reported through ``status``; editing is
    never blocked.
    """

    def __init__(
        self,
        store: ProjectStore,
        gateway: PersistenceGateway,
        delay: float = AUTOSAVE_DELAY,
        *,
        autosave: bool = True,
    ) -> None:
        self._store = store
        self._gateway = gateway
        self._delay = delay
        self._autosave = autosave
        self._status = SaveStatus.IDLE
        self._last_failure: Failure | None = None
        self._timer: asyncio.TimerHandle | None = None
        self._task: asyncio.Future | None = None
        self._again = False
        self._spawned: set[asyncio.Task] = set()
        self._unsubscribe: Unsubscribe | None = None
        self.status_listeners: ObserverRegistry[SaveStatus] = ObserverRegistry("save_status")

    @property
    def status(self) -> SaveStatus:
        return self._status

    @property
    def last_failure(self) -> Failure | None:
        return self._last_failure

    @property
    def saving(self) -> bool:
        return self._task is not None and not self._task.done()

    def on_status(self, callback: Callable[[SaveStatus], None]) -> Unsubscribe:
        return self.status_listeners.subscribe(callback)

    def _set_status(self, status: SaveStatus) -> None:
        if status is self._status:
            return
        self._status = status
        self.status_listeners.emit_safely(status)

    # ── Lifecycle ──

    def start(self) -> None:
        """Listen to store changes (no-op unless ``autosave``)."""
        if self._autosave and self._unsubscribe is None:
            self._unsubscribe = self._store.on_change(self._on_store_change)

    def close(self) -> None:
        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None
        self._cancel_timer()

    async def flush(self) -> Ack | Failure | None:
        """Save now if anything is unsaved; None when already clean."""
        if self._timer is None and not self._store.dirty and not self.saving:
            return None
        return await self.save_now()

    # ── Scheduling ──

    def _on_store_change(self, change: StoreChange) -> None:
        if change.kind == "hydrate":
            return
        self.request_save()

    def request_save(self) -> None:
        """(Re)start the debounce timer.  Must be called on the event loop."""
        loop = asyncio.get_running_loop()
        self._cancel_timer()
        self._timer = loop.call_later(self._delay, self._fire)
        if not self.saving:
            self._set_status(SaveStatus.PENDING)

    def _cancel_timer(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None

    def _fire(self) -> None:
        self._timer = None
        task = asyncio.get_running_loop().create_task(self.save_now())
        self._spawned.add(task)
        task.add_done_callback(self._reap)

    def _reap(self, task: asyncio.Task) -> None:
        self._spawned.discard(task)
        if not task.cancelled() and task.exception() is not None:
            log.error("Autosave crashed", exc_info=task.exception())

    async def save_now(self) -> Ack | Failure:
        """Save immediately; joins (and extends) a save already in flight."""
        self._cancel_timer()
        if self.saving:
            self._again = True
        else:
            self._task = asyncio.ensure_future(self._run())
        return await asyncio.shield(self._task)

    async def _run(self) -> Ack | Failure:
        while True:
            self._again = False
            result = await self._save_once()
            if not self._again:
                return result

    async def _save_once(self) -> Ack | Failure:
        revision = self._store.revision
        snapshot = self._store.snapshot()
        self._set_status(SaveStatus.SAVING)
        try:
            result = await self._gateway.save_project_tree(snapshot)
        except Exception:
            self._set_status(SaveStatus.FAILED)
            raise

        if isinstance(result, Failure):
            self._last_failure = result
            log.warning("Saving project %s failed: %s", snapshot.id, result.message)
            self._set_status(SaveStatus.FAILED)
            return result

        self._last_failure = None
        self._store.mark_clean(revision)
        log.debug("Project %s saved at revision %d", snapshot.id, revision)
        self._set_status(SaveStatus.PENDING if self._timer is not None else SaveStatus.SAVED)
        return result
