"""Correlation table for permission requests awaiting a human decision."""

from __future__ import annotations

import asyncio
import threading
import uuid
from dataclasses import dataclass
from typing import NamedTuple

from thoughttree.debug_log import log
from thoughttree.errors import PermissionRequestNotFound


class Answer(NamedTuple):
    """Outcome delivered to a waiter.

    ``option_id`` is None when the request was cancelled instead of resolved.
    """

    option_id: str | None

    @property
    def cancelled(self) -> bool:
        return self.option_id is None


CANCELLED = Answer(None)


@dataclass(slots=True)
class _Slot:
    loop: asyncio.AbstractEventLoop
    future: asyncio.Future[Answer]


class PendingPermission:
    """Waiter end of a single escalation."""

    def __init__(self, request_id: str, future: asyncio.Future[Answer]) -> None:
        self.request_id = request_id
        self._future = future

    async def wait(self) -> Answer:
        # Shielded so cancelling the waiting task does not consume the slot's future.
        return await asyncio.shield(self._future)

    def done(self) -> bool:
        return self._future.done()


def _complete(future: asyncio.Future[Answer], answer: Answer) -> None:
    if not future.done():
        future.set_result(answer)


class PendingPermissions:
    """Process-wide map from request id to a single-use response slot.

    The lock guards only the dict mutation and is never held while awaiting.
    ``resolve`` may be called from any thread; completion is marshalled onto
    the waiter's event loop.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._slots: dict[str, _Slot] = {}

    def __len__(self) -> int:
        with self._lock:
            return len(self._slots)

    def __contains__(self, request_id: object) -> bool:
        with self._lock:
            return request_id in self._slots

    def create(self) -> tuple[str, PendingPermission]:
        """Register a new escalation; must be called from a running event loop."""
        loop = asyncio.get_running_loop()
        future: asyncio.Future[Answer] = loop.create_future()
        request_id = str(uuid.uuid4())
        with self._lock:
            self._slots[request_id] = _Slot(loop, future)
        log.debug(f"[pending] Registered permission request {request_id}")
        return request_id, PendingPermission(request_id, future)

    def _pop(self, request_id: str) -> _Slot | None:
        with self._lock:
            return self._slots.pop(request_id, None)

    def resolve(self, request_id: str, option_id: str) -> None:
        """Complete the escalation with the chosen option.

        Raises:
            PermissionRequestNotFound: unknown, already-resolved or cancelled id.
        """
        slot = self._pop(request_id)
        if slot is None:
            log.warning(f"[pending] No pending permission request with ID: {request_id}")
            raise PermissionRequestNotFound(request_id)
        log.info(f"[pending] Permission response received: {request_id} -> {option_id}")
        self._deliver(slot, Answer(option_id))

    def discard(self, request_id: str) -> bool:
        """Remove the escalation without a decision; its waiter observes cancellation."""
        slot = self._pop(request_id)
        if slot is None:
            return False
        log.info(f"[pending] Permission request {request_id} cancelled")
        self._deliver(slot, CANCELLED)
        return True

    def cancel_all(self) -> int:
        with self._lock:
            slots = list(self._slots.values())
            self._slots.clear()
        for slot in slots:
            self._deliver(slot, CANCELLED)
        return len(slots)

    @staticmethod
    def _deliver(slot: _Slot, answer: Answer) -> None:
        if slot.loop.is_closed():
            return
        try:
            running = asyncio.get_running_loop()
        except RuntimeError:
            running = None
        if running is slot.loop:
            _complete(slot.future, answer)
        else:
            slot.loop.call_soon_threadsafe(_complete, slot.future, answer)


__all__ = ["CANCELLED", "Answer", "PendingPermission", "PendingPermissions"]
