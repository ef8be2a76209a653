"""Unit tests for the pending-permission correlation table."""

from __future__ import annotations

import asyncio
import threading

import pytest

from thoughttree.acp.pending import CANCELLED, Answer, PendingPermissions
from thoughttree.errors import PermissionRequestNotFound

pytestmark = pytest.mark.unit


class TestResolve:
    async def test_resolve_delivers_option(self, pending: PendingPermissions) -> None:
        request_id, waiter = pending.create()
        assert request_id in pending

        pending.resolve(request_id, "allow-1")

        assert await waiter.wait() == Answer("allow-1")
        assert request_id not in pending
        assert len(pending) == 0

    async def test_ids_are_unique(self, pending: PendingPermissions) -> None:
        ids = {pending.create()[0] for _ in range(50)}
        assert len(ids) == 50
        assert len(pending) == 50

    async def test_unknown_id_raises(self, pending: PendingPermissions) -> None:
        with pytest.raises(PermissionRequestNotFound, match="No pending permission request"):
            pending.resolve("nope", "allow-1")

    async def test_unknown_id_leaves_other_entries_alone(self, pending: PendingPermissions) -> None:
        request_id, waiter = pending.create()

        with pytest.raises(PermissionRequestNotFound):
            pending.resolve("nope", "reject-1")

        assert request_id in pending
        assert not waiter.done()
        pending.resolve(request_id, "allow-1")
        assert await waiter.wait() == Answer("allow-1")

    async def test_second_resolve_raises(self, pending: PendingPermissions) -> None:
        request_id, waiter = pending.create()
        pending.resolve(request_id, "allow-1")

        with pytest.raises(PermissionRequestNotFound) as exc_info:
            pending.resolve(request_id, "reject-1")

        assert exc_info.value.request_id == request_id
        assert (await waiter.wait()).option_id == "allow-1"

    async def test_resolve_from_another_thread(self, pending: PendingPermissions) -> None:
        request_id, waiter = pending.create()

        thread = threading.Thread(target=pending.resolve, args=(request_id, "allow-1"))
        thread.start()
        answer = await asyncio.wait_for(waiter.wait(), timeout=5)
        thread.join()

        assert answer.option_id == "allow-1"

    async def test_resolve_before_wait_is_not_lost(self, pending: PendingPermissions) -> None:
        request_id, waiter = pending.create()
        pending.resolve(request_id, "allow-1")
        await asyncio.sleep(0)
        assert waiter.done()
        assert (await waiter.wait()).option_id == "allow-1"


class TestCancellation:
    async def test_discard_cancels_waiter(self, pending: PendingPermissions) -> None:
        request_id, waiter = pending.create()

        assert pending.discard(request_id) is True

        answer = await waiter.wait()
        assert answer is CANCELLED
        assert answer.cancelled
        with pytest.raises(PermissionRequestNotFound):
            pending.resolve(request_id, "allow-1")

    async def test_discard_after_resolve_is_noop(self, pending: PendingPermissions) -> None:
        request_id, waiter = pending.create()
        pending.resolve(request_id, "allow-1")

        assert pending.discard(request_id) is False
        assert (await waiter.wait()).option_id == "allow-1"

    async def test_cancel_all(self, pending: PendingPermissions) -> None:
        waiters = [pending.create()[1] for _ in range(3)]

        assert pending.cancel_all() == 3

        answers = await asyncio.gather(*(waiter.wait() for waiter in waiters))
        assert all(answer.cancelled for answer in answers)
        assert len(pending) == 0

    async def test_cancelled_wait_leaves_slot_resolvable(
        self, pending: PendingPermissions
    ) -> None:
        request_id, waiter = pending.create()
        task = asyncio.create_task(waiter.wait())
        await asyncio.sleep(0)
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

        pending.resolve(request_id, "allow-1")
        assert (await waiter.wait()).option_id == "allow-1"
