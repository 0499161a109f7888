"""Regression tests for the exclusive-access primitive behind serialized handlers."""

from __future__ import annotations

import asyncio

import pytest

from data_handler.utils.concurrency import ExclusiveAccess


async def _settle(rounds: int = 5) -> None:
    for _ in range(rounds):
        await asyncio.sleep(0)


@pytest.mark.asyncio
async def test_waiters_are_served_in_submission_order() -> None:
    access = ExclusiveAccess(name="fifo")
    order: list[int] = []

    async def worker(index: int) -> None:
        async with access.hold(f"op-{index}"):
            await asyncio.sleep(0)
            order.append(index)

    await asyncio.gather(*(worker(index) for index in range(10)))

    assert order == list(range(10))
    assert access.acquisitions == 10
    assert not access.locked


@pytest.mark.asyncio
async def test_hold_releases_when_body_raises() -> None:
    access = ExclusiveAccess()

    with pytest.raises(RuntimeError, match="boom"):
        async with access.hold("failing"):
            assert access.held_by == "failing"
            raise RuntimeError("boom")

    assert not access.locked
    assert access.held_by is None
    async with access.hold("after"):
        assert access.held_by == "after"


@pytest.mark.asyncio
async def test_release_without_acquire_is_rejected() -> None:
    access = ExclusiveAccess()

    with pytest.raises(RuntimeError, match="without a matching acquire"):
        access.release()


def test_name_must_be_non_empty() -> None:
    with pytest.raises(ValueError, match="non-empty"):
        ExclusiveAccess(name="")


@pytest.mark.asyncio
async def test_snapshot_reports_holder_and_waiters() -> None:
    access = ExclusiveAccess(name="diag")
    await access.acquire("first")

    waiter = asyncio.create_task(access.acquire("second"))
    await _settle()

    assert access.snapshot() == {
        "name": "diag",
        "locked": True,
        "held_by": "first",
        "waiting": 1,
        "acquisitions": 1,
    }

    access.release()
    await waiter

    assert access.held_by == "second"
    assert access.waiting == 0
    access.release()
    assert access.snapshot()["locked"] is False


@pytest.mark.asyncio
async def test_cancelled_waiter_never_acquires() -> None:
    access = ExclusiveAccess()
    await access.acquire("holder")

    waiter = asyncio.create_task(access.acquire("cancelled"))
    await _settle()
    waiter.cancel()
    with pytest.raises(asyncio.CancelledError):
        await waiter

    assert access.waiting == 0
    assert access.held_by == "holder"
    access.release()

    assert not access.locked
    assert access.acquisitions == 1
