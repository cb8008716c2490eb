"""Tests for the coordinator decision loop."""

import asyncio
import time
from unittest.mock import AsyncMock

import pytest

from swap_relayer.coordinator import Coordinator
from swap_relayer.db import EscrowEventStore
from swap_relayer.errors import (
    AlreadySettled,
    DuplicateOrder,
    InsufficientFunds,
    NetworkError,
    RelayerError,
    StorageUnavailable,
    SubmissionRejected,
)
from swap_relayer.models import ActionKind, BlockRef, ChainSide, EventKind, Phase, SwapAction

from helpers import DEST_TIMEOUT, NOW, SECRET, SOURCE_TIMEOUT, SWAP_ID, FakeAdapter, make_event, make_order

SRC = ChainSide.SOURCE
DST = ChainSide.DEST
REVEAL_SRC = SwapAction(SWAP_ID, ActionKind.REVEAL_SECRET, SRC, SECRET)
REFUND_SRC = SwapAction(SWAP_ID, ActionKind.REFUND, SRC)


async def reveal_on_dest(coordinator: Coordinator):
    await coordinator.register_order(make_order())
    for event in (
        make_event(EventKind.FUNDED, SRC, height=10),
        make_event(EventKind.FUNDED, DST, height=20),
        make_event(EventKind.SECRET_REVEALED, DST, height=30, secret=SECRET),
    ):
        await coordinator.handle(event)
    await coordinator.drain()


async def tick_at(coordinator: Coordinator, clock, now: int):
    clock.now = now
    await coordinator.tick(now)
    await coordinator.drain()


class TestHappyPath:
    @pytest.mark.asyncio
    async def test_reveal_is_submitted_once(self, coordinator, adapters, store):
        await reveal_on_dest(coordinator)

        assert adapters[SRC].submitted == [REVEAL_SRC]
        assert adapters[DST].submitted == []
        assert coordinator.get_swap(SWAP_ID).phase is Phase.SECRET_REVEALED

        # the same reveal delivered again by a re-poll
        await coordinator.handle(make_event(EventKind.SECRET_REVEALED, DST, height=30, secret=SECRET))
        await coordinator.drain()
        assert adapters[SRC].submitted == [REVEAL_SRC]

        [record] = await store.list_submissions(SWAP_ID)
        assert record["status"] == "submitted"
        assert record["tx_ref"] == "0xtx1"

    @pytest.mark.asyncio
    async def test_claims_complete_the_swap(self, coordinator, store):
        await reveal_on_dest(coordinator)
        for event in (
            make_event(EventKind.CLAIMED, DST, height=31),
            make_event(EventKind.SECRET_REVEALED, SRC, height=40, secret=SECRET),
            make_event(EventKind.CLAIMED, SRC, height=41),
        ):
            await coordinator.handle(event)

        assert coordinator.get_swap(SWAP_ID).phase is Phase.COMPLETED
        assert coordinator.in_flight == {}
        assert len(coordinator.scheduler) == 0
        assert coordinator.get_stats()["next_deadline"] is None
        [record] = await store.list_submissions(SWAP_ID)
        assert record["status"] == "confirmed"

        order = await store.get_order(SWAP_ID)
        assert order.status is Phase.COMPLETED
        assert order.revealed_secret == SECRET

    @pytest.mark.asyncio
    async def test_phase_transitions_are_published(self, coordinator, notifier):
        transitions = []
        notifier.subscribe(transitions.append)
        await reveal_on_dest(coordinator)

        assert [t.phase for t in transitions] == [Phase.AWAITING_DEST_FUND, Phase.ACTIVE, Phase.SECRET_REVEALED]
        assert transitions[-1].actions == (REVEAL_SRC,)

    @pytest.mark.asyncio
    async def test_dest_funded_before_source(self, coordinator, adapters, clock):
        await coordinator.register_order(make_order(source_timeout=NOW + 3600, dest_timeout=NOW + 1800))
        for event in (
            make_event(EventKind.FUNDED, DST, height=20, observed_at=NOW + 10),
            make_event(EventKind.FUNDED, SRC, height=10, observed_at=NOW + 20),
            make_event(EventKind.SECRET_REVEALED, DST, height=30, observed_at=NOW + 30, secret=SECRET),
        ):
            clock.now = event.observed_at
            await coordinator.handle(event)
        await coordinator.drain()

        assert coordinator.get_swap(SWAP_ID).phase is Phase.SECRET_REVEALED
        assert adapters[SRC].submitted == [REVEAL_SRC]
        assert adapters[DST].submitted == []

        for event in (
            make_event(EventKind.CLAIMED, DST, height=31, observed_at=NOW + 40),
            make_event(EventKind.SECRET_REVEALED, SRC, height=40, observed_at=NOW + 50, secret=SECRET),
            make_event(EventKind.CLAIMED, SRC, height=41, observed_at=NOW + 50),
        ):
            clock.now = event.observed_at
            await coordinator.handle(event)
        assert coordinator.get_swap(SWAP_ID).phase is Phase.COMPLETED
        assert adapters[SRC].submitted == [REVEAL_SRC]


class TestTimeouts:
    @pytest.mark.asyncio
    async def test_refund_submitted_once_across_ticks(self, coordinator, adapters, clock, notifier):
        transitions = []
        notifier.subscribe(transitions.append)
        await coordinator.register_order(make_order())
        await coordinator.handle(make_event(EventKind.FUNDED, SRC, height=10))

        await tick_at(coordinator, clock, DEST_TIMEOUT)
        assert coordinator.get_swap(SWAP_ID).phase is Phase.REFUNDING
        assert adapters[SRC].submitted == []

        await tick_at(coordinator, clock, SOURCE_TIMEOUT)
        for i in range(1, 6):
            await tick_at(coordinator, clock, SOURCE_TIMEOUT + 10 * i)

        assert coordinator.get_swap(SWAP_ID).phase is Phase.REFUNDED
        assert adapters[SRC].submitted == [REFUND_SRC]
        assert adapters[DST].submitted == []
        assert [t.phase for t in transitions] == [Phase.AWAITING_DEST_FUND, Phase.REFUNDING, Phase.REFUNDED]

    @pytest.mark.asyncio
    async def test_unconfirmed_submission_is_resubmitted(self, coordinator, adapters, clock):
        await reveal_on_dest(coordinator)
        await tick_at(coordinator, clock, NOW + 599)
        assert len(adapters[SRC].submitted) == 1

        await tick_at(coordinator, clock, NOW + 600)
        assert adapters[SRC].submitted == [REVEAL_SRC, REVEAL_SRC]


class TestSubmissionErrors:
    @pytest.mark.asyncio
    async def test_network_error_is_retried_with_backoff(self, coordinator, adapters, clock, store):
        adapters[SRC].results = [NetworkError("rpc down"), "0xfinal"]
        await reveal_on_dest(coordinator)

        assert len(adapters[SRC].submitted) == 1
        [record] = await store.list_submissions(SWAP_ID)
        assert record["status"] == "retrying"

        await tick_at(coordinator, clock, NOW + 1)
        assert len(adapters[SRC].submitted) == 1

        await tick_at(coordinator, clock, NOW + 2)
        assert len(adapters[SRC].submitted) == 2
        [record] = await store.list_submissions(SWAP_ID)
        assert record["status"] == "submitted"
        assert record["tx_ref"] == "0xfinal"

    @pytest.mark.asyncio
    async def test_already_settled_counts_as_success(self, coordinator, adapters, clock, store):
        adapters[SRC].results = [AlreadySettled("escrow already withdrawn")]
        await reveal_on_dest(coordinator)

        assert coordinator.in_flight == {}
        [record] = await store.list_submissions(SWAP_ID)
        assert record["status"] == "settled"

        await tick_at(coordinator, clock, NOW + 1200)
        assert len(adapters[SRC].submitted) == 1
        assert coordinator.get_swap(SWAP_ID).phase is Phase.SECRET_REVEALED

    @pytest.mark.asyncio
    async def test_rejection_budget_falls_back_to_refunding(self, coordinator, adapters, clock, store):
        adapters[SRC].results = [
            SubmissionRejected("execution reverted"),
            InsufficientFunds("insufficient funds for gas"),
            SubmissionRejected("execution reverted"),
        ]
        await reveal_on_dest(coordinator)
        await tick_at(coordinator, clock, NOW + 2)
        assert coordinator.get_swap(SWAP_ID).phase is Phase.SECRET_REVEALED

        await tick_at(coordinator, clock, NOW + 6)
        assert len(adapters[SRC].submitted) == 3
        assert coordinator.get_swap(SWAP_ID).phase is Phase.REFUNDING
        assert coordinator.in_flight == {}
        [record] = await store.list_submissions(SWAP_ID)
        assert record["status"] == "abandoned"


class TestRegistration:
    @pytest.mark.asyncio
    async def test_duplicate_order(self, coordinator):
        await coordinator.register_order(make_order())
        with pytest.raises(DuplicateOrder):
            await coordinator.register_order(make_order())

    @pytest.mark.asyncio
    async def test_events_before_registration_are_replayed(self, coordinator, store):
        await coordinator.handle(make_event(EventKind.FUNDED, SRC, height=10))
        assert await store.count_events() == 1
        assert coordinator.get_swap(SWAP_ID) is None

        state = await coordinator.register_order(make_order())
        assert state.phase is Phase.AWAITING_DEST_FUND
        assert (await store.get_order(SWAP_ID)).status is Phase.AWAITING_DEST_FUND


class TestRecovery:
    @pytest.mark.asyncio
    async def test_outstanding_reveal_is_resubmitted(self, coordinator, store, clock):
        await reveal_on_dest(coordinator)

        restarted = {side: FakeAdapter(side) for side in ChainSide}
        fresh = Coordinator(restarted, store, clock=clock)
        assert await fresh.recover() == 1
        await fresh.drain()

        assert fresh.get_swap(SWAP_ID).phase is Phase.SECRET_REVEALED
        assert restarted[SRC].submitted == [REVEAL_SRC]

    @pytest.mark.asyncio
    async def test_confirmed_actions_are_not_resubmitted(self, coordinator, store, clock):
        await reveal_on_dest(coordinator)
        await coordinator.handle(make_event(EventKind.SECRET_REVEALED, SRC, height=40, secret=SECRET))

        restarted = {side: FakeAdapter(side) for side in ChainSide}
        fresh = Coordinator(restarted, store, clock=clock)
        await fresh.recover()
        await fresh.drain()
        assert restarted[SRC].submitted == []

    @pytest.mark.asyncio
    async def test_recovery_applies_elapsed_deadlines(self, coordinator, store, clock):
        await coordinator.register_order(make_order())
        await coordinator.handle(make_event(EventKind.FUNDED, SRC, height=10))

        clock.now = SOURCE_TIMEOUT + 60
        restarted = {side: FakeAdapter(side) for side in ChainSide}
        fresh = Coordinator(restarted, store, clock=clock)
        await fresh.recover()
        await fresh.drain()

        assert fresh.get_swap(SWAP_ID).phase is Phase.REFUNDED
        assert restarted[SRC].submitted == [REFUND_SRC]
        assert (await store.get_order(SWAP_ID)).status is Phase.REFUNDED

    @pytest.mark.asyncio
    async def test_abandoned_action_is_not_retried_after_restart(self, coordinator, adapters, clock, store):
        adapters[SRC].results = [SubmissionRejected("execution reverted")] * 3
        await reveal_on_dest(coordinator)
        await tick_at(coordinator, clock, NOW + 2)
        await tick_at(coordinator, clock, NOW + 6)
        assert coordinator.get_swap(SWAP_ID).phase is Phase.REFUNDING

        restarted = {side: FakeAdapter(side) for side in ChainSide}
        fresh = Coordinator(restarted, store, clock=clock)
        assert await fresh.recover() == 1
        await fresh.drain()

        assert fresh.get_swap(SWAP_ID).phase is Phase.REFUNDING
        assert restarted[SRC].submitted == []
        assert fresh.in_flight == {}
        assert (await store.get_order(SWAP_ID)).status is Phase.REFUNDING


class TestPolling:
    @pytest.mark.asyncio
    async def test_cursor_follows_stored_events(self, coordinator, adapters, store):
        await coordinator.register_order(make_order())
        adapters[SRC].events = [
            make_event(EventKind.FUNDED, SRC, height=10),
            make_event(EventKind.CREATED, SRC, height=12, index=1, swap_id="0x" + "cd" * 32),
        ]

        cursor = await coordinator.poll_once(SRC, None)
        assert cursor == BlockRef(12, 1)
        assert await store.get_cursor(SRC) is None

        await coordinator.drain()
        assert await store.get_cursor(SRC) == BlockRef(12, 1)
        assert coordinator.get_swap(SWAP_ID).phase is Phase.AWAITING_DEST_FUND

        assert await coordinator.poll_once(SRC, cursor) == cursor
        assert coordinator.queue.empty()


class TestLifecycle:
    @pytest.mark.asyncio
    async def test_run_registers_through_queue_and_stops(self, adapters, tmp_path):
        store = EscrowEventStore(f"sqlite+aiosqlite:///{tmp_path}/relayer.db")
        await store.init()
        coordinator = Coordinator(adapters, store, poll_interval=0.01, tick_interval=0.01)
        task = asyncio.create_task(coordinator.run())
        await asyncio.sleep(0.05)

        now = int(time.time())
        order = make_order(dest_timeout=now + 3600, source_timeout=now + 7200)
        state = await asyncio.wait_for(coordinator.register_order(order), timeout=5)
        assert state.phase is Phase.AWAITING_SOURCE_FUND
        assert coordinator.get_stats()["swaps"] == 1

        coordinator.stop()
        await asyncio.wait_for(task, timeout=5)
        assert coordinator.running is False
        await store.close()

    @pytest.mark.asyncio
    async def test_storage_failure_halts_the_loop(self, adapters):
        store = AsyncMock(spec=EscrowEventStore)
        store.get_cursor.side_effect = StorageUnavailable("database is locked")
        coordinator = Coordinator(adapters, store, poll_interval=0.01, tick_interval=0.01)

        with pytest.raises(StorageUnavailable):
            await asyncio.wait_for(coordinator.run(), timeout=5)

    @pytest.mark.asyncio
    async def test_queued_registration_fails_when_the_loop_halts(self, adapters, store):
        coordinator = Coordinator(adapters, store, poll_interval=0.01, tick_interval=0.01)

        async def broken_decide():
            raise StorageUnavailable("database is locked")

        coordinator._decide = broken_decide
        task = asyncio.create_task(coordinator.run())
        await asyncio.sleep(0)
        assert coordinator.running

        with pytest.raises(StorageUnavailable):
            await asyncio.wait_for(coordinator.register_order(make_order()), timeout=5)
        with pytest.raises(StorageUnavailable):
            await asyncio.wait_for(task, timeout=5)
        assert coordinator.get_swap(SWAP_ID) is None

    @pytest.mark.asyncio
    async def test_queued_registration_fails_on_stop(self, adapters, store):
        coordinator = Coordinator(adapters, store, poll_interval=0.01, tick_interval=0.01)

        async def idle_decide():
            await asyncio.Event().wait()

        coordinator._decide = idle_decide
        task = asyncio.create_task(coordinator.run())
        await asyncio.sleep(0)
        registration = asyncio.create_task(coordinator.register_order(make_order()))
        await asyncio.sleep(0)
        assert not registration.done()

        coordinator.stop()
        await asyncio.wait_for(task, timeout=5)
        with pytest.raises(RelayerError, match="stopped before order"):
            await asyncio.wait_for(registration, timeout=5)
        assert coordinator.queue.empty()
