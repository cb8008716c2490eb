"""
Swap coordinator.

Each chain adapter is polled by its own task; everything it finds, together
with clock ticks, submission outcomes and new orders, goes through one queue
into a single decision task. Only that task touches swap state, the event
store and the scheduler, so no two decisions ever interleave.
"""

import asyncio
import logging
import time
from collections import Counter
from typing import Any, Callable, Dict, List, Optional, Tuple

from attr import dataclass

from .adapters.base import ChainAdapter
from .db import EscrowEventStore
from .errors import (
    AlreadySettled,
    DuplicateOrder,
    NetworkError,
    RelayerError,
    StorageUnavailable,
    SubmissionRejected,
)
from .models import ActionKind, BlockRef, ChainSide, EscrowEvent, SwapAction, SwapOrder, SwapState
from .notifications import Notifier, PhaseTransition
from .scheduler import EntryKind, Scheduler
from .state_machine import SubmissionAbandoned, SwapStateMachine, TimeoutTick, Trigger, outstanding_actions


@dataclass(frozen=True)
class Tick:
    now: int


@dataclass(frozen=True)
class CursorAdvance:
    chain: ChainSide
    ref: BlockRef


@dataclass(frozen=True)
class SubmissionOutcome:
    action: SwapAction
    attempt: int
    tx_ref: str = ""
    error: Optional[Exception] = None


@dataclass(frozen=True, eq=False)
class OrderRegistration:
    order: SwapOrder
    future: Optional[asyncio.Future] = None


@dataclass
class InFlight:
    action: SwapAction
    attempt: int = 1
    rejections: int = 0
    tx_ref: str = ""
    submitting: bool = False


class Coordinator:
    STATUS_LOG_INTERVAL = 30  # seconds

    def __init__(
        self,
        adapters: Dict[ChainSide, ChainAdapter],
        store: EscrowEventStore,
        scheduler: Optional[Scheduler] = None,
        notifier: Optional[Notifier] = None,
        machine: Optional[SwapStateMachine] = None,
        poll_interval: float = 5,
        tick_interval: float = 1,
        max_rejections: int = 5,
        confirmation_timeout: float = 600,
        clock: Callable[[], float] = time.time,
    ):
        missing = set(ChainSide) - set(adapters)
        if missing:
            raise ValueError(f"No adapter configured for {sorted(s.value for s in missing)}")
        self.adapters = adapters
        self.store = store
        self.scheduler = scheduler or Scheduler()
        self.notifier = notifier or Notifier()
        self.machine = machine or SwapStateMachine()
        self.poll_interval = poll_interval
        self.tick_interval = tick_interval
        self.max_rejections = max_rejections
        self.confirmation_timeout = confirmation_timeout
        self.clock = clock

        self.states: Dict[str, SwapState] = {}
        self.in_flight: Dict[Tuple, InFlight] = {}
        self.queue: asyncio.Queue = asyncio.Queue()
        self._submissions: set = set()
        self.running = False
        self.shutdown_event = asyncio.Event()
        self.log = logging.getLogger("Coordinator")

    def now(self) -> int:
        return int(self.clock())

    # ---------------------------------------------------------------- recovery

    async def recover(self) -> int:
        """
        Rebuild every known swap from the durable event history and resubmit
        whatever the chains do not show yet.
        """
        now = self.now()
        orders = await self.store.list_orders()
        for order in orders:
            events = await self.store.events_for(order.swap_id)
            state, abandoned = await self._restore(order, events, now)
            self.states[order.swap_id] = state
            if state.phase is not order.status or (state.secret and state.secret != order.revealed_secret):
                await self.store.update_order_status(order.swap_id, state.phase, state.secret)
            if not state.phase.is_terminal:
                self.scheduler.arm_timeouts(order.swap_id, order.dest_timeout, order.source_timeout)
            for action in outstanding_actions(state):
                if action.key not in abandoned:
                    self._dispatch(action)
            self.log.info(f"Recovered swap {order.swap_id[:10]} in {state.phase.value} from {len(events)} event(s)")
        self.log.info(f"Recovered {len(orders)} swap(s), {len(self.in_flight)} action(s) outstanding")
        return len(orders)

    async def _restore(self, order: SwapOrder, events: List[EscrowEvent], now: int) -> Tuple[SwapState, set]:
        """Replay the history, then re-apply every action that ran out of rejections."""
        state = self.machine.replay(order, events, now)
        abandoned = set()
        for record in await self.store.list_submissions(order.swap_id):
            if record["status"] != "abandoned":
                continue
            kind = ActionKind(record["kind"])
            action = SwapAction(
                order.swap_id,
                kind,
                ChainSide(record["chain"]),
                state.secret if kind is ActionKind.REVEAL_SECRET else None,
            )
            state, _ = self.machine.step(state, SubmissionAbandoned(action, now))
            abandoned.add(action.key)
        return state, abandoned

    # ---------------------------------------------------------------- decision

    async def register_order(self, order: SwapOrder) -> SwapState:
        """Start tracking `order`. Raises DuplicateOrder if it is already known."""
        if not self.running:
            return await self._register(order)
        future = asyncio.get_running_loop().create_future()
        await self.queue.put(OrderRegistration(order, future))
        return await future

    async def handle(self, item: Any) -> None:
        match item:
            case EscrowEvent():
                await self._on_event(item)
            case Tick(now=now):
                await self.tick(now)
            case SubmissionOutcome():
                await self._on_outcome(item)
            case CursorAdvance(chain=chain, ref=ref):
                await self.store.set_cursor(chain, ref)
            case OrderRegistration(order=order, future=future):
                try:
                    state = await self._register(order)
                except Exception as e:
                    if future is None:
                        raise
                    if not future.done():
                        future.set_exception(e)
                    if isinstance(e, StorageUnavailable):
                        raise
                else:
                    if future is not None and not future.done():
                        future.set_result(state)
            case _:
                raise TypeError(f"Unsupported queue item {item!r}")

    async def _register(self, order: SwapOrder) -> SwapState:
        if order.swap_id in self.states or not await self.store.save_order(order):
            raise DuplicateOrder(order.swap_id)
        initial = self.machine.initial(order)
        self.states[order.swap_id] = initial
        self.log.info(f"Order created with ID: {order.swap_id}")

        # events may have been seen before the order was known
        events = await self.store.events_for(order.swap_id)
        state, abandoned = await self._restore(order, events, self.now())
        await self._commit(initial, state, [], self.now())
        for action in outstanding_actions(state):
            if action.key not in abandoned:
                self._dispatch(action)
        if not state.phase.is_terminal:
            self.scheduler.arm_timeouts(order.swap_id, order.dest_timeout, order.source_timeout)
        return state

    async def _on_event(self, event: EscrowEvent) -> None:
        if not await self.store.append(event):
            self.log.debug(f"Duplicate {event} ignored")
            return
        self.log.info(f"Observed {event}")
        state = self.states.get(event.swap_id)
        if state is None:
            self.log.info(f"Stored {event} for unknown swap {event.swap_id[:10]}")
            return
        await self._step(state, event, event.observed_at)

    async def tick(self, now: int) -> None:
        """Fire every scheduled deadline that is due at `now`."""
        for entry in self.scheduler.due(now):
            match entry.kind:
                case EntryKind.DEST_TIMEOUT | EntryKind.SOURCE_TIMEOUT:
                    state = self.states.get(entry.swap_id)
                    if state is not None and not state.phase.is_terminal:
                        await self._step(state, TimeoutTick(entry.swap_id, now), now)
                case EntryKind.RETRY | EntryKind.CONFIRMATION:
                    self._resubmit(entry.action, entry.kind)

    async def _step(self, state: SwapState, trigger: Trigger, now: int) -> SwapState:
        new_state, actions = self.machine.step(state, trigger)
        await self._commit(state, new_state, actions, now)
        for action in actions:
            self._dispatch(action)
        return new_state

    async def _commit(self, old: SwapState, new: SwapState, actions: List[SwapAction], now: int) -> None:
        self.states[new.swap_id] = new
        for key, entry in list(self.in_flight.items()):
            if entry.action.swap_id == new.swap_id and new.is_confirmed(entry.action):
                self.log.info(f"Confirmed {entry.action} ({entry.tx_ref or 'no tx'})")
                del self.in_flight[key]
                self.scheduler.cancel_action(entry.action)
                await self.store.record_submission(entry.action, "confirmed", entry.tx_ref, entry.attempt)

        if new.phase is not old.phase or new.secret != old.secret:
            await self.store.update_order_status(new.swap_id, new.phase, new.secret)
        if new.phase.is_terminal and not old.phase.is_terminal:
            self.scheduler.cancel_timeouts(new.swap_id)
        if new.phase is not old.phase:
            self.notifier.publish(PhaseTransition(new.swap_id, old.phase, new.phase, now, tuple(actions)))

    # ------------------------------------------------------------- submission

    def _dispatch(self, action: SwapAction) -> None:
        if action.key in self.in_flight:
            self.log.debug(f"{action} already in flight")
            return
        entry = InFlight(action)
        self.in_flight[action.key] = entry
        self._launch(entry)

    def _launch(self, entry: InFlight) -> None:
        entry.submitting = True
        state = self.states[entry.action.swap_id]
        task = asyncio.create_task(self._submit(entry.action, entry.attempt, state.order))
        self._submissions.add(task)
        task.add_done_callback(self._submissions.discard)

    def _resubmit(self, action: SwapAction, reason: EntryKind) -> None:
        entry = self.in_flight.get(action.key)
        if entry is None or entry.submitting:
            return
        if self.states[action.swap_id].is_confirmed(action):
            del self.in_flight[action.key]
            return
        entry.attempt += 1
        self.log.info(f"Resubmitting {action} after {reason.value} (attempt {entry.attempt})")
        self._launch(entry)

    async def _submit(self, action: SwapAction, attempt: int, order: SwapOrder) -> None:
        """Runs outside the decision task; the outcome goes back through the queue."""
        adapter = self.adapters[action.chain]
        try:
            tx_ref = await adapter.submit_action(action, order)
            outcome = SubmissionOutcome(action, attempt, tx_ref=tx_ref)
        except RelayerError as e:
            outcome = SubmissionOutcome(action, attempt, error=e)
        except Exception as e:
            self.log.error(f"Unexpected error submitting {action}: {e}", exc_info=True)
            outcome = SubmissionOutcome(action, attempt, error=NetworkError(str(e)))
        await self.queue.put(outcome)

    async def _on_outcome(self, outcome: SubmissionOutcome) -> None:
        action = outcome.action
        entry = self.in_flight.get(action.key)
        if entry is None or entry.attempt != outcome.attempt:
            return
        entry.submitting = False
        state = self.states[action.swap_id]
        now = self.now()

        if state.is_confirmed(action):
            del self.in_flight[action.key]
            return

        match outcome.error:
            case None:
                entry.tx_ref = outcome.tx_ref
                self.log.info(f"Submitted {action}: {outcome.tx_ref}")
                await self.store.record_submission(action, "submitted", outcome.tx_ref, entry.attempt)
                self.scheduler.arm_confirmation(action, entry.attempt, now + self.confirmation_timeout)
            case AlreadySettled() as e:
                self.log.info(f"{action} already settled on chain: {e}")
                del self.in_flight[action.key]
                self.scheduler.cancel_action(action)
                await self.store.record_submission(action, "settled", entry.tx_ref, entry.attempt)
            case SubmissionRejected() as e:
                entry.rejections += 1
                if entry.rejections >= self.max_rejections:
                    self.log.error(f"{action} rejected {entry.rejections} times, abandoning: {e}")
                    del self.in_flight[action.key]
                    self.scheduler.cancel_action(action)
                    await self.store.record_submission(action, "abandoned", entry.tx_ref, entry.attempt, str(e))
                    await self._step(state, SubmissionAbandoned(action, now), now)
                else:
                    self.log.warning(f"{action} rejected ({entry.rejections}/{self.max_rejections}): {e}")
                    await self.store.record_submission(action, "rejected", entry.tx_ref, entry.attempt, str(e))
                    self.scheduler.arm_retry(action, entry.attempt, now)
            case e:
                self.log.warning(f"{action} failed, retrying in {self.scheduler.backoff(entry.attempt)}s: {e}")
                await self.store.record_submission(action, "retrying", entry.tx_ref, entry.attempt, str(e))
                self.scheduler.arm_retry(action, entry.attempt, now)

    # ----------------------------------------------------------------- polling

    async def poll_once(self, side: ChainSide, cursor: Optional[BlockRef]) -> Optional[BlockRef]:
        """Queue every new event of one chain; returns the position reached."""
        adapter = self.adapters[side]
        last = cursor
        async for event in adapter.poll_events(cursor):
            await self.queue.put(event)
            if last is None or event.block_ref > last:
                last = event.block_ref
        if adapter.checkpoint is not None and (last is None or adapter.checkpoint > last):
            last = adapter.checkpoint
        if last is not None and last != cursor:
            # queued behind the events so the cursor never passes an unstored event
            await self.queue.put(CursorAdvance(side, last))
        return last

    async def drain(self) -> None:
        """Handle queued items and finished submissions until nothing is left."""
        while self._submissions or not self.queue.empty():
            if self._submissions:
                await asyncio.gather(*list(self._submissions))
            while not self.queue.empty():
                await self.handle(self.queue.get_nowait())

    async def _poll_chain(self, side: ChainSide) -> None:
        adapter = self.adapters[side]
        cursor = await self.store.get_cursor(side)
        self.log.info(f"Polling {adapter.name} ({side.value}) from {cursor or 'lookback'} every {self.poll_interval}s")
        while self.running:
            try:
                cursor = await self.poll_once(side, cursor)
            except NetworkError as e:
                self.log.warning(f"Polling {adapter.name} failed: {e}")
            except Exception as e:
                self.log.error(f"Error polling {adapter.name}: {e}", exc_info=True)
            await asyncio.sleep(self.poll_interval)

    async def _ticker(self) -> None:
        while self.running:
            await self.queue.put(Tick(self.now()))
            await asyncio.sleep(self.tick_interval)

    async def _decide(self) -> None:
        while self.running:
            item = await self.queue.get()
            try:
                await self.handle(item)
            except StorageUnavailable:
                raise
            except Exception as e:
                self.log.error(f"Failed to handle {item}: {e}", exc_info=True)

    async def _periodic_status_logger(self) -> None:
        while self.running:
            await asyncio.sleep(self.STATUS_LOG_INTERVAL)
            stats = self.get_stats()
            if stats["active"] > 0:
                self.log.info(
                    f"Status: {stats['active']} active swap(s), "
                    f"{stats['in_flight']} action(s) in flight, {stats['queued']} queued"
                )

    # ---------------------------------------------------------------- lifecycle

    async def _check_task_health(self, tasks: Dict[str, asyncio.Task]) -> Optional[BaseException]:
        """Returns the failure of the first critical task that stopped."""
        for name, task in tasks.items():
            if task.done() and name != "status":
                try:
                    await task
                except Exception as e:
                    self.log.error(f"{name} task failed: {e}", exc_info=True)
                    return e
                return RuntimeError(f"{name} task exited")
        return None

    async def _cleanup_tasks(self, tasks: Dict[str, asyncio.Task]) -> None:
        for task in list(tasks.values()) + list(self._submissions):
            if not task.done():
                task.cancel()
                try:
                    await task
                except asyncio.CancelledError:
                    pass
                except Exception as e:
                    self.log.warning(f"Task ended with {e} during shutdown")

    async def run(self) -> None:
        """Main loop. Returns on `stop()`, raises StorageUnavailable if the store goes away."""
        self.running = True
        self.shutdown_event.clear()
        self.log.info("Coordinator starting...")
        tasks = {f"poll-{side.value}": asyncio.create_task(self._poll_chain(side)) for side in self.adapters}
        tasks["decide"] = asyncio.create_task(self._decide())
        tasks["ticker"] = asyncio.create_task(self._ticker())
        tasks["status"] = asyncio.create_task(self._periodic_status_logger())

        failure = None
        try:
            while self.running:
                try:
                    await asyncio.wait_for(self.shutdown_event.wait(), timeout=1.0)
                    break
                except asyncio.TimeoutError:
                    pass
                failure = await self._check_task_health(tasks)
                if failure is not None:
                    self.log.error("Critical task failure, shutting down")
                    break
        finally:
            self.running = False
            await self._cleanup_tasks(tasks)
            self._fail_pending(failure if isinstance(failure, StorageUnavailable) else None)
            self.log.info("Coordinator stopped")
        if isinstance(failure, StorageUnavailable):
            raise failure

    def _fail_pending(self, error: Optional[RelayerError]) -> None:
        """Orders still queued when the loop exits are answered with an error."""
        while not self.queue.empty():
            item = self.queue.get_nowait()
            if isinstance(item, OrderRegistration) and item.future is not None and not item.future.done():
                item.future.set_exception(
                    error or RelayerError(f"Relayer stopped before order {item.order.swap_id} was registered")
                )

    def stop(self) -> None:
        self.running = False
        self.shutdown_event.set()

    async def close(self) -> None:
        await self.notifier.flush()
        for adapter in self.adapters.values():
            await adapter.close()

    # ------------------------------------------------------------------- views

    def get_swap(self, swap_id: str) -> Optional[SwapState]:
        return self.states.get(swap_id)

    def get_stats(self) -> Dict[str, Any]:
        phases = Counter(state.phase.value for state in self.states.values())
        return {
            "running": self.running,
            "swaps": len(self.states),
            "active": sum(1 for s in self.states.values() if not s.phase.is_terminal),
            "phases": dict(phases),
            "in_flight": len(self.in_flight),
            "scheduled": len(self.scheduler),
            "next_deadline": self.scheduler.next_deadline(),
            "queued": self.queue.qsize(),
            "chains": {side.value: adapter.get_status() for side, adapter in self.adapters.items()},
        }
