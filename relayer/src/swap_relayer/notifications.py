import asyncio
import inspect
import logging
from typing import Any, Callable, List, Sequence, Set, Tuple

import aiohttp
from attr import dataclass, field

from .models import Phase, SwapAction


@dataclass(frozen=True)
class PhaseTransition:
    swap_id: str
    previous: Phase
    phase: Phase
    at: int
    actions: Tuple[SwapAction, ...] = field(factory=tuple)

    def to_dict(self) -> dict:
        return {
            "swap_id": self.swap_id,
            "previous": self.previous.value,
            "phase": self.phase.value,
            "at": self.at,
            "actions": [{"kind": a.kind.value, "chain": a.chain.value} for a in self.actions],
        }


Subscriber = Callable[[PhaseTransition], Any]


class Notifier:
    """
    Fans phase transitions out to in-process subscribers and to webhooks.
    Delivery failures are logged and never reach the caller.
    """

    def __init__(self, webhooks: Sequence[str] = (), timeout: float = 5):
        self.webhooks: List[str] = [w.rstrip("/") for w in webhooks if w.strip()]
        self.timeout = aiohttp.ClientTimeout(total=timeout)
        self._subscribers: List[Subscriber] = []
        self._pending: Set[asyncio.Task] = set()
        self.log = logging.getLogger("Notifier")

    def subscribe(self, callback: Subscriber) -> Callable[[], None]:
        self._subscribers.append(callback)

        def unsubscribe():
            if callback in self._subscribers:
                self._subscribers.remove(callback)

        return unsubscribe

    def publish(self, transition: PhaseTransition) -> None:
        for callback in list(self._subscribers):
            try:
                result = callback(transition)
                if inspect.isawaitable(result):
                    self._track(asyncio.ensure_future(result))
            except Exception as e:
                self.log.error(f"Subscriber {callback!r} failed on {transition.swap_id}: {e}")
        if self.webhooks:
            self._track(asyncio.create_task(self._deliver(transition)))

    def _track(self, task: asyncio.Future) -> None:
        self._pending.add(task)
        task.add_done_callback(self._done)

    def _done(self, task: asyncio.Future) -> None:
        self._pending.discard(task)
        if not task.cancelled() and task.exception() is not None:
            self.log.error(f"Notification failed: {task.exception()}")

    async def _deliver(self, transition: PhaseTransition) -> None:
        payload = transition.to_dict()
        async with aiohttp.ClientSession(timeout=self.timeout) as session:
            for url in self.webhooks:
                try:
                    async with session.post(url, json=payload) as response:
                        if response.status >= 300:
                            self.log.error(f"Failed to notify {url}: {await response.text()}")
                except (aiohttp.ClientError, asyncio.TimeoutError) as e:
                    self.log.error(f"Error notifying {url}: {e}")

    async def flush(self) -> None:
        """Wait for every notification still in flight."""
        while self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)
