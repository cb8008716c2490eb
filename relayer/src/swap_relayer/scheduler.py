import enum
import heapq
import itertools
import logging
from typing import Dict, List, Optional, Tuple

from attr import dataclass

from .models import SwapAction


class EntryKind(enum.Enum):
    DEST_TIMEOUT = "dest_timeout"
    SOURCE_TIMEOUT = "source_timeout"
    RETRY = "retry"  # back-off after a failed submission
    CONFIRMATION = "confirmation"  # submitted, waiting for the chain to show it


@dataclass(frozen=True)
class ScheduledEntry:
    deadline: float
    swap_id: str
    kind: EntryKind
    action: Optional[SwapAction] = None
    attempt: int = 0

    @property
    def key(self) -> Tuple:
        action_key = (self.action.kind, self.action.chain) if self.action is not None else None
        return (self.swap_id, self.kind, action_key)


class Scheduler:
    """
    Min-heap of deadlines. Re-arming an entry with the same key supersedes the
    previous one; superseded and cancelled entries are dropped when popped.
    """

    def __init__(self, base_delay: float = 2.0, max_delay: float = 300.0):
        self.base_delay = base_delay
        self.max_delay = max_delay
        self._heap: List[Tuple[float, int, ScheduledEntry]] = []
        self._live: Dict[Tuple, int] = {}
        self._seq = itertools.count()
        self.log = logging.getLogger("Scheduler")

    def __len__(self) -> int:
        return len(self._live)

    def arm(self, entry: ScheduledEntry) -> ScheduledEntry:
        seq = next(self._seq)
        self._live[entry.key] = seq
        heapq.heappush(self._heap, (entry.deadline, seq, entry))
        self.log.debug(f"Armed {entry.kind.value} for {entry.swap_id[:10]} at {entry.deadline}")
        return entry

    def arm_timeouts(self, swap_id: str, dest_timeout: int, source_timeout: int) -> None:
        self.arm(ScheduledEntry(deadline=dest_timeout, swap_id=swap_id, kind=EntryKind.DEST_TIMEOUT))
        self.arm(ScheduledEntry(deadline=source_timeout, swap_id=swap_id, kind=EntryKind.SOURCE_TIMEOUT))

    def arm_retry(self, action: SwapAction, attempt: int, now: float) -> ScheduledEntry:
        self.cancel_action(action)
        return self.arm(ScheduledEntry(
            deadline=now + self.backoff(attempt),
            swap_id=action.swap_id,
            kind=EntryKind.RETRY,
            action=action,
            attempt=attempt,
        ))

    def arm_confirmation(self, action: SwapAction, attempt: int, deadline: float) -> ScheduledEntry:
        self.cancel_action(action)
        return self.arm(ScheduledEntry(
            deadline=deadline,
            swap_id=action.swap_id,
            kind=EntryKind.CONFIRMATION,
            action=action,
            attempt=attempt,
        ))

    def cancel_action(self, action: SwapAction) -> None:
        for kind in (EntryKind.RETRY, EntryKind.CONFIRMATION):
            self._live.pop((action.swap_id, kind, (action.kind, action.chain)), None)

    def cancel_timeouts(self, swap_id: str) -> None:
        for kind in (EntryKind.DEST_TIMEOUT, EntryKind.SOURCE_TIMEOUT):
            self._live.pop((swap_id, kind, None), None)

    def backoff(self, attempt: int) -> float:
        """Exponential delay for the given 1-based attempt number, capped at max_delay."""
        return min(self.max_delay, self.base_delay * (2 ** max(0, attempt - 1)))

    def next_deadline(self) -> Optional[float]:
        while self._heap:
            deadline, seq, entry = self._heap[0]
            if self._live.get(entry.key) == seq:
                return deadline
            heapq.heappop(self._heap)
        return None

    def due(self, now: float) -> List[ScheduledEntry]:
        ready = []
        while self._heap and self._heap[0][0] <= now:
            _, seq, entry = heapq.heappop(self._heap)
            if self._live.get(entry.key) != seq:
                continue
            del self._live[entry.key]
            ready.append(entry)
        return ready
