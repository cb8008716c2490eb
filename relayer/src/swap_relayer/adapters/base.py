import string
from abc import ABC, abstractmethod
from typing import AsyncIterator, Optional, Union

from ..models import BlockRef, ChainSide, EscrowEvent, EventKind, SwapAction, SwapOrder

EVENT_ALIASES = {
    "created": EventKind.CREATED,
    "funded": EventKind.FUNDED,
    "deposited": EventKind.FUNDED,
    "secretrevealed": EventKind.SECRET_REVEALED,
    "revealed": EventKind.SECRET_REVEALED,
    "claimed": EventKind.CLAIMED,
    "withdrawn": EventKind.CLAIMED,
    "refunded": EventKind.REFUNDED,
    "cancelled": EventKind.REFUNDED,
    "expired": EventKind.EXPIRED,
}


def normalize_swap_id(value: Union[str, bytes]) -> str:
    """Hex swap ids travel as 0x-prefixed lowercase hex on every chain; other ids pass through."""
    if isinstance(value, (bytes, bytearray)):
        return "0x" + bytes(value).hex()
    value = value.strip()
    digits = value[2:] if value[:2].lower() == "0x" else value
    if digits and all(c in string.hexdigits for c in digits):
        return "0x" + digits.lower()
    return value


def parse_event_kind(value: str) -> Optional[EventKind]:
    return EVENT_ALIASES.get(value.replace("_", "").replace("-", "").lower())


class ChainAdapter(ABC):
    """
    Uniform view of one chain's escrow contracts.

    `poll_events` is read-only and restartable: it yields every event strictly
    after `since`, in block order, and leaves the furthest position it scanned
    in `checkpoint`. `submit_action` is the only way the relayer changes
    on-chain state; it raises one of the errors in `swap_relayer.errors`.
    """

    name: str = "chain"

    def __init__(self, side: ChainSide):
        self.side = side
        self.checkpoint: Optional[BlockRef] = None

    @abstractmethod
    def poll_events(self, since: Optional[BlockRef]) -> AsyncIterator[EscrowEvent]:
        ...

    @abstractmethod
    async def submit_action(self, action: SwapAction, order: SwapOrder) -> str:
        ...

    async def close(self) -> None:
        pass

    def get_status(self) -> dict:
        return {
            "chain": self.name,
            "side": self.side.value,
            "checkpoint": str(self.checkpoint) if self.checkpoint else None,
        }
