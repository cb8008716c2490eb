import enum
from typing import FrozenSet, Optional

from attr import dataclass, field


class ChainSide(enum.Enum):
    SOURCE = "source"
    DEST = "dest"


class EventKind(enum.Enum):
    CREATED = "Created"
    FUNDED = "Funded"
    SECRET_REVEALED = "SecretRevealed"
    CLAIMED = "Claimed"
    REFUNDED = "Refunded"
    EXPIRED = "Expired"


class Phase(enum.Enum):
    AWAITING_SOURCE_FUND = "AwaitingSourceFund"
    AWAITING_DEST_FUND = "AwaitingDestFund"
    ACTIVE = "Active"
    SECRET_REVEALED = "SecretRevealed"
    COMPLETED = "Completed"
    REFUNDING = "Refunding"
    REFUNDED = "Refunded"
    EXPIRED = "Expired"

    @property
    def is_terminal(self) -> bool:
        return self in (Phase.COMPLETED, Phase.REFUNDED, Phase.EXPIRED)


class ActionKind(enum.Enum):
    REVEAL_SECRET = "reveal_secret"  # withdraw from the escrow with the preimage
    REFUND = "refund"  # cancel the escrow after its timelock


@dataclass(frozen=True, order=True)
class BlockRef:
    """Position of an event on its own chain: (block height, index inside the block)."""
    height: int
    index: int = 0

    def __str__(self) -> str:
        return f"{self.height}:{self.index}"


@dataclass(frozen=True)
class SwapOrder:
    swap_id: str
    hashlock: bytes  # Hash of the secret
    source_maker: str
    source_taker: str
    dest_maker: str
    dest_taker: str
    source_asset: str
    source_amount: int
    dest_asset: str
    dest_amount: int
    source_timeout: int  # absolute unix seconds
    dest_timeout: int  # absolute unix seconds, strictly before source_timeout
    hash_algorithm: str = "keccak256"
    status: Phase = Phase.AWAITING_SOURCE_FUND
    revealed_secret: Optional[bytes] = None

    def __attrs_post_init__(self):
        if not self.swap_id:
            raise ValueError("swap_id must not be empty")
        if len(self.hashlock) != 32:
            raise ValueError(f"hashlock must be 32 bytes, got {len(self.hashlock)}")
        if self.dest_timeout >= self.source_timeout:
            raise ValueError(
                f"dest_timeout ({self.dest_timeout}) must be strictly earlier "
                f"than source_timeout ({self.source_timeout})"
            )

    def timeout_for(self, chain: ChainSide) -> int:
        return self.source_timeout if chain is ChainSide.SOURCE else self.dest_timeout


@dataclass(frozen=True)
class EscrowEvent:
    chain: ChainSide
    swap_id: str
    kind: EventKind
    observed_at: int
    block_ref: BlockRef
    tx_ref: str = ""
    secret: Optional[bytes] = None

    @property
    def key(self):
        return (self.chain, self.swap_id, self.block_ref)

    def __str__(self) -> str:
        return (
            f"EscrowEvent({self.chain.value} {self.kind.value} swap={self.swap_id[:10]} "
            f"at={self.block_ref} tx={self.tx_ref[:12]})"
        )


@dataclass(frozen=True)
class SwapAction:
    swap_id: str
    kind: ActionKind
    chain: ChainSide
    secret: Optional[bytes] = None

    @property
    def key(self):
        return (self.swap_id, self.kind, self.chain)

    def __str__(self) -> str:
        return f"{self.kind.value} on {self.chain.value} for {self.swap_id[:10]}"


@dataclass(frozen=True)
class SwapState:
    order: SwapOrder
    phase: Phase = Phase.AWAITING_SOURCE_FUND
    funded: FrozenSet[ChainSide] = field(factory=frozenset)
    revealed: FrozenSet[ChainSide] = field(factory=frozenset)
    claimed: FrozenSet[ChainSide] = field(factory=frozenset)
    refunded: FrozenSet[ChainSide] = field(factory=frozenset)
    secret: Optional[bytes] = None
    requested: FrozenSet[tuple] = field(factory=frozenset)  # (ActionKind, ChainSide) already emitted

    @property
    def swap_id(self) -> str:
        return self.order.swap_id

    def is_confirmed(self, action: SwapAction) -> bool:
        """Whether the chain already shows the effect of `action`."""
        match action.kind:
            case ActionKind.REVEAL_SECRET:
                return action.chain in self.revealed or action.chain in self.claimed
            case ActionKind.REFUND:
                return action.chain in self.refunded

    def summary(self) -> dict:
        return {
            "swap_id": self.swap_id,
            "phase": self.phase.value,
            "funded": sorted(c.value for c in self.funded),
            "revealed": sorted(c.value for c in self.revealed),
            "claimed": sorted(c.value for c in self.claimed),
            "refunded": sorted(c.value for c in self.refunded),
            "secret_revealed": self.secret is not None,
            "source_timeout": self.order.source_timeout,
            "dest_timeout": self.order.dest_timeout,
        }
