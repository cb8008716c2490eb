import logging
from typing import Iterable, List, Optional, Tuple, Union

from attr import dataclass, evolve

from .errors import InvalidSecret
from .hashlock import verify_secret
from .models import (
    ActionKind,
    ChainSide,
    EscrowEvent,
    EventKind,
    Phase,
    SwapAction,
    SwapOrder,
    SwapState,
)

BOTH_CHAINS = frozenset(ChainSide)
BEFORE_REVEAL = (Phase.AWAITING_SOURCE_FUND, Phase.AWAITING_DEST_FUND, Phase.ACTIVE)


@dataclass(frozen=True)
class TimeoutTick:
    swap_id: str
    now: int


@dataclass(frozen=True)
class SubmissionAbandoned:
    """An action exhausted its rejection budget; fall back to the refund path."""
    action: SwapAction
    now: int


Trigger = Union[EscrowEvent, TimeoutTick, SubmissionAbandoned]


class SwapStateMachine:
    """
    Per-swap transition logic. `step` never touches the outside world: it takes
    the current state and one trigger and returns the next state plus the
    actions the coordinator has to submit.
    """

    def __init__(self):
        self.log = logging.getLogger("FSM")

    def initial(self, order: SwapOrder) -> SwapState:
        return SwapState(order=order)

    def step(self, state: SwapState, trigger: Trigger) -> Tuple[SwapState, List[SwapAction]]:
        actions: List[SwapAction] = []
        match trigger:
            case EscrowEvent(observed_at=now):
                # a reveal seen after the dest timeout must not complete the swap
                if self._dest_timed_out(state, now):
                    state = self._enter(state, Phase.REFUNDING)
                elif state.phase in BEFORE_REVEAL and now >= state.order.source_timeout:
                    state = self._expire(state, actions)
                state = self._apply_event(state, trigger, actions)
                state = self._check_deadlines(state, now, actions)
            case TimeoutTick(now=now):
                state = self._check_deadlines(state, now, actions)
            case SubmissionAbandoned(action=action, now=now):
                state = self._abandon(state, action, now, actions)
                state = self._check_deadlines(state, now, actions)
            case _:
                raise TypeError(f"Unsupported trigger {trigger!r}")
        return state, actions

    def replay(self, order: SwapOrder, events: Iterable[EscrowEvent], now: Optional[int] = None) -> SwapState:
        """Rebuild a swap from its full history, then evaluate deadlines at `now`."""
        state = self.initial(order)
        for ev in events:
            if ev.swap_id != order.swap_id:
                continue
            state, _ = self.step(state, ev)
        if now is not None:
            state, _ = self.step(state, TimeoutTick(order.swap_id, now))
        return state

    # ------------------------------------------------------------------ events

    def _apply_event(self, state: SwapState, ev: EscrowEvent, actions: List[SwapAction]) -> SwapState:
        if ev.swap_id != state.swap_id:
            raise ValueError(f"event for {ev.swap_id} applied to swap {state.swap_id}")

        match ev.kind:
            case EventKind.FUNDED:
                state = evolve(state, funded=state.funded | {ev.chain})
            case EventKind.SECRET_REVEALED:
                if ev.secret is None:
                    self.log.warning(f"Reveal without secret ignored: {ev}")
                    return state
                if not self._valid_secret(state, ev):
                    return state
                if state.phase is Phase.REFUNDING or state.phase.is_terminal:
                    self.log.warning(f"Late reveal on {ev.chain.value} for swap {state.swap_id} in {state.phase.value}")
                state = evolve(state, revealed=state.revealed | {ev.chain}, secret=state.secret or ev.secret)
            case EventKind.CLAIMED:
                state = evolve(state, claimed=state.claimed | {ev.chain})
                # a withdrawal carrying the preimage teaches it too
                if ev.secret is not None and state.secret is None and self._valid_secret(state, ev):
                    state = evolve(state, secret=ev.secret)
            case EventKind.REFUNDED:
                state = evolve(state, refunded=state.refunded | {ev.chain})
            case EventKind.CREATED | EventKind.EXPIRED:
                self.log.debug(f"Recorded {ev}")
                return state

        return self._advance(state, actions)

    def _advance(self, state: SwapState, actions: List[SwapAction]) -> SwapState:
        match state.phase:
            case Phase.AWAITING_SOURCE_FUND | Phase.AWAITING_DEST_FUND | Phase.ACTIVE:
                if ChainSide.SOURCE not in state.funded:
                    target = Phase.AWAITING_SOURCE_FUND
                elif ChainSide.DEST not in state.funded:
                    target = Phase.AWAITING_DEST_FUND
                elif state.secret is not None:
                    state = self._enter(state, Phase.SECRET_REVEALED)
                    for chain in ChainSide:
                        if chain not in state.revealed and chain not in state.claimed:
                            state = self._request(state, ActionKind.REVEAL_SECRET, chain, actions)
                    return self._advance(state, actions)
                else:
                    target = Phase.ACTIVE
                return self._enter(state, target) if target is not state.phase else state
            case Phase.SECRET_REVEALED:
                if state.claimed >= BOTH_CHAINS:
                    return self._enter(state, Phase.COMPLETED)
                return state
            case Phase.REFUNDING:
                return state
            case Phase.COMPLETED | Phase.REFUNDED | Phase.EXPIRED:
                return state

    # --------------------------------------------------------------- deadlines

    def _check_deadlines(self, state: SwapState, now: int, actions: List[SwapAction]) -> SwapState:
        order = state.order
        match state.phase:
            case Phase.AWAITING_SOURCE_FUND | Phase.AWAITING_DEST_FUND | Phase.ACTIVE:
                if self._dest_timed_out(state, now):
                    state = self._enter(state, Phase.REFUNDING)
                    return self._check_deadlines(state, now, actions)
                if now >= order.source_timeout:
                    return self._expire(state, actions)
                return state
            case Phase.SECRET_REVEALED:
                if now >= order.source_timeout:
                    return self._expire(state, actions)
                return state
            case Phase.REFUNDING:
                settled = state.revealed | state.claimed
                if state.secret is not None and settled:
                    # an escrow already paid out against the secret; the other one has to follow
                    for chain in ChainSide:
                        if now < order.timeout_for(chain) and self._refundable(state, chain):
                            state = self._request(state, ActionKind.REVEAL_SECRET, chain, actions)
                elif now >= order.dest_timeout and self._refundable(state, ChainSide.DEST):
                    state = self._request(state, ActionKind.REFUND, ChainSide.DEST, actions)
                if now >= order.source_timeout:
                    if ChainSide.DEST not in state.funded or ChainSide.DEST in state.refunded:
                        state = self._enter(state, Phase.REFUNDED)
                        return self._refund_source(state, actions)
                    return self._expire(state, actions)
                return state
            case Phase.COMPLETED | Phase.REFUNDED | Phase.EXPIRED:
                return state

    def _abandon(self, state: SwapState, action: SwapAction, now: int, actions: List[SwapAction]) -> SwapState:
        self.log.error(f"Giving up on {action}, phase {state.phase.value}")
        if state.phase.is_terminal or state.phase is Phase.REFUNDING:
            return state
        if now >= state.order.source_timeout:
            return self._expire(state, actions)
        return self._enter(state, Phase.REFUNDING)

    def _expire(self, state: SwapState, actions: List[SwapAction]) -> SwapState:
        state = self._enter(state, Phase.EXPIRED)
        return self._refund_source(state, actions)

    def _refund_source(self, state: SwapState, actions: List[SwapAction]) -> SwapState:
        if self._refundable(state, ChainSide.SOURCE):
            state = self._request(state, ActionKind.REFUND, ChainSide.SOURCE, actions)
        return state

    # ----------------------------------------------------------------- helpers

    def _valid_secret(self, state: SwapState, ev: EscrowEvent) -> bool:
        try:
            verify_secret(state.order, ev.secret)
        except InvalidSecret as e:
            self.log.warning(f"Discarding {ev}: {e}")
            return False
        return True

    @staticmethod
    def _dest_timed_out(state: SwapState, now: int) -> bool:
        return (
            state.phase in BEFORE_REVEAL
            and now >= state.order.dest_timeout
            and state.secret is None
        )

    @staticmethod
    def _refundable(state: SwapState, chain: ChainSide) -> bool:
        return (
            chain in state.funded
            and chain not in state.revealed
            and chain not in state.claimed
            and chain not in state.refunded
        )

    def _enter(self, state: SwapState, phase: Phase) -> SwapState:
        if phase is state.phase:
            return state
        self.log.info(f"Swap {state.swap_id[:10]}: {state.phase.value} -> {phase.value}")
        return evolve(state, phase=phase)

    def _request(self, state: SwapState, kind: ActionKind, chain: ChainSide, actions: List[SwapAction]) -> SwapState:
        if (kind, chain) in state.requested:
            return state
        actions.append(self._action(state, kind, chain))
        return evolve(state, requested=state.requested | {(kind, chain)})

    @staticmethod
    def _action(state: SwapState, kind: ActionKind, chain: ChainSide) -> SwapAction:
        secret = state.secret if kind is ActionKind.REVEAL_SECRET else None
        return SwapAction(swap_id=state.swap_id, kind=kind, chain=chain, secret=secret)


def outstanding_actions(state: SwapState) -> List[SwapAction]:
    """Actions the machine asked for whose effect the chains do not show yet."""
    pending = []
    for kind, chain in sorted(state.requested, key=lambda kc: (kc[0].value, kc[1].value)):
        action = SwapStateMachine._action(state, kind, chain)
        if not state.is_confirmed(action):
            pending.append(action)
    return pending
