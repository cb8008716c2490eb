"""Factories and test doubles shared by the test modules."""

import json
from typing import Any, Dict, List, Optional, Tuple, Union

from swap_relayer.adapters.base import ChainAdapter
from swap_relayer.hashlock import hash_secret
from swap_relayer.models import BlockRef, ChainSide, EscrowEvent, EventKind, SwapOrder
from swap_relayer.signing import Signer

NOW = 1_700_000_000
SECRET = bytes(range(32))
WRONG_SECRET = b"\xff" * 32
SWAP_ID = "0x" + "ab" * 32
DEST_TIMEOUT = NOW + 3600
SOURCE_TIMEOUT = NOW + 7200


def make_order(swap_id: str = SWAP_ID, secret: bytes = SECRET, algorithm: str = "keccak256", **overrides) -> SwapOrder:
    fields = dict(
        swap_id=swap_id,
        hashlock=hash_secret(secret, algorithm),
        source_maker="0x" + "01" * 20,
        source_taker="0x" + "02" * 20,
        dest_maker="addr_test1maker",
        dest_taker="addr_test1taker",
        source_asset="ETH",
        source_amount=10**18,
        dest_asset="ADA",
        dest_amount=2_000_000,
        source_timeout=SOURCE_TIMEOUT,
        dest_timeout=DEST_TIMEOUT,
        hash_algorithm=algorithm,
    )
    fields.update(overrides)
    return SwapOrder(**fields)


def make_event(
    kind: EventKind,
    chain: ChainSide,
    height: int = 1,
    index: int = 0,
    observed_at: int = NOW,
    secret: Optional[bytes] = None,
    swap_id: str = SWAP_ID,
) -> EscrowEvent:
    return EscrowEvent(
        chain=chain,
        swap_id=swap_id,
        kind=kind,
        observed_at=observed_at,
        block_ref=BlockRef(height, index),
        tx_ref=f"0x{height:04x}{index:04x}",
        secret=secret,
    )


class FakeClock:
    def __init__(self, now: float = NOW):
        self.now = now

    def __call__(self) -> float:
        return self.now


class FakeAdapter(ChainAdapter):
    """In-memory chain: events are appended by the test, submissions are recorded."""

    name = "fake"

    def __init__(self, side: ChainSide):
        super().__init__(side)
        self.events: List[EscrowEvent] = []
        self.submitted = []
        self.results: List[Union[str, Exception]] = []

    async def poll_events(self, since):
        for event in sorted(self.events, key=lambda e: e.block_ref):
            if since is None or event.block_ref > since:
                yield event

    async def submit_action(self, action, order):
        self.submitted.append(action)
        if self.results:
            result = self.results.pop(0)
            if isinstance(result, Exception):
                raise result
            return result
        return f"0xtx{len(self.submitted)}"


class FakeSigner(Signer):
    address = "0x" + "11" * 20

    def __init__(self, signed: bytes = b"\x02\xf8signed"):
        self.signed = signed
        self.requests = []

    async def sign(self, action, unsigned):
        self.requests.append((action, unsigned))
        return self.signed


class FakeResponse:
    def __init__(self, status: int = 200, body: Any = None):
        self.status = status
        self.body = body

    async def text(self) -> str:
        return self.body if isinstance(self.body, str) else json.dumps(self.body)

    async def json(self) -> Any:
        return json.loads(self.body) if isinstance(self.body, str) else self.body

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc):
        return False


class FakeSession:
    """Stands in for aiohttp.ClientSession; routes are keyed by (method, url suffix)."""

    def __init__(self, routes: Optional[Dict[Tuple[str, str], Any]] = None, *args, **kwargs):
        self.routes = routes or {}
        self.calls = []
        self.closed = False

    def _respond(self, method: str, url: str, **kwargs):
        self.calls.append((method, url, kwargs))
        for (route_method, suffix), response in self.routes.items():
            if route_method == method and url.endswith(suffix):
                if isinstance(response, Exception):
                    raise response
                return response
        return FakeResponse(404, "not found")

    def get(self, url, **kwargs):
        return self._respond("GET", url, **kwargs)

    def post(self, url, **kwargs):
        return self._respond("POST", url, **kwargs)

    async def close(self):
        self.closed = True

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc):
        return False
