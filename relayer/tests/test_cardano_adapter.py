"""Tests for the Blockfrost-backed Cardano adapter."""

import aiohttp
import pytest

from swap_relayer.adapters.cardano import CardanoAdapter
from swap_relayer.errors import AlreadySettled, NetworkError, NotAuthorized, SubmissionRejected
from swap_relayer.models import ActionKind, BlockRef, ChainSide, EventKind, SwapAction

from helpers import NOW, SECRET, SWAP_ID, FakeClock, FakeResponse, FakeSession, FakeSigner, make_order

ESCROW = "addr_test1wz" + "q" * 56
TX_LIST = f"/addresses/{ESCROW}/transactions"


def tx(height: int, index: int, tx_hash: str):
    return {"tx_hash": tx_hash, "tx_index": index, "block_height": height, "block_time": NOW}


def metadata(event: str, secret: bytes = None, label: str = "6612"):
    body = {"swap_id": SWAP_ID[2:], "event": event}
    if secret is not None:
        body["secret"] = secret.hex()
    return [{"label": label, "json_metadata": body}]


@pytest.fixture
def signer():
    return FakeSigner(signed=b"\x84\xa4cbor")


@pytest.fixture
def adapter(signer):
    return CardanoAdapter(
        ChainSide.DEST,
        "preprodProjectId",
        ESCROW,
        signer,
        network="preprod",
        clock=FakeClock(),
    )


def use_session(adapter, routes):
    adapter._session = FakeSession(routes)
    return adapter._session


async def collect(adapter, since=None):
    return [event async for event in adapter.poll_events(since)]


class TestPolling:
    @pytest.mark.asyncio
    async def test_decodes_metadata_events(self, adapter):
        use_session(adapter, {
            ("GET", TX_LIST): FakeResponse(200, [tx(500, 1, "aa01"), tx(501, 0, "aa02"), tx(502, 3, "aa03")]),
            ("GET", "/txs/aa01/metadata"): FakeResponse(200, metadata("Funded")),
            ("GET", "/txs/aa02/metadata"): FakeResponse(200, metadata("SecretRevealed", SECRET)),
            ("GET", "/txs/aa03/metadata"): FakeResponse(200, []),
        })

        found = await collect(adapter)

        assert [e.kind for e in found] == [EventKind.FUNDED, EventKind.SECRET_REVEALED]
        funded, reveal = found
        assert funded.swap_id == SWAP_ID
        assert funded.chain is ChainSide.DEST
        assert funded.block_ref == BlockRef(500, 1)
        assert reveal.secret == SECRET
        assert reveal.tx_ref == "aa02"
        # a transaction without escrow metadata still moves the checkpoint
        assert adapter.checkpoint == BlockRef(502, 3)

    @pytest.mark.asyncio
    async def test_resumes_from_cursor(self, adapter):
        session = use_session(adapter, {
            ("GET", TX_LIST): FakeResponse(200, [tx(500, 1, "aa01"), tx(500, 2, "aa02")]),
            ("GET", "/txs/aa02/metadata"): FakeResponse(200, metadata("Claimed")),
        })

        found = await collect(adapter, since=BlockRef(500, 1))

        assert [e.kind for e in found] == [EventKind.CLAIMED]
        _, _, kwargs = session.calls[0]
        assert kwargs["params"]["from"] == "500:1"
        assert kwargs["params"]["order"] == "asc"

    @pytest.mark.asyncio
    async def test_unknown_address_has_no_events(self, adapter):
        use_session(adapter, {})
        assert await collect(adapter) == []

    @pytest.mark.asyncio
    async def test_other_labels_and_bad_metadata_are_skipped(self, adapter):
        use_session(adapter, {
            ("GET", TX_LIST): FakeResponse(200, [tx(10, 0, "bb01"), tx(11, 0, "bb02")]),
            ("GET", "/txs/bb01/metadata"): FakeResponse(200, metadata("Funded", label="674")),
            ("GET", "/txs/bb02/metadata"): FakeResponse(200, metadata("Teleported")),
        })
        assert await collect(adapter) == []

    @pytest.mark.asyncio
    async def test_rate_limit_is_a_network_error(self, adapter):
        use_session(adapter, {("GET", TX_LIST): FakeResponse(429, {"error": "Project Over Limit"})})
        with pytest.raises(NetworkError):
            await collect(adapter)

    @pytest.mark.asyncio
    async def test_connection_failure_is_a_network_error(self, adapter):
        use_session(adapter, {("GET", TX_LIST): aiohttp.ClientConnectionError("reset")})
        with pytest.raises(NetworkError):
            await collect(adapter)


class TestSubmission:
    @pytest.mark.asyncio
    async def test_submits_signed_cbor(self, adapter, signer):
        session = use_session(adapter, {("POST", "/tx/submit"): FakeResponse(200, '"cc" ')})
        action = SwapAction(SWAP_ID, ActionKind.REVEAL_SECRET, ChainSide.DEST, SECRET)

        assert await adapter.submit_action(action, make_order()) == "cc"

        [(signed_action, unsigned)] = signer.requests
        assert signed_action == action
        assert unsigned["redeemer"] == "Withdraw"
        assert unsigned["asset"] == "ADA"
        assert unsigned["metadata"]["6612"] == {"swap_id": SWAP_ID[2:], "event": "Claimed", "secret": SECRET.hex()}

        _, url, kwargs = session.calls[0]
        assert url.endswith("/tx/submit")
        assert kwargs["data"] == signer.signed
        assert kwargs["headers"]["Content-Type"] == "application/cbor"

    @pytest.mark.asyncio
    async def test_reveal_without_secret_is_rejected(self, adapter, signer):
        with pytest.raises(SubmissionRejected):
            await adapter.submit_action(SwapAction(SWAP_ID, ActionKind.REVEAL_SECRET, ChainSide.DEST), make_order())
        assert signer.requests == []

    @pytest.mark.parametrize(
        "status, body, expected",
        [
            (400, '{"error": "BadInputsUTxO"}', AlreadySettled),
            (400, '{"error": "OutsideValidityIntervalUTxO"}', SubmissionRejected),
            (403, '{"error": "Forbidden"}', NotAuthorized),
            (425, '{"error": "Mempool Full"}', NetworkError),
            (500, "Internal Server Error", NetworkError),
        ],
    )
    @pytest.mark.asyncio
    async def test_submit_errors(self, adapter, status, body, expected):
        use_session(adapter, {("POST", "/tx/submit"): FakeResponse(status, body)})
        with pytest.raises(expected):
            await adapter.submit_action(SwapAction(SWAP_ID, ActionKind.REFUND, ChainSide.DEST), make_order())


def test_unknown_network():
    with pytest.raises(ValueError):
        CardanoAdapter(ChainSide.DEST, "id", ESCROW, FakeSigner(), network="testnet")
