import asyncio
import logging
import time
from typing import Any, AsyncIterator, Callable, Dict, List, Optional

import aiohttp

from ..errors import (
    AlreadySettled,
    NetworkError,
    NotAuthorized,
    RelayerError,
    SubmissionRejected,
)
from ..models import ActionKind, BlockRef, ChainSide, EscrowEvent, EventKind, SwapAction, SwapOrder
from ..signing import Signer
from .base import ChainAdapter, normalize_swap_id, parse_event_kind

BLOCKFROST_URLS = {
    "mainnet": "https://cardano-mainnet.blockfrost.io/api/v0",
    "preprod": "https://cardano-preprod.blockfrost.io/api/v0",
    "preview": "https://cardano-preview.blockfrost.io/api/v0",
}

# Ledger rejections meaning the escrow UTxO is already consumed.
ALREADY_SPENT_MARKERS = ("badinputsutxo", "already spent", "inputs do not exist")

REDEEMERS = {
    ActionKind.REVEAL_SECRET: "Withdraw",
    ActionKind.REFUND: "Cancel",
}

# What the spend records in its own metadata once it lands.
SPEND_EVENTS = {
    ActionKind.REVEAL_SECRET: EventKind.CLAIMED,
    ActionKind.REFUND: EventKind.REFUNDED,
}


class CardanoAdapter(ChainAdapter):
    """
    Cardano escrow view through the Blockfrost REST API.

    Escrow transactions carry their facts as transaction metadata under a
    fixed label: `{"swap_id": <hex>, "event": <kind>, "secret": <hex>}`.
    Metadata strings are limited to 64 bytes, so hex values travel without
    the 0x prefix. One transaction describes one escrow event.
    """

    name = "cardano"

    def __init__(
        self,
        side: ChainSide,
        project_id: str,
        escrow_address: str,
        signer: Signer,
        network: str = "preprod",
        metadata_label: str = "6612",
        page_size: int = 100,
        base_url: Optional[str] = None,
        timeout: float = 30,
        clock: Callable[[], float] = time.time,
    ):
        super().__init__(side)
        if base_url is None:
            if network not in BLOCKFROST_URLS:
                raise ValueError(f"Unknown Cardano network {network!r}, expected one of {sorted(BLOCKFROST_URLS)}")
            base_url = BLOCKFROST_URLS[network]
        self.base_url = base_url.rstrip("/")
        self.project_id = project_id
        self.escrow_address = escrow_address
        self.signer = signer
        self.network = network
        self.metadata_label = str(metadata_label)
        self.page_size = page_size
        self.timeout = aiohttp.ClientTimeout(total=timeout)
        self.clock = clock
        self._session: Optional[aiohttp.ClientSession] = None
        self.log = logging.getLogger("CardanoAdapter")

    def session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(
                headers={"project_id": self.project_id},
                timeout=self.timeout,
            )
        return self._session

    async def close(self) -> None:
        if self._session is not None and not self._session.closed:
            await self._session.close()

    # ----------------------------------------------------------------- reading

    async def poll_events(self, since: Optional[BlockRef]) -> AsyncIterator[EscrowEvent]:
        page = 1
        while True:
            params = {"order": "asc", "count": self.page_size, "page": page}
            if since is not None:
                params["from"] = str(since)
            txs = await self._get_json(f"/addresses/{self.escrow_address}/transactions", params)
            if not txs:
                break

            for tx in txs:
                ref = BlockRef(int(tx["block_height"]), int(tx["tx_index"]))
                if since is not None and ref <= since:
                    continue
                metadata = await self._get_json(f"/txs/{tx['tx_hash']}/metadata")
                event = self._decode(tx, ref, metadata)
                if event is not None:
                    yield event
                self.checkpoint = ref

            if len(txs) < self.page_size:
                break
            page += 1

    def _decode(self, tx: Dict[str, Any], ref: BlockRef, metadata: List[Dict[str, Any]]) -> Optional[EscrowEvent]:
        body = next((m.get("json_metadata") for m in metadata if str(m.get("label")) == self.metadata_label), None)
        if not isinstance(body, dict):
            self.log.debug(f"tx {tx['tx_hash']} has no escrow metadata")
            return None

        kind = parse_event_kind(str(body.get("event", "")))
        swap_id = body.get("swap_id")
        if kind is None or not swap_id:
            self.log.warning(f"Unrecognised escrow metadata in tx {tx['tx_hash']}: {body}")
            return None

        secret = None
        if body.get("secret"):
            try:
                secret = bytes.fromhex(str(body["secret"]).removeprefix("0x"))
            except ValueError:
                self.log.warning(f"Malformed secret in tx {tx['tx_hash']}")
                return None

        return EscrowEvent(
            chain=self.side,
            swap_id=normalize_swap_id(str(swap_id)),
            kind=kind,
            observed_at=int(self.clock()),
            block_ref=ref,
            tx_ref=tx["tx_hash"],
            secret=secret,
        )

    async def _get_json(self, path: str, params: Optional[Dict[str, Any]] = None) -> Any:
        url = f"{self.base_url}{path}"
        try:
            async with self.session().get(url, params=params) as resp:
                if resp.status == 404:
                    # Blockfrost answers 404 for addresses without history
                    return []
                if resp.status != 200:
                    raise NetworkError(f"Blockfrost GET {path} failed ({resp.status}): {await resp.text()}")
                return await resp.json()
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise NetworkError(f"Blockfrost GET {path} failed: {e}") from e

    # ----------------------------------------------------------------- writing

    def build_unsigned(self, action: SwapAction, order: SwapOrder) -> Dict[str, Any]:
        """Description of the spend the signer turns into a CBOR transaction."""
        body = {"swap_id": action.swap_id.removeprefix("0x"), "event": SPEND_EVENTS[action.kind].value}
        if action.secret is not None:
            body["secret"] = action.secret.hex()
        return {
            "network": self.network,
            "escrow_address": self.escrow_address,
            "redeemer": REDEEMERS[action.kind],
            "swap_id": action.swap_id,
            "secret": action.secret.hex() if action.secret is not None else None,
            "asset": order.dest_asset if self.side is ChainSide.DEST else order.source_asset,
            "metadata": {self.metadata_label: body},
        }

    async def submit_action(self, action: SwapAction, order: SwapOrder) -> str:
        if action.kind is ActionKind.REVEAL_SECRET and action.secret is None:
            raise SubmissionRejected(f"{action} carries no secret")

        signed = await self.signer.sign(action, self.build_unsigned(action, order))
        try:
            async with self.session().post(
                f"{self.base_url}/tx/submit",
                data=signed,
                headers={"Content-Type": "application/cbor"},
            ) as resp:
                text = await resp.text()
                if resp.status != 200:
                    raise self.classify_error(resp.status, text)
                tx_ref = text.strip().strip('"')
        except RelayerError:
            raise
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise NetworkError(f"Blockfrost submit failed: {e}") from e

        self.log.info(f"Submitted {action}: {tx_ref}")
        return tx_ref

    @staticmethod
    def classify_error(status: int, text: str) -> RelayerError:
        message = text.lower()
        if status in (402, 425, 429) or status >= 500:
            return NetworkError(f"Blockfrost unavailable ({status}): {text}")
        if status in (401, 403):
            return NotAuthorized(f"Blockfrost refused the request ({status}): {text}")
        if any(marker in message for marker in ALREADY_SPENT_MARKERS):
            return AlreadySettled(text)
        return SubmissionRejected(f"Transaction rejected ({status}): {text}")

    def get_status(self) -> dict:
        return super().get_status() | {
            "network": self.network,
            "escrow_address": self.escrow_address,
        }
