import asyncio
import json
import logging
import time
from typing import Any, AsyncIterator, Callable, Dict, List, Optional

import requests
from web3 import Web3
from web3.contract.contract import ContractFunction
from web3.exceptions import ContractLogicError, TimeExhausted, Web3Exception
from web3.middleware import ExtraDataToPOAMiddleware
from web3.types import TxParams

from ..errors import (
    AlreadySettled,
    InsufficientFunds,
    NetworkError,
    NotAuthorized,
    RelayerError,
    SubmissionRejected,
)
from ..models import ActionKind, BlockRef, ChainSide, EscrowEvent, EventKind, SwapAction, SwapOrder
from ..signing import Signer
from .base import ChainAdapter, normalize_swap_id

# Checkpoint index meaning "every log of this block has been read".
LAST_INDEX = 2**31 - 1

EVENT_KINDS: Dict[str, EventKind] = {
    "EscrowCreated": EventKind.CREATED,
    "EscrowFunded": EventKind.FUNDED,
    "SecretRevealed": EventKind.SECRET_REVEALED,
    "EscrowWithdrawal": EventKind.CLAIMED,
    "EscrowCancelled": EventKind.REFUNDED,
}

ALREADY_SETTLED_MARKERS = ("already", "settled", "withdrawn", "cancelled", "canceled")
UNAUTHORIZED_MARKERS = ("unauthorized", "not authorized", "invalidcaller", "onlytaker", "onlyresolver")
TRANSIENT_MARKERS = ("nonce too low", "already known", "replacement transaction underpriced", "timeout")

DEFAULT_ESCROW_ABI: List[Dict[str, Any]] = [
    {
        "type": "event",
        "name": "EscrowCreated",
        "anonymous": False,
        "inputs": [
            {"name": "swapId", "type": "bytes32", "indexed": True},
            {"name": "escrow", "type": "address", "indexed": False},
            {"name": "hashlock", "type": "bytes32", "indexed": False},
        ],
    },
    {
        "type": "event",
        "name": "EscrowFunded",
        "anonymous": False,
        "inputs": [
            {"name": "swapId", "type": "bytes32", "indexed": True},
            {"name": "amount", "type": "uint256", "indexed": False},
        ],
    },
    {
        "type": "event",
        "name": "SecretRevealed",
        "anonymous": False,
        "inputs": [
            {"name": "swapId", "type": "bytes32", "indexed": True},
            {"name": "secret", "type": "bytes32", "indexed": False},
        ],
    },
    {
        "type": "event",
        "name": "EscrowWithdrawal",
        "anonymous": False,
        "inputs": [
            {"name": "swapId", "type": "bytes32", "indexed": True},
            {"name": "recipient", "type": "address", "indexed": False},
        ],
    },
    {
        "type": "event",
        "name": "EscrowCancelled",
        "anonymous": False,
        "inputs": [
            {"name": "swapId", "type": "bytes32", "indexed": True},
        ],
    },
    {
        "type": "function",
        "name": "withdraw",
        "stateMutability": "nonpayable",
        "inputs": [
            {"name": "swapId", "type": "bytes32"},
            {"name": "secret", "type": "bytes32"},
        ],
        "outputs": [],
    },
    {
        "type": "function",
        "name": "cancel",
        "stateMutability": "nonpayable",
        "inputs": [
            {"name": "swapId", "type": "bytes32"},
        ],
        "outputs": [],
    },
]


def load_abi(abi_path: Optional[str]) -> List[Dict[str, Any]]:
    if not abi_path:
        return DEFAULT_ESCROW_ABI
    with open(abi_path) as f:
        abi = json.load(f)
    # Hardhat / Foundry artifacts wrap the ABI
    return abi["abi"] if isinstance(abi, dict) else abi


def _hex(value: Any) -> str:
    if isinstance(value, (bytes, bytearray)):
        return "0x" + bytes(value).hex()
    return str(value)


class EthereumAdapter(ChainAdapter):
    """
    Reads escrow events with `eth_getLogs` over confirmed block windows and
    submits `withdraw` / `cancel` calls signed by the configured signer.

    web3's HTTP provider is blocking, so every RPC runs in a worker thread.
    """

    name = "ethereum"

    def __init__(
        self,
        side: ChainSide,
        rpc_url: str,
        escrow_address: str,
        signer: Signer,
        chain_id: int = 11155111,
        abi: Optional[List[Dict[str, Any]]] = None,
        confirmations: int = 2,
        lookback_blocks: int = 2000,
        max_block_range: int = 1000,
        gas_limit: int = 500_000,
        event_kinds: Optional[Dict[str, EventKind]] = None,
        w3: Optional[Web3] = None,
        clock: Callable[[], float] = time.time,
    ):
        super().__init__(side)
        if w3 is None:
            w3 = Web3(Web3.HTTPProvider(rpc_url, request_kwargs={"timeout": 60}))
            w3.middleware_onion.inject(ExtraDataToPOAMiddleware, layer=0)
        self.w3 = w3
        self.rpc_url = rpc_url
        self.escrow_address = Web3.to_checksum_address(escrow_address)
        self.escrow = self.w3.eth.contract(address=self.escrow_address, abi=abi or DEFAULT_ESCROW_ABI)
        self.signer = signer
        self.chain_id = chain_id
        self.confirmations = confirmations
        self.lookback_blocks = lookback_blocks
        self.max_block_range = max_block_range
        self.gas_limit = gas_limit
        self.event_kinds = event_kinds or EVENT_KINDS
        self.clock = clock
        self.log = logging.getLogger("EthereumAdapter")

    # ----------------------------------------------------------------- reading

    async def poll_events(self, since: Optional[BlockRef]) -> AsyncIterator[EscrowEvent]:
        head = await self._read(lambda: self.w3.eth.block_number)
        safe_head = head - self.confirmations
        if since is not None:
            from_block = since.height
        else:
            from_block = max(0, safe_head - self.lookback_blocks)
            self.log.info(f"No cursor for {self.side.value} escrow, backfilling from block {from_block}")
        if from_block > safe_head:
            return

        for start in range(from_block, safe_head + 1, self.max_block_range):
            end = min(start + self.max_block_range - 1, safe_head)
            events: List[EscrowEvent] = []
            for event_name, kind in self.event_kinds.items():
                event_obj = getattr(self.escrow.events, event_name)
                logs = await self._read(event_obj().get_logs, from_block=start, to_block=end)
                events.extend(self._decode(entry, kind) for entry in logs)

            if events:
                self.log.info(f"Found {len(events)} escrow events in blocks {start}-{end}")
            for event in sorted(events, key=lambda e: e.block_ref):
                if since is not None and event.block_ref <= since:
                    continue
                yield event
            self.checkpoint = BlockRef(end, LAST_INDEX)

    def _decode(self, entry: Any, kind: EventKind) -> EscrowEvent:
        args = entry["args"]
        secret = args.get("secret") if kind is EventKind.SECRET_REVEALED else None
        return EscrowEvent(
            chain=self.side,
            swap_id=normalize_swap_id(args["swapId"]),
            kind=kind,
            observed_at=int(self.clock()),
            block_ref=BlockRef(entry["blockNumber"], entry["logIndex"]),
            tx_ref=_hex(entry["transactionHash"]),
            secret=bytes(secret) if secret is not None else None,
        )

    async def _read(self, fn: Callable, *args, **kwargs) -> Any:
        try:
            return await asyncio.to_thread(fn, *args, **kwargs)
        except (requests.exceptions.RequestException, Web3Exception, OSError) as e:
            raise NetworkError(f"{self.name} RPC {self.rpc_url} failed: {e}") from e

    # ----------------------------------------------------------------- writing

    async def submit_action(self, action: SwapAction, order: SwapOrder) -> str:
        try:
            swap_id = bytes.fromhex(action.swap_id.removeprefix("0x"))
        except ValueError as e:
            raise SubmissionRejected(f"swap id {action.swap_id} is not hex") from e

        match action.kind:
            case ActionKind.REVEAL_SECRET:
                if action.secret is None:
                    raise SubmissionRejected(f"{action} carries no secret")
                fn = self.escrow.functions.withdraw(swap_id, action.secret)
            case ActionKind.REFUND:
                fn = self.escrow.functions.cancel(swap_id)

        sender = self.signer.address
        # revert reasons surface on the dry run
        await self._transact(fn.call, {"from": sender})
        unsigned = await self._transact(self._build_transaction, fn, sender)
        raw = await self.signer.sign(action, unsigned)
        tx_hash = await self._transact(self.w3.eth.send_raw_transaction, raw)
        tx_ref = _hex(tx_hash)
        self.log.info(f"Submitted {action}: {tx_ref}")
        return tx_ref

    def _build_transaction(self, fn: ContractFunction, sender: str) -> Dict[str, Any]:
        base: TxParams = {}
        base["from"] = sender
        base["chainId"] = self.chain_id
        base["gas"] = self.gas_limit
        base["gasPrice"] = self.w3.eth.gas_price
        base["nonce"] = self.w3.eth.get_transaction_count(sender, "pending")  # type: ignore
        return dict(fn.build_transaction(base))

    async def _transact(self, fn: Callable, *args) -> Any:
        try:
            return await asyncio.to_thread(fn, *args)
        except RelayerError:
            raise
        except Exception as e:
            raise self.classify_error(e) from e

    @staticmethod
    def classify_error(e: Exception) -> RelayerError:
        message = str(e).lower()
        if isinstance(e, ContractLogicError):
            if any(marker in message for marker in ALREADY_SETTLED_MARKERS):
                return AlreadySettled(str(e))
            if any(marker in message for marker in UNAUTHORIZED_MARKERS):
                return NotAuthorized(str(e))
            return SubmissionRejected(str(e))
        if "insufficient funds" in message:
            return InsufficientFunds(str(e))
        if isinstance(e, (requests.exceptions.RequestException, OSError, TimeExhausted)):
            return NetworkError(str(e))
        if any(marker in message for marker in TRANSIENT_MARKERS):
            return NetworkError(str(e))
        return SubmissionRejected(str(e))

    def get_status(self) -> dict:
        return super().get_status() | {
            "rpc_url": self.rpc_url,
            "escrow_address": self.escrow_address,
            "confirmations": self.confirmations,
        }
