import asyncio
import logging
from abc import ABC, abstractmethod
from typing import Any, Dict

import aiohttp
from eth_account import Account
from eth_account.signers.local import LocalAccount

from .errors import NetworkError, NotAuthorized, SubmissionRejected
from .models import SwapAction


class Signer(ABC):
    """
    Signs transactions prepared by a chain adapter. Keys never enter the
    relayer process unless the local development signer is configured.
    """

    address: str = ""

    @abstractmethod
    async def sign(self, action: SwapAction, unsigned: Dict[str, Any]) -> bytes:
        ...


class RemoteSigner(Signer):
    """Delegates signing to an external HTTP service (`POST {url}/sign`)."""

    def __init__(self, url: str, address: str = "", timeout: float = 30):
        self.url = url.rstrip("/")
        self.address = address
        self.timeout = aiohttp.ClientTimeout(total=timeout)
        self.log = logging.getLogger("Signer")

    async def sign(self, action: SwapAction, unsigned: Dict[str, Any]) -> bytes:
        payload = {
            "swap_id": action.swap_id,
            "action": action.kind.value,
            "chain": action.chain.value,
            "transaction": unsigned,
        }
        try:
            async with aiohttp.ClientSession(timeout=self.timeout) as session:
                async with session.post(f"{self.url}/sign", json=payload) as resp:
                    if resp.status in (401, 403):
                        raise NotAuthorized(f"signer refused {action}: {await resp.text()}")
                    if resp.status == 429 or resp.status >= 500:
                        raise NetworkError(f"signer unavailable ({resp.status})")
                    if resp.status != 200:
                        raise SubmissionRejected(f"signer rejected {action}: {await resp.text()}")
                    data = await resp.json()
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise NetworkError(f"signer unreachable: {e}") from e

        signed = data.get("signed")
        if not signed:
            raise SubmissionRejected(f"signer returned no transaction for {action}")
        self.log.debug(f"Signed {action}")
        return bytes.fromhex(signed.removeprefix("0x"))


class EthAccountSigner(Signer):
    """Local key signer for development networks. EVM transactions only."""

    def __init__(self, private_key: str):
        self.account: LocalAccount = Account.from_key(private_key)
        self.address = self.account.address

    async def sign(self, action: SwapAction, unsigned: Dict[str, Any]) -> bytes:
        try:
            signed = self.account.sign_transaction(unsigned)  # type: ignore
        except (TypeError, ValueError) as e:
            raise SubmissionRejected(f"cannot sign {action}: {e}") from e
        return bytes(signed.raw_transaction)
