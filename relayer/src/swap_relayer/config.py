"""
Configuration for the swap relayer.

Everything comes from the environment (a `.env` file is loaded by the service
entry point). `RelayerConfig.from_env` validates eagerly and raises
`ValueError` naming the offending variable.
"""

import logging
import os
import re
from typing import Mapping, Optional, Tuple

from attr import dataclass, field

from .hashlock import HASH_ALGORITHMS
from .models import ChainSide

CHAINS = ("ethereum", "cardano")

EVM_ADDRESS = re.compile(r"^0x[a-fA-F0-9]{40}$")
CARDANO_ADDRESS = re.compile(r"^addr(_test)?1[a-z0-9]{53,}$")


def is_evm_address(value: str) -> bool:
    return bool(EVM_ADDRESS.match(value))


def is_cardano_address(value: str) -> bool:
    return bool(CARDANO_ADDRESS.match(value))


def _mask(value: str) -> str:
    return "[SET]" if value else "[NOT SET]"


@dataclass(frozen=True)
class EthereumConfig:
    rpc_url: str
    escrow_src_address: str
    escrow_dst_address: str
    chain_id: int = 11155111
    lop_address: str = ""
    escrow_factory_address: str = ""
    fee_bank_address: str = ""
    escrow_abi_path: str = ""
    confirmations: int = 2
    lookback_blocks: int = 2000
    signer_key: str = ""
    relayer_address: str = ""  # sender used with a remote signer

    def escrow_address(self, side: ChainSide) -> str:
        return self.escrow_src_address if side is ChainSide.SOURCE else self.escrow_dst_address


@dataclass(frozen=True)
class CardanoConfig:
    blockfrost_project_id: str
    escrow_address: str
    network: str = "preprod"
    lop_address: str = ""
    escrow_factory_address: str = ""
    metadata_label: str = "6612"


@dataclass(frozen=True)
class MonitoringConfig:
    poll_interval: float = 5  # seconds
    tick_interval: float = 1  # seconds
    retry_base_delay: float = 2
    retry_max_delay: float = 300
    max_submission_rejections: int = 5
    confirmation_timeout: float = 600  # seconds before resubmitting an unconfirmed action


@dataclass(frozen=True)
class RelayerConfig:
    ethereum: EthereumConfig
    cardano: CardanoConfig
    source_chain: str = "ethereum"
    monitoring: MonitoringConfig = field(factory=MonitoringConfig)
    database_url: str = "sqlite+aiosqlite:///./data/relayer.db"
    signer_url: str = ""
    notify_webhooks: Tuple[str, ...] = ()
    hashlock_algorithm: str = "keccak256"
    log_level: str = "INFO"
    host: str = "0.0.0.0"
    port: int = 8000

    @property
    def dest_chain(self) -> str:
        return "cardano" if self.source_chain == "ethereum" else "ethereum"

    def chain_for(self, side: ChainSide) -> str:
        return self.source_chain if side is ChainSide.SOURCE else self.dest_chain

    @classmethod
    def from_env(cls, env: Optional[Mapping[str, str]] = None) -> "RelayerConfig":
        """
        Load configuration from environment variables.

        Raises:
            ValueError: If a required variable is missing or malformed
        """
        env = os.environ if env is None else env

        def get(name: str, default: str = "") -> str:
            return (env.get(name) or default).strip()

        def require(name: str, hint: str) -> str:
            value = get(name)
            if not value:
                raise ValueError(f"{name} environment variable is required. {hint}")
            return value

        def number(name: str, default, kind=int):
            raw = get(name)
            if not raw:
                return default
            try:
                value = kind(raw)
            except ValueError:
                raise ValueError(f"{name} must be a number, got {raw!r}") from None
            if value < 0:
                raise ValueError(f"{name} must not be negative, got {raw!r}")
            return value

        def evm_address(name: str, required: bool = False) -> str:
            value = require(name, "Expected a 0x-prefixed 20 byte address") if required else get(name)
            if value and not is_evm_address(value):
                raise ValueError(f"{name} is not a valid EVM address: {value!r}")
            return value

        def cardano_address(name: str, required: bool = False) -> str:
            value = require(name, "Expected a bech32 addr/addr_test address") if required else get(name)
            if value and not is_cardano_address(value):
                raise ValueError(f"{name} is not a valid Cardano address: {value!r}")
            return value

        source_chain = get("SOURCE_CHAIN", "ethereum").lower()
        if source_chain not in CHAINS:
            raise ValueError(f"SOURCE_CHAIN must be one of {CHAINS}, got {source_chain!r}")

        algorithm = get("HASHLOCK_ALGORITHM", "keccak256").lower()
        if algorithm not in HASH_ALGORITHMS:
            raise ValueError(f"HASHLOCK_ALGORITHM must be one of {sorted(HASH_ALGORITHMS)}, got {algorithm!r}")

        ethereum = EthereumConfig(
            rpc_url=require("ETHEREUM_RPC", "Example: https://ethereum-sepolia.publicnode.com"),
            chain_id=number("ETHEREUM_CHAIN_ID", 11155111),
            lop_address=evm_address("ETHEREUM_LOP_ADDRESS"),
            escrow_factory_address=evm_address("ETHEREUM_ESCROW_FACTORY_ADDRESS"),
            escrow_src_address=evm_address("ETHEREUM_ESCROW_SRC_ADDRESS", required=True),
            escrow_dst_address=evm_address("ETHEREUM_ESCROW_DST_ADDRESS", required=True),
            fee_bank_address=evm_address("ETHEREUM_FEE_BANK_ADDRESS"),
            escrow_abi_path=get("ETHEREUM_ESCROW_ABI"),
            confirmations=number("ETHEREUM_CONFIRMATIONS", 2),
            lookback_blocks=number("ETHEREUM_LOOKBACK_BLOCKS", 2000),
            signer_key=get("ETHEREUM_SIGNER_KEY"),
            relayer_address=evm_address("ETHEREUM_RELAYER_ADDRESS"),
        )
        if ethereum.escrow_abi_path and not os.path.isfile(ethereum.escrow_abi_path):
            raise ValueError(f"ETHEREUM_ESCROW_ABI points to a missing file: {ethereum.escrow_abi_path}")

        cardano = CardanoConfig(
            network=get("CARDANO_NETWORK", "preprod").lower(),
            blockfrost_project_id=require("BLOCKFROST_PROJECT_ID", "Create one at https://blockfrost.io"),
            escrow_address=cardano_address("CARDANO_ESCROW_ADDRESS", required=True),
            lop_address=cardano_address("CARDANO_LOP_ADDRESS"),
            escrow_factory_address=cardano_address("CARDANO_ESCROW_FACTORY_ADDRESS"),
            metadata_label=get("CARDANO_METADATA_LABEL", "6612"),
        )
        if cardano.network not in ("mainnet", "preprod", "preview"):
            raise ValueError(f"CARDANO_NETWORK must be mainnet, preprod or preview, got {cardano.network!r}")

        signer_url = get("SIGNER_URL")
        if not signer_url:
            raise ValueError(
                "SIGNER_URL environment variable is required. "
                "Cardano spends are always signed by the remote signer"
            )
        if not ethereum.signer_key and not ethereum.relayer_address:
            raise ValueError(
                "ETHEREUM_RELAYER_ADDRESS is required when ETHEREUM_SIGNER_KEY is not set. "
                "It is the sender of transactions signed by the remote signer"
            )

        monitoring = MonitoringConfig(
            poll_interval=number("POLL_INTERVAL", 5, float),
            tick_interval=number("TICK_INTERVAL", 1, float),
            retry_base_delay=number("RETRY_BASE_DELAY", 2, float),
            retry_max_delay=number("RETRY_MAX_DELAY", 300, float),
            max_submission_rejections=number("MAX_SUBMISSION_REJECTIONS", 5),
            confirmation_timeout=number("CONFIRMATION_TIMEOUT", 600, float),
        )
        if monitoring.max_submission_rejections < 1:
            raise ValueError("MAX_SUBMISSION_REJECTIONS must be at least 1")

        log_level = get("LOG_LEVEL", "INFO").upper()
        if not isinstance(logging.getLevelName(log_level), int):
            raise ValueError(f"LOG_LEVEL {log_level!r} is not a logging level")

        return cls(
            ethereum=ethereum,
            cardano=cardano,
            source_chain=source_chain,
            monitoring=monitoring,
            database_url=get("DATABASE_URL", "sqlite+aiosqlite:///./data/relayer.db"),
            signer_url=signer_url,
            notify_webhooks=tuple(w.strip() for w in get("NOTIFY_WEBHOOKS").split(",") if w.strip()),
            hashlock_algorithm=algorithm,
            log_level=log_level,
            host=get("HOST", "0.0.0.0"),
            port=number("PORT", 8000),
        )

    def log_config(self, log: Optional[logging.Logger] = None) -> None:
        """Log configuration settings (hiding sensitive data)."""
        log = log or logging.getLogger("relayer")
        log.info(f"Swap direction: {self.source_chain} -> {self.dest_chain}")
        log.info(
            f"[Ethereum] RPC {self.ethereum.rpc_url} chain {self.ethereum.chain_id}, "
            f"escrow src {self.ethereum.escrow_src_address}, dst {self.ethereum.escrow_dst_address}, "
            f"confirmations {self.ethereum.confirmations}, signer key {_mask(self.ethereum.signer_key)}"
        )
        log.info(
            f"[Cardano] network {self.cardano.network}, escrow {self.cardano.escrow_address}, "
            f"label {self.cardano.metadata_label}, project id {_mask(self.cardano.blockfrost_project_id)}"
        )
        log.info(
            f"[Monitoring] poll {self.monitoring.poll_interval}s, tick {self.monitoring.tick_interval}s, "
            f"retry {self.monitoring.retry_base_delay}-{self.monitoring.retry_max_delay}s, "
            f"rejections {self.monitoring.max_submission_rejections}, "
            f"confirmation timeout {self.monitoring.confirmation_timeout}s"
        )
        log.info(
            f"[Service] database {self.database_url}, signer {self.signer_url or '[NOT SET]'}, "
            f"{len(self.notify_webhooks)} webhook(s), hashlock {self.hashlock_algorithm}"
        )
