from contextlib import asynccontextmanager
import asyncio, logging
from typing import Dict, Optional

import dotenv
import requests
import uvicorn
from fastapi import FastAPI, HTTPException
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel
from rich.logging import RichHandler

from .adapters.base import ChainAdapter, normalize_swap_id
from .adapters.cardano import CardanoAdapter
from .adapters.ethereum import EthereumAdapter, load_abi
from .config import RelayerConfig
from .coordinator import Coordinator
from .db import EscrowEventStore
from .errors import DuplicateOrder, RelayerError, StorageUnavailable
from .hashlock import HASH_ALGORITHMS
from .models import ChainSide, SwapOrder
from .notifications import Notifier
from .scheduler import Scheduler
from .signing import EthAccountSigner, RemoteSigner, Signer


def setup_logging(level: str = "INFO") -> None:
    logging.basicConfig(
        level=level,
        format="%(asctime)s %(name)-12s %(levelname)-8s %(message)s",
        handlers=[RichHandler(rich_tracebacks=True)],
    )


class OrderRequest(BaseModel):
    swap_id: str
    hashlock: str  # hex, 32 bytes
    source_maker: str
    source_taker: str
    dest_maker: str
    dest_taker: str
    source_asset: str
    source_amount: int
    dest_asset: str
    dest_amount: int
    source_timeout: int
    dest_timeout: int
    hash_algorithm: Optional[str] = None

    def to_order(self, default_algorithm: str) -> SwapOrder:
        try:
            hashlock = bytes.fromhex(self.hashlock.removeprefix("0x"))
        except ValueError:
            raise ValueError("hashlock must be hex encoded") from None
        algorithm = (self.hash_algorithm or default_algorithm).lower()
        if algorithm not in HASH_ALGORITHMS:
            raise ValueError(f"hash_algorithm must be one of {sorted(HASH_ALGORITHMS)}")
        return SwapOrder(
            swap_id=normalize_swap_id(self.swap_id),
            hashlock=hashlock,
            source_maker=self.source_maker,
            source_taker=self.source_taker,
            dest_maker=self.dest_maker,
            dest_taker=self.dest_taker,
            source_asset=self.source_asset,
            source_amount=self.source_amount,
            dest_asset=self.dest_asset,
            dest_amount=self.dest_amount,
            source_timeout=self.source_timeout,
            dest_timeout=self.dest_timeout,
            hash_algorithm=algorithm,
        )


def build_adapters(config: RelayerConfig) -> Dict[ChainSide, ChainAdapter]:
    remote = RemoteSigner(config.signer_url, address=config.ethereum.relayer_address)
    evm_signer: Signer = EthAccountSigner(config.ethereum.signer_key) if config.ethereum.signer_key else remote
    adapters: Dict[ChainSide, ChainAdapter] = {}
    for side in ChainSide:
        if config.chain_for(side) == "ethereum":
            adapters[side] = EthereumAdapter(
                side,
                config.ethereum.rpc_url,
                config.ethereum.escrow_address(side),
                evm_signer,
                chain_id=config.ethereum.chain_id,
                abi=load_abi(config.ethereum.escrow_abi_path),
                confirmations=config.ethereum.confirmations,
                lookback_blocks=config.ethereum.lookback_blocks,
            )
        else:
            adapters[side] = CardanoAdapter(
                side,
                config.cardano.blockfrost_project_id,
                config.cardano.escrow_address,
                remote,
                network=config.cardano.network,
                metadata_label=config.cardano.metadata_label,
            )
    return adapters


def build_coordinator(config: RelayerConfig, store: EscrowEventStore, webhooks=()) -> Coordinator:
    monitoring = config.monitoring
    return Coordinator(
        build_adapters(config),
        store,
        scheduler=Scheduler(monitoring.retry_base_delay, monitoring.retry_max_delay),
        notifier=Notifier(webhooks),
        poll_interval=monitoring.poll_interval,
        tick_interval=monitoring.tick_interval,
        max_rejections=monitoring.max_submission_rejections,
        confirmation_timeout=monitoring.confirmation_timeout,
    )


def healthy_webhooks(urls, log: logging.Logger):
    healthy = []
    for addr in urls:
        try:
            resp = requests.get(f"{addr.rstrip('/')}/health", timeout=5)
            if resp.status_code == 200:
                healthy.append(addr)
                log.info(f"Webhook {addr} is healthy")
            else:
                log.warning(f"Webhook {addr} unhealthy status {resp.status_code}")
        except requests.exceptions.RequestException as err:
            log.warning(f"Unable to reach webhook {addr}: {err}")
    return healthy


async def run_coordinator(coordinator: Coordinator, log: logging.Logger):
    try:
        await coordinator.run()
    except StorageUnavailable as e:
        log.critical(f"Storage unavailable, relayer halted: {e}")


def create_app(coordinator: Optional[Coordinator] = None, hash_algorithm: str = "keccak256") -> FastAPI:
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if app.state.coordinator is not None:
            yield
            return

        log = logging.getLogger("relayer")
        dotenv.load_dotenv()
        config = RelayerConfig.from_env()
        setup_logging(config.log_level)
        config.log_config(log)

        store = EscrowEventStore(config.database_url)
        await store.init()
        webhooks = await asyncio.to_thread(healthy_webhooks, config.notify_webhooks, log)
        log.info(f"Using {len(webhooks)} healthy webhook(s): {webhooks}")
        app.state.coordinator = build_coordinator(config, store, webhooks)
        app.state.hash_algorithm = config.hashlock_algorithm
        await app.state.coordinator.recover()

        # Run the coordinator in the background
        coordinator_task = asyncio.create_task(run_coordinator(app.state.coordinator, log))
        try:
            yield
        finally:
            app.state.coordinator.stop()
            await coordinator_task
            await app.state.coordinator.close()
            await store.close()
            log.info("Shutting down the application")

    app = FastAPI(lifespan=lifespan)
    app.state.coordinator = coordinator
    app.state.hash_algorithm = hash_algorithm

    @app.post("/order")
    async def create_order(request: OrderRequest):
        try:
            order = request.to_order(app.state.hash_algorithm)
        except ValueError as e:
            raise HTTPException(status_code=422, detail=str(e))
        try:
            state = await app.state.coordinator.register_order(order)
        except DuplicateOrder as e:
            raise HTTPException(status_code=409, detail=str(e))
        except RelayerError as e:
            raise HTTPException(status_code=503, detail=str(e))
        return {"status": "success", "swap_id": order.swap_id, "phase": state.phase.value}

    @app.get("/order_status")
    async def get_order_status(swap_id: str):
        state = app.state.coordinator.get_swap(normalize_swap_id(swap_id))
        if state is None:
            raise HTTPException(status_code=404, detail=f"Order with ID {swap_id} not found.")
        return state.summary()

    @app.get("/swaps")
    async def list_swaps():
        return [state.summary() for state in app.state.coordinator.states.values()]

    @app.get("/submissions")
    async def list_submissions(swap_id: Optional[str] = None):
        swap_id = normalize_swap_id(swap_id) if swap_id else None
        return await app.state.coordinator.store.list_submissions(swap_id)

    @app.get("/status")
    async def get_status():
        return app.state.coordinator.get_stats()

    @app.get("/health")
    async def health():
        return {"status": "healthy"}

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    return app


app = create_app()


def run():
    dotenv.load_dotenv()
    config = RelayerConfig.from_env()
    uvicorn.run("swap_relayer.main:app", host=config.host, port=config.port)


if __name__ == "__main__":
    run()
