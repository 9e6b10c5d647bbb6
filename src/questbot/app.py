import logging
from collections.abc import Awaitable, Callable
from contextlib import asynccontextmanager
from typing import Literal

from fastapi import APIRouter, FastAPI, HTTPException, Request
from pydantic import BaseModel, NonNegativeInt, PositiveInt

from questbot.errors import WalletError
from questbot.logging_config import setup_logging
from questbot.runtime import Runtime, bootstrap

setup_logging()
log = logging.getLogger("questbot.app")


class WalletSelection(BaseModel):
    wallet: PositiveInt | Literal["all"] = "all"  # 1-based, as shown in the logs
    threads: PositiveInt | None = None


class DailyReq(WalletSelection):
    pass


class TransferReq(WalletSelection):
    chain: str | None = None
    count: NonNegativeInt | None = None
    complete_next: bool = False
    amount: str | None = None


class CrossChainReq(WalletSelection):
    quest: str | None = None
    all: bool = False
    amount: str | None = None


class FaucetReq(WalletSelection):
    chain: str
    max_attempts: NonNegativeInt = 1  # 0 = until the execution unit times out
    api_key: str | None = None


class FullReq(WalletSelection):
    api_key: str | None = None


def create_app(startup: Callable[[], Awaitable[Runtime]] = bootstrap) -> FastAPI:
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        log.info("Initializing questbot...")
        app.state.runtime = await startup()
        log.info("Ready to accept requests")
        try:
            yield
        finally:
            log.info("Shutdown complete")

    app = FastAPI(
        title="questbot",
        lifespan=lifespan,
        openapi_tags=[
            {"name": "Wallets", "description": "Wallets and their quest progress"},
            {"name": "Quests", "description": "Run quests for one wallet or all of them"},
        ],
    )

    r_wallets = APIRouter(tags=["Wallets"])
    r_quests = APIRouter(prefix="/quests", tags=["Quests"])

    def runtime(request: Request) -> Runtime:
        return request.app.state.runtime

    def wallets(rt: Runtime, req: WalletSelection) -> list[int]:
        try:
            return rt.resolve_wallets(req.wallet)
        except WalletError as e:
            raise HTTPException(status_code=404, detail=str(e)) from e

    @app.get("/health")
    def health():
        return {"status": "ok"}

    @app.get("/workers")
    def workers(request: Request):
        pool = runtime(request).pool
        return {"active": pool.active_count, "task_ids": pool.active_task_ids}

    @r_wallets.get("/wallets")
    def list_wallets(request: Request):
        return {"wallets": [i + 1 for i in runtime(request).keyring.indexes]}

    @r_wallets.get("/progress/{wallet}")
    async def progress(wallet: int, request: Request):
        rt = runtime(request)
        try:
            [index] = rt.resolve_wallets(wallet)
        except WalletError as e:
            raise HTTPException(status_code=404, detail=str(e)) from e
        record = await rt.store.read_progress_data(index)
        return record.model_dump(mode="json", by_alias=True)

    @r_quests.post("/daily")
    async def run_daily(req: DailyReq, request: Request):
        rt = runtime(request)
        summary = await rt.daily.run_for_all_wallets(wallets(rt, req), req.threads)
        return summary.to_dict()

    @r_quests.post("/transfer")
    async def run_transfer(req: TransferReq, request: Request):
        rt = runtime(request)
        summary = await rt.transfer.run_for_all_wallets(
            wallets(rt, req),
            req.threads,
            chain=req.chain,
            count=req.count,
            complete_next=req.complete_next,
            amount=req.amount,
        )
        return summary.to_dict()

    @r_quests.post("/cross-chain")
    async def run_cross_chain(req: CrossChainReq, request: Request):
        rt = runtime(request)
        if not req.all and req.quest is None:
            raise HTTPException(status_code=422, detail="Set 'quest' or 'all'")
        if req.quest is not None and rt.settings.cross_chain_quest(req.quest) is None:
            raise HTTPException(status_code=404, detail=f"Unknown cross-chain quest: {req.quest}")
        summary = await rt.cross_chain.run_for_all_wallets(
            wallets(rt, req), req.threads, quest=req.quest, all_quests=req.all, amount=req.amount
        )
        return summary.to_dict()

    @r_quests.post("/faucet")
    async def run_faucet(req: FaucetReq, request: Request):
        rt = runtime(request)
        if req.chain not in rt.settings.faucet.site_keys:
            raise HTTPException(status_code=404, detail=f"No faucet for {req.chain}")
        summary = await rt.faucet.run_for_all_wallets(
            wallets(rt, req), req.threads, chain=req.chain, max_attempts=req.max_attempts, api_key=req.api_key
        )
        return summary.to_dict()

    @r_quests.post("/full")
    async def run_full(req: FullReq, request: Request):
        rt = runtime(request)
        summary = await rt.full.run_for_all_wallets(wallets(rt, req), req.threads, api_key=req.api_key)
        return summary.to_dict()

    app.include_router(r_wallets)
    app.include_router(r_quests)
    return app


app = create_app()
