import logging
from collections.abc import Callable
from dataclasses import dataclass

import httpx

import questbot.constants as C
from questbot.captcha import CaptchaSolver
from questbot.chain import ChainClient, ChainClients, probe_rpc
from questbot.config import Settings, load_config
from questbot.errors import WalletError
from questbot.faucet import FaucetExecutor, default_http_factory
from questbot.progress_store import ProgressStore
from questbot.proxies import ProxyPool, load_proxies
from questbot.quests import (
    CrossChainQuestService,
    DailyInteractionService,
    FaucetService,
    FullAutomation,
    TransferQuestService,
)
from questbot.scheduler import WorkerPool
from questbot.transfers import TransferExecutor
from questbot.wallets import Keyring, read_private_keys, setup_wallets

log = logging.getLogger("questbot.runtime")


@dataclass(slots=True)
class Runtime:
    """Everything one process shares: one store, one worker pool, the quest services."""

    settings: Settings
    store: ProgressStore
    keyring: Keyring
    pool: WorkerPool
    daily: DailyInteractionService
    transfer: TransferQuestService
    cross_chain: CrossChainQuestService
    faucet: FaucetService
    full: FullAutomation

    def resolve_wallets(self, selection: int | str | None) -> list[int]:
        """``"all"``/None -> every wallet; N -> [N - 1] (operators count from 1)."""
        if selection is None or selection == "all":
            return self.keyring.indexes
        try:
            n = int(selection)
        except (TypeError, ValueError):
            raise WalletError(f"Invalid wallet selection: {selection!r}") from None
        if not 1 <= n <= len(self.keyring):
            raise WalletError(f"Wallet {n} out of range (1-{len(self.keyring)})")
        return [n - 1]


def build_runtime(
    settings: Settings,
    keyring: Keyring,
    store: ProgressStore,
    clients: Callable[[str], ChainClient],
    *,
    proxies: ProxyPool | None = None,
    solver_factory: Callable[[str], CaptchaSolver] | None = None,
    http_factory: Callable[[str | None], httpx.AsyncClient] = default_http_factory,
) -> Runtime:
    executors = {
        C.ExecutionKind.TRANSFER: TransferExecutor(settings, keyring, clients),
        C.ExecutionKind.FAUCET: FaucetExecutor(settings, clients, solver_factory, http_factory, proxies),
    }
    pool = WorkerPool.from_settings(settings, executors)
    daily = DailyInteractionService(settings, store, pool)
    transfer = TransferQuestService(settings, store, pool)
    cross_chain = CrossChainQuestService(settings, store, pool)
    faucet = FaucetService(settings, store, pool)
    full = FullAutomation(settings, store, pool, daily, transfer, cross_chain, faucet)
    return Runtime(settings, store, keyring, pool, daily, transfer, cross_chain, faucet, full)


async def probe_chains(settings: Settings) -> dict[str, bool]:
    """Startup diagnostics only: an unreachable RPC is a warning, never fatal."""
    status = {}
    for name, chain in settings.chains.items():
        try:
            await probe_rpc(chain.rpc_endpoint, max_retries=1)
            status[name] = True
        except (httpx.HTTPError, ValueError) as e:
            log.warning("%s RPC %s unreachable: %s", name, chain.rpc_endpoint, e)
            status[name] = False
    return status


async def bootstrap(settings: Settings | None = None, *, probe: bool = True) -> Runtime:
    """Config, keys, addresses, clients, pool and services. Raises on anything that should stop startup."""
    settings = settings or load_config()
    keys = read_private_keys(settings.storage.keys_file)
    if not keys:
        raise WalletError(f"No private keys found in {settings.storage.keys_file}")

    store = ProgressStore.from_settings(settings)
    keyring = await setup_wallets(keys, store, settings.chains)
    proxies = ProxyPool(load_proxies(settings.storage.proxy_file))
    if probe:
        await probe_chains(settings)

    runtime = build_runtime(settings, keyring, store, ChainClients(settings), proxies=proxies)
    log.info("Ready: %d wallet(s), %d chain(s), %d proxies", len(keyring), len(settings.chains), len(proxies))
    return runtime
