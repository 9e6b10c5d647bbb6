from __future__ import annotations

import asyncio
import tomllib
from typing import Any

import pytest

from questbot.chain import AccountInfo, BroadcastResult, Coin
from questbot.config import Settings, config_file, parse_config
from questbot.models import ExecutionError, TaskDescriptor
from questbot.progress_store import ProgressStore

ADDRESSES = {
    "UNION": "union1walletzero",
    "BABYLON": "bbn1walletzero",
    "STARGAZE": "stars1walletzero",
    "STRIDE": "stride1walletzero",
}

# secp256k1 keys well inside the curve order
TEST_KEYS = ["11" * 32, "22" * 32]


def fast_config(tmp_path) -> dict[str, Any]:
    """Packaged config with every sleep zeroed and storage under tmp_path."""
    raw = tomllib.loads(config_file.read_text(encoding="utf-8"))
    raw["scheduler"].update(cooldown=0.0, transfer_delay=0.0)
    raw["faucet"].update(settle_seconds=0.0, retry_seconds=0.0, captcha_poll_interval=0.0)
    raw["storage"].update(
        data_dir=str(tmp_path / "data"),
        lock_timeout=2.0,
        keys_file=str(tmp_path / "pk.txt"),
        proxy_file=str(tmp_path / "proxy.txt"),
    )
    return raw


@pytest.fixture
def raw_config(tmp_path) -> dict[str, Any]:
    return fast_config(tmp_path)


@pytest.fixture
def settings(raw_config) -> Settings:
    return parse_config(raw_config)


@pytest.fixture
def store(settings: Settings) -> ProgressStore:
    return ProgressStore.from_settings(settings)


async def seed_addresses(store: ProgressStore, wallet_index: int, addresses: dict[str, str] = ADDRESSES) -> None:
    for chain, address in addresses.items():
        await store.update_address(wallet_index, chain, address)


class RecordingExecutor:
    """Executor double: records every task, fails a hop listed in ``fail_on``.

    ``fail_on`` holds ``(source, destination)`` pairs or bare destination names.
    """

    def __init__(self, fail_on=(), delay: float = 0.0) -> None:
        self.calls: list[TaskDescriptor] = []
        self.fail_on = set(fail_on)
        self.delay = delay
        self.active: dict[int, int] = {}
        self.peak: dict[int, int] = {}  # most units seen running at once, per wallet

    @property
    def hops(self) -> list[tuple[str, str]]:
        return [(t.parameters["source"], t.parameters["destination"]) for t in self.calls]

    async def __call__(self, task: TaskDescriptor) -> dict:
        self.calls.append(task)
        w = task.wallet_index
        self.active[w] = self.active.get(w, 0) + 1
        self.peak[w] = max(self.peak.get(w, 0), self.active[w])
        try:
            if self.delay:
                await asyncio.sleep(self.delay)
        finally:
            self.active[w] -= 1
        src, dst = task.parameters.get("source"), task.parameters.get("destination")
        if (src, dst) in self.fail_on or dst in self.fail_on:
            raise ExecutionError(f"boom {src} -> {dst}", {"hash": None})
        return {"hash": f"HASH{len(self.calls)}", "source": src, "destination": dst}


class FakeChainClient:
    """ChainClient double. ``balances`` may be a list: each read consumes one value, the last one sticks."""

    def __init__(
        self,
        name: str = "UNION",
        config=None,
        *,
        balances: int | list[int] = 10**9,
        account: AccountInfo | None = AccountInfo(number=7, sequence=3),
        result: BroadcastResult = BroadcastResult(code=0, tx_hash="ABCDEF", raw_log=""),
    ) -> None:
        self.name = name
        self.config = config
        self.balances = balances
        self.account = account
        self.result = result
        self.broadcasts: list[dict[str, Any]] = []

    async def get_all_balances(self, address: str) -> list[Coin]:
        denom = self.config.denom if self.config else "muno"
        return [Coin(denom=denom, amount=await self.get_balance(address, denom))]

    async def get_balance(self, address: str, denom: str) -> int:
        if isinstance(self.balances, list):
            return self.balances.pop(0) if len(self.balances) > 1 else self.balances[0]
        return self.balances

    async def get_account(self, address: str) -> AccountInfo | None:
        return self.account

    async def broadcast(self, private_key_hex, messages, account, *, gas_limit=None, memo="") -> BroadcastResult:
        self.broadcasts.append({"messages": list(messages), "account": account, "gas_limit": gas_limit})
        return self.result
