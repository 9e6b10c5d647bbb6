"""Chain client adapter.

Thin async facade over cosmpy's blocking LedgerClient. Every call into cosmpy is
pushed onto a worker thread so an execution unit waiting on the node never
stalls the event loop.
"""

import asyncio
import logging
from collections.abc import Sequence
from dataclasses import dataclass
from decimal import ROUND_FLOOR, Decimal, InvalidOperation
from typing import Any, Protocol

import httpx
from cosmpy.aerial.client import Account, LedgerClient, NetworkConfig
from cosmpy.aerial.client.utils import prepare_and_broadcast_basic_transaction
from cosmpy.aerial.exceptions import BroadcastError
from cosmpy.aerial.tx import Transaction
from cosmpy.aerial.wallet import LocalWallet
from cosmpy.crypto.keypairs import PrivateKey

import questbot.constants as C
from questbot.config import ChainConfig, Settings
from questbot.errors import WalletError

log = logging.getLogger("questbot.chain")

BROADCAST_REJECTED = -1  # node refused the tx before it got a DeliverTx code


@dataclass(slots=True)
class Coin:
    denom: str
    amount: int


@dataclass(slots=True)
class AccountInfo:
    number: int
    sequence: int


@dataclass(slots=True)
class BroadcastResult:
    code: int
    tx_hash: str | None
    raw_log: str = ""


@dataclass(slots=True)
class BroadcastOutcome:
    success: bool
    in_mempool: bool
    tx_hash: str | None
    raw_log: str = ""


def classify_broadcast(result: BroadcastResult) -> BroadcastOutcome:
    """code 0 is success. A tx the node already holds counts as sent (best effort, the marker text is node-specific)."""
    if result.code == 0:
        return BroadcastOutcome(True, False, result.tx_hash, result.raw_log)
    if C.MEMPOOL_DUPLICATE_MARKER in (result.raw_log or ""):
        return BroadcastOutcome(True, True, result.tx_hash, result.raw_log)
    return BroadcastOutcome(False, False, result.tx_hash, result.raw_log)


# ==============================
# Amounts
# ==============================
def to_raw_amount(amount: str | Decimal, decimals: int) -> int:
    """'0.001' with 6 decimals -> 1000. Extra precision is floored."""
    try:
        value = Decimal(str(amount))
    except InvalidOperation as e:
        raise ValueError(f"Invalid amount: {amount!r}") from e
    if not value.is_finite() or value <= 0:
        raise ValueError(f"Amount must be a positive number, got {amount!r}")
    raw = int((value * (Decimal(10) ** decimals)).to_integral_value(rounding=ROUND_FLOOR))
    if raw == 0:
        raise ValueError(f"Amount {amount} is below the smallest unit (10^-{decimals})")
    return raw


def from_raw_amount(raw: int, decimals: int) -> Decimal:
    return Decimal(raw) / (Decimal(10) ** decimals)


# ==============================
# Keys & addresses
# ==============================
def _private_key(private_key_hex: str) -> PrivateKey:
    key = private_key_hex.strip().removeprefix("0x")
    try:
        raw = bytes.fromhex(key)
    except ValueError as e:
        raise WalletError(f"Invalid private key: {e}") from e
    if len(raw) != 32:
        raise WalletError(f"Invalid private key: expected 32 bytes, got {len(raw)}")
    return PrivateKey(raw)


def local_wallet(private_key_hex: str, prefix: str) -> LocalWallet:
    return LocalWallet(_private_key(private_key_hex), prefix=prefix)


def derive_address(private_key_hex: str, prefix: str) -> str:
    return str(local_wallet(private_key_hex, prefix).address())


# ==============================
# Client
# ==============================
class ChainClient(Protocol):
    name: str
    config: ChainConfig

    async def get_all_balances(self, address: str) -> list[Coin]: ...
    async def get_balance(self, address: str, denom: str) -> int: ...
    async def get_account(self, address: str) -> AccountInfo | None: ...
    async def broadcast(
        self,
        private_key_hex: str,
        messages: Sequence[Any],
        account: AccountInfo,
        *,
        gas_limit: int | None = None,
        memo: str = "",
    ) -> BroadcastResult: ...


def network_config(chain: ChainConfig) -> NetworkConfig:
    return NetworkConfig(
        chain_id=chain.chain_id,
        fee_minimum_gas_price=float(chain.gas_price.amount),
        fee_denomination=chain.gas_price.denom,
        staking_denomination=chain.denom,
        url=f"rest+{chain.rest_endpoint}",
    )


class CosmpyChainClient:
    def __init__(self, name: str, config: ChainConfig) -> None:
        self.name = name
        self.config = config
        self._ledger: LedgerClient | None = None

    def connect(self) -> LedgerClient:
        if self._ledger is None:
            log.debug("connecting to %s at %s", self.name, self.config.rest_endpoint)
            self._ledger = LedgerClient(network_config(self.config))
        return self._ledger

    async def get_all_balances(self, address: str) -> list[Coin]:
        coins = await asyncio.to_thread(lambda: self.connect().query_bank_all_balances(address))
        return [Coin(denom=c.denom, amount=int(c.amount)) for c in coins]

    async def get_balance(self, address: str, denom: str) -> int:
        for coin in await self.get_all_balances(address):
            if coin.denom == denom:
                return coin.amount
        return 0

    async def get_account(self, address: str) -> AccountInfo | None:
        try:
            acct = await asyncio.to_thread(lambda: self.connect().query_account(address))
        except RuntimeError as e:
            # Unfunded accounts don't exist on chain yet
            if "not found" in str(e).lower():
                return None
            raise
        return AccountInfo(number=acct.number, sequence=acct.sequence)

    def _broadcast_sync(self, private_key_hex, messages, account, gas_limit, memo) -> BroadcastResult:
        ledger = self.connect()
        wallet = local_wallet(private_key_hex, self.config.prefix)
        tx = Transaction()
        for msg in messages:
            tx.add_message(msg)
        acct = Account(address=wallet.address(), number=account.number, sequence=account.sequence)
        try:
            submitted = prepare_and_broadcast_basic_transaction(
                ledger, tx, wallet, account=acct, gas_limit=gas_limit, memo=memo
            )
            submitted.wait_to_complete()
        except BroadcastError as e:
            return BroadcastResult(code=BROADCAST_REJECTED, tx_hash=e.tx_hash, raw_log=str(e))
        resp = submitted.response
        return BroadcastResult(code=resp.code, tx_hash=submitted.tx_hash, raw_log=resp.raw_log or "")

    async def broadcast(self, private_key_hex, messages, account, *, gas_limit=None, memo="") -> BroadcastResult:
        gas_limit = gas_limit or self.config.gas_limit
        return await asyncio.to_thread(self._broadcast_sync, private_key_hex, messages, account, gas_limit, memo)


class ChainClients:
    """One lazily created client per configured chain. Call it with a chain name."""

    def __init__(self, settings: Settings, client_cls=CosmpyChainClient) -> None:
        self.settings = settings
        self.client_cls = client_cls
        self._clients: dict[str, ChainClient] = {}

    def __call__(self, name: str) -> ChainClient:
        if name not in self.settings.chains:
            raise KeyError(f"Unknown chain: {name}")
        if name not in self._clients:
            self._clients[name] = self.client_cls(name, self.settings.chains[name])
        return self._clients[name]


# ==============================
# Diagnostics
# ==============================
async def probe_rpc(
    url: str,
    max_retries: int = 3,
    retry_delay: float = 2.0,
    *,
    transport: httpx.AsyncBaseTransport | None = None,
) -> dict:
    """Hit the Tendermint ``/status`` endpoint until it answers; returns its ``node_info``."""
    status_url = f"{url.rstrip('/')}/status"
    for attempt in range(1, max_retries + 1):
        try:
            async with httpx.AsyncClient(timeout=C.RPC_TIMEOUT, transport=transport) as http:
                r = await http.get(status_url)
                r.raise_for_status()
                node_info = r.json().get("result", {}).get("node_info", {})
                log.info(f"RPC {url} responding, network {node_info.get('network', '?')} (attempt {attempt}/{max_retries})")
                return node_info
        except (httpx.HTTPError, ValueError) as e:
            if attempt < max_retries:
                log.info(f"RPC {url} not ready (attempt {attempt}/{max_retries}): {e.__class__.__name__} - retrying in {retry_delay}s...")
                await asyncio.sleep(retry_delay)
            else:
                log.error(f"RPC {url} failed after {max_retries} attempts")
                raise
    return {}
