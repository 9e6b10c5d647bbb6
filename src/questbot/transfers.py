import logging
import time
from collections.abc import Callable

from cosmpy.protos.cosmos.bank.v1beta1.tx_pb2 import MsgSend
from cosmpy.protos.cosmos.base.v1beta1.coin_pb2 import Coin as CoinProto
from cosmpy.protos.ibc.applications.transfer.v1.tx_pb2 import MsgTransfer

import questbot.constants as C
from questbot.chain import ChainClient, classify_broadcast, derive_address, from_raw_amount, to_raw_amount
from questbot.config import ChainConfig, Settings
from questbot.errors import WalletError
from questbot.logging_config import wallet_tag
from questbot.models import ExecutionError, TaskDescriptor, TransferParams
from questbot.wallets import Keyring

log = logging.getLogger("questbot.transfers")

IBC_PORT = "transfer"


def route_for(source: str, destination: str) -> C.RouteKind:
    return C.RouteKind.SAME_CHAIN if source == destination else C.RouteKind.IBC


class TransferExecutor:
    """Execution unit for TRANSFER tasks: one signed transfer per call."""

    def __init__(self, settings: Settings, keyring: Keyring, clients: Callable[[str], ChainClient]) -> None:
        self.settings = settings
        self.keyring = keyring
        self.clients = clients
        self.routes = {
            C.RouteKind.SAME_CHAIN: self._bank_send,
            C.RouteKind.IBC: self._ibc_transfer,
        }

    # ==============================
    # Message builders, one per route
    # ==============================
    def _bank_send(self, p: TransferParams, src: ChainConfig, sender: str, raw: int):
        return MsgSend(
            from_address=sender,
            to_address=p.receiver,
            amount=[CoinProto(denom=src.denom, amount=str(raw))],
        )

    def _ibc_transfer(self, p: TransferParams, src: ChainConfig, sender: str, raw: int):
        channel = src.channels.get(p.destination)
        if not channel:
            raise ExecutionError(f"Unknown chain pair: no IBC channel from {p.source} to {p.destination}")
        return MsgTransfer(
            source_port=IBC_PORT,
            source_channel=channel,
            token=CoinProto(denom=src.denom, amount=str(raw)),
            sender=sender,
            receiver=p.receiver,
            timeout_timestamp=time.time_ns() + C.IBC_TIMEOUT * 1_000_000_000,
        )

    # ==============================
    # Execution unit
    # ==============================
    async def __call__(self, task: TaskDescriptor) -> dict:
        p = TransferParams.from_task(task)
        tag = wallet_tag(task.wallet_index)
        src = self.settings.chains.get(p.source)
        if src is None or p.destination not in self.settings.chains:
            raise ExecutionError(f"Unknown chain pair: {p.source} -> {p.destination}")

        try:
            key = self.keyring.key_for(task.wallet_index)
            sender = derive_address(key, src.prefix)
        except WalletError as e:
            raise ExecutionError(str(e)) from e
        try:
            raw = to_raw_amount(p.amount, src.decimals)
        except ValueError as e:
            raise ExecutionError(str(e)) from e

        route = route_for(p.source, p.destination)
        msg = self.routes[route](p, src, sender, raw)
        client = self.clients(p.source)

        balance = await client.get_balance(sender, src.denom)
        if balance < raw:
            raise ExecutionError(
                f"Insufficient balance: {from_raw_amount(balance, src.decimals)} {src.denom} on {p.source}, need {p.amount}",
                {"balance": balance, "required": raw, "sender": sender},
            )

        account = await client.get_account(sender)
        if account is None:
            raise ExecutionError(f"Account {sender} not found on {p.source}")

        log.info(f"{tag} {route} {p.amount} {src.denom}: {p.source} -> {p.destination} ({p.receiver})")
        result = await client.broadcast(key, [msg], account, gas_limit=src.gas_limit)
        outcome = classify_broadcast(result)
        payload = {
            "hash": outcome.tx_hash,
            "amount": p.amount,
            "sender": sender,
            "receiver": p.receiver,
            "source": p.source,
            "destination": p.destination,
            "in_mempool": outcome.in_mempool,
        }
        if not outcome.success:
            raise ExecutionError(f"Broadcast failed (code {result.code}): {result.raw_log}", payload)
        if outcome.in_mempool:
            log.warning(f"{tag} tx already in mempool, treating as sent: {outcome.tx_hash}")
        else:
            log.info(f"{tag} {p.source} -> {p.destination} ok: {outcome.tx_hash}")
        return payload
