from typing import Final
from enum import StrEnum


class ExecutionKind(StrEnum):
    TRANSFER = "TRANSFER"
    FAUCET   = "FAUCET"


class RouteKind(StrEnum):
    SAME_CHAIN = "SAME_CHAIN"
    IBC        = "IBC"


DEFAULT_TRANSFER_AMOUNT: Final = "0.001"
DAILY_TRANSFER_AMOUNT: Final = "0.000001"  # self-transfer, just enough to count as activity

DEFAULT_MAX_CONCURRENT = 3
BATCH_COOLDOWN = 2.0   # seconds between chunks, keeps shared RPC endpoints happy
TRANSFER_DELAY = 5.0   # seconds between sequential transfers from one wallet
LOCK_TIMEOUT = 10.0
RPC_TIMEOUT = 10.0
IBC_TIMEOUT = 600      # seconds until an ICS-20 packet times out

EXECUTION_TIMEOUTS: Final = {
    ExecutionKind.TRANSFER: 180.0,
    ExecutionKind.FAUCET: 1800.0,
}

FAUCET_SETTLE_SECONDS = 60.0
FAUCET_RETRY_SECONDS = 15.0
CAPTCHA_POLL_INTERVAL = 5.0
CAPTCHA_POLL_ATTEMPTS = 24  # ~2 minutes

# Returned by the node when an identical tx is already sitting in its mempool
MEMPOOL_DUPLICATE_MARKER: Final = "tx already exists in cache"

PROGRESS_SCHEMA_VERSION = 1

__all__ = [
    "BATCH_COOLDOWN",
    "CAPTCHA_POLL_ATTEMPTS",
    "CAPTCHA_POLL_INTERVAL",
    "DAILY_TRANSFER_AMOUNT",
    "DEFAULT_MAX_CONCURRENT",
    "DEFAULT_TRANSFER_AMOUNT",
    "EXECUTION_TIMEOUTS",
    "FAUCET_RETRY_SECONDS",
    "FAUCET_SETTLE_SECONDS",
    "IBC_TIMEOUT",
    "LOCK_TIMEOUT",
    "MEMPOOL_DUPLICATE_MARKER",
    "PROGRESS_SCHEMA_VERSION",
    "RPC_TIMEOUT",
    "TRANSFER_DELAY",

    ######
    "ExecutionKind",
    "RouteKind",
]
