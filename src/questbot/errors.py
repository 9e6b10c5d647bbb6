"""Exception hierarchy shared across questbot modules."""


class QuestBotError(Exception):
    """Base class for all questbot errors."""


class ConfigError(QuestBotError):
    """Static chain/quest configuration is malformed. Fatal at startup."""


class ProgressStoreError(QuestBotError):
    """Progress storage failed for a reason other than a missing or corrupt record."""


class LockTimeoutError(ProgressStoreError):
    def __init__(self, wallet_index: int, timeout: float):
        self.wallet_index = wallet_index
        self.timeout = timeout
        super().__init__(f"Could not acquire progress lock for wallet {wallet_index + 1} within {timeout}s")


class PlanError(QuestBotError):
    """A quest service could not build a plan for a wallet (missing address, no source chain, ...)."""


class WalletError(QuestBotError):
    pass


class CaptchaError(QuestBotError):
    pass
