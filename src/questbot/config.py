import os
import tomllib
from pathlib import Path
from typing import Annotated

from pydantic import (
    AfterValidator,
    BaseModel,
    Field,
    HttpUrl,
    PositiveInt,
    TypeAdapter,
    ValidationError,
    model_validator,
)

import questbot.constants as C
from questbot.errors import ConfigError

pkg_root = Path(__file__).parent
config_file = pkg_root / "config.toml"

_http_url = TypeAdapter(HttpUrl)


def _valid_url(value: str) -> str:
    _http_url.validate_python(value)
    return value.rstrip("/")


def _non_empty(value: str) -> str:
    if not value.strip():
        raise ValueError("must not be empty")
    return value


Endpoint = Annotated[str, AfterValidator(_valid_url)]
Name = Annotated[str, AfterValidator(_non_empty)]


class GasPrice(BaseModel):
    amount: Name
    denom: Name


class ChainConfig(BaseModel):
    chain_id: Name
    rpc_endpoint: Endpoint
    rest_endpoint: Endpoint
    prefix: Name
    denom: Name
    decimals: int = Field(ge=0)
    gas_price: GasPrice
    gas_limit: PositiveInt = 300_000
    channels: dict[str, str] = Field(default_factory=dict)


class DailyMilestone(BaseModel):
    days: PositiveInt
    xp: PositiveInt


class TransferMilestone(BaseModel):
    name: Name
    count: int = Field(ge=0)
    xp: int = Field(ge=0)


class CrossChainQuest(BaseModel):
    name: Name
    path: list[str] = Field(min_length=2)
    xp: int = Field(ge=0)


class QuestConfig(BaseModel):
    daily: dict[str, dict[str, DailyMilestone]]
    transfer: dict[str, list[TransferMilestone]]
    cross_chain: list[CrossChainQuest]
    default_transfer_amount: str = C.DEFAULT_TRANSFER_AMOUNT


class SourcePreference(BaseModel):
    default: list[str] = Field(default_factory=list)
    overrides: dict[str, list[str]] = Field(default_factory=dict)


class SchedulerConfig(BaseModel):
    max_concurrent: PositiveInt = C.DEFAULT_MAX_CONCURRENT
    cooldown: float = Field(default=C.BATCH_COOLDOWN, ge=0)
    transfer_delay: float = Field(default=C.TRANSFER_DELAY, ge=0)
    timeouts: dict[C.ExecutionKind, float] = Field(default_factory=lambda: dict(C.EXECUTION_TIMEOUTS))


class FaucetConfig(BaseModel):
    endpoint: Endpoint
    referrer: Name
    site_keys: dict[str, str] = Field(default_factory=dict)
    settle_seconds: float = Field(default=C.FAUCET_SETTLE_SECONDS, ge=0)
    retry_seconds: float = Field(default=C.FAUCET_RETRY_SECONDS, ge=0)
    captcha_api_url: Endpoint = "https://api.capsolver.com"
    captcha_poll_interval: float = Field(default=C.CAPTCHA_POLL_INTERVAL, ge=0)
    captcha_poll_attempts: PositiveInt = C.CAPTCHA_POLL_ATTEMPTS
    api_key: str | None = None


class StorageConfig(BaseModel):
    data_dir: Path = Path("data")
    lock_timeout: float = Field(default=C.LOCK_TIMEOUT, gt=0)
    keys_file: Path = Path("pk.txt")
    proxy_file: Path = Path("proxy.txt")


class Settings(BaseModel):
    chains: dict[str, ChainConfig] = Field(min_length=1)
    quests: QuestConfig
    source_preference: SourcePreference = Field(default_factory=SourcePreference)
    scheduler: SchedulerConfig = Field(default_factory=SchedulerConfig)
    faucet: FaucetConfig
    storage: StorageConfig = Field(default_factory=StorageConfig)

    @model_validator(mode="after")
    def _check_references(self) -> "Settings":
        known = set(self.chains)

        def unknown(names, where):
            missing = [n for n in names if n not in known]
            if missing:
                raise ValueError(f"{where} references unknown chain(s): {', '.join(missing)}")

        unknown(self.quests.daily, "quests.daily")
        unknown(self.quests.transfer, "quests.transfer")
        for quest in self.quests.cross_chain:
            unknown(quest.path, f"cross-chain quest {quest.name}")
        unknown(self.source_preference.default, "source_preference.default")
        for dest, prefs in self.source_preference.overrides.items():
            unknown([dest, *prefs], f"source_preference.overrides.{dest}")
        for name, chain in self.chains.items():
            unknown(chain.channels, f"chains.{name}.channels")
        unknown(self.faucet.site_keys, "faucet.site_keys")

        names = [q.name for q in self.quests.cross_chain]
        if len(names) != len(set(names)):
            raise ValueError("cross-chain quest names must be unique")
        return self

    # Convenience views used by the store and the quest services
    @property
    def chain_names(self) -> list[str]:
        return list(self.chains)

    @property
    def daily_chains(self) -> list[str]:
        return list(self.quests.daily)

    @property
    def transfer_chains(self) -> list[str]:
        return list(self.quests.transfer)

    @property
    def cross_chain_names(self) -> list[str]:
        return [q.name for q in self.quests.cross_chain]

    def cross_chain_quest(self, name: str) -> CrossChainQuest | None:
        return next((q for q in self.quests.cross_chain if q.name == name), None)


def parse_config(raw: dict) -> Settings:
    try:
        return Settings.model_validate(raw)
    except ValidationError as e:
        raise ConfigError(f"Invalid configuration:\n{e}") from e


def load_config(path: str | Path | None = None) -> Settings:
    """Load, validate and apply env overrides.

    Resolution order for the file: explicit ``path``, ``QUESTBOT_CONFIG``, packaged ``config.toml``.
    Any problem raises ConfigError; callers treat that as fatal.
    """
    path = Path(path or os.getenv("QUESTBOT_CONFIG") or config_file)
    try:
        raw = tomllib.loads(path.read_text(encoding="utf-8"))
    except FileNotFoundError as e:
        raise ConfigError(f"Config file not found: {path}") from e
    except tomllib.TOMLDecodeError as e:
        raise ConfigError(f"Config file {path} is not valid TOML: {e}") from e

    storage = raw.setdefault("storage", {})
    if data_dir := os.getenv("QUESTBOT_DATA_DIR"):
        storage["data_dir"] = data_dir
    if api_key := os.getenv("CAPSOLVER_API_KEY"):
        raw.setdefault("faucet", {})["api_key"] = api_key

    return parse_config(raw)
