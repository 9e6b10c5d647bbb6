from __future__ import annotations

import copy
from pathlib import Path

import pytest

from questbot.config import config_file, load_config, parse_config
from questbot.constants import ExecutionKind
from questbot.errors import ConfigError


@pytest.fixture(autouse=True)
def clean_env(monkeypatch: pytest.MonkeyPatch) -> None:
    for var in ("QUESTBOT_CONFIG", "QUESTBOT_DATA_DIR", "CAPSOLVER_API_KEY"):
        monkeypatch.delenv(var, raising=False)


def test_packaged_config_loads() -> None:
    settings = load_config()

    assert settings.chain_names == ["UNION", "BABYLON", "STARGAZE", "STRIDE"]
    assert settings.daily_chains == ["UNION", "BABYLON"]
    assert settings.transfer_chains == ["UNION", "BABYLON"]
    assert settings.cross_chain_names == ["CHAIN_REACTION", "TRIPLE_THREAT", "SIX_CHAINS"]
    assert settings.chains["UNION"].rpc_endpoint == "https://union-testnet-rpc.polkachu.com"
    assert settings.scheduler.timeouts[ExecutionKind.FAUCET] == 1800.0
    assert settings.cross_chain_quest("SIX_CHAINS").path[-1] == "UNION"
    assert settings.cross_chain_quest("NOPE") is None
    assert settings.faucet.api_key is None


def test_env_overrides(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    monkeypatch.setenv("QUESTBOT_DATA_DIR", str(tmp_path / "progress"))
    monkeypatch.setenv("CAPSOLVER_API_KEY", "CAP-ENV")

    settings = load_config()

    assert settings.storage.data_dir == tmp_path / "progress"
    assert settings.faucet.api_key == "CAP-ENV"


def test_config_path_from_env(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    text = config_file.read_text(encoding="utf-8").replace('max_concurrent = 3', 'max_concurrent = 7')
    custom = tmp_path / "custom.toml"
    custom.write_text(text, encoding="utf-8")
    monkeypatch.setenv("QUESTBOT_CONFIG", str(custom))

    assert load_config().scheduler.max_concurrent == 7


def test_missing_and_malformed_files(tmp_path: Path) -> None:
    with pytest.raises(ConfigError, match="not found"):
        load_config(tmp_path / "nope.toml")

    bad = tmp_path / "bad.toml"
    bad.write_text("[chains\n", encoding="utf-8")
    with pytest.raises(ConfigError, match="not valid TOML"):
        load_config(bad)


def _broken(raw_config, mutate):
    raw = copy.deepcopy(raw_config)
    mutate(raw)
    return raw


@pytest.mark.parametrize(
    ("mutate", "message"),
    [
        (lambda r: r["quests"]["cross_chain"][0]["path"].append("OSMOSIS"), "unknown chain"),
        (lambda r: r["source_preference"].update(default=["OSMOSIS"]), "unknown chain"),
        (lambda r: r["chains"]["UNION"]["channels"].update(OSMOSIS="channel-1"), "unknown chain"),
        (lambda r: r["quests"]["cross_chain"].append(dict(r["quests"]["cross_chain"][0])), "unique"),
        (lambda r: r["quests"]["cross_chain"][0].update(path=["UNION"]), "path"),
        (lambda r: r["chains"]["UNION"].update(rpc_endpoint="not a url"), "rpc_endpoint"),
        (lambda r: r["chains"]["UNION"].update(decimals=-1), "decimals"),
        (lambda r: r["chains"]["UNION"].pop("denom"), "denom"),
        (lambda r: r["scheduler"].update(max_concurrent=0), "max_concurrent"),
        (lambda r: r.update(chains={}), "chains"),
    ],
)
def test_invalid_configs_are_config_errors(raw_config, mutate, message: str) -> None:
    with pytest.raises(ConfigError, match=message):
        parse_config(_broken(raw_config, mutate))
