from __future__ import annotations

import logging

import pytest

from questbot import logging_config
from questbot.logging_config import LOGGING_CONFIG, setup_logging, wallet_tag

LIBRARIES = ["fastapi", "uvicorn.access", "httpx", "httpcore", "cosmpy", "grpc"]


@pytest.mark.parametrize("name", ["questbot", *LIBRARIES])
def test_every_logger_writes_to_console_and_file_only(name: str) -> None:
    cfg = LOGGING_CONFIG["loggers"][name]

    assert cfg["handlers"] == ["console", "file"]
    assert cfg["propagate"] is False


def test_libraries_are_held_to_warnings_except_fastapi() -> None:
    levels = {name: LOGGING_CONFIG["loggers"][name]["level"] for name in LIBRARIES}

    assert levels.pop("fastapi") == "INFO"
    assert set(levels.values()) == {"WARNING"}
    assert LOGGING_CONFIG["root"]["level"] == "WARNING"
    assert LOGGING_CONFIG["loggers"]["questbot"]["level"] == logging_config.LOG_LEVEL


def test_setup_logging_writes_questbot_records_to_the_log_file(tmp_path, monkeypatch: pytest.MonkeyPatch) -> None:
    log_file = tmp_path / "questbot.log"
    monkeypatch.setitem(LOGGING_CONFIG["handlers"]["file"], "filename", str(log_file))

    setup_logging()
    logging.getLogger("questbot.scheduler").warning("%s chunk stalled", wallet_tag(0))
    logging.getLogger("httpx").info("HTTP Request: GET https://faucet")
    for handler in logging.getLogger("questbot").handlers:
        handler.flush()

    text = log_file.read_text(encoding="utf-8")
    assert "WARNING" in text
    assert "[wallet 1] chunk stalled" in text
    assert "HTTP Request" not in text


@pytest.mark.parametrize(("index", "tag"), [(0, "[wallet 1]"), (9, "[wallet 10]")])
def test_wallet_tag_is_one_based(index: int, tag: str) -> None:
    assert wallet_tag(index) == tag
