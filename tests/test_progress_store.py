from __future__ import annotations

import asyncio
import json
import logging
import os
from datetime import date

import pytest

from questbot.errors import LockTimeoutError, ProgressStoreError
from questbot.progress_store import ProgressRecord, ProgressStore


def test_missing_record_is_created_with_every_configured_name(store: ProgressStore, settings) -> None:
    record = asyncio.run(store.read_progress_data(0))

    assert set(record.addresses) == set(settings.chain_names)
    assert all(address is None for address in record.addresses.values())
    assert set(record.daily_interactions) == {"UNION", "BABYLON"}
    assert set(record.transfers) == {"UNION", "BABYLON"}
    assert set(record.cross_chain) == {"CHAIN_REACTION", "TRIPLE_THREAT", "SIX_CHAINS"}
    assert record.version == 1
    assert store.path_for(0).exists()


def test_read_twice_returns_the_same_state(store: ProgressStore) -> None:
    async def scenario():
        first = await store.read_progress_data(3)
        second = await store.read_progress_data(3)
        return first, second

    first, second = asyncio.run(scenario())
    assert first.same_state(second)


def test_file_uses_camel_case_keys(store: ProgressStore) -> None:
    asyncio.run(store.update_daily_interaction(0, "UNION", date(2024, 5, 1)))

    data = json.loads(store.path_for(0).read_text(encoding="utf-8"))
    assert data["dailyInteractions"]["UNION"] == {"lastInteraction": "2024-05-01", "count": 1}
    assert data["crossChain"]["SIX_CHAINS"] == {"completed": False}
    assert data["lastUpdated"]


@pytest.mark.parametrize(
    "garbage",
    [b"", b"{not json", b"[]", b'{"transfers": {"UNION": {"count": -3}}}', b"\xff\xfe\x00"],
)
def test_corrupt_record_without_backup_resets_to_default(store: ProgressStore, garbage: bytes) -> None:
    store.data_dir.mkdir(parents=True, exist_ok=True)
    store.path_for(0).write_bytes(garbage)

    record = asyncio.run(store.read_progress_data(0))

    assert record.transfers["UNION"].count == 0
    assert record.addresses["UNION"] is None
    # the reset record was persisted
    ProgressRecord.model_validate_json(store.path_for(0).read_bytes())


def test_corrupt_record_is_restored_from_backup(store: ProgressStore) -> None:
    async def scenario():
        await store.update_transfer_count(0, "UNION")
        await store.update_transfer_count(0, "UNION")
        store.path_for(0).write_text('{"version": 1, "transf', encoding="utf-8")
        return await store.read_progress_data(0)

    record = asyncio.run(scenario())

    # the backup mirrors the last committed write, so no increment is lost
    assert record.transfers["UNION"].count == 2
    on_disk = ProgressRecord.model_validate_json(store.path_for(0).read_bytes())
    assert on_disk.transfers["UNION"].count == 2


def test_backup_matches_primary_after_every_write(store: ProgressStore) -> None:
    async def scenario():
        await store.update_transfer_count(0, "BABYLON", 3)
        first = store.backup_path_for(0).read_bytes()
        await store.update_daily_interaction(0, "UNION", date(2024, 5, 2))
        return first

    first = asyncio.run(scenario())

    assert ProgressRecord.model_validate_json(first).transfers["BABYLON"].count == 3
    assert store.backup_path_for(0).read_bytes() == store.path_for(0).read_bytes()
    assert not store.path_for(0).with_name("progress-0.json.tmp").exists()


def test_failed_backup_refresh_keeps_the_committed_record(
    store: ProgressStore, monkeypatch: pytest.MonkeyPatch, caplog: pytest.LogCaptureFixture
) -> None:
    asyncio.run(store.update_transfer_count(0, "UNION"))
    real_replace = os.replace

    def fail_for_backup(src, dst):
        if str(dst).endswith(".bak"):
            raise OSError("disk full")
        real_replace(src, dst)

    monkeypatch.setattr("questbot.progress_store.os.replace", fail_for_backup)
    monkeypatch.setattr(logging.getLogger("questbot"), "propagate", True)
    with caplog.at_level("WARNING", logger="questbot.progress_store"):
        record = asyncio.run(store.update_transfer_count(0, "UNION"))
    monkeypatch.undo()

    assert record.transfers["UNION"].count == 2
    assert ProgressRecord.model_validate_json(store.path_for(0).read_bytes()).transfers["UNION"].count == 2
    assert ProgressRecord.model_validate_json(store.backup_path_for(0).read_bytes()).transfers["UNION"].count == 1
    assert "backup progress-0.json.bak is stale" in caplog.text
    assert not store.backup_path_for(0).with_name("progress-0.json.bak.tmp").exists()


def test_crash_before_rename_leaves_previous_record(store: ProgressStore, monkeypatch: pytest.MonkeyPatch) -> None:
    asyncio.run(store.update_transfer_count(0, "BABYLON", 5))

    def crash(src, dst):
        raise OSError("simulated crash")

    monkeypatch.setattr("questbot.progress_store.os.replace", crash)
    with pytest.raises(ProgressStoreError):
        asyncio.run(store.update_transfer_count(0, "BABYLON"))
    monkeypatch.undo()

    raw = store.path_for(0).read_bytes()
    assert raw
    assert ProgressRecord.model_validate_json(raw).transfers["BABYLON"].count == 5
    assert asyncio.run(store.read_progress_data(0)).transfers["BABYLON"].count == 5


def test_unexpected_io_errors_are_raised(settings, tmp_path) -> None:
    blocker = tmp_path / "not-a-dir"
    blocker.write_text("x", encoding="utf-8")
    store = ProgressStore(blocker, settings.chain_names, settings.daily_chains, settings.transfer_chains, settings.cross_chain_names)

    with pytest.raises(ProgressStoreError):
        asyncio.run(store.read_progress_data(0))


def test_concurrent_increments_are_all_counted(store: ProgressStore) -> None:
    async def scenario():
        await asyncio.gather(*(store.update_transfer_count(0, "BABYLON") for _ in range(25)))
        return await store.read_progress_data(0)

    assert asyncio.run(scenario()).transfers["BABYLON"].count == 25


def test_lock_timeout_is_an_error_and_other_wallets_are_not_blocked(settings, tmp_path) -> None:
    store = ProgressStore(
        tmp_path / "data",
        settings.chain_names,
        settings.daily_chains,
        settings.transfer_chains,
        settings.cross_chain_names,
        lock_timeout=0.05,
    )

    async def scenario():
        async with store.locked(0):
            with pytest.raises(LockTimeoutError) as exc:
                await store.update_transfer_count(0, "UNION")
            other = await store.update_transfer_count(1, "UNION")
        return exc.value, other

    err, other = asyncio.run(scenario())
    assert err.wallet_index == 0
    assert "wallet 1" in str(err)
    assert other.transfers["UNION"].count == 1
    # the timed-out update never happened
    assert asyncio.run(store.read_progress_data(0)).transfers["UNION"].count == 0


def test_concurrent_updates_on_two_wallets(store: ProgressStore) -> None:
    async def scenario():
        await asyncio.gather(
            *(store.update_transfer_count(0, "UNION") for _ in range(10)),
            *(store.update_transfer_count(1, "UNION", 2) for _ in range(10)),
        )
        return await store.read_progress_data(0), await store.read_progress_data(1)

    a, b = asyncio.run(scenario())
    assert a.transfers["UNION"].count == 10
    assert b.transfers["UNION"].count == 20


def test_heal_keeps_unknown_entries_and_fills_missing(store: ProgressStore) -> None:
    store.data_dir.mkdir(parents=True, exist_ok=True)
    store.path_for(2).write_text(
        json.dumps({"version": 1, "transfers": {"OSMOSIS": {"count": 4}, "UNION": {"count": 9}}}),
        encoding="utf-8",
    )

    record = asyncio.run(store.read_progress_data(2))

    assert record.transfers["OSMOSIS"].count == 4
    assert record.transfers["UNION"].count == 9
    assert record.transfers["BABYLON"].count == 0
    assert set(record.cross_chain) == {"CHAIN_REACTION", "TRIPLE_THREAT", "SIX_CHAINS"}


def test_named_mutators(store: ProgressStore) -> None:
    async def scenario():
        await store.update_address(0, "STRIDE", "stride1abc")
        await store.update_daily_interaction(0, "BABYLON", date(2024, 1, 1))
        await store.update_daily_interaction(0, "BABYLON", date(2024, 1, 2))
        await store.update_cross_chain_quest(0, "TRIPLE_THREAT")
        return await store.read_progress_data(0)

    record = asyncio.run(scenario())
    assert record.addresses["STRIDE"] == "stride1abc"
    assert record.daily_interactions["BABYLON"].count == 2
    assert record.daily_interactions["BABYLON"].last_interaction == date(2024, 1, 2)
    assert record.cross_chain["TRIPLE_THREAT"].completed is True


def test_counts_cannot_go_down(store: ProgressStore) -> None:
    with pytest.raises(ValueError):
        asyncio.run(store.update_transfer_count(0, "UNION", -1))


def test_negative_wallet_index_is_rejected(store: ProgressStore) -> None:
    with pytest.raises(ValueError):
        asyncio.run(store.read_progress_data(-1))
