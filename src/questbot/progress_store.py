"""JSON-file-backed per-wallet progress store.

One document per wallet index (``progress-<i>.json``) plus a ``.bak`` mirror of the
last committed version. Both go through ``.tmp`` + fsync + ``os.replace`` so a reader
never sees a half-written record, and the primary is always committed first. Read-modify-write cycles for one wallet are
serialized by an in-process lock keyed by wallet index.
"""

import asyncio
import contextlib
import logging
import os
from collections.abc import Callable, Iterable
from contextlib import asynccontextmanager
from datetime import UTC, date, datetime
from pathlib import Path

from pydantic import BaseModel, ConfigDict, Field

import questbot.constants as C
from questbot.errors import LockTimeoutError, ProgressStoreError
from questbot.logging_config import wallet_tag

log = logging.getLogger("questbot.progress_store")


class DailyEntry(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    last_interaction: date | None = Field(default=None, alias="lastInteraction")
    count: int = Field(default=0, ge=0)


class TransferEntry(BaseModel):
    count: int = Field(default=0, ge=0)


class CrossChainEntry(BaseModel):
    completed: bool = False


class ProgressRecord(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="allow")

    version: int = C.PROGRESS_SCHEMA_VERSION
    last_updated: datetime | None = Field(default=None, alias="lastUpdated")
    addresses: dict[str, str | None] = Field(default_factory=dict)
    daily_interactions: dict[str, DailyEntry] = Field(default_factory=dict, alias="dailyInteractions")
    transfers: dict[str, TransferEntry] = Field(default_factory=dict)
    cross_chain: dict[str, CrossChainEntry] = Field(default_factory=dict, alias="crossChain")

    def same_state(self, other: "ProgressRecord") -> bool:
        """Equal in every field except ``lastUpdated``."""
        exclude = {"last_updated"}
        return self.model_dump(exclude=exclude) == other.model_dump(exclude=exclude)

    def to_json(self) -> str:
        return self.model_dump_json(by_alias=True, indent=2)


UpdateFn = Callable[[ProgressRecord], ProgressRecord]


class ProgressStore:
    def __init__(
        self,
        data_dir: str | Path,
        chains: Iterable[str],
        daily_chains: Iterable[str],
        transfer_chains: Iterable[str],
        quest_names: Iterable[str],
        lock_timeout: float = C.LOCK_TIMEOUT,
    ) -> None:
        self.data_dir = Path(data_dir)
        self.chains = list(chains)
        self.daily_chains = list(daily_chains)
        self.transfer_chains = list(transfer_chains)
        self.quest_names = list(quest_names)
        self.lock_timeout = lock_timeout
        self._locks: dict[int, asyncio.Lock] = {}

    @classmethod
    def from_settings(cls, settings) -> "ProgressStore":
        return cls(
            data_dir=settings.storage.data_dir,
            chains=settings.chain_names,
            daily_chains=settings.daily_chains,
            transfer_chains=settings.transfer_chains,
            quest_names=settings.cross_chain_names,
            lock_timeout=settings.storage.lock_timeout,
        )

    # ==============================
    # Paths & record shape
    # ==============================
    def path_for(self, wallet_index: int) -> Path:
        if not isinstance(wallet_index, int) or wallet_index < 0:
            raise ValueError(f"wallet index must be a non-negative int, got {wallet_index!r}")
        return self.data_dir / f"progress-{wallet_index}.json"

    def backup_path_for(self, wallet_index: int) -> Path:
        p = self.path_for(wallet_index)
        return p.with_name(p.name + ".bak")

    def default_record(self) -> ProgressRecord:
        return ProgressRecord(
            last_updated=datetime.now(UTC),
            addresses={c: None for c in self.chains},
            daily_interactions={c: DailyEntry() for c in self.daily_chains},
            transfers={c: TransferEntry() for c in self.transfer_chains},
            cross_chain={q: CrossChainEntry() for q in self.quest_names},
        )

    def heal(self, record: ProgressRecord) -> ProgressRecord:
        """Return a copy with an entry for every configured chain and quest. Existing values win."""
        healed = record.model_copy(deep=True)
        for c in self.chains:
            healed.addresses.setdefault(c, None)
        for c in self.daily_chains:
            healed.daily_interactions.setdefault(c, DailyEntry())
        for c in self.transfer_chains:
            healed.transfers.setdefault(c, TransferEntry())
        for q in self.quest_names:
            healed.cross_chain.setdefault(q, CrossChainEntry())
        if healed.version < 1:
            healed.version = C.PROGRESS_SCHEMA_VERSION
        return healed

    # ==============================
    # Locking
    # ==============================
    def _lock_for(self, wallet_index: int) -> asyncio.Lock:
        lock = self._locks.get(wallet_index)
        if lock is None:
            lock = self._locks[wallet_index] = asyncio.Lock()
        return lock

    @asynccontextmanager
    async def locked(self, wallet_index: int):
        self.path_for(wallet_index)  # validates the index before we create a lock for it
        lock = self._lock_for(wallet_index)
        try:
            await asyncio.wait_for(lock.acquire(), timeout=self.lock_timeout)
        except TimeoutError:
            log.error("%s progress lock wait exceeded %ss", wallet_tag(wallet_index), self.lock_timeout)
            raise LockTimeoutError(wallet_index, self.lock_timeout) from None
        try:
            yield
        finally:
            lock.release()

    # ==============================
    # Disk I/O (caller holds the wallet lock)
    # ==============================
    @staticmethod
    def _parse(raw: bytes) -> ProgressRecord:
        # pydantic's ValidationError is a ValueError, as is a bad utf-8 payload
        return ProgressRecord.model_validate_json(raw)

    def _recover_from_backup(self, wallet_index: int) -> ProgressRecord:
        tag = wallet_tag(wallet_index)
        bak = self.backup_path_for(wallet_index)
        try:
            record = self._parse(bak.read_bytes())
        except FileNotFoundError:
            log.warning("%s no backup progress record, resetting to defaults", tag)
            return self.default_record()
        except ValueError as e:
            log.warning("%s backup progress record is also corrupt (%s), resetting to defaults", tag, e)
            return self.default_record()
        except OSError as e:
            raise ProgressStoreError(f"Cannot read {bak}: {e}") from e
        log.warning("%s restored progress from backup %s (saved %s)", tag, bak.name, record.last_updated)
        return record

    def _load(self, wallet_index: int) -> ProgressRecord:
        tag = wallet_tag(wallet_index)
        path = self.path_for(wallet_index)
        try:
            record = self._parse(path.read_bytes())
        except FileNotFoundError:
            log.info("%s no progress record yet, creating %s", tag, path.name)
            return self._write(wallet_index, self.default_record())
        except ValueError as e:
            log.warning("%s progress record %s is corrupt: %s", tag, path.name, e)
            return self._write(wallet_index, self._recover_from_backup(wallet_index))
        except OSError as e:
            raise ProgressStoreError(f"Cannot read {path}: {e}") from e
        return self.heal(record)

    @staticmethod
    def _replace_file(path: Path, payload: str) -> None:
        """Write ``payload`` to a sibling ``.tmp``, fsync it, then rename it over ``path``."""
        tmp = path.with_name(path.name + ".tmp")
        try:
            with open(tmp, "w", encoding="utf-8") as f:
                f.write(payload)
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp, path)
        except OSError:
            with contextlib.suppress(OSError):
                tmp.unlink(missing_ok=True)
            raise

    def _write(self, wallet_index: int, record: ProgressRecord) -> ProgressRecord:
        tag = wallet_tag(wallet_index)
        record = self.heal(record)
        record.last_updated = datetime.now(UTC)
        path = self.path_for(wallet_index)
        payload = record.to_json()
        try:
            self.data_dir.mkdir(parents=True, exist_ok=True)
            self._replace_file(path, payload)
        except OSError as e:
            raise ProgressStoreError(f"Cannot write {path}: {e}") from e

        # The primary is committed; the backup mirrors it so a recovery loses no update
        bak = self.backup_path_for(wallet_index)
        try:
            self._replace_file(bak, payload)
        except OSError as e:
            log.warning("%s progress saved but backup %s is stale: %s", tag, bak.name, e)
        log.debug("%s progress saved", tag)
        return record

    # ==============================
    # Public API
    # ==============================
    async def read_progress_data(self, wallet_index: int) -> ProgressRecord:
        """Never fails for missing or corrupt storage; returns a fully healed record."""
        async with self.locked(wallet_index):
            return self._load(wallet_index)

    async def save_progress_data(self, wallet_index: int, record: ProgressRecord) -> ProgressRecord:
        async with self.locked(wallet_index):
            return self._write(wallet_index, record)

    async def update_progress_data(self, wallet_index: int, update_fn: UpdateFn) -> ProgressRecord:
        async with self.locked(wallet_index):
            current = self._load(wallet_index)
            updated = update_fn(current)
            if updated is None:
                raise ProgressStoreError("update function returned no record")
            return self._write(wallet_index, updated)

    async def update_address(self, wallet_index: int, chain: str, address: str | None) -> ProgressRecord:
        def set_address(r: ProgressRecord) -> ProgressRecord:
            r.addresses[chain] = address
            return r

        return await self.update_progress_data(wallet_index, set_address)

    async def update_daily_interaction(self, wallet_index: int, chain: str, day: date) -> ProgressRecord:
        if day is None:
            raise ValueError("daily interaction date is required")

        def record_interaction(r: ProgressRecord) -> ProgressRecord:
            entry = r.daily_interactions.setdefault(chain, DailyEntry())
            entry.last_interaction = day
            entry.count += 1
            return r

        return await self.update_progress_data(wallet_index, record_interaction)

    async def update_transfer_count(self, wallet_index: int, chain: str, increment: int = 1) -> ProgressRecord:
        if increment < 0:
            raise ValueError(f"transfer count increment must be >= 0, got {increment}")

        def bump(r: ProgressRecord) -> ProgressRecord:
            r.transfers.setdefault(chain, TransferEntry()).count += increment
            return r

        return await self.update_progress_data(wallet_index, bump)

    async def update_cross_chain_quest(self, wallet_index: int, quest: str, completed: bool = True) -> ProgressRecord:
        def mark(r: ProgressRecord) -> ProgressRecord:
            r.cross_chain.setdefault(quest, CrossChainEntry()).completed = completed
            return r

        return await self.update_progress_data(wallet_index, mark)
