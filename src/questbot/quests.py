"""Quest services.

Every service has the same three steps:

* ``plan_for_wallet``: read the progress store and config, return TaskDescriptors.
  No network calls and no writes, so calling it twice gives the same plan.
* ``run_for_wallet``: plan, hand the tasks to the WorkerPool, and write each success
  back to the progress store.
* ``run_for_all_wallets``: one ``run_for_wallet`` per wallet, wallets in chunks.

Tasks for a single wallet always run one at a time because each chain account
signs with a strictly increasing sequence number. Within a run that is the
``run_batch(tasks, 1)`` call; across concurrent runs it is the pool's per-wallet
run lock.
"""

import asyncio
import contextlib
import logging
from collections.abc import Iterable
from datetime import UTC, date, datetime
from itertools import pairwise

import questbot.constants as C
from questbot.config import Settings
from questbot.errors import PlanError, ProgressStoreError
from questbot.logging_config import wallet_tag
from questbot.models import RunSummary, TaskDescriptor, TaskResult, WalletReport
from questbot.progress_store import ProgressRecord, ProgressStore
from questbot.scheduler import WorkerPool, run_chunked

log = logging.getLogger("questbot.quests")


def today_utc() -> date:
    return datetime.now(UTC).date()


def transfer_task(wallet_index: int, label: str, source: str, destination: str, receiver: str, amount: str) -> TaskDescriptor:
    return TaskDescriptor.create(
        C.ExecutionKind.TRANSFER,
        wallet_index,
        label,
        source=source,
        destination=destination,
        receiver=receiver,
        amount=amount,
    )


class QuestService:
    name = "quest"

    def __init__(self, settings: Settings, store: ProgressStore, pool: WorkerPool) -> None:
        self.settings = settings
        self.store = store
        self.pool = pool

    async def plan_for_wallet(self, wallet_index: int, **options) -> list[TaskDescriptor]:
        raise NotImplementedError

    async def _run(self, wallet_index: int, **options) -> WalletReport:
        raise NotImplementedError

    async def run_for_wallet(self, wallet_index: int, **options) -> WalletReport:
        """Run under the wallet's run lock; a second run for the same wallet waits its turn."""
        lock = self.pool.wallet_lock(wallet_index)
        if lock.locked():
            log.info("%s %s waiting for the wallet's current run to finish", wallet_tag(wallet_index), self.name)
        async with lock:
            return await self.run_locked(wallet_index, **options)

    async def run_locked(self, wallet_index: int, **options) -> WalletReport:
        """For callers already holding the wallet's run lock.

        Plan failures (missing address, no source chain, lock timeout) end up in ``report.error``.
        """
        try:
            return await self._run(wallet_index, **options)
        except (PlanError, ProgressStoreError) as e:
            log.error("%s %s: %s", wallet_tag(wallet_index), self.name, e)
            return WalletReport(wallet_index, error=str(e))

    async def run_for_all_wallets(
        self,
        wallet_indexes: Iterable[int],
        max_concurrent_wallets: int | None = None,
        **options,
    ) -> RunSummary:
        indexes = list(wallet_indexes)
        limit = max_concurrent_wallets or self.settings.scheduler.max_concurrent
        log.info("%s: %d wallet(s), %d at a time", self.name, len(indexes), limit)

        outcomes = await run_chunked(
            indexes,
            limit,
            lambda w: self.run_for_wallet(w, **options),
            cooldown=self.settings.scheduler.cooldown,
        )
        reports = [
            WalletReport(w, error=f"{type(out).__name__}: {out}") if isinstance(out, Exception) else out
            for w, out in zip(indexes, outcomes)
        ]
        summary = RunSummary(self.name, reports)
        log.info(summary.describe())
        return summary


# ==============================
# Daily check-ins
# ==============================
class DailyInteractionService(QuestService):
    name = "daily"

    def due_chains(self, record: ProgressRecord, today: date) -> list[str]:
        due = []
        for chain in self.settings.daily_chains:
            entry = record.daily_interactions.get(chain)
            if entry is None or entry.last_interaction != today:
                due.append(chain)
        return due

    async def plan_for_wallet(self, wallet_index: int, today: date | None = None) -> list[TaskDescriptor]:
        today = today or today_utc()
        record = await self.store.read_progress_data(wallet_index)
        tasks = []
        for chain in self.due_chains(record, today):
            address = record.addresses.get(chain)
            if not address:
                log.warning("%s skipping daily %s: no derived address", wallet_tag(wallet_index), chain)
                continue
            tasks.append(transfer_task(wallet_index, f"daily-{chain}", chain, chain, address, C.DAILY_TRANSFER_AMOUNT))
        return tasks

    async def _run(self, wallet_index: int, today: date | None = None) -> WalletReport:
        today = today or today_utc()
        report = WalletReport(wallet_index)
        tasks = await self.plan_for_wallet(wallet_index, today=today)
        if not tasks:
            report.notes.append("no daily interactions due")
            return report

        async def record_interaction(task: TaskDescriptor, result: TaskResult):
            if result.success:
                await self.store.update_daily_interaction(wallet_index, task.parameters["destination"], today)

        report.results = await self.pool.run_batch(tasks, 1, on_result=record_interaction)
        return report


# ==============================
# Transfer-count milestones
# ==============================
class TransferQuestService(QuestService):
    name = "transfer"

    def determine_transfers_needed(self, chain: str, current_count: int) -> int:
        """Transfers left to reach the next unreached milestone, 0 once they are all reached."""
        for milestone in self.settings.quests.transfer.get(chain, []):
            if current_count < milestone.count:
                return milestone.count - current_count
        return 0

    def suitable_source_chain(self, destination: str, record: ProgressRecord) -> str:
        available = [c for c in self.settings.chain_names if c != destination and record.addresses.get(c)]
        if not available:
            raise PlanError(f"No suitable source chain found for transfers to {destination}")
        prefs = self.settings.source_preference
        for chain in (*prefs.overrides.get(destination, []), *prefs.default):
            if chain in available:
                return chain
        return available[0]

    async def plan_for_wallet(self, wallet_index: int, **options) -> list[TaskDescriptor]:
        tasks, _ = await self.plan_destinations(wallet_index, **options)
        return tasks

    async def plan_destinations(
        self,
        wallet_index: int,
        *,
        chain: str | None = None,
        count: int | None = None,
        complete_next: bool = False,
        amount: str | None = None,
    ) -> tuple[list[TaskDescriptor], list[str]]:
        """Tasks for every destination that can be planned, plus the reason for each one that can't.

        Raises PlanError only when some destination failed and nothing at all was planned.
        """
        if chain is not None and chain not in self.settings.chains:
            raise PlanError(f"Unknown chain: {chain}")
        if count is not None and count < 0:
            raise PlanError(f"Transfer count must be >= 0, got {count}")
        amount = amount or self.settings.quests.default_transfer_amount
        record = await self.store.read_progress_data(wallet_index)
        tag = wallet_tag(wallet_index)

        tasks = []
        problems = []
        for dest in [chain] if chain else self.settings.transfer_chains:
            if count is not None:
                needed = count
            elif complete_next:
                entry = record.transfers.get(dest)
                needed = self.determine_transfers_needed(dest, entry.count if entry else 0)
            else:
                needed = 1
            if needed <= 0:
                log.info("%s no transfers needed to %s", tag, dest)
                continue

            receiver = record.addresses.get(dest)
            try:
                if not receiver:
                    raise PlanError(f"Missing address for {dest}")
                source = self.suitable_source_chain(dest, record)
            except PlanError as e:
                log.warning("%s skipping transfers to %s: %s", tag, dest, e)
                problems.append(str(e))
                continue
            log.info("%s planning %d transfer(s) %s -> %s", tag, needed, source, dest)
            tasks.extend(transfer_task(wallet_index, f"transfer-{dest}", source, dest, receiver, amount) for _ in range(needed))

        if problems and not tasks:
            raise PlanError("; ".join(problems))
        return tasks, problems

    async def _run(self, wallet_index: int, **options) -> WalletReport:
        tasks, problems = await self.plan_destinations(wallet_index, **options)
        report = WalletReport(wallet_index, error="; ".join(problems) or None)
        if not tasks:
            report.notes.append("no transfers needed")
            return report

        async def count_transfer(task: TaskDescriptor, result: TaskResult):
            if result.success:
                await self.store.update_transfer_count(wallet_index, task.parameters["destination"])

        report.results = await self.pool.run_batch(
            tasks, 1, cooldown=self.settings.scheduler.transfer_delay, on_result=count_transfer
        )
        return report


# ==============================
# Multi-hop cross-chain quests
# ==============================
class CrossChainQuestService(QuestService):
    name = "cross-chain"

    async def plan_for_wallet(self, wallet_index: int, quest: str, amount: str | None = None) -> list[TaskDescriptor]:
        """One transfer per hop of the quest path; empty once the quest is completed."""
        q = self.settings.cross_chain_quest(quest)
        if q is None:
            raise PlanError(f"Unknown cross-chain quest: {quest}")
        record = await self.store.read_progress_data(wallet_index)
        entry = record.cross_chain.get(quest)
        if entry is not None and entry.completed:
            return []

        missing = [c for c in dict.fromkeys(q.path) if not record.addresses.get(c)]
        if missing:
            raise PlanError(f"{quest}: missing address for {', '.join(missing)}")
        amount = amount or self.settings.quests.default_transfer_amount
        return [
            transfer_task(wallet_index, f"{quest}-{step}", src, dst, record.addresses[dst], amount)
            for step, (src, dst) in enumerate(pairwise(q.path), start=1)
        ]

    async def execute_quest(self, wallet_index: int, quest: str, amount: str | None = None) -> WalletReport:
        tag = wallet_tag(wallet_index)
        report = WalletReport(wallet_index)
        steps = await self.plan_for_wallet(wallet_index, quest, amount)
        if not steps:
            log.info("%s %s already completed", tag, quest)
            report.notes.append(f"{quest} already completed")
            return report

        for i, step in enumerate(steps):
            if i:
                await asyncio.sleep(self.settings.scheduler.transfer_delay)
            hop = f"{step.parameters['source']} -> {step.parameters['destination']}"
            log.info("%s %s step %d/%d: %s", tag, quest, i + 1, len(steps), hop)
            result = await self.pool.run_single(step)
            report.results.append(result)
            if not result.success:
                report.skipped.extend(
                    f"{quest} step {j}: {s.parameters['source']} -> {s.parameters['destination']}"
                    for j, s in enumerate(steps[i + 1 :], start=i + 2)
                )
                report.notes.append(f"{quest} not completed: step {i + 1} ({hop}) failed")
                log.warning("%s %s stopped at step %d (%s): %s", tag, quest, i + 1, hop, result.error)
                return report

        await self.store.update_cross_chain_quest(wallet_index, quest, True)
        report.notes.append(f"{quest} completed")
        log.info("%s %s completed", tag, quest)
        return report

    async def _run(
        self,
        wallet_index: int,
        quest: str | None = None,
        all_quests: bool = False,
        amount: str | None = None,
    ) -> WalletReport:
        if quest is None and not all_quests:
            raise PlanError("Pick a cross-chain quest or run them all")
        names = self.settings.cross_chain_names if all_quests else [quest]
        report = WalletReport(wallet_index)
        for name in names:
            try:
                report.merge(await self.execute_quest(wallet_index, name, amount))
            except PlanError as e:
                # A broken quest doesn't stop the ones after it
                log.error("%s %s", wallet_tag(wallet_index), e)
                report.merge(WalletReport(wallet_index, error=str(e)))
        return report


# ==============================
# Faucet claims
# ==============================
class FaucetService(QuestService):
    name = "faucet"

    async def plan_for_wallet(
        self,
        wallet_index: int,
        chain: str,
        max_attempts: int = 1,
        api_key: str | None = None,
    ) -> list[TaskDescriptor]:
        site_key = self.settings.faucet.site_keys.get(chain)
        if not site_key:
            raise PlanError(f"Unsupported faucet: {chain}")
        if max_attempts < 0:
            raise PlanError(f"max_attempts must be >= 0, got {max_attempts}")
        api_key = api_key or self.settings.faucet.api_key
        if not api_key:
            raise PlanError("Capsolver API key is required for faucet claims")
        record = await self.store.read_progress_data(wallet_index)
        address = record.addresses.get(chain)
        if not address:
            raise PlanError(f"No {chain} address found")
        return [
            TaskDescriptor.create(
                C.ExecutionKind.FAUCET,
                wallet_index,
                f"faucet-{chain}",
                chain=chain,
                address=address,
                site_key=site_key,
                api_key=api_key,
                max_attempts=max_attempts,
            )
        ]

    async def _run(self, wallet_index: int, **options) -> WalletReport:
        tasks = await self.plan_for_wallet(wallet_index, **options)
        return WalletReport(wallet_index, results=await self.pool.run_batch(tasks, 1))

    async def run_for_all_wallets(
        self,
        wallet_indexes: Iterable[int],
        max_concurrent_wallets: int | None = None,
        **options,
    ) -> RunSummary:
        """One FAUCET task per wallet, all of them in a single batch.

        Every selected wallet's run lock is held from planning until the batch ends.
        """
        indexes = sorted(set(wallet_indexes))
        reports: dict[int, WalletReport] = {}
        tasks: list[TaskDescriptor] = []
        limit = max_concurrent_wallets or self.settings.scheduler.max_concurrent
        async with contextlib.AsyncExitStack() as held:
            # ascending index order, so two multi-wallet callers can't deadlock
            for w in indexes:
                await held.enter_async_context(self.pool.wallet_lock(w))
            for w in indexes:
                try:
                    tasks.extend(await self.plan_for_wallet(w, **options))
                    reports[w] = WalletReport(w)
                except (PlanError, ProgressStoreError) as e:
                    log.error("%s faucet: %s", wallet_tag(w), e)
                    reports[w] = WalletReport(w, error=str(e))

            log.info("faucet: %d task(s), %d at a time", len(tasks), limit)
            results = await self.pool.run_batch(tasks, limit)
        for task, result in zip(tasks, results):
            reports[task.wallet_index].results.append(result)

        summary = RunSummary(self.name, list(reports.values()))
        log.info(summary.describe())
        return summary


# ==============================
# Everything, in order
# ==============================
class FullAutomation(QuestService):
    """Daily, one transfer per quest chain, every cross-chain quest, then faucets if a CAPTCHA key is set."""

    name = "full"

    def __init__(
        self,
        settings: Settings,
        store: ProgressStore,
        pool: WorkerPool,
        daily: DailyInteractionService,
        transfer: TransferQuestService,
        cross_chain: CrossChainQuestService,
        faucet: FaucetService,
    ) -> None:
        super().__init__(settings, store, pool)
        self.daily = daily
        self.transfer = transfer
        self.cross_chain = cross_chain
        self.faucet = faucet

    async def _run(self, wallet_index: int, api_key: str | None = None) -> WalletReport:
        tag = wallet_tag(wallet_index)
        log.info("%s full automation: daily", tag)
        # run_for_wallet already holds this wallet's run lock for the whole sequence
        report = await self.daily.run_locked(wallet_index)
        log.info("%s full automation: transfers", tag)
        report.merge(await self.transfer.run_locked(wallet_index, count=1))
        log.info("%s full automation: cross-chain", tag)
        report.merge(await self.cross_chain.run_locked(wallet_index, all_quests=True))

        api_key = api_key or self.settings.faucet.api_key
        if not api_key:
            report.notes.append("faucet skipped: no CAPTCHA API key")
            return report
        for chain in self.settings.faucet.site_keys:
            log.info("%s full automation: %s faucet", tag, chain)
            report.merge(await self.faucet.run_locked(wallet_index, chain=chain, max_attempts=1, api_key=api_key))
        return report
