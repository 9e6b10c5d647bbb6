"""Bounded-concurrency worker pool.

Each TaskDescriptor runs in its own asyncio Task (the execution unit), named by
its task id and guarded by a per-kind timeout. Whatever happens inside the unit
(return, raise, timeout, cancellation), ``run_single`` hands back exactly one
TaskResult. ``run_batch`` runs tasks in consecutive chunks: a whole chunk starts
together, and the next chunk starts only once every unit in the current one has
a result.
"""

import asyncio
import dataclasses
import logging
from collections.abc import Awaitable, Callable, Iterable, Mapping, Sequence
from typing import Any, TypeVar

import questbot.constants as C
from questbot.logging_config import wallet_tag
from questbot.models import ExecutionError, TaskDescriptor, TaskResult

log = logging.getLogger("questbot.scheduler")

Executor = Callable[[TaskDescriptor], Awaitable[dict | None]]
ResultCallback = Callable[[TaskDescriptor, TaskResult], Awaitable[Any]]

T = TypeVar("T")
R = TypeVar("R")


class WorkerPool:
    def __init__(
        self,
        executors: Mapping[C.ExecutionKind, Executor] | None = None,
        *,
        max_concurrent: int = C.DEFAULT_MAX_CONCURRENT,
        cooldown: float = C.BATCH_COOLDOWN,
        timeouts: Mapping[C.ExecutionKind, float] | None = None,
    ) -> None:
        if max_concurrent < 1:
            raise ValueError(f"max_concurrent must be >= 1, got {max_concurrent}")
        self.executors: dict[C.ExecutionKind, Executor] = dict(executors or {})
        self.max_concurrent = max_concurrent
        self.cooldown = cooldown
        self.timeouts: dict[C.ExecutionKind, float] = {**C.EXECUTION_TIMEOUTS, **(timeouts or {})}
        self._active: dict[str, asyncio.Task] = {}
        self._wallet_locks: dict[int, asyncio.Lock] = {}

    @classmethod
    def from_settings(cls, settings, executors: Mapping[C.ExecutionKind, Executor]) -> "WorkerPool":
        sc = settings.scheduler
        return cls(executors, max_concurrent=sc.max_concurrent, cooldown=sc.cooldown, timeouts=sc.timeouts)

    def register(self, kind: C.ExecutionKind, executor: Executor) -> None:
        self.executors[kind] = executor

    @property
    def active_count(self) -> int:
        return len(self._active)

    @property
    def active_task_ids(self) -> list[str]:
        return list(self._active)

    def timeout_for(self, kind: C.ExecutionKind) -> float | None:
        return self.timeouts.get(kind)

    def wallet_lock(self, wallet_index: int) -> asyncio.Lock:
        """Run lock for one wallet, shared by every caller of this pool.

        Quest runs hold it from planning to the last result, so units signing for
        the same account never overlap, even across concurrent API requests.
        """
        lock = self._wallet_locks.get(wallet_index)
        if lock is None:
            lock = self._wallet_locks[wallet_index] = asyncio.Lock()
        return lock

    async def run_single(self, task: TaskDescriptor) -> TaskResult:
        tag = wallet_tag(task.wallet_index)
        executor = self.executors.get(task.kind)
        if executor is None:
            msg = f"No execution unit registered for {task.kind}"
            log.error("%s %s: %s", tag, task.task_id, msg)
            return TaskResult.failed(task.task_id, msg)

        timeout = self.timeout_for(task.kind)
        unit = asyncio.create_task(self._invoke(executor, task), name=task.task_id)
        self._active[task.task_id] = unit
        log.debug("%s started %s", tag, task)
        try:
            payload = await asyncio.wait_for(unit, timeout=timeout)
        except ExecutionError as e:
            log.warning("%s %s failed: %s", tag, task.task_id, e)
            return TaskResult.failed(task.task_id, str(e), e.payload)
        except TimeoutError as e:
            # wait_for cancels the unit when our deadline fires; a TimeoutError raised by the unit itself leaves it done
            msg = f"timed out after {timeout}s" if unit.cancelled() else f"TimeoutError: {e}"
            log.warning("%s %s %s", tag, task.task_id, msg)
            return TaskResult.failed(task.task_id, msg)
        except asyncio.CancelledError:
            current = asyncio.current_task()
            if current is not None and current.cancelling():
                raise
            log.warning("%s %s execution unit was cancelled", tag, task.task_id)
            return TaskResult.failed(task.task_id, "execution unit was cancelled")
        except Exception as e:
            log.warning("%s %s crashed: %s: %s", tag, task.task_id, type(e).__name__, e)
            log.debug("traceback for %s", task.task_id, exc_info=True)
            return TaskResult.failed(task.task_id, f"{type(e).__name__}: {e}")
        finally:
            self._active.pop(task.task_id, None)

        log.debug("%s finished %s", tag, task.task_id)
        return TaskResult.ok(task.task_id, payload)

    @staticmethod
    async def _invoke(executor: Executor, task: TaskDescriptor):
        return await executor(task)

    async def _run_and_report(self, task: TaskDescriptor, on_result: ResultCallback | None) -> TaskResult:
        result = await self.run_single(task)
        if on_result is None:
            return result
        try:
            await on_result(task, result)
        except Exception as e:
            log.error("%s result handler for %s failed: %s", wallet_tag(task.wallet_index), task.task_id, e)
            note = f"result handler failed: {e}"
            result = dataclasses.replace(result, error=f"{result.error}; {note}" if result.error else note)
        return result

    async def run_batch(
        self,
        tasks: Iterable[TaskDescriptor],
        max_concurrent: int | None = None,
        *,
        cooldown: float | None = None,
        on_result: ResultCallback | None = None,
    ) -> list[TaskResult]:
        """Run ``tasks`` in chunks of ``max_concurrent``; results come back in input order.

        ``on_result`` is awaited as soon as each task's result exists, before the
        chunk finishes. Its failures are noted on that result, never raised.
        """
        tasks = list(tasks)
        limit = self.max_concurrent if max_concurrent is None else max_concurrent
        if limit < 1:
            raise ValueError(f"max_concurrent must be >= 1, got {limit}")
        pause = self.cooldown if cooldown is None else cooldown

        results: list[TaskResult] = []
        for start in range(0, len(tasks), limit):
            if start:
                await asyncio.sleep(pause)
            chunk = tasks[start : start + limit]
            log.debug("running chunk %d-%d of %d", start + 1, start + len(chunk), len(tasks))
            async with asyncio.TaskGroup() as tg:
                pending = [tg.create_task(self._run_and_report(t, on_result)) for t in chunk]
            results.extend(p.result() for p in pending)
        return results


async def run_chunked(
    items: Sequence[T],
    limit: int,
    fn: Callable[[T], Awaitable[R]],
    cooldown: float = 0.0,
) -> list[R | Exception]:
    """Same chunk discipline as ``WorkerPool.run_batch`` for arbitrary coroutines.

    An item whose coroutine raises gets its exception in the returned list instead
    of a value, and its chunk siblings keep running.
    """
    if limit < 1:
        raise ValueError(f"limit must be >= 1, got {limit}")

    async def guarded(item: T) -> R | Exception:
        try:
            return await fn(item)
        except Exception as e:
            log.error("unit of work for %r failed: %s", item, e)
            return e

    out: list[R | Exception] = []
    for start in range(0, len(items), limit):
        if start and cooldown:
            await asyncio.sleep(cooldown)
        async with asyncio.TaskGroup() as tg:
            pending = [tg.create_task(guarded(item)) for item in items[start : start + limit]]
        out.extend(p.result() for p in pending)
    return out
