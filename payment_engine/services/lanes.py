"""Per-account FIFO lanes: serial within an account, concurrent across accounts"""

import asyncio
import logging
from typing import Any, Awaitable, Callable, Dict, Tuple, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")

Job = Tuple[Callable[[], Awaitable[Any]], "asyncio.Future[Any]"]


class AccountLanes:
    """
    One worker task per account, spawned on first use and torn down after
    idle_seconds without work. Jobs for an account run one at a time in
    submission order, so every check inside a job sees the ledger as the
    previous job left it.
    """

    def __init__(self, idle_seconds: float = 30.0):
        self.idle_seconds = idle_seconds
        self._queues: Dict[str, "asyncio.Queue[Job]"] = {}
        self._workers: Dict[str, "asyncio.Task[None]"] = {}

    def __len__(self) -> int:
        return len(self._workers)

    def is_active(self, key: str) -> bool:
        return key in self._workers

    async def run(self, key: str, job: Callable[[], Awaitable[T]]) -> T:
        """Queue job on the account's lane and wait for its result"""
        loop = asyncio.get_running_loop()
        future: "asyncio.Future[T]" = loop.create_future()

        worker = self._workers.get(key)
        if worker is None or worker.done() or worker.get_loop() is not loop:
            queue: "asyncio.Queue[Job]" = asyncio.Queue()
            self._queues[key] = queue
            self._workers[key] = loop.create_task(self._worker(key, queue), name=f"lane:{key}")
        else:
            queue = self._queues[key]
        queue.put_nowait((job, future))

        return await asyncio.shield(future)

    async def _worker(self, key: str, queue: "asyncio.Queue[Job]") -> None:
        try:
            while True:
                try:
                    job, future = await asyncio.wait_for(queue.get(), timeout=self.idle_seconds)
                except asyncio.TimeoutError:
                    # No await between the emptiness check and removal, so no job can slip in
                    if queue.empty():
                        return
                    continue

                try:
                    result = await job()
                except asyncio.CancelledError:
                    future.cancel()
                    raise
                except Exception as e:
                    logger.error(f"Lane job failed: {e}", extra={"account_key": key})
                    if not future.done():
                        future.set_exception(e)
                else:
                    if not future.done():
                        future.set_result(result)
                finally:
                    queue.task_done()
        finally:
            if self._workers.get(key) is asyncio.current_task():
                del self._workers[key]
                del self._queues[key]

    async def close(self) -> None:
        """Cancel every lane worker; queued jobs are abandoned"""
        queues = list(self._queues.values())
        workers = list(self._workers.values())
        for worker in workers:
            worker.cancel()
        await asyncio.gather(*workers, return_exceptions=True)
        for queue in queues:
            while not queue.empty():
                _, future = queue.get_nowait()
                if not future.done():
                    future.cancel()
        self._queues.clear()
        self._workers.clear()
