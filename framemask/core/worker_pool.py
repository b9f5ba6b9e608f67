"""
Fixed-size worker pool for CPU-bound frame masking.

A FIFO queue feeds ``size`` worker units. Each unit runs one task at a time
on a process (or thread) executor; results are routed back to the caller
through a task-id to future map, so completion order does not matter.
"""

import asyncio
import logging
import uuid
from concurrent.futures import Executor, ProcessPoolExecutor, ThreadPoolExecutor
from concurrent.futures.process import BrokenProcessPool
from typing import Callable, Optional

from framemask.config import MAX_MASK_WORKERS
from framemask.core.compositor import MaskTask, mask_frame_task
from framemask.core.models import FrameResult

logger = logging.getLogger(__name__)

_STOP = None


class MaskWorkerPool:
    """
    Pool of masking workers.

    Usage::

        async with MaskWorkerPool(size=4) as pool:
            result = await pool.submit(task)
    """

    def __init__(
        self,
        size: int = MAX_MASK_WORKERS,
        use_processes: bool = True,
        task_fn: Callable[[MaskTask], FrameResult] = mask_frame_task,
    ):
        """
        Args:
            size: Number of worker units.
            use_processes: Run tasks in worker processes for OS-level
                parallelism; threads otherwise.
            task_fn: Module-level callable executed per task.
        """
        if size < 1:
            raise ValueError("Worker pool size must be at least 1")
        self.size = size
        self.use_processes = use_processes
        self.task_fn = task_fn

        self._queue: Optional[asyncio.Queue] = None
        self._executor: Optional[Executor] = None
        self._workers: list[asyncio.Task] = []
        self._pending: dict[str, asyncio.Future] = {}

    @property
    def is_running(self) -> bool:
        return bool(self._workers)

    def _make_executor(self) -> Executor:
        if self.use_processes:
            return ProcessPoolExecutor(max_workers=self.size)
        return ThreadPoolExecutor(max_workers=self.size, thread_name_prefix="mask-worker")

    async def start(self) -> None:
        if self.is_running:
            return
        self._queue = asyncio.Queue()
        self._executor = self._make_executor()
        self._workers = [
            asyncio.create_task(self._worker(i), name=f"mask-worker-{i}")
            for i in range(self.size)
        ]
        kind = "process" if self.use_processes else "thread"
        logger.info(f"Started mask worker pool with {self.size} {kind} workers")

    async def submit(self, task: MaskTask) -> FrameResult:
        """
        Queue a task and wait for its result.

        A failing task resolves to a failed FrameResult for that frame only.
        """
        if not self.is_running:
            raise RuntimeError("Worker pool is not running")
        task_id = uuid.uuid4().hex
        future = asyncio.get_running_loop().create_future()
        self._pending[task_id] = future
        await self._queue.put((task_id, task))
        return await future

    async def _worker(self, worker_id: int) -> None:
        loop = asyncio.get_running_loop()
        while True:
            item = await self._queue.get()
            if item is _STOP:
                self._queue.task_done()
                break

            task_id, task = item
            future = self._pending.pop(task_id, None)
            executor = self._executor
            try:
                result = await loop.run_in_executor(executor, self.task_fn, task)
            except BrokenProcessPool as e:
                logger.error(f"Worker {worker_id}: process pool broken on frame {task.frame_number}: {e}")
                # Units sharing the broken executor replace it once
                if self._executor is executor:
                    executor.shutdown(wait=False)
                    self._executor = self._make_executor()
                    logger.info("Mask worker executor restarted")
                result = FrameResult.failed(task.frame_number, f"Worker crashed: {e}", task.tier)
            except Exception as e:
                logger.error(f"Worker {worker_id}: task for frame {task.frame_number} failed: {e}", exc_info=True)
                result = FrameResult.failed(task.frame_number, str(e), task.tier)
            finally:
                self._queue.task_done()

            if future is not None and not future.done():
                future.set_result(result)

    async def shutdown(self) -> None:
        """Stop accepting work, wait for every in-flight task, close the executor."""
        if not self.is_running:
            return
        for _ in self._workers:
            await self._queue.put(_STOP)
        await asyncio.gather(*self._workers, return_exceptions=True)
        self._workers = []

        for task_id, future in self._pending.items():
            if not future.done():
                future.cancel()
        self._pending.clear()

        executor, self._executor = self._executor, None
        if executor is not None:
            await asyncio.to_thread(executor.shutdown, True)
        logger.info("Mask worker pool shut down")

    async def __aenter__(self) -> "MaskWorkerPool":
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.shutdown()
