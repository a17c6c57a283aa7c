import asyncio
from typing import Any, Dict, Optional
from fulfillment.common.logging_setup import get_logger

logger = get_logger("fulfillment.workers")

SENTINEL = None  # queue sentinel


class BaseWorker():
    def __init__(self, workers_count: int = 2, max_queue_size: int = 1000, name: str = "worker"):
        self.queue: asyncio.Queue[Optional[Dict[str, Any]]] = asyncio.Queue(maxsize=max_queue_size)
        self.worker_loops: Dict[str, asyncio.Task] = {}
        self.workers_count: int = workers_count
        self.name = name
        self._processed = 0

    async def __call__(self):
        if not self.worker_loops:
            for i in range(self.workers_count):
                cur_worker_name = f"{self.name}:{i+1}"
                worker_loop = asyncio.create_task(self._worker_loop(cur_worker_name))
                logger.info("worker.started", extra={"worker": cur_worker_name})
                self.worker_loops[cur_worker_name] = worker_loop

    def enqueue(self, task: Dict[str, Any]) -> bool:
        try:
            self.queue.put_nowait(task)
        except asyncio.QueueFull:
            logger.error("worker.queue_full", extra={"worker": self.name, "event": task.get("event")})
            return False
        return True

    async def stop(self):
        """Send one sentinel per loop to ask the workers to exit."""
        for _ in range(self.workers_count):
            await self.queue.put(SENTINEL)

    async def shutdown(self, *, drain_first: bool = True, drain_timeout: float = 30.0, wait_timeout: float = 30.0):
        """
        Graceful stop: optionally wait for queue to drain, then send sentinels and await the loops.
        """
        if not self.worker_loops:
            return
        if drain_first:
            try:
                await asyncio.wait_for(self.queue.join(), timeout=drain_timeout)
                logger.debug("worker.drained", extra={"worker": self.name})
            except asyncio.TimeoutError:
                logger.warning("worker.drain_timeout", extra={"worker": self.name, "pending": self.queue.qsize()})

        await self.stop()

        for wname, loop_task in self.worker_loops.items():
            try:
                await asyncio.wait_for(loop_task, timeout=wait_timeout)
            except asyncio.TimeoutError:
                logger.warning("worker.cancelling", extra={"worker": wname})
                loop_task.cancel()
                try:
                    await loop_task
                except asyncio.CancelledError:
                    pass
        self.worker_loops = {}

    async def _worker_loop(self, cur_worker_name):
        """Internal loop. Calls `task_executor()` for each non-sentinel task."""
        while True:
            qitem = await self.queue.get()
            try:
                if qitem is SENTINEL:
                    logger.info("worker.sentinel_received", extra={"worker": cur_worker_name})
                    break
                try:
                    await self.task_executor(qitem, cur_worker_name)
                    self._processed += 1
                except Exception:
                    logger.exception("worker.task_failed", extra={"worker": cur_worker_name, "event": qitem.get("event")})
            finally:
                # always mark done for each get()
                self.queue.task_done()

    async def task_executor(self, task: Dict[str, Any], wname: str):
        raise NotImplementedError
