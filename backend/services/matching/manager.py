"""
Owns the running DispatchLoop tasks of one event loop.

One task per ride request. Starting a request that is already being
dispatched returns the existing task. Hosted by the dispatch worker
(`realtime.dispatch_worker`), which starts and stops searches on request.
"""

import asyncio
import logging
from typing import Any, Awaitable, Callable, Dict, List, Optional

from .dispatch_loop import DispatchLoop
from .exceptions import DispatchInProgress
from .types import DispatchResult

logger = logging.getLogger(__name__)

OnResult = Callable[[DispatchResult], Awaitable[Any]]


class DispatchManager:

    def __init__(self, loop_factory: Callable[[], DispatchLoop], on_result: Optional[OnResult] = None):
        self._loop_factory = loop_factory
        self._on_result = on_result
        self._tasks: Dict[Any, asyncio.Task] = {}

    def start(self, request_id: Any, **kwargs) -> asyncio.Task:
        task = self._tasks.get(request_id)
        if task is not None and not task.done():
            logger.debug("Ride %s is already being dispatched", request_id)
            return task

        task = asyncio.ensure_future(self._run(request_id, **kwargs))
        task.set_name(f"dispatch-{request_id}")
        self._tasks[request_id] = task
        task.add_done_callback(lambda t, rid=request_id: self._task_done(rid, t))
        logger.info("Started dispatch for ride %s", request_id)
        return task

    async def _run(self, request_id: Any, **kwargs) -> DispatchResult:
        result = await self._loop_factory().run(request_id, **kwargs)
        if self._on_result is not None:
            try:
                await self._on_result(result)
            except Exception:
                logger.exception("Reporting the dispatch result of ride %s failed", request_id)
        return result

    def _task_done(self, request_id: Any, task: asyncio.Task):
        if self._tasks.get(request_id) is task:
            del self._tasks[request_id]
        if task.cancelled():
            logger.info("Dispatch for ride %s was cancelled", request_id)
            return
        exc = task.exception()
        if isinstance(exc, DispatchInProgress):
            logger.info("Ride %s is dispatched elsewhere; dropping this run", request_id)
            return
        if exc is not None:
            logger.error("Dispatch for ride %s crashed", request_id, exc_info=exc)
            return
        result = task.result()
        logger.info("Dispatch for ride %s finished: %s", request_id, result.status.value)

    def cancel(self, request_id: Any) -> bool:
        """
        Stop dispatching a request. Returns False if no task was running.

        The lease is left to run out, after which the stalled-search sweep
        hands the request to a fresh run that resumes from saved progress.
        """
        task = self._tasks.get(request_id)
        if task is None or task.done():
            return False
        task.cancel()
        return True

    async def wait(self, request_id: Any) -> DispatchResult:
        task = self._tasks.get(request_id)
        if task is None:
            raise KeyError(f"No dispatch running for ride {request_id}")
        return await task

    def running(self) -> List[Any]:
        return [request_id for request_id, task in self._tasks.items() if not task.done()]

    async def shutdown(self):
        tasks = list(self._tasks.values())
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._tasks.clear()
