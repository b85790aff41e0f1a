"""
Progress relay — forwards stage labels to a channel's progress sink.

Emission is fire-and-forget: a sink that raises, or returns a coroutine that
later raises, is logged and otherwise ignored.
"""

from __future__ import annotations

import asyncio
import inspect
import logging

from models.schemas import ProgressSink, ProgressStage

log = logging.getLogger(__name__)


class ProgressRelay:
    def __init__(self, sink: ProgressSink | None, job_id: str = ""):
        self.sink = sink
        self.job_id = job_id
        self.emitted: list[str] = []
        self._pending: set[asyncio.Task] = set()

    def emit(self, stage: ProgressStage | str) -> None:
        label = stage.value if isinstance(stage, ProgressStage) else str(stage)
        self.emitted.append(label)
        log.info("Job %s progress: %s", self.job_id, label)
        if self.sink is None:
            return
        try:
            result = self.sink(label)
        except Exception as e:
            log.warning("Progress sink failed for %s: %s", label, type(e).__name__)
            return
        if inspect.isawaitable(result):
            task = asyncio.ensure_future(result)
            self._pending.add(task)
            task.add_done_callback(self._on_done)

    def _on_done(self, task: asyncio.Task) -> None:
        self._pending.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            log.warning("Progress sink failed: %s", type(exc).__name__)

    async def drain(self, timeout: float | None = None) -> None:
        """Give in-flight sink coroutines up to `timeout` to finish.

        Stragglers keep running; their failures are handled by _on_done.
        """
        if self._pending:
            _, late = await asyncio.wait(set(self._pending), timeout=timeout)
            if late:
                log.info("Job %s: %d progress updates still in flight", self.job_id, len(late))
