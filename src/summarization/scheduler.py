# Copyright (c) 2025 Bytedance Ltd. and/or its affiliates
# SPDX-License-Identifier: MIT

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Optional, Sequence, Union

from src.config.configuration import SummarizationSettings
from src.server.session.store import SQLiteSessionStore

from .summarizer import Summarizer

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class SummaryTask:
    message_ids: tuple[str, ...]


class _Stop:
    """Queue sentinel telling one worker to exit."""


_STOP = _Stop()


class SummaryScheduler:
    """Fixed pool of workers summarising long messages in the background.

    Tasks go through one bounded queue. Turns register tasks with the
    non-blocking :meth:`register_summary_task`, which drops the task when the
    queue is full instead of holding up the turn. :meth:`stop` lets the
    workers drain everything queued before it was called, flush their pending
    batches and exit.
    """

    def __init__(
        self,
        store: SQLiteSessionStore,
        summarizer: Summarizer,
        *,
        settings: Optional[SummarizationSettings] = None,
    ) -> None:
        self._store = store
        self._summarizer = summarizer
        self._settings = settings or SummarizationSettings()
        self._queue: asyncio.Queue[Union[SummaryTask, _Stop]] = asyncio.Queue(maxsize=self._settings.queue_size)
        self._workers: list[asyncio.Task[None]] = []
        self._closed = False
        self.processed_tasks = 0
        self.dropped_tasks = 0

    @property
    def running(self) -> bool:
        return bool(self._workers) and not self._closed

    @property
    def queue_size(self) -> int:
        return self._queue.qsize()

    def start(self) -> None:
        if self._workers:
            raise RuntimeError("Summary scheduler already started")
        if self._closed:
            raise RuntimeError("Summary scheduler has been stopped")
        self._workers = [
            asyncio.create_task(self._run_worker(worker_id), name=f"summary-worker-{worker_id}")
            for worker_id in range(1, self._settings.workers + 1)
        ]
        logger.info("Started %d summary workers", len(self._workers))

    def register_summary_task(self, message_ids: Sequence[str]) -> bool:
        """Queue a task without waiting. Returns ``False`` if it was dropped."""
        task = SummaryTask(message_ids=tuple(message_ids))
        if self._closed:
            self.dropped_tasks += 1
            logger.warning("Summary scheduler stopped; dropping task for %s", task.message_ids)
            return False
        try:
            self._queue.put_nowait(task)
        except asyncio.QueueFull:
            self.dropped_tasks += 1
            logger.warning(
                "Summary queue full (%d tasks); dropping task for %s",
                self._queue.maxsize,
                task.message_ids,
            )
            return False
        return True

    async def submit(self, task: SummaryTask) -> None:
        """Queue a task, waiting for room when the queue is full."""
        if self._closed:
            raise RuntimeError("Summary scheduler has been stopped")
        await self._queue.put(task)

    async def join(self) -> None:
        """Wait until every queued task has been processed."""
        await self._queue.join()

    async def stop(self) -> None:
        if self._closed:
            return
        self._closed = True
        workers, self._workers = self._workers, []
        for _ in workers:
            await self._queue.put(_STOP)
        results = await asyncio.gather(*workers, return_exceptions=True)
        for worker, outcome in zip(workers, results):
            if isinstance(outcome, BaseException):
                logger.error("Summary worker %s ended with an error: %r", worker.get_name(), outcome)
        logger.info("Summary scheduler stopped after %d tasks", self.processed_tasks)

    async def _run_worker(self, worker_id: int) -> None:
        logger.info("Starting summary worker %d", worker_id)
        pending: list[tuple[str, str]] = []
        try:
            while True:
                task = await self._queue.get()
                try:
                    if isinstance(task, _Stop):
                        return
                    await self._process(task, pending)
                    self.processed_tasks += 1
                finally:
                    self._queue.task_done()
        finally:
            await self._flush(pending)
            logger.info("Summary worker %d exit", worker_id)

    async def _process(self, task: SummaryTask, pending: list[tuple[str, str]]) -> None:
        for message_id in task.message_ids:
            try:
                message = await self._store.get_message(message_id)
            except Exception as exc:  # noqa: BLE001 - one unreadable row must not stop the worker
                logger.error("Failed to get message %s: %s", message_id, exc)
                continue
            if message is None:
                logger.warning("Message %s not found; skipping summary", message_id)
                continue
            if message.summary:
                continue
            if len(message.content.encode("utf-8")) < self._settings.min_content_bytes:
                continue

            try:
                summary = await self._summarizer.summarize(message.role, message.content)
            except Exception as exc:  # noqa: BLE001 - summaries are best effort
                logger.error("Failed to summarize message %s: %s", message_id, exc)
                continue

            pending.append((message_id, summary))
            if len(pending) >= self._settings.batch_size:
                await self._flush(pending)

    async def _flush(self, pending: list[tuple[str, str]]) -> None:
        if not pending:
            return
        batch = list(pending)
        pending.clear()
        try:
            changed = await self._store.update_summaries(batch)
        except Exception:  # noqa: BLE001
            logger.exception("Failed to flush %d summaries", len(batch))
            return
        logger.debug("Flushed %d summaries (%d rows changed)", len(batch), changed)
