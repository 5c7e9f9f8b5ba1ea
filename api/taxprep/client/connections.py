"""Live status-stream tasks, keyed by document id."""
import asyncio
import contextlib
import logging
from typing import Any, Coroutine

logger = logging.getLogger(__name__)


class ConnectionManager:
    def __init__(self) -> None:
        self._tasks: dict[str, asyncio.Task] = {}

    @property
    def active(self) -> list[str]:
        return [doc_id for doc_id, task in self._tasks.items() if not task.done()]

    def open(self, document_id: str, follower: Coroutine[Any, Any, Any]) -> asyncio.Task:
        """Start following a document, replacing any connection already open for it."""
        previous = self._tasks.pop(document_id, None)
        if previous is not None and not previous.done():
            previous.cancel()
        task = asyncio.create_task(follower, name=f"status-stream:{document_id}")
        self._tasks[document_id] = task
        task.add_done_callback(lambda t: self._forget(document_id, t))
        return task

    def _forget(self, document_id: str, task: asyncio.Task) -> None:
        if self._tasks.get(document_id) is task:
            del self._tasks[document_id]

    async def close(self, document_id: str) -> None:
        task = self._tasks.pop(document_id, None)
        if task is None or task.done():
            return
        task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await task
        logger.debug("Closed status stream for document %s", document_id)

    async def close_all(self) -> None:
        for document_id in list(self._tasks):
            await self.close(document_id)
