"""
Completion channel — the only path from the web flow to the bot.

Many producers (request handlers), one consumer (the background task).
Unbounded, so send() never blocks; events come out in send order.
"""
import asyncio
from typing import AsyncIterator

from discord_verify.logging_config import get_logger
from discord_verify.models.verification import VerificationCompletionEvent

logger = get_logger(__name__)


class ChannelClosed(Exception):
    """Raised by send() after close()."""


class CompletionChannel:
    def __init__(self) -> None:
        self._queue: asyncio.Queue[VerificationCompletionEvent | None] = asyncio.Queue()
        self._closed = False

    def send(self, event: VerificationCompletionEvent) -> None:
        if self._closed:
            raise ChannelClosed("completion channel is closed")
        self._queue.put_nowait(event)
        logger.debug(
            "completion_event_sent",
            discord_user_id=event.discord_user_id,
            guild_id=event.guild_id,
            backlog=self._queue.qsize(),
        )

    def close(self) -> None:
        """Stop accepting events; the reader drains what is queued, then stops."""
        if not self._closed:
            self._closed = True
            self._queue.put_nowait(None)

    @property
    def backlog(self) -> int:
        return self._queue.qsize()

    async def receive(self) -> VerificationCompletionEvent | None:
        """Next event, or None once closed and drained."""
        event = await self._queue.get()
        self._queue.task_done()
        return event

    async def __aiter__(self) -> AsyncIterator[VerificationCompletionEvent]:
        while True:
            event = await self.receive()
            if event is None:
                return
            yield event
