import asyncio
import logging
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set

from app.core.config import REALTIME_SCHEMA

logger = logging.getLogger(__name__)

RecordHandler = Callable[[Dict[str, Any], str], Awaitable[None]]


def extract_record(payload: Dict[str, Any]) -> Optional[Dict[str, Any]]:
    """
    Pull the changed row out of a postgres_changes payload.

    The Python realtime client delivers `{"data": {"type", "record", ...}}`;
    the JS-style shape `{"eventType", "new"}` is accepted too.
    """
    data = payload.get("data", payload)
    record = data.get("record") or data.get("new")
    if not record:
        return None
    return dict(record)


def extract_event_type(payload: Dict[str, Any]) -> str:
    data = payload.get("data", payload)
    return str(data.get("type") or data.get("eventType") or "*").upper()


class Subscription:
    """
    Handle for one realtime channel.

    Release is guaranteed when used as `async with`; `close()` is
    idempotent and cancels handler tasks that are still pending.
    """

    def __init__(self, client, topic: str, handler: RecordHandler) -> None:
        self._client = client
        self.topic = topic
        self._handler = handler
        self._channel = None
        self._tasks: Set[asyncio.Task] = set()
        self._close_callbacks: List[Callable[[], None]] = []
        self.closed = False

    def add_close_callback(self, callback: Callable[[], None]) -> None:
        self._close_callbacks.append(callback)

    def _on_payload(self, payload: Dict[str, Any]) -> None:
        # Called synchronously by the realtime client; the handler runs as a task.
        if self.closed:
            return
        record = extract_record(payload)
        if record is None:
            logger.debug(f"[{self.topic}] payload without record ignored")
            return
        task = asyncio.get_running_loop().create_task(
            self._run_handler(record, extract_event_type(payload))
        )
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _run_handler(self, record: Dict[str, Any], event_type: str) -> None:
        try:
            await self._handler(record, event_type)
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.exception(f"[{self.topic}] realtime handler failed")

    async def drain(self) -> None:
        """Wait for handler tasks scheduled so far."""
        while True:
            pending = [task for task in self._tasks if not task.done()]
            if not pending:
                return
            await asyncio.gather(*pending, return_exceptions=True)

    async def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        for task in list(self._tasks):
            task.cancel()
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)
        if self._channel is not None:
            try:
                await self._client.remove_channel(self._channel)
            except Exception:
                logger.exception(f"[{self.topic}] failed to remove realtime channel")
            self._channel = None
        for callback in self._close_callbacks:
            try:
                callback()
            except Exception:
                logger.exception(f"[{self.topic}] close callback failed")
        self._close_callbacks.clear()
        logger.debug(f"[{self.topic}] unsubscribed")

    async def __aenter__(self) -> "Subscription":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()


class RealtimeFeed:
    """Subscribes to Postgres change events through Supabase Realtime."""

    def __init__(self, client, schema: str = REALTIME_SCHEMA) -> None:
        self._client = client
        self._schema = schema

    async def subscribe(
        self,
        topic: str,
        handler: RecordHandler,
        event: str = "*",
        table: str = "messages",
        filter: Optional[str] = None,
    ) -> Subscription:
        subscription = Subscription(self._client, topic, handler)
        channel = self._client.channel(topic)
        options = {"table": table, "schema": self._schema}
        if filter:
            options["filter"] = filter
        channel.on_postgres_changes(event, callback=subscription._on_payload, **options)
        await channel.subscribe()
        subscription._channel = channel
        logger.debug(f"[{topic}] subscribed to {event} on {table} ({filter or 'all rows'})")
        return subscription
