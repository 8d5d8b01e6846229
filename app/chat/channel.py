import asyncio
import logging
import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Set

from pydantic import ValidationError

from app.core.realtime import RealtimeFeed, Subscription

from .exceptions import ChannelClosed, StoreError
from .schemas import TEMP_ID_PREFIX, Message, SendResult
from .store import ChatStore
from .thread import MessageThread

logger = logging.getLogger(__name__)

EMPTY_MESSAGE_ERROR = "Message content cannot be empty."


class ChannelState(str, Enum):
    IDLE = "idle"
    LOADING = "loading"
    READY = "ready"
    SENDING = "sending"
    ERROR = "error"
    CLOSED = "closed"


class ChannelEvent(str, Enum):
    PROVISIONAL = "provisional"
    CONFIRMED = "confirmed"
    ROLLED_BACK = "rolled_back"
    RECEIVED = "received"


Listener = Callable[[ChannelEvent, Message], None]


async def attach_listing(store: ChatStore, message: Message) -> Message:
    """Add the listing snapshot to a message; a missing listing leaves it empty."""
    if not message.listing_id:
        return message
    try:
        listing = await store.get_listing(message.listing_id)
    except StoreError:
        logger.warning(f"Listing {message.listing_id} lookup failed for message {message.id}")
        listing = None
    return message.model_copy(update={"listing": listing})


class ConversationChannel:
    """
    Live view of one conversation for one actor.

    History is loaded once, sends are applied optimistically and reconciled,
    and realtime inserts are merged into the same thread. Use it as an
    async context manager so the realtime subscription is always released.
    """

    def __init__(
        self,
        store: ChatStore,
        feed: Optional[RealtimeFeed],
        conversation_id: str,
        actor_id: str,
    ) -> None:
        self._store = store
        self._feed = feed
        self.conversation_id = conversation_id
        self.actor_id = actor_id

        self.thread = MessageThread()
        self.state = ChannelState.IDLE
        self.error: Optional[Exception] = None

        self._subscription: Optional[Subscription] = None
        self._listeners: List[Listener] = []
        self._in_flight = 0
        self._background: Set[asyncio.Task] = set()

    @property
    def messages(self) -> List[Message]:
        return self.thread.snapshot()

    @property
    def closed(self) -> bool:
        return self.state == ChannelState.CLOSED

    def add_listener(self, listener: Listener) -> None:
        self._listeners.append(listener)

    def _emit(self, event: ChannelEvent, message: Message) -> None:
        for listener in list(self._listeners):
            try:
                listener(event, message)
            except Exception:
                logger.exception(f"[{self.conversation_id}] channel listener failed on {event.value}")

    # Lifecycle
    async def open(self) -> "ConversationChannel":
        """Load history and start listening. A failed load leaves the channel in ERROR."""
        if self.closed:
            raise ChannelClosed(self.conversation_id)
        try:
            await self.load_history()
        except StoreError:
            return self
        await self._subscribe()
        return self

    async def _subscribe(self) -> None:
        if self._feed is None or self._subscription is not None or self.closed:
            return
        self._subscription = await self._feed.subscribe(
            f"messages-{self.conversation_id}",
            self._on_insert,
            event="INSERT",
            table="messages",
            filter=f"conversation_id=eq.{self.conversation_id}",
        )

    async def close(self) -> None:
        if self.closed:
            return
        self.state = ChannelState.CLOSED
        self._listeners.clear()
        if self._subscription is not None:
            await self._subscription.close()
            self._subscription = None
        for task in list(self._background):
            task.cancel()
        if self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)
        logger.debug(f"[{self.conversation_id}] channel closed for {self.actor_id}")

    async def __aenter__(self) -> "ConversationChannel":
        try:
            return await self.open()
        except BaseException:
            await self.close()
            raise

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()

    # History
    async def load_history(self) -> List[Message]:
        if self.closed:
            raise ChannelClosed(self.conversation_id)
        self.state = ChannelState.LOADING
        self.error = None
        try:
            rows = await self._store.list_messages(self.conversation_id)
            rows = list(
                await asyncio.gather(*[attach_listing(self._store, row) for row in rows])
            )
        except StoreError as e:
            if not self.closed:
                self.state = ChannelState.ERROR
                self.error = e
            logger.error(f"[{self.conversation_id}] history load failed: {e}")
            raise

        if self.closed:
            return rows

        pending = [message for message in self.thread if message.is_provisional]
        self.thread = MessageThread(rows)
        for message in pending:
            self.thread.append(message)
        self.state = ChannelState.SENDING if self._in_flight else ChannelState.READY

        try:
            marked = await self._store.mark_conversation_read(self.conversation_id, self.actor_id)
        except StoreError as e:
            # the history is still usable; unread counts catch up on the next read
            logger.warning(f"[{self.conversation_id}] mark read failed: {e}")
        else:
            if marked:
                logger.debug(f"[{self.conversation_id}] marked {marked} messages read")
            for message in self.thread:
                if message.sender_id != self.actor_id:
                    self.thread.mark_read(message.id)
        return self.thread.snapshot()

    async def retry(self) -> List[Message]:
        messages = await self.load_history()
        await self._subscribe()
        return messages

    # Sending
    async def send_message(self, content: str, listing_id: Optional[str] = None) -> SendResult:
        content = (content or "").strip()
        if not content:
            return SendResult(ok=False, error=EMPTY_MESSAGE_ERROR)
        if self.closed:
            return SendResult(ok=False, error="Conversation is closed.")

        temp_id = f"{TEMP_ID_PREFIX}{uuid.uuid4()}"
        provisional = Message(
            id=temp_id,
            conversation_id=self.conversation_id,
            sender_id=self.actor_id,
            content=content,
            read=False,
            listing_id=listing_id,
            created_at=datetime.now(timezone.utc),
        )
        self.thread.append(provisional)
        self._in_flight += 1
        if self.state == ChannelState.READY:
            self.state = ChannelState.SENDING
        self._emit(ChannelEvent.PROVISIONAL, provisional)

        try:
            saved = await self._store.insert_message(
                self.conversation_id, self.actor_id, content, listing_id
            )
        except StoreError as e:
            logger.error(f"[{self.conversation_id}] send failed: {e}")
            if not self.closed:
                self.thread.remove(temp_id)
                self._finish_send()
                self._emit(ChannelEvent.ROLLED_BACK, provisional)
            return SendResult(ok=False, error=str(e))

        saved = await attach_listing(self._store, saved)
        if not self.closed:
            self.thread.replace(temp_id, saved)
            self._finish_send()
            self._emit(ChannelEvent.CONFIRMED, saved)

        try:
            await self._store.touch_conversation(self.conversation_id)
        except StoreError as e:
            logger.warning(f"[{self.conversation_id}] updated_at bump failed: {e}")

        return SendResult(ok=True, message=saved)

    def _finish_send(self) -> None:
        self._in_flight -= 1
        if self._in_flight == 0 and self.state == ChannelState.SENDING:
            self.state = ChannelState.READY

    # Realtime
    async def _on_insert(self, record: Dict[str, Any], event_type: str) -> None:
        if self.closed:
            return
        try:
            message = Message(**record)
        except ValidationError:
            logger.warning(f"[{self.conversation_id}] malformed realtime record ignored")
            return
        if message.conversation_id != self.conversation_id:
            return
        if message.id in self.thread:
            return

        message = await attach_listing(self._store, message)
        if self.closed or message.id in self.thread:
            return
        self.thread.upsert(message)

        if message.sender_id != self.actor_id:
            self.thread.mark_read(message.id)
            self._fire_and_forget(self._store.mark_message_read(message.id, self.actor_id))
        self._emit(ChannelEvent.RECEIVED, self.thread.get(message.id))

    def _fire_and_forget(self, coro) -> None:
        task = asyncio.get_running_loop().create_task(self._quietly(coro))
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    async def _quietly(self, coro) -> None:
        try:
            await coro
        except StoreError as e:
            logger.warning(f"[{self.conversation_id}] background mark read failed: {e}")

    async def wait_idle(self) -> None:
        """Wait for realtime handlers and background writes scheduled so far."""
        if self._subscription is not None:
            await self._subscription.drain()
        pending = [task for task in self._background if not task.done()]
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
