import asyncio
import logging
from typing import Any, Callable, Dict, List, Optional, Set

from app.core import config
from app.core.realtime import RealtimeFeed, Subscription

from .exceptions import (
    ConversationConflict,
    ConversationNotFound,
    NotAParticipant,
    SelfConversationError,
    StoreError,
)
from .channel import attach_listing
from .schemas import (
    Conversation,
    ConversationSelection,
    ConversationSummary,
    CounterpartProfile,
    OpenConversationResult,
)
from .store import ChatStore

logger = logging.getLogger(__name__)

RefreshListener = Callable[[str, List[ConversationSummary]], None]


def placeholder_profile(user_id: str) -> CounterpartProfile:
    return CounterpartProfile(
        id=user_id, full_name=config.UNKNOWN_USER_LABEL, is_placeholder=True
    )


class ConversationDirectory:
    """
    Inbox listing for an actor: every conversation they take part in,
    newest first, with counterpart, listing, last message and unread count.

    The last listing is cached only for actors with a live `watch`
    subscription and dropped when their last subscription closes.
    """

    def __init__(self, store: ChatStore, feed: Optional[RealtimeFeed] = None) -> None:
        self._store = store
        self._feed = feed
        self._watchers: Dict[str, int] = {}
        self._last: Dict[str, List[ConversationSummary]] = {}
        self._listeners: List[RefreshListener] = []
        self._refreshes: Dict[str, asyncio.Task] = {}
        self._dirty: Set[str] = set()

    def add_refresh_listener(self, listener: RefreshListener) -> None:
        self._listeners.append(listener)

    def remove_refresh_listener(self, listener: RefreshListener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    def is_watched(self, actor_id: str) -> bool:
        return actor_id in self._watchers

    def last_listing(self, actor_id: str) -> List[ConversationSummary]:
        return list(self._last.get(actor_id, []))

    async def list_conversations(self, actor_id: str) -> List[ConversationSummary]:
        conversations = await self._store.list_conversations_for(actor_id)
        summaries = await asyncio.gather(
            *[self._summarize(convo, actor_id) for convo in conversations]
        )
        summaries = sorted(
            summaries, key=lambda s: s.conversation.updated_at, reverse=True
        )

        if self.is_watched(actor_id):
            self._last[actor_id] = summaries
        for listener in list(self._listeners):
            try:
                listener(actor_id, summaries)
            except Exception:
                logger.exception("Directory refresh listener failed")
        return summaries

    async def refresh(self, actor_id: str) -> List[ConversationSummary]:
        return await self.list_conversations(actor_id)

    async def _summarize(self, convo: Conversation, actor_id: str) -> ConversationSummary:
        other_id = convo.counterpart_of(actor_id)

        try:
            profile = await self._store.get_profile(other_id)
        except StoreError as e:
            logger.warning(f"Profile lookup failed for {other_id}: {e}")
            profile = None

        listing = None
        if convo.listing_id:
            try:
                listing = await self._store.get_listing(convo.listing_id)
            except StoreError as e:
                logger.warning(f"Listing lookup failed for {convo.listing_id}: {e}")

        try:
            last_message = await self._store.latest_message(convo.id)
            if last_message is not None:
                last_message = await attach_listing(self._store, last_message)
        except StoreError as e:
            logger.warning(f"Last message lookup failed for {convo.id}: {e}")
            last_message = None

        try:
            unread = await self._store.count_unread(convo.id, actor_id)
        except StoreError as e:
            logger.warning(f"Unread count failed for {convo.id}: {e}")
            unread = 0

        return ConversationSummary(
            conversation=convo,
            other_user=profile or placeholder_profile(other_id),
            listing=listing,
            last_message=last_message,
            unread_count=unread,
        )

    async def open_or_create_conversation(
        self, actor_id: str, counterpart_id: str, listing_id: Optional[str] = None
    ) -> OpenConversationResult:
        """
        Return the conversation between two actors for a listing key,
        creating it on first use.

        The (sorted pair, listing) unique constraint decides concurrent
        creations; the loser re-reads the winner's row.
        """
        if str(actor_id) == str(counterpart_id):
            raise SelfConversationError("You can't start a conversation with yourself.")

        existing = await self._store.find_conversation(actor_id, counterpart_id, listing_id)
        if existing:
            return OpenConversationResult(conversation_id=existing.id, is_new=False)

        try:
            created = await self._store.insert_conversation(actor_id, counterpart_id, listing_id)
        except ConversationConflict:
            logger.info(f"Conversation race for {actor_id}/{counterpart_id}, re-fetching")
            existing = await self._store.find_conversation(actor_id, counterpart_id, listing_id)
            if existing is None:
                raise StoreError("Conversation conflict but no row found")
            return OpenConversationResult(conversation_id=existing.id, is_new=False)

        logger.info(f"Conversation {created.id} created by {actor_id}")
        try:
            await self.refresh(actor_id)
        except StoreError as e:
            logger.warning(f"Directory refresh after create failed: {e}")
        return OpenConversationResult(conversation_id=created.id, is_new=True)

    async def get_participating(self, conversation_id: str, actor_id: str) -> Conversation:
        convo = await self._store.get_conversation(conversation_id)
        if convo is None:
            raise ConversationNotFound(conversation_id)
        if not convo.has_participant(actor_id):
            raise NotAParticipant(conversation_id)
        return convo

    async def select_conversation(
        self,
        actor_id: str,
        conversation_id: Optional[str] = None,
        listing_id: Optional[str] = None,
    ) -> ConversationSelection:
        """
        Deep-link entry into the inbox, e.g. from a listing page.

        The listing, when given, is returned for pre-attaching to the
        next message; a missing listing is dropped.
        """
        attached = None
        if listing_id:
            try:
                attached = await self._store.get_listing(listing_id)
            except StoreError as e:
                logger.warning(f"Listing lookup failed for {listing_id}: {e}")

        if not conversation_id:
            return ConversationSelection(conversation=None, attached_listing=attached)

        await self.get_participating(conversation_id, actor_id)
        summaries = await self.refresh(actor_id)
        summary = next(
            (s for s in summaries if s.conversation.id == conversation_id), None
        )
        if summary is None:
            raise ConversationNotFound(conversation_id)
        return ConversationSelection(conversation=summary, attached_listing=attached)

    async def watch(self, actor_id: str) -> Subscription:
        """
        Refresh this actor's listing whenever any message row changes.

        Refreshed listings reach the refresh listeners; the cache for the
        actor lives until the returned subscription is closed.
        """
        if self._feed is None:
            raise RuntimeError("Directory has no realtime feed")

        async def on_change(record: Dict[str, Any], event_type: str) -> None:
            self._schedule_refresh(actor_id)

        subscription = await self._feed.subscribe(
            f"messages-global-{actor_id}", on_change, event="*", table="messages"
        )
        self._watchers[actor_id] = self._watchers.get(actor_id, 0) + 1
        subscription.add_close_callback(lambda: self._unwatch(actor_id))
        return subscription

    def _unwatch(self, actor_id: str) -> None:
        remaining = self._watchers.get(actor_id, 0) - 1
        if remaining > 0:
            self._watchers[actor_id] = remaining
            return

        self._watchers.pop(actor_id, None)
        self._last.pop(actor_id, None)
        self._dirty.discard(actor_id)
        task = self._refreshes.pop(actor_id, None)
        if task is not None and not task.done():
            task.cancel()
        logger.debug(f"Directory cache dropped for {actor_id}")

    def _schedule_refresh(self, actor_id: str) -> None:
        # Bursts of events collapse into one running refresh plus at most one rerun.
        if not self.is_watched(actor_id):
            return
        self._dirty.add(actor_id)
        running = self._refreshes.get(actor_id)
        if running is not None and not running.done():
            return
        task = asyncio.get_running_loop().create_task(self._safe_refresh(actor_id))
        self._refreshes[actor_id] = task
        task.add_done_callback(lambda t: self._forget_refresh(actor_id, t))

    def _forget_refresh(self, actor_id: str, task: asyncio.Task) -> None:
        if self._refreshes.get(actor_id) is task:
            del self._refreshes[actor_id]

    async def _safe_refresh(self, actor_id: str) -> None:
        while actor_id in self._dirty:
            self._dirty.discard(actor_id)
            try:
                await self.refresh(actor_id)
            except StoreError as e:
                logger.warning(f"Directory refresh for {actor_id} failed: {e}")

    async def wait_refreshed(self, actor_id: str) -> None:
        task = self._refreshes.get(actor_id)
        if task is not None:
            await task
