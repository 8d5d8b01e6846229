from typing import Optional

from app.core.realtime import RealtimeFeed

from .channel import ConversationChannel
from .directory import ConversationDirectory
from .store import ChatStore
from .unread import UnreadAggregator


class ChatService:
    """Wires the store, realtime feed, directory and unread aggregator together."""

    def __init__(self, client) -> None:
        self.store = ChatStore(client)
        self.feed = RealtimeFeed(client)
        self.directory = ConversationDirectory(self.store, self.feed)
        self.unread = UnreadAggregator(self.directory)

    def channel(self, conversation_id: str, actor_id: str, live: bool = True) -> ConversationChannel:
        """A channel for one conversation; `live=False` skips the realtime subscription."""
        feed: Optional[RealtimeFeed] = self.feed if live else None
        return ConversationChannel(self.store, feed, conversation_id, actor_id)
