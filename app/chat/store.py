import logging
from datetime import datetime, timezone
from typing import List, Optional

from pydantic import ValidationError
from supabase import PostgrestAPIError

from .exceptions import ConversationConflict, StoreError
from .schemas import Conversation, CounterpartProfile, ListingSnapshot, Message

logger = logging.getLogger(__name__)

UNIQUE_VIOLATION = "23505"


def canonical_pair(actor_a: str, actor_b: str):
    """Participants are stored sorted so (A, B) and (B, A) share a row."""
    u1, u2 = sorted([str(actor_a), str(actor_b)])
    return u1, u2


async def _execute(query, action: str):
    try:
        return await query.execute()
    except PostgrestAPIError as e:
        if e.code == UNIQUE_VIOLATION:
            raise ConversationConflict(f"{action}: {e.message}", code=e.code)
        logger.error(f"supabase_error action={action} code={e.code} message={e.message}")
        raise StoreError(f"{action} failed: {e.message}", code=e.code)
    except Exception as e:
        logger.error(f"supabase_error action={action} error={e!r}")
        raise StoreError(f"{action} failed") from e


def _parse(model, row, action: str):
    """Build a model from a row; a row that does not fit is a store error."""
    try:
        return model(**row)
    except ValidationError as e:
        logger.error(f"supabase_error action={action} malformed row: {e.error_count()} errors")
        raise StoreError(f"{action} returned a malformed row") from e


class ChatStore:
    """
    Reads and writes conversations and messages through PostgREST.

    Every call either returns rows or raises `StoreError`; a unique
    violation raises `ConversationConflict`.
    """

    def __init__(self, client) -> None:
        self._client = client

    # Conversations
    async def find_conversation(
        self, actor_a: str, actor_b: str, listing_id: Optional[str] = None
    ) -> Optional[Conversation]:
        u1, u2 = canonical_pair(actor_a, actor_b)
        query = (
            self._client.table("conversations")
            .select("*")
            .eq("participant_1", u1)
            .eq("participant_2", u2)
        )
        if listing_id is None:
            query = query.is_("listing_id", "null")
        else:
            query = query.eq("listing_id", listing_id)

        res = await _execute(query.limit(1), "find_conversation")
        if not res.data:
            return None
        return _parse(Conversation, res.data[0], "find_conversation")

    async def insert_conversation(
        self, actor_a: str, actor_b: str, listing_id: Optional[str] = None
    ) -> Conversation:
        u1, u2 = canonical_pair(actor_a, actor_b)
        res = await _execute(
            self._client.table("conversations").insert(
                {
                    "participant_1": u1,
                    "participant_2": u2,
                    "listing_id": listing_id,
                }
            ),
            "insert_conversation",
        )
        return _parse(Conversation, res.data[0], "insert_conversation")

    async def get_conversation(self, conversation_id: str) -> Optional[Conversation]:
        res = await _execute(
            self._client.table("conversations")
            .select("*")
            .eq("id", conversation_id)
            .limit(1),
            "get_conversation",
        )
        if not res.data:
            return None
        return _parse(Conversation, res.data[0], "get_conversation")

    async def list_conversations_for(self, actor_id: str) -> List[Conversation]:
        res = await _execute(
            self._client.table("conversations")
            .select("*")
            .or_(f"participant_1.eq.{actor_id},participant_2.eq.{actor_id}")
            .order("updated_at", desc=True),
            "list_conversations",
        )
        return [_parse(Conversation, row, "list_conversations") for row in res.data or []]

    async def touch_conversation(self, conversation_id: str) -> None:
        await _execute(
            self._client.table("conversations")
            .update({"updated_at": datetime.now(timezone.utc).isoformat()})
            .eq("id", conversation_id),
            "touch_conversation",
        )

    # Messages
    async def list_messages(self, conversation_id: str) -> List[Message]:
        res = await _execute(
            self._client.table("messages")
            .select("*")
            .eq("conversation_id", conversation_id)
            .order("created_at", desc=False)
            .order("id", desc=False),
            "list_messages",
        )
        return [_parse(Message, row, "list_messages") for row in res.data or []]

    async def latest_message(self, conversation_id: str) -> Optional[Message]:
        res = await _execute(
            self._client.table("messages")
            .select("*")
            .eq("conversation_id", conversation_id)
            .order("created_at", desc=True)
            .order("id", desc=True)
            .limit(1),
            "latest_message",
        )
        if not res.data:
            return None
        return _parse(Message, res.data[0], "latest_message")

    async def count_unread(self, conversation_id: str, actor_id: str) -> int:
        res = await _execute(
            self._client.table("messages")
            .select("id", count="exact", head=True)
            .eq("conversation_id", conversation_id)
            .eq("read", False)
            .neq("sender_id", actor_id),
            "count_unread",
        )
        return res.count or 0

    async def insert_message(
        self,
        conversation_id: str,
        sender_id: str,
        content: str,
        listing_id: Optional[str] = None,
    ) -> Message:
        res = await _execute(
            self._client.table("messages").insert(
                {
                    "conversation_id": conversation_id,
                    "sender_id": sender_id,
                    "content": content,
                    "listing_id": listing_id,
                }
            ),
            "insert_message",
        )
        return _parse(Message, res.data[0], "insert_message")

    async def mark_conversation_read(self, conversation_id: str, actor_id: str) -> int:
        """Single batched update of every unread message the actor received."""
        res = await _execute(
            self._client.table("messages")
            .update({"read": True})
            .eq("conversation_id", conversation_id)
            .neq("sender_id", actor_id)
            .eq("read", False),
            "mark_conversation_read",
        )
        return len(res.data or [])

    async def mark_message_read(self, message_id: str, actor_id: str) -> None:
        await _execute(
            self._client.table("messages")
            .update({"read": True})
            .eq("id", message_id)
            .neq("sender_id", actor_id)
            .eq("read", False),
            "mark_message_read",
        )

    # External collaborators
    async def get_profile(self, user_id: str) -> Optional[CounterpartProfile]:
        res = await _execute(
            self._client.table("profiles")
            .select("user_id, full_name, avatar_url")
            .eq("user_id", user_id)
            .limit(1),
            "get_profile",
        )
        if not res.data:
            return None
        row = res.data[0]
        return _parse(
            CounterpartProfile,
            {
                "id": row.get("user_id"),
                "full_name": row.get("full_name"),
                "avatar_url": row.get("avatar_url"),
            },
            "get_profile",
        )

    async def get_listing(self, listing_id: str) -> Optional[ListingSnapshot]:
        res = await _execute(
            self._client.table("listings")
            .select("id, name, price, images")
            .eq("id", listing_id)
            .limit(1),
            "get_listing",
        )
        if not res.data:
            return None
        return _parse(ListingSnapshot, res.data[0], "get_listing")
