from pydantic import BaseModel, field_validator
from typing import List, Optional
from datetime import datetime


TEMP_ID_PREFIX = "tmp-"


# Enrichment snapshots
class CounterpartProfile(BaseModel):
    id: str
    full_name: Optional[str] = None
    avatar_url: Optional[str] = None
    is_placeholder: bool = False


class ListingSnapshot(BaseModel):
    id: str
    name: str
    price: Optional[float] = None
    images: Optional[List[str]] = None


# Persisted rows
class Message(BaseModel):
    id: str
    conversation_id: str
    sender_id: str
    content: str
    read: bool = False
    listing_id: Optional[str] = None
    created_at: datetime
    listing: Optional[ListingSnapshot] = None

    @property
    def is_provisional(self) -> bool:
        return self.id.startswith(TEMP_ID_PREFIX)


class Conversation(BaseModel):
    id: str
    participant_1: str
    participant_2: str
    listing_id: Optional[str] = None
    created_at: datetime
    updated_at: datetime

    def has_participant(self, actor_id: str) -> bool:
        return actor_id in (self.participant_1, self.participant_2)

    def counterpart_of(self, actor_id: str) -> str:
        return self.participant_2 if self.participant_1 == actor_id else self.participant_1


class ConversationSummary(BaseModel):
    conversation: Conversation
    other_user: CounterpartProfile
    listing: Optional[ListingSnapshot] = None
    last_message: Optional[Message] = None
    unread_count: int = 0


# Open or create
class OpenConversationModel(BaseModel):
    counterpart_id: str
    listing_id: Optional[str] = None


class OpenConversationResult(BaseModel):
    conversation_id: str
    is_new: bool


# Send message
class SendMessageModel(BaseModel):
    conversation_id: str
    content: str
    listing_id: Optional[str] = None

    @field_validator("content")
    @classmethod
    def strip_content(cls, content: str) -> str:
        return content.strip()


class SendResult(BaseModel):
    ok: bool
    message: Optional[Message] = None
    error: Optional[str] = None


# Deep link selection
class ConversationSelection(BaseModel):
    conversation: Optional[ConversationSummary] = None
    attached_listing: Optional[ListingSnapshot] = None


# Responses
class GetConversationsResponseModel(BaseModel):
    conversations: List[ConversationSummary]
    unread_total: int


class GetMessagesResponseModel(BaseModel):
    messages: List[Message]


class UnreadTotalResponseModel(BaseModel):
    unread_total: int
