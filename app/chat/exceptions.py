class ChatError(Exception):
    """Base class for messaging failures."""


class StoreError(ChatError):
    """The backend rejected or failed a read/write."""

    def __init__(self, message: str, code: str | None = None):
        super().__init__(message)
        self.code = code


class ConversationConflict(StoreError):
    """A conversation for this pair and listing already exists."""


class ConversationNotFound(ChatError):
    pass


class NotAParticipant(ChatError):
    pass


class SelfConversationError(ChatError):
    pass


class ChannelClosed(ChatError):
    pass
