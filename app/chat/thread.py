from typing import Iterator, List, Optional

from .schemas import Message


class MessageThread:
    """
    Ordered, id-keyed message sequence of one conversation.

    Both writers (local sends and realtime inserts) go through `upsert`,
    so a message id appears at most once.
    """

    def __init__(self, messages: Optional[List[Message]] = None) -> None:
        self._messages: List[Message] = []
        for message in messages or []:
            self.upsert(message)

    def __len__(self) -> int:
        return len(self._messages)

    def __iter__(self) -> Iterator[Message]:
        return iter(list(self._messages))

    def __contains__(self, message_id: str) -> bool:
        return self.index_of(message_id) is not None

    def snapshot(self) -> List[Message]:
        return list(self._messages)

    def index_of(self, message_id: str) -> Optional[int]:
        for i, message in enumerate(self._messages):
            if message.id == message_id:
                return i
        return None

    def get(self, message_id: str) -> Optional[Message]:
        i = self.index_of(message_id)
        return None if i is None else self._messages[i]

    def append(self, message: Message) -> None:
        if message.id in self:
            raise ValueError(f"message {message.id} already in thread")
        self._messages.append(message)

    def upsert(self, message: Message) -> bool:
        """Replace the entry with the same id in place, or append. True if appended."""
        i = self.index_of(message.id)
        if i is None:
            self._messages.append(message)
            return True
        self._messages[i] = _keep_read(self._messages[i], message)
        return False

    def replace(self, old_id: str, message: Message) -> bool:
        """Swap the entry `old_id` for `message` without moving it."""
        i = self.index_of(old_id)
        if i is None:
            return False
        existing = self.index_of(message.id)
        self._messages[i] = message
        if existing is not None and existing != i:
            # the echo beat the insert response; keep the provisional slot
            del self._messages[existing]
        return True

    def remove(self, message_id: str) -> Optional[Message]:
        i = self.index_of(message_id)
        if i is None:
            return None
        return self._messages.pop(i)

    def mark_read(self, message_id: str) -> None:
        i = self.index_of(message_id)
        if i is not None and not self._messages[i].read:
            self._messages[i] = self._messages[i].model_copy(update={"read": True})


def _keep_read(current: Message, incoming: Message) -> Message:
    # read only moves false -> true
    if current.read and not incoming.read:
        return incoming.model_copy(update={"read": True})
    return incoming
