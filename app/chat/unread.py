from typing import List, Optional

from .directory import ConversationDirectory
from .schemas import ConversationSummary


def total_unread(summaries: List[ConversationSummary]) -> int:
    return sum(summary.unread_count or 0 for summary in summaries)


class UnreadAggregator:
    """Badge count: unread messages across all of an actor's conversations."""

    def __init__(self, directory: ConversationDirectory) -> None:
        self._directory = directory

    async def get_unread_total(self, actor_id: Optional[str]) -> int:
        if not actor_id:
            return 0
        return total_unread(await self._directory.list_conversations(actor_id))

    def cached_total(self, actor_id: Optional[str]) -> int:
        """
        Total from the directory's last listing, without touching the backend.

        Only watched actors have a cached listing; everyone else reads 0.
        """
        if not actor_id:
            return 0
        return total_unread(self._directory.last_listing(actor_id))
