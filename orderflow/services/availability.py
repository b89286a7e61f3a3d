"""
Menu availability (the 86-list).

The list itself is maintained by the menu collaborator; the pipeline only
reads it, synchronously, while creating an order.
"""

from abc import ABC, abstractmethod
from typing import Iterable

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from orderflow.models import UnavailableItem


class AvailabilityProvider(ABC):
    @abstractmethod
    async def unavailable_item_ids(self) -> set[str]:
        """Ids of menu items that cannot be ordered right now."""
        pass


class DatabaseAvailability(AvailabilityProvider):
    """Reads the ``menu_86`` table."""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def unavailable_item_ids(self) -> set[str]:
        result = await self.db.execute(select(UnavailableItem.item_id))
        return {str(item_id) for item_id in result.scalars().all()}


class StaticAvailability(AvailabilityProvider):
    """Fixed 86-list, for channels that snapshot the menu."""

    def __init__(self, item_ids: Iterable[str] = ()):
        self._item_ids = {str(i) for i in item_ids}

    async def unavailable_item_ids(self) -> set[str]:
        return set(self._item_ids)
