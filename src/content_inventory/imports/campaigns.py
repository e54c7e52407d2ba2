"""
Campaign resolution for import rows.
"""

from __future__ import annotations

import logging
import uuid
from typing import Dict, List, Sequence

from ..db.repository import ContentRepository

logger = logging.getLogger(__name__)


class CampaignResolver:
    """
    Maps campaign names to ids, creating missing campaigns on first use.

    The cache lives for one import run, so a new campaign referenced by many
    rows is created once and reused for the rest of the batch.
    """

    def __init__(self, repository: ContentRepository) -> None:
        self._repository = repository
        self._ids: Dict[str, uuid.UUID] = {}

    async def resolve(self, names: Sequence[str]) -> List[uuid.UUID]:
        ids: List[uuid.UUID] = []
        for name in names:
            if name not in self._ids:
                self._ids[name] = await self._repository.get_or_create_campaign(name)
                logger.debug("Resolved campaign %r -> %s", name, self._ids[name])
            ids.append(self._ids[name])
        return ids

    def __len__(self) -> int:
        return len(self._ids)
