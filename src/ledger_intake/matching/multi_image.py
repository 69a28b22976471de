"""Multi-image receipt merging.

A long receipt photographed as several overlapping top-to-bottom shots
repeats some lines: the bottom of photo N shows up again at the top of
photo N+1. The cloud provider is asked for position-aware extraction and
usually removes those repeats itself; the overlap pass here is a safety
net that always runs afterwards.

Overlap rules for a pair of items:
- their image indices differ by exactly one
- the item from the earlier photo sits at the bottom, the other at the top
- descriptions are similar and amounts agree within 1% (relative)

The item with the higher confidence survives (ties keep the earlier one in
list order) and records the union of image indices it was seen on. An item
that has been dropped takes no part in later comparisons, so a line seen on
three photos collapses onto a single survivor.
"""

from __future__ import annotations

import logging
from collections.abc import Sequence
from dataclasses import dataclass
from typing import TYPE_CHECKING

from ledger_intake.matching.similarity import amounts_match_relative, is_similar_description
from ledger_intake.schemas.transactions import (
    ImagePosition,
    MultiImageExtractedTransaction,
    RawExtractedTransaction,
)

if TYPE_CHECKING:
    from ledger_intake.cloud.service import CloudExtractionService

logger = logging.getLogger(__name__)


@dataclass
class MergeOutcome:
    """Items left after the overlap pass and how many were folded away."""

    transactions: list[RawExtractedTransaction]
    items_merged: int


def is_overlap_pair(
    first: MultiImageExtractedTransaction, second: MultiImageExtractedTransaction
) -> bool:
    """True when two items sit in the overlap zone of adjacent photos."""
    if abs(first.image_index - second.image_index) != 1:
        return False
    earlier, later = (first, second) if first.image_index < second.image_index else (second, first)
    return (
        earlier.position_in_image == ImagePosition.BOTTOM
        and later.position_in_image == ImagePosition.TOP
    )


class MultiImageMerger:
    """Position-aware extraction plus the geometric overlap dedup pass."""

    def __init__(self, cloud: CloudExtractionService | None = None) -> None:
        self.cloud = cloud

    async def extract(self, images: Sequence[bytes]) -> list[MultiImageExtractedTransaction]:
        """Primary pass: ask the cloud provider for annotated items.

        A single photo goes through the plain image extraction call and is
        annotated as image 0 so the contract stays the same.
        """
        if self.cloud is None:
            raise RuntimeError("Multi-image extraction needs a cloud service")

        if len(images) == 1:
            items = await self.cloud.extract_transactions_from_image(images[0])
            return [
                MultiImageExtractedTransaction(
                    description=t.description,
                    amount=t.amount,
                    date=t.date,
                    currency=t.currency,
                    type=t.type,
                    confidence=t.confidence,
                    extraction_source=t.extraction_source,
                    image_index=0,
                    position_in_image=ImagePosition.MIDDLE,
                    merged_from_images=(0,),
                )
                for t in items
            ]

        return await self.cloud.extract_transactions_from_multiple_images(images)

    def deduplicate(self, items: Sequence[RawExtractedTransaction]) -> MergeOutcome:
        """Secondary pass over adjacent-photo overlap zones.

        Items without image annotations pass through untouched.
        """
        survivors: list[RawExtractedTransaction] = list(items)
        dropped: set[int] = set()
        merged = 0

        for i in range(len(survivors)):
            if i in dropped:
                continue
            for j in range(i + 1, len(survivors)):
                if j in dropped or i in dropped:
                    continue
                first = survivors[i]
                second = survivors[j]
                if not (
                    isinstance(first, MultiImageExtractedTransaction)
                    and isinstance(second, MultiImageExtractedTransaction)
                ):
                    continue
                if not is_overlap_pair(first, second):
                    continue
                if not is_similar_description(first.description, second.description):
                    continue
                if not amounts_match_relative(first.amount, second.amount):
                    continue

                if first.confidence >= second.confidence:
                    survivors[i] = first.merged_with(second)
                    dropped.add(j)
                else:
                    survivors[j] = second.merged_with(first)
                    dropped.add(i)
                merged += 1
                logger.debug(
                    "Merged overlapping item '%s' from images %d and %d",
                    first.description,
                    first.image_index,
                    second.image_index,
                )

        kept = [item for index, item in enumerate(survivors) if index not in dropped]
        if merged:
            logger.info("Overlap pass merged %d items across photos", merged)
        return MergeOutcome(transactions=kept, items_merged=merged)

    async def merge(self, images: Sequence[bytes]) -> MergeOutcome:
        """Both passes: annotated extraction followed by overlap dedup."""
        items = await self.extract(images)
        return self.deduplicate(items)
