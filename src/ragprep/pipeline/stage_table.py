"""Table Consolidation Stage - Merge multi-page table fragments.

Fragments belong to the same logical table when they share a source file
and header signature and sit on adjacent pages (within a configurable page
gap). Each fragment joins at most one merged table; fragments without a
signature never merge.
"""

import logging
from collections import defaultdict
from typing import Optional

from ragprep.models import ContentQuality, TableAsset, worst_quality

logger = logging.getLogger(__name__)


def merge_tables(first: TableAsset, other: TableAsset) -> TableAsset:
    """Fold ``other`` into ``first``; identity fields come from ``first``."""
    confidences = [c for c in (first.confidence, other.confidence) if c is not None]
    return first.model_copy(
        update={
            "page_range": (
                min(first.start_page, other.start_page),
                max(first.end_page, other.end_page),
            ),
            "row_count": (first.row_count or 0) + (other.row_count or 0),
            "rows": [*first.rows, *other.rows],
            "quality": worst_quality([first.quality, other.quality]),
            "confidence": min(confidences) if confidences else None,
        }
    )


class TableConsolidator:
    """Merges table fragments sharing a header signature."""

    def __init__(self, page_gap: int = 0):
        """Initialize consolidator.

        Args:
            page_gap: Extra pages allowed between fragments (0 = adjacent only).
        """
        if page_gap < 0:
            raise ValueError("page_gap must be >= 0")
        self.page_gap = page_gap

    def is_continuation(self, current: TableAsset, candidate: TableAsset) -> bool:
        return candidate.start_page <= current.end_page + 1 + self.page_gap

    def consolidate(self, tables: list[TableAsset]) -> list[TableAsset]:
        """Return merged tables in the order their first fragment appeared."""
        groups: dict[tuple[str, str], list[tuple[int, TableAsset]]] = defaultdict(list)
        survivors: list[tuple[int, TableAsset]] = []

        for index, table in enumerate(tables):
            if table.header_signature is None:
                if table.quality == ContentQuality.OK:
                    table = table.model_copy(update={"quality": ContentQuality.LOW_CONFIDENCE})
                logger.debug("Table %s has no header signature; not merged", table.id)
                survivors.append((index, table))
                continue
            groups[(table.source_pdf, table.header_signature)].append((index, table))

        for members in groups.values():
            members.sort(key=lambda item: (item[1].start_page, item[0]))
            current: Optional[tuple[int, TableAsset]] = None
            for index, table in members:
                if current is not None and self.is_continuation(current[1], table):
                    logger.info(
                        "Merging table %s (pages %s) into %s",
                        table.id,
                        table.page_range,
                        current[1].id,
                    )
                    current = (current[0], merge_tables(current[1], table))
                    continue
                if current is not None:
                    survivors.append(current)
                current = (index, table)
            if current is not None:
                survivors.append(current)

        survivors.sort(key=lambda item: item[0])
        logger.info("Consolidated %d table fragment(s) into %d table(s)", len(tables), len(survivors))
        return [table for _, table in survivors]
