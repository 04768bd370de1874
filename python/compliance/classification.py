"""
Effective classification of a controlled substance on a given date.

A read-only projection over the substance record and its completed
reclassifications.
"""

import logging
import uuid
from dataclasses import dataclass
from datetime import date
from typing import Iterable, Optional

from database.models import (
    OpiumActList,
    PrecursorCategory,
    ReclassificationStatus,
    SubstanceReclassification,
)
from compliance.interfaces import ReclassificationStore, SubstanceLookup

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Classification:
    """Classification of a substance as of a date."""
    substance_code: str
    as_of: date
    opium_act_list: OpiumActList
    precursor_category: PrecursorCategory
    source_reclassification_id: Optional[uuid.UUID] = None

    def to_dict(self):
        return {
            "substance_code": self.substance_code,
            "as_of": self.as_of.isoformat(),
            "opium_act_list": self.opium_act_list.value,
            "precursor_category": self.precursor_category.value,
            "source_reclassification_id": (
                str(self.source_reclassification_id) if self.source_reclassification_id else None
            ),
        }


def select_effective_reclassification(
    reclassifications: Iterable[SubstanceReclassification],
    as_of: date
) -> Optional[SubstanceReclassification]:
    """
    Pick the reclassification in force on ``as_of``.

    Only Completed records effective on or before the date qualify. The most
    recent effective date wins; ties go to the most recently created record.
    """
    candidates = [
        r for r in reclassifications
        if r.status == ReclassificationStatus.COMPLETED and r.effective_date <= as_of
    ]
    if not candidates:
        return None
    return max(candidates, key=lambda r: (r.effective_date, r.created_at))


class ClassificationResolver:
    """Resolves the classification a substance had on a given date."""

    def __init__(self, substances: SubstanceLookup, reclassifications: ReclassificationStore):
        self._substances = substances
        self._reclassifications = reclassifications

    async def get_effective_classification(
        self,
        substance_code: str,
        as_of: date
    ) -> Optional[Classification]:
        """
        Get the effective classification of a substance.

        Args:
            substance_code: Substance to resolve
            as_of: Date the classification should be valid for

        Returns:
            Classification, or None if the substance does not exist
        """
        substance = await self._substances.get_by_substance_code(substance_code)
        if substance is None:
            return None

        effective = await self._reclassifications.get_effective_reclassification(substance_code, as_of)
        if effective is not None:
            return Classification(
                substance_code=substance_code,
                as_of=as_of,
                opium_act_list=effective.new_opium_act_list,
                precursor_category=effective.new_precursor_category,
                source_reclassification_id=effective.id,
            )

        # Dates before the first completed change see the classification it replaced
        history = await self._reclassifications.get_by_substance_code(substance_code)
        completed = [r for r in history if r.status == ReclassificationStatus.COMPLETED]
        if completed:
            first = min(completed, key=lambda r: (r.effective_date, r.created_at))
            if first.effective_date > as_of:
                logger.debug(
                    "Substance %s as of %s predates reclassification %s",
                    substance_code, as_of, first.id
                )
                return Classification(
                    substance_code=substance_code,
                    as_of=as_of,
                    opium_act_list=first.previous_opium_act_list,
                    precursor_category=first.previous_precursor_category,
                )

        return Classification(
            substance_code=substance_code,
            as_of=as_of,
            opium_act_list=substance.opium_act_list,
            precursor_category=substance.precursor_category,
        )
