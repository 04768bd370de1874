"""
Licence coverage resolution.

Coverage of a substance for a holder needs two things on the as-of date:
an active licence/substance mapping and a valid licence. The licence's
permitted activities are compared with the activity the transaction needs;
a mismatch is reported separately so the validator can apply its policy.
"""

import logging
import uuid
from dataclasses import dataclass
from datetime import date
from enum import Enum as PyEnum
from typing import Dict, List, Optional

from database.models import (
    HolderKey,
    HolderType,
    Licence,
    LicenceStatus,
    PermittedActivity,
    Transaction,
    TransactionType,
)
from compliance.interfaces import LicenceLookup, LicenceTypeLookup, MappingLookup

logger = logging.getLogger(__name__)


_ACTIVITY_BY_TRANSACTION_TYPE = {
    TransactionType.ORDER: PermittedActivity.DISTRIBUTE,
    TransactionType.SHIPMENT: PermittedActivity.DISTRIBUTE,
    TransactionType.RETURN: PermittedActivity.POSSESS,
    TransactionType.TRANSFER: PermittedActivity.POSSESS | PermittedActivity.STORE,
}


def required_activity(transaction: Transaction) -> PermittedActivity:
    """Activity a licence must permit for this transaction."""
    activity = _ACTIVITY_BY_TRANSACTION_TYPE.get(transaction.transaction_type, PermittedActivity.POSSESS)
    if transaction.requires_import_permit():
        activity |= PermittedActivity.IMPORT
    if transaction.requires_export_permit():
        activity |= PermittedActivity.EXPORT
    return activity


class CoverageStatus(str, PyEnum):
    COVERED = "Covered"
    MISSING = "Missing"
    EXPIRED = "Expired"
    SUSPENDED = "Suspended"
    REVOKED = "Revoked"


# When no valid licence covers a substance, the reported licence is the one
# closest to usable
_INVALID_PREFERENCE = [CoverageStatus.EXPIRED, CoverageStatus.SUSPENDED, CoverageStatus.REVOKED]


@dataclass
class CoverageDecision:
    """Result of resolving coverage for one substance."""
    status: CoverageStatus
    licence: Optional[Licence] = None
    activity_mismatch: bool = False
    required: PermittedActivity = PermittedActivity.NONE
    permitted: PermittedActivity = PermittedActivity.NONE

    @property
    def is_covered(self) -> bool:
        return self.status == CoverageStatus.COVERED


def licence_status_on(licence: Licence, as_of: date) -> CoverageStatus:
    """Classify a licence as covering or as one of the invalid states."""
    if licence.status == LicenceStatus.REVOKED:
        return CoverageStatus.REVOKED
    if licence.status == LicenceStatus.SUSPENDED:
        return CoverageStatus.SUSPENDED
    if licence.status == LicenceStatus.EXPIRED or licence.is_expired(as_of):
        return CoverageStatus.EXPIRED
    return CoverageStatus.COVERED


def _sort_key(licence: Licence):
    # Open-ended licences first, then the latest expiry
    if licence.expiry_date is None:
        return (0, 0, licence.licence_number)
    return (1, -licence.expiry_date.toordinal(), licence.licence_number)


class LicenceCoverageResolver:
    """Finds licences authorizing a substance and decides whether they cover it."""

    def __init__(
        self,
        licences: LicenceLookup,
        licence_types: LicenceTypeLookup,
        mappings: MappingLookup
    ):
        self._licences = licences
        self._licence_types = licence_types
        self._mappings = mappings

    async def is_substance_authorized(self, licence_id: uuid.UUID, substance_code: str, as_of: date) -> bool:
        """
        Check whether a single licence authorizes a substance on a date.

        Args:
            licence_id: Licence to check
            substance_code: Substance code
            as_of: Date of the check

        Returns:
            True if the licence is valid and has an active mapping for the substance
        """
        licence = await self._licences.get_by_id(licence_id)
        if licence is None or not licence.is_valid(as_of):
            return False
        return await self._maps_substance(licence, substance_code, as_of)

    async def find_covering_licences(
        self,
        holder: HolderKey,
        substance_code: str,
        as_of: date,
        holder_type: HolderType = HolderType.CUSTOMER
    ) -> List[Licence]:
        """
        Valid licences of a holder with an active mapping for the substance.

        Ordered with open-ended licences first, then by latest expiry date.
        """
        licences = await self._licences.get_by_holder(holder, holder_type)
        covering = []
        for licence in licences:
            if licence.is_valid(as_of) and await self._maps_substance(licence, substance_code, as_of):
                covering.append(licence)
        return sorted(covering, key=_sort_key)

    async def resolve(
        self,
        holder: HolderKey,
        substance_code: str,
        as_of: date,
        required: PermittedActivity,
        holder_type: HolderType = HolderType.CUSTOMER
    ) -> CoverageDecision:
        """
        Decide coverage of a substance for a holder.

        A valid licence permitting the required activity wins. Failing that, a
        valid licence with insufficient activities is returned flagged as a
        mismatch. With no valid licence at all, the best invalid candidate is
        returned so the caller can report why it does not cover.
        """
        licences = await self._licences.get_by_holder(holder, holder_type)
        mapped = [
            licence for licence in licences
            if await self._maps_substance(licence, substance_code, as_of)
        ]
        mapped.sort(key=_sort_key)

        valid = [licence for licence in mapped if licence_status_on(licence, as_of) == CoverageStatus.COVERED]
        if valid:
            activities: Dict[uuid.UUID, PermittedActivity] = {}
            for licence in valid:
                activities[licence.id] = await self.permitted_activities(licence)
                if (activities[licence.id] & required) == required:
                    return CoverageDecision(
                        status=CoverageStatus.COVERED,
                        licence=licence,
                        required=required,
                        permitted=activities[licence.id],
                    )
            best = valid[0]
            logger.debug(
                "Licence %s covers %s but permits %r, %r required",
                best.licence_number, substance_code, activities[best.id], required
            )
            return CoverageDecision(
                status=CoverageStatus.COVERED,
                licence=best,
                activity_mismatch=True,
                required=required,
                permitted=activities[best.id],
            )

        for wanted in _INVALID_PREFERENCE:
            for licence in mapped:
                if licence_status_on(licence, as_of) == wanted:
                    return CoverageDecision(status=wanted, licence=licence, required=required)

        return CoverageDecision(status=CoverageStatus.MISSING, required=required)

    async def find_permit(
        self,
        holder: HolderKey,
        activity: PermittedActivity,
        as_of: date,
        holder_type: HolderType = HolderType.COMPANY
    ) -> Optional[Licence]:
        """
        Valid licence of a holder permitting an activity, regardless of substance.

        Used for the company's own import and export permits.
        """
        licences = await self._licences.get_by_holder(holder, holder_type)
        for licence in sorted(licences, key=_sort_key):
            if not licence.is_valid(as_of):
                continue
            if (await self.permitted_activities(licence) & activity) == activity:
                return licence
        return None

    async def _maps_substance(self, licence: Licence, substance_code: str, as_of: date) -> bool:
        mappings = await self._mappings.get_active_mappings_by_licence(licence.id, as_of)
        return any(m.substance_code == substance_code and m.is_active(as_of) for m in mappings)

    async def permitted_activities(self, licence: Licence) -> PermittedActivity:
        """Licence-level activities when recorded, otherwise the licence type's."""
        if licence.permitted_activities:
            return licence.activities
        licence_type = await self._licence_types.get_by_id(licence.licence_type_id)
        if licence_type is None:
            return PermittedActivity.NONE
        return licence_type.activities
