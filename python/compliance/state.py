"""
Transition tables for the enum-encoded lifecycles.

Status fields owned by a workflow are only ever changed through
``StateMachine.transition``; anything not listed in the table raises
IllegalStateTransition.
"""

import logging
from typing import Dict, FrozenSet, Mapping

from database.models import OverrideStatus, ReclassificationStatus
from compliance.exceptions import IllegalStateTransition

logger = logging.getLogger(__name__)


class StateMachine:
    """A closed set of allowed transitions over one status attribute."""

    def __init__(self, name: str, attribute: str, transitions: Mapping[object, FrozenSet[object]]):
        self.name = name
        self.attribute = attribute
        self._transitions: Dict[object, FrozenSet[object]] = dict(transitions)

    def can_transition(self, current, target) -> bool:
        return target in self._transitions.get(current, frozenset())

    def is_terminal(self, state) -> bool:
        return not self._transitions.get(state)

    def transition(self, entity, target) -> None:
        """
        Move ``entity`` to ``target``.

        Raises:
            IllegalStateTransition: If the table has no such edge
        """
        current = getattr(entity, self.attribute)
        if not self.can_transition(current, target):
            raise IllegalStateTransition(self.name, current, target)
        setattr(entity, self.attribute, target)
        logger.debug("%s: %s -> %s", self.name, current.value, target.value)


# Pending -> None withdraws a request when a revalidation no longer needs one.
OVERRIDE_STATES = StateMachine(
    "override",
    "override_status",
    {
        OverrideStatus.NONE: frozenset({OverrideStatus.PENDING}),
        OverrideStatus.PENDING: frozenset({
            OverrideStatus.APPROVED,
            OverrideStatus.REJECTED,
            OverrideStatus.NONE,
        }),
        OverrideStatus.APPROVED: frozenset(),
        OverrideStatus.REJECTED: frozenset(),
    },
)

# Processing -> Pending is the rollback path when processing fails midway.
RECLASSIFICATION_STATES = StateMachine(
    "reclassification",
    "status",
    {
        ReclassificationStatus.PENDING: frozenset({
            ReclassificationStatus.PROCESSING,
            ReclassificationStatus.CANCELLED,
        }),
        ReclassificationStatus.PROCESSING: frozenset({
            ReclassificationStatus.COMPLETED,
            ReclassificationStatus.PENDING,
        }),
        ReclassificationStatus.COMPLETED: frozenset(),
        ReclassificationStatus.CANCELLED: frozenset(),
    },
)
