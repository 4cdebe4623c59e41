"""
Milestone tracking

Watches disciple progress and announces the first time it climbs past
25, 50, 75 and 100 percent of the goal.
"""

import logging
from typing import Callable, Optional, Sequence

from ..core.event_bus import EventBus, MilestoneReachedEvent
from ..core.reconciliation import Origin, ReconciliationEngine
from ..model import Document

logger = logging.getLogger('missao_sync.services.milestone_service')

MILESTONES = (25, 50, 75, 100)


def crossed_milestone(
    previous_total: int,
    current_total: int,
    goal: int,
    last_milestone: int = 0,
    milestones: Sequence[int] = MILESTONES
) -> Optional[int]:
    """
    Return the lowest milestone crossed by going from ``previous_total`` to
    ``current_total``, or None.

    Only increases count, and a milestone at or below ``last_milestone``
    is never reported again.
    """
    if goal < 1 or current_total <= previous_total:
        return None

    previous_percent = previous_total / goal * 100
    current_percent = current_total / goal * 100
    for milestone in milestones:
        if previous_percent < milestone <= current_percent and last_milestone < milestone:
            return milestone
    return None


class MilestoneTracker:
    """Publishes MilestoneReachedEvent as documents flow through the engine"""

    def __init__(self, engine: ReconciliationEngine, event_bus: EventBus):
        self.engine = engine
        self.event_bus = event_bus
        self.last_milestone = 0
        self._previous_total: Optional[int] = None
        self._unsubscribe: Optional[Callable[[], None]] = None

    def start(self, baseline: Optional[Document] = None):
        """
        Begin watching the engine.

        ``baseline`` is the document progress is measured from, normally
        the one bootstrap settled on. Only later increases are announced.
        """
        if baseline is not None:
            self._previous_total = baseline.total_disciple_commitments
            percent = baseline.disciple_progress_percent
            self.last_milestone = max((m for m in MILESTONES if m <= percent), default=0)
        if self._unsubscribe is None:
            self._unsubscribe = self.engine.subscribe(self.on_document)

    def stop(self):
        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None

    def on_document(self, document: Document, origin: Origin):
        total = document.total_disciple_commitments
        previous = self._previous_total
        self._previous_total = total
        if previous is None:
            return

        milestone = crossed_milestone(previous, total, document.disciple_goal, self.last_milestone)
        if milestone is None:
            return

        self.last_milestone = milestone
        logger.info(f"Milestone reached: {milestone}% ({total}/{document.disciple_goal}, via {origin.value})")
        self.event_bus.publish(MilestoneReachedEvent(milestone=milestone, total=total, goal=document.disciple_goal))
