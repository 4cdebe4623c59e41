"""
Services for missao-sync

Key Components:
- MutationService: validated business operations submitted to the engine
- MilestoneTracker: progress celebration events
- SyncApplication: wiring and lifecycle of one execution context
"""

from .mutation_service import MutationService
from .milestone_service import MILESTONES, MilestoneTracker, crossed_milestone
from .sync_application import SyncApplication, create_application

__all__ = [
    'MutationService',
    'MILESTONES',
    'MilestoneTracker',
    'crossed_milestone',
    'SyncApplication',
    'create_application',
]
