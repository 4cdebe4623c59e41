"""
Mutation Service for missao-sync

One method per business operation. Arguments are checked here and a
ValidationError is raised before anything reaches the engine; the change
itself is a pure operation submitted through apply_local_mutation.
"""

import logging
import time
import uuid
from functools import partial
from typing import Any, Callable, Optional, Union

from ..core.errors import ValidationError
from ..core.reconciliation import ReconciliationEngine
from ..model import AdminMode, CommitmentKind, Document, ViewMode, operations

logger = logging.getLogger('missao_sync.services.mutation_service')

MIN_COMMITMENT_AMOUNT = 1
MAX_COMMITMENT_AMOUNT = 100

_STRING_FIELDS = {'name', 'region', 'full_name', 'address', 'pastors'}
_REQUIRED_STRING_FIELDS = {'name', 'region'}
_COUNTER_FIELDS = {'base_disciples', 'base_cells'}


def _epoch_ms() -> int:
    return int(time.time() * 1000)


def _random_suffix() -> str:
    return uuid.uuid4().hex[:8]


class MutationService:
    """
    Args:
        engine: Engine the operations are submitted to
        clock: Returns the current time in epoch milliseconds
        id_factory: Returns the random part of new entry ids
    """

    def __init__(
        self,
        engine: ReconciliationEngine,
        clock: Optional[Callable[[], int]] = None,
        id_factory: Optional[Callable[[], str]] = None
    ):
        self.engine = engine
        self.clock = clock or _epoch_ms
        self.id_factory = id_factory or _random_suffix

    # Commitments

    def add_commitment(self, kind: Union[CommitmentKind, str], location_id: int, amount: int, name: str) -> Document:
        """
        Record a commitment against a location.

        Raises:
            ValidationError: blank name, amount outside 1..100 or unknown location
        """
        kind = self._coerce_enum(CommitmentKind, kind, 'commitment kind')
        name = self._require_name(name, 'name')
        amount = self._require_int(amount, 'amount')
        if not MIN_COMMITMENT_AMOUNT <= amount <= MAX_COMMITMENT_AMOUNT:
            raise ValidationError(
                f"amount must be between {MIN_COMMITMENT_AMOUNT} and {MAX_COMMITMENT_AMOUNT}, got {amount}"
            )
        location_id = self._require_int(location_id, 'location_id')

        timestamp = self.clock()
        entry_id = f"{timestamp}-{self.id_factory()}"
        document = self.engine.apply_local_mutation(partial(
            operations.add_commitment,
            kind=kind,
            location_id=location_id,
            amount=amount,
            name=name,
            entry_id=entry_id,
            timestamp=timestamp,
        ))
        logger.info(f"Added {kind.value} commitment {entry_id}: {amount} at location {location_id}")
        return document

    def add_disciple_commitment(self, location_id: int, amount: int, name: str) -> Document:
        return self.add_commitment(CommitmentKind.DISCIPLES, location_id, amount, name)

    def add_cell_commitment(self, location_id: int, amount: int, name: str) -> Document:
        return self.add_commitment(CommitmentKind.CELLS, location_id, amount, name)

    def remove_commitment(self, kind: Union[CommitmentKind, str], entry_id: str) -> Document:
        kind = self._coerce_enum(CommitmentKind, kind, 'commitment kind')
        if not isinstance(entry_id, str) or not entry_id:
            raise ValidationError("entry_id must be a non-empty string")
        document = self.engine.apply_local_mutation(partial(operations.remove_commitment, kind=kind, entry_id=entry_id))
        logger.info(f"Removed {kind.value} commitment {entry_id}")
        return document

    def remove_disciple_commitment(self, entry_id: str) -> Document:
        return self.remove_commitment(CommitmentKind.DISCIPLES, entry_id)

    def remove_cell_commitment(self, entry_id: str) -> Document:
        return self.remove_commitment(CommitmentKind.CELLS, entry_id)

    # Locations

    def update_location(self, location_id: int, **changes: Any) -> Document:
        """
        Edit descriptive fields or baseline counters of a location.

        Raises:
            ValidationError: unknown field, blank name/region or negative counter
        """
        location_id = self._require_int(location_id, 'location_id')
        if not changes:
            return self.engine.get_current()

        cleaned = {}
        for field_name, value in changes.items():
            if field_name in _COUNTER_FIELDS:
                cleaned[field_name] = self._require_counter(value, field_name)
            elif field_name in _REQUIRED_STRING_FIELDS:
                cleaned[field_name] = self._require_name(value, field_name)
            elif field_name in _STRING_FIELDS:
                cleaned[field_name] = self._optional_text(value, field_name)
            else:
                raise ValidationError(f"cannot edit location field '{field_name}'")

        document = self.engine.apply_local_mutation(
            partial(operations.update_location, location_id=location_id, changes=cleaned)
        )
        logger.info(f"Updated location {location_id}: {', '.join(sorted(cleaned))}")
        return document

    def update_base_stats(
        self,
        location_id: int,
        base_disciples: Optional[int] = None,
        base_cells: Optional[int] = None
    ) -> Document:
        changes = {}
        if base_disciples is not None:
            changes['base_disciples'] = base_disciples
        if base_cells is not None:
            changes['base_cells'] = base_cells
        return self.update_location(location_id, **changes)

    def add_location(
        self,
        name: str,
        region: str,
        base_disciples: int = 0,
        base_cells: int = 0,
        full_name: Optional[str] = None,
        address: Optional[str] = None,
        pastors: Optional[str] = None
    ) -> Document:
        document = self.engine.apply_local_mutation(partial(
            operations.add_location,
            name=self._require_name(name, 'name'),
            region=self._require_name(region, 'region'),
            base_disciples=self._require_counter(base_disciples, 'base_disciples'),
            base_cells=self._require_counter(base_cells, 'base_cells'),
            full_name=self._optional_text(full_name, 'full_name'),
            address=self._optional_text(address, 'address'),
            pastors=self._optional_text(pastors, 'pastors'),
        ))
        logger.info(f"Added location {document.locations[-1].id} ({name.strip()})")
        return document

    def remove_location(self, location_id: int) -> Document:
        """Remove a location together with every commitment that references it"""
        location_id = self._require_int(location_id, 'location_id')
        document = self.engine.apply_local_mutation(partial(operations.remove_location, location_id=location_id))
        logger.info(f"Removed location {location_id}")
        return document

    # Modes and goals

    def set_view_mode(self, mode: Union[ViewMode, str]) -> Document:
        mode = self._coerce_enum(ViewMode, mode, 'view mode')
        return self.engine.apply_local_mutation(partial(operations.set_view_mode, mode=mode))

    def set_admin_mode(self, mode: Union[AdminMode, str]) -> Document:
        mode = self._coerce_enum(AdminMode, mode, 'admin mode')
        return self.engine.apply_local_mutation(partial(operations.set_admin_mode, mode=mode))

    def set_goal(self, kind: Union[CommitmentKind, str], goal: int) -> Document:
        kind = self._coerce_enum(CommitmentKind, kind, 'commitment kind')
        goal = self._require_int(goal, 'goal')
        if goal < 1:
            raise ValidationError(f"goal must be at least 1, got {goal}")
        document = self.engine.apply_local_mutation(partial(operations.set_goal, kind=kind, goal=goal))
        logger.info(f"Set {kind.value} goal to {goal}")
        return document

    def set_disciple_goal(self, goal: int) -> Document:
        return self.set_goal(CommitmentKind.DISCIPLES, goal)

    def set_cell_goal(self, goal: int) -> Document:
        return self.set_goal(CommitmentKind.CELLS, goal)

    def reset(self) -> Document:
        """Replace everything with the default document"""
        document = self.engine.apply_local_mutation(operations.reset)
        logger.warning("Document reset to defaults")
        return document

    # Argument checks

    def _require_name(self, value: Any, field_name: str) -> str:
        if not isinstance(value, str) or not value.strip():
            raise ValidationError(f"{field_name} must be a non-empty string")
        return value.strip()

    def _optional_text(self, value: Any, field_name: str) -> Optional[str]:
        if value is None:
            return None
        if not isinstance(value, str):
            raise ValidationError(f"{field_name} must be a string")
        return value.strip() or None

    def _require_int(self, value: Any, field_name: str) -> int:
        if isinstance(value, bool) or not isinstance(value, int):
            raise ValidationError(f"{field_name} must be an integer")
        return value

    def _require_counter(self, value: Any, field_name: str) -> int:
        value = self._require_int(value, field_name)
        if value < 0:
            raise ValidationError(f"{field_name} cannot be negative")
        return value

    def _coerce_enum(self, enum_type, value: Any, label: str):
        if isinstance(value, enum_type):
            return value
        try:
            return enum_type(value)
        except ValueError:
            allowed = ', '.join(member.value for member in enum_type)
            raise ValidationError(f"unknown {label} {value!r} (expected one of: {allowed})")
