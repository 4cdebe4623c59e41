"""
Document Model for missao-sync

The single replicated aggregate: locations, goals, presentation modes and
the two commitment logs. Every type here is immutable; transitions build a
new Document instead of patching the current one.
"""

import hashlib
import json
import logging
from dataclasses import dataclass, replace
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional, Tuple

from ..core.errors import MigrationError

logger = logging.getLogger('missao_sync.model.document')

CURRENT_SCHEMA_VERSION = 2
DEFAULT_DISCIPLE_GOAL = 80
DEFAULT_CELL_GOAL = 20
DEFAULT_REGION = "Other"

_MISSING = object()


class ViewMode(Enum):
    """Projector presentation mode"""
    REALITY = "reality"
    CONSTRUCTION = "construction"


class AdminMode(Enum):
    """Which commitment kind the admin form is recording"""
    DISCIPLES = "disciples"
    CELLS = "cells"


class CommitmentKind(Enum):
    """Commitment log selector"""
    DISCIPLES = "disciples"
    CELLS = "cells"

    @property
    def log_field(self) -> str:
        if self is CommitmentKind.DISCIPLES:
            return "disciple_commitments"
        return "cell_commitments"

    @property
    def goal_field(self) -> str:
        if self is CommitmentKind.DISCIPLES:
            return "disciple_goal"
        return "cell_goal"


@dataclass(frozen=True)
class Location:
    """
    A tracked site.

    ``base_disciples``/``base_cells`` are edited by hand; ``disciples`` and
    ``cells`` are a cache of baseline plus matching commitments and are
    rebuilt by Document.with_derived_totals() on every transition.
    """

    id: int
    name: str
    region: str = DEFAULT_REGION
    base_disciples: int = 0
    base_cells: int = 0
    disciples: int = 0
    cells: int = 0
    full_name: Optional[str] = None
    address: Optional[str] = None
    pastors: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            'id': self.id,
            'name': self.name,
            'region': self.region,
            'baseDisciples': self.base_disciples,
            'baseCells': self.base_cells,
            'disciples': self.disciples,
            'cells': self.cells,
        }
        for key, value in (('fullName', self.full_name),
                           ('address', self.address),
                           ('pastors', self.pastors)):
            if value is not None:
                data[key] = value
        return data


@dataclass(frozen=True)
class CommitmentEntry:
    """Immutable pledge record; removed explicitly or by location cascade"""

    id: str
    name: str
    amount: int
    location_id: int
    location_name: str
    timestamp: int

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'name': self.name,
            'amount': self.amount,
            'locationId': self.location_id,
            'locationName': self.location_name,
            'timestamp': self.timestamp,
        }


@dataclass(frozen=True)
class Document:
    """Current-schema document (schemaVersion 2)"""

    disciple_goal: int = DEFAULT_DISCIPLE_GOAL
    cell_goal: int = DEFAULT_CELL_GOAL
    view_mode: ViewMode = ViewMode.REALITY
    admin_mode: AdminMode = AdminMode.DISCIPLES
    locations: Tuple[Location, ...] = ()
    disciple_commitments: Tuple[CommitmentEntry, ...] = ()
    cell_commitments: Tuple[CommitmentEntry, ...] = ()
    schema_version: int = CURRENT_SCHEMA_VERSION

    # Lookups

    def find_location(self, location_id: int) -> Optional[Location]:
        for location in self.locations:
            if location.id == location_id:
                return location
        return None

    def location_ids(self) -> List[int]:
        return [location.id for location in self.locations]

    def next_location_id(self) -> int:
        return max(self.location_ids(), default=0) + 1

    def commitments_for(self, kind: CommitmentKind) -> Tuple[CommitmentEntry, ...]:
        return getattr(self, kind.log_field)

    def goal_for(self, kind: CommitmentKind) -> int:
        return getattr(self, kind.goal_field)

    def orphan_commitments(self) -> List[CommitmentEntry]:
        """Entries whose location no longer exists (tolerated, never fatal)"""
        known = set(self.location_ids())
        return [
            entry
            for entry in self.disciple_commitments + self.cell_commitments
            if entry.location_id not in known
        ]

    # Aggregates, always recomputed from the logs

    def commitment_total(self, kind: CommitmentKind) -> int:
        return sum(entry.amount for entry in self.commitments_for(kind))

    @property
    def total_disciple_commitments(self) -> int:
        return self.commitment_total(CommitmentKind.DISCIPLES)

    @property
    def total_cell_commitments(self) -> int:
        return self.commitment_total(CommitmentKind.CELLS)

    @property
    def total_disciples(self) -> int:
        return sum(location.disciples for location in self.locations)

    @property
    def total_cells(self) -> int:
        return sum(location.cells for location in self.locations)

    def progress_percent(self, kind: CommitmentKind) -> float:
        goal = self.goal_for(kind)
        if goal <= 0:
            return 0.0
        return min(self.commitment_total(kind) / goal * 100, 100.0)

    @property
    def disciple_progress_percent(self) -> float:
        return self.progress_percent(CommitmentKind.DISCIPLES)

    @property
    def cell_progress_percent(self) -> float:
        return self.progress_percent(CommitmentKind.CELLS)

    def with_derived_totals(self) -> 'Document':
        """Rebuild every location's cached totals from baseline + logs"""
        disciple_sums = _sum_by_location(self.disciple_commitments)
        cell_sums = _sum_by_location(self.cell_commitments)

        locations = tuple(
            replace(
                location,
                disciples=location.base_disciples + disciple_sums.get(location.id, 0),
                cells=location.base_cells + cell_sums.get(location.id, 0),
            )
            for location in self.locations
        )
        if locations == self.locations:
            return self
        return replace(self, locations=locations)

    # Serialization

    def to_dict(self) -> Dict[str, Any]:
        return {
            'schemaVersion': self.schema_version,
            'discipleGoal': self.disciple_goal,
            'cellGoal': self.cell_goal,
            'viewMode': self.view_mode.value,
            'adminMode': self.admin_mode.value,
            'locations': [location.to_dict() for location in self.locations],
            'discipleCommitments': [entry.to_dict() for entry in self.disciple_commitments],
            'cellCommitments': [entry.to_dict() for entry in self.cell_commitments],
        }

    def to_json(self) -> str:
        """Canonical serialization; equal documents produce equal text"""
        return json.dumps(self.to_dict(), sort_keys=True, separators=(',', ':'), ensure_ascii=False)

    @property
    def fingerprint(self) -> str:
        return hashlib.sha256(self.to_json().encode('utf-8')).hexdigest()

    def summary(self) -> Dict[str, Any]:
        """Flat view of the aggregates, handy for logs and the CLI"""
        return {
            'locations': len(self.locations),
            'discipleGoal': self.disciple_goal,
            'cellGoal': self.cell_goal,
            'totalDiscipleCommitments': self.total_disciple_commitments,
            'totalCellCommitments': self.total_cell_commitments,
            'totalDisciples': self.total_disciples,
            'totalCells': self.total_cells,
            'discipleProgressPercent': round(self.disciple_progress_percent, 2),
            'cellProgressPercent': round(self.cell_progress_percent, 2),
            'viewMode': self.view_mode.value,
            'adminMode': self.admin_mode.value,
        }


def _sum_by_location(entries: Tuple[CommitmentEntry, ...]) -> Dict[int, int]:
    sums: Dict[int, int] = {}
    for entry in entries:
        sums[entry.location_id] = sums.get(entry.location_id, 0) + entry.amount
    return sums


def default_document() -> Document:
    """Seed document used when neither the local cache nor the remote has data"""
    locations = (
        Location(
            id=1,
            name="Igreja Sede",
            region="Main",
            base_disciples=150,
            base_cells=45,
            full_name="IEAB Sede Internacional",
            address="Rua Exemplo, 123 - Centro",
            pastors="Pr. Presidente & Pra. Exemplo",
        ),
        Location(
            id=2,
            name="Congregação Zona Norte",
            region="North",
            base_disciples=50,
            base_cells=15,
            full_name="IEAB Zona Norte",
            address="Av. Norte, 456 - Bairro",
            pastors="Pr. Local",
        ),
        Location(
            id=3,
            name="Congregação Transformação",
            region="East",
            base_disciples=30,
            base_cells=8,
            full_name="IEAB Transformação",
            address="Rua Leste, 789 - Bairro",
            pastors="Pr. Local 2",
        ),
    )
    return Document(locations=locations).with_derived_totals()


# Parsing of the current schema. Older shapes go through model.migration first.

def document_from_dict(data: Mapping[str, Any]) -> Document:
    """
    Build a Document from a current-schema mapping.

    Raises:
        MigrationError: if a field is missing or has the wrong type
    """
    if not isinstance(data, Mapping):
        raise MigrationError(f"document must be an object, got {type(data).__name__}")

    version = read_int(data, 'schemaVersion', 'document')
    if version != CURRENT_SCHEMA_VERSION:
        raise MigrationError(f"expected schemaVersion {CURRENT_SCHEMA_VERSION}, got {version}")

    return Document(
        disciple_goal=read_int(data, 'discipleGoal', 'document', DEFAULT_DISCIPLE_GOAL),
        cell_goal=read_int(data, 'cellGoal', 'document', DEFAULT_CELL_GOAL),
        view_mode=read_enum(data, 'viewMode', ViewMode, 'document', ViewMode.REALITY),
        admin_mode=read_enum(data, 'adminMode', AdminMode, 'document', AdminMode.DISCIPLES),
        locations=tuple(
            location_from_dict(item)
            for item in read_list(data, 'locations', 'document')
        ),
        disciple_commitments=tuple(
            commitment_from_dict(item)
            for item in read_list(data, 'discipleCommitments', 'document', [])
        ),
        cell_commitments=tuple(
            commitment_from_dict(item)
            for item in read_list(data, 'cellCommitments', 'document', [])
        ),
    )


def location_from_dict(data: Any) -> Location:
    if not isinstance(data, Mapping):
        raise MigrationError(f"location must be an object, got {type(data).__name__}")
    location_id = read_int(data, 'id', 'location')
    context = f"location {location_id}"
    base_disciples = read_int(data, 'baseDisciples', context)
    base_cells = read_int(data, 'baseCells', context)
    return Location(
        id=location_id,
        name=read_str(data, 'name', context),
        region=read_str(data, 'region', context, DEFAULT_REGION),
        base_disciples=base_disciples,
        base_cells=base_cells,
        disciples=read_int(data, 'disciples', context, base_disciples),
        cells=read_int(data, 'cells', context, base_cells),
        full_name=read_optional_str(data, 'fullName', context),
        address=read_optional_str(data, 'address', context),
        pastors=read_optional_str(data, 'pastors', context),
    )


def commitment_from_dict(data: Any) -> CommitmentEntry:
    if not isinstance(data, Mapping):
        raise MigrationError(f"commitment must be an object, got {type(data).__name__}")
    raw_id = data.get('id')
    if isinstance(raw_id, bool) or not isinstance(raw_id, (str, int)) or raw_id == "":
        raise MigrationError(f"commitment id must be a non-empty string, got {raw_id!r}")
    entry_id = str(raw_id)
    context = f"commitment {entry_id}"
    return CommitmentEntry(
        id=entry_id,
        name=read_str(data, 'name', context, ""),
        amount=read_int(data, 'amount', context),
        location_id=read_int(data, 'locationId', context),
        location_name=read_str(data, 'locationName', context, ""),
        timestamp=read_int(data, 'timestamp', context, 0),
    )


def read_int(data: Mapping[str, Any], key: str, context: str, default: Any = _MISSING) -> int:
    value = data.get(key, _MISSING)
    if value is _MISSING or value is None:
        if default is _MISSING:
            raise MigrationError(f"{context}: missing integer field '{key}'")
        return default
    if isinstance(value, bool):
        raise MigrationError(f"{context}: field '{key}' must be an integer, got bool")
    if isinstance(value, int):
        return value
    if isinstance(value, float) and value.is_integer():
        return int(value)
    raise MigrationError(f"{context}: field '{key}' must be an integer, got {value!r}")


def read_str(data: Mapping[str, Any], key: str, context: str, default: Any = _MISSING) -> str:
    value = data.get(key, _MISSING)
    if value is _MISSING or value is None:
        if default is _MISSING:
            raise MigrationError(f"{context}: missing string field '{key}'")
        return default
    if not isinstance(value, str):
        raise MigrationError(f"{context}: field '{key}' must be a string, got {value!r}")
    return value


def read_optional_str(data: Mapping[str, Any], key: str, context: str) -> Optional[str]:
    return read_str(data, key, context, None)


def read_list(data: Mapping[str, Any], key: str, context: str, default: Any = _MISSING) -> list:
    value = data.get(key, _MISSING)
    if value is _MISSING or value is None:
        if default is _MISSING:
            raise MigrationError(f"{context}: missing list field '{key}'")
        return list(default)
    if not isinstance(value, (list, tuple)):
        raise MigrationError(f"{context}: field '{key}' must be a list, got {type(value).__name__}")
    return list(value)


def read_enum(data: Mapping[str, Any], key: str, enum_type, context: str, default: Any = _MISSING):
    value = data.get(key, _MISSING)
    if value is _MISSING or value is None:
        if default is _MISSING:
            raise MigrationError(f"{context}: missing field '{key}'")
        return default
    try:
        return enum_type(value)
    except ValueError:
        allowed = [member.value for member in enum_type]
        raise MigrationError(f"{context}: field '{key}' must be one of {allowed}, got {value!r}")
