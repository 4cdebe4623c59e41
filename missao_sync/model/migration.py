"""
Schema migration for persisted and replicated documents

Every shape that has ever been shipped is upgraded step by step to the
current schema:

    v0  implicit, no ``schemaVersion``. Single ``goal``, a running
        ``totalDisciples`` counter and a ``commitmentHistory`` log capped at
        50 entries. Location counters already include the commitments,
        so the upgraded baseline is the old counter minus the carried
        history (floored at 0) rather than the old counter.
    v1  ``schemaVersion: 1``. ``discipleGoal``, baseline/total split for
        disciples only, ``totalDisciples`` still maintained incrementally.
    v2  current. Two goals, two logs, ``adminMode``, derived totals
        recomputed from the logs.

Upgrades are pure and additive; running migrate() on a current document
returns an equal document.
"""

import json
import logging
from typing import Any, Callable, Dict, Mapping

from ..core.errors import MigrationError
from .document import (
    CURRENT_SCHEMA_VERSION,
    DEFAULT_CELL_GOAL,
    DEFAULT_DISCIPLE_GOAL,
    DEFAULT_REGION,
    AdminMode,
    Document,
    ViewMode,
    document_from_dict,
    read_int,
    read_list,
)

logger = logging.getLogger('missao_sync.model.migration')

V0_MARKERS = ('goal', 'totalDisciples', 'commitmentHistory')
V0_HISTORY_LIMIT = 50


def migrate(raw: Any) -> Document:
    """
    Upgrade a raw payload (JSON text, bytes or mapping) to a Document.

    Raises:
        MigrationError: for malformed input or an unknown schema version
    """
    data = _coerce_mapping(raw)
    version = detect_schema_version(data)

    upgraded: Dict[str, Any] = dict(data)
    while version < CURRENT_SCHEMA_VERSION:
        step = _UPGRADES[version]
        upgraded = step(upgraded)
        version += 1
        logger.debug(f"Upgraded document to schema v{version}")

    return document_from_dict(upgraded).with_derived_totals()


def detect_schema_version(data: Mapping[str, Any]) -> int:
    """
    Work out which schema a mapping follows.

    The oldest shape has no version tag, so it is recognised by its
    marker fields instead.
    """
    if 'schemaVersion' in data:
        version = data['schemaVersion']
        if isinstance(version, bool) or not isinstance(version, int):
            raise MigrationError(f"schemaVersion must be an integer, got {version!r}")
        if version < 1 or version > CURRENT_SCHEMA_VERSION:
            raise MigrationError(f"unknown schemaVersion {version}")
        return version

    if any(marker in data for marker in V0_MARKERS):
        return 0

    locations = data.get('locations')
    if isinstance(locations, list) and locations and all(
        isinstance(item, Mapping) and 'disciples' in item and 'baseDisciples' not in item
        for item in locations
    ):
        return 0

    raise MigrationError("payload does not match any known document schema")


def _coerce_mapping(raw: Any) -> Mapping[str, Any]:
    if isinstance(raw, Document):
        return raw.to_dict()
    if isinstance(raw, (bytes, bytearray)):
        try:
            raw = raw.decode('utf-8')
        except UnicodeDecodeError as e:
            raise MigrationError(f"payload is not valid UTF-8: {e}")
    if isinstance(raw, str):
        try:
            raw = json.loads(raw)
        except ValueError as e:
            raise MigrationError(f"payload is not valid JSON: {e}")
    if not isinstance(raw, Mapping):
        raise MigrationError(f"payload must be an object, got {type(raw).__name__}")
    return raw


def _upgrade_v0_to_v1(data: Dict[str, Any]) -> Dict[str, Any]:
    """
    Split each location's single counter into baseline + history.

    The baseline is the old counter minus the carried history for that
    location, floored at 0, not the old counter itself. v0 added every
    commitment straight into the counter, and totals are recomputed as
    baseline plus log, so keeping the old counter would count the carried
    history twice. With an empty history the baseline equals the old
    counter.
    """
    history = [
        entry for entry in read_list(data, 'commitmentHistory', 'v0 document', [])
    ][:V0_HISTORY_LIMIT]

    carried: Dict[int, int] = {}
    for entry in history:
        if not isinstance(entry, Mapping):
            raise MigrationError(f"v0 commitment must be an object, got {type(entry).__name__}")
        location_id = read_int(entry, 'locationId', 'v0 commitment')
        carried[location_id] = carried.get(location_id, 0) + read_int(entry, 'amount', 'v0 commitment')

    locations = []
    for item in read_list(data, 'locations', 'v0 document', []):
        if not isinstance(item, Mapping):
            raise MigrationError(f"v0 location must be an object, got {type(item).__name__}")
        location_id = read_int(item, 'id', 'v0 location')
        disciples = read_int(item, 'disciples', f"v0 location {location_id}", 0)
        location = dict(item)
        location['disciples'] = disciples
        location['cells'] = read_int(item, 'cells', f"v0 location {location_id}", 0)
        location['baseDisciples'] = max(disciples - carried.get(location_id, 0), 0)
        location.setdefault('name', f"Location {location_id}")
        location.setdefault('region', DEFAULT_REGION)
        locations.append(location)

    return {
        'schemaVersion': 1,
        'discipleGoal': read_int(data, 'goal', 'v0 document', DEFAULT_DISCIPLE_GOAL),
        'viewMode': data.get('viewMode', ViewMode.REALITY.value),
        'locations': locations,
        'commitmentHistory': history,
        'totalDisciples': sum(carried.values()),
    }


def _upgrade_v1_to_v2(data: Dict[str, Any]) -> Dict[str, Any]:
    """Second log and goal for cells; stored totals become derived"""
    locations = []
    for item in read_list(data, 'locations', 'v1 document', []):
        if not isinstance(item, Mapping):
            raise MigrationError(f"v1 location must be an object, got {type(item).__name__}")
        location_id = read_int(item, 'id', 'v1 location')
        context = f"v1 location {location_id}"
        disciples = read_int(item, 'disciples', context, 0)
        cells = read_int(item, 'cells', context, 0)
        location = dict(item)
        location['baseDisciples'] = read_int(item, 'baseDisciples', context, disciples)
        location['baseCells'] = read_int(item, 'baseCells', context, cells)
        location['disciples'] = disciples
        location['cells'] = cells
        location.setdefault('name', f"Location {location_id}")
        location.setdefault('region', DEFAULT_REGION)
        locations.append(location)

    return {
        'schemaVersion': 2,
        'discipleGoal': data.get('discipleGoal', DEFAULT_DISCIPLE_GOAL),
        'cellGoal': data.get('cellGoal', DEFAULT_CELL_GOAL),
        'viewMode': data.get('viewMode', ViewMode.REALITY.value),
        'adminMode': data.get('adminMode', AdminMode.DISCIPLES.value),
        'locations': locations,
        'discipleCommitments': read_list(data, 'commitmentHistory', 'v1 document', []),
        'cellCommitments': [],
    }


_UPGRADES: Dict[int, Callable[[Dict[str, Any]], Dict[str, Any]]] = {
    0: _upgrade_v0_to_v1,
    1: _upgrade_v1_to_v2,
}
