"""
Document model, invariants and schema migration tests
"""

import json
from dataclasses import replace

import pytest

from missao_sync.core.errors import MigrationError, ValidationError
from missao_sync.model import (
    CURRENT_SCHEMA_VERSION,
    AdminMode,
    CommitmentEntry,
    CommitmentKind,
    Document,
    ViewMode,
    default_document,
    detect_schema_version,
    ensure_valid,
    migrate,
    validate_document,
)


def _entry(entry_id, amount, location_id, name="Ana"):
    return CommitmentEntry(
        id=entry_id,
        name=name,
        amount=amount,
        location_id=location_id,
        location_name=f"Location {location_id}",
        timestamp=1700000000000,
    )


class TestDocument:
    """Test the current-schema document"""

    def test_default_document(self, document):
        assert [location.id for location in document.locations] == [1, 2, 3]
        assert document.disciple_goal == 80
        assert document.cell_goal == 20
        assert document.view_mode is ViewMode.REALITY
        assert document.admin_mode is AdminMode.DISCIPLES
        assert document.disciple_commitments == ()
        assert document.total_disciples == 150 + 50 + 30
        assert document.total_cells == 45 + 15 + 8
        assert validate_document(document) == []

    def test_derived_totals_are_recomputed(self, document):
        entries = (_entry("a", 5, 1), _entry("b", 3, 1), _entry("c", 2, 2))
        updated = replace(document, disciple_commitments=entries).with_derived_totals()

        assert updated.find_location(1).disciples == 158
        assert updated.find_location(2).disciples == 52
        assert updated.find_location(3).disciples == 30
        assert updated.total_disciple_commitments == 10

    def test_with_derived_totals_returns_self_when_current(self, document):
        assert document.with_derived_totals() is document

    def test_progress_percent_is_capped(self, document):
        updated = replace(document, disciple_commitments=(_entry("a", 100, 1),)).with_derived_totals()
        assert updated.disciple_progress_percent == 100.0
        assert updated.progress_percent(CommitmentKind.CELLS) == 0.0

    def test_to_json_is_canonical(self, document):
        text = document.to_json()
        assert json.loads(text)['schemaVersion'] == CURRENT_SCHEMA_VERSION
        assert migrate(text).to_json() == text
        assert migrate(text).fingerprint == document.fingerprint

    def test_optional_location_fields_omitted_when_empty(self, document):
        location = replace(document.locations[0], full_name=None, address=None, pastors=None)
        data = location.to_dict()
        assert 'fullName' not in data
        assert 'address' not in data
        assert 'pastors' not in data

    def test_orphans_are_tolerated(self, document):
        orphaned = replace(document, disciple_commitments=(_entry("x", 4, 99),)).with_derived_totals()
        assert [entry.id for entry in orphaned.orphan_commitments()] == ["x"]
        assert validate_document(orphaned) == []


class TestInvariants:
    """Test invariant checking"""

    def test_goal_must_be_positive(self, document):
        with pytest.raises(ValidationError) as exc_info:
            ensure_valid(replace(document, disciple_goal=0))
        assert any('discipleGoal' in problem for problem in exc_info.value.problems)

    def test_duplicate_location_ids(self, document):
        locations = document.locations + (replace(document.locations[0], name="Copy"),)
        problems = validate_document(replace(document, locations=locations))
        assert "duplicate location id 1" in problems

    def test_stale_derived_totals(self, document):
        stale = replace(document, locations=(replace(document.locations[0], disciples=1),) + document.locations[1:])
        assert any('derived' in problem for problem in validate_document(stale))

    def test_duplicate_entry_ids(self, document):
        doubled = replace(document, cell_commitments=(_entry("a", 1, 1), _entry("a", 2, 1))).with_derived_totals()
        assert "cells: duplicate commitment id a" in validate_document(doubled)


class TestMigration:
    """Test schema detection and upgrades"""

    def test_oldest_format(self):
        raw = {
            'goal': 80,
            'totalDisciples': 30,
            'locations': [{'id': 1, 'disciples': 30, 'cells': 5}],
        }
        migrated = migrate(raw)

        location = migrated.find_location(1)
        assert location.base_disciples == 30
        assert location.disciples == 30
        assert location.base_cells == 5
        assert location.cells == 5
        assert migrated.disciple_commitments == ()
        assert migrated.disciple_goal == 80
        assert migrated.schema_version == CURRENT_SCHEMA_VERSION

    def test_v0_history_is_carried_and_subtracted_from_baseline(self):
        raw = {
            'goal': 100,
            'totalDisciples': 7,
            'locations': [
                {'id': 1, 'name': 'Sede', 'region': 'Main', 'disciples': 57, 'cells': 10},
                {'id': 2, 'name': 'Norte', 'region': 'North', 'disciples': 20, 'cells': 4},
            ],
            'commitmentHistory': [
                {'id': 'h1', 'name': 'Ana', 'amount': 5, 'locationId': 1, 'locationName': 'Sede', 'timestamp': 2},
                {'id': 'h2', 'name': 'Rui', 'amount': 2, 'locationId': 1, 'locationName': 'Sede', 'timestamp': 1},
            ],
        }
        migrated = migrate(raw)

        assert [entry.id for entry in migrated.disciple_commitments] == ['h1', 'h2']
        assert migrated.find_location(1).base_disciples == 50
        assert migrated.find_location(1).disciples == 57
        assert migrated.find_location(2).base_disciples == 20
        assert migrated.total_disciple_commitments == 7
        assert ensure_valid(migrated) is migrated

    def test_v0_history_is_capped(self):
        history = [
            {'id': f"h{i}", 'name': 'Ana', 'amount': 1, 'locationId': 1, 'timestamp': i}
            for i in range(60)
        ]
        migrated = migrate({'goal': 80, 'locations': [{'id': 1, 'disciples': 100}], 'commitmentHistory': history})
        assert len(migrated.disciple_commitments) == 50
        assert migrated.find_location(1).base_disciples == 50

    def test_v1_upgrade(self):
        raw = {
            'schemaVersion': 1,
            'discipleGoal': 120,
            'viewMode': 'construction',
            'totalDisciples': 3,
            'locations': [{'id': 4, 'name': 'Sul', 'region': 'South', 'baseDisciples': 10, 'disciples': 13, 'cells': 2}],
            'commitmentHistory': [
                {'id': 'x', 'name': 'Bia', 'amount': 3, 'locationId': 4, 'locationName': 'Sul', 'timestamp': 5},
            ],
        }
        migrated = migrate(raw)

        assert migrated.disciple_goal == 120
        assert migrated.cell_goal == 20
        assert migrated.view_mode is ViewMode.CONSTRUCTION
        assert migrated.admin_mode is AdminMode.DISCIPLES
        assert migrated.find_location(4).base_cells == 2
        assert migrated.find_location(4).disciples == 13
        assert migrated.cell_commitments == ()
        assert len(migrated.disciple_commitments) == 1

    def test_migration_is_idempotent(self, document):
        once = migrate(document.to_dict())
        assert migrate(once) == once
        assert migrate(once.to_json()) == once
        assert migrate(once.to_json().encode('utf-8')) == once

    def test_current_document_round_trips_unchanged(self, document):
        assert migrate(document.to_dict()) == document

    def test_stored_totals_are_not_trusted(self, document):
        data = document.to_dict()
        data['locations'][0]['disciples'] = 9999
        assert migrate(data).find_location(1).disciples == 150

    @pytest.mark.parametrize("raw", [
        "not json",
        "[]",
        {'schemaVersion': 3, 'locations': []},
        {'schemaVersion': '2', 'locations': []},
        {'something': 'else'},
        {'schemaVersion': 2, 'locations': [{'id': 1}]},
        {'schemaVersion': 2, 'locations': 'nope'},
    ])
    def test_malformed_input_raises_migration_error(self, raw):
        with pytest.raises(MigrationError):
            migrate(raw)

    def test_detect_schema_version(self, document):
        assert detect_schema_version(document.to_dict()) == 2
        assert detect_schema_version({'schemaVersion': 1, 'locations': []}) == 1
        assert detect_schema_version({'goal': 80}) == 0
        assert detect_schema_version({'locations': [{'id': 1, 'disciples': 3}]}) == 0

    def test_migrate_accepts_document_instance(self, document):
        assert isinstance(migrate(document), Document)
        assert migrate(document) == document
