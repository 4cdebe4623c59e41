"""
Application wiring and command line tests
"""

import asyncio
import json

import pytest

from missao_sync import cli
from missao_sync.core.reconciliation import Origin
from missao_sync.services import sync_application
from missao_sync.services.sync_application import create_application
from missao_sync.sync.remote_store import HttpRemote, NullRemote
from missao_sync.sync.storage import FileKeyValueStore


@pytest.fixture(autouse=True)
def quiet_logging(monkeypatch):
    monkeypatch.setattr(sync_application, 'setup_logging', lambda config: None)
    monkeypatch.setattr(cli, 'setup_logging', lambda config: None)


class TestSyncApplication:
    """Test component wiring and lifecycle"""

    def test_default_wiring(self, tmp_path):
        app = create_application(tmp_path, {'storage_dir': str(tmp_path / "state")})

        assert isinstance(app.store, FileKeyValueStore)
        assert isinstance(app.remote_store, NullRemote)
        assert app.get_stats()['startup_complete'] is False

    def test_remote_url_selects_http_remote(self, tmp_path):
        app = create_application(tmp_path, {'remote_url': "http://relay.example:8080"})
        assert isinstance(app.remote_store, HttpRemote)
        assert app.remote_store.state_url == "http://relay.example:8080/api/v1/state/1"

    @pytest.mark.asyncio
    async def test_context_manager_lifecycle(self, tmp_path):
        app = create_application(tmp_path, {'storage_dir': str(tmp_path / "state")})

        async with app:
            stats = app.get_stats()
            assert stats['startup_complete'] is True
            assert stats['engine_state'] == "ready"
            assert stats['document']['locations'] == 3
            app.mutations.set_disciple_goal(90)

        assert app.get_stats()['startup_complete'] is False
        assert json.loads((tmp_path / "state" / "missao-ieab-state-v2.json").read_text(encoding="utf-8"))['discipleGoal'] == 90

    @pytest.mark.asyncio
    async def test_processes_sharing_a_directory_converge(self, tmp_path):
        overrides = {'storage_dir': str(tmp_path / "state"), 'poll_interval': 0.01}
        first = create_application(tmp_path, overrides)
        second = create_application(tmp_path, overrides)
        received = asyncio.Event()
        origins = []

        def on_change(document, origin):
            if document.disciple_goal == 77:
                origins.append(origin)
                received.set()

        async with first, second:
            second.engine.subscribe(on_change)
            first.mutations.set_disciple_goal(77)
            await asyncio.wait_for(received.wait(), timeout=2)

            assert second.engine.get_current() == first.engine.get_current()
            assert origins == [Origin.CROSS_TAB]

    @pytest.mark.asyncio
    async def test_shutdown_twice_is_harmless(self, make_app):
        app = make_app()
        await app.start()
        await app.shutdown()
        await app.shutdown()
        assert app.get_stats()['startup_complete'] is False


class TestCommandLine:
    """Test the missao-sync command"""

    def _run(self, tmp_path, *args):
        return cli.main(["--base-path", str(tmp_path), "--storage-dir", str(tmp_path / "state"), *args])

    def test_snapshot_prints_summary(self, tmp_path, capsys):
        assert self._run(tmp_path, "snapshot") == 0
        summary = json.loads(capsys.readouterr().out)
        assert summary['locations'] == 3
        assert summary['totalDisciples'] == 230

    def test_commit_is_persisted(self, tmp_path, capsys):
        assert self._run(tmp_path, "commit", "--location", "2", "--amount", "4", "--name", "Ana") == 0
        assert json.loads(capsys.readouterr().out)['totalDiscipleCommitments'] == 4

        assert self._run(tmp_path, "snapshot", "--full") == 0
        document = json.loads(capsys.readouterr().out)
        assert document['discipleCommitments'][0]['name'] == "Ana"

    def test_cell_commit(self, tmp_path, capsys):
        assert self._run(tmp_path, "commit", "--kind", "cells", "--location", "1", "--amount", "2", "--name", "Rui") == 0
        assert json.loads(capsys.readouterr().out)['totalCellCommitments'] == 2

    def test_invalid_commit_exits_with_2(self, tmp_path, capsys):
        assert self._run(tmp_path, "commit", "--location", "1", "--amount", "500", "--name", "Ana") == 2
        assert "Invalid request" in capsys.readouterr().err

    def test_reset_requires_confirmation(self, tmp_path, capsys):
        assert self._run(tmp_path, "reset") == 2
        assert self._run(tmp_path, "reset", "--yes") == 0

    def test_bad_configuration_exits_with_2(self, tmp_path, capsys):
        assert self._run(tmp_path, "--log-level", "LOUD", "snapshot") == 2
