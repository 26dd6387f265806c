"""Tests for the configuration watcher."""

import asyncio
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from hatchery.engine.watcher import ConfigWatcher
from hatchery.errors import ConfigurationError
from hatchery.models.records import BatchReport


def make_manager(changed=(True,)):
    manager = MagicMock()
    manager.config_dir = "/etc/hatchery"
    manager.load = AsyncMock()
    manager.has_changed.side_effect = list(changed)
    manager.select.return_value = []
    return manager


def fake_awatch(batches):
    """awatch replacement yielding one change set per entry."""
    async def generator(path, stop_event=None):
        for batch in batches:
            await asyncio.sleep(0)
            yield batch
    return generator


@pytest.mark.asyncio
class TestConfigWatcher:
    """Test the apply-on-change loop."""

    async def test_apply_reports(self):
        manager = make_manager()
        report = BatchReport()
        runner = AsyncMock(return_value=report)
        seen = []
        watcher = ConfigWatcher(manager, runner, on_report=seen.append)

        assert await watcher.apply() is report

        runner.assert_awaited_once_with(manager.config, [])
        assert seen == [report]
        assert watcher.runs == 1

    async def test_apply_failure_logged(self):
        runner = AsyncMock(side_effect=ConfigurationError("duplicate ids"))
        watcher = ConfigWatcher(make_manager(), runner)

        assert await watcher.apply() is None
        assert watcher.runs == 0

    async def test_reapplies_only_on_effective_change(self):
        manager = make_manager(changed=[False, True])
        runner = AsyncMock(return_value=BatchReport())
        watcher = ConfigWatcher(manager, runner)

        with patch("hatchery.engine.watcher.awatch", fake_awatch([{"touch"}, {"edit"}])):
            await watcher._watch_loop()

        manager.load.assert_awaited_once()
        assert runner.await_count == 1

    async def test_reload_failure_keeps_watching(self):
        manager = make_manager(changed=[True, True])
        manager.load.side_effect = [ConfigurationError("bad yaml"), None]
        runner = AsyncMock(return_value=BatchReport())
        watcher = ConfigWatcher(manager, runner)

        with patch("hatchery.engine.watcher.awatch", fake_awatch([{"edit"}, {"fix"}])):
            await watcher._watch_loop()

        assert manager.load.await_count == 2
        assert runner.await_count == 1

    async def test_run_applies_first(self):
        manager = make_manager(changed=[])
        runner = AsyncMock(return_value=BatchReport())
        watcher = ConfigWatcher(manager, runner)

        with patch("hatchery.engine.watcher.awatch", fake_awatch([])):
            await watcher.run()

        assert runner.await_count == 1

    async def test_shutdown_sets_event(self):
        watcher = ConfigWatcher(make_manager(), AsyncMock())

        watcher.shutdown()

        assert watcher.shutdown_event.is_set()
