"""Tests for the smart browser closer and task files."""
from __future__ import annotations

from pathlib import Path
from unittest.mock import AsyncMock, MagicMock

import pytest

from chrome_automation.models.session import CloseResult
from chrome_automation.models.task import BackgroundTask
from chrome_automation.session_manager.closer import OUTPUT_FILE_GENERATED, TIMEOUT_REACHED, SmartCloser
from chrome_automation.session_manager.task_files import TaskLog, read_task_record, write_task_record


@pytest.fixture
def task(tmp_path: Path) -> BackgroundTask:
    return BackgroundTask(
        session_id="1700000000000-abc123",
        script_name="scrape_prices",
        script_source="/scripts/scrape_prices.py",
        start_time="2024-01-01T00:00:00.000Z",
        timestamp=1700000000000,
        output_dir=str(tmp_path),
        output_file=str(tmp_path / "scrape_prices_script_output_1700000000000.json"),
        log_file=str(tmp_path / "scrape_prices_script_output_1700000000000.log"),
    )


@pytest.fixture
def fake_controller() -> MagicMock:
    controller = MagicMock()
    controller.teardown_session = AsyncMock(
        return_value=CloseResult(
            session_id="1700000000000-abc123", browser_closed=True, process_closed=True, unregistered=True
        )
    )
    return controller


class TestTaskFiles:
    """Tests for task record persistence."""

    def test_started_record_is_not_settled(self, task: BackgroundTask):
        write_task_record(task)
        assert read_task_record(task.output_file) is None

    def test_settled_record(self, task: BackgroundTask):
        write_task_record(task.model_copy(update={"status": "completed", "end_time": "2024-01-01T00:01:00.000Z"}))
        record = read_task_record(task.output_file)
        assert record.status == "completed"

    def test_partial_file_is_ignored(self, task: BackgroundTask):
        Path(task.output_file).write_text('{"sessionId": ')
        assert read_task_record(task.output_file) is None

    def test_log_lines_are_timestamped(self, task: BackgroundTask):
        log = TaskLog(task.log_file)
        log.line("hello")
        assert log.read().startswith("[")
        assert log.read().rstrip().endswith("] hello")


class TestSmartCloser:
    """Tests for SmartCloser."""

    async def test_closes_when_output_appears(self, task: BackgroundTask, fake_controller: MagicMock):
        write_task_record(task.model_copy(update={"status": "failed", "end_time": "2024-01-01T00:01:00.000Z"}))
        closer = SmartCloser(fake_controller, timeout=1.0, interval=0.01)
        log = TaskLog(task.log_file)

        reason = await closer.watch(task, log)

        assert reason == OUTPUT_FILE_GENERATED
        assert "Output status: failed" in log.read()

    async def test_times_out(self, task: BackgroundTask, fake_controller: MagicMock):
        closer = SmartCloser(fake_controller, timeout=0.05, interval=0.01, report_every=0.02)
        log = TaskLog(task.log_file)

        result = await closer.run(task, log)

        assert result.unregistered is True
        fake_controller.teardown_session.assert_awaited_once_with(task.session_id, "graceful", "[SMART-CLOSE]")
        text = log.read()
        assert f"Reason: {TIMEOUT_REACHED}" in text
        assert "Timeout reached" in text
        assert "Still waiting" in text
        assert "=== SMART BROWSER CLOSE ===" in text
        assert "Success: true" in text

    async def test_port_only_browser_is_closed_directly(self, task: BackgroundTask, fake_controller: MagicMock):
        fake_controller.teardown_session.return_value = CloseResult(session_id=task.session_id)
        browser = MagicMock()
        browser.is_connected.return_value = True
        session = MagicMock()
        session.send = AsyncMock()
        browser.new_browser_cdp_session = AsyncMock(return_value=session)
        browser.close = AsyncMock()

        result = await SmartCloser(fake_controller).close(task, TaskLog(task.log_file), "test", browser=browser)

        assert result.browser_closed is True
        session.send.assert_awaited_once_with("Browser.close")

    async def test_teardown_error_is_logged_not_raised(self, task: BackgroundTask, fake_controller: MagicMock):
        fake_controller.teardown_session.side_effect = RuntimeError("registry locked")
        log = TaskLog(task.log_file)

        result = await SmartCloser(fake_controller).close(task, log, OUTPUT_FILE_GENERATED)

        assert result.unregistered is False
        assert "Error during browser close: registry locked" in log.read()
        assert "Success: false" in log.read()
