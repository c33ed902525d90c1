"""Tests for the session registry and its stores."""
from __future__ import annotations

import json
from pathlib import Path
from unittest.mock import AsyncMock

from chrome_automation.database.repository import SqliteSessionStore
from chrome_automation.models.session import SessionInfo
from chrome_automation.session_manager.registry import (
    JsonFileStore,
    SessionRegistry,
    create_store,
    remove_dir_with_retries,
)


def _info(pid: int, port: int = 9300, session_dir: str = "", chrome_pid=None) -> SessionInfo:
    return SessionInfo(pid=pid, debug_port=port, session_dir=session_dir, chrome_process_pid=chrome_pid)


class TestJsonFileStore:
    """Tests for the JSON registry file."""

    async def test_round_trip_uses_camel_case_keys(self, tmp_path: Path):
        store = JsonFileStore(tmp_path / "sessions-registry.json")
        await store.put("1-aaaaaa", _info(10, 9301, "/tmp/x", 11))

        raw = json.loads((tmp_path / "sessions-registry.json").read_text())
        assert set(raw["1-aaaaaa"]) == {"pid", "debugPort", "sessionDir", "createdAt", "chromeProcessPid"}
        loaded = await store.get("1-aaaaaa")
        assert loaded.debug_port == 9301
        assert loaded.chrome_process_pid == 11

    async def test_missing_file_is_empty(self, tmp_path: Path):
        assert await JsonFileStore(tmp_path / "nope.json").load() == {}

    async def test_corrupt_file_is_treated_as_empty(self, tmp_path: Path):
        path = tmp_path / "sessions-registry.json"
        path.write_text("{not json")
        assert await JsonFileStore(path).load() == {}

    async def test_malformed_entry_is_skipped(self, tmp_path: Path):
        path = tmp_path / "sessions-registry.json"
        path.write_text(json.dumps({
            "good": {"pid": 1, "debugPort": 9300, "sessionDir": "", "createdAt": "2024-01-01T00:00:00.000Z"},
            "bad": {"pid": "not-a-pid"},
        }))
        entries = await JsonFileStore(path).load()
        assert list(entries) == ["good"]

    async def test_delete_missing_key_returns_none(self, tmp_path: Path):
        store = JsonFileStore(tmp_path / "r.json")
        assert await store.delete("ghost") is None

    async def test_compare_and_swap_detects_change(self, tmp_path: Path):
        store = JsonFileStore(tmp_path / "r.json")
        original = _info(1)
        await store.put("s", original)
        assert await store.compare_and_swap("s", original, _info(2)) is True
        assert await store.compare_and_swap("s", original, _info(3)) is False
        assert (await store.get("s")).pid == 2


class TestSqliteStore:
    """Tests for the transactional store."""

    async def test_put_get_delete(self, tmp_path: Path):
        store = SqliteSessionStore(tmp_path / "r.db")
        await store.put("s1", _info(1, 9301))
        await store.put("s2", _info(2, 9302))

        assert set(await store.load()) == {"s1", "s2"}
        removed = await store.delete("s1")
        assert removed.debug_port == 9301
        assert await store.get("s1") is None

    async def test_mirror_keeps_json_file_in_sync(self, tmp_path: Path):
        mirror = JsonFileStore(tmp_path / "sessions-registry.json")
        store = SqliteSessionStore(tmp_path / "r.db", mirror=mirror)
        await store.put("s1", _info(1, 9301))

        raw = json.loads((tmp_path / "sessions-registry.json").read_text())
        assert raw["s1"]["debugPort"] == 9301

        await store.replace_all({})
        assert json.loads((tmp_path / "sessions-registry.json").read_text()) == {}

    async def test_compare_and_swap(self, tmp_path: Path):
        store = SqliteSessionStore(tmp_path / "r.db")
        original = _info(1)
        await store.put("s", original)
        current = await store.get("s")
        assert await store.compare_and_swap("s", current, None) is True
        assert await store.compare_and_swap("s", current, _info(5)) is False
        assert await store.load() == {}

    def test_create_store_selects_backend(self, tmp_path: Path):
        assert isinstance(create_store(tmp_path, backend="sqlite"), SqliteSessionStore)
        assert isinstance(create_store(tmp_path, backend="json"), JsonFileStore)


class TestSessionRegistry:
    """Tests for registry liveness and self-healing."""

    async def test_live_entry_survives_sweep(self, registry: SessionRegistry, make_entry, live_pid):
        await make_entry("1-aaaaaa", live_pid)
        result = await registry.sweep(deep=True)
        assert list(result.active) == ["1-aaaaaa"]
        assert result.removed == []

    async def test_dead_owner_is_reaped(self, registry: SessionRegistry, make_entry, dead_pid):
        info = await make_entry("1-aaaaaa", dead_pid)
        result = await registry.sweep(deep=False)

        assert result.removed == ["1-aaaaaa"]
        assert result.dirs_deleted == 1
        assert not Path(info.session_dir).exists()
        assert await registry.get("1-aaaaaa") is None

    async def test_dead_chrome_is_reaped(self, registry: SessionRegistry, make_entry, live_pid, dead_pid):
        await make_entry("1-aaaaaa", live_pid, chrome_pid=dead_pid)
        assert await registry.is_active("1-aaaaaa", deep=False) is False
        assert await registry.list() == {}

    async def test_unresponsive_port_is_reaped_on_deep_check(
        self, registry: SessionRegistry, make_entry, live_pid, cdp_probe: AsyncMock
    ):
        await make_entry("1-aaaaaa", live_pid)
        cdp_probe.return_value = False

        assert await registry.is_active("1-aaaaaa", deep=False) is True
        assert await registry.is_active("1-aaaaaa", deep=True) is False
        assert await registry.get("1-aaaaaa") is None

    async def test_update_patches_fields(self, registry: SessionRegistry, make_entry, live_pid):
        await make_entry("1-aaaaaa", live_pid)
        updated = await registry.update("1-aaaaaa", chrome_process_pid=1234, debug_port=9999)
        assert updated.chrome_process_pid == 1234
        assert (await registry.get("1-aaaaaa")).debug_port == 9999

    async def test_update_unknown_session(self, registry: SessionRegistry):
        assert await registry.update("ghost", debug_port=1) is None

    async def test_clear_truncates(self, registry: SessionRegistry, make_entry, live_pid):
        await make_entry("1-aaaaaa", live_pid)
        await make_entry("2-bbbbbb", live_pid)
        await registry.clear()
        assert json.loads(registry.registry_file.read_text()) == {}

    async def test_orphaned_dirs(self, registry: SessionRegistry, make_entry, live_pid, base_dir: Path):
        await make_entry("1-aaaaaa", live_pid)
        (base_dir / "session-orphan").mkdir()
        orphans = await registry.orphaned_dirs()
        assert [d.name for d in orphans] == ["session-orphan"]


class TestRemoveDir:
    async def test_missing_dir_counts_as_removed(self, tmp_path: Path):
        assert await remove_dir_with_retries(tmp_path / "gone") is True

    async def test_removes_tree(self, tmp_path: Path):
        target = tmp_path / "session-x" / "Default"
        target.mkdir(parents=True)
        (target / "Cookies").write_text("")
        assert await remove_dir_with_retries(tmp_path / "session-x") is True
        assert not (tmp_path / "session-x").exists()

    async def test_none_is_noop(self):
        assert await remove_dir_with_retries(None) is True
