import os
import threading
from datetime import datetime, timedelta, timezone
from unittest.mock import patch

import pytest

from cw_agent.state.errors import StateCorruptedError, StatePersistenceError, StatePurgeError
from cw_agent.state.manager import StateManager
from cw_agent.state.persistence import STATE_FILE_NAME
from cw_agent.state.record import IdentityRecord


@pytest.fixture
def config_path(tmp_path):
    return tmp_path / "certwatch.yaml"


def test_file_path_derived_from_config():
    m = StateManager("/etc/certwatch/certwatch.yaml")
    assert str(m.file_path) == os.path.join("/etc/certwatch", ".certwatch-state.json")


def test_load_non_existent(config_path):
    m = StateManager(config_path)
    m.load()

    assert m.get_agent_id() == ""
    assert m.get_agent_name() == ""
    assert m.get_previous_agent_id() == ""
    assert m.get_last_sync_at() is None
    assert m.has_state() is False
    # Loading never creates the file
    assert not m.file_path.exists()


def test_save_and_load(config_path):
    m1 = StateManager(config_path)
    m1.set_agent_id("test-agent-id-123")
    m1.set_agent_name("production-monitor")
    m1.set_last_sync_at(datetime(2025, 1, 1, 12, 0, 0, tzinfo=timezone.utc))
    m1.save()

    m2 = StateManager(config_path)
    m2.load()

    assert m2.get_agent_id() == "test-agent-id-123"
    assert m2.get_agent_name() == "production-monitor"
    assert m2.get_last_sync_at() == datetime(2025, 1, 1, 12, 0, 0, tzinfo=timezone.utc)
    assert m2.get_last_updated() == m1.get_last_updated()


def test_naive_sync_time_is_treated_as_utc(config_path):
    m = StateManager(config_path)
    m.set_last_sync_at(datetime(2025, 1, 1, 12, 0, 0))
    assert m.get_last_sync_at() == datetime(2025, 1, 1, 12, 0, 0, tzinfo=timezone.utc)


def test_save_stamps_last_updated(config_path):
    m = StateManager(config_path)
    before = datetime.now(timezone.utc)
    m.save()

    stamped = m.get_last_updated()
    assert stamped is not None
    assert stamped >= before


def test_last_updated_never_moves_backwards(config_path):
    m = StateManager(config_path)
    future = datetime.now(timezone.utc) + timedelta(hours=1)
    m.replace(IdentityRecord(agent_name="prod-1", last_updated=future))

    m.save()

    assert m.get_last_updated() == future


def test_successive_saves_are_monotonic(config_path):
    m = StateManager(config_path)
    stamps = []
    for i in range(5):
        m.set_agent_name(f"name-{i}")
        m.save()
        stamps.append(m.get_last_updated())

    assert stamps == sorted(stamps)


def test_mutations_are_not_persisted_until_save(config_path):
    m = StateManager(config_path)
    m.set_agent_id("a1")
    m.set_agent_name("prod-1")
    m.save()

    m.set_agent_id("a2")

    fresh = StateManager(config_path)
    fresh.load()
    assert fresh.get_agent_id() == "a1"


def test_load_corrupted_file(config_path):
    (config_path.parent / STATE_FILE_NAME).write_text("not valid json")

    m = StateManager(config_path)
    m.set_agent_id("stale-in-memory")

    with pytest.raises(StateCorruptedError):
        m.load()

    # Treated as first run: nothing partially parsed survives
    assert m.get_agent_id() == ""
    assert m.get_agent_name() == ""
    assert m.has_state() is False


def test_save_after_corruption_repairs_file(config_path):
    (config_path.parent / STATE_FILE_NAME).write_text("{{{")
    m = StateManager(config_path)
    with pytest.raises(StateCorruptedError):
        m.load()

    m.set_agent_name("prod-1")
    m.save()

    fresh = StateManager(config_path)
    fresh.load()
    assert fresh.get_agent_name() == "prod-1"


def test_failed_save_keeps_memory_and_raises(config_path):
    m = StateManager(config_path)
    m.set_agent_name("prod-1")

    with patch("cw_agent.state.persistence.os.replace", side_effect=OSError(13, "Permission denied")):
        with pytest.raises(StatePersistenceError):
            m.save()

    assert m.get_agent_name() == "prod-1"
    assert m.get_last_updated() is None


@pytest.mark.parametrize("agent_id,agent_name,expected", [
    ("", "", False),
    ("some-id", "", True),
    ("", "some-name", True),
    ("some-id", "some-name", True),
])
def test_has_state(config_path, agent_id, agent_name, expected):
    m = StateManager(config_path)
    m.replace(IdentityRecord(agent_id=agent_id, agent_name=agent_name))
    assert m.has_state() is expected


def test_previous_agent_id_round_trip(config_path):
    m = StateManager(config_path)
    assert m.get_previous_agent_id() == ""

    m.set_previous_agent_id("old-agent-id-456")
    assert m.get_previous_agent_id() == "old-agent-id-456"
    m.save()

    m2 = StateManager(config_path)
    m2.load()
    assert m2.get_previous_agent_id() == "old-agent-id-456"

    m2.clear_previous_agent_id()
    assert m2.get_previous_agent_id() == ""
    m2.save()

    m3 = StateManager(config_path)
    m3.load()
    assert m3.get_previous_agent_id() == ""


def test_previous_agent_id_must_differ_from_agent_id(config_path):
    m = StateManager(config_path)
    m.set_agent_id("a1")
    with pytest.raises(ValueError):
        m.set_previous_agent_id("a1")

    m.set_agent_id("")
    m.set_previous_agent_id("a1")
    with pytest.raises(ValueError):
        m.set_agent_id("a1")

    with pytest.raises(ValueError):
        m.replace(IdentityRecord(agent_id="x", previous_agent_id="x"))


def test_reset(config_path):
    m = StateManager(config_path)
    m.set_agent_id("test-id")
    m.set_agent_name("test-name")
    m.set_previous_agent_id("prev-id")
    m.save()
    assert m.file_path.exists()

    m.reset()

    assert m.get_agent_id() == ""
    assert m.get_agent_name() == ""
    assert m.get_previous_agent_id() == ""
    assert not m.file_path.exists()

    # A fresh load behaves as if no file ever existed
    fresh = StateManager(config_path)
    fresh.load()
    assert fresh.has_state() is False


def test_reset_without_file_succeeds(config_path):
    StateManager(config_path).reset()


def test_reset_purge_failure_still_clears_memory(config_path):
    m = StateManager(config_path)
    m.set_agent_id("test-id")
    m.set_agent_name("test-name")
    m.save()

    with patch("cw_agent.state.persistence.Path.unlink", side_effect=PermissionError(13, "Permission denied")):
        with pytest.raises(StatePurgeError):
            m.reset()

    assert m.has_state() is False
    assert m.file_path.exists()


def test_snapshot_is_a_copy(config_path):
    m = StateManager(config_path)
    m.set_agent_name("prod-1")

    snap = m.snapshot()
    snap.agent_name = "changed"

    assert m.get_agent_name() == "prod-1"


def test_has_name_changed(config_path):
    m = StateManager(config_path)
    assert m.has_name_changed("anything") is False

    m.set_agent_name("production-monitor")
    assert m.has_name_changed("production-monitor") is False
    assert m.has_name_changed("new-monitor") is True


def test_concurrent_access(config_path):
    m = StateManager(config_path)
    errors = []

    def writer(n):
        try:
            for i in range(200):
                m.set_agent_id(f"id-{n}-{i}")
                m.set_agent_name(f"name-{n}")
                if i % 50 == 0:
                    m.save()
        except Exception as e:  # pragma: no cover - surfaced by the assertion below
            errors.append(e)

    def reader():
        try:
            for _ in range(200):
                m.get_agent_id()
                m.get_agent_name()
                m.has_name_changed("test")
                m.has_state()
                snap = m.snapshot()
                assert isinstance(snap.agent_id, str)
        except Exception as e:  # pragma: no cover
            errors.append(e)

    threads = [threading.Thread(target=writer, args=(n,)) for n in range(4)]
    threads += [threading.Thread(target=reader) for _ in range(4)]
    for t in threads:
        t.start()
    for t in threads:
        t.join(timeout=30)

    assert not any(t.is_alive() for t in threads), "deadlock"
    assert errors == []

    # The file holds one complete record from one of the writers
    m.save()
    fresh = StateManager(config_path)
    fresh.load()
    assert fresh.get_agent_id() == m.get_agent_id()
    assert fresh.get_agent_name().startswith("name-")


def test_last_sync_at_survives_clock_stepping_back(config_path):
    m = StateManager(config_path)
    later = datetime(2026, 1, 2, 0, 0, tzinfo=timezone.utc)
    m.set_last_sync_at(later)
    m.save()

    m.set_last_sync_at(datetime(2026, 1, 1, 23, 0, tzinfo=timezone.utc))
    m.save()

    fresh = StateManager(config_path)
    fresh.load()
    assert fresh.get_last_sync_at() == later


def test_last_sync_at_moves_forward(config_path):
    m = StateManager(config_path)
    m.set_last_sync_at(datetime(2026, 1, 1, tzinfo=timezone.utc))
    m.set_last_sync_at(datetime(2026, 1, 2, tzinfo=timezone.utc))
    assert m.get_last_sync_at() == datetime(2026, 1, 2, tzinfo=timezone.utc)


def test_load_rejects_migration_marker_equal_to_agent_id(config_path):
    (config_path.parent / STATE_FILE_NAME).write_text('{"agent_id": "A1", "previous_agent_id": "A1"}')
    m = StateManager(config_path)

    with pytest.raises(StateCorruptedError):
        m.load()

    assert m.get_agent_id() == ""
    assert m.get_previous_agent_id() == ""
