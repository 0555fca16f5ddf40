"""
Unit tests for the append-only EventStore.

Covers version assignment (including concurrent appends), payload
validation, idempotent appends and integrity verification.
"""

import json
import threading

import pytest
from filelock import FileLock

from taskforge.events import EventStore, EventStoreError, EventType


def append_phase(store, task_id="task-1", phase="requirements_analysis", **kwargs):
    return store.append(task_id, EventType.PHASE_STARTED, {"phase": phase}, **kwargs)


class TestAppend:
    def test_versions_start_at_one_and_increase(self, event_store):
        first = append_phase(event_store)
        second = event_store.append("task-1", EventType.PHASE_COMPLETED,
                                    {"phase": "requirements_analysis"}, metadata={"cost": 0.1})

        assert (first.version, second.version) == (1, 2)
        assert second.cost == 0.1
        assert second.checksum == second.compute_checksum()
        assert event_store.last_version("task-1") == 2

    def test_versions_are_per_task(self, event_store):
        append_phase(event_store, "task-1")
        assert append_phase(event_store, "task-2").version == 1

    def test_concurrent_appends_are_contiguous(self, event_store):
        def worker(n):
            for i in range(10):
                event_store.append("task-1", EventType.STORY_STARTED,
                                   {"story_id": f"S{n}-{i}", "developer_id": f"dev-{n}"})

        threads = [threading.Thread(target=worker, args=(n,)) for n in range(5)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        versions = [e.version for e in event_store.get_events("task-1")]
        assert versions == list(range(1, 51))
        assert event_store.verify_integrity("task-1").valid

    def test_missing_required_fields_are_rejected(self, event_store, config):
        with pytest.raises(ValueError, match="target_repository"):
            event_store.append("task-1", EventType.EPIC_CREATED, {"id": "E1", "title": "Health"})
        with pytest.raises(ValueError, match="error"):
            event_store.append("task-1", EventType.TASK_FAILED, {"error": ""})

        assert event_store.get_events("task-1") == []
        assert not (config.events_path / "task-1.jsonl").exists()

    def test_idempotent_append_returns_existing(self, event_store):
        first = append_phase(event_store, idempotent=True)
        again = append_phase(event_store, idempotent=True)

        assert again.version == first.version
        assert again.event_id == first.event_id
        assert len(event_store.get_events("task-1")) == 1

    def test_non_idempotent_append_duplicates(self, event_store):
        append_phase(event_store)
        append_phase(event_store)
        assert event_store.last_version("task-1") == 2

    def test_idempotency_is_scoped_to_the_current_run(self, event_store):
        first = append_phase(event_store, idempotent=True)
        event_store.append("task-1", EventType.TASK_CONTINUED, {"actor": "alice"})

        again = append_phase(event_store, idempotent=True)

        assert again.version == first.version + 2
        assert append_phase(event_store, idempotent=True).version == again.version

    def test_lock_held_elsewhere_times_out(self, config):
        store = EventStore(config.events_path, lock_timeout=0.05)
        append_phase(store)
        holder = FileLock(config.events_path / "task-1.lock")

        with holder:
            with pytest.raises(EventStoreError, match="Timeout acquiring event log lock"):
                append_phase(store, phase="task_breakdown")

        assert store.last_version("task-1") == 1
        assert append_phase(store, phase="task_breakdown").version == 2


class TestQueries:
    def test_since_version(self, event_store):
        for phase in ("a", "b", "c"):
            append_phase(event_store, phase=phase)
        assert [e.payload["phase"] for e in event_store.get_events("task-1", since_version=1)] == ["b", "c"]

    def test_unknown_task_is_empty(self, event_store):
        assert event_store.get_events("nope") == []
        assert event_store.last_version("nope") == 0
        assert event_store.get_current_state("nope").last_version == 0

    def test_statistics_and_history(self, event_store):
        append_phase(event_store)
        event_store.append("task-1", EventType.PHASE_COMPLETED,
                           {"phase": "requirements_analysis"}, metadata={"cost": 0.25})
        stats = event_store.get_statistics("task-1")

        assert stats["total_events"] == 2
        assert stats["events_by_type"] == {"phase.started": 1, "phase.completed": 1}
        assert stats["total_cost"] == 0.25
        assert stats["last_version"] == 2

        history = event_store.get_event_history("task-1")
        assert history[0].startswith("1: phase.started [orchestrator]")


class TestIntegrity:
    def _lines(self, config, task_id="task-1"):
        path = config.events_path / f"{task_id}.jsonl"
        return path, [json.loads(line) for line in path.read_text().splitlines()]

    def _write(self, path, records):
        path.write_text("".join(json.dumps(r) + "\n" for r in records))

    def test_clean_log_is_valid(self, event_store):
        append_phase(event_store)
        report = event_store.verify_integrity("task-1")
        assert report.valid
        assert report.event_count == 1

    def test_gap_and_duplicate_are_reported(self, event_store, config):
        for phase in ("a", "b", "c"):
            append_phase(event_store, phase=phase)
        path, records = self._lines(config)
        records[1]["version"] = 3  # v2 missing, v3 twice
        self._write(path, records)

        issues = event_store.verify_integrity("task-1").issues
        assert "v3: duplicate version" in issues
        assert "v2: missing version (gap)" in issues

    def test_tampered_payload_is_reported(self, event_store, config):
        append_phase(event_store)
        path, records = self._lines(config)
        records[0]["payload"]["phase"] = "auto_merge"
        self._write(path, records)

        report = event_store.verify_integrity("task-1")
        assert not report.valid
        assert "checksum mismatch" in report.issues[0]

    def test_unreadable_line_is_reported(self, event_store, config):
        append_phase(event_store)
        path = config.events_path / "task-1.jsonl"
        with path.open("a") as f:
            f.write("{truncated\n")

        report = event_store.verify_integrity("task-1")
        assert report.event_count == 1
        assert report.issues[0].startswith("line 2: unreadable event")
        # Readers skip the bad line
        assert len(event_store.get_events("task-1")) == 1
