from __future__ import annotations

import json
import os
import threading
import time
from pathlib import Path

import pytest

import hypolab.state_store as state_store
from hypolab.models import StateError
from hypolab.state_store import StateStore, build_session_id


def test_state_path_sanitizes_namespace_and_defaults_key(tmp_path: Path) -> None:
    store = StateStore(tmp_path)

    path = store.state_path("hypolab runners/v1!", "  ")

    assert path.parent == tmp_path / "state"
    assert path.name.startswith("hypolab_runners_v1_-")
    assert path == store.state_path("hypolab runners/v1!", "default")


def test_state_path_truncates_long_namespace(tmp_path: Path) -> None:
    store = StateStore(tmp_path)

    path = store.state_path("n" * 100, "conv")

    prefix, _, digest = path.stem.rpartition("-")
    assert prefix == "n" * 64
    assert len(digest) == 20


def test_build_session_id_is_deterministic() -> None:
    first = build_session_id("hypolab-runners-v1", "conv-1")
    second = build_session_id("hypolab-runners-v1", "conv-1")

    assert first == second
    assert first.startswith("hyp_")
    assert len(first) == len("hyp_") + 28
    assert build_session_id("hypolab-runners-v1", "conv-2") != first


def test_load_missing_state_returns_empty_dict(tmp_path: Path) -> None:
    assert StateStore(tmp_path).load("ns", "key") == {}


def test_load_corrupt_state_is_logged_and_empty(tmp_path: Path) -> None:
    store = StateStore(tmp_path)
    path = store.state_path("ns", "key")
    path.parent.mkdir(parents=True)
    path.write_text("{not json", encoding="utf-8")

    assert store.load("ns", "key") == {}
    log_text = (tmp_path / "logs" / "hypolab.log").read_text(encoding="utf-8")
    assert "state load failed" in log_text


def test_save_writes_versioned_record_and_merges_artifacts(tmp_path: Path) -> None:
    store = StateStore(tmp_path)

    assert store.save("ns", "key", {"step": 1, "artifacts": {"a": {"version": 1}}})
    assert store.save("ns", "key", {"step": 2, "artifacts": {"b": {"version": 1}}})

    record = json.loads(store.state_path("ns", "key").read_text(encoding="utf-8"))
    assert record["version"] == 1
    assert record["namespace"] == "ns"
    assert record["conversationKey"] == "key"
    assert record["updatedAt"]
    assert record["state"]["step"] == 2
    assert record["state"]["artifacts"] == {"a": {"version": 1}, "b": {"version": 1}}
    assert store.load("ns", "key")["step"] == 2


def test_save_leaves_no_temp_files_or_lock(tmp_path: Path) -> None:
    store = StateStore(tmp_path)

    store.save("ns", "key", {"value": "x"})

    leftovers = [path.name for path in (tmp_path / "state").iterdir()]
    assert leftovers == [store.state_path("ns", "key").name]


def test_save_json_roundtrips_state(tmp_path: Path) -> None:
    store = StateStore(tmp_path)

    store.save("ns", "key", {"items": ("a", "b"), "nested": {"n": 1}})

    assert store.load("ns", "key") == {"items": ["a", "b"], "nested": {"n": 1}}


def test_save_times_out_on_held_lock_and_never_raises(tmp_path: Path) -> None:
    store = StateStore(tmp_path, lock_timeout_seconds=0.05)
    path = store.state_path("ns", "key")
    lock_dir = path.with_name(f"{path.name}.lock")
    lock_dir.mkdir(parents=True)

    assert store.save("ns", "key", {"value": 1}) is False
    assert not path.exists()
    log_text = (tmp_path / "logs" / "hypolab.log").read_text(encoding="utf-8")
    assert "Timed out acquiring state lock" in log_text


def test_acquire_lock_takes_over_stale_lock(tmp_path: Path) -> None:
    lock_dir = tmp_path / "state.json.lock"
    lock_dir.mkdir()
    old = time.time() - 120
    os.utime(lock_dir, (old, old))

    state_store._acquire_dir_lock(lock_dir, timeout_seconds=0.2, stale_seconds=45.0)

    assert lock_dir.is_dir()
    state_store._release_dir_lock(lock_dir)
    assert not lock_dir.exists()


def test_acquire_lock_raises_state_error_after_timeout(tmp_path: Path) -> None:
    lock_dir = tmp_path / "state.json.lock"
    lock_dir.mkdir()
    ticks = iter([0.0, 0.01, 5.0])

    with pytest.raises(StateError, match="Timed out acquiring state lock"):
        state_store._acquire_dir_lock(
            lock_dir,
            timeout_seconds=2.0,
            stale_seconds=45.0,
            clock=lambda: next(ticks),
            sleep=lambda _seconds: None,
        )


def test_concurrent_saves_are_mutually_exclusive(tmp_path: Path) -> None:
    store = StateStore(tmp_path)
    errors: list[BaseException] = []

    def _writer(index: int) -> None:
        try:
            store.save("ns", "key", {"artifacts": {f"w{index}": {"version": index}}})
        except BaseException as exc:  # pragma: no cover - surfaced via assertion
            errors.append(exc)

    threads = [threading.Thread(target=_writer, args=(index,)) for index in range(6)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert errors == []
    artifacts = store.load("ns", "key")["artifacts"]
    assert set(artifacts) == {f"w{index}" for index in range(6)}
