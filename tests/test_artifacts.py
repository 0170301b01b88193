from __future__ import annotations

from pathlib import Path

from hypolab.artifacts import LocalArtifactService


def test_save_assigns_increasing_versions(tmp_path: Path) -> None:
    service = LocalArtifactService(tmp_path)

    first = service.save("App", "user", "session", "runners-result.json", {"n": 1})
    second = service.save("App", "user", "session", "runners-result.json", {"n": 2})

    assert (first, second) == (0, 1)
    assert service.list_versions("App", "user", "session", "runners-result.json") == [0, 1]
    assert service.load("App", "user", "session", "runners-result.json") == {"n": 2}
    assert service.load("App", "user", "session", "runners-result.json", version=0) == {"n": 1}
    assert service.load("App", "user", "session", "runners-result.json", version=7) is None
    assert service.load("App", "user", "session", "missing.json") is None


def test_user_scoped_artifacts_are_shared_across_sessions(tmp_path: Path) -> None:
    service = LocalArtifactService(tmp_path)

    service.save("App", "user", "session-a", "user:profile.json", {"lang": "en"})

    assert service.load("App", "user", "session-b", "user:profile.json") == {"lang": "en"}
    assert service.load("App", "user", "session-b", "profile.json") is None


def test_list_keys_and_delete(tmp_path: Path) -> None:
    service = LocalArtifactService(tmp_path)
    service.save("App", "user", "s1", "runners-events.json", {"events": []})
    service.save("App", "user", "s1", "user:notes.json", ["a"])
    service.save("App", "user", "s2", "other.json", {})

    assert service.list_keys("App", "user", "s1") == ["runners-events.json", "user:notes.json"]

    service.delete("App", "user", "s1", "runners-events.json")

    assert service.list_keys("App", "user", "s1") == ["user:notes.json"]
    assert service.load("App", "user", "s1", "runners-events.json") is None


def test_unsafe_segments_stay_under_root(tmp_path: Path) -> None:
    service = LocalArtifactService(tmp_path / "artifacts")

    service.save("../App", "u/../../x", "s", "../../escape.json", {"ok": True})

    written = list((tmp_path / "artifacts").rglob("v0.json"))
    assert len(written) == 1
    assert not (tmp_path / "escape.json").exists()
