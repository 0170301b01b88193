"""Versioned local JSON artifacts, laid out per app/user/session."""

from __future__ import annotations

import re
import shutil
from pathlib import Path
from typing import Any

from hypolab.constants import ARTIFACT_DIR_NAME
from hypolab.utils import _epoch_ms, _json_roundtrip, _load_json_if_exists, _resolve_config_dir, _sha1_hex, _write_json

_VERSION_FILE_PATTERN = re.compile(r"^v(\d+)\.json$")
_UNSAFE_SEGMENT = re.compile(r"[^a-zA-Z0-9._-]")


def _sanitize_segment(raw: str) -> str:
    normalized = str(raw or "").strip() or "default"
    label = re.sub(r"_+", "_", _UNSAFE_SEGMENT.sub("_", normalized))[:60]
    return f"{label or 'default'}-{_sha1_hex(normalized)[:12]}"


def _user_scoped(filename: str) -> bool:
    return filename.startswith("user:")


class LocalArtifactService:
    """Stores artifacts as ``<root>/<app>/<user>/<session>/<file>/versions/v<n>.json``.

    Filenames prefixed with ``user:`` live under ``<app>/<user>/user/`` and are
    shared across sessions.
    """

    def __init__(self, root: Path | None = None) -> None:
        self.root = root or (_resolve_config_dir() / ARTIFACT_DIR_NAME)

    def session_dir(self, app_name: str, user_id: str, session_id: str) -> Path:
        return self.root / _sanitize_segment(app_name) / _sanitize_segment(user_id) / _sanitize_segment(session_id)

    def _artifact_dir(self, app_name: str, user_id: str, session_id: str, filename: str) -> Path:
        base = self.root / _sanitize_segment(app_name) / _sanitize_segment(user_id)
        if _user_scoped(filename):
            return base / "user" / _sanitize_segment(filename)
        return base / _sanitize_segment(session_id) / _sanitize_segment(filename)

    def list_versions(self, app_name: str, user_id: str, session_id: str, filename: str) -> list[int]:
        versions_dir = self._artifact_dir(app_name, user_id, session_id, filename) / "versions"
        if not versions_dir.is_dir():
            return []
        versions: list[int] = []
        for entry in versions_dir.iterdir():
            match = _VERSION_FILE_PATTERN.match(entry.name)
            if entry.is_file() and match:
                versions.append(int(match.group(1)))
        return sorted(versions)

    def save(self, app_name: str, user_id: str, session_id: str, filename: str, artifact: Any) -> int:
        artifact_dir = self._artifact_dir(app_name, user_id, session_id, filename)
        existing = self.list_versions(app_name, user_id, session_id, filename)
        version = existing[-1] + 1 if existing else 0
        _write_json(
            artifact_dir / "versions" / f"v{version}.json",
            {"version": version, "savedAt": _epoch_ms(), "artifact": _json_roundtrip(artifact)},
        )
        _write_json(
            artifact_dir / "meta.json",
            {
                "filename": filename,
                "appName": app_name,
                "userId": user_id,
                "sessionId": session_id,
                "userScoped": _user_scoped(filename),
            },
        )
        return version

    def load(
        self, app_name: str, user_id: str, session_id: str, filename: str, version: int | None = None
    ) -> Any | None:
        versions = self.list_versions(app_name, user_id, session_id, filename)
        if not versions:
            return None
        selected = versions[-1] if version is None else version
        if selected not in versions:
            return None
        envelope = _load_json_if_exists(
            self._artifact_dir(app_name, user_id, session_id, filename) / "versions" / f"v{selected}.json"
        )
        if not isinstance(envelope, dict):
            return None
        return envelope.get("artifact")

    def list_keys(self, app_name: str, user_id: str, session_id: str) -> list[str]:
        keys: set[str] = set()
        user_dir = self.root / _sanitize_segment(app_name) / _sanitize_segment(user_id) / "user"
        for parent in (self.session_dir(app_name, user_id, session_id), user_dir):
            if not parent.is_dir():
                continue
            for child in parent.iterdir():
                meta = _load_json_if_exists(child / "meta.json") if child.is_dir() else None
                filename = meta.get("filename") if isinstance(meta, dict) else None
                if isinstance(filename, str) and filename.strip():
                    keys.add(filename)
        return sorted(keys)

    def delete(self, app_name: str, user_id: str, session_id: str, filename: str) -> None:
        shutil.rmtree(self._artifact_dir(app_name, user_id, session_id, filename), ignore_errors=True)
