import os
import copy
import json
import tempfile
import threading
from typing import Any, Dict

from thop.errors import StateError
from thop.utils import iso_now


def _default_document(active_session: str) -> Dict[str, Any]:
    return {"active_session": active_session, "sessions": {}, "updated_at": iso_now()}


class StateManager:
    """JSON-file backed record of the active session and per-session connected/cwd/env."""

    def __init__(self, path: str, default_session: str = "local"):
        self.path = os.path.expanduser(path)
        self.default_session = default_session
        self.lock = threading.Lock()
        self.data = _default_document(default_session)

    def load(self) -> None:
        with self.lock:
            if not os.path.exists(self.path):
                self.data = _default_document(self.default_session)
                self._write()
                return
            try:
                with open(self.path, "r", encoding="utf-8") as handle:
                    data = json.load(handle)
            except json.JSONDecodeError as exc:
                raise StateError(f"state file {self.path} is corrupt: {exc}")
            except OSError as exc:
                raise StateError(f"failed to read state file {self.path}: {exc}")
            if not isinstance(data, dict):
                raise StateError(f"state file {self.path} must contain a JSON object")
            data.setdefault("active_session", self.default_session)
            sessions = data.setdefault("sessions", {})
            if not isinstance(sessions, dict):
                raise StateError(f"state file {self.path}: 'sessions' must be an object")
            self.data = data

    def save(self) -> None:
        with self.lock:
            self._write()

    def _write(self) -> None:
        self.data["updated_at"] = iso_now()
        directory = os.path.dirname(self.path) or "."
        os.makedirs(directory, exist_ok=True)
        fd, tmp_path = tempfile.mkstemp(prefix=".state-", suffix=".tmp", dir=directory)
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                json.dump(self.data, handle, indent=2, ensure_ascii=False)
            os.chmod(tmp_path, 0o600)
            os.replace(tmp_path, self.path)
        except OSError:
            if os.path.exists(tmp_path):
                os.unlink(tmp_path)
            raise

    def _session_entry(self, name: str) -> Dict[str, Any]:
        sessions = self.data.setdefault("sessions", {})
        return sessions.setdefault(name, {"type": "", "connected": False, "cwd": "", "env": {}})

    def get_active_session(self) -> str:
        with self.lock:
            return self.data.get("active_session") or self.default_session

    def set_active_session(self, name: str) -> None:
        with self.lock:
            self.data["active_session"] = name
            self._write()

    def update_session(self, name: str, **fields: Any) -> None:
        """Merge type/connected/cwd/env into one session entry with a single write."""
        with self.lock:
            entry = self._session_entry(name)
            for key, value in fields.items():
                entry[key] = dict(value) if key == "env" else value
            self._write()

    def set_session_connected(self, name: str, connected: bool) -> None:
        self.update_session(name, connected=connected)

    def set_session_cwd(self, name: str, cwd: str) -> None:
        self.update_session(name, cwd=cwd)

    def set_session_env(self, name: str, env: Dict[str, str]) -> None:
        self.update_session(name, env=env)

    def get_all_sessions(self) -> Dict[str, Dict[str, Any]]:
        with self.lock:
            return copy.deepcopy(self.data.get("sessions", {}))

    def snapshot(self) -> Dict[str, Any]:
        with self.lock:
            return copy.deepcopy(self.data)
