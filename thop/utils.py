import os
import sys
import json
from datetime import datetime
from typing import Any, Dict, Optional, TextIO, Tuple

LOG_LEVELS = {"off": 0, "error": 1, "warn": 2, "info": 3, "debug": 4}


class Logger:
    def __init__(self, level: str = "info", log_file: Optional[str] = None, stream: Optional[TextIO] = None):
        self.level = LOG_LEVELS.get(str(level).lower(), LOG_LEVELS["info"])
        self.log_file = os.path.expanduser(log_file) if log_file else None
        self.stream = stream

    @classmethod
    def quiet(cls) -> "Logger":
        return cls(level="off")

    def _emit(self, level: str, message: str) -> None:
        if LOG_LEVELS[level] > self.level:
            return
        if self.stream is not None:
            print(f"[THOP] {level.upper()} {message}", file=self.stream, flush=True)
        if self.log_file:
            json_line(self.log_file, {"ts": iso_now(), "level": level, "message": message})

    def error(self, message: str) -> None:
        self._emit("error", message)

    def warn(self, message: str) -> None:
        self._emit("warn", message)

    def info(self, message: str) -> None:
        self._emit("info", message)

    def debug(self, message: str) -> None:
        self._emit("debug", message)


def log_error(message: str) -> None:
    print(f"[THOP] {message}", file=sys.stderr, flush=True)


def to_bool(value: Any, default: bool = False) -> bool:
    if value is None:
        return default
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)):
        return bool(value)
    s = str(value).lower().strip()
    if s in ("true", "1", "yes", "on"):
        return True
    if s in ("false", "0", "no", "off"):
        return False
    return default


def iso_now() -> str:
    return datetime.now().isoformat(timespec="milliseconds")


def json_line(path: str, payload: Dict[str, Any]) -> None:
    try:
        directory = os.path.dirname(path)
        if directory:
            os.makedirs(directory, exist_ok=True)
        with open(path, "a", encoding="utf-8") as handle:
            handle.write(json.dumps(payload, ensure_ascii=False) + "\n")
    except OSError as exc:
        log_error(f"log write failed ({path}): {exc}")


def shell_quote(value: str) -> str:
    return "'" + value.replace("'", "'\"'\"'") + "'"


def expand_path(path: str, cwd: str) -> str:
    """Resolve ~ and relative segments against a tracked working directory."""
    path = path.strip()
    if not path or path == "~":
        return os.path.expanduser("~")
    if path.startswith("~/"):
        return os.path.normpath(os.path.join(os.path.expanduser("~"), path[2:]))
    if os.path.isabs(path):
        return os.path.normpath(path)
    return os.path.normpath(os.path.join(cwd, path))


def parse_file_spec(spec: str, default_session: str) -> Tuple[str, str]:
    """Split `session:path` into its parts; a bare path belongs to the default session."""
    if ":" in spec and not spec.startswith("/"):
        session, _, path = spec.partition(":")
        if session and path:
            return session, path
    return default_session, spec
