import threading
from typing import Any, Dict, List, Optional

from thop.config import Config, SessionConfig
from thop.errors import (
    ErrorCode, ThopError, cannot_close_local, session_already_exists, session_not_found,
)
from thop.restriction import Checker
from thop.session import ExecuteResult, LocalSession, Session
from thop.ssh import SSHSession
from thop.utils import Logger


def create_session(name: str, config: SessionConfig, logger: Optional[Logger] = None) -> Session:
    if config.type == "ssh":
        return SSHSession(name, config, logger)
    return LocalSession(name, config, logger)


class SessionManager:
    def __init__(self, config: Config, state=None, checker: Optional[Checker] = None, logger: Optional[Logger] = None):
        self.config = config
        self.state = state
        self.checker = checker or Checker()
        self.logger = logger or Logger.quiet()
        self.lock = threading.Lock()

        self.sessions: Dict[str, Session] = {}
        for name, session_config in config.sessions.items():
            self.sessions[name] = create_session(name, session_config, self.logger)

        self.active_session = config.settings.default_session
        if self.active_session not in self.sessions:
            self.active_session = "local"
        if self.state is not None:
            self._restore_from_state()
        self.logger.debug(f"session manager initialized with {len(self.sessions)} sessions")

    def _restore_from_state(self) -> None:
        active = self.state.get_active_session()
        if active in self.sessions:
            self.active_session = active
        for name, entry in self.state.get_all_sessions().items():
            session = self.sessions.get(name)
            if session is None:
                continue
            if entry.get("cwd"):
                try:
                    session.set_cwd(entry["cwd"])
                except ThopError as exc:
                    self.logger.debug(f"failed to restore cwd for session '{name}': {exc}")
            for key, value in (entry.get("env") or {}).items():
                session.set_env(key, str(value))

    def _persist(self, method: str, *args: Any, **kwargs: Any) -> None:
        if self.state is None:
            return
        try:
            getattr(self.state, method)(*args, **kwargs)
        except Exception as exc:
            self.logger.warn(f"state {method} failed: {exc}")

    def _persist_session(self, session: Session, **fields: Any) -> None:
        self._persist(
            "update_session", session.name, type=session.kind, connected=session.is_connected(), **fields
        )

    # ========= Lookup =========
    def get_session(self, name: str) -> Optional[Session]:
        with self.lock:
            return self.sessions.get(name)

    def has_session(self, name: str) -> bool:
        with self.lock:
            return name in self.sessions

    def session_names(self) -> List[str]:
        with self.lock:
            return sorted(self.sessions)

    def get_active_session_name(self) -> str:
        return self.active_session

    def get_active_session(self) -> Session:
        return self._require(self.active_session)

    def _require(self, name: str) -> Session:
        session = self.get_session(name)
        if session is None:
            raise session_not_found(name)
        return session

    # ========= Active session =========
    def set_active_session(self, name: str) -> None:
        self._require(name)
        self.active_session = name
        self._persist("set_active_session", name)

    def switch(self, name: str) -> Session:
        session = self._require(name)
        if session.kind == "ssh" and not session.is_connected():
            self.connect(name)
        self.set_active_session(name)
        self.logger.info(f"switched to session '{name}'")
        return session

    # ========= Connectivity =========
    def connect(self, name: str) -> None:
        session = self._require(name)
        self.logger.info(f"connecting to session '{name}'")
        session.connect()
        self._persist_session(session, cwd=session.get_cwd())

    def disconnect(self, name: str) -> None:
        session = self._require(name)
        if session.kind == "local":
            raise cannot_close_local(name)
        session.disconnect()
        self.logger.info(f"disconnected from session '{name}'")
        self._persist_session(session)

    def close_all(self) -> None:
        with self.lock:
            sessions = list(self.sessions.values())
        for session in sessions:
            if session.kind == "local":
                continue
            try:
                session.disconnect()
            except ThopError as exc:
                self.logger.debug(f"close error for session '{session.name}': {exc}")

    # ========= Execution =========
    def execute(self, command: str) -> ExecuteResult:
        return self.execute_on(self.active_session, command)

    def execute_on(self, name: str, command: str) -> ExecuteResult:
        self.checker.enforce(command)
        session = self._require(name)
        previous_cwd = session.get_cwd()
        result = session.execute(command)
        self._persist_cwd(session, previous_cwd)
        return result

    def _persist_cwd(self, session: Session, previous_cwd: str) -> None:
        cwd = session.get_cwd()
        if cwd and cwd != previous_cwd:
            self._persist_session(session, cwd=cwd)

    # ========= Environment =========
    def set_env(self, key: str, value: str, name: Optional[str] = None) -> None:
        session = self._require(name or self.active_session)
        session.set_env(key, value)
        self._persist_session(session, env=session.get_env())

    def get_env(self, name: Optional[str] = None) -> Dict[str, str]:
        return self._require(name or self.active_session).get_env()

    # ========= Session set =========
    def add_session(self, name: str, session_config: SessionConfig) -> Session:
        with self.lock:
            if name in self.sessions:
                raise session_already_exists(name)
            session = create_session(name, session_config, self.logger)
            self.sessions[name] = session
        self.config.sessions[name] = session_config
        self.logger.info(f"added session '{name}' ({session.kind})")
        return session

    def set_session_password(self, name: str, password: Optional[str]) -> None:
        session = self._require(name)
        if not isinstance(session, SSHSession):
            raise ThopError(
                ErrorCode.INVALID_PARAMETER,
                f"Session '{name}' does not use password authentication",
                session=name,
            )
        session.set_password(password)

    def list_sessions(self) -> List[Dict[str, Any]]:
        with self.lock:
            sessions = sorted(self.sessions.items())
        rows = []
        for name, session in sessions:
            row = {
                "name": name,
                "type": session.kind,
                "connected": session.is_connected(),
                "active": name == self.active_session,
                "cwd": session.get_cwd(),
            }
            if isinstance(session, SSHSession):
                row["host"] = session.host
                row["user"] = session.user
            rows.append(row)
        return rows
