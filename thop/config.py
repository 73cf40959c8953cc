import os
from dataclasses import dataclass, field, asdict
from typing import Any, Dict, List, Optional

import tomli

from thop.errors import ConfigError

# ========= Static config =========
CONNECT_TIMEOUT = 30
BUFFER_SIZE = 32768
CHANNEL_POLL_INTERVAL = 0.02
JOB_POLL_INTERVAL = 0.5
KILLED_EXIT_CODE = 137
DEFAULT_COMMAND_TIMEOUT = 300
DEFAULT_SSH_PORT = 22
DEFAULT_IDENTITY_FILES = ("~/.ssh/id_ed25519", "~/.ssh/id_rsa", "~/.ssh/id_ecdsa")
KNOWN_HOSTS_PATH = "~/.ssh/known_hosts"
SSH_CONFIG_PATH = "~/.ssh/config"

MCP_PROTOCOL_VERSION = "2024-11-05"
MCP_SERVER_NAME = "thop-mcp"

SESSION_TYPES = ("local", "ssh")
SESSION_TYPE_ALIASES = {"remote": "ssh"}


def default_shell() -> str:
    return os.environ.get("SHELL") or "/bin/sh"


def default_state_file() -> str:
    override = os.environ.get("THOP_STATE_FILE")
    if override:
        return override
    data_home = os.environ.get("XDG_DATA_HOME") or os.path.join(os.path.expanduser("~"), ".local", "share")
    return os.path.join(data_home, "thop", "state.json")


def default_config_path() -> str:
    override = os.environ.get("THOP_CONFIG")
    if override:
        return override
    config_home = os.environ.get("XDG_CONFIG_HOME") or os.path.join(os.path.expanduser("~"), ".config")
    return os.path.join(config_home, "thop", "config.toml")


@dataclass
class SessionConfig:
    type: str = "local"
    shell: Optional[str] = None
    host: Optional[str] = None
    user: Optional[str] = None
    port: Optional[int] = None
    identity_file: Optional[str] = None
    startup_commands: List[str] = field(default_factory=list)

    @classmethod
    def from_dict(cls, name: str, data: Dict[str, Any]) -> "SessionConfig":
        if not isinstance(data, dict):
            raise ConfigError(f"session '{name}' must be a table")
        session_type = str(data.get("type", "local")).lower()
        session_type = SESSION_TYPE_ALIASES.get(session_type, session_type)
        if session_type not in SESSION_TYPES:
            raise ConfigError(f"session '{name}' has unknown type '{data.get('type')}'")
        if session_type == "ssh" and not data.get("host"):
            raise ConfigError(f"ssh session '{name}' requires a host")

        port = data.get("port")
        if port is not None:
            try:
                port = int(port)
            except (TypeError, ValueError):
                raise ConfigError(f"session '{name}' has invalid port '{port}'")

        startup = data.get("startup_commands") or []
        if not isinstance(startup, list):
            raise ConfigError(f"session '{name}': startup_commands must be a list")

        return cls(
            type=session_type,
            shell=data.get("shell"),
            host=data.get("host"),
            user=data.get("user"),
            port=port,
            identity_file=data.get("identity_file"),
            startup_commands=[str(cmd) for cmd in startup],
        )


@dataclass
class Settings:
    default_session: str = "local"
    command_timeout: int = DEFAULT_COMMAND_TIMEOUT
    reconnect_attempts: int = 5
    reconnect_backoff_base: int = 2
    log_level: str = "info"
    state_file: str = field(default_factory=default_state_file)
    log_file: Optional[str] = None


# ========= Runtime Configuration =========
class Config:
    def __init__(self, settings: Optional[Settings] = None, sessions: Optional[Dict[str, SessionConfig]] = None):
        self.settings = settings or Settings()
        self.sessions: Dict[str, SessionConfig] = dict(sessions or {})
        self.ensure_local_session()

    def ensure_local_session(self) -> None:
        if "local" not in self.sessions:
            self.sessions["local"] = SessionConfig(type="local", shell=default_shell())

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Config":
        raw_settings = data.get("settings") or {}
        if not isinstance(raw_settings, dict):
            raise ConfigError("[settings] must be a table")
        settings = Settings()
        for key, value in raw_settings.items():
            if not hasattr(settings, key):
                raise ConfigError(f"unknown setting '{key}'")
            setattr(settings, key, value)

        raw_sessions = data.get("sessions") or {}
        if not isinstance(raw_sessions, dict):
            raise ConfigError("[sessions] must be a table")
        sessions = {name: SessionConfig.from_dict(name, value) for name, value in raw_sessions.items()}
        return cls(settings=settings, sessions=sessions)

    @classmethod
    def load(cls, path: Optional[str] = None) -> "Config":
        path = os.path.expanduser(path or default_config_path())
        if not os.path.exists(path):
            config = cls()
        else:
            try:
                with open(path, "rb") as handle:
                    data = tomli.load(handle)
            except tomli.TOMLDecodeError as exc:
                raise ConfigError(f"failed to parse config file {path}: {exc}")
            except OSError as exc:
                raise ConfigError(f"failed to read config file {path}: {exc}")
            config = cls.from_dict(data)
        config.load_from_env()
        return config

    def load_from_env(self) -> None:
        self.settings.state_file = os.environ.get("THOP_STATE_FILE", self.settings.state_file)
        self.settings.log_level = os.environ.get("THOP_LOG_LEVEL", self.settings.log_level)
        self.settings.default_session = os.environ.get("THOP_DEFAULT_SESSION", self.settings.default_session)

    def get_session(self, name: str) -> Optional[SessionConfig]:
        return self.sessions.get(name)

    def session_names(self) -> List[str]:
        return sorted(self.sessions)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "settings": asdict(self.settings),
            "sessions": {name: asdict(session) for name, session in sorted(self.sessions.items())},
        }
