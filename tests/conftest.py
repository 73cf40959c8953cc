"""Shared fixtures for thop tests."""

import pytest

from thop.config import Config, SessionConfig
from thop.manager import SessionManager
from thop.state import StateManager


@pytest.fixture(autouse=True)
def isolated_home(tmp_path, monkeypatch):
    """Point HOME and the XDG dirs at a temp tree so no real config, state or ssh files are read."""
    home = tmp_path / "home"
    home.mkdir()
    monkeypatch.setenv("HOME", str(home))
    monkeypatch.setenv("XDG_CONFIG_HOME", str(home / ".config"))
    monkeypatch.setenv("XDG_DATA_HOME", str(home / ".local" / "share"))
    for name in ("THOP_CONFIG", "THOP_STATE_FILE", "THOP_LOG_LEVEL", "THOP_DEFAULT_SESSION"):
        monkeypatch.delenv(name, raising=False)
    monkeypatch.setenv("SHELL", "/bin/sh")
    return home


@pytest.fixture
def workdir(tmp_path, monkeypatch):
    """A scratch directory that is also the process cwd."""
    path = tmp_path / "work"
    path.mkdir()
    monkeypatch.chdir(path)
    return path


@pytest.fixture
def config():
    """Config with the implicit local session plus one ssh session."""
    return Config(sessions={
        "prod": SessionConfig(type="ssh", host="prod.example.com", user="deploy", port=22),
    })


@pytest.fixture
def state(tmp_path):
    manager = StateManager(str(tmp_path / "state" / "state.json"))
    manager.load()
    return manager


@pytest.fixture
def manager(config, state, workdir):
    return SessionManager(config, state=state)
