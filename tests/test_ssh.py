"""Tests for the SSH session transport.

paramiko's Transport, the key agent and socket creation are replaced with fakes,
so no network connection is ever opened.
"""

import socket
from unittest.mock import Mock

import paramiko
import pytest

from thop import ssh as ssh_module
from thop.config import SessionConfig
from thop.errors import ErrorCode, ThopError
from thop.ssh import SSHSession, load_known_hosts


class FakeChannel:
    def __init__(self, stdout=b"", stderr=b"", exit_code=0):
        self._stdout = stdout
        self._stderr = stderr
        self._exit_code = exit_code
        self.command = None
        self.closed = False

    def exec_command(self, command):
        self.command = command

    def recv_ready(self):
        return bool(self._stdout)

    def recv(self, size):
        data, self._stdout = self._stdout[:size], self._stdout[size:]
        return data

    def recv_stderr_ready(self):
        return bool(self._stderr)

    def recv_stderr(self, size):
        data, self._stderr = self._stderr[:size], self._stderr[size:]
        return data

    def exit_status_ready(self):
        return True

    def recv_exit_status(self):
        return -1 if self._exit_code is None else self._exit_code

    def close(self):
        self.closed = True


class FakeSSH:
    """Scripted remote end shared by every fake transport created during a test."""

    def __init__(self):
        self.server_key = Mock()
        self.server_key.get_name.return_value = "ssh-ed25519"
        self.server_key.asbytes.return_value = b"server-key"
        self.accepted_keys = []
        self.password = None
        self.responses = {"pwd": (b"/home/deploy\n", b"", 0)}
        self.default_response = (b"", b"", 0)
        self.transports = []
        self.commands = []

    def respond(self, command):
        self.commands.append(command)
        return self.responses.get(command, self.default_response)

    def transport_factory(self, sock):
        transport = FakeTransport(self, sock)
        self.transports.append(transport)
        return transport


class FakeTransport:
    def __init__(self, remote, sock):
        self.remote = remote
        self.sock = sock
        self.authenticated = False
        self.active = True
        self.banner_timeout = None
        self.auth_timeout = None

    def start_client(self, timeout=None):
        pass

    def get_remote_server_key(self):
        return self.remote.server_key

    def auth_publickey(self, username, key):
        if key not in self.remote.accepted_keys:
            raise paramiko.AuthenticationException("key rejected")
        self.authenticated = True
        return []

    def auth_password(self, username, password):
        if password != self.remote.password:
            raise paramiko.AuthenticationException("bad password")
        self.authenticated = True
        return []

    def is_authenticated(self):
        return self.authenticated

    def is_active(self):
        return self.active

    def open_session(self):
        return ScriptedChannel(self.remote)

    def close(self):
        self.active = False


class ScriptedChannel(FakeChannel):
    def __init__(self, remote):
        super().__init__()
        self.remote = remote

    def exec_command(self, command):
        super().exec_command(command)
        self._stdout, self._stderr, self._exit_code = self.remote.respond(command)


class FakeHostKeys:
    def __init__(self, entries):
        self.entries = entries
        self.looked_up = []

    def lookup(self, hostname):
        self.looked_up.append(hostname)
        return self.entries.get(hostname)


class FakeAgent:
    def __init__(self, keys):
        self.keys = keys

    def get_keys(self):
        return tuple(self.keys)


@pytest.fixture
def remote(monkeypatch):
    remote = FakeSSH()
    monkeypatch.setattr(ssh_module.socket, "create_connection", lambda address, timeout=None: Mock())
    monkeypatch.setattr(paramiko, "Transport", remote.transport_factory)
    agent_key = Mock(name="agent-key")
    remote.agent_key = agent_key
    monkeypatch.setattr(paramiko, "Agent", lambda: FakeAgent([agent_key]))
    remote.host_keys = FakeHostKeys({"prod.example.com": {"ssh-ed25519": remote.server_key}})
    monkeypatch.setattr(ssh_module, "load_known_hosts", lambda path=None: remote.host_keys)
    return remote


def make_session(**overrides):
    values = {"type": "ssh", "host": "prod.example.com", "user": "deploy", "port": 22}
    values.update(overrides)
    return SSHSession("prod", SessionConfig(**values))


class TestConnect:
    """Test connection, handshake and idempotence."""

    def test_connect_with_agent_key(self, remote):
        """Should authenticate with an agent key and discover cwd."""
        remote.accepted_keys = [remote.agent_key]
        session = make_session()
        session.connect()
        assert session.is_connected()
        assert session.get_cwd() == "/home/deploy"
        assert remote.transports[0].banner_timeout == 30

    def test_starts_disconnected(self, remote):
        """Should not be connected before connect()."""
        assert make_session().is_connected() is False

    def test_connect_twice_does_not_rehandshake(self, remote):
        """Should return early when already connected."""
        remote.accepted_keys = [remote.agent_key]
        session = make_session()
        session.connect()
        session.connect()
        assert len(remote.transports) == 1

    def test_disconnect_is_idempotent(self, remote):
        """Should allow disconnect on a disconnected session, twice."""
        remote.accepted_keys = [remote.agent_key]
        session = make_session()
        session.disconnect()
        session.connect()
        session.disconnect()
        session.disconnect()
        assert session.is_connected() is False
        assert remote.transports[0].active is False

    def test_startup_commands_run(self, remote):
        """Should run configured startup commands once after connecting."""
        remote.accepted_keys = [remote.agent_key]
        session = make_session(startup_commands=["source ~/.profile"])
        session.connect()
        assert remote.commands[-1] == "cd '/home/deploy' && source ~/.profile"


class TestConnectFailures:
    """Test failure classification during connect."""

    def _connect_error(self, session):
        with pytest.raises(ThopError) as info:
            session.connect()
        return info.value

    def test_timeout(self, remote, monkeypatch):
        """Should classify socket timeout as retryable CONNECTION_TIMEOUT."""
        def timeout(address, timeout=None):
            raise socket.timeout("timed out")
        monkeypatch.setattr(ssh_module.socket, "create_connection", timeout)
        error = self._connect_error(make_session())
        assert error.code is ErrorCode.CONNECTION_TIMEOUT
        assert error.retryable is True

    def test_refused(self, remote, monkeypatch):
        """Should classify refused connections."""
        def refused(address, timeout=None):
            raise ConnectionRefusedError("refused")
        monkeypatch.setattr(ssh_module.socket, "create_connection", refused)
        error = self._connect_error(make_session())
        assert error.code is ErrorCode.CONNECTION_REFUSED
        assert error.retryable is False

    def test_dns_failure(self, remote, monkeypatch):
        """Should classify other socket errors as CONNECTION_FAILED."""
        def unresolvable(address, timeout=None):
            raise socket.gaierror("Name or service not known")
        monkeypatch.setattr(ssh_module.socket, "create_connection", unresolvable)
        error = self._connect_error(make_session())
        assert error.code is ErrorCode.CONNECTION_FAILED
        assert error.retryable is True

    def test_handshake_failure(self, remote, monkeypatch):
        """Should classify protocol negotiation errors as CONNECTION_FAILED."""
        def broken_start(timeout=None):
            raise paramiko.SSHException("Error reading SSH protocol banner")
        monkeypatch.setattr(FakeTransport, "start_client", lambda self, timeout=None: broken_start(timeout))
        error = self._connect_error(make_session())
        assert error.code is ErrorCode.CONNECTION_FAILED

    def test_host_key_unverified(self, remote):
        """Should reject a host missing from known_hosts and close the transport."""
        remote.host_keys.entries = {}
        remote.accepted_keys = [remote.agent_key]
        error = self._connect_error(make_session())
        assert error.code is ErrorCode.HOST_KEY_UNVERIFIED
        assert "ssh-keyscan prod.example.com" in error.suggestion
        assert remote.transports[0].active is False

    def test_host_key_changed(self, remote):
        """Should reject a different key with a security warning."""
        stored = Mock()
        stored.asbytes.return_value = b"old-key"
        remote.host_keys.entries = {"prod.example.com": {"ssh-ed25519": stored}}
        error = self._connect_error(make_session())
        assert error.code is ErrorCode.HOST_KEY_CHANGED
        assert "security issue" in error.message

    def test_nonstandard_port_lookup(self, remote):
        """Should look up [host]:port for ports other than 22."""
        remote.host_keys.entries = {"[prod.example.com]:2222": {"ssh-ed25519": remote.server_key}}
        remote.accepted_keys = [remote.agent_key]
        session = make_session(port=2222)
        session.connect()
        assert remote.host_keys.looked_up == ["[prod.example.com]:2222"]


class TestAuthentication:
    """Test the authentication fallback order."""

    def test_identity_file_rejected(self, remote, isolated_home, monkeypatch):
        """Should surface a rejected configured key immediately."""
        key_path = isolated_home / "deploy_key"
        key_path.write_text("fake")
        monkeypatch.setattr(paramiko.PKey, "from_path", lambda path: Mock(name="file-key"))
        with pytest.raises(ThopError) as info:
            make_session(identity_file=str(key_path)).connect()
        assert info.value.code is ErrorCode.AUTH_KEY_REJECTED

    def test_identity_file_accepted(self, remote, isolated_home, monkeypatch):
        """Should use the configured key when the agent has none that work."""
        key_path = isolated_home / "deploy_key"
        key_path.write_text("fake")
        file_key = Mock(name="file-key")
        remote.accepted_keys = [file_key]
        monkeypatch.setattr(paramiko.PKey, "from_path", lambda path: file_key)
        session = make_session(identity_file=str(key_path))
        session.connect()
        assert session.is_connected()

    def test_default_identity_files(self, remote, isolated_home, monkeypatch):
        """Should skip unreadable default keys and accept a later one."""
        ssh_dir = isolated_home / ".ssh"
        ssh_dir.mkdir()
        (ssh_dir / "id_ed25519").write_text("broken")
        (ssh_dir / "id_rsa").write_text("good")
        rsa_key = Mock(name="rsa-key")
        remote.accepted_keys = [rsa_key]

        def from_path(path):
            if path.endswith("id_ed25519"):
                raise paramiko.SSHException("not a valid key")
            return rsa_key

        monkeypatch.setattr(paramiko.PKey, "from_path", from_path)
        session = make_session()
        session.connect()
        assert session.is_connected()

    def test_password_fallback(self, remote):
        """Should try an in-memory password last."""
        remote.password = "s3cret"
        session = make_session()
        session.set_password("s3cret")
        session.connect()
        assert session.is_connected()

    def test_nothing_works(self, remote):
        """Should fail with AUTH_FAILED when every method fails."""
        with pytest.raises(ThopError) as info:
            make_session().connect()
        assert info.value.code is ErrorCode.AUTH_FAILED
        assert remote.transports[0].active is False

    def test_agent_unavailable(self, remote, monkeypatch):
        """Should swallow agent errors and continue."""
        def broken_agent():
            raise paramiko.SSHException("no agent")
        monkeypatch.setattr(paramiko, "Agent", broken_agent)
        remote.password = "pw"
        session = make_session()
        session.set_password("pw")
        session.connect()
        assert session.is_connected()


class TestExecute:
    """Test stateless remote execution."""

    @pytest.fixture
    def session(self, remote):
        remote.accepted_keys = [remote.agent_key]
        session = make_session()
        session.connect()
        return session

    def test_not_connected(self, remote):
        """Should raise SESSION_NOT_CONNECTED before connect."""
        with pytest.raises(ThopError) as info:
            make_session().execute("ls")
        assert info.value.code is ErrorCode.SESSION_NOT_CONNECTED

    def test_builds_prefixed_command(self, remote, session):
        """Should prefix cd and exports before the user command."""
        session.set_env("FOO", "bar baz")
        session.execute("ls")
        assert remote.commands[-1] == "cd '/home/deploy' && export FOO='bar baz' && ls"

    def test_captures_streams_and_exit(self, remote, session):
        """Should return stdout, stderr and exit status."""
        remote.default_response = (b"out\n", b"err\n", 2)
        result = session.execute("false")
        assert (result.stdout, result.stderr, result.exit_code) == ("out\n", "err\n", 2)

    def test_missing_exit_status(self, remote, session):
        """Should report -1 when the remote never sends an exit status."""
        remote.default_response = (b"", b"", None)
        assert session.execute("true").exit_code == -1

    def test_cd_refreshes_cwd(self, remote, session):
        """Should re-run pwd after a successful cd."""
        remote.responses["cd '/home/deploy' && cd /var/log && pwd"] = (b"/var/log\n", b"", 0)
        result = session.execute("cd /var/log")
        assert result.exit_code == 0
        assert session.get_cwd() == "/var/log"
        session.execute("ls")
        assert remote.commands[-1] == "cd '/var/log' && ls"

    def test_compound_cd_runs_rest_once(self, remote, session):
        """Should refresh cwd from the cd part alone, never re-sending the rest of the command."""
        remote.responses["cd '/home/deploy' && cd /srv && pwd"] = (b"/srv\n", b"", 0)
        session.execute("cd /srv && ./deploy.sh")
        assert [command for command in remote.commands if "./deploy.sh" in command] == [
            "cd '/home/deploy' && cd /srv && ./deploy.sh",
        ]
        assert remote.commands[-1] == "cd '/home/deploy' && cd /srv && pwd"
        assert session.get_cwd() == "/srv"

    def test_failed_cd_keeps_cwd(self, remote, session):
        """Should not refresh cwd when cd fails."""
        remote.responses["cd '/home/deploy' && cd /nope"] = (b"", b"cd: /nope: No such file or directory\n", 1)
        result = session.execute("cd /nope")
        assert result.exit_code == 1
        assert session.get_cwd() == "/home/deploy"
        assert not any(command.endswith("&& pwd") for command in remote.commands[1:])

    def test_info_includes_host(self, session):
        """Should describe the remote target."""
        info = session.info()
        assert info["type"] == "ssh"
        assert info["host"] == "prod.example.com"
        assert info["user"] == "deploy"


class TestHostResolution:
    """Test ~/.ssh/config and known_hosts loading."""

    def test_ssh_config_alias(self, isolated_home):
        """Should resolve HostName, User, Port and IdentityFile from ~/.ssh/config."""
        ssh_dir = isolated_home / ".ssh"
        ssh_dir.mkdir()
        (ssh_dir / "config").write_text(
            "Host web\n"
            "    HostName web.internal.example.com\n"
            "    User admin\n"
            "    Port 2200\n"
            "    IdentityFile ~/.ssh/web_key\n"
        )
        session = SSHSession("web", SessionConfig(type="ssh", host="web"))
        assert session.host == "web.internal.example.com"
        assert session.user == "admin"
        assert session.port == 2200
        assert session.identity_file.endswith("web_key")

    def test_explicit_values_win(self, isolated_home):
        """Should keep values set in the session config."""
        ssh_dir = isolated_home / ".ssh"
        ssh_dir.mkdir()
        (ssh_dir / "config").write_text("Host web\n    User admin\n    Port 2200\n")
        session = SSHSession("web", SessionConfig(type="ssh", host="web", user="me", port=22))
        assert (session.user, session.port) == ("me", 22)

    def test_known_hosts_missing_is_empty(self, isolated_home):
        """Should return an empty store when no known_hosts exists."""
        assert load_known_hosts().lookup("anything") is None

    def test_known_hosts_loaded(self, isolated_home):
        """Should load entries from an OpenSSH known_hosts file."""
        key = paramiko.RSAKey.generate(2048)
        ssh_dir = isolated_home / ".ssh"
        ssh_dir.mkdir()
        (ssh_dir / "known_hosts").write_text(f"[box]:2222 {key.get_name()} {key.get_base64()}\n")
        entry = load_known_hosts().lookup("[box]:2222")
        assert entry is not None
        assert entry[key.get_name()].asbytes() == key.asbytes()
