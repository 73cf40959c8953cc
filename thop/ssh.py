import os
import time
import socket
import getpass
from typing import Any, Dict, List, Optional

import paramiko

from thop.config import (
    BUFFER_SIZE, CHANNEL_POLL_INTERVAL, CONNECT_TIMEOUT, DEFAULT_IDENTITY_FILES,
    DEFAULT_SSH_PORT, KNOWN_HOSTS_PATH, SSH_CONFIG_PATH, SessionConfig,
)
from thop.errors import (
    ThopError, auth_failed, auth_key_rejected, connection_failed, connection_refused,
    connection_timeout, host_key_changed, host_key_unverified, io_failure, session_not_connected,
)
from thop.session import ExecuteResult, Session, cd_segment, is_cd_command
from thop.utils import Logger, shell_quote


def load_ssh_config(path: str = SSH_CONFIG_PATH) -> Optional[paramiko.SSHConfig]:
    path = os.path.expanduser(path)
    if not os.path.exists(path):
        return None
    try:
        return paramiko.SSHConfig.from_path(path)
    except OSError:
        return None


def load_known_hosts(path: str = KNOWN_HOSTS_PATH) -> paramiko.HostKeys:
    host_keys = paramiko.HostKeys()
    path = os.path.expanduser(path)
    if os.path.exists(path):
        try:
            host_keys.load(path)
        except OSError as exc:
            raise io_failure(f"Failed to read known_hosts: {exc}")
    return host_keys


class SSHSession(Session):
    kind = "ssh"

    def __init__(self, name: str, config: SessionConfig, logger: Optional[Logger] = None):
        super().__init__(name, config, logger)
        self.host = config.host or name
        self.user = config.user
        self.port = config.port
        self.identity_file = config.identity_file
        self._resolve_alias()
        self.user = self.user or getpass.getuser()
        self.port = self.port or DEFAULT_SSH_PORT

        self.transport: Optional[paramiko.Transport] = None
        self.password: Optional[str] = None
        self.connected = False

    def _resolve_alias(self) -> None:
        ssh_config = load_ssh_config()
        if ssh_config is None:
            return
        entry = ssh_config.lookup(self.host)
        self.host = entry.get("hostname", self.host)
        if not self.user and entry.get("user"):
            self.user = entry["user"]
        if not self.port and entry.get("port"):
            self.port = int(entry["port"])
        if not self.identity_file and entry.get("identityfile"):
            self.identity_file = entry["identityfile"][0]

    @property
    def address(self) -> str:
        return f"{self.host}:{self.port}"

    def set_password(self, password: Optional[str]) -> None:
        self.password = password

    def is_connected(self) -> bool:
        return self.connected and self.transport is not None and self.transport.is_active()

    # ========= Connection =========
    def connect(self) -> None:
        if self.is_connected():
            return
        self.disconnect()

        sock = self._open_socket()
        transport = paramiko.Transport(sock)
        transport.banner_timeout = CONNECT_TIMEOUT
        transport.auth_timeout = CONNECT_TIMEOUT
        try:
            try:
                transport.start_client(timeout=CONNECT_TIMEOUT)
            except (paramiko.SSHException, EOFError, OSError) as exc:
                raise connection_failed(self.name, self.address, f"SSH handshake failed: {exc}")
            self._verify_host_key(transport)
            self._authenticate(transport)
        except ThopError:
            transport.close()
            raise

        self.transport = transport
        self.connected = True
        self.logger.info(f"[{self.name}] connected to {self.user}@{self.address}")

        self._discover_cwd()
        self._run_startup_commands()

    def _open_socket(self) -> socket.socket:
        try:
            return socket.create_connection((self.host, self.port), timeout=CONNECT_TIMEOUT)
        except socket.timeout:
            raise connection_timeout(self.name, self.address)
        except ConnectionRefusedError:
            raise connection_refused(self.name, self.address)
        except OSError as exc:
            raise connection_failed(self.name, self.address, str(exc))

    def _known_hosts_name(self) -> str:
        if self.port == DEFAULT_SSH_PORT:
            return self.host
        return f"[{self.host}]:{self.port}"

    def _verify_host_key(self, transport: paramiko.Transport) -> None:
        server_key = transport.get_remote_server_key()
        entry = load_known_hosts().lookup(self._known_hosts_name())
        if entry is None or server_key.get_name() not in entry:
            raise host_key_unverified(self.name, self.host)
        if entry[server_key.get_name()].asbytes() != server_key.asbytes():
            raise host_key_changed(self.name, self.host)

    def _try_key(self, transport: paramiko.Transport, key: paramiko.PKey) -> bool:
        try:
            transport.auth_publickey(self.user, key)
        except paramiko.SSHException:
            return False
        return transport.is_authenticated()

    def _agent_keys(self) -> List[paramiko.PKey]:
        try:
            return list(paramiko.Agent().get_keys())
        except (paramiko.SSHException, OSError):
            return []

    def _default_identity_files(self) -> List[str]:
        return [os.path.expanduser(path) for path in DEFAULT_IDENTITY_FILES]

    def _authenticate(self, transport: paramiko.Transport) -> None:
        for key in self._agent_keys():
            if self._try_key(transport, key):
                self.logger.debug(f"[{self.name}] authenticated with agent key")
                return

        if self.identity_file:
            key_path = os.path.expanduser(self.identity_file)
            if os.path.exists(key_path):
                try:
                    key = paramiko.PKey.from_path(key_path)
                    transport.auth_publickey(self.user, key)
                except (paramiko.SSHException, OSError, ValueError) as exc:
                    self.logger.debug(f"[{self.name}] identity file {key_path} failed: {exc}")
                    raise auth_key_rejected(self.name, self.host, key_path)
                if transport.is_authenticated():
                    return
                raise auth_key_rejected(self.name, self.host, key_path)

        for key_path in self._default_identity_files():
            if not os.path.exists(key_path):
                continue
            try:
                key = paramiko.PKey.from_path(key_path)
            except (paramiko.SSHException, OSError, ValueError) as exc:
                self.logger.debug(f"[{self.name}] skipping {key_path}: {exc}")
                continue
            if self._try_key(transport, key):
                return

        if self.password:
            try:
                transport.auth_password(self.user, self.password)
            except paramiko.SSHException as exc:
                self.logger.debug(f"[{self.name}] password auth failed: {exc}")
            if transport.is_authenticated():
                return

        raise auth_failed(self.name, self.host)

    def _discover_cwd(self) -> None:
        try:
            result = self._exec("pwd")
        except ThopError as exc:
            self.logger.warn(f"[{self.name}] could not determine remote cwd: {exc}")
            result = ExecuteResult()
        self.cwd = result.stdout.strip() or "/"

    def _run_startup_commands(self) -> None:
        for command in self.config.startup_commands:
            try:
                result = self.execute(command)
            except ThopError as exc:
                self.logger.warn(f"[{self.name}] startup command failed: {command}: {exc}")
                continue
            if result.exit_code != 0:
                self.logger.warn(f"[{self.name}] startup command exited {result.exit_code}: {command}")

    def disconnect(self) -> None:
        if self.transport is not None:
            try:
                self.transport.close()
            except (paramiko.SSHException, OSError) as exc:
                self.logger.debug(f"[{self.name}] close error: {exc}")
        self.transport = None
        self.connected = False

    # ========= Execution =========
    def _build_command(self, command: str) -> str:
        parts = []
        if self.cwd:
            parts.append(f"cd {shell_quote(self.cwd)}")
        for key, value in self.env.items():
            parts.append(f"export {key}={shell_quote(value)}")
        parts.append(command)
        return " && ".join(parts)

    def _exec(self, command: str) -> ExecuteResult:
        if self.transport is None:
            raise session_not_connected(self.name)
        stdout_chunks: List[bytes] = []
        stderr_chunks: List[bytes] = []
        try:
            channel = self.transport.open_session()
            try:
                channel.exec_command(command)
                while True:
                    has_progress = False
                    if channel.recv_ready():
                        data = channel.recv(BUFFER_SIZE)
                        if data:
                            stdout_chunks.append(data)
                            has_progress = True
                    if channel.recv_stderr_ready():
                        data = channel.recv_stderr(BUFFER_SIZE)
                        if data:
                            stderr_chunks.append(data)
                            has_progress = True
                    if channel.exit_status_ready() and not channel.recv_ready() and not channel.recv_stderr_ready():
                        break
                    if not has_progress:
                        time.sleep(CHANNEL_POLL_INTERVAL)
                exit_code = channel.recv_exit_status()
            finally:
                channel.close()
        except (paramiko.SSHException, EOFError, OSError) as exc:
            if not self.transport.is_active():
                self.connected = False
            raise io_failure(f"Remote command failed: {exc}", session=self.name)

        return ExecuteResult(
            stdout=b"".join(stdout_chunks).decode("utf-8", errors="replace"),
            stderr=b"".join(stderr_chunks).decode("utf-8", errors="replace"),
            exit_code=exit_code,
        )

    def execute(self, command: str) -> ExecuteResult:
        if not self.is_connected():
            raise session_not_connected(self.name)
        self.logger.debug(f"[{self.name}] exec: {command}")
        result = self._exec(self._build_command(command))

        if is_cd_command(command) and result.exit_code == 0:
            refreshed = self._exec(self._build_command(f"{cd_segment(command)} && pwd"))
            lines = refreshed.stdout.strip().splitlines()
            if refreshed.exit_code == 0 and lines:
                self.cwd = lines[-1].strip()
        return result

    def info(self) -> Dict[str, Any]:
        data = super().info()
        data["host"] = self.host
        data["user"] = self.user
        data["port"] = self.port
        return data
