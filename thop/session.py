import os
import re
import subprocess
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Dict, Optional

from thop.config import SessionConfig, default_shell
from thop.errors import directory_not_found, io_failure, not_a_directory
from thop.utils import Logger, expand_path, shell_quote

COMMAND_SEPARATOR = re.compile(r"&&|\|\||[;|&]")


@dataclass
class ExecuteResult:
    stdout: str = ""
    stderr: str = ""
    exit_code: int = 0


def is_cd_command(command: str) -> bool:
    trimmed = command.strip()
    return trimmed == "cd" or trimmed.startswith("cd ")


def cd_target(command: str) -> str:
    return command.strip()[2:].strip()


def cd_segment(command: str) -> str:
    """The leading `cd ...` of a command, up to the first separator."""
    return COMMAND_SEPARATOR.split(command.strip(), 1)[0].strip()


class Session(ABC):
    """A named command target. Exactly two kinds exist: local and ssh."""

    kind = ""

    def __init__(self, name: str, config: SessionConfig, logger: Optional[Logger] = None):
        self.name = name
        self.config = config
        self.logger = logger or Logger.quiet()
        self.cwd = ""
        self.env: Dict[str, str] = {}

    @abstractmethod
    def is_connected(self) -> bool:
        ...

    @abstractmethod
    def connect(self) -> None:
        ...

    @abstractmethod
    def disconnect(self) -> None:
        ...

    @abstractmethod
    def execute(self, command: str) -> ExecuteResult:
        ...

    def get_cwd(self) -> str:
        return self.cwd

    def set_cwd(self, path: str) -> None:
        self.cwd = path

    def get_env(self) -> Dict[str, str]:
        return dict(self.env)

    def set_env(self, key: str, value: str) -> None:
        self.env[key] = value

    def info(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "type": self.kind,
            "connected": self.is_connected(),
            "cwd": self.cwd,
            "environment": self.get_env(),
        }


class LocalSession(Session):
    kind = "local"

    def __init__(self, name: str, config: SessionConfig, logger: Optional[Logger] = None):
        super().__init__(name, config, logger)
        self.shell = config.shell or default_shell()
        try:
            self.cwd = os.getcwd()
        except OSError:
            self.cwd = os.path.expanduser("~")

    def is_connected(self) -> bool:
        return True

    def connect(self) -> None:
        pass

    def disconnect(self) -> None:
        pass

    def set_cwd(self, path: str) -> None:
        resolved = expand_path(path, self.cwd)
        if not os.path.exists(resolved):
            raise directory_not_found(resolved)
        if not os.path.isdir(resolved):
            raise not_a_directory(resolved)
        self.cwd = resolved

    def execute(self, command: str) -> ExecuteResult:
        if is_cd_command(command):
            return self._change_directory(cd_target(command))
        return self._run(command)

    def _child_env(self) -> Dict[str, str]:
        env = dict(os.environ)
        env.update(self.env)
        return env

    def _run(self, command: str) -> ExecuteResult:
        self.logger.debug(f"[{self.name}] exec: {command}")
        try:
            proc = subprocess.run(
                [self.shell, "-c", command],
                cwd=self.cwd,
                env=self._child_env(),
                stdin=subprocess.DEVNULL,
                capture_output=True,
            )
        except OSError as exc:
            raise io_failure(f"failed to run command: {exc}", session=self.name)
        return ExecuteResult(
            stdout=proc.stdout.decode("utf-8", errors="replace"),
            stderr=proc.stderr.decode("utf-8", errors="replace"),
            # Negative return codes mean the child was killed by a signal.
            exit_code=proc.returncode if proc.returncode is not None else -1,
        )

    def _change_directory(self, target: str) -> ExecuteResult:
        path = expand_path(target, self.cwd)
        if not os.path.exists(path):
            return ExecuteResult(stderr=f"cd: {target or path}: No such file or directory\n", exit_code=1)
        if not os.path.isdir(path):
            return ExecuteResult(stderr=f"cd: {target or path}: Not a directory\n", exit_code=1)

        result = self._run(f"cd {shell_quote(path)} && pwd -P")
        new_cwd = result.stdout.strip()
        if result.exit_code != 0 or not new_cwd:
            return ExecuteResult(stderr=result.stderr, exit_code=1)
        self.cwd = new_cwd
        return ExecuteResult()
