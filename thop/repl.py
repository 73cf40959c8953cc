import sys
import json
import getpass
from typing import Callable, Iterable, List, Optional, TextIO

from thop.config import SessionConfig
from thop.errors import ErrorCode, ThopError, invalid_parameter, session_not_found
from thop.jobs import JobRegistry
from thop.session import ExecuteResult
from thop.utils import Logger, expand_path, parse_file_spec, shell_quote

HEREDOC_MARKER = "THOP_EOF"

HELP_TEXT = """Slash commands:
  /help                      Show this help
  /status                    Show all sessions
  /connect <session>         Connect to a session
  /switch <session>          Switch the active session
  /local                     Switch to the local session
  /close <session>           Close a session
  /env [KEY[=VALUE]]         Show or set session environment
  /auth <session>            Provide a password for a session
  /add-session <name> <host> [user]
                             Add an SSH session
  /read <path>               Print a file from the active session
  /write <path> <content>    Write a file on the active session
  /copy <src> <dst>          Copy between sessions (session:path)
  /bg <command>              Run a command in the background
  /jobs                      List background jobs
  /fg <job_id>               Wait for a job and show its output
  /kill <job_id>             Mark a running job as killed
  /exit                      Leave thop
"""


def usage(text: str) -> ThopError:
    return invalid_parameter(f"usage: {text}")


def heredoc_write_command(path: str, content: str) -> str:
    return f"cat > {shell_quote(path)} << '{HEREDOC_MARKER}'\n{content}\n{HEREDOC_MARKER}"


def write_output(stream: TextIO, text: str) -> None:
    if not text:
        return
    stream.write(text)
    if not text.endswith("\n"):
        stream.write("\n")
    stream.flush()


def report_error(stream: TextIO, exc: ThopError, json_output: bool = False) -> None:
    if json_output:
        stream.write(json.dumps(exc.to_dict()) + "\n")
    else:
        stream.write(f"Error: {exc.message}\n")
        if exc.suggestion:
            stream.write(f"Suggestion: {exc.suggestion}\n")
    stream.flush()


def run_proxy(manager, lines: Optional[Iterable[str]] = None, stdout: Optional[TextIO] = None,
              stderr: Optional[TextIO] = None, json_output: bool = False, verbose: bool = False) -> None:
    """Execute each input line on the active session, copying output straight through."""
    lines = sys.stdin if lines is None else lines
    stdout = stdout or sys.stdout
    stderr = stderr or sys.stderr
    for line in lines:
        command = line.rstrip("\r\n")
        if not command.strip():
            continue
        try:
            result = manager.execute(command)
        except ThopError as exc:
            report_error(stderr, exc, json_output)
            continue
        write_output(stdout, result.stdout)
        write_output(stderr, result.stderr)
        if result.exit_code != 0 and verbose:
            stderr.write(f"[exit code: {result.exit_code}]\n")
            stderr.flush()


class Repl:
    def __init__(self, manager, jobs: JobRegistry, logger: Optional[Logger] = None, json_output: bool = False,
                 stdin: Optional[TextIO] = None, stdout: Optional[TextIO] = None, stderr: Optional[TextIO] = None,
                 password_reader: Callable[[str], str] = getpass.getpass):
        self.manager = manager
        self.jobs = jobs
        self.logger = logger or Logger.quiet()
        self.json_output = json_output
        self.stdin = stdin or sys.stdin
        self.stdout = stdout or sys.stdout
        self.stderr = stderr or sys.stderr
        self.password_reader = password_reader
        self.running = True

    def prompt(self) -> str:
        return f"({self.manager.get_active_session_name()}) $ "

    def print(self, text: str = "") -> None:
        self.stdout.write(text + "\n")
        self.stdout.flush()

    def run(self) -> None:
        self.print("thop - type /help for commands")
        while self.running:
            self.stdout.write(self.prompt())
            self.stdout.flush()
            line = self.stdin.readline()
            if not line:
                self.print()
                break
            self.handle_line(line)
        self.manager.close_all()

    def handle_line(self, line: str) -> None:
        line = line.strip()
        if not line:
            return
        try:
            if line.startswith("/"):
                self.handle_slash_command(line)
            else:
                self.run_command(line)
        except ThopError as exc:
            report_error(self.stderr, exc, self.json_output)

    def run_command(self, command: str) -> ExecuteResult:
        result = self.manager.execute(command)
        write_output(self.stdout, result.stdout)
        write_output(self.stderr, result.stderr)
        return result

    def handle_slash_command(self, line: str) -> None:
        parts = line.split()
        cmd = parts[0].lower()
        args = parts[1:]

        if cmd in ("/help", "/h", "/?"):
            self.stdout.write(HELP_TEXT)
        elif cmd in ("/status", "/s", "/sessions", "/list"):
            self.cmd_status()
        elif cmd in ("/connect", "/c"):
            if not args:
                raise usage("/connect <session>")
            self.manager.connect(args[0])
            self.print(f"Connected to '{args[0]}'")
        elif cmd in ("/switch", "/sw"):
            if not args:
                raise usage("/switch <session>")
            self.cmd_switch(args[0])
        elif cmd in ("/local", "/l"):
            self.cmd_switch("local")
        elif cmd in ("/close", "/disconnect", "/d"):
            if not args:
                raise usage("/close <session>")
            self.cmd_close(args[0])
        elif cmd in ("/exit", "/quit", "/q"):
            self.print("Goodbye!")
            self.running = False
        elif cmd == "/env":
            self.cmd_env(args)
        elif cmd == "/auth":
            if not args:
                raise usage("/auth <session>")
            self.cmd_auth(args[0])
        elif cmd in ("/add-session", "/add"):
            if len(args) < 2:
                raise usage("/add-session <name> <host> [user]")
            self.cmd_add_session(args[0], args[1], args[2] if len(args) > 2 else None)
        elif cmd in ("/read", "/cat"):
            if not args:
                raise usage("/read <path>")
            self.cmd_read(args[0])
        elif cmd == "/write":
            if len(args) < 2:
                raise usage("/write <path> <content>")
            self.cmd_write(args[0], line.split(None, 2)[2])
        elif cmd in ("/copy", "/cp"):
            if len(args) < 2:
                raise usage("/copy <source> <destination>")
            self.cmd_copy(args[0], args[1])
        elif cmd == "/bg":
            if not args:
                raise usage("/bg <command>")
            self.cmd_bg(line.split(None, 1)[1])
        elif cmd == "/jobs":
            self.cmd_jobs()
        elif cmd == "/fg":
            if not args:
                raise usage("/fg <job_id>")
            self.cmd_fg(self._job_id(args[0]))
        elif cmd == "/kill":
            if not args:
                raise usage("/kill <job_id>")
            self.jobs.kill(self._job_id(args[0]))
            self.print(f"Job {args[0]} killed")
        else:
            raise invalid_parameter(f"unknown command: {cmd} (use /help for available commands)")

    @staticmethod
    def _job_id(text: str) -> int:
        try:
            return int(text)
        except ValueError:
            raise invalid_parameter(f"Invalid job ID: {text}")

    # ========= Sessions =========
    def cmd_status(self) -> None:
        sessions = self.manager.list_sessions()
        if self.json_output:
            self.print(json.dumps(sessions, indent=2))
            return
        self.print("Sessions:")
        for row in sessions:
            marker = "*" if row["active"] else " "
            state = "connected" if row["connected"] else "disconnected"
            target = f"{row['user']}@{row['host']}" if row.get("host") else row["type"]
            self.print(f"  {marker} {row['name']:<12} {target:<24} {state:<13} {row['cwd']}")

    def cmd_switch(self, name: str) -> None:
        session = self.manager.switch(name)
        self.print(f"Switched to '{name}' (cwd: {session.get_cwd()})")

    def cmd_close(self, name: str) -> None:
        self.manager.disconnect(name)
        self.print(f"Session '{name}' closed")
        if self.manager.get_active_session_name() == name:
            self.manager.set_active_session("local")
            self.print("Switched to local")

    def cmd_env(self, args: List[str]) -> None:
        name = self.manager.get_active_session_name()
        if not args:
            env = self.manager.get_env()
            if not env:
                self.print(f"No environment variables set for session '{name}'")
                return
            self.print(f"Environment variables for '{name}':")
            for key in sorted(env):
                self.print(f"  {key}={env[key]}")
            return
        if "=" in args[0]:
            key, _, value = " ".join(args).partition("=")
            self.manager.set_env(key.strip(), value)
            self.print(f"Set {key.strip()}={value}")
            return
        value = self.manager.get_env().get(args[0])
        self.print(f"{args[0]}={value}" if value is not None else f"{args[0]} is not set")

    def cmd_auth(self, name: str) -> None:
        if not self.manager.has_session(name):
            raise session_not_found(name)
        password = self.password_reader(f"Password for {name}: ")
        self.manager.set_session_password(name, password or None)
        self.print(f"Password set for '{name}' (kept in memory only)")

    def cmd_add_session(self, name: str, host: str, user: Optional[str]) -> None:
        self.manager.add_session(name, SessionConfig(type="ssh", host=host, user=user))
        self.print(f"Added session '{name}' ({host})")

    # ========= Files =========
    def _read_file(self, session_name: str, path: str) -> str:
        session = self.manager.get_session(session_name)
        if session is None:
            raise session_not_found(session_name)
        if session.kind == "local":
            try:
                with open(expand_path(path, session.get_cwd()), "r", encoding="utf-8", errors="replace") as handle:
                    return handle.read()
            except OSError as exc:
                raise ThopError(ErrorCode.IO_FAILURE, f"Failed to read file: {exc}", session=session_name)
        result = self.manager.execute_on(session_name, f"cat {shell_quote(path)}")
        if result.exit_code != 0:
            raise ThopError(ErrorCode.IO_FAILURE, f"Failed to read file: {result.stderr.strip()}",
                            session=session_name)
        return result.stdout

    def _write_file(self, session_name: str, path: str, content: str) -> None:
        session = self.manager.get_session(session_name)
        if session is None:
            raise session_not_found(session_name)
        if session.kind == "local":
            try:
                with open(expand_path(path, session.get_cwd()), "w", encoding="utf-8") as handle:
                    handle.write(content)
            except OSError as exc:
                raise ThopError(ErrorCode.IO_FAILURE, f"Failed to write file: {exc}", session=session_name)
            return
        result = self.manager.execute_on(session_name, heredoc_write_command(path, content))
        if result.exit_code != 0:
            raise ThopError(ErrorCode.IO_FAILURE, f"Failed to write file: {result.stderr.strip()}",
                            session=session_name)

    def cmd_read(self, path: str) -> None:
        write_output(self.stdout, self._read_file(self.manager.get_active_session_name(), path))

    def cmd_write(self, path: str, content: str) -> None:
        self._write_file(self.manager.get_active_session_name(), path, content)
        self.print(f"Written {len(content)} bytes to {path}")

    def _resolve_copy_session(self, name: str) -> str:
        active = self.manager.get_active_session_name()
        if name == "remote":
            if self.manager.get_active_session().kind == "local":
                raise invalid_parameter("no remote session active - use session name instead")
            return active
        if not self.manager.has_session(name):
            raise session_not_found(name)
        return name

    def cmd_copy(self, src: str, dst: str) -> None:
        active = self.manager.get_active_session_name()
        src_session, src_path = parse_file_spec(src, active)
        dst_session, dst_path = parse_file_spec(dst, active)
        src_session = self._resolve_copy_session(src_session)
        dst_session = self._resolve_copy_session(dst_session)

        if self.manager.get_session(src_session).kind == "local" and \
                self.manager.get_session(dst_session).kind == "local":
            raise invalid_parameter("both source and destination are local - use regular cp command")

        content = self._read_file(src_session, src_path)
        self._write_file(dst_session, dst_path, content)
        self.print(f"Copied {src_session}:{src_path} to {dst_session}:{dst_path} ({len(content)} bytes)")

    # ========= Background jobs =========
    def cmd_bg(self, command: str) -> None:
        self.manager.checker.enforce(command)
        job_id = self.jobs.submit(command, self.manager.get_active_session_name())
        self.print(f"[{job_id}] Started in background: {command}")

    def cmd_jobs(self) -> None:
        jobs = self.jobs.list()
        if self.json_output:
            self.print(json.dumps([job.to_dict() for job in jobs], indent=2))
            return
        if not jobs:
            self.print("No background jobs")
            return
        self.print("Background jobs:")
        for job in jobs:
            if job.status == "running":
                status = f"running ({job.duration:.0f}s)"
            elif job.status == "completed":
                status = f"completed (exit {job.exit_code}, {job.duration:.1f}s)"
            else:
                status = f"failed ({job.duration:.1f}s)"
            command = job.command if len(job.command) <= 40 else job.command[:37] + "..."
            self.print(f"  [{job.id}] {job.session:<12} {status}  {command}")

    def cmd_fg(self, job_id: int) -> None:
        job = self.jobs.wait(job_id)
        self.print(f"Job {job_id} ({job.status}):")
        write_output(self.stdout, job.stdout)
        write_output(self.stderr, job.stderr)
