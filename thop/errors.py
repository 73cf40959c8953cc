from enum import Enum
from typing import Any, Dict, Optional


class ErrorCode(str, Enum):
    SESSION_NOT_FOUND = "SESSION_NOT_FOUND"
    SESSION_NOT_CONNECTED = "SESSION_NOT_CONNECTED"
    SESSION_ALREADY_EXISTS = "SESSION_ALREADY_EXISTS"
    NO_ACTIVE_SESSION = "NO_ACTIVE_SESSION"
    CANNOT_CLOSE_LOCAL = "CANNOT_CLOSE_LOCAL"

    CONNECTION_FAILED = "CONNECTION_FAILED"
    CONNECTION_TIMEOUT = "CONNECTION_TIMEOUT"
    CONNECTION_REFUSED = "CONNECTION_REFUSED"
    AUTH_FAILED = "AUTH_FAILED"
    AUTH_KEY_REJECTED = "AUTH_KEY_REJECTED"
    HOST_KEY_UNVERIFIED = "HOST_KEY_UNVERIFIED"
    HOST_KEY_CHANGED = "HOST_KEY_CHANGED"

    COMMAND_FAILED = "COMMAND_FAILED"
    COMMAND_TIMEOUT = "COMMAND_TIMEOUT"
    COMMAND_NOT_FOUND = "COMMAND_NOT_FOUND"
    COMMAND_RESTRICTED = "COMMAND_RESTRICTED"
    PERMISSION_DENIED = "PERMISSION_DENIED"

    MISSING_PARAMETER = "MISSING_PARAMETER"
    INVALID_PARAMETER = "INVALID_PARAMETER"
    NOT_IMPLEMENTED = "NOT_IMPLEMENTED"
    OPERATION_FAILED = "OPERATION_FAILED"

    IO_FAILURE = "IO_FAILURE"
    DIRECTORY_NOT_FOUND = "DIRECTORY_NOT_FOUND"
    NOT_A_DIRECTORY = "NOT_A_DIRECTORY"

    JOB_NOT_FOUND = "JOB_NOT_FOUND"
    JOB_NOT_RUNNING = "JOB_NOT_RUNNING"
    JOB_VANISHED = "JOB_VANISHED"

    CONFIG_INVALID = "CONFIG_INVALID"
    STATE_INVALID = "STATE_INVALID"


RETRYABLE_CODES = frozenset({ErrorCode.CONNECTION_FAILED, ErrorCode.CONNECTION_TIMEOUT})


class ThopError(Exception):
    def __init__(
        self,
        code: ErrorCode,
        message: str,
        session: Optional[str] = None,
        host: Optional[str] = None,
        suggestion: Optional[str] = None,
        retryable: Optional[bool] = None,
    ):
        super().__init__(message)
        self.code = code
        self.message = message
        self.session = session
        self.host = host
        self.suggestion = suggestion
        self.retryable = code in RETRYABLE_CODES if retryable is None else retryable

    def __str__(self) -> str:
        return self.message

    def to_text(self) -> str:
        text = f"[{self.code.value}] {self.message}"
        if self.suggestion:
            text += f"\n\nSuggestion: {self.suggestion}"
        if self.session:
            text += f"\n\nSession: {self.session}"
        return text

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"error": True, "code": self.code.value, "message": self.message}
        if self.session:
            payload["session"] = self.session
        if self.host:
            payload["host"] = self.host
        if self.suggestion:
            payload["suggestion"] = self.suggestion
        if self.retryable:
            payload["retryable"] = True
        return payload

    def to_tool_result(self) -> Dict[str, Any]:
        return {"content": [{"type": "text", "text": self.to_text()}], "isError": True}


class ConfigError(ThopError):
    def __init__(self, message: str):
        super().__init__(ErrorCode.CONFIG_INVALID, message, suggestion="Fix the configuration file and restart")


class StateError(ThopError):
    def __init__(self, message: str):
        super().__init__(ErrorCode.STATE_INVALID, message, suggestion="Remove or repair the state file and restart")


# ========= Constructors for common failures =========
def session_not_found(name: str) -> ThopError:
    return ThopError(
        ErrorCode.SESSION_NOT_FOUND,
        f"Session '{name}' not found",
        session=name,
        suggestion="Use /status to see available sessions or /add-session to create a new one",
    )


def session_not_connected(name: str) -> ThopError:
    return ThopError(
        ErrorCode.SESSION_NOT_CONNECTED,
        f"Session '{name}' is not connected",
        session=name,
        suggestion=f"Use /connect {name} to establish connection",
    )


def session_already_exists(name: str) -> ThopError:
    return ThopError(
        ErrorCode.SESSION_ALREADY_EXISTS,
        f"Session '{name}' already exists",
        session=name,
        suggestion="Choose a different session name",
    )


def no_active_session() -> ThopError:
    return ThopError(
        ErrorCode.NO_ACTIVE_SESSION,
        "No active session",
        suggestion="Use /switch to select a session",
    )


def cannot_close_local(name: str) -> ThopError:
    return ThopError(
        ErrorCode.CANNOT_CLOSE_LOCAL,
        "Cannot close the local session",
        session=name,
        suggestion="Use /switch to change to another session instead",
    )


def missing_parameter(param: str) -> ThopError:
    return ThopError(
        ErrorCode.MISSING_PARAMETER,
        f"Required parameter '{param}' is missing",
        suggestion=f"Provide the '{param}' parameter",
    )


def invalid_parameter(message: str) -> ThopError:
    return ThopError(ErrorCode.INVALID_PARAMETER, message)


def not_implemented(feature: str) -> ThopError:
    return ThopError(
        ErrorCode.NOT_IMPLEMENTED,
        f"{feature} is not yet implemented",
        suggestion="This feature is planned for a future release",
    )


def connection_failed(session: str, host: str, reason: str) -> ThopError:
    return ThopError(
        ErrorCode.CONNECTION_FAILED,
        f"Failed to connect to {host}: {reason}",
        session=session,
        host=host,
        suggestion="Check that the host is reachable and the SSH service is running",
    )


def connection_timeout(session: str, host: str) -> ThopError:
    return ThopError(
        ErrorCode.CONNECTION_TIMEOUT,
        f"Connection to {host} timed out",
        session=session,
        host=host,
        suggestion="Check network connectivity and firewall settings",
    )


def connection_refused(session: str, host: str) -> ThopError:
    return ThopError(
        ErrorCode.CONNECTION_REFUSED,
        f"Connection to {host} refused",
        session=session,
        host=host,
        suggestion="Verify the host and port are correct",
    )


def auth_failed(session: str, host: str) -> ThopError:
    return ThopError(
        ErrorCode.AUTH_FAILED,
        f"Authentication failed for {host}",
        session=session,
        host=host,
        suggestion="Ensure your SSH key is loaded in ssh-agent, or use /auth to provide a password",
    )


def auth_key_rejected(session: str, host: str, key_path: str) -> ThopError:
    return ThopError(
        ErrorCode.AUTH_KEY_REJECTED,
        f"Key {key_path} was rejected by {host}",
        session=session,
        host=host,
        suggestion="Check that the public key is in the remote authorized_keys file",
    )


def host_key_unverified(session: str, host: str) -> ThopError:
    return ThopError(
        ErrorCode.HOST_KEY_UNVERIFIED,
        f"Host key for {host} is not in known_hosts",
        session=session,
        host=host,
        suggestion=f"Run: ssh-keyscan {host} >> ~/.ssh/known_hosts",
    )


def host_key_changed(session: str, host: str) -> ThopError:
    return ThopError(
        ErrorCode.HOST_KEY_CHANGED,
        f"Host key for {host} has changed! This could be a security issue.",
        session=session,
        host=host,
        suggestion="Remove the old key from known_hosts and re-verify",
    )


class CommandRestrictedError(ThopError):
    def __init__(self, command: str, category: str, category_description: str):
        super().__init__(
            ErrorCode.COMMAND_RESTRICTED,
            f"{category_description}: '{command}' is not allowed in restricted mode",
            suggestion="Remove --restricted flag to allow this command, or use a different approach",
        )
        self.command = command
        self.category = category

    def to_dict(self) -> Dict[str, Any]:
        payload = super().to_dict()
        payload["command"] = self.command
        payload["category"] = self.category
        return payload


def directory_not_found(path: str) -> ThopError:
    return ThopError(ErrorCode.DIRECTORY_NOT_FOUND, f"Directory not found: {path}")


def not_a_directory(path: str) -> ThopError:
    return ThopError(ErrorCode.NOT_A_DIRECTORY, f"Not a directory: {path}")


def io_failure(message: str, session: Optional[str] = None) -> ThopError:
    return ThopError(ErrorCode.IO_FAILURE, message, session=session)
