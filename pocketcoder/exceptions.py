"""Custom exceptions for pocketcoder."""


class PocketCoderError(Exception):
    """Base exception for pocketcoder."""

    pass


class ConfigurationError(PocketCoderError):
    """Configuration-related errors."""

    pass


class ProviderError(PocketCoderError):
    """Model provider errors."""

    pass


class ProviderInstantiationError(ProviderError):
    """A provider configuration could not be turned into a live adapter."""

    def __init__(self, config_id: str, message: str):
        super().__init__(message)
        self.config_id = config_id


class ProviderAPIError(ProviderError):
    """Provider API errors (HTTP status, auth, transport)."""

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code


class TokenRefreshError(ProviderError):
    """OAuth refresh-token exchange failed."""

    pass


class ToolError(PocketCoderError):
    """Tool execution errors."""

    pass


class ToolExecutionError(ToolError):
    """Tool execution failed."""

    def __init__(self, tool_name: str, message: str):
        super().__init__(f"Tool '{tool_name}' failed: {message}")
        self.tool_name = tool_name


class ToolNotFoundError(ToolError):
    """Tool not found in registry."""

    def __init__(self, tool_name: str):
        super().__init__(f"Unknown tool '{tool_name}'")
        self.tool_name = tool_name


class PathOutsideProjectError(ToolError):
    """A tool path resolved outside the bound project root."""

    def __init__(self, path: str):
        super().__init__(f"Path is outside the project root: {path}")
        self.path = path


class ToolTimeoutError(ToolError):
    """A command exceeded its timeout."""

    def __init__(self, command: str, timeout: float):
        label = int(timeout) if float(timeout).is_integer() else timeout
        super().__init__(f"Command timed out after {label}s")
        self.command = command
        self.timeout = timeout


class SessionError(PocketCoderError):
    """Session-related errors."""

    pass


class SessionNotFoundError(SessionError):
    """Session not found."""

    def __init__(self, session_id: str):
        super().__init__(f"Session not found: {session_id}")
        self.session_id = session_id


class PersistenceError(SessionError):
    """Writing to the message/session store failed."""

    pass


class TurnInProgressError(PocketCoderError):
    """A turn is already running for this orchestrator."""

    pass
