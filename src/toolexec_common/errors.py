from __future__ import annotations

from typing import Any

REDACT_TOKEN = "***redacted***"


def typed_error(code: str, message: str, *, details: Any = None, **extra: Any) -> dict:
    """
    Standard error envelope:
      {"error": {"code": code, "message": message, "details": {...}}, ...extra}
    """
    err: dict[str, Any] = {"error": {"code": code, "message": message}}
    if details:
        err["error"]["details"] = details
    if extra:
        err.update(extra)
    return err


class ToolExecError(Exception):
    """Base class for gateway failures."""


class ServiceUnavailable(ToolExecError):
    """A wrapped server could not be reached, or no server has that name."""


class UnknownCapability(ServiceUnavailable):
    """The server is reachable but does not declare the requested tool."""


class RemoteInvocationError(ToolExecError):
    """The remote server reported an error for one tool call."""

    def __init__(self, message: str, *, service: str | None = None, capability: str | None = None) -> None:
        super().__init__(message)
        self.service = service
        self.capability = capability


class ExecutionTimeout(ToolExecError):
    """A script did not finish before its deadline."""


class PersistenceError(ToolExecError):
    """Writing an oversized result to the workspace failed."""


class WorkspacePathError(ToolExecError, ValueError):
    """A workspace path escapes the workspace root."""
