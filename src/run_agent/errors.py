"""Caller-facing error types."""

from __future__ import annotations


class RunAgentError(RuntimeError):
    """Error rendered to the caller with a stable machine code and optional hint."""

    def __init__(self, message: str, *, code: str = "error", hint: str | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.code = code
        self.hint = hint

    def to_dict(self) -> dict[str, str | None]:
        return {"code": self.code, "message": self.message, "hint": self.hint}


class CallerError(RunAgentError):
    """Bad arguments or unresolvable references. Raised before any run is created."""
