"""Data models shared by the execution paths and the tool surface.

- ExecutionResult: normalized outcome of a local or remote command
- HistoryEntry: one recorded execution
- ToolResponse: what a tool call hands back to the calling agent
"""
from __future__ import annotations

from typing import Any, Dict, Optional

from pydantic import BaseModel, ConfigDict, Field

# Exit code reported when a process ends without one (signal, timeout, error)
ABNORMAL_EXIT_CODE = -1


class ExecutionResult(BaseModel):
    """Result from a command execution."""

    stdout: str
    stderr: str
    exit_code: int
    truncated: bool = False  # True if output exceeded the in-memory cap
    output_file: Optional[str] = None  # Spill file holding the full stdout
    working_directory: Optional[str] = None

    @property
    def succeeded(self) -> bool:
        return self.exit_code == 0


class HistoryEntry(BaseModel):
    """A recorded command execution (serialized with camelCase keys)."""

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    command: str
    output: str
    timestamp: str
    exit_code: int = Field(alias="exitCode")
    connection_id: Optional[str] = Field(default=None, alias="connectionId")


class ToolResponse(BaseModel):
    text: str
    is_error: bool = False
    metadata: Dict[str, Any] = Field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"text": self.text, "isError": self.is_error}
        if self.metadata:
            payload["metadata"] = self.metadata
        return payload


__all__ = [
    "ABNORMAL_EXIT_CODE",
    "ExecutionResult",
    "HistoryEntry",
    "ToolResponse",
]
