"""Operation descriptors submitted for auto-approval."""

from __future__ import annotations

import hashlib
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Mapping, Optional

from .errors import APG_E_BAD_REQUEST, gateway_error


class OperationType(Enum):
    READ = "read"
    WRITE = "write"
    EXECUTE = "execute"
    DELETE = "delete"
    BROWSER = "browser"
    MCP = "mcp"
    MODE_SWITCH = "mode_switch"
    SUBTASK = "subtask"
    FOLLOWUP = "followup"
    TODO_UPDATE = "todo_update"
    RESUBMIT = "resubmit"

    @classmethod
    def parse(cls, value: str) -> Optional["OperationType"]:
        try:
            return cls(value)
        except ValueError:
            return None


# Accepted input spellings -> field name
_FIELD_ALIASES = {
    "type": "type",
    "filePath": "file_path",
    "file_path": "file_path",
    "command": "command",
    "userId": "user_id",
    "user_id": "user_id",
    "sessionId": "session_id",
    "session_id": "session_id",
    "id": "id",
}


@dataclass(frozen=True)
class OperationDescriptor:
    """A pending agent action.

    ``type`` is a plain string on purpose: descriptors with an unknown type
    must still reach the engine so they can be denied instead of rejected.
    """

    type: str
    file_path: Optional[str] = None
    command: Optional[str] = None
    user_id: Optional[str] = None
    session_id: Optional[str] = None
    id: Optional[str] = None

    @property
    def operation_type(self) -> Optional[OperationType]:
        return OperationType.parse(self.type)

    @property
    def rate_limit_key(self) -> str:
        return f"{self.type}:{self.user_id or 'default'}"

    def summary(self) -> Dict[str, Any]:
        return {
            "type": self.type,
            "filePath": self.file_path,
            "command": self.command,
            "userId": self.user_id,
            "sessionId": self.session_id,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "OperationDescriptor":
        if not isinstance(data, Mapping):
            raise gateway_error(APG_E_BAD_REQUEST, "operation must be a JSON object")
        kwargs: Dict[str, Any] = {}
        for key, value in data.items():
            name = _FIELD_ALIASES.get(str(key))
            if name is None or value is None:
                continue
            kwargs[name] = str(value)
        if "type" not in kwargs:
            raise gateway_error(APG_E_BAD_REQUEST, "operation type is required")
        return cls(**kwargs)


def generate_operation_id(operation: OperationDescriptor, now_ms: int) -> str:
    """Short correlation id for audit linking. Not unique, not secret."""
    data = f"{operation.type}_{operation.command or operation.file_path or ''}_{now_ms}"
    return hashlib.md5(data.encode("utf-8"), usedforsecurity=False).hexdigest()[:8]
