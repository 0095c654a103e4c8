from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any


@dataclass(frozen=True)
class RemoteResult:
    success: bool
    output: str = ""
    error: str | None = None
    transport: str = "ssh"
    data: Any = field(default=None, compare=False)

    def as_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"success": self.success, "output": self.output, "transport": self.transport}
        if self.error:
            payload["error"] = self.error
        return payload
