"""Structured result returned by every imperative entry point."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, Optional


@dataclass
class ActionResult:
    ok: bool
    error: Optional[str] = None
    reason: Optional[str] = None
    data: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def success(cls, reason: Optional[str] = None, **data: Any) -> "ActionResult":
        return cls(ok=True, reason=reason, data=data)

    @classmethod
    def failure(cls, error: str, **data: Any) -> "ActionResult":
        return cls(ok=False, error=error, data=data)
