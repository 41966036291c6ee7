"""Shared data models for the completion layer.

Kept apart from completion.py so the conversation package can import them
without pulling in httpx.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any


@dataclass
class HistoryTurn:
    """One role-mapped turn of prompt history."""

    role: str  # "user" or "model"
    content: str


@dataclass
class Completion:
    """Parsed reply from the generative-language API."""

    text: str
    model: str
    usage: dict[str, Any] = field(default_factory=dict)

    @property
    def total_tokens(self) -> int | None:
        return self.usage.get("total_tokens")
