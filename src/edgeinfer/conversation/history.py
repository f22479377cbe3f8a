"""
Conversation History

Role-tagged turns, prompt rendering, and bounded trimming for multi-turn
chat over a plain completion model.

Rendered prompt format:
    System: <system prompt>
    Human: <user message>
    Assistant: <reply>
    ...
    Assistant:
"""

from __future__ import annotations

import json
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Iterable, Optional

from edgeinfer.errors import InvalidArgumentError, InvalidRoleError


class Role(str, Enum):
    """Speaker of a conversation turn."""
    SYSTEM = "system"
    USER = "user"
    ASSISTANT = "assistant"

    @property
    def label(self) -> str:
        return ROLE_LABELS[self]

    @classmethod
    def parse(cls, value: Role | str) -> Role:
        try:
            return cls(value)
        except ValueError:
            raise InvalidRoleError(
                f"Unknown role: {value!r} (expected one of: {', '.join(r.value for r in cls)})"
            ) from None


ROLE_LABELS = {
    Role.SYSTEM: "System",
    Role.USER: "Human",
    Role.ASSISTANT: "Assistant",
}


@dataclass(frozen=True)
class ConversationTurn:
    """A single message in the history."""
    role: Role
    content: str

    def render(self) -> str:
        return f"{self.role.label}: {self.content}"

    def to_dict(self) -> dict:
        return {"role": self.role.value, "content": self.content}

    @classmethod
    def from_dict(cls, d: dict) -> ConversationTurn:
        return cls(role=Role.parse(d["role"]), content=d["content"])


def render_prompt(turns: Iterable[ConversationTurn]) -> str:
    """
    Render turns into a completion prompt ending with an "Assistant:" cue.

    An empty history renders to an empty string.
    """
    lines = [turn.render() for turn in turns]
    if not lines:
        return ""
    lines.append(f"{Role.ASSISTANT.label}:")
    return "\n".join(lines)


class ConversationManager:
    """
    Ordered history of conversation turns.

    Trimming keeps every system turn and the most recent exchanges so the
    prompt stays bounded over a long session without losing the system
    instruction.
    """

    def __init__(
        self,
        system_prompt: Optional[str] = None,
        max_turns_kept: int = 10,
    ):
        """
        Args:
            system_prompt: Optional instruction stored as the first turn
            max_turns_kept: Exchanges (user + assistant pairs) kept by trim()
        """
        if max_turns_kept < 1:
            raise InvalidArgumentError("max_turns_kept must be a positive integer")
        self.max_turns_kept = max_turns_kept
        self._turns: list[ConversationTurn] = []
        if system_prompt:
            self.add_turn(Role.SYSTEM, system_prompt)

    @property
    def turns(self) -> tuple[ConversationTurn, ...]:
        return tuple(self._turns)

    @property
    def system_prompt(self) -> Optional[str]:
        """Content of the first system turn, if any."""
        for turn in self._turns:
            if turn.role is Role.SYSTEM:
                return turn.content
        return None

    def __len__(self) -> int:
        return len(self._turns)

    def add_turn(self, role: Role | str, content: str) -> ConversationTurn:
        turn = ConversationTurn(role=Role.parse(role), content=content)
        self._turns.append(turn)
        return turn

    def add_user(self, content: str) -> ConversationTurn:
        return self.add_turn(Role.USER, content)

    def add_assistant(self, content: str) -> ConversationTurn:
        return self.add_turn(Role.ASSISTANT, content)

    def render_prompt(self) -> str:
        return render_prompt(self._turns)

    def trim(self, max_turns_kept: Optional[int] = None) -> int:
        """
        Drop the oldest non-system turns once the history exceeds
        2 * max_turns_kept entries.

        System turns are all kept and moved to the front; they use up slots,
        so 2 * max_turns_kept - n_system non-system turns survive.

        Returns:
            Number of turns removed
        """
        keep = self.max_turns_kept if max_turns_kept is None else max_turns_kept
        if keep < 1:
            raise InvalidArgumentError("max_turns_kept must be a positive integer")

        limit = 2 * keep
        if len(self._turns) <= limit:
            return 0

        system_turns = [t for t in self._turns if t.role is Role.SYSTEM]
        other_turns = [t for t in self._turns if t.role is not Role.SYSTEM]
        n_recent = max(0, limit - len(system_turns))
        recent = other_turns[len(other_turns) - n_recent:] if n_recent else []

        removed = len(self._turns) - len(system_turns) - len(recent)
        self._turns = system_turns + recent
        return removed

    def clear(self, keep_system: bool = True) -> None:
        if keep_system:
            self._turns = [t for t in self._turns if t.role is Role.SYSTEM]
        else:
            self._turns = []

    # =========================================================================
    # Persistence
    # =========================================================================

    def to_dict(self) -> dict:
        return {
            "max_turns_kept": self.max_turns_kept,
            "turns": [t.to_dict() for t in self._turns],
        }

    @classmethod
    def from_dict(cls, d: dict) -> ConversationManager:
        manager = cls(max_turns_kept=d.get("max_turns_kept", 10))
        for turn in d.get("turns", []):
            manager._turns.append(ConversationTurn.from_dict(turn))
        return manager

    def save(self, path: Path | str) -> None:
        """Write the transcript as JSON."""
        Path(path).write_text(json.dumps(self.to_dict(), indent=2))

    @classmethod
    def load(cls, path: Path | str) -> ConversationManager:
        return cls.from_dict(json.loads(Path(path).read_text()))
