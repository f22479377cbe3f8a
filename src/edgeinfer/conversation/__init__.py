"""
Conversation - Multi-turn prompt state.

Provides:
- ConversationManager: ordered role-tagged history with bounded trimming
- render_prompt: pure rendering of turns into a completion prompt
- ChatSession: one-reply-at-a-time chat driver over an InferenceSession
"""

from .history import (
    Role,
    ROLE_LABELS,
    ConversationTurn,
    ConversationManager,
    render_prompt,
)
from .chat import (
    ChatSession,
    EXIT_COMMANDS,
    is_exit_command,
)

__all__ = [
    "Role",
    "ROLE_LABELS",
    "ConversationTurn",
    "ConversationManager",
    "render_prompt",
    "ChatSession",
    "EXIT_COMMANDS",
    "is_exit_command",
]
