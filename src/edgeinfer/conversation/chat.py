"""
Chat Session

Drives one interactive exchange at a time: record the user's turn, render
the history, stream the model's reply, record it, and trim.
"""

from __future__ import annotations

import logging
from typing import Callable, Optional

from edgeinfer.inference import GenerationResult, StreamChunk
from edgeinfer.inference.engine import InferenceSession
from edgeinfer.inference.sampling import SamplingPolicy

from .history import ConversationManager

logger = logging.getLogger(__name__)

EXIT_COMMANDS = frozenset({"quit", "exit", "bye", ""})


def is_exit_command(user_input: str) -> bool:
    return user_input.strip().lower() in EXIT_COMMANDS


class ChatSession:
    """
    Multi-turn chat over an inference session.

    Usage:
        chat = ChatSession(session, ConversationManager("Be terse."))
        reply = chat.respond("Hi", on_token=lambda t: print(t, end=""))
    """

    def __init__(
        self,
        session: InferenceSession,
        conversation: Optional[ConversationManager] = None,
        max_tokens: int = 200,
        temperature: float = 0.8,
        sampler: Optional[SamplingPolicy] = None,
    ):
        self.session = session
        self.conversation = conversation if conversation is not None else ConversationManager()
        self.max_tokens = max_tokens
        self.temperature = temperature
        self.sampler = sampler

    def respond(
        self,
        user_input: str,
        on_token: Optional[Callable[[str], None]] = None,
    ) -> GenerationResult:
        """
        Add a user turn and generate the assistant's reply.

        Args:
            user_input: The user's message
            on_token: Called with each generated text fragment

        Returns:
            The generation result; its response-only text is stored as the
            assistant turn
        """
        self.conversation.add_user(user_input)
        prompt = self.conversation.render_prompt()

        def forward(chunk: StreamChunk) -> bool:
            if on_token is not None and not chunk.is_final:
                on_token(chunk.token)
            return True

        result = self.session.stream(
            prompt,
            forward,
            max_tokens=self.max_tokens,
            temperature=self.temperature,
            sampler=self.sampler,
        )
        if result.error:
            logger.warning(f"Reply interrupted: {result.error}")

        self.conversation.add_assistant(result.generated_text)
        removed = self.conversation.trim()
        if removed:
            logger.debug(f"Trimmed {removed} old turns from history")
        return result
