"""
Conversation store for Agentic Tab.

Keeps one ordered message history per browser window plus the original
request, and holds each history within a token budget.
"""

import logging
import math
from dataclasses import dataclass, field
from typing import Any, Optional, Union

from .types import Message, TextBlock

logger = logging.getLogger(__name__)

MAX_CONVERSATION_TOKENS = 100_000

# Flat estimate for one image block
IMAGE_TOKEN_ESTIMATE = 1000


def estimate_tokens(message: Message) -> int:
    """Estimate the token count of a message (about four characters per token)."""
    total = 0
    for block in message.blocks:
        if isinstance(block, TextBlock):
            total += math.ceil(len(block.text) / 4)
        else:
            total += IMAGE_TOKEN_ESTIMATE
    return total


@dataclass
class Conversation:
    """Message history of one window."""
    messages: list[Message] = field(default_factory=list)
    original_request: Optional[Message] = None

    @property
    def token_count(self) -> int:
        return sum(estimate_tokens(m) for m in self.messages)


class ConversationStore:
    """Per-window conversation histories.

    Operations never fail on a missing window: an empty conversation is
    created on first access.
    """

    def __init__(self, max_tokens: int = MAX_CONVERSATION_TOKENS):
        self.max_tokens = max_tokens
        self._conversations: dict[int, Conversation] = {}

    def conversation(self, window_id: int) -> Conversation:
        """Get the conversation of a window, creating it if needed."""
        conversation = self._conversations.get(window_id)
        if conversation is None:
            conversation = Conversation()
            self._conversations[window_id] = conversation
        return conversation

    def has_history(self, window_id: int) -> bool:
        conversation = self._conversations.get(window_id)
        return bool(conversation and conversation.messages)

    def set_original_request(self, window_id: int, message: Union[Message, dict]) -> Message:
        """Record the first user message of a conversation.

        Raises:
            InvalidMessage: If the message is malformed
        """
        message = Message.from_dict(message)
        self.conversation(window_id).original_request = message
        return message

    def append_message(self, window_id: int, message: Union[Message, dict]) -> Message:
        """Append a message, trimming the history when an assistant message arrives.

        Raises:
            InvalidMessage: If the message is malformed
        """
        message = Message.from_dict(message)
        conversation = self.conversation(window_id)
        conversation.messages.append(message)
        if message.role == "assistant":
            self._trim(window_id, conversation)
        return message

    def get_messages(self, window_id: int) -> list[Message]:
        """Get the logical message list sent to a backend.

        The original request is prepended unless it equals the first history
        message.
        """
        conversation = self.conversation(window_id)
        messages = list(conversation.messages)
        original = conversation.original_request
        if original is not None and not (messages and messages[0] == original):
            messages.insert(0, original)
        return messages

    def get_history(self, window_id: int, adapter: Any) -> list[dict[str, Any]]:
        """Get the message list in the shape expected by a backend adapter."""
        return adapter.format_messages(self.get_messages(window_id))

    def clear(self, window_id: Optional[int] = None) -> None:
        """Clear one window's conversation, or every conversation."""
        if window_id is None:
            self._conversations.clear()
        else:
            self._conversations.pop(window_id, None)

    def _trim(self, window_id: int, conversation: Conversation) -> None:
        messages = conversation.messages
        total = conversation.token_count
        evicted = 0

        while total > self.max_tokens and len(messages) > 1:
            index = next((i for i, m in enumerate(messages) if not m.pinned), None)
            if index is None:
                break
            total -= estimate_tokens(messages.pop(index))
            evicted += 1

        if evicted:
            logger.info(
                f"Trimmed {evicted} message(s) from window {window_id}; "
                f"history now ~{total} tokens"
            )
