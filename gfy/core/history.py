# gfy/core/history.py
from __future__ import annotations
from typing import List, Tuple

from gfy.infra.llm.base import ChatMessage


class ChatHistory:
    """
    Ordered, append-only message log; insertion order is the context order
    sent to the backend. Not thread-safe: the owning session serializes access.
    """

    def __init__(self):
        self._messages: List[ChatMessage] = []

    def append(self, message: ChatMessage) -> None:
        self._messages.append(message)

    def snapshot(self) -> Tuple[ChatMessage, ...]:
        return tuple(self._messages)

    def clear(self) -> None:
        self._messages.clear()

    def __len__(self) -> int:
        return len(self._messages)
