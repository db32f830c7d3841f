# gfy/infra/llm/base.py
from __future__ import annotations
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Iterator, Optional, Tuple


class Role(str, Enum):
    USER = "user"
    ASSISTANT = "assistant"
    SYSTEM = "system"


@dataclass(frozen=True, slots=True)
class ChatMessage:
    role: Role
    content: str

    def to_wire(self) -> Dict[str, str]:
        return {"role": self.role.value, "content": self.content}


@dataclass(frozen=True, slots=True)
class UsageStats:
    """Timing/count fields the backend attaches to its final record (durations in ns)."""
    total_duration: Optional[int] = None
    load_duration: Optional[int] = None
    prompt_eval_count: Optional[int] = None
    prompt_eval_duration: Optional[int] = None
    eval_count: Optional[int] = None
    eval_duration: Optional[int] = None

    FIELDS = ("total_duration", "load_duration", "prompt_eval_count",
              "prompt_eval_duration", "eval_count", "eval_duration")

    @classmethod
    def from_record(cls, obj: Dict[str, Any]) -> Optional["UsageStats"]:
        vals = {k: obj.get(k) for k in cls.FIELDS if isinstance(obj.get(k), int)}
        return cls(**vals) if vals else None


@dataclass(frozen=True, slots=True)
class StreamFragment:
    model: str
    is_final: bool
    delta: Optional[str] = None          # message.content, when the record carried one
    created_at: Optional[str] = None
    done_reason: Optional[str] = None
    usage: Optional[UsageStats] = None


@dataclass(frozen=True, slots=True)
class ChatRequest:
    model: str
    messages: Tuple[ChatMessage, ...]
    stream: bool
    system: Optional[str] = None
    options: Dict[str, Any] = field(default_factory=dict)

    def to_wire(self) -> Dict[str, Any]:
        # Generation options sit at the top level of the body, next to model/messages.
        body: Dict[str, Any] = {
            "model": self.model,
            "messages": [m.to_wire() for m in self.messages],
            "stream": self.stream,
        }
        if self.system is not None:
            body["system"] = self.system
        body.update(self.options)
        return body


@dataclass(frozen=True, slots=True)
class ChatResponse:
    model: str
    message: ChatMessage
    done_reason: Optional[str] = None
    usage: Optional[UsageStats] = None


class ModelClient:
    """Abstract client."""
    def stream_chat(self, request: ChatRequest) -> Iterator[StreamFragment]:
        raise NotImplementedError

    def chat(self, request: ChatRequest) -> ChatResponse:
        raise NotImplementedError
