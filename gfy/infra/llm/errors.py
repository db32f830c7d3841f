# gfy/infra/llm/errors.py
from __future__ import annotations
from enum import Enum


class ErrorKind(str, Enum):
    UNREACHABLE = "unreachable"
    MODEL_MISSING = "model_missing"
    NOT_READY = "not_ready"
    BUSY = "busy"
    TRANSPORT = "transport"
    PROTOCOL = "protocol"
    EMPTY_RESPONSE = "empty_response"
    BACKEND = "backend"


class InferenceError(Exception):
    """
    Base for everything the session reports through on_error.
    `terminal` errors mean the session itself is unusable; the rest are per call.
    """
    kind: ErrorKind = ErrorKind.TRANSPORT
    terminal: bool = False

    def __str__(self) -> str:
        msg = super().__str__()
        return msg or self.kind.value


class UnreachableError(InferenceError):
    kind = ErrorKind.UNREACHABLE
    terminal = True


class ModelMissingError(InferenceError):
    kind = ErrorKind.MODEL_MISSING
    terminal = True

    def __init__(self, model: str):
        super().__init__(f"Model '{model}' does not exist on the Ollama server")
        self.model = model


class NotReadyError(InferenceError):
    kind = ErrorKind.NOT_READY


class BusyError(InferenceError):
    kind = ErrorKind.BUSY


class TransportError(InferenceError):
    kind = ErrorKind.TRANSPORT

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code


class ProtocolError(InferenceError):
    kind = ErrorKind.PROTOCOL


class EmptyResponseError(InferenceError):
    kind = ErrorKind.EMPTY_RESPONSE


class BackendError(InferenceError):
    """The backend answered with an {"error": ...} payload."""
    kind = ErrorKind.BACKEND
