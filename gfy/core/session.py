# gfy/core/session.py
from __future__ import annotations
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, List, Optional, Tuple

from PyQt6.QtCore import QObject, Qt, pyqtSignal

from gfy.constants import DEFAULT_MODEL, DEFAULT_OLLAMA
from gfy.core.history import ChatHistory
from gfy.infra.llm.base import ChatMessage, ChatRequest, ChatResponse, ModelClient, Role, StreamFragment
from gfy.infra.llm.errors import (
    BusyError, InferenceError, ModelMissingError, NotReadyError, ProtocolError, UnreachableError,
)
from gfy.infra.llm.ollama_client import OllamaClient
from gfy.infra.llm.ollama_probe import ServiceProbe
from gfy.infra.llm.options import GenerationOptions
from gfy.infra.llm.thread_broker import ThreadBroker

log = logging.getLogger("gfy.session")

TokenCallback    = Callable[[str], None]
CompleteCallback = Callable[[str], None]
ErrorCallback    = Callable[[InferenceError], None]
InitCallback     = Callable[[Optional[InferenceError]], None]


class SessionState(str, Enum):
    UNINITIALIZED = "uninitialized"
    PROBING_REACHABILITY = "probing_reachability"
    PROBING_MODEL = "probing_model"
    READY = "ready"
    FAILED = "failed"


class StreamState(str, Enum):
    IDLE = "idle"
    IN_FLIGHT = "in_flight"
    COMPLETING = "completing"


@dataclass
class _Call:
    ticket: int
    streaming: bool
    on_token: Optional[TokenCallback]
    on_complete: CompleteCallback
    on_error: ErrorCallback
    chunks: List[str] = field(default_factory=list)


class InferenceSession(QObject):
    """
    One model on one Ollama server, used by one host.

    Construction kicks off the readiness probe (is the server up? is the
    model pulled?) on a worker thread; the session is usable once it reaches
    READY. After that, generate() runs one request at a time: a second call
    while the first is in flight is rejected with BusyError, never queued.

    All state lives on the thread that owns this QObject and only changes in
    its slots, so call generate()/cancel() from that thread and keep its event
    loop running. Each request ends in exactly one of on_complete/on_error,
    unless it is cancelled, in which case neither fires.
    """
    stateChanged       = pyqtSignal(object)   # SessionState
    initialized        = pyqtSignal(object)   # None on success, else the InferenceError
    streamStateChanged = pyqtSignal(object)   # StreamState

    def __init__(
        self,
        model: str = DEFAULT_MODEL,
        *,
        system_prompt: Optional[str] = None,
        options: Optional[GenerationOptions] = None,
        client: Optional[ModelClient] = None,
        probe: Optional[ServiceProbe] = None,
        on_initialized: Optional[InitCallback] = None,
        parent: Optional[QObject] = None,
    ):
        super().__init__(parent)
        self.model = model
        self.system_prompt = system_prompt
        self.options = options or GenerationOptions()
        self._client = client or OllamaClient()
        self._probe = probe or ServiceProbe()
        self._on_initialized = on_initialized

        self._history = ChatHistory()
        self._state = SessionState.UNINITIALIZED
        self._stream_state = StreamState.IDLE
        self._init_error: Optional[InferenceError] = None
        self._call: Optional[_Call] = None
        self._probe_ticket: int = -1

        self.broker = ThreadBroker(self)
        self.broker.job_token.connect(self._on_job_token, Qt.ConnectionType.QueuedConnection)
        self.broker.job_result.connect(self._on_job_result, Qt.ConnectionType.QueuedConnection)
        self.broker.job_error.connect(self._on_job_error, Qt.ConnectionType.QueuedConnection)
        self.broker.job_finished.connect(self._on_job_finished, Qt.ConnectionType.QueuedConnection)

        self._set_state(SessionState.PROBING_REACHABILITY)
        self._probe_ticket = self.broker.submit(self._probe.check_reachable)

    @classmethod
    def from_settings(
        cls,
        cfg: dict,
        *,
        model: Optional[str] = None,
        system_prompt: Optional[str] = None,
        on_initialized: Optional[InitCallback] = None,
        parent: Optional[QObject] = None,
    ) -> "InferenceSession":
        """Build a session from the `ollama`/`generation`/`prompt` sections of app settings."""
        ollama = cfg.get("ollama") or {}
        base_url = ollama.get("base_url") or DEFAULT_OLLAMA
        if system_prompt is None:
            system_prompt = (cfg.get("prompt") or {}).get("system")
        return cls(
            model or ollama.get("model") or DEFAULT_MODEL,
            system_prompt=system_prompt,
            options=GenerationOptions.from_mapping(cfg.get("generation")),
            client=OllamaClient(base_url, timeout=float(ollama.get("timeout", 269))),
            probe=ServiceProbe(base_url, timeout=float(ollama.get("probe_timeout", 2))),
            on_initialized=on_initialized,
            parent=parent,
        )

    # -------- queries --------
    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def stream_state(self) -> StreamState:
        return self._stream_state

    def is_ready(self) -> bool:
        return self._state is SessionState.READY

    def last_initialization_error(self) -> Optional[InferenceError]:
        return self._init_error

    def history(self) -> Tuple[ChatMessage, ...]:
        return self._history.snapshot()

    # -------- requests --------
    def generate(
        self,
        prompt: str,
        *,
        on_complete: CompleteCallback,
        on_error: ErrorCallback,
        on_token: Optional[TokenCallback] = None,
    ) -> bool:
        """
        Send `prompt` as a fresh one-turn conversation. Streams when `on_token`
        is given, otherwise waits for the whole reply. Returns False when the
        call was rejected up front (on_error has already been called).
        """
        if self._state is SessionState.FAILED:
            on_error(self._init_error)
            return False
        if self._state is not SessionState.READY:
            on_error(NotReadyError(f"session is still initializing ({self._state.value})"))
            return False
        if self._stream_state is not StreamState.IDLE:
            on_error(BusyError("a request is already in progress"))
            return False

        # No memory across calls: every request starts from an empty history.
        self._history.clear()
        self._history.append(ChatMessage(role=Role.USER, content=prompt))
        streaming = on_token is not None
        request = self._build_request(streaming)

        if streaming:
            ticket = self.broker.submit_stream(self._client.stream_chat, request)
        else:
            ticket = self.broker.submit(self._client.chat, request)
        self._call = _Call(ticket, streaming, on_token, on_complete, on_error)
        self._set_stream_state(StreamState.IN_FLIGHT)
        log.info("Request %d dispatched (%s, %d chars)", ticket, "stream" if streaming else "blocking", len(prompt))
        return True

    def cancel(self) -> None:
        """Abort the in-flight request; none of its callbacks fire afterwards. No-op when idle."""
        call = self._call
        if self._stream_state is not StreamState.IN_FLIGHT or call is None:
            return
        self._call = None
        self.broker.cancel_ticket(call.ticket)
        self._set_stream_state(StreamState.IDLE)
        log.info("Request %d cancelled", call.ticket)

    def close(self) -> None:
        """Cancel whatever is running and join the worker thread."""
        self.cancel()
        self._probe_ticket = -1
        self.broker.shutdown()

    # -------- internals --------
    def _build_request(self, streaming: bool) -> ChatRequest:
        return ChatRequest(
            model=self.model,
            messages=self._history.snapshot(),
            stream=streaming,
            system=self.system_prompt,
            options=self.options.serialize(),
        )

    def _set_state(self, state: SessionState):
        if state is self._state:
            return
        log.debug("Session %s → %s", self._state.value, state.value)
        self._state = state
        self.stateChanged.emit(state)

    def _set_stream_state(self, state: StreamState):
        if state is self._stream_state:
            return
        self._stream_state = state
        self.streamStateChanged.emit(state)

    def _is_current(self, ticket: int) -> bool:
        return self._call is not None and self._call.ticket == ticket

    # readiness probe
    def _on_probe_result(self, ok: bool):
        self._probe_ticket = -1
        if self._state is SessionState.PROBING_REACHABILITY:
            if not ok:
                self._fail_init(UnreachableError(f"Ollama server is not reachable at {self._probe.base_url}"))
                return
            self._set_state(SessionState.PROBING_MODEL)
            self._probe_ticket = self.broker.submit(self._probe.model_exists, self.model)
        elif self._state is SessionState.PROBING_MODEL:
            if not ok:
                self._fail_init(ModelMissingError(self.model))
                return
            self._set_state(SessionState.READY)
            log.info("Inference session ready (model=%s)", self.model)
            self.initialized.emit(None)
            if self._on_initialized:
                self._on_initialized(None)

    def _fail_init(self, err: InferenceError):
        self._init_error = err
        self._set_state(SessionState.FAILED)
        log.error("Inference session failed: %s", err)
        self.initialized.emit(err)
        if self._on_initialized:
            self._on_initialized(err)

    # terminal transitions for the active call
    def _complete(self, text: str):
        call = self._call
        self._set_stream_state(StreamState.COMPLETING)
        if text:
            self._history.append(ChatMessage(role=Role.ASSISTANT, content=text))
        log.info("Request %d complete (%d chars)", call.ticket, len(text))
        try:
            call.on_complete(text)
        finally:
            self._call = None
            self._set_stream_state(StreamState.IDLE)

    def _fail(self, err: InferenceError):
        call = self._call
        self._set_stream_state(StreamState.COMPLETING)
        log.warning("Request %d failed (%s): %s", call.ticket, err.kind.value, err)
        try:
            call.on_error(err)
        finally:
            self._call = None
            self._set_stream_state(StreamState.IDLE)

    # broker slots
    def _on_job_token(self, ticket: int, frag: StreamFragment):
        if not self._is_current(ticket) or self._stream_state is not StreamState.IN_FLIGHT:
            return
        call = self._call
        if frag.delta:
            call.chunks.append(frag.delta)
            call.on_token(frag.delta)
            if self._call is not call:
                return  # cancelled from inside on_token
        if frag.is_final:
            self._complete("".join(call.chunks))

    def _on_job_result(self, ticket: int, value):
        if ticket == self._probe_ticket:
            self._on_probe_result(bool(value))
        elif self._is_current(ticket) and self._stream_state is StreamState.IN_FLIGHT:
            resp: ChatResponse = value
            self._complete(resp.message.content)

    def _on_job_error(self, ticket: int, exc: Exception):
        if ticket == self._probe_ticket:
            # The probe itself reports failures as False; an exception here is a bug in it.
            self._probe_ticket = -1
            err = UnreachableError(f"readiness probe crashed: {exc}")
            err.__cause__ = exc
            self._fail_init(err)
            return
        if not self._is_current(ticket) or self._stream_state is not StreamState.IN_FLIGHT:
            return
        if not isinstance(exc, InferenceError):
            err = ProtocolError(f"{type(exc).__name__}: {exc}")
            err.__cause__ = exc
            exc = err
        self._fail(exc)

    def _on_job_finished(self, ticket: int, status: str):
        # A worker that ends cleanly without a final record would otherwise leave the call hanging.
        if self._is_current(ticket) and self._stream_state is StreamState.IN_FLIGHT:
            self._fail(ProtocolError(f"request ended ({status}) without a final response"))
