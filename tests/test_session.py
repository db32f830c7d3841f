"""InferenceSession: readiness probe, single-flight generation, cancellation."""

import json
import threading

import pytest
import requests

from fakes import FakeHttp, FakeResponse, ndjson, tags_body
from gfy.core.session import InferenceSession, SessionState, StreamState
from gfy.infra.llm.base import Role
from gfy.infra.llm.errors import (
    BusyError, EmptyResponseError, ErrorKind, InferenceError, ModelMissingError, NotReadyError,
    ProtocolError, TransportError, UnreachableError,
)
from gfy.infra.llm.ollama_client import OllamaClient
from gfy.infra.llm.ollama_probe import ServiceProbe
from gfy.infra.llm.options import GenerationOptions

BASE = "http://ollama.test/api"
MODEL = "gemma3:4b"


def token_rec(content, done=False):
    return {"model": MODEL, "message": {"role": "assistant", "content": content}, "done": done}


HI_THERE = ndjson(token_rec("Hi"), token_rec(" there", done=False), {"model": MODEL, "done": True})


def blocking_reply(content):
    return json.dumps({"model": MODEL, "message": {"role": "assistant", "content": content}, "done": True}).encode()


def backend(*models, chat=None):
    http = FakeHttp().route("GET", "/tags", lambda: FakeResponse(body=tags_body(*models)))
    if chat is not None:
        http.route("POST", "/chat", chat)
    return http


class Callbacks:
    def __init__(self):
        self.tokens = []
        self.completed = []
        self.errors = []

    def kwargs(self, stream=True):
        kw = {"on_complete": self.completed.append, "on_error": self.errors.append}
        if stream:
            kw["on_token"] = self.tokens.append
        return kw

    @property
    def settled(self):
        return bool(self.completed or self.errors)


@pytest.fixture
def make_session(qapp):
    created = []

    def _make(http, model=MODEL, **kwargs):
        session = InferenceSession(
            model,
            client=OllamaClient(BASE, session=http),
            probe=ServiceProbe(BASE, session=http),
            **kwargs,
        )
        created.append(session)
        return session
    yield _make
    for s in created:
        s.close()


@pytest.fixture
def ready_session(make_session, pump):
    def _ready(http, **kwargs):
        session = make_session(http, **kwargs)
        assert pump(lambda: session.state in (SessionState.READY, SessionState.FAILED))
        assert session.is_ready(), session.last_initialization_error()
        return session
    return _ready


class TestReadiness:

    def test_reaches_ready(self, make_session, pump):
        states = []
        inits = []
        session = make_session(backend(MODEL), on_initialized=inits.append)
        session.stateChanged.connect(states.append)
        assert session.state is SessionState.PROBING_REACHABILITY
        assert not session.is_ready()

        assert pump(lambda: session.is_ready())
        assert states == [SessionState.PROBING_MODEL, SessionState.READY]
        assert inits == [None]
        assert session.last_initialization_error() is None

    def test_unreachable_is_terminal(self, make_session, pump):
        http = FakeHttp().route("GET", "/tags", requests.ConnectionError("refused"))
        inits = []
        session = make_session(http, on_initialized=inits.append)
        assert pump(lambda: session.state is SessionState.FAILED)

        err = session.last_initialization_error()
        assert isinstance(err, UnreachableError)
        assert err.kind is ErrorKind.UNREACHABLE and err.terminal
        assert inits == [err]
        # Only the reachability probe ran; the model check never happened.
        assert len(http.calls) == 1

    def test_model_missing_is_terminal(self, make_session, pump):
        session = make_session(backend("llama3:8b"), model="gemma3:1b")
        assert pump(lambda: session.state is SessionState.FAILED)
        err = session.last_initialization_error()
        assert isinstance(err, ModelMissingError)
        assert err.model == "gemma3:1b"
        assert "gemma3:1b" in str(err)

    def test_initialized_signal(self, make_session, pump):
        got = []
        session = make_session(backend(MODEL))
        session.initialized.connect(got.append)
        assert pump(lambda: got)
        assert got == [None]

    def test_failed_session_rejects_without_network(self, make_session, pump):
        http = FakeHttp().route("GET", "/tags", requests.ConnectionError("refused"))
        http.route("POST", "/chat", lambda: FakeResponse(body=blocking_reply("nope")))
        session = make_session(http)
        assert pump(lambda: session.state is SessionState.FAILED)

        cb = Callbacks()
        assert session.generate("Hello", **cb.kwargs(stream=False)) is False
        assert cb.errors == [session.last_initialization_error()]
        assert isinstance(cb.errors[0], UnreachableError)
        pump(timeout=0.1)
        assert http.posts() == []
        assert session.state is SessionState.FAILED

    def test_generate_while_probing(self, make_session):
        session = make_session(backend(MODEL, chat=FakeResponse(body=blocking_reply("x"))))
        cb = Callbacks()
        assert session.generate("Hello", **cb.kwargs()) is False
        assert len(cb.errors) == 1
        assert isinstance(cb.errors[0], NotReadyError)
        assert not cb.errors[0].terminal


class TestBlockingGenerate:

    def test_returns_content_verbatim(self, ready_session, pump):
        http = backend(MODEL, chat=FakeResponse(body=blocking_reply("Hello! How can I help?")))
        session = ready_session(http)
        cb = Callbacks()
        assert session.generate("Hello", **cb.kwargs(stream=False)) is True
        assert session.stream_state is StreamState.IN_FLIGHT

        assert pump(lambda: cb.settled)
        assert cb.completed == ["Hello! How can I help?"]
        assert cb.errors == []
        assert session.stream_state is StreamState.IDLE

        body = http.posts()[0]["json"]
        assert body["stream"] is False
        assert body["model"] == MODEL
        assert body["messages"] == [{"role": "user", "content": "Hello"}]

    def test_request_carries_system_and_options(self, ready_session, pump):
        http = backend(MODEL, chat=FakeResponse(body=blocking_reply("ok")))
        session = ready_session(http, system_prompt="You fix grammar.",
                                options=GenerationOptions(temperature=0.2, num_predict=64))
        cb = Callbacks()
        session.generate("teh cat", **cb.kwargs(stream=False))
        assert pump(lambda: cb.settled)
        body = http.posts()[0]["json"]
        assert body["system"] == "You fix grammar."
        assert body["temperature"] == 0.2
        assert body["num_predict"] == 64
        assert "top_k" not in body

    def test_empty_reply_not_recorded(self, ready_session, pump):
        session = ready_session(backend(MODEL, chat=FakeResponse(body=blocking_reply(""))))
        cb = Callbacks()
        session.generate("Hello", **cb.kwargs(stream=False))
        assert pump(lambda: cb.settled)
        assert cb.completed == [""]
        assert [m.role for m in session.history()] == [Role.USER]

    def test_empty_body_error(self, ready_session, pump):
        session = ready_session(backend(MODEL, chat=FakeResponse(body=b"")))
        cb = Callbacks()
        session.generate("Hello", **cb.kwargs(stream=False))
        assert pump(lambda: cb.settled)
        assert len(cb.errors) == 1 and isinstance(cb.errors[0], EmptyResponseError)
        assert cb.completed == []
        assert session.is_ready()

    def test_blank_body_same_error_on_both_paths(self, ready_session, pump):
        session = ready_session(backend(MODEL, chat=lambda: FakeResponse(body=b"\n\n")))
        streamed, blocking = Callbacks(), Callbacks()
        session.generate("Hello", **streamed.kwargs(stream=True))
        assert pump(lambda: streamed.settled)
        session.generate("Hello", **blocking.kwargs(stream=False))
        assert pump(lambda: blocking.settled)
        assert streamed.tokens == [] and streamed.completed == [] and blocking.completed == []
        assert isinstance(streamed.errors[0], EmptyResponseError)
        assert type(streamed.errors[0]) is type(blocking.errors[0])
        assert streamed.errors[0].kind is blocking.errors[0].kind is ErrorKind.EMPTY_RESPONSE


class TestStreamingGenerate:

    def test_tokens_then_completion(self, ready_session, pump):
        session = ready_session(backend(MODEL, chat=lambda: FakeResponse(chunks=[HI_THERE[:9], HI_THERE[9:]])))
        order = []
        done = []
        session.generate(
            "Hello",
            on_token=lambda t: order.append(("token", t)),
            on_complete=lambda text: (order.append(("complete", text)), done.append(text)),
            on_error=lambda e: order.append(("error", e)),
        )
        assert pump(lambda: done)
        pump(timeout=0.1)
        assert order == [("token", "Hi"), ("token", " there"), ("complete", "Hi there")]

    def test_history_holds_exactly_one_turn(self, ready_session, pump):
        session = ready_session(backend(MODEL, chat=lambda: FakeResponse(chunks=[HI_THERE])))
        for prompt in ("first", "second"):
            cb = Callbacks()
            session.generate(prompt, **cb.kwargs())
            assert pump(lambda: cb.settled)
            hist = session.history()
            assert [(m.role, m.content) for m in hist] == [
                (Role.USER, prompt),
                (Role.ASSISTANT, "".join(cb.tokens)),
            ]

    def test_each_call_sends_a_fresh_context(self, ready_session, pump):
        http = backend(MODEL, chat=lambda: FakeResponse(chunks=[HI_THERE]))
        session = ready_session(http)
        for prompt in ("one", "two"):
            cb = Callbacks()
            session.generate(prompt, **cb.kwargs())
            assert pump(lambda: cb.settled)
        assert http.posts()[1]["json"]["messages"] == [{"role": "user", "content": "two"}]

    def test_stream_state_signals(self, ready_session, pump):
        session = ready_session(backend(MODEL, chat=lambda: FakeResponse(chunks=[HI_THERE])))
        states = []
        session.streamStateChanged.connect(states.append)
        cb = Callbacks()
        session.generate("Hello", **cb.kwargs())
        assert pump(lambda: cb.settled)
        assert states == [StreamState.IN_FLIGHT, StreamState.COMPLETING, StreamState.IDLE]

    def test_completion_runs_before_idle(self, ready_session, pump):
        session = ready_session(backend(MODEL, chat=lambda: FakeResponse(chunks=[HI_THERE])))
        seen = []
        session.generate("Hello", on_token=lambda t: None,
                         on_complete=lambda text: seen.append(session.stream_state),
                         on_error=lambda e: None)
        assert pump(lambda: seen)
        assert seen == [StreamState.COMPLETING]
        assert session.stream_state is StreamState.IDLE

    def test_transport_failure_reported_once(self, ready_session, pump):
        session = ready_session(backend(MODEL, chat=requests.ConnectionError("refused")))
        cb = Callbacks()
        session.generate("Hello", **cb.kwargs())
        assert pump(lambda: cb.settled)
        pump(timeout=0.2)
        assert len(cb.errors) == 1
        assert isinstance(cb.errors[0], TransportError)
        assert cb.completed == [] and cb.tokens == []
        assert session.stream_state is StreamState.IDLE
        assert session.is_ready()

    def test_protocol_error_after_tokens(self, ready_session, pump):
        body = ndjson(token_rec("Hi")) + b"garbage\n" + ndjson({"model": MODEL, "done": True})
        session = ready_session(backend(MODEL, chat=lambda: FakeResponse(chunks=[body])))
        cb = Callbacks()
        session.generate("Hello", **cb.kwargs())
        assert pump(lambda: cb.settled)
        pump(timeout=0.2)
        assert cb.tokens == ["Hi"]
        assert cb.completed == []
        assert len(cb.errors) == 1 and isinstance(cb.errors[0], ProtocolError)
        assert cb.errors[0].kind is ErrorKind.PROTOCOL
        assert [m.role for m in session.history()] == [Role.USER]


class TestSingleFlight:

    def test_second_call_is_busy(self, ready_session, pump):
        gate = threading.Event()
        first, rest = HI_THERE.split(b"\n", 1)
        session = ready_session(backend(MODEL, chat=lambda: FakeResponse(chunks=[first + b"\n", rest], gate=gate)))

        cb1 = Callbacks()
        assert session.generate("one", **cb1.kwargs()) is True
        assert pump(lambda: cb1.tokens)

        cb2 = Callbacks()
        assert session.generate("two", **cb2.kwargs()) is False
        assert len(cb2.errors) == 1 and isinstance(cb2.errors[0], BusyError)
        assert cb2.errors[0].kind is ErrorKind.BUSY and not cb2.errors[0].terminal

        gate.set()
        assert pump(lambda: cb1.settled)
        assert cb1.completed == ["Hi there"]
        assert cb1.errors == []
        assert session.history()[0].content == "one"

    def test_busy_during_blocking_call(self, ready_session, pump):
        release = threading.Event()

        def slow_reply():
            release.wait(5)
            return FakeResponse(body=blocking_reply("done"))
        session = ready_session(backend(MODEL, chat=slow_reply))
        cb1, cb2 = Callbacks(), Callbacks()
        session.generate("one", **cb1.kwargs(stream=False))
        session.generate("two", **cb2.kwargs(stream=False))
        assert isinstance(cb2.errors[0], BusyError)
        release.set()
        assert pump(lambda: cb1.settled)
        assert cb1.completed == ["done"]


class TestCancel:

    def test_cancel_mid_stream(self, ready_session, pump):
        gate = threading.Event()
        first, rest = HI_THERE.split(b"\n", 1)
        resp = FakeResponse(chunks=[first + b"\n", rest], gate=gate)
        session = ready_session(backend(MODEL, chat=resp))

        cb = Callbacks()
        session.generate("Hello", **cb.kwargs())
        assert pump(lambda: cb.tokens)
        session.cancel()
        assert session.stream_state is StreamState.IDLE

        gate.set()
        assert pump(lambda: session.broker.is_idle())
        pump(timeout=0.2)
        assert cb.tokens == ["Hi"]
        assert cb.completed == [] and cb.errors == []
        assert resp.closed.is_set()

    def test_cancel_when_idle_is_noop(self, ready_session):
        session = ready_session(backend(MODEL))
        session.cancel()
        session.cancel()
        assert session.stream_state is StreamState.IDLE

    def test_new_request_after_cancel(self, ready_session, pump):
        gate = threading.Event()
        first, rest = HI_THERE.split(b"\n", 1)
        responses = [FakeResponse(chunks=[first + b"\n", rest], gate=gate), FakeResponse(chunks=[HI_THERE])]
        session = ready_session(backend(MODEL, chat=lambda: responses.pop(0)))

        cb1 = Callbacks()
        session.generate("one", **cb1.kwargs())
        assert pump(lambda: cb1.tokens)
        session.cancel()

        cb2 = Callbacks()
        assert session.generate("two", **cb2.kwargs()) is True
        assert pump(lambda: cb2.settled)
        assert cb2.completed == ["Hi there"]
        assert cb1.completed == [] and cb1.errors == []
        assert [m.content for m in session.history()] == ["two", "Hi there"]

    def test_cancel_from_token_callback(self, ready_session, pump):
        session = ready_session(backend(MODEL, chat=lambda: FakeResponse(chunks=[HI_THERE])))
        cb = Callbacks()

        def on_token(tok):
            cb.tokens.append(tok)
            session.cancel()
        session.generate("Hello", on_token=on_token, on_complete=cb.completed.append, on_error=cb.errors.append)
        assert pump(lambda: session.broker.is_idle() and cb.tokens)
        pump(timeout=0.2)
        assert cb.tokens == ["Hi"]
        assert cb.completed == [] and cb.errors == []

    def test_cancel_blocking_call_suppresses_callbacks(self, ready_session, pump):
        release = threading.Event()

        def slow_reply():
            release.wait(5)
            return FakeResponse(body=blocking_reply("late"))
        session = ready_session(backend(MODEL, chat=slow_reply))
        cb = Callbacks()
        session.generate("Hello", **cb.kwargs(stream=False))
        session.cancel()
        release.set()
        assert pump(lambda: session.broker.is_idle())
        pump(timeout=0.2)
        assert cb.completed == [] and cb.errors == []


class TestFromSettings:

    def test_builds_from_config(self, qapp, monkeypatch):
        cfg = {
            "ollama": {"base_url": "http://gpu-box:11434/api", "model": "llama3:8b", "timeout": 30, "probe_timeout": 1},
            "generation": {"temperature": 0.3},
            "prompt": {"system": "be terse", "style": "Regular"},
        }
        monkeypatch.setattr(ServiceProbe, "check_reachable", lambda self: False)
        session = InferenceSession.from_settings(cfg)
        try:
            assert session.model == "llama3:8b"
            assert session.system_prompt == "be terse"
            assert session.options.serialize() == {"temperature": 0.3}
            assert session._client.base_url == "http://gpu-box:11434/api"
            assert session._client.timeout == 30
        finally:
            session.close()

    def test_overrides_win(self, qapp, monkeypatch):
        monkeypatch.setattr(ServiceProbe, "check_reachable", lambda self: False)
        session = InferenceSession.from_settings({"prompt": {"system": "x"}}, model="phi3:mini", system_prompt="y")
        try:
            assert session.model == "phi3:mini"
            assert session.system_prompt == "y"
        finally:
            session.close()


def test_errors_share_one_base():
    for cls in (UnreachableError, BusyError, TransportError, ProtocolError, EmptyResponseError, NotReadyError):
        assert issubclass(cls, InferenceError)
    assert ModelMissingError("m").terminal
