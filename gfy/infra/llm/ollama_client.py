# gfy/infra/llm/ollama_client.py
from __future__ import annotations
import json, logging, threading
from typing import Any, Dict, Iterator, Optional
import requests

from gfy.constants import DEFAULT_OLLAMA
from .base import ChatMessage, ChatRequest, ChatResponse, ModelClient, Role, StreamFragment, UsageStats
from .errors import BackendError, EmptyResponseError, ProtocolError, TransportError
from .stream_decoder import StreamDecoder

log = logging.getLogger("gfy.transport")


def _raise_for_status(r: requests.Response) -> None:
    if 200 <= r.status_code < 300:
        return
    try:
        detail = r.json().get("error") or r.reason
    except Exception:
        detail = (r.text or r.reason or "").strip()[:200]
    raise TransportError(f"HTTP {r.status_code}: {detail}", status_code=r.status_code)


class ChatStream:
    """
    One streamed /chat call. Iterate it (once) for StreamFragments; call
    cancel() from any thread to drop the connection. After cancel() the
    iterator ends quietly instead of raising.
    """

    def __init__(self, http: requests.Session, url: str, payload: Dict[str, Any], timeout: float):
        self._http = http
        self._url = url
        self._payload = payload
        self._timeout = timeout
        self._response: Optional[requests.Response] = None
        self._lock = threading.Lock()
        self._cancelled = threading.Event()

    @property
    def cancelled(self) -> bool:
        return self._cancelled.is_set()

    def cancel(self) -> None:
        self._cancelled.set()
        with self._lock:
            r = self._response
        if r is not None:
            try:
                r.close()
            except Exception as e:
                log.debug("Closing cancelled stream raised %s", e)

    def __iter__(self) -> Iterator[StreamFragment]:
        return self._iterate()

    def _iterate(self) -> Iterator[StreamFragment]:
        if self.cancelled:
            return
        try:
            r = self._http.post(self._url, json=self._payload, stream=True, timeout=self._timeout)
        except requests.RequestException as exc:
            raise TransportError(f"chat request failed: {exc}") from exc
        with self._lock:
            self._response = r
        try:
            if self.cancelled:
                return
            _raise_for_status(r)
            decoder = StreamDecoder()
            received = 0
            for chunk in r.iter_content(chunk_size=None):
                if self.cancelled:
                    return
                if not chunk:
                    continue
                received += len(chunk)
                yield from decoder.feed(chunk)
                if decoder.done:
                    break
            if self.cancelled:
                return
            if not decoder.done:
                yield from decoder.finish()
            if not decoder.done:
                # Blank lines alone count as no body, same as the blocking path.
                if decoder.records == 0:
                    raise EmptyResponseError("backend returned an empty body")
                raise ProtocolError("stream ended before the final record")
            log.debug("Stream finished after %d records (%d bytes)", decoder.records, received)
        except requests.RequestException as exc:
            if self.cancelled:
                return
            raise TransportError(f"stream interrupted: {exc}") from exc
        except (AttributeError, ValueError, OSError) as exc:
            # A response closed under a reading thread fails in assorted ways.
            if self.cancelled:
                return
            raise TransportError(f"stream interrupted: {exc}") from exc
        finally:
            r.close()


class OllamaClient(ModelClient):
    def __init__(self, base_url: str = DEFAULT_OLLAMA, timeout: float = 269,
                 session: Optional[requests.Session] = None):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.http = session or requests.Session()

    def stream_chat(self, request: ChatRequest) -> ChatStream:
        payload = request.to_wire()
        payload["stream"] = True
        log.info("POST %s/chat (stream) model=%s messages=%d", self.base_url, request.model, len(request.messages))
        return ChatStream(self.http, f"{self.base_url}/chat", payload, self.timeout)

    def chat(self, request: ChatRequest) -> ChatResponse:
        payload = request.to_wire()
        payload["stream"] = False
        url = f"{self.base_url}/chat"
        log.info("POST %s model=%s messages=%d", url, request.model, len(request.messages))
        try:
            r = self.http.post(url, json=payload, timeout=self.timeout)
        except requests.RequestException as exc:
            raise TransportError(f"chat request failed: {exc}") from exc

        _raise_for_status(r)
        raw = r.content or b""
        if not raw.strip():
            raise EmptyResponseError("backend returned an empty body")
        try:
            obj = json.loads(raw)
        except ValueError as exc:
            raise ProtocolError("response body is not valid JSON") from exc
        if not isinstance(obj, dict):
            raise ProtocolError(f"expected a JSON object, got {type(obj).__name__}")
        if obj.get("error"):
            raise BackendError(str(obj["error"]))

        msg = obj.get("message")
        content = msg.get("content") if isinstance(msg, dict) else None
        if not isinstance(content, str):
            raise ProtocolError("response has no message.content")
        return ChatResponse(
            model=str(obj.get("model") or request.model),
            message=ChatMessage(role=Role.ASSISTANT, content=content),
            done_reason=obj.get("done_reason"),
            usage=UsageStats.from_record(obj),
        )
