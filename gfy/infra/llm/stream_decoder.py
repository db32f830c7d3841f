# gfy/infra/llm/stream_decoder.py
"""
Incremental decoder for Ollama's streamed chat body.

The body is newline-delimited JSON, one object per line, e.g.

    {"model": "gemma3:4b", "message": {"role": "assistant", "content": "Hi"}, "done": false}
    {"model": "gemma3:4b", "message": {"role": "assistant", "content": ""}, "done": true, "eval_count": 12}

Network chunks don't respect line boundaries, so bytes are buffered until a
full line is available. A line that isn't a JSON object aborts the stream:
skipping it would silently drop text.
"""
from __future__ import annotations
import json
from typing import Any, Iterator, List, Optional

from .base import StreamFragment, UsageStats
from .errors import BackendError, ProtocolError


def parse_record(obj: Any) -> StreamFragment:
    """Turn one decoded JSON line into a StreamFragment."""
    if not isinstance(obj, dict):
        raise ProtocolError(f"expected a JSON object, got {type(obj).__name__}")
    if obj.get("error"):
        raise BackendError(str(obj["error"]))

    done = obj.get("done", False)
    if not isinstance(done, bool):
        raise ProtocolError(f"'done' must be a boolean, got {done!r}")

    delta: Optional[str] = None
    msg = obj.get("message")
    if msg is not None:
        if not isinstance(msg, dict):
            raise ProtocolError("'message' must be an object")
        content = msg.get("content")
        if content is not None and not isinstance(content, str):
            raise ProtocolError("'message.content' must be a string")
        delta = content

    return StreamFragment(
        model=str(obj.get("model") or ""),
        is_final=done,
        delta=delta,
        created_at=obj.get("created_at"),
        done_reason=obj.get("done_reason") if done else None,
        usage=UsageStats.from_record(obj) if done else None,
    )


class StreamDecoder:
    def __init__(self):
        self._buf = bytearray()
        self._done = False
        self.records = 0

    @property
    def done(self) -> bool:
        return self._done

    def feed(self, chunk: bytes | str) -> Iterator[StreamFragment]:
        """
        Buffer `chunk` and return an iterator over the fragments it completes.
        Fragments come out one by one, so records ahead of a bad line are
        still delivered before the ProtocolError.
        """
        if not self._done:
            if isinstance(chunk, str):
                chunk = chunk.encode("utf-8")
            self._buf.extend(chunk)
        return self._drain()

    def finish(self) -> List[StreamFragment]:
        """Drain what is left, including a trailing record that arrived without its newline."""
        out = list(self._drain())
        if not self._done and self._buf:
            line = bytes(self._buf)
            self._buf.clear()
            frag = self._decode_line(line)
            if frag is not None:
                out.append(frag)
        return out

    def _drain(self) -> Iterator[StreamFragment]:
        while not self._done:
            nl = self._buf.find(b"\n")
            if nl < 0:
                return
            line = bytes(self._buf[:nl])
            del self._buf[:nl + 1]
            frag = self._decode_line(line)
            if frag is not None:
                yield frag

    def _decode_line(self, line: bytes) -> Optional[StreamFragment]:
        line = line.strip()
        if not line:
            return None
        try:
            obj = json.loads(line.decode("utf-8"))
        except (UnicodeDecodeError, ValueError) as exc:
            raise ProtocolError(f"undecodable stream record: {line[:80]!r}") from exc
        frag = parse_record(obj)
        self.records += 1
        if frag.is_final:
            # Anything after the final record is ignored.
            self._done = True
            self._buf.clear()
        return frag
