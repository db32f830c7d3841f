# gfy/infra/llm/options.py
from __future__ import annotations
import logging
from dataclasses import dataclass, fields
from typing import Any, Dict, Mapping, Optional

log = logging.getLogger("gfy.options")


@dataclass
class GenerationOptions:
    """
    Sampling/runtime knobs for a chat request. Every field defaults to None,
    meaning "let the backend decide"; only fields that were set are serialized.
    No range checks: the backend rejects what it doesn't like.
    """
    min_p: Optional[float] = None
    mirostat: Optional[int] = None
    mirostat_eta: Optional[float] = None
    mirostat_tau: Optional[float] = None
    num_ctx: Optional[int] = None
    num_predict: Optional[int] = None
    repeat_last_n: Optional[int] = None
    repeat_penalty: Optional[float] = None
    seed: Optional[int] = None
    stop: Optional[str] = None
    temperature: Optional[float] = None
    tfs_z: Optional[float] = None
    top_k: Optional[int] = None
    top_p: Optional[float] = None

    def serialize(self) -> Dict[str, Any]:
        # Field names double as the backend's wire keys.
        return {f.name: getattr(self, f.name) for f in fields(self) if getattr(self, f.name) is not None}

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any] | None) -> "GenerationOptions":
        known = {f.name for f in fields(cls)}
        kwargs: Dict[str, Any] = {}
        for key, value in (data or {}).items():
            if key not in known:
                log.warning("Ignoring unknown generation option %r", key)
                continue
            kwargs[key] = value
        return cls(**kwargs)
