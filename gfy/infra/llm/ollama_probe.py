# gfy/infra/llm/ollama_probe.py
from __future__ import annotations
import logging
from typing import List, Optional
import requests

from gfy.constants import DEFAULT_OLLAMA

log = logging.getLogger("gfy.probe")


class ServiceProbe:
    """
    Read-only health checks against GET /tags. Nothing here raises: every
    failure is logged and reported as False / an empty list.
    """

    def __init__(self, base_url: str = DEFAULT_OLLAMA, timeout: float = 2,
                 session: Optional[requests.Session] = None):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.http = session or requests.Session()

    def check_reachable(self) -> bool:
        try:
            r = self.http.get(f"{self.base_url}/tags", timeout=self.timeout)
        except requests.RequestException as e:
            log.warning("Ollama not reachable at %s (%s)", self.base_url, e)
            return False
        try:
            ok = r.status_code == 200
        finally:
            r.close()
        if not ok:
            log.warning("Ollama answered /tags with HTTP %s", r.status_code)
        return ok

    def list_models(self) -> List[str]:
        try:
            r = self.http.get(f"{self.base_url}/tags", timeout=self.timeout)
            if r.status_code != 200:
                log.warning("Model listing failed: HTTP %s", r.status_code)
                return []
            tags = r.json()
        except (requests.RequestException, ValueError) as e:
            log.warning("Model listing failed (%s)", e)
            return []

        models = tags.get("models") if isinstance(tags, dict) else None
        if not isinstance(models, list):
            log.warning("Unexpected /tags payload; no 'models' list")
            return []
        return [m["name"] for m in models if isinstance(m, dict) and isinstance(m.get("name"), str)]

    def model_exists(self, name: str) -> bool:
        # Exact, case-sensitive: "gemma3:4b" != "gemma3" != "Gemma3:4b".
        names = self.list_models()
        found = name in names
        log.info("Model %s %s (%d models listed)", name, "found" if found else "missing", len(names))
        return found
