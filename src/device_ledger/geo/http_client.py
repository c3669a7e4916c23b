from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, Optional

import requests

from device_ledger.core.exceptions import ProviderError


@dataclass
class HttpConfig:
    user_agent: str
    connect_timeout: float = 3.0
    read_timeout: float = 5.0


class HttpClient:
    """Thin requests wrapper for provider calls.

    Every request is bounded by (connect, read) timeouts. There is no retry:
    a timeout, transport error, non-2xx status or non-JSON body raises
    ProviderError and the caller moves on to its next provider.
    """

    def __init__(self, cfg: HttpConfig, *, session: Optional[requests.Session] = None):
        self.cfg = cfg
        self.session = session or requests.Session()
        self.session.headers.update({"User-Agent": cfg.user_agent, "Accept": "application/json"})

    def get_json(self, provider: str, url: str, *, params: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        timeout = (self.cfg.connect_timeout, self.cfg.read_timeout)
        try:
            resp = self.session.get(url, params=params, timeout=timeout)
        except requests.Timeout as e:
            raise ProviderError(provider, f"timeout: {e}") from e
        except requests.RequestException as e:
            raise ProviderError(provider, f"request failed: {e}") from e

        if not 200 <= resp.status_code < 300:
            raise ProviderError(provider, f"http {resp.status_code}")
        try:
            data = resp.json()
        except ValueError as e:
            raise ProviderError(provider, "response is not JSON") from e
        if not isinstance(data, dict):
            raise ProviderError(provider, "response is not a JSON object")
        return data

    def close(self) -> None:
        self.session.close()
