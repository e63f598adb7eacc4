# Overview: BYOK credential lookup for cloud vision providers.

"""
Key Resolver (bring your own key)

Provider API keys live in a separate credential service, never in this
application's database. Lookups go over HTTP with a strict timeout and a
short in-process cache.

    GET {KEY_SERVICE_URL}/api/keys/{provider}  ->  200 {"key": "..."} | 404

A missing key is a normal outcome (None), not an error. When the credential
service is unset or unreachable, OPENAI_API_KEY / ANTHROPIC_API_KEY from the
environment are used instead. Keys are never logged.
"""

from __future__ import annotations

import logging
import os
import threading
import time
from typing import Callable, Mapping

import httpx


logger = logging.getLogger(__name__)

# Auto-selection order
PROVIDERS = ("openai", "anthropic")

ENV_KEYS = {
    "openai": "OPENAI_API_KEY",
    "anthropic": "ANTHROPIC_API_KEY",
}


class KeyResolver:
    def __init__(
        self,
        base_url: str | None = None,
        *,
        timeout: float = 3.0,
        cache_seconds: float = 60,
        transport: httpx.BaseTransport | None = None,
        environ: Mapping[str, str] | None = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.base_url = base_url.rstrip("/") if base_url else None
        self.timeout = timeout
        self.cache_seconds = cache_seconds
        self.transport = transport
        self.environ = os.environ if environ is None else environ
        self.clock = clock
        self._cache: dict[str, tuple[float, str | None]] = {}
        self._lock = threading.Lock()

    def _from_environment(self, provider: str) -> str | None:
        name = ENV_KEYS.get(provider)
        value = self.environ.get(name) if name else None
        return value or None

    def _fetch(self, provider: str) -> str | None:
        if not self.base_url:
            return self._from_environment(provider)
        try:
            with httpx.Client(timeout=self.timeout, transport=self.transport) as client:
                response = client.get(f"{self.base_url}/api/keys/{provider}")
            if response.status_code == 404:
                return self._from_environment(provider)
            response.raise_for_status()
            body = response.json()
            key = body.get("key") if isinstance(body, dict) else None
            if not isinstance(key, str):
                key = None
            return key or self._from_environment(provider)
        except (httpx.HTTPError, ValueError) as exc:
            logger.warning("Credential service lookup for %s failed (%s); using environment", provider, type(exc).__name__)
            return self._from_environment(provider)

    def get_api_key(self, provider: str) -> str | None:
        provider = (provider or "").lower()
        now = self.clock()
        with self._lock:
            cached = self._cache.get(provider)
            if cached and cached[0] > now:
                return cached[1]

        key = self._fetch(provider)
        with self._lock:
            self._cache[provider] = (now + self.cache_seconds, key)
        return key

    def get_best_available_provider(self) -> tuple[str, str] | None:
        """First provider in PROVIDERS with a key, as (provider, key)."""
        for provider in PROVIDERS:
            key = self.get_api_key(provider)
            if key:
                return provider, key
        return None

    def clear_cache(self) -> None:
        with self._lock:
            self._cache.clear()
