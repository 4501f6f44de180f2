"""
File: llm_client.py
Purpose: OpenAI-compatible chat-completions client for the inference provider.

POST {base_url}/chat/completions with a bearer key. One shared httpx.AsyncClient
per InferenceClient; callers own its lifecycle (aclose). No retries here: a
failed call is a failed job attempt and the lease manager schedules the retry.
"""

from __future__ import annotations

import logging
from typing import Dict, List, Optional

import httpx

from .errors import LLMTimeout, LLMUnavailable
from .instrumentation import LLM_TIME

log = logging.getLogger("incident-engine.llm_client")

DEFAULT_TIMEOUT_SECS = 90.0


class InferenceClient:
    """chat(messages) -> text against an OpenAI-compatible endpoint."""

    def __init__(
        self,
        base_url: str,
        api_key: str,
        model: str,
        timeout: float = DEFAULT_TIMEOUT_SECS,
        http: Optional[httpx.AsyncClient] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.model = model
        self.timeout = timeout
        headers = {"content-type": "application/json"}
        if api_key:
            headers["authorization"] = f"Bearer {api_key}"
        self._http = http or httpx.AsyncClient(timeout=timeout)
        self._headers = headers

    async def aclose(self) -> None:
        await self._http.aclose()

    async def chat(
        self,
        messages: List[Dict[str, str]],
        max_tokens: int = 1024,
        temperature: float = 0.7,
    ) -> str:
        """Return the first choice's message content."""
        url = f"{self.base_url}/chat/completions"
        payload = {
            "model": self.model,
            "messages": messages,
            "max_tokens": max_tokens,
            "temperature": temperature,
        }
        try:
            with LLM_TIME.time():
                r = await self._http.post(url, headers=self._headers, json=payload, timeout=self.timeout)
        except httpx.TimeoutException as e:
            raise LLMTimeout(f"LLM request timed out after {self.timeout}s") from e
        except httpx.HTTPError as e:
            raise LLMUnavailable(f"LLM HTTP error: {e}") from e

        if r.status_code >= 400:
            raise LLMUnavailable(f"LLM API error ({r.status_code}): {r.text[:200]}")

        try:
            data = r.json()
        except ValueError as e:
            raise LLMUnavailable("LLM API returned a non-JSON body") from e

        choices = data.get("choices") or []
        if not choices:
            raise LLMUnavailable("LLM API returned no choices")
        return ((choices[0].get("message") or {}).get("content") or "").strip()

    async def validate_connection(self) -> None:
        """Send a tiny prompt so bad credentials or URLs fail at startup."""
        log.info("validating inference connection", extra={"base_url": self.base_url, "model": self.model})
        await self.chat([{"role": "user", "content": "ping"}], max_tokens=5)
        log.info("inference connection ok")
