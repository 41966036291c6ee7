"""CompletionClient: prompt-to-text calls against the generateContent API.

Tries the configured model, then each fallback model. Each model gets one
retry on 429/500/503. Every upstream failure is reported as
UpstreamUnavailable; a successful reply with no text is EmptyCompletion so
callers can tell the two apart.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import UTC, datetime
from email.utils import parsedate_to_datetime
from typing import Any

import httpx

from rememory.api.models import Completion, HistoryTurn
from rememory.config import Settings
from rememory.errors import EmptyCompletion, UpstreamUnavailable

logger = logging.getLogger(__name__)

_RETRY_STATUSES = (429, 500, 503)
_MAX_RETRY_AFTER = 30.0


def _retry_after_seconds(value: str | None) -> float:
    """Seconds to wait from a Retry-After header, in delta or HTTP-date form."""
    if not value:
        return 1.0
    try:
        seconds = float(value)
    except ValueError:
        try:
            when = parsedate_to_datetime(value)
        except (TypeError, ValueError):
            return 1.0
        if when.tzinfo is None:
            when = when.replace(tzinfo=UTC)
        seconds = (when - datetime.now(UTC)).total_seconds()
    return min(max(seconds, 0.0), _MAX_RETRY_AFTER)


class CompletionClient:
    """Thin async client for ``models/{model}:generateContent``."""

    def __init__(
        self,
        settings: Settings,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._settings = settings
        self._transport = transport
        self._http: httpx.AsyncClient | None = None

    @property
    def models(self) -> list[str]:
        ordered = [self._settings.llm_model, *self._settings.llm_fallback_models]
        return list(dict.fromkeys(m for m in ordered if m))

    async def start(self) -> None:
        """Create the httpx client. Safe to call more than once."""
        if self._http is not None:
            return
        settings = self._settings
        if not settings.llm_api_key:
            logger.warning("LLM_API_KEY is not set -- completion calls will fail")

        timeout = httpx.Timeout(
            connect=settings.api_timeout_connect,
            read=settings.api_timeout_read,
            write=10.0,
            pool=10.0,
        )
        self._http = httpx.AsyncClient(
            base_url=settings.llm_api_base_url,
            headers={
                "content-type": "application/json",
                "x-goog-api-key": settings.llm_api_key,
            },
            timeout=timeout,
            limits=httpx.Limits(max_connections=10, max_keepalive_connections=5),
            transport=self._transport,
        )
        logger.info("Completion client initialized (model: %s)", settings.llm_model)

    async def close(self) -> None:
        if self._http:
            await self._http.aclose()
            self._http = None

    async def complete(
        self,
        system_prompt: str,
        history: list[HistoryTurn],
        user_message: str,
        *,
        temperature: float,
        max_tokens: int,
        timeout: float | None = None,
    ) -> Completion:
        """Run one request/response completion.

        Raises UpstreamUnavailable when no model produced a reply and
        EmptyCompletion when a model answered with no text.
        """
        await self.start()
        payload = self._build_payload(system_prompt, history, user_message, temperature, max_tokens)

        last_error = "no models configured"
        for model in self.models:
            try:
                data = await self._call_model(model, payload, timeout)
                return self._parse(model, data)
            except EmptyCompletion:
                raise
            except UpstreamUnavailable as e:
                last_error = e.message
                logger.warning("Model %s unavailable: %s", model, last_error)

        raise UpstreamUnavailable(f"Completion failed: {last_error}")

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    @staticmethod
    def _build_payload(
        system_prompt: str,
        history: list[HistoryTurn],
        user_message: str,
        temperature: float,
        max_tokens: int,
    ) -> dict[str, Any]:
        contents = [{"role": t.role, "parts": [{"text": t.content}]} for t in history]
        contents.append({"role": "user", "parts": [{"text": user_message}]})
        return {
            "systemInstruction": {"parts": [{"text": system_prompt}]},
            "contents": contents,
            "generationConfig": {
                "temperature": temperature,
                "maxOutputTokens": max_tokens,
            },
        }

    async def _call_model(
        self, model: str, payload: dict[str, Any], timeout: float | None
    ) -> dict[str, Any]:
        assert self._http is not None
        url = f"/models/{model}:generateContent"
        request_timeout = timeout if timeout is not None else httpx.USE_CLIENT_DEFAULT

        for attempt in range(2):  # initial + 1 retry
            try:
                response = await self._http.post(url, json=payload, timeout=request_timeout)
            except httpx.TimeoutException as e:
                raise UpstreamUnavailable(f"{model} timed out: {e}") from e
            except httpx.HTTPError as e:
                raise UpstreamUnavailable(f"{model} HTTP error: {e}") from e

            if response.status_code == 200:
                try:
                    data = response.json()
                except ValueError as e:
                    raise UpstreamUnavailable(f"{model} returned a non-JSON body") from e
                if not isinstance(data, dict):
                    raise UpstreamUnavailable(f"{model} returned an unexpected body")
                return data

            try:
                error_msg = response.json().get("error", {}).get("message", "unknown error")
            except (ValueError, AttributeError):
                error_msg = response.text[:500]

            if response.status_code in _RETRY_STATUSES and attempt == 0:
                retry_after = _retry_after_seconds(response.headers.get("retry-after"))
                logger.warning(
                    "API error %d on %s, retrying in %.1fs: %s",
                    response.status_code,
                    model,
                    retry_after,
                    error_msg,
                )
                await asyncio.sleep(retry_after)
                continue

            raise UpstreamUnavailable(f"{model} returned {response.status_code}: {error_msg}")

        raise UpstreamUnavailable(f"{model} failed after retry")

    @staticmethod
    def _parse(model: str, data: dict[str, Any]) -> Completion:
        try:
            candidates = data.get("candidates") or []
            parts = candidates[0].get("content", {}).get("parts", []) if candidates else []
            text = "".join(p.get("text", "") for p in parts).strip()
        except (AttributeError, IndexError, KeyError, TypeError) as e:
            raise UpstreamUnavailable(f"{model} returned a malformed reply") from e
        if not text:
            raise EmptyCompletion()

        meta = data.get("usageMetadata") or {}
        usage: dict[str, Any] = {}
        if meta:
            prompt_tokens = meta.get("promptTokenCount")
            completion_tokens = meta.get("candidatesTokenCount")
            usage = {
                "prompt_tokens": prompt_tokens,
                "completion_tokens": completion_tokens,
                "total_tokens": meta.get("totalTokenCount")
                or (prompt_tokens or 0) + (completion_tokens or 0),
            }
        return Completion(text=text, model=data.get("modelVersion") or model, usage=usage)
