"""Async AI client wrapper built around OpenAI-compatible endpoints."""

from __future__ import annotations

import asyncio
import inspect
import json
import logging
from dataclasses import dataclass
from typing import Any, AsyncIterator, Dict, Iterable, List, Mapping, Sequence, cast

import httpx
from openai import APIConnectionError, APIError, APITimeoutError, AsyncOpenAI, RateLimitError
from openai.types.chat import ChatCompletionMessageParam, ChatCompletionToolParam
from tenacity import AsyncRetrying, retry_if_exception_type, stop_after_attempt, wait_exponential

from .orchestration.errors import TransportError
from .orchestration.types import PartialDelta, ToolCallFragment

LOGGER = logging.getLogger(__name__)

_RETRYABLE_ERRORS = (
    APIConnectionError,
    APITimeoutError,
    RateLimitError,
    httpx.TimeoutException,
)


@dataclass(slots=True)
class ClientSettings:
    """Subset of settings required to configure the AI client."""

    base_url: str
    api_key: str
    model: str
    organization: str | None = None
    request_timeout: float | None = 90.0
    max_retries: int = 1
    retry_min_seconds: float = 0.5
    retry_max_seconds: float = 6.0
    default_headers: Mapping[str, str] | None = None
    metadata: Mapping[str, str] | None = None
    debug_logging: bool = False


class AIClient:
    """Async client that streams chat completions as :class:`PartialDelta` items.

    Only opening the stream is retried (``max_retries`` attempts in total);
    once fragments have been yielded a failure is final.
    """

    def __init__(self, settings: ClientSettings, *, client: AsyncOpenAI | None = None) -> None:
        self._settings = settings
        self._client = client or self._build_client(settings)
        self._models_cache: List[str] | None = None
        self._models_lock = asyncio.Lock()

    @property
    def settings(self) -> ClientSettings:
        return self._settings

    async def stream_completion(
        self,
        messages: Iterable[Mapping[str, Any] | ChatCompletionMessageParam],
        *,
        tools: Iterable[ChatCompletionToolParam | Mapping[str, Any]] | None = None,
        temperature: float | None = None,
        **extra_params: Any,
    ) -> AsyncIterator[PartialDelta]:
        """Stream one assistant turn for the provided messages.

        Raises:
            TransportError: If the request is rejected or the stream breaks.
        """

        payload = self._build_chat_payload(
            messages=self._coerce_messages(messages),
            tools=tools,
            temperature=temperature,
            extra_params=extra_params,
        )
        LOGGER.debug(
            "Starting streamed chat completion via %s with %s message(s)",
            self._settings.model,
            len(payload["messages"]),
        )
        if self._settings.debug_logging:
            self._log_prompt_payload(payload)

        stream = await self._open_stream(payload)
        try:
            async for chunk in stream:
                delta = self._normalize_chunk(chunk)
                if delta is not None:
                    yield delta
        except (APIError, httpx.HTTPError) as exc:
            LOGGER.warning("Chat completion stream failed: %s", exc)
            raise TransportError(f"Completion stream failed: {exc}", model=self._settings.model) from exc
        finally:
            await self._close_stream(stream)

    async def list_models(self, *, force_refresh: bool = False) -> List[str]:
        """Return a list of supported model identifiers."""

        if self._models_cache is not None and not force_refresh:
            return list(self._models_cache)

        async with self._models_lock:
            if self._models_cache is not None and not force_refresh:
                return list(self._models_cache)

            try:
                response = await self._client.models.list()
            except (APIError, httpx.HTTPError) as exc:
                raise TransportError(f"Unable to list models: {exc}") from exc
            models = [item.id for item in response.data if getattr(item, "id", None)]
            self._models_cache = models
            return list(models)

    def _build_client(self, settings: ClientSettings) -> AsyncOpenAI:
        headers = dict(settings.default_headers) if settings.default_headers else None
        return AsyncOpenAI(
            api_key=settings.api_key,
            base_url=settings.base_url,
            organization=settings.organization,
            timeout=settings.request_timeout,
            max_retries=0,
            default_headers=headers,
        )

    def _retrying(self) -> AsyncRetrying:
        return AsyncRetrying(
            reraise=True,
            stop=stop_after_attempt(max(1, self._settings.max_retries)),
            wait=wait_exponential(
                multiplier=self._settings.retry_min_seconds,
                max=self._settings.retry_max_seconds,
            ),
            retry=retry_if_exception_type(_RETRYABLE_ERRORS),
        )

    async def _open_stream(self, payload: Mapping[str, Any]) -> Any:
        try:
            async for attempt in self._retrying():
                with attempt:
                    return await self._client.chat.completions.create(**payload, stream=True)
        except (APIError, httpx.HTTPError) as exc:
            LOGGER.warning("Chat completion request failed: %s", exc)
            raise TransportError(f"Completion request failed: {exc}", model=self._settings.model) from exc
        raise TransportError("Completion request was never attempted")  # pragma: no cover - tenacity always attempts

    async def _close_stream(self, stream: Any) -> None:
        close = getattr(stream, "close", None)
        if close is None:
            return
        try:
            result = close()
            if inspect.isawaitable(result):
                await result
        except Exception as exc:  # pragma: no cover - closing must not mask stream errors
            LOGGER.debug("Failed to close completion stream: %s", exc)

    def _coerce_messages(
        self, messages: Iterable[Mapping[str, Any] | ChatCompletionMessageParam]
    ) -> List[ChatCompletionMessageParam]:
        normalized: List[ChatCompletionMessageParam] = []
        for message in messages:
            try:
                normalized.append(cast(ChatCompletionMessageParam, dict(message)))
            except TypeError as exc:
                raise TypeError("Messages must be mapping-like objects") from exc
        if not normalized:
            raise ValueError("At least one message is required to start a chat")
        return normalized

    def _build_chat_payload(
        self,
        *,
        messages: Sequence[ChatCompletionMessageParam],
        tools: Iterable[ChatCompletionToolParam | Mapping[str, Any]] | None,
        temperature: float | None,
        extra_params: Mapping[str, Any],
    ) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "model": self._settings.model,
            "messages": list(messages),
        }

        if self._settings.metadata:
            payload["metadata"] = dict(self._settings.metadata)
        tool_list = [dict(tool) for tool in tools] if tools else []
        if tool_list:
            payload["tools"] = tool_list
        if temperature is not None:
            payload["temperature"] = temperature
        if extra_params:
            payload.update(extra_params)

        return payload

    @staticmethod
    def _normalize_chunk(chunk: Any) -> PartialDelta | None:
        choices = getattr(chunk, "choices", None) or ()
        if not choices:
            return None
        delta = getattr(choices[0], "delta", None)
        if delta is None:
            return None

        fragments: list[ToolCallFragment] = []
        for position, call in enumerate(getattr(delta, "tool_calls", None) or ()):
            index = getattr(call, "index", None)
            function = getattr(call, "function", None)
            fragments.append(
                ToolCallFragment(
                    index=position if index is None else int(index),
                    id=getattr(call, "id", None),
                    type=getattr(call, "type", None),
                    name=getattr(function, "name", None),
                    arguments=getattr(function, "arguments", None),
                )
            )
        normalized = PartialDelta(
            role=getattr(delta, "role", None),
            content=getattr(delta, "content", None),
            tool_calls=tuple(fragments),
        )
        return None if normalized.is_empty else normalized

    def _log_prompt_payload(self, payload: Mapping[str, Any]) -> None:
        try:
            serialized = json.dumps(payload, ensure_ascii=False, indent=2)
        except (TypeError, ValueError):
            LOGGER.debug("AI prompt payload (unserializable): %s", payload)
        else:
            LOGGER.debug("AI prompt payload:\n%s", serialized)

    async def aclose(self) -> None:
        """Close the underlying OpenAI client to release network resources."""

        close = getattr(self._client, "close", None)
        if close is None:
            return
        try:
            result = close()
        except Exception as exc:  # pragma: no cover - defensive guard
            LOGGER.debug("AI client close failed to start: %s", exc)
            return
        if inspect.isawaitable(result):
            await result


__all__ = ["AIClient", "ClientSettings"]
