"""Async LLM client shared by the discovery and compliance pipelines.

Supports Anthropic and OpenAI (or any OpenAI-compatible gateway via
``OPENAI_BASE_URL``).  Three call shapes are offered:

- :meth:`LLMClient.call`: JSON response parsed to ``dict``/``list``
- :meth:`LLMClient.call_text`: raw assistant text
- :meth:`LLMClient.call_tool`: structured output through a forced tool call

Gateway failures are mapped onto a small exception hierarchy so callers can
tell a rate limit (429) or exhausted quota (402) apart from other failures.
"""
from __future__ import annotations

import json
import logging
import os
import re
from typing import Any

log = logging.getLogger(__name__)

_MAX_TOKENS = 2048
_FENCE_RE = re.compile(r"```(?:json)?\s*([\[{].*[\]}])\s*```", re.DOTALL)


class LLMCallError(Exception):
    """LLM call failed or returned unparseable output."""
    def __init__(self, message: str, retryable: bool = False, status_code: int | None = None):
        super().__init__(message)
        self.retryable = retryable
        self.status_code = status_code


class RateLimitError(LLMCallError):
    """Gateway answered 429; the caller should retry later."""


class QuotaExhaustedError(LLMCallError):
    """Gateway answered 402; credits must be topped up."""


class AnalysisFailure(LLMCallError):
    """Any other gateway or transport failure."""


class MalformedOutputError(LLMCallError):
    """The call succeeded but the payload could not be decoded."""


def _translate_error(exc: Exception) -> LLMCallError:
    status = getattr(exc, "status_code", None)
    if status == 429:
        return RateLimitError("Rate limit exceeded. Please try again later.", retryable=True, status_code=429)
    if status == 402:
        return QuotaExhaustedError("AI credits exhausted. Please add credits.", status_code=402)
    log.warning("LLM API call failed: %s", exc)
    return AnalysisFailure("AI analysis failed", retryable=True, status_code=status)


class LLMClient:
    """Unified async LLM client supporting Anthropic and OpenAI."""

    def __init__(
        self,
        provider: str | None = None,
        model: str | None = None,
        api_key: str | None = None,
        base_url: str | None = None,
    ):
        self.provider = provider or os.environ.get("LLM_PROVIDER", "anthropic")
        if self.provider not in ("anthropic", "openai", "openai_compatible"):
            raise ValueError(f"Unknown LLM provider: {self.provider!r}")
        self.model = model or os.environ.get("LLM_MODEL", "")
        if not self.model:
            self.model = "claude-haiku-4-5-20251001" if self.provider == "anthropic" else "gpt-4o-mini"
        env_key = "ANTHROPIC_API_KEY" if self.provider == "anthropic" else "OPENAI_API_KEY"
        self._api_key = api_key or os.environ.get(env_key) or None
        self._base_url = base_url or os.environ.get("OPENAI_BASE_URL") or None
        self._client: Any = None

    @property
    def configured(self) -> bool:
        return bool(self._api_key)

    def _ensure_client(self) -> Any:
        if self._client is not None:
            return self._client
        if not self.configured:
            raise AnalysisFailure("AI service not configured")
        if self.provider == "anthropic":
            import anthropic
            self._client = anthropic.AsyncAnthropic(api_key=self._api_key)
        else:
            import openai
            kwargs: dict[str, Any] = {"api_key": self._api_key}
            if self._base_url:
                kwargs["base_url"] = self._base_url
            self._client = openai.AsyncOpenAI(**kwargs)
        return self._client

    async def _complete(self, system: str, user: str, json_mode: bool) -> str:
        client = self._ensure_client()
        try:
            if self.provider == "anthropic":
                response = await client.messages.create(
                    model=self.model,
                    max_tokens=_MAX_TOKENS,
                    system=system,
                    messages=[{"role": "user", "content": user}],
                )
                return "".join(
                    getattr(block, "text", "") for block in response.content
                ).strip()
            kwargs: dict[str, Any] = {}
            if json_mode:
                kwargs["response_format"] = {"type": "json_object"}
            response = await client.chat.completions.create(
                model=self.model,
                max_tokens=_MAX_TOKENS,
                messages=[
                    {"role": "system", "content": system},
                    {"role": "user", "content": user},
                ],
                **kwargs,
            )
            return (response.choices[0].message.content or "").strip()
        except LLMCallError:
            raise
        except Exception as exc:
            raise _translate_error(exc) from exc

    async def call(self, system: str, user: str) -> Any:
        """Send system+user message to the LLM, return parsed JSON."""
        # OpenAI JSON mode only admits objects, so arrays go through plain text.
        text = await self._complete(system, user, json_mode=False)
        m = _FENCE_RE.search(text)
        if m:
            text = m.group(1)
        try:
            return json.loads(text)
        except json.JSONDecodeError as exc:
            raise MalformedOutputError(f"LLM returned invalid JSON: {text[:200]}") from exc

    async def call_text(self, system: str, user: str) -> str:
        """Send system+user message to the LLM, return the raw reply text."""
        return await self._complete(system, user, json_mode=False)

    async def call_tool(
        self,
        system: str,
        user: str,
        name: str,
        description: str,
        parameters: dict[str, Any],
    ) -> dict[str, Any]:
        """Force the model to populate tool *name*; return its arguments."""
        client = self._ensure_client()
        try:
            if self.provider == "anthropic":
                response = await client.messages.create(
                    model=self.model,
                    max_tokens=_MAX_TOKENS * 2,
                    system=system,
                    messages=[{"role": "user", "content": user}],
                    tools=[{"name": name, "description": description, "input_schema": parameters}],
                    tool_choice={"type": "tool", "name": name},
                )
                for block in response.content:
                    if getattr(block, "type", None) == "tool_use" and block.name == name:
                        return dict(block.input)
                raise MalformedOutputError(f"LLM did not call tool {name!r}")
            response = await client.chat.completions.create(
                model=self.model,
                max_tokens=_MAX_TOKENS * 2,
                messages=[
                    {"role": "system", "content": system},
                    {"role": "user", "content": user},
                ],
                tools=[{
                    "type": "function",
                    "function": {"name": name, "description": description, "parameters": parameters},
                }],
                tool_choice={"type": "function", "function": {"name": name}},
            )
            tool_calls = response.choices[0].message.tool_calls or []
            if not tool_calls:
                raise MalformedOutputError(f"LLM did not call tool {name!r}")
            arguments = tool_calls[0].function.arguments
        except LLMCallError:
            raise
        except Exception as exc:
            raise _translate_error(exc) from exc

        try:
            parsed = json.loads(arguments)
        except (json.JSONDecodeError, TypeError) as exc:
            raise MalformedOutputError(f"Tool arguments are not valid JSON: {str(arguments)[:200]}") from exc
        if not isinstance(parsed, dict):
            raise MalformedOutputError("Tool arguments are not a JSON object")
        return parsed
