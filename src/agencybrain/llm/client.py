"""Chat client for call scoring.

Thin wrapper over the OpenAI SDK configured from the ``call_analysis`` and
``providers`` sections of the app config. Any server speaking the OpenAI
chat completions API works by pointing the provider's base_url at it.

JSON answers get one repair round: when the first answer does not parse,
the model is shown its own output and asked to return valid JSON only.
"""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from typing import Any, Callable, Literal

import structlog
from openai import OpenAI

from agencybrain.config.app_config import AppConfig, load_app_config
from agencybrain.utils.text_utils import parse_json_object, truncate

logger = structlog.get_logger(__name__)

# =============================================================================
# CONSTANTS
# =============================================================================

OPENAI_BASE_URL = "https://api.openai.com/v1"

JSON_REPAIR_PROMPT = """Your previous answer was not valid JSON.

Previous answer:
<<<
{invalid_output}
>>>

Return the same content as a single valid JSON object. No markdown, no commentary."""

JsonParser = Callable[[str], dict[str, Any]]


# =============================================================================
# DATA CLASSES
# =============================================================================


@dataclass
class LLMConfig:
    """Connection and sampling settings."""

    provider: str = "openai"
    base_url: str = OPENAI_BASE_URL
    model: str = "gpt-4o"
    temperature: float = 0.3
    max_tokens: int = 4096
    timeout: int = 120
    api_key: str | None = None
    supports_json_object: bool = True

    @classmethod
    def from_app_config(cls, app_config: AppConfig | None = None) -> LLMConfig:
        """Settings for call analysis, with the API key read from the environment."""
        if app_config is None:
            app_config = load_app_config()

        analysis = app_config.call_analysis
        provider = app_config.providers.get(analysis.provider)
        if provider is None:
            return cls(
                provider=analysis.provider,
                model=analysis.model,
                temperature=analysis.temperature,
                max_tokens=analysis.max_tokens,
            )

        return cls(
            provider=analysis.provider,
            base_url=provider.base_url or OPENAI_BASE_URL,
            model=analysis.model,
            temperature=analysis.temperature,
            max_tokens=analysis.max_tokens,
            api_key=provider.get_api_key(),
            supports_json_object=provider.supports_json_object,
        )


@dataclass
class Message:
    """One chat message."""

    role: Literal["system", "user", "assistant"]
    content: str

    def to_dict(self) -> dict[str, str]:
        return {"role": self.role, "content": self.content}


@dataclass
class LLMResponse:
    """Completion text plus usage metadata."""

    content: str
    model: str
    provider: str
    usage: dict[str, int] = field(default_factory=dict)
    latency_ms: int = 0

    @property
    def total_tokens(self) -> int:
        return self.usage.get("total_tokens", 0)


class LLMError(Exception):
    """Error during LLM interaction."""

    pass


class LLMConnectionError(LLMError):
    """Could not reach the LLM server."""

    pass


class LLMResponseError(LLMError):
    """The server answered with nothing usable."""

    pass


class LLMJSONError(LLMResponseError):
    """Answer was not a JSON object, even after the repair round."""

    def __init__(self, message: str, raw: str = ""):
        super().__init__(message)
        self.raw = raw


# =============================================================================
# LLM CLIENT
# =============================================================================


class LLMClient:
    """OpenAI chat completions client."""

    def __init__(self, config: LLMConfig | None = None):
        self.config = config or LLMConfig.from_app_config()
        self._client = OpenAI(
            base_url=self.config.base_url,
            api_key=self.config.api_key or "not-needed",
            timeout=self.config.timeout,
        )
        logger.info(
            "llm_client_initialized",
            provider=self.config.provider,
            model=self.config.model,
            base_url=self.config.base_url,
        )

    def chat(
        self,
        messages: list[Message],
        temperature: float | None = None,
        max_tokens: int | None = None,
        json_mode: bool = False,
    ) -> LLMResponse:
        """Run one chat completion.

        Args:
            messages: Conversation so far
            temperature: Overrides the configured temperature
            max_tokens: Overrides the configured token limit
            json_mode: Ask for a JSON object response where the provider supports it

        Raises:
            LLMConnectionError: Server unreachable
            LLMResponseError: No choices in the response
            LLMError: Any other request failure
        """
        request: dict[str, Any] = {
            "model": self.config.model,
            "messages": [m.to_dict() for m in messages],
            "temperature": self.config.temperature if temperature is None else temperature,
            "max_tokens": self.config.max_tokens if max_tokens is None else max_tokens,
        }
        if json_mode and self.config.supports_json_object:
            request["response_format"] = {"type": "json_object"}

        started = time.time()
        try:
            completion = self._client.chat.completions.create(**request)
        except Exception as e:
            if "connect" in str(e).lower():
                raise LLMConnectionError(
                    f"Could not connect to {self.config.provider} at {self.config.base_url}: {e}"
                ) from e
            raise LLMError(f"LLM call failed: {e}") from e
        latency_ms = int((time.time() - started) * 1000)

        if not completion.choices:
            raise LLMResponseError("Empty response from LLM")

        usage: dict[str, int] = {}
        if completion.usage:
            usage = {
                "prompt_tokens": completion.usage.prompt_tokens,
                "completion_tokens": completion.usage.completion_tokens,
                "total_tokens": completion.usage.total_tokens,
            }

        logger.debug(
            "llm_response",
            provider=self.config.provider,
            model=completion.model,
            tokens=usage.get("total_tokens", 0),
            latency_ms=latency_ms,
        )

        return LLMResponse(
            content=completion.choices[0].message.content or "",
            model=completion.model,
            provider=self.config.provider,
            usage=usage,
            latency_ms=latency_ms,
        )

    def chat_json(
        self,
        messages: list[Message],
        temperature: float | None = None,
        max_tokens: int | None = None,
        parse: JsonParser | None = None,
    ) -> dict[str, Any]:
        """Chat expecting a JSON object, with one repair round.

        Args:
            messages: Conversation so far
            temperature: Overrides the configured temperature
            max_tokens: Overrides the configured token limit
            parse: Text -> dict parser raising ValueError on bad input
                (defaults to parse_json_object)

        Raises:
            LLMJSONError: Neither answer parsed; carries the first answer as raw
            LLMError: The request itself failed
        """
        parse = parse or parse_json_object

        first = self.chat(messages, temperature=temperature, max_tokens=max_tokens, json_mode=True)
        try:
            return parse(first.content)
        except ValueError as e:
            logger.warning(
                "json_parse_failed_retrying",
                provider=self.config.provider,
                error=str(e),
                content=truncate(first.content, 100),
            )

        repair_messages = messages + [
            Message(role="assistant", content=first.content),
            Message(
                role="user",
                content=JSON_REPAIR_PROMPT.format(invalid_output=first.content[:1000]),
            ),
        ]
        second = self.chat(
            repair_messages, temperature=temperature, max_tokens=max_tokens, json_mode=True
        )
        try:
            parsed = parse(second.content)
        except ValueError as e:
            raise LLMJSONError(str(e), raw=first.content) from e

        logger.info("json_parse_recovered_after_retry", provider=self.config.provider)
        return parsed

    def simple_json(
        self,
        system_prompt: str,
        user_message: str,
        temperature: float | None = None,
        max_tokens: int | None = None,
        parse: JsonParser | None = None,
    ) -> dict[str, Any]:
        """System + user turn expecting a JSON object (see chat_json)."""
        messages = [
            Message(role="system", content=system_prompt),
            Message(role="user", content=user_message),
        ]
        return self.chat_json(messages, temperature=temperature, max_tokens=max_tokens, parse=parse)
