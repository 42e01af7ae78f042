"""Text completion backends for the light and heavy model tiers."""

import enum
import logging
from collections.abc import Sequence
from dataclasses import dataclass
from typing import Protocol, runtime_checkable

import openai
from pydantic_ai import Agent
from pydantic_ai.exceptions import ModelHTTPError, UnexpectedModelBehavior
from pydantic_ai.messages import (
    ModelMessage,
    ModelRequest,
    ModelResponse,
    TextPart,
    UserPromptPart,
)
from pydantic_ai.models.openai import OpenAIResponsesModel
from pydantic_ai.providers.openai import OpenAIProvider
from pydantic_ai.settings import ModelSettings

from codeguardian.config.settings import Settings
from codeguardian.exceptions import (
    AuthenticationFailed,
    CallError,
    CallTimeout,
    InvalidRequest,
    ProviderError,
    QuotaExhausted,
    RateLimited,
)
from codeguardian.utils.rate_limiter import classify_exception

logger = logging.getLogger(__name__)

# (role, text) pairs where role is "user" or "assistant"
History = Sequence[tuple[str, str]]


class ModelTier(str, enum.Enum):
    LIGHT = "light"
    HEAVY = "heavy"


@runtime_checkable
class TextCompleter(Protocol):
    """A single model endpoint that turns a prompt into text."""

    async def complete(
        self, prompt: str, *, max_tokens: int, history: History = ()
    ) -> str: ...


@dataclass(frozen=True)
class ModelTiers:
    """The two named completers; callers pick one per operation."""

    light: TextCompleter
    heavy: TextCompleter

    def get(self, tier: ModelTier) -> TextCompleter:
        return self.heavy if tier is ModelTier.HEAVY else self.light


def _to_message_history(history: History) -> list[ModelMessage]:
    messages: list[ModelMessage] = []
    for role, text in history:
        if role == "assistant":
            messages.append(ModelResponse(parts=[TextPart(content=text)]))
        else:
            messages.append(ModelRequest(parts=[UserPromptPart(content=text)]))
    return messages


class PydanticAICompleter:
    """
    ``TextCompleter`` backed by a Pydantic AI agent on the OpenAI Responses API.

    The underlying OpenAI client has its own retries disabled: retrying and
    timeouts are owned by the scheduler's model pool.
    """

    def __init__(
        self,
        model_name: str,
        *,
        system_message: str,
        api_key: str | None,
        base_url: str,
        temperature: float = 0.05,
        timeout_seconds: float = 360.0,
    ) -> None:
        self.model_name = model_name
        self.temperature = temperature
        self.timeout_seconds = timeout_seconds
        self._system_message = system_message
        self._api_key = api_key
        self._base_url = base_url
        self._agent: Agent[None, str] | None = None

    def _get_agent(self) -> Agent[None, str]:
        # Built on first use so importing this module never needs an API key
        if self._agent is None:
            client = openai.AsyncOpenAI(
                api_key=self._api_key,
                base_url=self._base_url,
                max_retries=0,
            )
            model = OpenAIResponsesModel(
                self.model_name, provider=OpenAIProvider(openai_client=client)
            )
            self._agent = Agent(
                model=model, instructions=self._system_message, output_type=str
            )
        return self._agent

    async def complete(
        self, prompt: str, *, max_tokens: int, history: History = ()
    ) -> str:
        agent = self._get_agent()
        logger.debug(
            f"Requesting completion from {self.model_name} "
            f"({len(prompt)} chars, {len(history)} history messages)"
        )
        try:
            result = await agent.run(
                prompt,
                message_history=_to_message_history(history) or None,
                model_settings=ModelSettings(
                    max_tokens=max_tokens,
                    temperature=self.temperature,
                    timeout=self.timeout_seconds,
                ),
            )
        except Exception as e:
            raise classify_model_error(e) from e
        return result.output


def _retry_after(body: object) -> float | None:
    if isinstance(body, dict):
        value = body.get("retry_after")
        if isinstance(value, (int, float)):
            return float(value)
    return None


def classify_model_error(exc: BaseException) -> CallError:
    """
    Map a model provider failure onto the call error taxonomy.

    Quota exhaustion (429 with ``insufficient_quota``) is terminal for the
    whole run; plain 429s, timeouts and 5xx responses are transient.
    """
    if isinstance(exc, CallError):
        return exc

    if isinstance(exc, ModelHTTPError):
        status = exc.status_code
        body_text = str(exc.body or "").lower()
        if status == 429:
            if "insufficient_quota" in body_text or "quota" in body_text:
                return QuotaExhausted(f"Model quota exhausted: {exc.message}", cause=exc)
            return RateLimited(str(exc), cause=exc, retry_after=_retry_after(exc.body))
        if status in (401, 403):
            return AuthenticationFailed(str(exc), cause=exc)
        if status == 408:
            return CallTimeout(str(exc), cause=exc)
        if status >= 500:
            return ProviderError(str(exc), cause=exc)
        return InvalidRequest(str(exc), cause=exc)

    # APITimeoutError subclasses APIConnectionError, so it is checked first
    if isinstance(exc, openai.APITimeoutError):
        return CallTimeout(str(exc), cause=exc)
    if isinstance(exc, openai.APIConnectionError):
        return ProviderError(str(exc), cause=exc)
    if isinstance(exc, openai.APIStatusError):
        if exc.status_code == 429:
            if "insufficient_quota" in str(exc).lower():
                return QuotaExhausted(str(exc), cause=exc)
            return RateLimited(str(exc), cause=exc)
        if exc.status_code >= 500:
            return ProviderError(str(exc), cause=exc)
        return InvalidRequest(str(exc), cause=exc)

    if isinstance(exc, UnexpectedModelBehavior):
        return ProviderError(str(exc), cause=exc)

    return classify_exception(exc)


def build_model_tiers(settings: Settings) -> ModelTiers:
    """Create the light and heavy completers from application settings."""
    common = {
        "system_message": settings.system_message,
        "api_key": settings.openai_api_key,
        "base_url": settings.openai_base_url,
        "temperature": settings.openai_model_temperature,
        "timeout_seconds": settings.openai_timeout_ms / 1000,
    }
    logger.info(
        f"Model tiers: light={settings.openai_light_model}, "
        f"heavy={settings.openai_heavy_model}"
    )
    return ModelTiers(
        light=PydanticAICompleter(settings.openai_light_model, **common),
        heavy=PydanticAICompleter(settings.openai_heavy_model, **common),
    )
