"""
Chat completion client for the in-process bot runner.

Each bot brings its own provider and API key, so clients are built per
call rather than once at startup:

- openai      → AsyncOpenAI
- openrouter  → AsyncOpenAI with the OpenRouter base_url
- anthropic   → AsyncAnthropic (system prompt goes in its own field)
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Dict, List, Optional

import anthropic
import httpx
from openai import AsyncOpenAI, APIConnectionError, APIError, RateLimitError

from botfleet.config import settings
from botfleet.db.models import AIProvider
from botfleet.errors import ExternalUnavailable
from botfleet.plans import default_model_for

logger = logging.getLogger(__name__)

OPENROUTER_BASE_URL = "https://openrouter.ai/api/v1"


@dataclass
class ChatReply:
    """Response from a chat completion"""
    content: str
    model: str
    tokens_total: int = 0


class ChatCompleter:
    """
    Provider-agnostic chat completion.

    ``messages`` use the OpenAI shape: [{"role": ..., "content": ...}].
    Transport and API errors surface as ExternalUnavailable.
    """

    def __init__(
        self,
        temperature: Optional[float] = None,
        max_tokens: Optional[int] = None,
        max_retries: int = 2,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.temperature = settings.ai_temperature if temperature is None else temperature
        self.max_tokens = max_tokens or settings.ai_max_tokens
        self.max_retries = max_retries
        self.transport = transport

    def _http_client(self) -> Optional[httpx.AsyncClient]:
        return httpx.AsyncClient(transport=self.transport) if self.transport else None

    async def complete(
        self,
        provider: str,
        api_key: str,
        model: Optional[str],
        messages: List[Dict[str, str]],
    ) -> ChatReply:
        model = model or default_model_for(provider)
        if provider == AIProvider.ANTHROPIC.value:
            return await self._complete_anthropic(api_key, model, messages)
        base_url = OPENROUTER_BASE_URL if provider == AIProvider.OPENROUTER.value else None
        return await self._complete_openai(api_key, model, messages, base_url)

    async def _complete_openai(
        self,
        api_key: str,
        model: str,
        messages: List[Dict[str, str]],
        base_url: Optional[str] = None,
    ) -> ChatReply:
        client = AsyncOpenAI(api_key=api_key, base_url=base_url, http_client=self._http_client())
        retry_delay = 1.0
        try:
            for attempt in range(self.max_retries + 1):
                try:
                    response = await client.chat.completions.create(
                        model=model,
                        messages=messages,
                        temperature=self.temperature,
                        max_tokens=self.max_tokens,
                    )
                    choice = response.choices[0]
                    usage = response.usage
                    return ChatReply(
                        content=choice.message.content or "",
                        model=response.model,
                        tokens_total=usage.total_tokens if usage else 0,
                    )
                except (RateLimitError, APIConnectionError) as e:
                    if attempt < self.max_retries:
                        wait_time = retry_delay * (2 ** attempt)
                        logger.warning(f"Transient AI error, retrying in {wait_time}s: {e}")
                        await asyncio.sleep(wait_time)
                    else:
                        raise ExternalUnavailable(f"AI provider unavailable: {e}") from e
                except APIError as e:
                    logger.error(f"OpenAI-compatible API error: {e}")
                    raise ExternalUnavailable(f"AI provider error: {e}") from e
        finally:
            await client.close()

    async def _complete_anthropic(
        self,
        api_key: str,
        model: str,
        messages: List[Dict[str, str]],
    ) -> ChatReply:
        system = "\n\n".join(m["content"] for m in messages if m["role"] == "system")
        turns = [m for m in messages if m["role"] != "system"]

        kwargs = {
            "model": model,
            "max_tokens": self.max_tokens,
            "temperature": self.temperature,
            "messages": turns,
        }
        if system:
            kwargs["system"] = system

        client = anthropic.AsyncAnthropic(
            api_key=api_key, max_retries=self.max_retries, http_client=self._http_client()
        )
        try:
            response = await client.messages.create(**kwargs)
        except anthropic.APIError as e:
            logger.error(f"Anthropic API error: {e}")
            raise ExternalUnavailable(f"AI provider error: {e}") from e
        finally:
            await client.close()

        text = "".join(
            block.text for block in response.content if getattr(block, "type", "") == "text"
        )
        usage = response.usage
        return ChatReply(
            content=text,
            model=response.model,
            tokens_total=(usage.input_tokens + usage.output_tokens) if usage else 0,
        )


_completer: Optional[ChatCompleter] = None


def get_chat_completer() -> ChatCompleter:
    global _completer
    if _completer is None:
        _completer = ChatCompleter()
    return _completer
