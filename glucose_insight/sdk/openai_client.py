"""
Async OpenAI client for event analysis.

Turns one chat completion into an AiAnalysisResult. HTTP errors come back
as failure results so the call is still logged as usage.
"""

import logging
import time
from typing import Callable, Dict, Optional

import openai
from openai import AsyncOpenAI

from ..core.interfaces import AiAnalysisResult

logger = logging.getLogger(__name__)

HTTP_OK = 200
CONNECTION_FAILED_STATUS = 0


def _elapsed_ms(started: float) -> int:
    return int((time.perf_counter() - started) * 1000)


class OpenAIAnalysisClient:
    """AiClient backed by the OpenAI chat completions API.

    One AsyncOpenAI instance is kept per API key, so a key change in the
    settings file takes effect on the next call.
    """

    def __init__(self, client_factory: Optional[Callable[[str], AsyncOpenAI]] = None):
        """Initialize the client.

        Args:
            client_factory: Builds an AsyncOpenAI for an API key (defaults
                to ``AsyncOpenAI(api_key=...)``)
        """
        self._client_factory = client_factory or (lambda api_key: AsyncOpenAI(api_key=api_key))
        self._clients: Dict[str, AsyncOpenAI] = {}

    def _client_for(self, api_key: str) -> AsyncOpenAI:
        client = self._clients.get(api_key)
        if client is None:
            client = self._client_factory(api_key)
            self._clients[api_key] = client
        return client

    async def analyze(
        self,
        api_key: str,
        system_prompt: str,
        user_prompt: str,
        model: str,
        max_tokens: int,
    ) -> AiAnalysisResult:
        """Run one chat completion.

        Args:
            api_key: Provider API key
            system_prompt: System message
            user_prompt: User message
            model: Model name
            max_tokens: Completion token budget

        Returns:
            AiAnalysisResult; ``success`` is False for HTTP and connection errors

        Raises:
            ValueError: If api_key or model is empty
        """
        if not api_key or not api_key.strip():
            raise ValueError("api_key is required and cannot be empty")
        if not model or not model.strip():
            raise ValueError("model is required and cannot be empty")

        client = self._client_for(api_key)
        started = time.perf_counter()
        try:
            response = await client.chat.completions.create(
                model=model,
                messages=[
                    {"role": "system", "content": system_prompt},
                    {"role": "user", "content": user_prompt},
                ],
                max_completion_tokens=max_tokens,
            )
        except openai.APIStatusError as e:
            duration_ms = _elapsed_ms(started)
            logger.warning("OpenAI returned HTTP %s for model '%s': %s", e.status_code, model, e.message)
            return AiAnalysisResult.failure(model, e.status_code, duration_ms, e.message)
        except openai.APIConnectionError as e:
            duration_ms = _elapsed_ms(started)
            logger.warning("Could not reach OpenAI for model '%s': %s", model, e)
            return AiAnalysisResult.failure(model, CONNECTION_FAILED_STATUS, duration_ms, str(e))

        duration_ms = _elapsed_ms(started)
        usage = response.usage
        choice = response.choices[0] if response.choices else None
        content = choice.message.content if choice else None
        finish_reason = choice.finish_reason if choice else None

        logger.debug(
            "OpenAI call finished in %d ms (model=%s, finish=%s).",
            duration_ms, response.model, finish_reason,
        )
        return AiAnalysisResult(
            content=content,
            model=response.model or model,
            input_tokens=usage.prompt_tokens if usage else 0,
            output_tokens=usage.completion_tokens if usage else 0,
            total_tokens=usage.total_tokens if usage else 0,
            finish_reason=finish_reason,
            http_status=HTTP_OK,
            success=True,
            duration_ms=duration_ms,
        )

    async def aclose(self) -> None:
        """Close every underlying HTTP client."""
        for client in self._clients.values():
            await client.close()
        self._clients.clear()
