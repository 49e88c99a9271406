"""Generation model clients."""

import asyncio
import logging
from abc import ABC, abstractmethod
from typing import AsyncIterator, Optional

import google.generativeai as genai

from pipelines.rate_limit import TokenBucket
from services.shared.errors import (
    ConfigurationError,
    ExternalTimeoutError,
    TransientExternalError,
)

logger = logging.getLogger(__name__)

_END_OF_STREAM = object()


class LanguageModel(ABC):
    """Text generation from a single prompt."""

    def __init__(self, timeout: float = 60.0, rate_limiter: Optional[TokenBucket] = None):
        self.timeout = timeout
        self.rate_limiter = rate_limiter

    async def open(self) -> None:
        """Prepare the client."""

    async def close(self) -> None:
        """Release the client."""

    @abstractmethod
    async def generate(self, prompt: str) -> str:
        """Return the full completion for ``prompt``."""

    @abstractmethod
    def stream(self, prompt: str) -> AsyncIterator[str]:
        """Yield the completion in pieces as they are produced."""

    async def test_connection(self) -> bool:
        try:
            reply = await self.generate("Reply with the single word: OK")
            return bool(reply.strip())
        except Exception as e:
            logger.error(f"Language model connection test failed: {e}")
            return False


class GeminiLanguageModel(LanguageModel):
    """Gemini through ``google-generativeai``; blocking calls run in the executor."""

    def __init__(self, api_key: Optional[str] = None, model_name: str = "gemini-2.5-flash",
                 temperature: float = 0.3, **kwargs):
        super().__init__(**kwargs)
        self.api_key = api_key
        self.model_name = model_name
        self.temperature = temperature
        self.model: Optional[genai.GenerativeModel] = None

    def _get_model(self) -> genai.GenerativeModel:
        if self.model is None:
            if not self.api_key:
                raise ConfigurationError("GEMINI_API_KEY is required for generation")
            genai.configure(api_key=self.api_key)
            self.model = genai.GenerativeModel(
                self.model_name,
                generation_config=genai.types.GenerationConfig(temperature=self.temperature)
            )
            logger.info(f"Gemini client ready for model: {self.model_name}")
        return self.model

    async def open(self) -> None:
        if not self.api_key:
            logger.warning("GEMINI_API_KEY not set; answering is unavailable")
            return
        self._get_model()

    async def close(self) -> None:
        self.model = None

    async def _call(self, func, *args):
        if self.rate_limiter is not None:
            await self.rate_limiter.acquire()
        loop = asyncio.get_running_loop()
        try:
            return await asyncio.wait_for(loop.run_in_executor(None, func, *args), timeout=self.timeout)
        except asyncio.TimeoutError as e:
            raise ExternalTimeoutError(
                f"Generation timed out after {self.timeout}s", service="llm"
            ) from e
        except ConfigurationError:
            raise
        except Exception as e:
            raise TransientExternalError(f"Generation failed: {e}", service="llm") from e

    def _generate_sync(self, prompt: str) -> str:
        response = self._get_model().generate_content(prompt)
        return response.text

    async def generate(self, prompt: str) -> str:
        logger.debug(f"Calling Gemini ({self.model_name}), prompt length {len(prompt)} chars")
        text = await self._call(self._generate_sync, prompt)
        return text.strip()

    def _start_stream_sync(self, prompt: str):
        return iter(self._get_model().generate_content(prompt, stream=True))

    @staticmethod
    def _next_piece_sync(iterator) -> object:
        piece = next(iterator, _END_OF_STREAM)
        if piece is _END_OF_STREAM:
            return piece
        return piece.text

    async def stream(self, prompt: str) -> AsyncIterator[str]:
        iterator = await self._call(self._start_stream_sync, prompt)
        loop = asyncio.get_running_loop()
        while True:
            try:
                piece = await asyncio.wait_for(
                    loop.run_in_executor(None, self._next_piece_sync, iterator),
                    timeout=self.timeout
                )
            except asyncio.TimeoutError as e:
                raise ExternalTimeoutError("Generation stream stalled", service="llm") from e
            except Exception as e:
                raise TransientExternalError(f"Generation stream failed: {e}", service="llm") from e
            if piece is _END_OF_STREAM:
                return
            if piece:
                yield piece
