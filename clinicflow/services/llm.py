"""
Language-model completion clients.

One capability, complete(prompt) -> text. Construction picks the backend:
OpenAI's API or an OpenAI-compatible local server (e.g. LM Studio).
Every failure, including timeouts and an open circuit, surfaces as ModelError.
"""

import asyncio
from abc import ABC, abstractmethod
from typing import Optional

import aiohttp
from loguru import logger
from openai import AsyncOpenAI, OpenAIError

from clinicflow.config import ModelSettings
from clinicflow.exceptions import ModelError
from clinicflow.resilience import CircuitBreakerConfig, CircuitOpenError, get_circuit_breaker

SYSTEM_PROMPT = "You are a helpful medical AI assistant. Always respond with valid JSON format as requested."
LOCAL_MODEL_NAME = "llama-3"


class CompletionClient(ABC):
    def __init__(self, settings: ModelSettings):
        self.settings = settings
        self.circuit = get_circuit_breaker(
            "triage_model", CircuitBreakerConfig(failure_threshold=5, recovery_timeout=60.0)
        )

    @property
    @abstractmethod
    def name(self) -> str:
        ...

    @abstractmethod
    async def _request(self, prompt: str) -> str:
        ...

    async def complete(self, prompt: str) -> str:
        async def bounded() -> str:
            return await asyncio.wait_for(self._request(prompt), timeout=self.settings.timeout_seconds)

        try:
            text = await self.circuit.call(bounded)
        except CircuitOpenError as e:
            raise ModelError(str(e)) from e
        except asyncio.TimeoutError as e:
            raise ModelError(f"{self.name} timed out after {self.settings.timeout_ms}ms") from e
        except ModelError:
            raise
        except Exception as e:
            raise ModelError(f"{self.name} request failed: {e}") from e

        if not text or not text.strip():
            raise ModelError(f"{self.name} returned an empty completion")
        return text


class OpenAICompletionClient(CompletionClient):
    def __init__(self, settings: ModelSettings, client: Optional[AsyncOpenAI] = None):
        super().__init__(settings)
        self.client = client or AsyncOpenAI(api_key=settings.api_key)

    @property
    def name(self) -> str:
        return f"openai:{self.settings.model_name}"

    async def _request(self, prompt: str) -> str:
        try:
            response = await self.client.chat.completions.create(
                model=self.settings.model_name,
                messages=[
                    {"role": "system", "content": SYSTEM_PROMPT},
                    {"role": "user", "content": prompt},
                ],
                temperature=self.settings.temperature,
                max_tokens=self.settings.max_tokens,
            )
        except OpenAIError as e:
            raise ModelError(f"OpenAI API error: {e}") from e
        return response.choices[0].message.content or ""


class LocalCompletionClient(CompletionClient):
    def __init__(self, settings: ModelSettings, session: aiohttp.ClientSession):
        super().__init__(settings)
        self.session = session

    @property
    def name(self) -> str:
        return f"local:{self.settings.local_endpoint}"

    async def _request(self, prompt: str) -> str:
        payload = {
            "model": LOCAL_MODEL_NAME,
            "messages": [
                {"role": "system", "content": SYSTEM_PROMPT},
                {"role": "user", "content": prompt},
            ],
            "temperature": self.settings.temperature,
            "max_tokens": self.settings.max_tokens,
        }
        try:
            async with self.session.post(
                self.settings.local_endpoint,
                json=payload,
                timeout=aiohttp.ClientTimeout(total=self.settings.timeout_seconds),
            ) as response:
                if response.status != 200:
                    body = await response.text()
                    raise ModelError(f"Local model error {response.status}: {body[:200]}")
                data = await response.json()
        except aiohttp.ClientError as e:
            raise ModelError(f"Local model unreachable: {e}") from e

        try:
            return data["choices"][0]["message"]["content"] or ""
        except (KeyError, IndexError, TypeError) as e:
            raise ModelError(f"Local model returned an unexpected payload: {e}") from e


def create_completion_client(
    settings: ModelSettings, session: Optional[aiohttp.ClientSession] = None
) -> Optional[CompletionClient]:
    """Build the configured client, or None when no model is configured."""
    if settings.use_local:
        if session is None:
            raise RuntimeError("A shared aiohttp session is required for the local model client")
        logger.info(f"Using local model at {settings.local_endpoint}")
        return LocalCompletionClient(settings, session)
    if settings.api_key:
        logger.info(f"Using OpenAI model {settings.model_name}")
        return OpenAICompletionClient(settings)
    logger.warning("No language model configured; triage and reports use deterministic fallbacks")
    return None
