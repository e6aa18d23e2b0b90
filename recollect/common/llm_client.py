"""
Provider-agnostic async LLM client for the classification service.

Supports Anthropic, OpenAI, OpenRouter (OpenAI-compatible) and Google Gemini
with a shared text-generation interface.
"""

from __future__ import annotations

import hashlib
import logging
from typing import Optional

from .config import LLMConfig

logger = logging.getLogger("recollect.common.llm_client")

OPENROUTER_BASE_URL = "https://openrouter.ai/api/v1"
OPENROUTER_HEADERS = {"X-Title": "Recollect"}


class LLMClient:
    """Unified async text generation client across LLM providers."""

    def __init__(
        self,
        provider: str = "openrouter",
        model: str = "",
        anthropic_api_key: Optional[str] = None,
        openai_api_key: Optional[str] = None,
        openrouter_api_key: Optional[str] = None,
        google_api_key: Optional[str] = None,
    ) -> None:
        self.provider = (provider or "openrouter").lower()
        self.model = model
        self._client = None

        if self.provider == "anthropic":
            if not anthropic_api_key:
                logger.info("%s API key not provided, LLM client unavailable", self.provider)
                return
            try:
                import anthropic

                self._client = anthropic.AsyncAnthropic(api_key=anthropic_api_key)
            except ImportError:
                logger.warning("anthropic package not installed")
            except Exception as e:
                logger.warning("Failed to initialize Anthropic client: %s", e)
            return

        if self.provider in ("openai", "openrouter"):
            api_key = openai_api_key if self.provider == "openai" else openrouter_api_key
            if not api_key:
                logger.info("%s API key not provided, LLM client unavailable", self.provider)
                return
            try:
                from openai import AsyncOpenAI

                if self.provider == "openrouter":
                    self._client = AsyncOpenAI(
                        api_key=api_key,
                        base_url=OPENROUTER_BASE_URL,
                        default_headers=OPENROUTER_HEADERS,
                    )
                else:
                    self._client = AsyncOpenAI(api_key=api_key)
            except ImportError:
                logger.warning("openai package not installed")
            except Exception as e:
                logger.warning("Failed to initialize %s client: %s", self.provider, e)
            return

        if self.provider == "google":
            if not google_api_key:
                logger.info("%s API key not provided, LLM client unavailable", self.provider)
                return
            try:
                import google.generativeai as genai

                genai.configure(api_key=google_api_key)
                self._client = genai  # Store the module, not a model instance
                self._google_models = {}  # Cache models by system prompt hash
            except ImportError:
                logger.warning("google-generativeai package not installed")
            except Exception as e:
                logger.warning("Failed to initialize Gemini client: %s", e)
            return

        logger.warning("Unsupported LLM provider: %s", self.provider)

    @classmethod
    def from_config(cls, config: LLMConfig, api_key: Optional[str] = None) -> "LLMClient":
        """Build a client for the configured provider.

        ``api_key`` overrides the configured key for that provider (used for
        per-request credentials).
        """
        provider = (config.provider or "openrouter").lower()
        keys = {
            "anthropic_api_key": config.anthropic_api_key or None,
            "openai_api_key": config.openai_api_key or None,
            "openrouter_api_key": config.openrouter_api_key or None,
            "google_api_key": config.google_api_key or None,
        }
        if api_key and f"{provider}_api_key" in keys:
            keys[f"{provider}_api_key"] = api_key
        model = getattr(config, f"{provider}_model", "")
        return cls(provider=provider, model=model, **keys)

    @property
    def is_available(self) -> bool:
        return self._client is not None

    async def generate(
        self,
        prompt: str,
        *,
        system: Optional[str] = None,
        max_tokens: int = 512,
        temperature: float = 0.3,
        timeout: float = 30.0,
    ) -> str:
        if not self.is_available:
            raise RuntimeError("LLM client is not available")

        if self.provider == "anthropic":
            kwargs = {}
            if system:
                kwargs["system"] = system
            response = await self._client.messages.create(
                model=self.model,
                max_tokens=max_tokens,
                temperature=temperature,
                messages=[{"role": "user", "content": prompt}],
                timeout=timeout,
                **kwargs,
            )
            return response.content[0].text.strip()

        if self.provider in ("openai", "openrouter"):
            messages = []
            if system:
                messages.append({"role": "system", "content": system})
            messages.append({"role": "user", "content": prompt})
            response = await self._client.chat.completions.create(
                model=self.model,
                max_tokens=max_tokens,
                temperature=temperature,
                messages=messages,
                timeout=timeout,
            )
            return (response.choices[0].message.content or "").strip()

        if self.provider == "google":
            cache_key = hashlib.md5((system or "").encode()).hexdigest()
            if cache_key not in self._google_models:
                kwargs = {"model_name": self.model}
                if system:
                    kwargs["system_instruction"] = system
                self._google_models[cache_key] = self._client.GenerativeModel(**kwargs)
            model = self._google_models[cache_key]
            response = await model.generate_content_async(
                prompt,
                generation_config={"max_output_tokens": max_tokens, "temperature": temperature},
                request_options={"timeout": timeout},
            )
            return response.text.strip()

        raise RuntimeError(f"Unsupported LLM provider: {self.provider}")
