"""
Provider-agnostic LLM client for intent inference.

Supports a local Ollama model, Anthropic, OpenAI and Google Gemini behind a
shared text-generation interface. Every provider is asked for a JSON object;
the caller parses it with ``llm_utils.parse_llm_json``.

SDKs are imported when a provider is selected, so only the one in use needs
to be installed.
"""

from __future__ import annotations

import logging
from typing import Any, Dict, Optional

from .config import InferenceConfig

logger = logging.getLogger("ctxd.common.llm_client")

SUPPORTED_PROVIDERS = ("local", "anthropic", "openai", "google")

# Remote providers refuse to start without a key
_KEY_REQUIRED = ("anthropic", "openai", "google")


class LLMClient:
    """Unified text generation client across LLM providers."""

    def __init__(
        self,
        provider: str = "local",
        model: str = "",
        anthropic_api_key: Optional[str] = None,
        openai_api_key: Optional[str] = None,
        google_api_key: Optional[str] = None,
        ollama_host: Optional[str] = None,
        timeout: Optional[float] = None,
    ) -> None:
        self.provider = (provider or "local").lower()
        self.model = model
        self.timeout = timeout
        self._client: Any = None
        self._gemini_models: Dict[str, Any] = {}

        if self.provider not in SUPPORTED_PROVIDERS:
            logger.warning("Unsupported LLM provider: %s", self.provider)
            return

        credentials = {
            "local": ollama_host,
            "anthropic": anthropic_api_key,
            "openai": openai_api_key,
            "google": google_api_key,
        }[self.provider]
        if self.provider in _KEY_REQUIRED and not credentials:
            logger.info("%s API key not provided, LLM client unavailable", self.provider)
            return

        try:
            self._client = getattr(self, f"_connect_{self.provider}")(credentials)
        except ImportError as e:
            logger.warning("SDK for provider %s is not installed: %s", self.provider, e)
        except Exception as e:
            logger.warning("Failed to initialize %s client: %s", self.provider, e)

    @classmethod
    def from_config(cls, config: InferenceConfig) -> "LLMClient":
        provider = (config.provider or "").lower()
        model = {
            "local": config.local_model,
            "anthropic": config.anthropic_model,
            "openai": config.openai_model,
            "google": config.google_model,
        }.get(provider, "")
        return cls(
            provider=provider,
            model=model,
            anthropic_api_key=config.anthropic_api_key,
            openai_api_key=config.openai_api_key,
            google_api_key=config.google_api_key,
            ollama_host=config.ollama_host,
            timeout=config.timeout_seconds,
        )

    @property
    def is_available(self) -> bool:
        return self._client is not None

    # ------------------------------------------------------------------
    # Connections
    # ------------------------------------------------------------------

    def _connect_local(self, host: Optional[str]) -> Any:
        import ollama

        # Forwarded to the underlying httpx client; bounds every request
        return ollama.Client(host=host or None, timeout=self.timeout)

    @staticmethod
    def _connect_anthropic(api_key: str) -> Any:
        import anthropic

        return anthropic.Anthropic(api_key=api_key)

    @staticmethod
    def _connect_openai(api_key: str) -> Any:
        from openai import OpenAI

        return OpenAI(api_key=api_key)

    @staticmethod
    def _connect_google(api_key: str) -> Any:
        import google.generativeai as genai

        genai.configure(api_key=api_key)
        return genai

    # ------------------------------------------------------------------
    # Generation
    # ------------------------------------------------------------------

    def generate(
        self,
        prompt: str,
        *,
        system: Optional[str] = None,
        max_tokens: int = 512,
        timeout: float = 30.0,
    ) -> str:
        """Single-turn completion; returns the stripped response text.

        Raises:
            RuntimeError: no usable client for the configured provider
        """
        if not self.is_available:
            raise RuntimeError(f"LLM client is not available (provider={self.provider})")
        text = getattr(self, f"_generate_{self.provider}")(prompt, system, max_tokens, timeout)
        return (text or "").strip()

    def _generate_local(self, prompt: str, system: Optional[str], max_tokens: int, timeout: float) -> str:
        response = self._client.generate(
            model=self.model,
            system=system or "",
            prompt=prompt,
            format="json",
            stream=False,
            options={"num_predict": max_tokens, "temperature": 0},
        )
        return response["response"]

    def _generate_anthropic(self, prompt: str, system: Optional[str], max_tokens: int, timeout: float) -> str:
        kwargs: Dict[str, Any] = {}
        if system:
            kwargs["system"] = system
        response = self._client.messages.create(
            model=self.model,
            max_tokens=max_tokens,
            temperature=0,
            messages=[{"role": "user", "content": prompt}],
            timeout=timeout,
            **kwargs,
        )
        return "".join(getattr(block, "text", "") for block in response.content)

    def _generate_openai(self, prompt: str, system: Optional[str], max_tokens: int, timeout: float) -> str:
        messages = [{"role": "system", "content": system}] if system else []
        messages.append({"role": "user", "content": prompt})
        response = self._client.chat.completions.create(
            model=self.model,
            messages=messages,
            max_tokens=max_tokens,
            temperature=0,
            response_format={"type": "json_object"},
            timeout=timeout,
        )
        return response.choices[0].message.content

    def _generate_google(self, prompt: str, system: Optional[str], max_tokens: int, timeout: float) -> str:
        key = system or ""
        model = self._gemini_models.get(key)
        if model is None:
            model = self._client.GenerativeModel(model_name=self.model, system_instruction=system or None)
            self._gemini_models[key] = model
        response = model.generate_content(
            prompt,
            generation_config={
                "max_output_tokens": max_tokens,
                "temperature": 0,
                "response_mime_type": "application/json",
            },
            request_options={"timeout": timeout},
        )
        return response.text
