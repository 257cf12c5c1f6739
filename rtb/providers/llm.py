"""
Completion providers using LLMs.
"""

import os
from typing import Optional

from ..errors import ConfigurationError, ProviderError
from .base import get_registry


class OpenAICompletion:
    """
    Completion provider using OpenAI's chat API.

    Requires: api_key parameter or OPENAI_API_KEY environment variable.

    Default model is gpt-4.1-mini. Good alternatives: gpt-4.1, gpt-5-mini.
    """

    def __init__(
        self,
        model: str = "gpt-4.1-mini",
        api_key: Optional[str] = None,
        temperature: float = 0.3,
    ):
        try:
            from openai import OpenAI
        except ImportError:
            raise RuntimeError("OpenAICompletion requires 'openai' library")

        self.model = model
        self.temperature = temperature

        key = api_key or os.environ.get("OPENAI_API_KEY")
        if not key:
            raise ConfigurationError("OpenAI API key required. Set OPENAI_API_KEY")

        self._client = OpenAI(api_key=key)

        # GPT-5+ and reasoning models use a different API surface:
        # - max_completion_tokens instead of max_tokens
        # - temperature must be omitted (only default=1 supported)
        self._new_api = self.model.startswith(("gpt-5", "o3", "o4"))

    def _completion_kwargs(self, max_tokens: int) -> dict:
        """Return model-appropriate kwargs for token limit and temperature."""
        if self._new_api:
            return {"max_completion_tokens": max_tokens}
        return {"max_tokens": max_tokens, "temperature": self.temperature}

    def generate(
        self,
        system: str,
        user: str,
        *,
        max_tokens: int = 1024,
    ) -> str:
        """Send a prompt to OpenAI and return generated text."""
        import openai

        try:
            response = self._client.chat.completions.create(
                model=self.model,
                messages=[
                    {"role": "system", "content": system},
                    {"role": "user", "content": user},
                ],
                **self._completion_kwargs(max_tokens),
            )
        except (openai.AuthenticationError, openai.PermissionDeniedError) as e:
            raise ConfigurationError(f"OpenAI rejected the API key: {e}") from e
        except openai.OpenAIError as e:
            raise ProviderError(f"OpenAI completion request failed: {e}") from e

        if not response.choices or response.choices[0].message.content is None:
            raise ProviderError("OpenAI returned an empty completion")
        return response.choices[0].message.content


class AnthropicCompletion:
    """
    Completion provider using Anthropic's Claude API.

    Requires: api_key parameter or ANTHROPIC_API_KEY environment variable.
    Install with the ``anthropic`` extra.
    """

    def __init__(
        self,
        model: str = "claude-haiku-4-5-20251001",
        api_key: Optional[str] = None,
    ):
        try:
            from anthropic import Anthropic
        except ImportError:
            raise RuntimeError("AnthropicCompletion requires 'anthropic' library")

        self.model = model

        key = api_key or os.environ.get("ANTHROPIC_API_KEY")
        if not key:
            raise ConfigurationError("Anthropic API key required. Set ANTHROPIC_API_KEY")

        self.client = Anthropic(api_key=key)

    def generate(
        self,
        system: str,
        user: str,
        *,
        max_tokens: int = 1024,
    ) -> str:
        """Send a prompt to Anthropic and return generated text."""
        import anthropic

        try:
            response = self.client.messages.create(
                model=self.model,
                max_tokens=max_tokens,
                system=system,
                messages=[{"role": "user", "content": user}],
            )
        except (anthropic.AuthenticationError, anthropic.PermissionDeniedError) as e:
            raise ConfigurationError(f"Anthropic rejected the API key: {e}") from e
        except anthropic.AnthropicError as e:
            raise ProviderError(f"Anthropic completion request failed: {e}") from e

        text = "".join(block.text for block in response.content if block.type == "text")
        if not text:
            raise ProviderError("Anthropic returned an empty completion")
        return text


class OllamaCompletion:
    """
    Completion provider using Ollama's local chat API.

    Respects OLLAMA_HOST env var (default: http://localhost:11434).
    """

    def __init__(
        self,
        model: str = "llama3.2",
        base_url: Optional[str] = None,
    ):
        from .ollama_utils import ollama_base_url, ollama_ensure_model

        self.model = model
        self.base_url = ollama_base_url(base_url)
        ollama_ensure_model(self.base_url, self.model)

    def generate(
        self,
        system: str,
        user: str,
        *,
        max_tokens: int = 1024,
    ) -> str:
        """Send a prompt to Ollama and return generated text."""
        from .ollama_utils import ollama_post

        data = ollama_post(
            self.base_url, "/api/chat",
            {
                "model": self.model,
                "messages": [
                    {"role": "system", "content": system},
                    {"role": "user", "content": user},
                ],
                "options": {"num_predict": max_tokens},
                "stream": False,
            },
            timeout=(10, 300),  # (connect, read); generation can be slow
            what="generate",
        )
        try:
            return data["message"]["content"].strip()
        except (KeyError, TypeError, AttributeError) as e:
            raise ProviderError(f"Ollama chat response is malformed: {str(data)[:200]}") from e


# Register providers
_registry = get_registry()
_registry.register_completion("openai", OpenAICompletion)
_registry.register_completion("anthropic", AnthropicCompletion)
_registry.register_completion("ollama", OllamaCompletion)
