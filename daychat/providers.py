"""LLM backends behind a common ``generate`` / ``stream`` interface.

Every backend takes the full ordered history (``Message`` list, last entry is
the new user turn) and either returns the whole completion or yields it in
fragments. Anything that goes wrong on the provider side is raised as
:class:`~daychat.errors.ProviderError`.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Dict, Iterator, List, Optional, Sequence

from .config import Settings
from .errors import ProviderError
from .prompts import demo_reply
from .schemas import Message

logger = logging.getLogger(__name__)


@dataclass
class ProviderOptions:
    temperature: Optional[float] = None
    max_tokens: Optional[int] = None
    model: Optional[str] = None


class LLMProvider:
    name = "base"

    def __init__(self, model: str, temperature: float = 0.7, max_tokens: int = 1000,
                 system_prompt: Optional[str] = None) -> None:
        self.model = model
        self.temperature = temperature
        self.max_tokens = max_tokens
        self.system_prompt = system_prompt

    def _resolve(self, options: Optional[ProviderOptions]):
        options = options or ProviderOptions()
        return (
            options.model or self.model,
            self.temperature if options.temperature is None else options.temperature,
            self.max_tokens if options.max_tokens is None else options.max_tokens,
        )

    def stream(self, messages: Sequence[Message], options: Optional[ProviderOptions] = None) -> Iterator[str]:
        raise NotImplementedError

    def generate(self, messages: Sequence[Message], options: Optional[ProviderOptions] = None) -> str:
        return "".join(self.stream(messages, options))

    def models(self) -> List[str]:
        return [self.model]


class DemoProvider(LLMProvider):
    """Offline canned replies, handy for trying the server without an API key."""

    name = "demo"
    chunk_size = 10

    def stream(self, messages, options=None):
        last_user = next((m.content for m in reversed(messages) if m.role == "user"), "")
        text = demo_reply(last_user)
        for i in range(0, len(text), self.chunk_size):
            yield text[i : i + self.chunk_size]


class OpenAIProvider(LLMProvider):
    """Any OpenAI-compatible chat completions endpoint."""

    name = "openai"

    def __init__(self, api_key: str, base_url: Optional[str] = None, **kwargs: Any) -> None:
        super().__init__(**kwargs)
        self.api_key = api_key
        self.base_url = base_url
        self._client = None

    def _get_client(self):
        if self._client is None:
            if not self.api_key:
                raise ProviderError("Missing OPENAI_API_KEY. Set it in the environment or config file.")
            from openai import OpenAI

            self._client = OpenAI(api_key=self.api_key, base_url=self.base_url)
        return self._client

    def _payload(self, messages: Sequence[Message]) -> List[Dict[str, str]]:
        payload = []
        if self.system_prompt:
            payload.append({"role": "system", "content": self.system_prompt})
        payload.extend({"role": m.role, "content": m.content} for m in messages)
        return payload

    def generate(self, messages, options=None):
        from openai import OpenAIError

        model, temperature, max_tokens = self._resolve(options)
        client = self._get_client()
        try:
            cc = client.chat.completions.create(
                model=model,
                messages=self._payload(messages),
                temperature=temperature,
                max_tokens=max_tokens,
            )
        except OpenAIError as e:
            logger.error("OpenAI generate failed: %s", e)
            raise ProviderError(f"OpenAI call failed: {e}") from e
        if not cc.choices:
            raise ProviderError("OpenAI returned no choices")
        return cc.choices[0].message.content or ""

    def stream(self, messages, options=None):
        from openai import OpenAIError

        model, temperature, max_tokens = self._resolve(options)
        client = self._get_client()
        try:
            response = client.chat.completions.create(
                model=model,
                messages=self._payload(messages),
                temperature=temperature,
                max_tokens=max_tokens,
                stream=True,
            )
            for chunk in response:
                if not chunk.choices:
                    continue
                text = chunk.choices[0].delta.content
                if text:
                    yield text
        except OpenAIError as e:
            logger.error("OpenAI stream failed: %s", e)
            raise ProviderError(f"OpenAI call failed: {e}") from e


def to_gemini_history(messages: Sequence[Message]) -> List[Dict[str, Any]]:
    gemini_hist = []
    for msg in messages:
        if msg.role == "system" or not msg.content:
            continue
        role = "user" if msg.role == "user" else "model"
        gemini_hist.append({"role": role, "parts": [msg.content]})
    return gemini_hist


class GeminiProvider(LLMProvider):
    name = "gemini"

    def __init__(self, api_key: str, **kwargs: Any) -> None:
        super().__init__(**kwargs)
        self.api_key = api_key

    def _start(self, messages: Sequence[Message], options: Optional[ProviderOptions]):
        if not self.api_key:
            raise ProviderError("Missing GEMINI_API_KEY. Set it in the environment or config file.")
        import google.generativeai as genai

        model_name, temperature, max_tokens = self._resolve(options)
        history = to_gemini_history(messages)
        if not history or history[-1]["role"] != "user":
            raise ProviderError("Gemini needs the conversation to end with a user message")

        genai.configure(api_key=self.api_key)
        model = genai.GenerativeModel(model_name, system_instruction=self.system_prompt or None)
        chat_session = model.start_chat(history=history[:-1])
        config = genai.GenerationConfig(temperature=temperature, max_output_tokens=max_tokens)
        return chat_session, history[-1]["parts"][0], config

    def generate(self, messages, options=None):
        chat_session, last, config = self._start(messages, options)
        try:
            return chat_session.send_message(last, generation_config=config).text
        except Exception as e:
            logger.error("Gemini generate failed: %s", e)
            raise ProviderError(f"Gemini call failed: {e}") from e

    def stream(self, messages, options=None):
        chat_session, last, config = self._start(messages, options)
        try:
            response = chat_session.send_message(last, generation_config=config, stream=True)
            for chunk in response:
                if chunk.text:
                    yield chunk.text
        except Exception as e:
            logger.error("Gemini stream failed: %s", e)
            raise ProviderError(f"Gemini call failed: {e}") from e


def build_provider(settings: Settings) -> LLMProvider:
    common = dict(
        model=settings.resolved_model(),
        temperature=settings.temperature,
        max_tokens=settings.max_tokens,
        system_prompt=settings.system_prompt,
    )
    if settings.provider == "openai":
        return OpenAIProvider(api_key=settings.api_key, base_url=settings.base_url, **common)
    if settings.provider == "gemini":
        return GeminiProvider(api_key=settings.api_key, **common)
    if settings.provider == "ollama":
        from .local_llm import OllamaProvider

        return OllamaProvider(ollama_path=settings.ollama_path, **common)
    if settings.provider == "demo":
        return DemoProvider(**common)
    raise ValueError(f"Unknown provider {settings.provider!r}")
