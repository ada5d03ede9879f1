"""
Remote summarizer backed by LangChain chat models.

``ChatModelCaller`` is an async callable ``(engine_id, prompt, temperature)
-> text``. Engine ids map to chat model names through
``MemoryConfig.engine_models``; credentials come from the environment:

- API key: API_KEY > ANTHROPIC_API_KEY > ANTHROPIC_AUTH_TOKEN
- Base URL: API_BASE_URL > ANTHROPIC_BASE_URL
- MODEL_PROVIDER: explicit provider, otherwise inferred by init_chat_model
"""

import logging
import os
from typing import Optional

from langchain.chat_models import init_chat_model
from langchain_core.messages import HumanMessage

from .config import DEFAULT_ENGINE_MODELS

logger = logging.getLogger(__name__)

SUMMARY_MAX_TOKENS = 2000


def get_credentials() -> tuple[Optional[str], Optional[str]]:
    api_key = (
        os.getenv("API_KEY")
        or os.getenv("ANTHROPIC_API_KEY")
        or os.getenv("ANTHROPIC_AUTH_TOKEN")
    )
    base_url = os.getenv("API_BASE_URL") or os.getenv("ANTHROPIC_BASE_URL")
    return api_key, base_url


def response_text(content) -> str:
    """Flatten a chat model reply (plain string or content blocks) to text."""
    if isinstance(content, str):
        return content
    parts = []
    for block in content or []:
        if isinstance(block, str):
            parts.append(block)
        elif isinstance(block, dict) and block.get("type") == "text":
            parts.append(block.get("text", ""))
    return "".join(parts)


class ChatModelCaller:
    """One cached chat model per (engine, temperature); no retries."""

    def __init__(self, engine_models: Optional[dict[str, str]] = None, max_tokens: int = SUMMARY_MAX_TOKENS):
        self.engine_models = dict(engine_models or DEFAULT_ENGINE_MODELS)
        self.max_tokens = max_tokens
        self._models: dict[tuple[str, float], object] = {}

    def model_name(self, engine_id: str) -> str:
        # Unknown engine ids are taken as model names
        return self.engine_models.get(engine_id, engine_id)

    def get_model(self, engine_id: str, temperature: float):
        cache_key = (engine_id, temperature)
        model = self._models.get(cache_key)
        if model is not None:
            return model

        api_key, base_url = get_credentials()
        init_kwargs = {"temperature": temperature, "max_tokens": self.max_tokens}
        if api_key:
            init_kwargs["api_key"] = api_key
        if base_url:
            init_kwargs["base_url"] = base_url

        model_provider = os.getenv("MODEL_PROVIDER")
        provider_kwargs = {}
        if model_provider:
            provider_kwargs["model_provider"] = model_provider

        model = init_chat_model(self.model_name(engine_id), **provider_kwargs, **init_kwargs)
        self._models[cache_key] = model
        logger.debug("Initialized chat model %s for engine %s", self.model_name(engine_id), engine_id)
        return model

    async def __call__(self, engine_id: str, prompt: str, temperature: float) -> str:
        model = self.get_model(engine_id, temperature)
        response = await model.ainvoke([HumanMessage(content=prompt)])
        return response_text(response.content)
