"""Provider adapters. Each sends one image plus two prompts and returns text and usage."""

from __future__ import annotations

import logging
import re
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Type

import anthropic
import openai
from anthropic import AsyncAnthropic
from openai import AsyncOpenAI

from ..config import API_KEY_ENV_VARS, DEFAULT_BASE_URLS, DEFAULT_MAX_TOKENS, get_api_key
from ..errors import ProviderTimeoutError, ProviderTransportError
from ..models import ProviderConfig

logger = logging.getLogger(__name__)

ESTIMATED_INPUT_TOKENS = 1000
ESTIMATED_OUTPUT_TOKENS = 500

_DATA_URL_PREFIX = re.compile(r"^data:image/[\w.+-]+;base64,")


@dataclass
class Completion:
    text: str
    input_tokens: int
    output_tokens: int


def strip_data_url(image_b64: str) -> str:
    return _DATA_URL_PREFIX.sub("", image_b64.strip())


def image_media_type(image_b64: str) -> str:
    data = strip_data_url(image_b64)
    if data.startswith("iVBORw0KGgo"):
        return "image/png"
    if data.startswith("R0lGOD"):
        return "image/gif"
    if data.startswith("UklGR"):
        return "image/webp"
    return "image/jpeg"


class VisionBackend(ABC):
    """Transport for one provider family."""

    def __init__(self, provider: str, model: str, config: ProviderConfig) -> None:
        self.provider = provider
        self.model = model
        self.config = config
        self.max_tokens = config.max_tokens or DEFAULT_MAX_TOKENS

    def api_key(self) -> Optional[str]:
        return self.config.api_key or get_api_key(self.provider)

    def require_api_key(self) -> str:
        key = self.api_key()
        if not key:
            env_names = " or ".join(API_KEY_ENV_VARS.get(self.provider, ())) or "an API key variable"
            raise ProviderTransportError(
                f"{self.provider} API key not provided. Set {env_names} or pass api_key in the provider config.",
                provider=self.provider,
            )
        return key

    @abstractmethod
    async def complete(self, system_prompt: str, user_prompt: str, image_b64: str) -> Completion:
        raise NotImplementedError


class OpenAICompatibleBackend(VisionBackend):
    """Chat-completions endpoints: OpenAI, Volcengine/Doubao and custom gateways."""

    def __init__(self, provider: str, model: str, config: ProviderConfig) -> None:
        super().__init__(provider, model, config)
        self._client: Optional[AsyncOpenAI] = None

    def _get_client(self) -> AsyncOpenAI:
        if self._client is not None:
            return self._client
        base_url = self.config.base_url or DEFAULT_BASE_URLS.get(self.provider)
        if self.provider == "custom":
            if not base_url:
                raise ProviderTransportError("Custom provider requires base_url", provider=self.provider)
            # Self-hosted gateways often run without authentication.
            api_key = self.api_key() or "EMPTY"
        else:
            api_key = self.require_api_key()
        kwargs: Dict[str, Any] = {"api_key": api_key}
        if base_url:
            kwargs["base_url"] = base_url
        if self.config.timeout is not None:
            kwargs["timeout"] = self.config.timeout
        self._client = AsyncOpenAI(**kwargs)
        return self._client

    async def complete(self, system_prompt: str, user_prompt: str, image_b64: str) -> Completion:
        client = self._get_client()
        data = strip_data_url(image_b64)
        messages: List[Dict[str, Any]] = [
            {"role": "system", "content": system_prompt},
            {
                "role": "user",
                "content": [
                    {"type": "image_url", "image_url": {"url": f"data:{image_media_type(data)};base64,{data}"}},
                    {"type": "text", "text": user_prompt},
                ],
            },
        ]
        request: Dict[str, Any] = {"model": self.model, "max_tokens": self.max_tokens, "messages": messages}
        if self.config.temperature is not None:
            request["temperature"] = self.config.temperature

        try:
            response = await client.chat.completions.create(**request)
        except openai.APITimeoutError as exc:
            raise ProviderTimeoutError(f"{self.provider} request timed out", provider=self.provider) from exc
        except openai.APIError as exc:
            raise ProviderTransportError(f"{self.provider} API error: {exc}", provider=self.provider) from exc

        text = ""
        if response.choices:
            text = response.choices[0].message.content or ""
        usage = getattr(response, "usage", None)
        return Completion(
            text=text,
            input_tokens=getattr(usage, "prompt_tokens", None) or ESTIMATED_INPUT_TOKENS,
            output_tokens=getattr(usage, "completion_tokens", None) or ESTIMATED_OUTPUT_TOKENS,
        )


class AnthropicBackend(VisionBackend):
    def __init__(self, provider: str, model: str, config: ProviderConfig) -> None:
        super().__init__(provider, model, config)
        self._client: Optional[AsyncAnthropic] = None

    def _get_client(self) -> AsyncAnthropic:
        if self._client is None:
            kwargs: Dict[str, Any] = {"api_key": self.require_api_key()}
            if self.config.base_url:
                kwargs["base_url"] = self.config.base_url
            if self.config.timeout is not None:
                kwargs["timeout"] = self.config.timeout
            self._client = AsyncAnthropic(**kwargs)
        return self._client

    async def complete(self, system_prompt: str, user_prompt: str, image_b64: str) -> Completion:
        client = self._get_client()
        data = strip_data_url(image_b64)
        request: Dict[str, Any] = {
            "model": self.model,
            "max_tokens": self.max_tokens,
            "system": system_prompt,
            "messages": [
                {
                    "role": "user",
                    "content": [
                        {
                            "type": "image",
                            "source": {"type": "base64", "media_type": image_media_type(data), "data": data},
                        },
                        {"type": "text", "text": user_prompt},
                    ],
                }
            ],
        }
        if self.config.temperature is not None:
            request["temperature"] = self.config.temperature

        try:
            response = await client.messages.create(**request)
        except anthropic.APITimeoutError as exc:
            raise ProviderTimeoutError(f"{self.provider} request timed out", provider=self.provider) from exc
        except anthropic.APIError as exc:
            raise ProviderTransportError(f"{self.provider} API error: {exc}", provider=self.provider) from exc

        text = "".join(getattr(block, "text", "") for block in response.content or [])
        usage = getattr(response, "usage", None)
        return Completion(
            text=text,
            input_tokens=getattr(usage, "input_tokens", None) or ESTIMATED_INPUT_TOKENS,
            output_tokens=getattr(usage, "output_tokens", None) or ESTIMATED_OUTPUT_TOKENS,
        )


BACKENDS: Dict[str, Type[VisionBackend]] = {
    "anthropic": AnthropicBackend,
    "openai": OpenAICompatibleBackend,
    "volcengine": OpenAICompatibleBackend,
    "doubao": OpenAICompatibleBackend,
    "custom": OpenAICompatibleBackend,
}


def create_backend(provider: str, model: str, config: ProviderConfig) -> VisionBackend:
    try:
        backend_cls = BACKENDS[provider]
    except KeyError as exc:
        raise ProviderTransportError(f"Unsupported VLM provider: {provider}", provider=provider) from exc
    logger.debug("Using %s backend for provider=%s model=%s", backend_cls.__name__, provider, model)
    return backend_cls(provider, model, config)
