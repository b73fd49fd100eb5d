#!/usr/bin/env python3
"""
Provider Adapter - one HTTP client per LLM provider behind a single interface.

Each client turns (prompt, api key, model, optional image) into the provider's
request shape and normalizes the provider's response into a ProviderResponse.
Clients are looked up through the static PROVIDERS registry.
"""

import base64
import logging
import mimetypes
import os
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

import httpx

from input_validation import (
    CredentialMissingError,
    ProviderError,
    ValidationError,
    sanitize_log_message,
)

# --- Configuration & Constants ---
DEFAULT_TIMEOUT = float(os.getenv("BUNNY_TIMEOUT", "900"))  # seconds
DEFAULT_MAX_TOKENS = 2048
DEFAULT_TEMPERATURE = 0.7
NO_RESPONSE = "No response"
TEST_PROMPT = "Hello"

DEFAULT_MODELS = {
    "openai": os.getenv("BUNNY_OPENAI_MODEL", "gpt-4o-mini"),
    "anthropic": os.getenv("BUNNY_ANTHROPIC_MODEL", "claude-3-haiku-20240307"),
    "google": os.getenv("BUNNY_GOOGLE_MODEL", "gemini-1.5-flash"),
    "groq": os.getenv("BUNNY_GROQ_MODEL", "llama3-8b-8192"),
}


@dataclass
class ProviderResponse:
    provider_name: str
    content: str
    error: Optional[str] = None
    duration: float = 0.0
    tokens: Optional[int] = None
    model: Optional[str] = None
    timestamp: str = field(default_factory=lambda: datetime.now().isoformat())


@dataclass
class ImageInput:
    """An image attached to a prompt, sent only to multimodal providers."""

    mime_type: str
    data: bytes

    @classmethod
    def from_path(cls, path: Path) -> "ImageInput":
        mime_type, _ = mimetypes.guess_type(str(path))
        if not mime_type or not mime_type.startswith("image/"):
            raise ValidationError(f"Not a valid image file: {path}")
        return cls(mime_type=mime_type, data=Path(path).read_bytes())

    def to_base64(self) -> str:
        return base64.b64encode(self.data).decode("ascii")


def _first(items: Any) -> Dict[str, Any]:
    """Return the first element of a JSON list, or an empty dict."""
    if isinstance(items, list) and items and isinstance(items[0], dict):
        return items[0]
    return {}


# --- Abstract Base Class for Provider Clients ---
class ProviderClient(ABC):
    name = ""
    label = ""
    display_name = ""
    description = ""
    base_url = ""
    supports_images = False

    def __init__(self, base_url: Optional[str] = None, timeout: float = DEFAULT_TIMEOUT):
        if base_url:
            self.base_url = base_url.rstrip("/")
        self.timeout = timeout

    @property
    def default_model(self) -> str:
        return DEFAULT_MODELS[self.name]

    @abstractmethod
    def build_request(
        self, prompt: str, api_key: str, model: str, image: Optional[ImageInput]
    ) -> Tuple[str, Dict[str, str], Dict[str, str], Dict[str, Any]]:
        """Return (url, headers, query params, JSON payload)."""
        pass

    @abstractmethod
    def parse_response(self, data: Dict[str, Any], model: str) -> ProviderResponse:
        pass

    def _error_message(self, response: httpx.Response) -> str:
        try:
            body = response.json()
        except ValueError:
            body = None
        # Gemini sometimes wraps the error object in a list
        if isinstance(body, list):
            body = _first(body)
        error = body.get("error") if isinstance(body, dict) else None
        if isinstance(error, dict) and error.get("message"):
            return str(error["message"])
        return f"Request failed with status code {response.status_code}"

    async def ask(
        self,
        prompt: str,
        api_key: str,
        model: Optional[str] = None,
        image: Optional[ImageInput] = None,
        http_client: Optional[httpx.AsyncClient] = None,
    ) -> ProviderResponse:
        if not api_key:
            raise CredentialMissingError(self.name)

        model = model or self.default_model
        if image is not None and not self.supports_images:
            logging.debug(f"[{self.name}] image input not supported, ignoring it")
            image = None

        url, headers, params, payload = self.build_request(prompt, api_key, model, image)
        headers.setdefault("Content-Type", "application/json")

        logging.info(f"[{self.name}] sending request (model={model})...")
        start_time = time.time()
        try:
            if http_client is None:
                async with httpx.AsyncClient(timeout=self.timeout) as client:
                    response = await client.post(
                        url, json=payload, headers=headers, params=params
                    )
            else:
                response = await http_client.post(
                    url, json=payload, headers=headers, params=params
                )
        except httpx.HTTPError as e:
            reason = str(e) or type(e).__name__
            logging.warning(f"[{self.name}] transport failure: {sanitize_log_message(reason)}")
            raise ProviderError(f"{self.label} Error: {reason}", provider_id=self.name) from e
        duration = time.time() - start_time

        if response.is_error:
            message = self._error_message(response)
            logging.warning(
                f"[{self.name}] HTTP {response.status_code}: {sanitize_log_message(message)}"
            )
            raise ProviderError(
                f"{self.label} Error: {message}",
                provider_id=self.name,
                status_code=response.status_code,
            )

        try:
            data = response.json()
        except ValueError as e:
            raise ProviderError(
                f"{self.label} Error: invalid JSON in response", provider_id=self.name
            ) from e
        if not isinstance(data, dict):
            data = {}

        try:
            result = self.parse_response(data, model)
        except (AttributeError, TypeError, KeyError) as e:
            logging.warning(f"[{self.name}] unexpected response shape: {e}")
            raise ProviderError(
                f"{self.label} Error: malformed response", provider_id=self.name
            ) from e
        result.duration = duration
        logging.info(f"[{self.name}] completed in {duration:.1f}s (tokens={result.tokens})")
        return result


# --- Concrete Provider Implementations ---
class OpenAIClient(ProviderClient):
    name = "openai"
    label = "OpenAI"
    display_name = "ChatGPT"
    description = "OpenAI's ChatGPT with GPT-4 access"
    base_url = "https://api.openai.com"
    path = "/v1/chat/completions"

    def build_request(self, prompt, api_key, model, image):
        payload = {
            "model": model,
            "messages": [{"role": "user", "content": prompt}],
            "max_tokens": DEFAULT_MAX_TOKENS,
            "temperature": DEFAULT_TEMPERATURE,
        }
        headers = {"Authorization": f"Bearer {api_key}"}
        return f"{self.base_url}{self.path}", headers, {}, payload

    def parse_response(self, data, model):
        message = _first(data.get("choices")).get("message") or {}
        usage = data.get("usage") or {}
        return ProviderResponse(
            self.name,
            message.get("content") or NO_RESPONSE,
            tokens=usage.get("total_tokens"),
            model=data.get("model") or model,
        )


class GroqClient(OpenAIClient):
    # OpenAI-compatible API under a different prefix
    name = "groq"
    label = "Groq"
    display_name = "Groq"
    description = "Ultra-fast inference with Groq LPU"
    base_url = "https://api.groq.com"
    path = "/openai/v1/chat/completions"


class AnthropicClient(ProviderClient):
    name = "anthropic"
    label = "Claude"
    display_name = "Claude"
    description = "Anthropic's Claude with advanced reasoning"
    base_url = "https://api.anthropic.com"
    api_version = "2023-06-01"

    def build_request(self, prompt, api_key, model, image):
        payload = {
            "model": model,
            "max_tokens": DEFAULT_MAX_TOKENS,
            "messages": [{"role": "user", "content": prompt}],
        }
        headers = {"x-api-key": api_key, "anthropic-version": self.api_version}
        return f"{self.base_url}/v1/messages", headers, {}, payload

    def parse_response(self, data, model):
        usage = data.get("usage") or {}
        counts: List[int] = [
            usage[key] for key in ("input_tokens", "output_tokens") if usage.get(key) is not None
        ]
        return ProviderResponse(
            self.name,
            _first(data.get("content")).get("text") or NO_RESPONSE,
            tokens=sum(counts) if counts else None,
            model=data.get("model") or model,
        )


class GoogleClient(ProviderClient):
    name = "google"
    label = "Gemini"
    display_name = "Gemini"
    description = "Google's Gemini Pro multimodal AI"
    base_url = "https://generativelanguage.googleapis.com"
    supports_images = True

    def build_request(self, prompt, api_key, model, image):
        parts: List[Dict[str, Any]] = [{"text": prompt}]
        if image is not None:
            parts.append(
                {"inline_data": {"mime_type": image.mime_type, "data": image.to_base64()}}
            )
        payload = {
            "contents": [{"parts": parts}],
            "generationConfig": {
                "temperature": DEFAULT_TEMPERATURE,
                "maxOutputTokens": DEFAULT_MAX_TOKENS,
            },
        }
        url = f"{self.base_url}/v1beta/models/{model}:generateContent"
        # The key travels in the query string; never log the full URL
        return url, {}, {"key": api_key}, payload

    def parse_response(self, data, model):
        content = _first(data.get("candidates")).get("content") or {}
        usage = data.get("usageMetadata") or {}
        return ProviderResponse(
            self.name,
            _first(content.get("parts")).get("text") or NO_RESPONSE,
            tokens=usage.get("totalTokenCount"),
            model=model,
        )


PROVIDERS: Dict[str, ProviderClient] = {
    client.name: client
    for client in (OpenAIClient(), AnthropicClient(), GoogleClient(), GroqClient())
}


def get_client(provider_id: str) -> ProviderClient:
    client = PROVIDERS.get(provider_id)
    if client is None:
        raise ProviderError(f"Unsupported AI service: {provider_id}", provider_id=provider_id)
    return client


async def invoke(
    provider_id: str,
    prompt: str,
    api_key: str,
    model: Optional[str] = None,
    image: Optional[ImageInput] = None,
    http_client: Optional[httpx.AsyncClient] = None,
) -> ProviderResponse:
    """
    Send one prompt to one provider.

    Raises:
        CredentialMissingError: If api_key is empty
        ProviderError: On transport failure, non-2xx status or unknown provider
    """
    client = get_client(provider_id)
    return await client.ask(prompt, api_key, model, image, http_client=http_client)


async def test_connection(
    provider_id: str,
    api_key: str,
    model: Optional[str] = None,
    http_client: Optional[httpx.AsyncClient] = None,
) -> bool:
    """Check a credential with one real call. Any failure reports False."""
    try:
        await invoke(provider_id, TEST_PROMPT, api_key, model, http_client=http_client)
        return True
    except Exception as e:
        logging.error(
            f"Connection test failed for {provider_id}: {sanitize_log_message(str(e))}"
        )
        return False

