"""
LLM client with provider routing

One gateway endpoint, three wire formats picked by the model id prefix:
  anthropic/<id>  -> {base}/anthropic/v1/messages
  google/<id>     -> {base}/gemini/v1beta/models/<id>:generateContent
  anything else   -> {base}/openai/v1/chat/completions
"""
import logging
from typing import Any, Dict, Optional, Tuple

import httpx

from config.settings import LLMSettings, settings
from core.interfaces.llm_client_interface import LLMClientInterface
from utils.exceptions import LLMException
from utils.http_retry import post_json_with_retry

logger = logging.getLogger(__name__)

ANTHROPIC_VERSION = "2023-06-01"


def resolve_provider(model: str) -> Tuple[str, str]:
    """Split a model id into (provider, provider-local model id)."""
    if model.startswith("anthropic/"):
        return "anthropic", model[len("anthropic/"):]
    if model.startswith("google/"):
        return "google", model[len("google/"):]
    if model.startswith("openai/"):
        return "openai", model[len("openai/"):]
    return "openai", model


class LLMClient(LLMClientInterface):

    def __init__(self, config: Optional[LLMSettings] = None, client: Optional[httpx.AsyncClient] = None):
        self.config = config or settings.llm
        self.base_url = self.config.base_endpoint.rstrip("/")
        self.client = client or httpx.AsyncClient(
            timeout=httpx.Timeout(self.config.timeout_seconds, connect=10.0)
        )

    async def complete(self, model: str, system_prompt: str, user_prompt: str, max_tokens: int) -> str:
        provider, model_id = resolve_provider(model)
        if provider == "anthropic":
            url, headers, payload = self._anthropic_request(model_id, system_prompt, user_prompt, max_tokens)
        elif provider == "google":
            url, headers, payload = self._google_request(model_id, system_prompt, user_prompt, max_tokens)
        else:
            url, headers, payload = self._openai_request(model_id, system_prompt, user_prompt, max_tokens)

        data = await post_json_with_retry(
            self.client,
            url,
            payload,
            headers=headers,
            max_retries=self.config.max_retries,
            error_cls=LLMException,
            label=f"LLM completion ({model})",
        )

        try:
            if provider == "anthropic":
                return self._anthropic_text(data)
            if provider == "google":
                return self._google_text(data)
            return self._openai_text(data)
        except (KeyError, IndexError, TypeError) as e:
            raise LLMException(f"Unexpected {provider} response shape: {str(data)[:300]}") from e

    # --- Request builders ---

    def _anthropic_request(self, model_id: str, system_prompt: str, user_prompt: str, max_tokens: int):
        url = f"{self.base_url}/anthropic/v1/messages"
        headers = {
            "x-api-key": self.config.api_key,
            "anthropic-version": ANTHROPIC_VERSION,
        }
        payload: Dict[str, Any] = {
            "model": model_id,
            "max_tokens": max_tokens,
            "temperature": self.config.temperature,
            "system": system_prompt,
            "messages": [{"role": "user", "content": user_prompt}],
        }
        return url, headers, payload

    def _google_request(self, model_id: str, system_prompt: str, user_prompt: str, max_tokens: int):
        url = f"{self.base_url}/gemini/v1beta/models/{model_id}:generateContent"
        headers = {"x-goog-api-key": self.config.api_key}
        payload: Dict[str, Any] = {
            "systemInstruction": {"parts": [{"text": system_prompt}]},
            "contents": [{"role": "user", "parts": [{"text": user_prompt}]}],
            "generationConfig": {
                "temperature": self.config.temperature,
                "maxOutputTokens": max_tokens,
            },
        }
        return url, headers, payload

    def _openai_request(self, model_id: str, system_prompt: str, user_prompt: str, max_tokens: int):
        url = f"{self.base_url}/openai/v1/chat/completions"
        headers = {"Authorization": f"Bearer {self.config.api_key}"}
        payload: Dict[str, Any] = {
            "model": model_id,
            "temperature": self.config.temperature,
            "max_tokens": max_tokens,
            "messages": [
                {"role": "system", "content": system_prompt},
                {"role": "user", "content": user_prompt},
            ],
        }
        return url, headers, payload

    # --- Response readers ---

    @staticmethod
    def _anthropic_text(data: Dict[str, Any]) -> str:
        return "".join(block.get("text", "") for block in data["content"] if block.get("type") == "text")

    @staticmethod
    def _google_text(data: Dict[str, Any]) -> str:
        parts = data["candidates"][0]["content"]["parts"]
        return "".join(part.get("text", "") for part in parts)

    @staticmethod
    def _openai_text(data: Dict[str, Any]) -> str:
        return data["choices"][0]["message"]["content"] or ""

    async def close(self) -> None:
        await self.client.aclose()
