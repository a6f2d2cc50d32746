from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Protocol

import httpx

from triagefix.errors import CompletionError

logger = logging.getLogger(__name__)

# One OpenAI-style content part: {"type": "text", "text": ...} or
# {"type": "image_url", "image_url": {"url": "data:image/png;base64,..."}}
ContentPart = Dict[str, Any]


class CompletionClient(Protocol):
    async def complete(
        self,
        *,
        system_prompt: str,
        user_content: List[ContentPart],
        temperature: float = 0.3,
        response_as_json: bool = True,
        max_tokens: int = 4000,
    ) -> str: ...


def text_part(text: str) -> ContentPart:
    return {"type": "text", "text": text}


def image_part(base64_png: str) -> ContentPart:
    return {"type": "image_url", "image_url": {"url": f"data:image/png;base64,{base64_png}"}}


@dataclass(frozen=True)
class OpenAICompatibleClient:
    """
    Calls an OpenAI-compatible chat completions API.

    Endpoint: POST {base_url}/chat/completions

    Transient network errors are retried with exponential backoff; HTTP error
    statuses and unparseable bodies are not.
    """

    api_key: str
    model: str = "gpt-4.1"
    base_url: str = "https://api.openai.com/v1"
    timeout_s: float = 90.0
    max_retries: int = 3
    retry_backoff_s: float = 1.0
    transport: httpx.AsyncBaseTransport | None = None

    @classmethod
    def from_settings(cls, settings: Any) -> "OpenAICompatibleClient":
        if not settings.openai_api_key:
            raise ValueError("TRIAGEFIX_OPENAI_API_KEY is required")
        return cls(
            api_key=settings.openai_api_key,
            model=settings.openai_model,
            base_url=settings.openai_base_url,
            timeout_s=settings.openai_timeout_s,
            max_retries=settings.openai_max_retries,
            retry_backoff_s=settings.openai_retry_backoff_s,
        )

    async def complete(
        self,
        *,
        system_prompt: str,
        user_content: List[ContentPart],
        temperature: float = 0.3,
        response_as_json: bool = True,
        max_tokens: int = 4000,
    ) -> str:
        url = f"{self.base_url.rstrip('/')}/chat/completions"
        headers = {
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json",
        }
        # Text-only requests are sent as a single string.
        has_images = any(p.get("type") == "image_url" for p in user_content)
        content: Any = user_content if has_images else "\n".join(str(p.get("text", "")) for p in user_content)
        payload: Dict[str, Any] = {
            "model": self.model,
            "messages": [
                {"role": "system", "content": system_prompt},
                {"role": "user", "content": content},
            ],
            "temperature": temperature,
            "max_tokens": int(max(1, min(int(max_tokens), 32768))),
        }
        if response_as_json:
            payload["response_format"] = {"type": "json_object"}

        last_err: Optional[Exception] = None
        for attempt in range(1, max(1, int(self.max_retries)) + 1):
            try:
                async with httpx.AsyncClient(timeout=self.timeout_s, transport=self.transport) as client:
                    r = await client.post(url, headers=headers, json=payload)
                if r.status_code != 200:
                    raise CompletionError(f"completion_http_{r.status_code}: {r.text[:1500]}")
                data = r.json()
                try:
                    text = data["choices"][0]["message"]["content"]
                except (KeyError, IndexError, TypeError) as e:
                    raise CompletionError(f"completion_response_parse_error: {str(data)[:1500]}") from e
                if not text:
                    raise CompletionError("completion_empty_response")
                return str(text)
            except (
                httpx.ReadError,
                httpx.RemoteProtocolError,
                httpx.ConnectError,
                httpx.TimeoutException,
            ) as e:
                last_err = e
                if attempt < int(self.max_retries):
                    delay = self.retry_backoff_s * (2 ** (attempt - 1))
                    logger.warning("completion attempt %d/%d failed (%s); retrying in %.1fs", attempt, self.max_retries, e, delay)
                    await asyncio.sleep(delay)
                    continue
                raise CompletionError(f"completion_transient_error after {attempt} attempts: {e}") from e

        raise CompletionError(f"completion_failed: {last_err}")
