from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from http.client import HTTPException
from typing import Optional
from urllib.request import Request, urlopen

from config import get_settings


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ChatTurn:
    role: str  # "system" | "user" | "assistant"
    content: str


class CompletionError(RuntimeError):
    pass


class CompletionClient:
    """Chat-completion client for an OpenAI-compatible endpoint (Groq by default)."""

    def __init__(
        self,
        api_url: Optional[str] = None,
        api_key: Optional[str] = None,
        model: Optional[str] = None,
        timeout: Optional[float] = None,
    ) -> None:
        settings = get_settings()
        self.api_url = api_url or settings.ai_api_url
        self.api_key = api_key if api_key is not None else settings.ai_api_key
        self.model = model or settings.ai_model
        self.timeout = timeout if timeout is not None else settings.ai_timeout_secs

    def complete(
        self,
        messages: list[ChatTurn],
        *,
        max_tokens: int = 500,
        temperature: float = 0.7,
    ) -> str:
        if not self.api_key:
            raise CompletionError("AI API key is not configured")

        body = json.dumps(
            {
                "model": self.model,
                "messages": [{"role": m.role, "content": m.content} for m in messages],
                "max_tokens": max_tokens,
                "temperature": temperature,
            }
        ).encode("utf-8")
        req = Request(
            self.api_url,
            data=body,
            method="POST",
            headers={
                "Accept": "application/json",
                "Content-Type": "application/json",
                "Authorization": f"Bearer {self.api_key}",
            },
        )
        try:
            with urlopen(req, timeout=self.timeout) as resp:
                payload = json.loads(resp.read().decode("utf-8"))
        except (HTTPException, OSError, ValueError) as exc:
            raise CompletionError("AI completion request failed") from exc

        try:
            content = payload["choices"][0]["message"]["content"]
        except (KeyError, IndexError, TypeError) as exc:
            raise CompletionError("Unexpected AI provider response") from exc

        logger.info(
            f"ai_completion: model={self.model} chars={len(content or '')}"
        )
        return content
