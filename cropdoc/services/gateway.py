"""
Model provider gateway.

The diagnostic and assistant clients only talk to the narrow capability
protocols below; OpenRouterGateway implements all three with the OpenAI SDK
pointed at OpenRouter (Gemini models).
"""
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Protocol

import httpx
from openai import AsyncOpenAI

from cropdoc.config import (
    ANALYSIS_MODEL,
    API_CONNECT_TIMEOUT,
    API_TIMEOUT,
    APP_REFERER,
    APP_TITLE,
    ASSISTANT_MODEL,
    DEEP_DIVE_MODEL,
    OPENROUTER_API_KEY,
    OPENROUTER_BASE_URL,
)

logger = logging.getLogger(__name__)


@dataclass
class Citation:
    uri: str
    title: Optional[str] = None


@dataclass
class GroundedAnswer:
    text: Optional[str]
    citations: List[Citation] = field(default_factory=list)


class VisionCapability(Protocol):
    async def generate_json(self, prompt: str, image_data: str, mime_type: str, schema: Dict[str, Any]) -> Optional[str]: ...


class SearchCapability(Protocol):
    async def grounded_search(self, prompt: str) -> GroundedAnswer: ...


class ChatCapability(Protocol):
    async def chat(self, messages: List[Dict[str, str]]) -> Optional[str]: ...


class GatewayNotConfiguredError(RuntimeError):
    """No provider credential was supplied"""


def build_openrouter_client(api_key: Optional[str] = OPENROUTER_API_KEY) -> Optional[AsyncOpenAI]:
    if not api_key:
        logger.warning("⚠️ OPENROUTER_API_KEY not set - model calls will fail")
        return None

    http_client = httpx.AsyncClient(
        timeout=httpx.Timeout(
            connect=API_CONNECT_TIMEOUT,
            read=API_TIMEOUT,
            write=API_TIMEOUT,
            pool=API_TIMEOUT
        )
    )
    client = AsyncOpenAI(
        base_url=OPENROUTER_BASE_URL,
        api_key=api_key,
        http_client=http_client,
    )
    logger.info(f"OpenRouter client initialized with {API_TIMEOUT}s timeout")
    return client


class OpenRouterGateway:
    def __init__(
        self,
        client: Optional[AsyncOpenAI] = None,
        analysis_model: str = ANALYSIS_MODEL,
        deep_dive_model: str = DEEP_DIVE_MODEL,
        assistant_model: str = ASSISTANT_MODEL,
    ):
        self.client = client
        self.analysis_model = analysis_model
        self.deep_dive_model = deep_dive_model
        self.assistant_model = assistant_model

    @property
    def configured(self) -> bool:
        return self.client is not None

    def _require_client(self) -> AsyncOpenAI:
        if self.client is None:
            raise GatewayNotConfiguredError("Model provider credential is not configured")
        return self.client

    def _headers(self, purpose: str) -> Dict[str, str]:
        return {
            "HTTP-Referer": APP_REFERER,
            "X-Title": f"{APP_TITLE} {purpose}",
        }

    async def generate_json(self, prompt: str, image_data: str, mime_type: str, schema: Dict[str, Any]) -> Optional[str]:
        client = self._require_client()
        image_url = image_data if not mime_type else f"data:{mime_type};base64,{image_data}"

        response = await client.chat.completions.create(
            model=self.analysis_model,
            messages=[
                {
                    "role": "user",
                    "content": [
                        {"type": "text", "text": prompt},
                        {"type": "image_url", "image_url": {"url": image_url}},
                    ],
                }
            ],
            response_format={
                "type": "json_schema",
                "json_schema": {"name": "crop_analysis", "strict": True, "schema": schema},
            },
            temperature=0.1,
            extra_headers=self._headers("Analysis"),
        )
        if not response.choices:
            return None
        return response.choices[0].message.content

    async def grounded_search(self, prompt: str) -> GroundedAnswer:
        client = self._require_client()
        response = await client.chat.completions.create(
            model=self.deep_dive_model,
            messages=[{"role": "user", "content": prompt}],
            extra_body={"plugins": [{"id": "web"}]},
            extra_headers=self._headers("Deep Dive"),
        )
        if not response.choices:
            return GroundedAnswer(text=None)

        message = response.choices[0].message
        citations = []
        for annotation in getattr(message, "annotations", None) or []:
            if getattr(annotation, "type", None) != "url_citation":
                continue
            url_citation = getattr(annotation, "url_citation", None)
            if url_citation is None or not getattr(url_citation, "url", None):
                continue
            citations.append(Citation(uri=url_citation.url, title=getattr(url_citation, "title", None)))

        return GroundedAnswer(text=message.content, citations=citations)

    async def chat(self, messages: List[Dict[str, str]]) -> Optional[str]:
        client = self._require_client()
        response = await client.chat.completions.create(
            model=self.assistant_model,
            messages=messages,
            max_tokens=800,
            extra_headers=self._headers("Assistant"),
        )
        if not response.choices:
            return None
        return response.choices[0].message.content
