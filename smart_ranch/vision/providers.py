"""
Vision provider implementations and startup selection.

- HttpVisionProvider: POSTs the frame to a remote JSON endpoint (aiohttp)
- GeminiVisionProvider: sends the frame to Gemini through LangChain
- StubVisionProvider: deterministic simulated analysis for unconfigured setups
"""

import asyncio
import hashlib
from typing import Any, Dict, List, Optional

import aiohttp
import structlog
from langchain_core.language_models import BaseChatModel
from langchain_core.messages import HumanMessage

from .base import VisionProvider, parse_json_payload, unwrap_payload
from .prompts import ANALYSIS_SCHEMA, VISION_PROMPT
from ..exceptions import ConfigurationError, VisionProviderError, VisionResponseParsingError

logger = structlog.get_logger(__name__)


class HttpVisionProvider(VisionProvider):
    """
    Remote vision endpoint speaking {image, prompt, schema} JSON.

    Usable as an async context manager; otherwise the session is created on
    first use and released by close().

    Example:
        >>> async with HttpVisionProvider("https://vision.example/analyze", api_key="k") as provider:
        ...     payload = await provider.analyze(image_b64)
    """

    name = "http"

    def __init__(self, url: str, api_key: Optional[str] = None, timeout: int = 60):
        if not url:
            raise ConfigurationError("HTTP vision provider needs a URL", config_key="AI_VISION_URL")
        self.url = url
        self.api_key = api_key or None
        self.timeout = timeout
        self._session: Optional[aiohttp.ClientSession] = None

    async def __aenter__(self) -> "HttpVisionProvider":
        self._get_session()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()

    def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(timeout=aiohttp.ClientTimeout(total=self.timeout))
        return self._session

    def _headers(self) -> Dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        return headers

    async def close(self) -> None:
        if self._session is not None and not self._session.closed:
            await self._session.close()

    async def analyze(self, image_base64: str) -> Dict[str, Any]:
        body = {"image": image_base64, "prompt": VISION_PROMPT, "schema": ANALYSIS_SCHEMA}
        session = self._get_session()

        try:
            async with session.post(self.url, json=body, headers=self._headers()) as response:
                if response.status < 200 or response.status >= 300:
                    message = await response.text()
                    raise VisionProviderError(
                        message or "AI provider request failed.",
                        provider=self.name,
                        status=response.status,
                    )
                payload = await response.json(content_type=None)
        except aiohttp.ClientError as e:
            raise VisionProviderError("AI provider unreachable", provider=self.name, cause=e) from e
        except asyncio.TimeoutError as e:
            raise VisionProviderError("AI provider timed out", provider=self.name, cause=e) from e
        except ValueError as e:
            raise VisionResponseParsingError("AI provider returned invalid JSON", provider=self.name, cause=e) from e

        return unwrap_payload(payload)


class GeminiVisionProvider(VisionProvider):
    """Gemini multimodal analysis via langchain-google-genai."""

    name = "gemini"

    def __init__(self, llm: Optional[BaseChatModel] = None, mime_type: str = "image/jpeg"):
        if llm is None:
            from ..llms import create_vision_llm
            llm = create_vision_llm()
        self.llm = llm
        self.mime_type = mime_type

    def _build_message(self, image_base64: str) -> HumanMessage:
        return HumanMessage(content=[
            {"type": "text", "text": VISION_PROMPT},
            {"type": "image_url", "image_url": {"url": f"data:{self.mime_type};base64,{image_base64}"}},
        ])

    @staticmethod
    def _content_text(content: Any) -> str:
        # Newer Gemini models return a list of content parts
        if isinstance(content, str):
            return content
        if isinstance(content, list):
            parts: List[str] = []
            for part in content:
                if isinstance(part, str):
                    parts.append(part)
                elif isinstance(part, dict) and part.get("type") == "text":
                    parts.append(part.get("text", ""))
            return "".join(parts)
        return str(content)

    async def analyze(self, image_base64: str) -> Dict[str, Any]:
        try:
            response = await self.llm.ainvoke([self._build_message(image_base64)])
        except Exception as e:
            raise VisionProviderError("Gemini analysis failed", provider=self.name, cause=e) from e

        return parse_json_payload(self._content_text(response.content), provider=self.name)


class StubVisionProvider(VisionProvider):
    """
    Simulated analysis for setups without a real provider.

    Results are derived from a hash of the image, so the same frame always
    yields the same payload.
    """

    name = "stub"

    async def analyze(self, image_base64: str) -> Dict[str, Any]:
        digest = hashlib.sha256((image_base64 or "").encode("utf-8")).digest()
        return {
            "cattleCount": 12 + digest[0] % 7,
            "healthScore": 88 + digest[1] % 9,
            "identifiedIssues": [],
            "recommendations": ["Keep routine monitoring and hydration."],
            "summary": "Simulated analysis: herd behaviour stable with adequate welfare signs.",
        }


def create_vision_provider(settings: Any) -> VisionProvider:
    """
    Pick the vision provider once, at startup.

    "auto" prefers the HTTP endpoint, then Gemini, then the stub.

    Args:
        settings: Object exposing ai_provider, ai_vision_url, ai_api_key,
            google_api_key and api_timeout (normally smart_ranch.config.config)

    Raises:
        ConfigurationError: For an unknown provider name, or an explicit
            provider missing its settings
    """
    choice = (settings.ai_provider or "auto").lower()

    if choice == "auto":
        if settings.ai_vision_url:
            choice = "http"
        elif settings.google_api_key:
            choice = "gemini"
        else:
            logger.warning("vision_provider_unconfigured", msg="Falling back to simulated analysis")
            choice = "stub"

    if choice == "http":
        provider: VisionProvider = HttpVisionProvider(
            settings.ai_vision_url,
            api_key=settings.ai_api_key,
            timeout=settings.api_timeout,
        )
    elif choice == "gemini":
        if not settings.google_api_key:
            raise ConfigurationError("Gemini vision provider needs an API key", config_key="GOOGLE_API_KEY")
        provider = GeminiVisionProvider()
    elif choice == "stub":
        provider = StubVisionProvider()
    else:
        raise ConfigurationError(
            f"Unknown AI provider: {choice}",
            config_key="AI_PROVIDER",
            expected="auto, http, gemini, stub",
        )

    logger.info("vision_provider_selected", provider=provider.name)
    return provider
