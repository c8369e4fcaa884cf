"""
Base Vision Provider Abstract Class

Every provider turns a base64 camera frame into an analysis payload with
optional cattleCount, healthScore, identifiedIssues, recommendations and
summary fields. Missing fields are defaulted later by AnalysisRecord.
"""

import json
import re
from abc import ABC, abstractmethod
from typing import Any, Dict

from ..exceptions import VisionResponseParsingError

_FENCE_PATTERN = re.compile(r"^```(?:json)?\s*(.*?)\s*```$", re.DOTALL | re.IGNORECASE)


class VisionProvider(ABC):
    """Capability interface for the AI vision collaborator."""

    name: str = "base"

    @abstractmethod
    async def analyze(self, image_base64: str) -> Dict[str, Any]:
        """
        Analyze one camera frame.

        Args:
            image_base64: Base64 image data without a data-URI prefix

        Returns:
            Provider payload dictionary

        Raises:
            VisionProviderError: If the provider call fails outright
            VisionResponseParsingError: If the reply is not a JSON object
        """

    async def close(self) -> None:
        """Release network resources. Providers without any keep this no-op."""
        return None


def unwrap_payload(payload: Any) -> Dict[str, Any]:
    """Accept both {"result": {...}} envelopes and bare payloads."""
    if isinstance(payload, dict) and isinstance(payload.get("result"), dict):
        return payload["result"]
    if isinstance(payload, dict):
        return payload
    raise VisionResponseParsingError(
        "Provider payload is not a JSON object",
        raw_response=str(payload),
    )


def parse_json_payload(text: str, provider: str = "unknown") -> Dict[str, Any]:
    """
    Parse a model reply into a payload dictionary.

    Markdown code fences around the JSON are tolerated.
    """
    cleaned = (text or "").strip()
    match = _FENCE_PATTERN.match(cleaned)
    if match:
        cleaned = match.group(1)

    try:
        parsed = json.loads(cleaned)
    except json.JSONDecodeError as e:
        raise VisionResponseParsingError(
            "Provider reply is not valid JSON",
            provider=provider,
            raw_response=text,
            cause=e,
        ) from e

    try:
        return unwrap_payload(parsed)
    except VisionResponseParsingError as e:
        e.details["provider"] = provider
        raise
