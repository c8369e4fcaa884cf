"""
AI vision providers.

The provider is chosen once at startup from configuration; callers only
ever see the VisionProvider interface.
"""

from .base import VisionProvider, parse_json_payload, unwrap_payload
from .providers import (
    HttpVisionProvider,
    GeminiVisionProvider,
    StubVisionProvider,
    create_vision_provider,
)

__all__ = [
    "VisionProvider",
    "parse_json_payload",
    "unwrap_payload",
    "HttpVisionProvider",
    "GeminiVisionProvider",
    "StubVisionProvider",
    "create_vision_provider",
]
