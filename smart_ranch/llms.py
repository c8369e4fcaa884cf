"""
LLM configuration and initialization module.
Builds the Gemini chat model used by the vision provider, with relaxed
safety settings and a rate limiter sized from GEMINI_RPM_LIMIT.
"""

import logging
from typing import Optional, List
from langchain_google_genai import ChatGoogleGenerativeAI, HarmBlockThreshold, HarmCategory
from langchain_core.language_models import BaseChatModel
from langchain_core.rate_limiters import InMemoryRateLimiter
from langchain_core.callbacks import BaseCallbackHandler
from smart_ranch.config import config

logger = logging.getLogger(__name__)

# Livestock injuries and carcasses trip the default filters
SAFETY_SETTINGS = {
    HarmCategory.HARM_CATEGORY_HARASSMENT: HarmBlockThreshold.BLOCK_ONLY_HIGH,
    HarmCategory.HARM_CATEGORY_HATE_SPEECH: HarmBlockThreshold.BLOCK_ONLY_HIGH,
    HarmCategory.HARM_CATEGORY_SEXUALLY_EXPLICIT: HarmBlockThreshold.BLOCK_ONLY_HIGH,
    HarmCategory.HARM_CATEGORY_DANGEROUS_CONTENT: HarmBlockThreshold.BLOCK_ONLY_HIGH,
}


def _create_rate_limiter_from_rpm(rpm: int) -> InMemoryRateLimiter:
    """
    Create a rate limiter from RPM (requests per minute) setting.

    Args:
        rpm: Target requests per minute (e.g., 15 for free tier, 360 for paid)

    Returns:
        Configured InMemoryRateLimiter
    """
    # Use 80% of the published limit
    safety_factor = 0.8
    rps = (max(rpm, 1) / 60.0) * safety_factor

    # Camera bursts: allow up to 10% of RPM at once
    max_bucket = max(2, int(rpm * 0.1))

    logger.info(
        f"Rate limiter configured: {rpm} RPM -> {rps:.2f} RPS "
        f"(80% of limit, bucket size: {max_bucket})"
    )

    return InMemoryRateLimiter(
        requests_per_second=rps,
        check_every_n_seconds=0.1,
        max_bucket_size=max_bucket
    )


def create_vision_llm(
    model: Optional[str] = None,
    api_key: Optional[str] = None,
    temperature: float = 0.2,
    timeout: Optional[int] = None,
    max_retries: Optional[int] = None,
    callbacks: Optional[List[BaseCallbackHandler]] = None
) -> BaseChatModel:
    """Create the multimodal Gemini model used for herd image analysis."""
    model_name = model or config.vision_model
    final_timeout = timeout if timeout is not None else config.api_timeout
    final_retries = max_retries if max_retries is not None else config.api_retry_attempts

    logger.info(f"Initializing Vision LLM: {model_name} (timeout={final_timeout}, retries={final_retries})")
    return ChatGoogleGenerativeAI(
        model=model_name,
        google_api_key=api_key or config.google_api_key or None,
        temperature=temperature,
        timeout=final_timeout,
        max_retries=final_retries,
        safety_settings=SAFETY_SETTINGS,
        rate_limiter=_create_rate_limiter_from_rpm(config.gemini_rpm_limit),
        callbacks=callbacks or []
    )
