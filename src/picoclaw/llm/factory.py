"""
LLM factory for creating the transport from settings.
"""

import structlog

from ..config import Settings
from .base import BaseLLM
from .http import Endpoint, HTTPProvider

logger = structlog.get_logger()


def create_llm(settings: Settings | None = None) -> BaseLLM:
    """Create the transport for the configured primary model.

    A fallback endpoint is attached only when ``fallback_model`` resolves
    to both an API key and a base URL.
    """
    if settings is None:
        from ..config import get_settings
        settings = get_settings()

    config = settings.get_llm_config()
    primary = Endpoint(api_base=config.base_url, model=config.model, api_key=config.api_key)

    fallback = None
    fallback_config = settings.get_fallback_config()
    if fallback_config is not None:
        fallback = Endpoint(
            api_base=fallback_config.base_url,
            model=fallback_config.model,
            api_key=fallback_config.api_key,
        )
        logger.info(
            "Failover configured",
            primary=config.model,
            fallback=fallback_config.model,
        )
    elif settings.fallback_model:
        logger.warning(
            "Fallback model has no usable credentials, failover disabled",
            fallback=settings.fallback_model,
        )

    return HTTPProvider(
        primary=primary,
        fallback=fallback,
        timeout=settings.request_timeout_seconds,
    )
