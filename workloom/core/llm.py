"""Review LLM construction.

Builds the provider LLM named in ReviewSettings, wraps it in
LLMGateway and installs it as ``Settings.llm``.
"""

import logging
from typing import Optional

from dotenv import load_dotenv
from llama_index.core import Settings
from llama_index.llms.ollama import Ollama
from llama_index.llms.openai import OpenAI

from ..setting import ReviewSettings, get_settings
from .gateway import LLMGateway

load_dotenv()

logger = logging.getLogger(__name__)

DEFAULT_MODEL = "llama3.1:8b"

# Cache to avoid re-initialization
_llm_cache: dict = {}


def build_llm(review: Optional[ReviewSettings] = None):
    """Create (or reuse) the provider LLM for review stages."""
    review = review or get_settings().review
    model_name = review.model or DEFAULT_MODEL
    provider = (review.provider or "ollama").lower()

    cache_key = f"{provider}_{model_name}"
    if cache_key in _llm_cache:
        logger.debug(f"Using cached LLM model: {model_name}")
        return _llm_cache[cache_key]

    if provider == "openai":
        model = OpenAI(
            model=model_name,
            temperature=review.temperature,
            timeout=review.request_timeout,
        )
    elif provider == "ollama":
        model = Ollama(
            model=model_name,
            base_url=review.ollama_base_url,
            temperature=review.temperature,
            request_timeout=review.request_timeout,
            json_mode=True,
        )
    else:
        raise ValueError(f"Unsupported LLM provider: {provider}")

    _llm_cache[cache_key] = model
    logger.info(f"Initialized {provider} LLM: {model_name}")
    return model


def configure_llm(review: Optional[ReviewSettings] = None) -> LLMGateway:
    """Install a gateway-wrapped review LLM as Settings.llm."""
    gateway = LLMGateway(build_llm(review))
    Settings.llm = gateway
    return gateway
