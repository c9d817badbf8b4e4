from typing import Optional

from langchain_openai import ChatOpenAI
from langchain_anthropic import ChatAnthropic
from langchain_core.language_models.chat_models import BaseChatModel
from services.config import settings
import structlog

logger = structlog.get_logger()

SUPPORTED_PROVIDERS = ("openrouter", "openai", "anthropic")


def get_llm(
    provider: Optional[str] = None,
    model: Optional[str] = None,
    temperature: Optional[float] = None
) -> BaseChatModel:
    """
    Get a chat model for the assistant.

    Args:
        provider: 'openrouter' (default), 'openai' or 'anthropic'
        model: Model name; defaults to AI_MODEL
        temperature: Temperature setting (0-2)

    Returns:
        LangChain chat model (ChatOpenAI or ChatAnthropic)
    """
    provider = (provider or settings.llm_provider).lower()
    model = model or settings.ai_model
    temperature = temperature if temperature is not None else 0.0

    logger.info(
        "Initializing LLM",
        provider=provider,
        model=model,
        temperature=temperature
    )

    if provider == 'openrouter':
        if not settings.openrouter_api_key:
            raise ValueError("OpenRouter API key not configured")

        headers = {}
        if settings.openrouter_http_referer:
            headers["HTTP-Referer"] = settings.openrouter_http_referer
        if settings.openrouter_x_title:
            headers["X-Title"] = settings.openrouter_x_title

        # OpenRouter uses OpenAI-compatible API; usage accounting adds cost to response metadata
        return ChatOpenAI(
            model=model,
            api_key=settings.openrouter_api_key,
            base_url=settings.openrouter_base_url,
            temperature=temperature,
            default_headers=headers or None,
            extra_body={"usage": {"include": True}},
        )

    if provider == 'openai':
        if not settings.openai_api_key:
            raise ValueError("OpenAI API key not configured")

        return ChatOpenAI(
            model=model,
            api_key=settings.openai_api_key,
            temperature=temperature
        )

    if provider == 'anthropic':
        if not settings.anthropic_api_key:
            raise ValueError("Anthropic API key not configured")

        return ChatAnthropic(
            model=model,
            api_key=settings.anthropic_api_key,
            temperature=temperature
        )

    logger.error("Unsupported LLM provider", provider=provider)
    raise ValueError(f"Unsupported LLM provider: {provider}. Supported: {', '.join(SUPPORTED_PROVIDERS)}")
