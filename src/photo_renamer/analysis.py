"""
Image analysis with a vision-language model through Pydantic AI.

The orchestrator treats analysis as an opaque async call: ``(image_bytes, media_type,
language)`` in, ``ImageAnalysis`` out, or an exception. ``AgentAnalyzer`` is that call,
backed by Ollama, LM Studio or Anthropic. Each image is analysed exactly once per call;
failures propagate to the caller.
"""

import os
import time
import urllib.parse
from http import HTTPStatus
from io import BytesIO
from typing import Literal

import httpx
from loguru import logger
from PIL import Image
from pydantic import BaseModel, Field
from pydantic_ai import Agent, AgentRunResult, BinaryContent, ModelSettings
from pydantic_ai.models import Model
from pydantic_ai.models.anthropic import AnthropicModel
from pydantic_ai.models.openai import OpenAIChatModel
from pydantic_ai.providers.anthropic import AnthropicProvider
from pydantic_ai.providers.ollama import OllamaProvider
from pydantic_ai.providers.openai import OpenAIProvider

from photo_renamer.errors import ConfigurationError
from photo_renamer.models import ImageAnalysis, MediaType
from photo_renamer.naming import descriptive_slug

ProviderName = Literal["ollama", "lmstudio", "anthropic"]

# Configuration defaults
DEFAULT_OLLAMA_BASE_URL = os.getenv("OLLAMA_BASE_URL", "http://localhost:11434/v1")
DEFAULT_OLLAMA_API_KEY = os.getenv("OLLAMA_API_KEY")
DEFAULT_LMSTUDIO_BASE_URL = os.getenv("LM_STUDIO_BASE_URL", "http://localhost:1234/v1")
DEFAULT_LMSTUDIO_API_KEY = os.getenv("LM_STUDIO_API_KEY", os.getenv("OPENAI_API_KEY"))
DEFAULT_ANTHROPIC_API_KEY = os.getenv("ANTHROPIC_API_KEY")
DEFAULT_MODEL_NAME = os.getenv("MODEL_NAME", "qwen/qwen3-vl-30b")
DEFAULT_ANTHROPIC_MODEL_NAME = os.getenv("ANTHROPIC_MODEL_NAME", "claude-sonnet-4-5")
DEFAULT_JPEG_QUALITY = int(os.getenv("JPEG_QUALITY", "80"))
DEFAULT_DIMENSIONS = int(os.getenv("JPEG_DIMENSIONS", "1280"))
DEFAULT_TEMPERATURE = float(os.getenv("TEMPERATURE", "0.2"))
DEFAULT_MAX_TOKENS = int(os.getenv("MAX_TOKENS", "1024"))
PROVIDER_URLS = {
    "ollama": DEFAULT_OLLAMA_BASE_URL,
    "lmstudio": DEFAULT_LMSTUDIO_BASE_URL,
}

LANGUAGE_NAMES = {
    "en": "English",
    "de": "German",
    "nl": "Dutch",
    "fr": "French",
    "es": "Spanish",
    "it": "Italian",
    "pt": "Portuguese",
}

# Prompt templates
DEFAULT_SYSTEM_PROMPT = (
    "**Persona**: You are a web content editor who writes image metadata for websites. "
    "Your expertise is describing images accurately for search engines and screen readers.\n"
    "\n"
    "**Mission**: Analyze the provided image and produce one metadata object that strictly "
    "conforms to the schema provided by the user.\n"
    "\n"
    "**Rules**:\n"
    "1.  **descriptive_name**: 3-6 words, kebab-case (lowercase, hyphens between words), "
    "describing the key subject and action. No filler words (a, the, of, etc.).\n"
    "2.  **title**: A short, human-readable title (under 10 words).\n"
    "3.  **alt_text**: One clear sentence describing what is in the image, useful for "
    "screen readers.\n"
    "4.  **meta_description**: One SEO-friendly sentence describing the image content and "
    "its potential use.\n"
    "5.  **keywords**: 5-10 relevant keywords, lowercase, single words or short phrases.\n"
    "6.  **Location**: Fill location_name, city, state_province and country only when the "
    "place is recognisable; otherwise leave them empty. Never guess.\n"
)

DEFAULT_USER_PROMPT = "Analyze this image and generate the structured metadata."


class GeneratedMetadata(BaseModel):
    """Schema for structured generation results."""

    descriptive_name: str
    title: str = ""
    alt_text: str = ""
    meta_description: str = ""
    keywords: list[str] = Field(default_factory=list)
    location_name: str = ""
    city: str = ""
    state_province: str = ""
    country: str = ""


def language_name(language: str) -> str:
    """
    Human-readable name for a language tag; unknown tags are returned unchanged.

    Examples:
        >>> language_name("de")
        'German'
        >>> language_name("Klingon")
        'Klingon'

    """
    return LANGUAGE_NAMES.get(language.strip().lower(), language.strip())


def build_user_prompt(language: str, base_prompt: str = DEFAULT_USER_PROMPT) -> str:
    """Append the output language instruction to the user prompt."""
    name = language_name(language) or LANGUAGE_NAMES["en"]
    return (
        f"{base_prompt.strip()}\n\n"
        f"Write title, alt_text, meta_description, keywords and location fields in {name}. "
        "Keep descriptive_name in plain ASCII kebab-case."
    )


def _clean_keywords(keywords: list[str]) -> list[str]:
    """
    Strip keywords, drop blanks and repeat entries, keeping first-seen order.

    Examples:
        >>> _clean_keywords([" fox ", "", "snow", "fox"])
        ['fox', 'snow']

    """
    return list(dict.fromkeys(kw.strip() for kw in keywords if kw and kw.strip()))


def to_analysis(generated: GeneratedMetadata) -> ImageAnalysis:
    """Normalize model output into the analysis record stored on an item."""
    return ImageAnalysis(
        descriptive_name=descriptive_slug(generated.descriptive_name),
        title=generated.title.strip(),
        alt_text=generated.alt_text.strip(),
        meta_description=generated.meta_description.strip(),
        keywords=_clean_keywords(generated.keywords),
        location_name=generated.location_name.strip(),
        city=generated.city.strip(),
        state_province=generated.state_province.strip(),
        country=generated.country.strip(),
    )


def prepare_image_for_agent(
    image_bytes: bytes,
    jpg_quality: int = DEFAULT_JPEG_QUALITY,
    max_size: int = DEFAULT_DIMENSIONS,
) -> BinaryContent:
    """
    Downscale an image and re-encode it as JPEG for the model.

    The entire process is done in memory; no temporary files are created.

    Args:
        image_bytes: Source image payload (JPEG, PNG, GIF or WEBP)
        jpg_quality: JPEG compression quality (1-100, recommended: 80)
        max_size: Maximum dimension in pixels for resizing (recommended: <=1280)

    Returns:
        BinaryContent object ready for Pydantic AI agent

    """
    try:
        with Image.open(BytesIO(image_bytes)) as source:
            source.load()
            img = source.copy()

        # Composite alpha onto white background if present
        if img.mode in ("RGBA", "LA") or (img.mode == "P" and "transparency" in img.info):
            logger.debug("compositing_alpha_to_white")
            alpha = img.convert("RGBA")
            bg = Image.new("RGBA", alpha.size, (255, 255, 255, 255))
            img = Image.alpha_composite(bg, alpha).convert("RGB")
        else:
            img = img.convert("RGB")

        # Resize in-place maintaining aspect ratio (downscale only) with high-quality filter
        img.thumbnail((max_size, max_size), Image.Resampling.LANCZOS)

        buf = BytesIO()
        img.save(buf, format="JPEG", quality=jpg_quality)
        jpeg_bytes = buf.getvalue()

    except Exception as e:
        logger.exception("image_preparation_failed", error=str(e))
        raise
    else:
        logger.debug(
            "image_prepared_for_agent",
            width=img.width,
            height=img.height,
            size_kb=len(jpeg_bytes) // 1024,
        )
        return BinaryContent(data=jpeg_bytes, media_type="image/jpeg")


async def analyze_image_with_ai(
    image: BinaryContent,
    agent: Agent,
    *,
    user_prompt: str | None = None,
    temperature: float = DEFAULT_TEMPERATURE,
    max_tokens: int = DEFAULT_MAX_TOKENS,
) -> GeneratedMetadata:
    """
    Ask the vision-language model for the structured metadata of one image.

    Args:
        image: Image data as BinaryContent
        agent: Configured Pydantic AI Agent
        user_prompt: Optional user prompt; defaults to DEFAULT_USER_PROMPT
        temperature: Sampling temperature for generation (0.0-1.0)
        max_tokens: Maximum tokens to generate in response

    Returns:
        The validated model output.

    """
    logger.info("analyzing_image_with_ai")
    _t0 = time.perf_counter()
    prompt = user_prompt or DEFAULT_USER_PROMPT

    result: AgentRunResult[GeneratedMetadata] = await agent.run(
        [
            prompt,
            image,
        ],
        model_settings=ModelSettings(
            temperature=temperature,
            max_tokens=max_tokens,
        ),
        output_type=GeneratedMetadata,
    )
    _elapsed = time.perf_counter() - _t0
    logger.info(
        "ai_inference_completed",
        seconds=round(_elapsed, 3),
        temperature=temperature,
        max_tokens=max_tokens,
    )
    logger.debug(
        "ai_generated_metadata",
        descriptive_name=result.output.descriptive_name,
        title=result.output.title,
        keywords=result.output.keywords,
    )
    return result.output


class AgentAnalyzer:
    """Analysis collaborator that sends each image to a Pydantic AI agent."""

    def __init__(
        self,
        agent: Agent,
        *,
        temperature: float = DEFAULT_TEMPERATURE,
        max_tokens: int = DEFAULT_MAX_TOKENS,
        jpeg_dimensions: int = DEFAULT_DIMENSIONS,
        jpeg_quality: int = DEFAULT_JPEG_QUALITY,
    ) -> None:
        self.agent = agent
        self.temperature = temperature
        self.max_tokens = max_tokens
        self.jpeg_dimensions = jpeg_dimensions
        self.jpeg_quality = jpeg_quality

    async def __call__(
        self,
        image_bytes: bytes,
        media_type: MediaType,
        language: str,
    ) -> ImageAnalysis:
        logger.debug("preparing_image", media_type=str(media_type), language=language)
        image = prepare_image_for_agent(
            image_bytes,
            jpg_quality=self.jpeg_quality,
            max_size=self.jpeg_dimensions,
        )
        generated = await analyze_image_with_ai(
            image,
            self.agent,
            user_prompt=build_user_prompt(language),
            temperature=self.temperature,
            max_tokens=self.max_tokens,
        )
        return to_analysis(generated)


def _validate_lmstudio_model(api_base_url: str, model_name: str, api_key: str | None) -> None:
    """Fail fast when LM Studio cannot resolve the requested model name."""
    url = urllib.parse.urljoin(api_base_url.rstrip("/") + "/", "models")
    parsed = urllib.parse.urlparse(url)
    if parsed.scheme not in {"http", "https"}:
        logger.error("lmstudio_model_listing_invalid_scheme", url=url, scheme=parsed.scheme)
        msg = f"Unsupported URL scheme for LM Studio: {url}"
        raise ConfigurationError(msg)
    if not parsed.netloc:
        logger.error("lmstudio_model_listing_missing_host", url=url)
        msg = f"LM Studio URL has no host: {url}"
        raise ConfigurationError(msg)
    headers = {"Accept": "application/json"}
    if api_key:
        headers["Authorization"] = f"Bearer {api_key}"
    try:
        response = httpx.get(url, headers=headers, timeout=5.0)
    except httpx.HTTPError as exc:
        logger.error("lmstudio_model_listing_error", error=str(exc), url=url)
        msg = f"Cannot reach LM Studio at {url}: {exc}"
        raise ConfigurationError(msg) from exc

    if response.status_code != HTTPStatus.OK:
        logger.error(
            "lmstudio_model_listing_failed",
            status=response.status_code,
            url=url,
            body=response.text,
        )
        msg = f"LM Studio model listing failed with status {response.status_code}"
        raise ConfigurationError(msg)

    try:
        listing = response.json()
    except ValueError as exc:
        logger.error("lmstudio_model_listing_invalid_json", error=str(exc), url=url)
        msg = "LM Studio returned an invalid model listing"
        raise ConfigurationError(msg) from exc

    models = [
        str(entry["id"])
        for entry in listing.get("data", [])
        if isinstance(entry, dict) and "id" in entry
    ]

    if model_name not in models:
        logger.error(
            "lmstudio_model_not_available",
            requested=model_name,
            available=models,
        )
        msg = f"Model {model_name!r} is not available in LM Studio"
        raise ConfigurationError(msg)

    logger.debug("lmstudio_model_validated", model=model_name)


def _create_model(
    provider_name: ProviderName,
    model_name: str | None,
    *,
    api_base_url: str | None,
    api_key: str | None,
) -> Model:
    if provider_name == "anthropic":
        resolved_api_key = api_key or DEFAULT_ANTHROPIC_API_KEY
        if not resolved_api_key or not resolved_api_key.strip():
            msg = "API key is empty"
            raise ConfigurationError(msg)
        resolved_model = model_name or DEFAULT_ANTHROPIC_MODEL_NAME
        logger.info("provider_config_resolved", provider=provider_name, model=resolved_model)
        return AnthropicModel(resolved_model, provider=AnthropicProvider(api_key=resolved_api_key))

    if provider_name not in PROVIDER_URLS:
        msg = f"Unknown provider: {provider_name}"
        raise ConfigurationError(msg)

    resolved_model = model_name or DEFAULT_MODEL_NAME
    resolved_url = api_base_url or PROVIDER_URLS[provider_name]
    if api_base_url is None:
        logger.debug("using_default_provider_url", url=resolved_url)
    logger.info(
        "provider_config_resolved",
        provider=provider_name,
        url=resolved_url,
        model=resolved_model,
    )

    if provider_name == "ollama":
        provider: OllamaProvider | OpenAIProvider = OllamaProvider(
            base_url=resolved_url,
            api_key=api_key or DEFAULT_OLLAMA_API_KEY,
        )
    else:
        resolved_api_key = api_key or DEFAULT_LMSTUDIO_API_KEY
        _validate_lmstudio_model(resolved_url, resolved_model, resolved_api_key)
        provider = OpenAIProvider(base_url=resolved_url, api_key=resolved_api_key)

    return OpenAIChatModel(model_name=resolved_model, provider=provider)


def create_agent(
    provider_name: ProviderName,
    model_name: str | None = None,
    *,
    api_base_url: str | None = None,
    api_key: str | None = None,
) -> Agent:
    """
    Build the Pydantic AI agent used for image analysis.

    Raises:
        ConfigurationError: If the provider is unknown, its API key is missing (Anthropic)
            or the model is not available (LM Studio).

    """
    chat_model = _create_model(
        provider_name,
        model_name,
        api_base_url=api_base_url,
        api_key=api_key,
    )
    return Agent(
        chat_model,
        output_type=GeneratedMetadata,  # type: ignore[arg-type]
        retries=0,
        system_prompt=DEFAULT_SYSTEM_PROMPT,
    )
