"""
Configuration for the image keywording pipeline.
Supports OpenRouter (HTTP or OpenAI SDK), batching and retry tuning.
"""
import os
from typing import List
from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict
from dotenv import load_dotenv

load_dotenv()


class PipelineConfig(BaseSettings):
    """Configuration for batch metadata generation"""

    model_config = SettingsConfigDict(extra="ignore")

    # API Backend Selection: "http" (aiohttp) or "openai" (OpenAI SDK)
    api_backend: str = Field("http")

    # OpenRouter API Configuration
    openrouter_api_key: str = Field("")
    openrouter_model: str = Field("google/gemini-flash-1.5-8b")
    openrouter_base_url: str = Field("https://openrouter.ai/api/v1")
    analysis_endpoint: str = Field(
        "https://openrouter.ai/api/v1/chat/completions")
    openrouter_referer: str = Field("https://pixel-keywording.app")
    openrouter_site_title: str = Field("Pixel Keywording")

    # Batch Processing Configuration
    chunk_size: int = Field(20)
    max_concurrent_chunks: int = Field(5)
    # Concurrency for the one-image-at-a-time fallback of a failed chunk
    individual_fallback_concurrency: int = Field(3)

    # Retry / backoff - one policy for chunk and fallback calls
    retry_attempts: int = Field(3)
    retry_base_delay: float = Field(2.0)  # seconds
    retry_backoff_factor: float = Field(2.0)
    retry_max_delay: float = Field(30.0)
    # Floor applied to waits after a rate-limit response
    rate_limit_min_delay: float = Field(10.0)

    # Network
    request_timeout: int = Field(90)
    connection_pool_size: int = Field(20)

    # Metadata validation
    min_keywords: int = Field(15)
    target_keywords_min: int = Field(45)
    target_keywords_max: int = Field(49)

    # Export
    default_export_template: str = Field("AdobeStock")

    # Application Configuration
    max_upload_size: int = Field(100 * 1024 * 1024)  # request body limit in bytes
    server_host: str = Field("127.0.0.1")
    server_port: int = Field(5001)
    log_dir: str = Field("./logs")
    enable_debug_logging: bool = Field(False)

    @property
    def api_key_configured(self) -> bool:
        """Check if an OpenRouter API key is set"""
        return bool(self.openrouter_api_key and self.openrouter_api_key.strip())

    def create_directories(self):
        """Create necessary directories"""
        os.makedirs(self.log_dir, exist_ok=True)

    def validate_configuration(self) -> List[str]:
        """Validate configuration and return warnings"""
        warnings = []

        if self.api_backend not in ("http", "openai"):
            warnings.append(
                f"Invalid API_BACKEND '{self.api_backend}' - must be 'http' or 'openai'")

        if not self.api_key_configured:
            warnings.append(
                "OPENROUTER_API_KEY not set - image analysis will be refused")

        if not (2 <= self.retry_attempts <= 3):
            warnings.append(
                f"RETRY_ATTEMPTS={self.retry_attempts} outside the recommended 2-3 range")

        if self.chunk_size < 1:
            warnings.append("CHUNK_SIZE must be at least 1")
        elif self.chunk_size > 50:
            warnings.append(
                "Large chunk size makes single responses long and more likely to be truncated")

        if self.max_concurrent_chunks < 1 or self.individual_fallback_concurrency < 1:
            warnings.append("Concurrency limits must be at least 1")

        if self.individual_fallback_concurrency > self.max_concurrent_chunks:
            warnings.append(
                "Fallback concurrency is greater than chunk concurrency; check INDIVIDUAL_FALLBACK_CONCURRENCY")

        if self.target_keywords_min > self.target_keywords_max:
            warnings.append(
                "TARGET_KEYWORDS_MIN is greater than TARGET_KEYWORDS_MAX")

        return warnings


# Global configuration instance
config = PipelineConfig()

# Validate configuration on import
if config.enable_debug_logging:
    warnings = config.validate_configuration()
    if warnings:
        import logging
        logger = logging.getLogger(__name__)
        for warning in warnings:
            logger.warning(f"Configuration warning: {warning}")
