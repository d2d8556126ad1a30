"""
Configuration management for PicoClaw

Uses pydantic-settings for environment variable parsing and validation.
"""

from functools import lru_cache
from pathlib import Path

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

OPENROUTER_BASE = "https://openrouter.ai/api/v1"
ANTHROPIC_BASE = "https://api.anthropic.com/v1"
OPENAI_BASE = "https://api.openai.com/v1"
GEMINI_BASE = "https://generativelanguage.googleapis.com/v1beta/openai"
ZHIPU_BASE = "https://open.bigmodel.cn/api/paas/v4"
GROQ_BASE = "https://api.groq.com/openai/v1"
MOONSHOT_BASE = "https://api.moonshot.ai/v1"

OPENROUTER_PREFIXES = (
    "openrouter/",
    "anthropic/",
    "openai/",
    "meta-llama/",
    "deepseek/",
    "google/",
)


class LLMConfig(BaseSettings):
    """Resolved connection settings for a single model."""

    model_config = SettingsConfigDict(extra="ignore")

    provider: str = "openrouter"
    model: str = "glm-4.7"
    api_key: str = ""
    base_url: str = ""


class Settings(BaseSettings):
    """Main application settings."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        env_nested_delimiter="__",
    )

    # Application
    app_name: str = "PicoClaw"
    debug: bool = False
    log_level: str = "INFO"

    # Workspace
    workspace_dir: Path = Field(
        default=Path("~/.picoclaw/workspace"),
        description="Directory holding bootstrap files and memory",
    )
    sessions_dir: Path | None = Field(
        default=None,
        description="Session file directory (defaults to a sibling of the workspace)",
    )

    # Default model settings
    default_model: str = "glm-4.7"
    max_tokens: int = 8192
    temperature: float = 0.7
    max_tool_iterations: int = Field(default=20, ge=1)
    request_timeout_seconds: float = Field(default=120.0, gt=0)
    context_window: int = Field(default=128_000, description="Model context window in tokens")

    # LLM Providers (API Keys)
    api_base: str = Field(default="", description="Override the primary endpoint base URL")
    openrouter_api_key: str = Field(default="", description="OpenRouter API key")
    anthropic_api_key: str = Field(default="", description="Anthropic API key")
    openai_api_key: str = Field(default="", description="OpenAI API key")
    gemini_api_key: str = Field(default="", description="Google Gemini API key")
    zhipu_api_key: str = Field(default="", description="Zhipu (GLM) API key")
    groq_api_key: str = Field(default="", description="Groq API key")
    moonshot_api_key: str = Field(default="", description="Moonshot API key")
    vllm_api_base: str = Field(default="", description="Self-hosted vLLM endpoint")
    vllm_api_key: str = Field(default="", description="Self-hosted vLLM API key")

    # Failover
    fallback_model: str = Field(default="", description="Secondary model used when the primary is unavailable")
    fallback_api_key: str = Field(default="", description="Override the fallback API key")
    fallback_api_base: str = Field(default="", description="Override the fallback endpoint base URL")

    # Compaction
    compaction_enabled: bool = True
    compaction_trigger_messages: int = Field(default=20, ge=1)
    compaction_keep_recent: int = Field(default=4, ge=0)
    compaction_timeout_seconds: float = Field(default=120.0, gt=0)

    @field_validator("default_model", "fallback_model", mode="before")
    @classmethod
    def strip_model(cls, v: str) -> str:
        return v.strip() if v else ""

    @property
    def workspace_path(self) -> Path:
        return self.workspace_dir.expanduser()

    @property
    def sessions_path(self) -> Path:
        if self.sessions_dir is not None:
            return self.sessions_dir.expanduser()
        return self.workspace_path.parent / "sessions"

    def get_llm_config(self, model: str | None = None) -> LLMConfig:
        """Resolve the endpoint for a primary model by its name."""
        model = model or self.default_model
        lower = model.lower()

        routes = [
            ("anthropic", ("claude",), self.anthropic_api_key, ANTHROPIC_BASE),
            ("openai", ("gpt",), self.openai_api_key, OPENAI_BASE),
            ("gemini", ("gemini",), self.gemini_api_key, GEMINI_BASE),
            ("zhipu", ("glm", "zhipu", "zai"), self.zhipu_api_key, ZHIPU_BASE),
            ("groq", ("groq",), self.groq_api_key, GROQ_BASE),
            ("moonshot", ("moonshot",), self.moonshot_api_key, MOONSHOT_BASE),
        ]

        if model.startswith(OPENROUTER_PREFIXES):
            provider, api_key, base_url = "openrouter", self.openrouter_api_key, OPENROUTER_BASE
        else:
            for name, markers, key, base in routes:
                if key and any(marker in lower for marker in markers):
                    provider, api_key, base_url = name, key, base
                    break
            else:
                if self.vllm_api_base:
                    provider, api_key, base_url = "vllm", self.vllm_api_key, self.vllm_api_base
                elif self.openrouter_api_key:
                    provider, api_key, base_url = "openrouter", self.openrouter_api_key, OPENROUTER_BASE
                else:
                    raise ValueError(f"No API key configured for model: {model}")

        if not api_key and provider != "vllm" and not model.startswith("bedrock/"):
            raise ValueError(f"No API key configured for provider (model: {model})")

        base_url = self.api_base or base_url
        if not base_url:
            raise ValueError(f"No API base configured for provider (model: {model})")

        return LLMConfig(provider=provider, model=model, api_key=api_key, base_url=base_url)

    def get_fallback_config(self) -> LLMConfig | None:
        """Resolve the fallback endpoint, or None when failover is not usable."""
        if not self.fallback_model:
            return None

        lower = self.fallback_model.lower()
        routes = [
            ("gemini", "gemini", self.gemini_api_key, GEMINI_BASE),
            ("moonshot", "moonshot", self.moonshot_api_key, MOONSHOT_BASE),
            ("openai", "gpt", self.openai_api_key, OPENAI_BASE),
            ("anthropic", "claude", self.anthropic_api_key, ANTHROPIC_BASE),
        ]

        provider, api_key, base_url = "custom", "", ""
        for name, marker, key, base in routes:
            if marker in lower:
                provider, api_key, base_url = name, key, base
                break

        api_key = self.fallback_api_key or api_key
        base_url = self.fallback_api_base or base_url
        if not api_key or not base_url:
            return None

        return LLMConfig(
            provider=provider,
            model=self.fallback_model,
            api_key=api_key,
            base_url=base_url,
        )


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
