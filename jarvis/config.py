"""Configuration management for the Jarvis chat client.

Loads settings from YAML config file with Pydantic validation.
Config file location: ~/.jarvis/config.yaml
"""

from __future__ import annotations

import os
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, Field


# === Default paths ===

def get_jarvis_home() -> Path:
    """Get the Jarvis data directory (~/.jarvis)."""
    return Path(os.environ.get("JARVIS_HOME", Path.home() / ".jarvis"))


DEFAULT_SYSTEM_PROMPT = (
    "You are JARVIS, an advanced AI assistant inspired by Tony Stark's AI "
    "companion. You are helpful, intelligent, and maintain a slightly "
    "sophisticated but friendly tone. You remember the conversation context "
    "and can reference previous messages naturally."
)


# === Configuration Models ===


class ProviderConfig(BaseModel):
    """Configuration for a single LLM provider."""

    api_key_env: str | None = None  # Environment variable name for API key
    api_key: str | None = None  # Direct API key (not recommended)
    base_url: str | None = None  # Custom base URL (e.g., for Ollama)

    def get_api_key(self) -> str | None:
        """Resolve API key from env var or direct value."""
        if self.api_key_env:
            return os.environ.get(self.api_key_env)
        return self.api_key


class ModelsConfig(BaseModel):
    """LLM model configuration."""

    default: str = "ollama/llama3.1"
    fallback_chain: list[str] = Field(default_factory=list)
    providers: dict[str, ProviderConfig] = Field(default_factory=lambda: {
        "ollama": ProviderConfig(base_url="http://localhost:11434"),
        "openai": ProviderConfig(api_key_env="OPENAI_API_KEY"),
        "anthropic": ProviderConfig(api_key_env="ANTHROPIC_API_KEY"),
    })
    temperature: float = 0.7
    top_p: float = 0.9
    max_tokens: int = 4096

    # Summaries use a lower temperature for more consistent output
    summarize_model: str | None = None  # None = same as default
    summarize_temperature: float = 0.5
    summarize_top_p: float = 0.8


class ContextConfig(BaseModel):
    """Running-summary context management."""

    initial_threshold: int = 8  # Create first summary after this many turns
    update_threshold: int = 4  # Update summary after this many new turns
    max_recent: int = 12  # Turns kept verbatim alongside the summary
    max_summary_words: int = 1000
    system_prompt: str = DEFAULT_SYSTEM_PROMPT


class SearchConfig(BaseModel):
    """Web search augmentation (Tavily)."""

    enabled: bool = True
    api_key_env: str = "TAVILY_API_KEY"
    base_url: str = "https://api.tavily.com"
    trigger_patterns: list[str] = Field(default_factory=lambda: [
        r"search on the web",
        r"look this up",
        r"find online",
        r"what is",
        r"how to",
    ])
    timeout: float = 10.0

    def get_api_key(self) -> str | None:
        return os.environ.get(self.api_key_env)


class BackendConfig(BaseModel):
    """Persistence backend: local SQLite or the remote chat server."""

    mode: str = "local"  # local | remote
    base_url: str = "http://localhost:3001"
    token_env: str = "JARVIS_TOKEN"
    user_id: str = "local"
    timeout: float = 60.0
    db_path: str | None = None  # None = ~/.jarvis/history.db

    def get_token(self) -> str | None:
        """Resolve the bearer token from its environment variable."""
        return os.environ.get(self.token_env)


class VoiceConfig(BaseModel):
    """Wake-word and speech-to-text hand-off settings."""

    enabled: bool = False
    keyword_label: str = "heyJarvisKeywordModel"
    handoff_delay_ms: int = 200  # Wake-word stop -> speech start
    restart_delay_ms: int = 500  # Speech end -> wake-word restart
    speech_end_delay_ms: int = 300
    # "module:factory" paths; each factory is called with this VoiceConfig
    wake_engine: str = ""
    speech_engine: str = ""


class LoggingConfig(BaseModel):
    level: str = "info"


class JarvisConfig(BaseModel):
    """Root configuration for the Jarvis chat client."""

    models: ModelsConfig = Field(default_factory=ModelsConfig)
    context: ContextConfig = Field(default_factory=ContextConfig)
    search: SearchConfig = Field(default_factory=SearchConfig)
    backend: BackendConfig = Field(default_factory=BackendConfig)
    voice: VoiceConfig = Field(default_factory=VoiceConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)


# === Config Loading ===


def load_config(config_path: Path | None = None) -> JarvisConfig:
    """Load configuration from YAML file.

    Falls back to defaults if the config file doesn't exist.
    """
    if config_path is None:
        config_path = get_jarvis_home() / "config.yaml"

    if config_path.exists():
        with open(config_path, encoding="utf-8") as f:
            raw: dict[str, Any] = yaml.safe_load(f) or {}
        return JarvisConfig(**raw)
    return JarvisConfig()


def save_default_config(config_path: Path | None = None) -> Path:
    """Save the default configuration to a YAML file.

    Creates parent directories if needed. Returns the path.
    """
    if config_path is None:
        config_path = get_jarvis_home() / "config.yaml"

    config_path.parent.mkdir(parents=True, exist_ok=True)

    config = JarvisConfig()
    data = config.model_dump()

    with open(config_path, "w", encoding="utf-8") as f:
        yaml.dump(data, f, default_flow_style=False, allow_unicode=True, sort_keys=False)

    return config_path
