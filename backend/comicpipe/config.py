"""Configuration management with YAML and environment variable support."""

from pathlib import Path
from typing import ClassVar, Optional

import yaml
from pydantic import BaseModel, Field, field_validator
from pydantic_settings import (
    BaseSettings,
    PydanticBaseSettingsSource,
    SettingsConfigDict,
)


class YamlConfigSettingsSource(PydanticBaseSettingsSource):
    """Custom settings source that loads configuration from YAML file."""

    def get_field_value(self, field, field_name: str):
        # Not used with prepare method
        pass

    def prepare_field_value(self, field_name: str, field, value, value_is_complex: bool):
        return value

    def __call__(self):
        yaml_path = Path("config.yaml")
        if not yaml_path.exists():
            return {}

        with open(yaml_path) as f:
            data = yaml.safe_load(f) or {}

        return data


class GoogleCloudConfig(BaseModel):
    """Google Cloud configuration for Vertex AI backed workers."""

    project_id: str = ""
    location: str = "us-central1"
    use_vertex_ai: bool = True


class ModelsConfig(BaseModel):
    """AI model identifiers used by the stage workers."""

    script_llm: str = "gemini-2.5-flash"
    image_gen: str = "gemini-2.5-flash-image"
    vision_llm: str = "gemini-2.5-flash"


class OllamaConfig(BaseModel):
    """Ollama endpoint used for "ollama/" model IDs."""

    endpoint: str = "http://localhost:11434"
    api_key: Optional[str] = None


class PipelineConfig(BaseModel):
    """Pipeline execution parameters."""

    min_pages: int = 1
    max_pages: int = 16
    seconds_per_page: int = 15
    preview_page_count: int = 4
    preview_page_limit: int = 40
    stage_timeout_seconds: float = 600.0
    stage_timeouts: dict[str, float] = Field(default_factory=dict)
    page_width: int = 1200
    page_height: int = 1800
    image_concurrency: int = 4
    vision_bubbles: bool = True
    drama_enhancement: bool = True
    style_anchor: bool = True


class RetryConfig(BaseModel):
    """Per-stage retry policy parameters."""

    max_attempts: int = 3
    initial_backoff_ms: int = 1000
    max_backoff_ms: int = 10000
    factor: float = 2.0
    jitter_ms: int = 1000


class StorageConfig(BaseModel):
    """Storage and database configuration."""

    database_url: str = "sqlite+aiosqlite:///comicpipe.db"
    tmp_dir: Path = Path("tmp")

    @field_validator("tmp_dir", mode="before")
    @classmethod
    def convert_tmp_dir_to_path(cls, v):
        """Convert string to Path object."""
        if isinstance(v, str):
            return Path(v)
        return v


class ServerConfig(BaseModel):
    """Server configuration."""

    host: str = "127.0.0.1"
    port: int = 8000
    cors_origins: list[str] = Field(default_factory=lambda: ["http://localhost:3000"])


class Settings(BaseSettings):
    """Main application settings with YAML and environment variable support.

    Configuration sources (in priority order):
    1. Environment variables (prefix: COMICPIPE_, delimiter: __)
    2. YAML file (config.yaml)
    3. Field defaults
    """

    model_config: ClassVar[SettingsConfigDict] = SettingsConfigDict(
        env_nested_delimiter="__",
        env_prefix="COMICPIPE_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    environment: str = "production"
    google_cloud: GoogleCloudConfig = Field(default_factory=GoogleCloudConfig)
    models: ModelsConfig = Field(default_factory=ModelsConfig)
    ollama: OllamaConfig = Field(default_factory=OllamaConfig)
    pipeline: PipelineConfig = Field(default_factory=PipelineConfig)
    retry: RetryConfig = Field(default_factory=RetryConfig)
    storage: StorageConfig = Field(default_factory=StorageConfig)
    server: ServerConfig = Field(default_factory=ServerConfig)

    @property
    def is_development(self) -> bool:
        return self.environment.lower() in ("development", "dev", "test")

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls: type[BaseSettings],
        init_settings: PydanticBaseSettingsSource,
        env_settings: PydanticBaseSettingsSource,
        dotenv_settings: PydanticBaseSettingsSource,
        file_secret_settings: PydanticBaseSettingsSource,
    ):
        """Customize settings sources to include YAML configuration.

        Priority order (highest to lowest):
        1. Init settings (explicit keyword arguments)
        2. Environment variables
        3. YAML file
        """
        return (
            init_settings,
            env_settings,
            dotenv_settings,
            YamlConfigSettingsSource(settings_cls),
        )


# Singleton instance
settings = Settings()
