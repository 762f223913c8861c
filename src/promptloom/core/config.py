"""Configuration management for promptloom.

This module provides centralized configuration management using Pydantic Settings.
All configuration is loaded from environment variables with the PROMPTLOOM_ prefix,
allowing the backend hosts and storage locations to be changed without code changes.

Environment Variable Loading
-----------------------------
Configuration values are loaded in the following priority order:
1. Environment variables (PROMPTLOOM_* prefix)
2. .env file in the project root
3. Default values defined in PromptLoomConfig

Example .env file:
    PROMPTLOOM_SD_BASE_URL=http://gpu-box.local:7860
    PROMPTLOOM_LLM_BASE_URL=http://gpu-box.local:11434
    PROMPTLOOM_AUTHORIZATION=Bearer s3cret
    PROMPTLOOM_DATA_DIR=data

Global Configuration Instance
------------------------------
A global `config` instance is created automatically at module import time.
This ensures a single source of truth for all configuration values across
the application.

Usage Example
-------------
    from promptloom.core.config import config

    print(config.sd_base_url)
    print(config.history_db)

Directory Management
--------------------
The configuration automatically creates required directories on initialization:
- data_dir: Root for everything promptloom persists
- blob_dir: Generated images, inputs, drawings and depth maps
- legacy_history_dir: Only read (once) for migration, never written

Timeouts
--------
Image jobs run multi-step diffusion on the backend and can take minutes,
so they get a long timeout.  Status and list calls are short.  Every call is
a single bounded round trip; nothing is retried.
"""

from pathlib import Path

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

# Named prompt addendum presets; override with PROMPTLOOM_PROMPT_ADDENDA as JSON.
DEFAULT_PROMPT_ADDENDA: dict[str, str] = {
    "Wizard": (
        ", modelshoot style, extremely detailed, full shot body photo, english medieval, "
        "nature magic, medieval era, intricate, high detail, sharp focus, dramatic, "
        "petals, countryside, action pose"
    ),
    "Wizard2": (
        ", (painting, art: 1.5), (modelshoot: 1.1), (full shot body photo: 1.2), "
        "(extremely detailed: 1.2), (sharp focus: 1.2), (dramatic)"
    ),
    "Film": (
        ", cinematic film still, (shallow depth of field:0.24), (vignette:0.15), "
        "(highly detailed, high budget:1.2), (bokeh, cinemascope:0.3), "
        "(epic, gorgeous:1.2), film grain, (grainy:0.6), (detailed skin texture:1.1), "
        "subsurface scattering, (motion blur:0.7)"
    ),
}


class PromptLoomConfig(BaseSettings):
    """Main configuration for promptloom.

    Attributes
    ----------
    Backends:
        sd_base_url : str
            Base URL of the image backend (AUTOMATIC1111-compatible)
        sd_api_prefix : str
            Path prefix for image backend endpoints
        llm_base_url : str
            Base URL of the text backend (Ollama-compatible)
        authorization : str
            Static Authorization header value sent with every request

    Timeouts (seconds):
        image_timeout, interrogate_timeout, request_timeout, status_timeout

    Generation defaults:
        default_sampler, default_size, default_steps, vision_model,
        poll_interval, status_check_interval, default_prompt, prompt_addenda

    Paths:
        data_dir, blob_dir, history_db, legacy_history_dir

    Server:
        server_host, server_port
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_prefix="PROMPTLOOM_",
        case_sensitive=False,
    )

    # Backends
    sd_base_url: str = Field(
        default="http://127.0.0.1:7860",
        description="Base URL of the image generation backend",
    )
    sd_api_prefix: str = Field(
        default="/sdapi/v1",
        description="Path prefix for image backend endpoints",
    )
    llm_base_url: str = Field(
        default="http://127.0.0.1:11434",
        description="Base URL of the text generation backend",
    )
    authorization: str = Field(
        default="",
        description="Static Authorization header sent with every backend request",
    )

    # Timeouts
    image_timeout: float = Field(default=600.0, gt=0, description="txt2img/img2img timeout")
    interrogate_timeout: float = Field(default=300.0, gt=0)
    request_timeout: float = Field(default=120.0, gt=0, description="List/options timeout")
    status_timeout: float = Field(default=2.0, gt=0, description="Connection test timeout")

    # Generation defaults
    default_sampler: str = Field(default="DPM++ 2M")
    default_size: int = Field(default=512, ge=64, le=2048)
    default_steps: int = Field(default=20, ge=1, le=150)
    vision_model: str = Field(
        default="llava",
        description="Text backend model used when a prompt carries an image",
    )
    poll_interval: float = Field(
        default=0.2,
        gt=0,
        description="Seconds between progress polls while an image job is in flight",
    )
    status_check_interval: float = Field(
        default=2.0,
        ge=0,
        description="Minimum seconds between throttled backend status checks",
    )
    default_prompt: str = Field(
        default="A cat with a fancy hat",
        description="Prompt offered when history holds none",
    )
    prompt_addenda: dict[str, str] = Field(
        default_factory=lambda: dict(DEFAULT_PROMPT_ADDENDA),
        description="Named style presets appended to prompts as the prompt addendum",
    )

    # Paths
    data_dir: Path = Field(default=Path("data"))
    blob_dir: Path | None = Field(
        default=None,
        description="Blob root (defaults to <data_dir>/blobs)",
    )
    history_db: Path | None = Field(
        default=None,
        description="SQLite history database (defaults to <data_dir>/history.sqlite3)",
    )
    legacy_history_dir: Path | None = Field(
        default=None,
        description="Legacy one-file-per-entry history (defaults to <data_dir>/sdHistory)",
    )

    # Server
    server_host: str = Field(default="127.0.0.1")
    server_port: int = Field(default=8188, ge=1024, le=65535)

    def __init__(self, **kwargs):
        """Initialize configuration, resolve derived paths and create directories.

        Args:
            **kwargs: Configuration overrides (typically from environment variables)
        """
        super().__init__(**kwargs)

        if self.blob_dir is None:
            self.blob_dir = self.data_dir / "blobs"
        if self.history_db is None:
            self.history_db = self.data_dir / "history.sqlite3"
        if self.legacy_history_dir is None:
            self.legacy_history_dir = self.data_dir / "sdHistory"

        self.data_dir.mkdir(parents=True, exist_ok=True)
        self.blob_dir.mkdir(parents=True, exist_ok=True)


# Global configuration instance, loaded from PROMPTLOOM_* variables and .env.
config = PromptLoomConfig()
