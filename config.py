"""Studio settings read from the environment (.env is loaded by the entry points)."""

from __future__ import annotations

import dataclasses
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict

PROVIDERS = ("gemini", "replicate")
WATERMARK_MODES = ("eager", "deferred")

DEFAULT_GEMINI_TEXT_MODEL = "gemini-2.5-flash"
DEFAULT_GEMINI_IMAGE_MODEL = "gemini-2.5-flash-image"
DEFAULT_REPLICATE_IMAGE_MODEL = "google/nano-banana"
DEFAULT_REPLICATE_INPAINT_MODEL = "black-forest-labs/flux-fill-dev"
DEFAULT_REPLICATE_VISION_MODEL = "openai/gpt-4o-mini"
DEFAULT_REPLICATE_UPSCALE_MODEL = "nightmareai/real-esrgan"

MAX_REFERENCE_IMAGES = 8
KB_RETENTION_DAYS = 30
SESSION_IDLE_TTL_SECONDS = 2 * 60 * 60


@dataclass
class StudioConfig:
    provider: str = "gemini"
    gemini_api_key: str = ""
    replicate_api_token: str = ""

    gemini_text_model: str = DEFAULT_GEMINI_TEXT_MODEL
    gemini_image_model: str = DEFAULT_GEMINI_IMAGE_MODEL
    replicate_image_model: str = DEFAULT_REPLICATE_IMAGE_MODEL
    replicate_inpaint_model: str = DEFAULT_REPLICATE_INPAINT_MODEL
    replicate_vision_model: str = DEFAULT_REPLICATE_VISION_MODEL
    replicate_upscale_model: str = DEFAULT_REPLICATE_UPSCALE_MODEL

    watermark_mode: str = "eager"
    max_reference_images: int = MAX_REFERENCE_IMAGES
    kb_retention_days: int = KB_RETENTION_DAYS
    data_dir: Path = field(default_factory=lambda: Path("data"))
    session_ttl_seconds: int = SESSION_IDLE_TTL_SECONDS

    def __post_init__(self) -> None:
        if self.provider not in PROVIDERS:
            raise ValueError(f"provider must be one of {PROVIDERS}, got {self.provider!r}")
        if self.watermark_mode not in WATERMARK_MODES:
            raise ValueError(
                f"watermark_mode must be one of {WATERMARK_MODES}, got {self.watermark_mode!r}"
            )
        if self.max_reference_images < 1:
            raise ValueError("max_reference_images must be at least 1")
        self.data_dir = Path(self.data_dir)

    @classmethod
    def from_env(cls) -> "StudioConfig":
        env = os.environ
        return cls(
            provider=env.get("STUDIO_PROVIDER", "gemini").strip().lower(),
            gemini_api_key=env.get("GEMINI_API_KEY", ""),
            replicate_api_token=env.get("REPLICATE_API_TOKEN", ""),
            gemini_text_model=env.get("STUDIO_GEMINI_TEXT_MODEL", DEFAULT_GEMINI_TEXT_MODEL),
            gemini_image_model=env.get("STUDIO_GEMINI_IMAGE_MODEL", DEFAULT_GEMINI_IMAGE_MODEL),
            replicate_image_model=env.get("STUDIO_REPLICATE_IMAGE_MODEL", DEFAULT_REPLICATE_IMAGE_MODEL),
            replicate_inpaint_model=env.get("STUDIO_REPLICATE_INPAINT_MODEL", DEFAULT_REPLICATE_INPAINT_MODEL),
            replicate_vision_model=env.get("STUDIO_REPLICATE_VISION_MODEL", DEFAULT_REPLICATE_VISION_MODEL),
            replicate_upscale_model=env.get("STUDIO_REPLICATE_UPSCALE_MODEL", DEFAULT_REPLICATE_UPSCALE_MODEL),
            watermark_mode=env.get("STUDIO_WATERMARK_MODE", "eager").strip().lower(),
            max_reference_images=int(env.get("STUDIO_MAX_REFERENCE_IMAGES", MAX_REFERENCE_IMAGES)),
            kb_retention_days=int(env.get("STUDIO_KB_RETENTION_DAYS", KB_RETENTION_DAYS)),
            data_dir=Path(env.get("STUDIO_DATA_DIR", "data")),
            session_ttl_seconds=int(env.get("STUDIO_SESSION_TTL_SECONDS", SESSION_IDLE_TTL_SECONDS)),
        )

    @property
    def api_key(self) -> str:
        """Credential for the selected provider."""
        if self.provider == "replicate":
            return self.replicate_api_token
        return self.gemini_api_key

    @property
    def api_key_env(self) -> str:
        return "REPLICATE_API_TOKEN" if self.provider == "replicate" else "GEMINI_API_KEY"

    def with_overrides(self, **changes: Any) -> "StudioConfig":
        """Copy with some fields replaced; ``None`` values are ignored."""
        clean: Dict[str, Any] = {k: v for k, v in changes.items() if v is not None}
        return dataclasses.replace(self, **clean)
