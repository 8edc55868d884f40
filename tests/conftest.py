"""Shared fixtures: a scriptable generation client, sample images and a temp database."""

from __future__ import annotations

import asyncio
import io
import os
import tempfile
from typing import Any, Callable, Dict, List
from unittest.mock import AsyncMock

import pytest
from PIL import Image

# app.py reads these at import time
os.environ.setdefault("STUDIO_DATA_DIR", tempfile.mkdtemp(prefix="studio-test-"))
os.environ.setdefault("STUDIO_PROVIDER", "gemini")
os.environ.setdefault("STUDIO_WATERMARK_MODE", "eager")

import db
from models import (
    ImageUpload,
    KnowledgeBaseAnalysis,
    KnowledgeBaseCategory,
    SynthesizedAnalysis,
    SynthesizedDefinition,
    VariableElement,
    WatermarkReport,
)


def png_bytes(width: int = 40, height: int = 30, color: str = "red") -> bytes:
    out = io.BytesIO()
    Image.new("RGB", (width, height), color).save(out, format="PNG")
    return out.getvalue()


def make_upload(name: str = "ref.png", width: int = 40, height: int = 30) -> ImageUpload:
    return ImageUpload(filename=name, data=png_bytes(width, height), mime_type="image/png")


SYNTHESIZED = SynthesizedAnalysis(
    definition=SynthesizedDefinition(
        subject_summary="Young woman in a navy linen suit",
        core_subject_details="Double-breasted jacket, gold buttons",
        scene_atmosphere="Sunlit stone courtyard",
        visual_quality="Editorial, 85mm, soft contrast",
        subject_type="human_model",
        human_features="Shoulder-length black hair",
    ),
    variable_elements=[
        VariableElement(image_index=1, subject_ref="model", action_and_pose="walking", camera_angle="eye level"),
        VariableElement(image_index=2, subject_ref="model", action_and_pose="seated", camera_angle="low angle"),
    ],
)

KB_ANALYSIS = KnowledgeBaseAnalysis(
    holistic_description="Model leaning on a railing at dusk",
    fragments={
        KnowledgeBaseCategory.POSE: "Leaning on a railing, weight on one hip",
        KnowledgeBaseCategory.LIGHTING: "Warm dusk backlight",
        KnowledgeBaseCategory.COMPOSITION: "Three-quarter framing, 50mm",
    },
)


class Gate:
    """Holds async calls open until ``open()``; lets tests pick completion order."""

    def __init__(self) -> None:
        self._event = asyncio.Event()

    def open(self) -> None:
        self._event.set()

    def returning(self, result: Any) -> Callable:
        async def call(*args, **kwargs):
            await self._event.wait()
            if isinstance(result, BaseException):
                raise result
            return result
        return call


class FakeGenerationClient:
    """In-memory stand-in for a provider client; every operation is an AsyncMock."""

    provider = "Fake"

    def __init__(self) -> None:
        self.api_key = "test-key"
        self.remove_watermark = AsyncMock(side_effect=lambda image: f"https://img.test/clean/{image.filename}")
        self.detect_watermark = AsyncMock(return_value=WatermarkReport(has_watermark=True, subject_description="a model"))
        self.analyze_images = AsyncMock(return_value=SYNTHESIZED)
        self.analyze_for_knowledge_base = AsyncMock(return_value=KB_ANALYSIS)
        self.generate_master_image = AsyncMock(return_value="https://img.test/master-1.jpg")
        self.modify_master_image = AsyncMock(return_value="https://img.test/master-2.jpg")
        self.generate_single_from_master = AsyncMock(side_effect=self._single)
        self.upscale_image = AsyncMock(return_value="https://img.test/upscaled.jpg")
        self.singles: List[Dict[str, Any]] = []

    def _single(self, images, master, consistent, variable, is_regeneration, reference_image=None):
        self.singles.append({
            "master": master,
            "variable": variable,
            "is_regeneration": is_regeneration,
            "reference_image": reference_image,
        })
        return f"https://img.test/single/{len(self.singles)}.jpg"

    @property
    def has_api_key(self) -> bool:
        return bool(self.api_key)

    def update_api_key(self, api_key: str) -> None:
        self.api_key = api_key


@pytest.fixture
def fake_client() -> FakeGenerationClient:
    return FakeGenerationClient()


@pytest.fixture
def events() -> List[Dict]:
    return []


@pytest.fixture
def temp_db(tmp_path):
    """Point db.py at a fresh SQLite file for the test."""
    original = db.DB_PATH
    db.configure(tmp_path / "studio.db")
    db.init_db()
    yield tmp_path
    db.configure(original)
