"""Data records shared by the studio components.

Images travel as ``ImageUpload`` (raw bytes + MIME type).  Everything the
generation service returns is an opaque artifact string: an http(s) URL or a
``data:`` URI.  The core never looks inside artifacts beyond passing them back
into later calls, saving them or rendering them.
"""

from __future__ import annotations

import base64
import binascii
import mimetypes
import re
import uuid
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Optional, Union


def new_id() -> str:
    return str(uuid.uuid4())


_DATA_URI_RE = re.compile(r"^data:(?P<mime>[\w.+-]+/[\w.+-]+)?(?:;[^,]*)?;base64,(?P<data>.+)$", re.DOTALL)


# ---------------------------------------------------------------------------
# Uploads
# ---------------------------------------------------------------------------

@dataclass
class ImageUpload:
    """A user-supplied image file. Owned by exactly one record."""

    filename: str
    data: bytes
    mime_type: str = "image/png"

    def to_data_uri(self) -> str:
        encoded = base64.b64encode(self.data).decode("ascii")
        return f"data:{self.mime_type};base64,{encoded}"

    @classmethod
    def from_path(cls, path: Union[str, Path]) -> "ImageUpload":
        p = Path(path)
        mime, _ = mimetypes.guess_type(p.name)
        return cls(filename=p.name, data=p.read_bytes(), mime_type=mime or "image/png")

    @classmethod
    def from_data_uri(cls, uri: str, filename: str = "image") -> "ImageUpload":
        mime, data = decode_data_uri(uri)
        return cls(filename=filename, data=data, mime_type=mime)


def is_data_uri(value: str) -> bool:
    return isinstance(value, str) and value.startswith("data:")


def decode_data_uri(uri: str) -> tuple[str, bytes]:
    """Return (mime_type, raw bytes) for a base64 ``data:`` URI."""
    m = _DATA_URI_RE.match(uri.strip())
    if not m:
        raise ValueError("not a base64 data URI")
    try:
        data = base64.b64decode(m.group("data"), validate=False)
    except (binascii.Error, ValueError) as exc:
        raise ValueError(f"invalid base64 payload: {exc}") from exc
    return m.group("mime") or "image/png", data


# ---------------------------------------------------------------------------
# Reference images and prompt units
# ---------------------------------------------------------------------------

@dataclass
class ReferenceImage:
    id: str
    upload: ImageUpload
    original_preview: str
    processed_preview: Optional[str] = None
    is_processing: bool = False
    error: Optional[str] = None
    generation: int = 0

    @property
    def status(self) -> str:
        if self.is_processing:
            return "processing"
        if self.processed_preview is None:
            return "pending"
        return "failed" if self.error else "ready"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "filename": self.upload.filename,
            "original_preview": self.original_preview,
            "processed_preview": self.processed_preview,
            "is_processing": self.is_processing,
            "status": self.status,
            "error": self.error,
        }


@dataclass
class UnitReferenceImage:
    """Optional per-unit image fused into that unit's generation."""

    id: str
    upload: ImageUpload
    preview: str
    analysis: Optional["KnowledgeBaseAnalysis"] = None
    is_analyzing: bool = False
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "filename": self.upload.filename,
            "preview": self.preview,
            "analysis": self.analysis.to_dict() if self.analysis else None,
            "is_analyzing": self.is_analyzing,
            "error": self.error,
        }


@dataclass
class VariablePromptUnit:
    id: str = field(default_factory=new_id)
    prompt: str = ""
    reference_image: Optional[UnitReferenceImage] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "prompt": self.prompt,
            "reference_image": self.reference_image.to_dict() if self.reference_image else None,
        }


@dataclass
class GeneratedImage:
    src: Optional[str] = None
    is_loading: bool = False
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {"src": self.src, "is_loading": self.is_loading, "error": self.error}


@dataclass
class MasterImageState:
    src: Optional[str] = None
    is_loading: bool = False
    is_stale: bool = False
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "src": self.src,
            "is_loading": self.is_loading,
            "is_stale": self.is_stale,
            "error": self.error,
        }


# ---------------------------------------------------------------------------
# Analysis results
# ---------------------------------------------------------------------------

def _text(value: Any) -> Optional[str]:
    """Normalise a JSON scalar/list to text; ``None`` when absent."""
    if value is None:
        return None
    if isinstance(value, (list, tuple)):
        return ", ".join(str(v) for v in value)
    return str(value)


def _texts(value: Any) -> List[str]:
    if value is None:
        return []
    if isinstance(value, (list, tuple)):
        return [str(v) for v in value]
    return [str(value)]


@dataclass
class VariableElement:
    """One per-output element of an analysis (both schema generations)."""

    image_index: Optional[int] = None
    subject_ref: Optional[str] = None
    action_and_pose: Optional[str] = None
    camera_angle: Optional[str] = None
    # older fields
    content_type: Optional[str] = None
    unique_features: Optional[str] = None
    framing: Optional[str] = None
    subject_pose: Optional[str] = None
    person_description: Optional[str] = None
    unique_details: Optional[str] = None
    aspect_ratio: Optional[str] = None
    camera_settings: Optional[str] = None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "VariableElement":
        idx = data.get("image_index")
        try:
            image_index = int(idx) if idx is not None else None
        except (TypeError, ValueError):
            image_index = None
        return cls(
            image_index=image_index,
            subject_ref=_text(data.get("subject_ref")),
            action_and_pose=_text(data.get("action_and_pose")),
            camera_angle=_text(data.get("camera_angle")),
            content_type=_text(data.get("content_type")),
            unique_features=_text(data.get("unique_features")),
            framing=_text(data.get("framing")),
            subject_pose=_text(data.get("subject_pose")),
            person_description=_text(data.get("person_description")),
            unique_details=_text(data.get("unique_details")),
            aspect_ratio=_text(data.get("aspect_ratio")),
            camera_settings=_text(data.get("camera_settings")),
        )


@dataclass
class SynthesizedDefinition:
    subject_summary: Optional[str] = None
    core_subject_details: Optional[str] = None
    scene_atmosphere: Optional[str] = None
    visual_quality: Optional[str] = None
    subject_type: Optional[str] = None
    human_features: Optional[str] = None


@dataclass
class SynthesizedAnalysis:
    definition: SynthesizedDefinition
    variable_elements: List[VariableElement] = field(default_factory=list)


@dataclass
class PrimarySubject:
    item: Optional[str] = None
    key_features: List[str] = field(default_factory=list)
    materials: List[str] = field(default_factory=list)
    brand: Optional[str] = None
    emotional_tone: Optional[str] = None


@dataclass
class SceneEnvironment:
    general_location: Optional[str] = None
    shared_elements: List[str] = field(default_factory=list)


@dataclass
class ImageQuality:
    style: Optional[str] = None
    lighting: Optional[str] = None
    quality: Optional[str] = None
    lens_type: Optional[str] = None


@dataclass
class LegacyAnalysis:
    primary_subject: Optional[PrimarySubject] = None
    scene_environment: Optional[SceneEnvironment] = None
    image_quality: Optional[ImageQuality] = None
    variable_elements: List[VariableElement] = field(default_factory=list)


AnalysisResult = Union[SynthesizedAnalysis, LegacyAnalysis]


def parse_analysis(data: Dict[str, Any]) -> AnalysisResult:
    """Build the tagged analysis record from a decoded JSON response.

    The presence of ``consistent_elements.synthesized_definition`` selects the
    synthesized shape; anything else is read as the legacy shape.
    """
    if not isinstance(data, dict):
        raise ValueError("analysis result must be a JSON object")
    consistent = data.get("consistent_elements")
    if not isinstance(consistent, dict):
        raise ValueError("analysis result has no consistent_elements")
    variables = [
        VariableElement.from_dict(item)
        for item in (data.get("inconsistent_elements") or [])
        if isinstance(item, dict)
    ]

    definition = consistent.get("synthesized_definition")
    if isinstance(definition, dict):
        return SynthesizedAnalysis(
            definition=SynthesizedDefinition(
                subject_summary=_text(definition.get("subject_summary")),
                core_subject_details=_text(definition.get("core_subject_details")),
                scene_atmosphere=_text(definition.get("scene_atmosphere")),
                visual_quality=_text(definition.get("visual_quality")),
                subject_type=_text(definition.get("subject_type")),
                human_features=_text(definition.get("human_features")),
            ),
            variable_elements=variables,
        )

    subject = consistent.get("primary_subject")
    scene = consistent.get("scene_environment")
    quality = consistent.get("image_quality_and_composition")
    return LegacyAnalysis(
        primary_subject=PrimarySubject(
            item=_text(subject.get("item")),
            key_features=_texts(subject.get("key_features")),
            materials=_texts(subject.get("materials")),
            brand=_text(subject.get("brand")),
            emotional_tone=_text(subject.get("emotional_tone")),
        ) if isinstance(subject, dict) else None,
        scene_environment=SceneEnvironment(
            general_location=_text(scene.get("general_location")),
            shared_elements=_texts(scene.get("shared_elements")),
        ) if isinstance(scene, dict) else None,
        image_quality=ImageQuality(
            style=_text(quality.get("style")),
            lighting=_text(quality.get("lighting")),
            quality=_text(quality.get("quality")),
            lens_type=_text(quality.get("lens_type")),
        ) if isinstance(quality, dict) else None,
        variable_elements=variables,
    )


@dataclass
class WatermarkReport:
    has_watermark: bool = False
    subject_description: str = ""

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "WatermarkReport":
        flag = data.get("hasWatermark", data.get("has_watermark", False))
        if isinstance(flag, str):
            flag = flag.strip().lower() in ("true", "yes", "1")
        desc = data.get("subjectDescription", data.get("subject_description")) or ""
        return cls(has_watermark=bool(flag), subject_description=str(desc))


# ---------------------------------------------------------------------------
# Knowledge base
# ---------------------------------------------------------------------------

class KnowledgeBaseCategory(str, Enum):
    FULL_PROMPT = "full_prompt"
    POSE = "pose"
    SCENE = "scene"
    COMPOSITION = "composition"
    LIGHTING = "lighting"
    CLOTHING = "clothing"
    STYLE = "style"
    RETOUCH_LEARNING = "retouch_learning"

    @property
    def label(self) -> str:
        return _CATEGORY_LABELS[self]


_CATEGORY_LABELS = {
    KnowledgeBaseCategory.FULL_PROMPT: "Full Prompt",
    KnowledgeBaseCategory.POSE: "Pose & Action",
    KnowledgeBaseCategory.SCENE: "Scene & Environment",
    KnowledgeBaseCategory.COMPOSITION: "Composition & Camera",
    KnowledgeBaseCategory.LIGHTING: "Lighting & Atmosphere",
    KnowledgeBaseCategory.CLOTHING: "Clothing & Styling",
    KnowledgeBaseCategory.STYLE: "Style & Post-processing",
    KnowledgeBaseCategory.RETOUCH_LEARNING: "Retouch Memory",
}

FRAGMENT_CATEGORIES = (
    KnowledgeBaseCategory.POSE,
    KnowledgeBaseCategory.SCENE,
    KnowledgeBaseCategory.COMPOSITION,
    KnowledgeBaseCategory.LIGHTING,
    KnowledgeBaseCategory.CLOTHING,
    KnowledgeBaseCategory.STYLE,
)


@dataclass
class FullPrompt:
    consistent_prompt: str
    variable_prompt: str


@dataclass
class KnowledgeBaseEntry:
    category: KnowledgeBaseCategory
    prompt_fragment: str
    id: str = field(default_factory=new_id)
    source_image_preview: str = ""
    usage_count: int = 0
    full_prompt: Optional[FullPrompt] = None
    learning_context: Optional[str] = None
    group_id: Optional[str] = None
    deleted_at: Optional[float] = None

    @property
    def is_full_prompt(self) -> bool:
        return self.category is KnowledgeBaseCategory.FULL_PROMPT and self.full_prompt is not None

    @property
    def is_deleted(self) -> bool:
        return self.deleted_at is not None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "category": self.category.value,
            "prompt_fragment": self.prompt_fragment,
            "source_image_preview": self.source_image_preview,
            "usage_count": self.usage_count,
            "full_prompt": (
                {
                    "consistent_prompt": self.full_prompt.consistent_prompt,
                    "variable_prompt": self.full_prompt.variable_prompt,
                }
                if self.full_prompt else None
            ),
            "learning_context": self.learning_context,
            "group_id": self.group_id,
            "deleted_at": self.deleted_at,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "KnowledgeBaseEntry":
        fp = data.get("full_prompt")
        return cls(
            id=data.get("id") or new_id(),
            category=KnowledgeBaseCategory(data["category"]),
            prompt_fragment=data.get("prompt_fragment") or "",
            source_image_preview=data.get("source_image_preview") or "",
            usage_count=int(data.get("usage_count") or 0),
            full_prompt=(
                FullPrompt(fp.get("consistent_prompt") or "", fp.get("variable_prompt") or "")
                if isinstance(fp, dict) else None
            ),
            learning_context=data.get("learning_context"),
            group_id=data.get("group_id"),
            deleted_at=data.get("deleted_at"),
        )


@dataclass
class KnowledgeBaseAnalysis:
    """A holistic description of one image plus per-category fragments."""

    holistic_description: str
    fragments: Dict[KnowledgeBaseCategory, str] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "holistic_description": self.holistic_description,
            "fragments": {cat.value: text for cat, text in self.fragments.items()},
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "KnowledgeBaseAnalysis":
        fragments: Dict[KnowledgeBaseCategory, str] = {}
        for key, value in (data.get("fragments") or {}).items():
            try:
                cat = KnowledgeBaseCategory(key)
            except ValueError:
                continue
            text = _text(value)
            if text and text.strip():
                fragments[cat] = text.strip()
        return cls(
            holistic_description=str(data.get("holistic_description") or "").strip(),
            fragments=fragments,
        )
