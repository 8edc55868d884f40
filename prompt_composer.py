"""Prompt composer: the consistency text plus the ordered variable-prompt units.

Unit 0 is special: its prompt also seeds the master image.
"""

from __future__ import annotations

import logging
from typing import List, Optional

from errors import ValidationError
from models import (
    AnalysisResult,
    KnowledgeBaseEntry,
    LegacyAnalysis,
    SynthesizedAnalysis,
    SynthesizedDefinition,
    VariableElement,
    VariablePromptUnit,
)

log = logging.getLogger(__name__)

CONSISTENT_FIELD = "consistent"
NULL_SENTINEL = "null"


def _present(value: Optional[str]) -> bool:
    return bool(value) and value.strip() != "" and value.strip().lower() != NULL_SENTINEL


# ---------------------------------------------------------------------------
# Analysis → text
# ---------------------------------------------------------------------------

def synthesized_text(definition: SynthesizedDefinition) -> str:
    lines = []
    for label, value in (
        ("Subject Summary", definition.subject_summary),
        ("Subject Core", definition.core_subject_details),
        ("Human Features", definition.human_features),
        ("Scene Atmosphere", definition.scene_atmosphere),
        ("Visual Quality", definition.visual_quality),
    ):
        if _present(value):
            lines.append(f"{label}: {value.strip()}")
    return "\n".join(lines)


def legacy_text(result: LegacyAnalysis) -> str:
    sentences = []
    subject = result.primary_subject
    if subject:
        if _present(subject.item):
            sentences.append(f"{subject.item}.")
        if subject.key_features:
            sentences.append(f"{', '.join(subject.key_features)}.")
        if subject.materials:
            sentences.append(f"Materials: {', '.join(subject.materials)}.")
        if _present(subject.brand):
            sentences.append(f"Brand: {subject.brand}.")
        if _present(subject.emotional_tone):
            sentences.append(f"Mood: {subject.emotional_tone}.")
    scene = result.scene_environment
    if scene:
        if _present(scene.general_location):
            sentences.append(f"Scene: {scene.general_location}.")
        if scene.shared_elements:
            sentences.append(f"{', '.join(scene.shared_elements)}.")
    quality = result.image_quality
    if quality:
        for label, value in (
            ("Style", quality.style),
            ("Lighting", quality.lighting),
            ("Quality", quality.quality),
        ):
            if _present(value):
                sentences.append(f"{label}: {value}.")
    return " ".join(sentences)


def variable_text(element: VariableElement) -> str:
    if _present(element.subject_ref):
        return (
            f"[{element.subject_ref}] Action: {element.action_and_pose or ''}. "
            f"Camera: {element.camera_angle or ''}"
        )
    if _present(element.unique_features):
        return f"[{element.content_type or 'detail'}] {element.unique_features}"
    return (
        f"Framing: {element.framing or ''}. Pose: {element.subject_pose or ''}. "
        f"Person: {element.person_description or ''}. Details: {element.unique_details or ''}. "
        f"Camera: {element.camera_settings or ''}."
    )


def consistent_text(result: AnalysisResult) -> str:
    if isinstance(result, SynthesizedAnalysis):
        return synthesized_text(result.definition)
    if isinstance(result, LegacyAnalysis):
        return legacy_text(result)
    raise TypeError(f"unsupported analysis result: {type(result).__name__}")


# ---------------------------------------------------------------------------
# Composer
# ---------------------------------------------------------------------------

class PromptComposer:
    def __init__(self) -> None:
        self.consistent_prompt = ""
        self.units: List[VariablePromptUnit] = [VariablePromptUnit()]

    # ------------------------------------------------------------------
    # Lookups
    # ------------------------------------------------------------------

    @property
    def unit_zero(self) -> VariablePromptUnit:
        return self.units[0]

    @property
    def unit_zero_prompt(self) -> str:
        return self.units[0].prompt if self.units else ""

    def unit(self, unit_id: str) -> VariablePromptUnit:
        for unit in self.units:
            if unit.id == unit_id:
                return unit
        raise KeyError(unit_id)

    def find(self, unit_id: str) -> Optional[VariablePromptUnit]:
        try:
            return self.unit(unit_id)
        except KeyError:
            return None

    def index_of(self, unit_id: str) -> int:
        for i, unit in enumerate(self.units):
            if unit.id == unit_id:
                return i
        raise KeyError(unit_id)

    # ------------------------------------------------------------------
    # Direct edits
    # ------------------------------------------------------------------

    def set_consistent_prompt(self, text: str) -> None:
        self.consistent_prompt = text or ""

    def set_unit_prompt(self, unit_id: str, text: str) -> None:
        self.unit(unit_id).prompt = text or ""

    def add_unit(self, prompt: str = "") -> VariablePromptUnit:
        unit = VariablePromptUnit(prompt=prompt)
        self.units.append(unit)
        return unit

    def remove_unit(self, unit_id: str) -> VariablePromptUnit:
        """Remove a unit; the last remaining unit cannot be removed."""
        unit = self.unit(unit_id)
        if len(self.units) == 1:
            raise ValidationError("At least one picture slot is required.")
        self.units.remove(unit)
        return unit

    # ------------------------------------------------------------------
    # Analysis population
    # ------------------------------------------------------------------

    def populate_from_analysis(self, result: AnalysisResult, update_variables: bool = True) -> List[str]:
        """Seed the prompt fields from an analysis result.

        All texts are built before anything is applied.  With
        ``update_variables`` the unit sequence is rewritten positionally:
        existing ids are reused, surplus elements become new units and
        surplus units are dropped (their ids are returned so the caller can
        purge their results).  Zero elements leave one empty unit.
        """
        consistent = consistent_text(result)
        texts = [variable_text(e) for e in result.variable_elements] if update_variables else None

        self.consistent_prompt = consistent
        if texts is None:
            return []

        if not texts:
            texts = [""]
        new_units: List[VariablePromptUnit] = []
        for i, text in enumerate(texts):
            if i < len(self.units):
                unit = self.units[i]
                unit.prompt = text
            else:
                unit = VariablePromptUnit(prompt=text)
            new_units.append(unit)
        dropped = [u.id for u in self.units[len(texts):]]
        self.units = new_units
        log.debug("Populated %d unit(s) from analysis, dropped %d", len(new_units), len(dropped))
        return dropped

    # ------------------------------------------------------------------
    # Knowledge base
    # ------------------------------------------------------------------

    def apply_kb_entry(self, entry: KnowledgeBaseEntry, editing_field: str) -> None:
        """Insert a knowledge-base entry into the field being edited.

        Full-prompt entries replace the consistency text and the unit-0 prompt;
        every other entry appends its fragment to *editing_field*
        (``"consistent"`` or a unit id).
        """
        if entry.is_full_prompt:
            self.consistent_prompt = entry.full_prompt.consistent_prompt
            self.units[0].prompt = entry.full_prompt.variable_prompt
            return

        fragment = entry.prompt_fragment.strip()
        if editing_field == CONSISTENT_FIELD:
            self.consistent_prompt = _append(self.consistent_prompt, fragment)
            return
        unit = self.unit(editing_field)
        unit.prompt = _append(unit.prompt, fragment)


def _append(text: str, fragment: str) -> str:
    base = (text or "").rstrip()
    if not base:
        return fragment
    return f"{base} {fragment}"
