"""Retouch studio session. Used by both the web app and CLI.

A ``StudioSession`` wires the reference image pipeline, the prompt composer,
the master and batch orchestrators and the staleness tracker around one
generation client.  All state lives on a single asyncio loop; every external
call is an ``await`` and every state change happens between awaits.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import sqlite3
from typing import Any, Callable, Dict, Iterator, List, Optional, Sequence, Set, Tuple, TypeVar

from batch import BatchOrchestrator, BatchSummary
from config import StudioConfig
from errors import GenerationError, NotFoundError, ValidationError
from generation_client import GenerationClient, build_client
from knowledge_base import KnowledgeBaseService
from master import MasterOrchestrator
from models import (
    ImageUpload,
    KnowledgeBaseEntry,
    ReferenceImage,
    UnitReferenceImage,
    VariablePromptUnit,
    new_id,
)
from progress import ProgressCallback, ProgressEmitter
from prompt_composer import CONSISTENT_FIELD, PromptComposer
from reference_images import ReferenceImagePipeline

log = logging.getLogger(__name__)

T = TypeVar("T")

MASTER_TARGET = "master"
UPSCALE_FACTORS = (2, 4)


class StudioSession:
    """One user's working state: references, prompts, master and series."""

    def __init__(
        self,
        config: Optional[StudioConfig] = None,
        client: Optional[GenerationClient] = None,
        progress_cb: Optional[ProgressCallback] = None,
        session_id: Optional[str] = None,
    ) -> None:
        self.id = session_id or new_id()
        self.config = config or StudioConfig()
        self.client = client or build_client(self.config)
        self.emitter = ProgressEmitter(progress_cb, self.id)

        self.pipeline = ReferenceImagePipeline(
            self.client,
            max_images=self.config.max_reference_images,
            mode=self.config.watermark_mode,
            emitter=self.emitter,
        )
        self.composer = PromptComposer()
        self.master = MasterOrchestrator(self.client, self.pipeline, self.composer, self.emitter)
        self.tracker = self.master.tracker
        self.batch = BatchOrchestrator(
            self.client, self.pipeline, self.composer, self.master, self.emitter
        )

        self.error: Optional[str] = None
        self.is_analyzing = False
        self.upscaled: Dict[str, Tuple[str, str]] = {}
        self.upscaling: Set[str] = set()

        log.info(
            "Session init: id=%s provider=%s mode=%s max_refs=%d",
            self.id, self.config.provider, self.config.watermark_mode,
            self.config.max_reference_images,
        )

    def update_api_key(self, api_key: str) -> None:
        self.client.update_api_key(api_key)

    # ------------------------------------------------------------------
    # Edit helper
    # ------------------------------------------------------------------

    def _inputs(self) -> Tuple[str, str]:
        return self.composer.consistent_prompt, self.composer.unit_zero_prompt

    def _mutate(self, change: Callable[[], T]) -> T:
        """Apply a prompt edit and report it to the staleness tracker."""
        before = self._inputs()
        result = change()
        after = self._inputs()
        if before[0] != after[0]:
            self.tracker.consistent_prompt_edited()
        if before[1] != after[1]:
            self.tracker.unit_zero_prompt_edited()
        return result

    @contextlib.contextmanager
    def _rejecting(self, stage: str) -> Iterator[None]:
        """Report a failed precondition as a ``rejected`` event, then re-raise."""
        try:
            yield
        except ValidationError as exc:
            self.emitter.emit(stage, "rejected", str(exc))
            raise

    def unit(self, unit_id: str) -> VariablePromptUnit:
        unit = self.composer.find(unit_id)
        if unit is None:
            raise NotFoundError("That picture slot no longer exists.")
        return unit

    # ------------------------------------------------------------------
    # Reference images
    # ------------------------------------------------------------------

    def add_reference_images(self, uploads: Sequence[ImageUpload]) -> List[ReferenceImage]:
        added = self.pipeline.add(uploads)
        if len(added) < len(uploads):
            self.emitter.emit(
                "reference", "warning",
                f"Only {len(added)} of {len(uploads)} images added "
                f"(limit {self.pipeline.max_images})",
            )
        return added

    async def process_reference_images(self, images: Sequence[ReferenceImage]) -> None:
        if self.pipeline.mode == "eager":
            await asyncio.gather(*(self.pipeline.process(img.id) for img in images))

    async def upload_reference_images(self, uploads: Sequence[ImageUpload]) -> List[ReferenceImage]:
        """Add uploads and, in eager mode, clean them right away."""
        added = self.add_reference_images(uploads)
        await self.process_reference_images(added)
        return added

    def delete_reference_image(self, image_id: str) -> bool:
        return self.pipeline.delete(image_id)

    # ------------------------------------------------------------------
    # Analysis
    # ------------------------------------------------------------------

    def validate_analysis(self) -> None:
        if self.is_analyzing:
            raise ValidationError("An analysis is already running.")
        if not self.pipeline.images:
            raise ValidationError("Upload at least one reference image first.")
        if self.pipeline.is_busy:
            raise ValidationError("Reference images are still being processed.")

    async def analyze(self, update_variables: bool = True) -> bool:
        """Analyze the reference set and seed the prompt fields.

        Pending images (deferred mode) are processed first, one at a time.
        ``update_variables=False`` only refreshes the consistency text.
        """
        with self._rejecting("analysis"):
            self.validate_analysis()
        self.is_analyzing = True
        self.error = None
        try:
            if self.pipeline.has_pending:
                await self.pipeline.process_pending()
            with self._rejecting("analysis"):
                self.pipeline.ready_artifacts()
            uploads = self.pipeline.ready_uploads()
            self.emitter.emit("analysis", "started", f"Analyzing {len(uploads)} image(s)…")
            try:
                result = await self.client.analyze_images(uploads)
            except GenerationError as exc:
                self.error = f"Analysis failed: {exc}"
                self.emitter.emit("analysis", "failed", self.error)
                return False
        finally:
            self.is_analyzing = False

        dropped = self._mutate(lambda: self.composer.populate_from_analysis(result, update_variables))
        for unit_id in dropped:
            self.batch.purge(unit_id)
            self.upscaled.pop(unit_id, None)
        self.emitter.emit(
            "analysis", "completed",
            "Prompts filled from analysis" if update_variables else "Consistency prompt refreshed",
        )
        return True

    async def start_analysis(self) -> bool:
        return await self.analyze(update_variables=True)

    async def reanalyze(self) -> bool:
        return await self.analyze(update_variables=False)

    # ------------------------------------------------------------------
    # Prompt edits
    # ------------------------------------------------------------------

    def set_consistent_prompt(self, text: str) -> None:
        self._mutate(lambda: self.composer.set_consistent_prompt(text))

    def set_unit_prompt(self, unit_id: str, text: str) -> None:
        self.unit(unit_id)
        self._mutate(lambda: self.composer.set_unit_prompt(unit_id, text))

    def add_unit(self, prompt: str = "") -> VariablePromptUnit:
        return self.composer.add_unit(prompt)

    def remove_unit(self, unit_id: str) -> None:
        """Remove a unit together with its generated result."""
        self.unit(unit_id)
        self._mutate(lambda: self.composer.remove_unit(unit_id))
        self.batch.purge(unit_id)
        self.upscaled.pop(unit_id, None)

    # ------------------------------------------------------------------
    # Per-unit reference images
    # ------------------------------------------------------------------

    async def attach_unit_image(
        self, unit_id: str, upload: ImageUpload, analyze: bool = True
    ) -> UnitReferenceImage:
        unit = self.unit(unit_id)
        ref = UnitReferenceImage(
            id=new_id(), upload=upload, preview=upload.to_data_uri(), is_analyzing=analyze
        )
        unit.reference_image = ref
        if not analyze:
            return ref

        self.emitter.emit("unit_image", "started", f"Analyzing {upload.filename}…", {"id": unit_id})
        try:
            analysis = await self.client.analyze_for_knowledge_base(upload)
        except GenerationError as exc:
            if self._unit_image_is(unit_id, ref):
                ref.is_analyzing = False
                ref.error = str(exc)
                self.emitter.emit("unit_image", "failed", f"Image analysis failed: {exc}", {"id": unit_id})
            return ref
        if self._unit_image_is(unit_id, ref):
            ref.analysis = analysis
            ref.is_analyzing = False
            self.emitter.emit("unit_image", "completed", "Image analysis ready", {"id": unit_id})
        return ref

    def _unit_image_is(self, unit_id: str, ref: UnitReferenceImage) -> bool:
        unit = self.composer.find(unit_id)
        return unit is not None and unit.reference_image is ref

    def remove_unit_image(self, unit_id: str) -> None:
        self.unit(unit_id).reference_image = None

    def save_unit_analysis_to_kb(self, unit_id: str, kb: KnowledgeBaseService) -> List[KnowledgeBaseEntry]:
        ref = self.unit(unit_id).reference_image
        if ref is None or ref.analysis is None:
            raise ValidationError("This picture has no analyzed reference image to save.")
        entries = kb.save_analysis(ref.analysis, ref.upload)
        self.emitter.emit("knowledge", "completed", f"Saved {len(entries)} entr(ies) to the knowledge base")
        return entries

    # ------------------------------------------------------------------
    # Knowledge base selection
    # ------------------------------------------------------------------

    def select_kb_entry(
        self,
        entry: KnowledgeBaseEntry,
        editing_field: str,
        kb: Optional[KnowledgeBaseService] = None,
    ) -> None:
        if editing_field != CONSISTENT_FIELD:
            self.unit(editing_field)
        self._mutate(lambda: self.composer.apply_kb_entry(entry, editing_field))
        if kb is not None:
            try:
                kb.increment_usage(entry.id)
            except sqlite3.Error as exc:
                log.warning("Could not record usage of KB entry %s: %s", entry.id, exc)

    # ------------------------------------------------------------------
    # Generation
    # ------------------------------------------------------------------

    @property
    def can_generate(self) -> bool:
        return (
            bool(self.pipeline.images)
            and not self.pipeline.is_busy
            and not self.pipeline.has_pending
            and not self.master.state.is_loading
        )

    @property
    def is_busy(self) -> bool:
        """True while any provider call for this session is in flight."""
        return (
            self.is_analyzing
            or self.pipeline.is_busy
            or self.master.state.is_loading
            or self.batch.is_running
            or bool(self.upscaling)
        )

    def validate_generate_master(self) -> None:
        self.master.validate_generate()

    def validate_modify_master(self, instruction: Optional[str] = None) -> None:
        self.master.validate_modify(self.master.instruction if instruction is None else instruction)

    def validate_batch(self) -> None:
        self.batch.validate()

    def validate_regenerate(self, unit_id: str) -> None:
        self.unit(unit_id)
        self.batch.validate()

    async def generate_master(self) -> bool:
        with self._rejecting("master"):
            self.validate_generate_master()
        self.error = None
        ok = await self.master.generate()
        if not ok:
            self.error = self.master.state.error
        return ok

    async def modify_master(self, instruction: Optional[str] = None) -> bool:
        with self._rejecting("master"):
            self.validate_modify_master(instruction)
        self.error = None
        ok = await self.master.modify(instruction)
        if not ok:
            self.error = self.master.state.error
        return ok

    async def generate_all(self) -> BatchSummary:
        with self._rejecting("batch"):
            self.validate_batch()
        self.error = None
        summary = await self.batch.generate_all()
        self.error = self.batch.notice
        return summary

    async def regenerate_single(self, unit_id: str) -> bool:
        with self._rejecting("unit"):
            self.validate_regenerate(unit_id)
        return await self.batch.regenerate_single(unit_id)

    # ------------------------------------------------------------------
    # Upscaling
    # ------------------------------------------------------------------

    def _upscale_source(self, target: str) -> Optional[str]:
        if target == MASTER_TARGET:
            return self.master.state.src
        slot = self.batch.results.get(self.unit(target).id)
        return slot.src if slot else None

    def validate_upscale(self, target: str, scale: int) -> str:
        if scale not in UPSCALE_FACTORS:
            raise ValidationError(f"scale must be one of {UPSCALE_FACTORS}")
        source = self._upscale_source(target)
        if source is None:
            raise ValidationError("There is no generated image to upscale yet.")
        return source

    async def upscale(self, target: str, scale: int = 2, face_enhance: bool = False) -> bool:
        """Upscale the master (``"master"``) or a unit's generated picture.

        The result is kept only while its source is still the current image.
        """
        with self._rejecting("upscale"):
            source = self.validate_upscale(target, scale)
        self.error = None
        self.emitter.emit("upscale", "started", f"Upscaling {scale}x…", {"target": target})
        self.upscaling.add(target)
        try:
            artifact = await self.client.upscale_image(source, scale, face_enhance)
        except GenerationError as exc:
            self.error = f"Upscale failed: {exc}"
            self.emitter.emit("upscale", "failed", self.error, {"target": target})
            return False
        finally:
            self.upscaling.discard(target)
        if target != MASTER_TARGET and self.composer.find(target) is None:
            log.debug("Dropping upscale for removed unit %s", target)
            return False
        self.upscaled[target] = (source, artifact)
        self.emitter.emit("upscale", "completed", "Upscaled image ready", {"target": target, "src": artifact})
        return True

    def upscaled_images(self) -> Dict[str, str]:
        """Upscaled artifacts whose source image is still current."""
        current = {}
        for target, (source, artifact) in self.upscaled.items():
            if target != MASTER_TARGET and self.composer.find(target) is None:
                continue
            if self._upscale_source(target) == source:
                current[target] = artifact
        return current

    # ------------------------------------------------------------------
    # Snapshot
    # ------------------------------------------------------------------

    def snapshot(self) -> Dict[str, Any]:
        results = self.batch.results
        return {
            "id": self.id,
            "provider": self.config.provider,
            "watermark_mode": self.config.watermark_mode,
            "reference_images": self.pipeline.to_list(),
            "consistent_prompt": self.composer.consistent_prompt,
            "units": [
                {**unit.to_dict(), "result": results[unit.id].to_dict() if unit.id in results else None}
                for unit in self.composer.units
            ],
            "master": self.master.state.to_dict(),
            "modification_instruction": self.master.instruction,
            "upscaled": self.upscaled_images(),
            "notice": self.batch.notice,
            "error": self.error,
            "is_analyzing": self.is_analyzing,
            "can_generate": self.can_generate,
        }
