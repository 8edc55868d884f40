"""Master image orchestration.

State machine over ``MasterImageState``::

    empty ──generate──▶ loading ──ok──▶ ready
      ▲                   │
      └──────failed───────┘
    ready ──generate/modify──▶ loading ──ok──▶ ready (new artifact)
                                  └──failed──▶ ready (previous artifact)

Only one master call may be outstanding: ``is_loading`` is set before the
first await and is a precondition of every operation.
"""

from __future__ import annotations

import logging
from typing import List, Optional, Tuple

from errors import GenerationError, ValidationError
from models import MasterImageState
from progress import ProgressEmitter
from prompt_composer import PromptComposer
from reference_images import ReferenceImagePipeline
from staleness import StalenessTracker

log = logging.getLogger(__name__)


class MasterOrchestrator:
    def __init__(
        self,
        client,
        pipeline: ReferenceImagePipeline,
        composer: PromptComposer,
        emitter: Optional[ProgressEmitter] = None,
    ) -> None:
        self.client = client
        self.pipeline = pipeline
        self.composer = composer
        self.emitter = emitter or ProgressEmitter()
        self.state = MasterImageState()
        self.tracker = StalenessTracker(self.state)
        self.instruction = ""

    @property
    def has_artifact(self) -> bool:
        return self.state.src is not None

    # ------------------------------------------------------------------
    # Preconditions
    # ------------------------------------------------------------------

    def _check_idle(self) -> None:
        if self.state.is_loading:
            raise ValidationError("A master image request is already in progress.")

    def validate_generate(self) -> Tuple[List[str], str, str]:
        """Return (reference artifacts, consistency text, unit-0 prompt) or raise."""
        self._check_idle()
        images = self.pipeline.ready_artifacts()
        consistent = self.composer.consistent_prompt
        variable = self.composer.unit_zero_prompt
        if not consistent.strip() and not variable.strip():
            raise ValidationError(
                "Describe the consistent elements or the first picture before generating."
            )
        return images, consistent, variable

    def validate_modify(self, instruction: str) -> List[str]:
        self._check_idle()
        if self.state.src is None:
            raise ValidationError("Generate a master image before modifying it.")
        if not (instruction or "").strip():
            raise ValidationError("Enter a modification instruction.")
        return self.pipeline.ready_artifacts()

    # ------------------------------------------------------------------
    # Operations
    # ------------------------------------------------------------------

    def _start(self, message: str) -> None:
        self.state.is_loading = True
        self.state.error = None
        self.emitter.emit("master", "started", message)

    def _succeeded(self, artifact: str, message: str) -> None:
        self.state.src = artifact
        self.state.is_loading = False
        self.state.error = None
        self.tracker.generation_succeeded()
        self.emitter.emit("master", "completed", message, {"src": artifact})

    def _failed(self, exc: GenerationError, what: str) -> None:
        # src is left alone: None after a first attempt, the last good image otherwise
        self.state.is_loading = False
        self.state.error = str(exc)
        self.emitter.emit("master", "failed", f"{what} failed: {exc}")

    async def generate(self) -> bool:
        """Generate (or regenerate) the master image. Returns True on success."""
        images, consistent, variable = self.validate_generate()
        regenerating = self.has_artifact
        self._start("Regenerating master image…" if regenerating else "Generating master image…")
        try:
            artifact = await self.client.generate_master_image(images, consistent, variable)
        except GenerationError as exc:
            self._failed(exc, "Master regeneration" if regenerating else "Master generation")
            return False
        self._succeeded(artifact, "Master image ready")
        return True

    async def modify(self, instruction: Optional[str] = None) -> bool:
        """Apply a free-text modification to the current master.

        The stored instruction is cleared on success and kept on failure.
        """
        if instruction is not None:
            self.instruction = instruction
        text = self.instruction
        images = self.validate_modify(text)
        master = self.state.src
        self._start("Modifying master image…")
        try:
            artifact = await self.client.modify_master_image(
                images,
                master,
                self.composer.consistent_prompt,
                self.composer.unit_zero_prompt,
                text,
            )
        except GenerationError as exc:
            self._failed(exc, "Master modification")
            return False
        self.instruction = ""
        self._succeeded(artifact, "Master image modified")
        return True
