"""Generation service clients.

``GenerationClient`` is the one boundary through which the studio reaches
image models: watermark detection/removal, image analysis, master/series
generation and upscaling.  Two providers implement it:

  GeminiClient     google-genai async API (gemini-2.5-flash / -flash-image)
  ReplicateClient  Replicate predictions (nano-banana, flux-fill-dev, gpt-4o-mini,
                   real-esrgan)

Every failure surfaces as ``errors.GenerationError``.  Credentials are passed
in at construction and rotated with ``update_api_key``; clients never read the
environment themselves.
"""

from __future__ import annotations

import abc
import asyncio
import base64
import binascii
import logging
import time
from typing import Any, Dict, List, Optional

import requests

from config import StudioConfig
from errors import GenerationError
from instructions import (
    extract_ai_instructions,
    fragments_from_understanding,
    parse_json_response,
    parse_strength,
)
from models import (
    AnalysisResult,
    ImageUpload,
    KnowledgeBaseAnalysis,
    WatermarkReport,
    parse_analysis,
)
import prompts
import storage

log = logging.getLogger(__name__)

MODIFY_STRENGTH = 0.75
SERIES_STRENGTH = 0.65
INPAINT_GUIDANCE = 30


def _friendly_error(provider: str, exc: Exception) -> str:
    err = str(exc)
    low = err.lower()
    if "401" in err or "403" in err or "authentication" in low or "api key not valid" in low:
        return f"{provider} API key is invalid or expired."
    if "402" in err or "quota" in low or "payment" in low or "billing" in low:
        return f"{provider} account has insufficient credits or quota."
    if "429" in err or "rate limit" in low:
        return f"{provider} rate limit reached, please retry shortly."
    if "nsfw" in low or "sensitive" in low or "safety" in low:
        return f"{provider} safety filter rejected the request."
    return f"{provider} request failed: {err}"


class GenerationClient(abc.ABC):
    """Async interface used by the studio orchestrators."""

    provider = ""

    def __init__(self, api_key: str, config: Optional[StudioConfig] = None) -> None:
        self.config = config or StudioConfig()
        self._api_key = api_key or ""

    @property
    def has_api_key(self) -> bool:
        return bool(self._api_key)

    def update_api_key(self, api_key: str) -> None:
        """Rotate the credential used by subsequent calls."""
        self._api_key = api_key or ""
        log.info("%s API key updated (%s)", self.provider, "set" if self._api_key else "cleared")

    def _require_key(self, operation: str) -> str:
        if not self._api_key:
            raise GenerationError(f"{self.provider} API key is missing.", operation)
        return self._api_key

    @abc.abstractmethod
    async def remove_watermark(self, image: ImageUpload) -> str:
        """Return an artifact with corner overlays removed."""

    @abc.abstractmethod
    async def detect_watermark(self, image: ImageUpload) -> WatermarkReport:
        ...

    @abc.abstractmethod
    async def analyze_images(self, images: List[ImageUpload]) -> AnalysisResult:
        ...

    @abc.abstractmethod
    async def analyze_for_knowledge_base(self, image: ImageUpload) -> KnowledgeBaseAnalysis:
        ...

    @abc.abstractmethod
    async def generate_master_image(
        self, images: List[str], consistent_prompt: str, variable_prompt: str
    ) -> str:
        ...

    @abc.abstractmethod
    async def modify_master_image(
        self,
        images: List[str],
        master: str,
        consistent_prompt: str,
        variable_prompt: str,
        instruction: str,
    ) -> str:
        ...

    @abc.abstractmethod
    async def generate_single_from_master(
        self,
        images: List[str],
        master: str,
        consistent_prompt: str,
        variable_prompt: str,
        is_regeneration: bool,
        reference_image: Optional[str] = None,
    ) -> str:
        ...

    async def upscale_image(self, artifact: str, scale: int = 2, face_enhance: bool = False) -> str:
        """Return a super-resolved copy of *artifact*."""
        raise GenerationError(f"{self.provider} cannot upscale images. Switch to Replicate.", "upscale_image")


# ---------------------------------------------------------------------------
# Gemini
# ---------------------------------------------------------------------------

class GeminiClient(GenerationClient):
    provider = "Gemini"

    def __init__(self, api_key: str, config: Optional[StudioConfig] = None) -> None:
        super().__init__(api_key, config)
        self._client = None

    def update_api_key(self, api_key: str) -> None:
        super().update_api_key(api_key)
        self._client = None

    def _genai(self, operation: str):
        from google import genai

        key = self._require_key(operation)
        if self._client is None:
            self._client = genai.Client(api_key=key)
        return self._client

    @staticmethod
    def _upload_part(image: ImageUpload):
        from google.genai import types

        return types.Part.from_bytes(data=image.data, mime_type=image.mime_type)

    @staticmethod
    async def _artifact_parts(artifacts: List[str]) -> List[Any]:
        from google.genai import types

        parts = []
        for artifact in artifacts:
            try:
                data, mime = await asyncio.to_thread(storage.artifact_bytes, artifact)
            except (requests.RequestException, OSError, ValueError) as exc:
                raise GenerationError(f"Could not load input image: {exc}", "load_artifact") from exc
            parts.append(types.Part.from_bytes(data=data, mime_type=mime))
        return parts

    async def _generate(self, operation: str, model: str, contents: List[Any], config: Any) -> Any:
        client = self._genai(operation)
        t0 = time.time()
        try:
            response = await client.aio.models.generate_content(
                model=model, contents=contents, config=config
            )
        except Exception as exc:
            log.error("Gemini error [%s] after %.1fs: %s", operation, time.time() - t0, exc)
            raise GenerationError(_friendly_error(self.provider, exc), operation) from exc
        log.info("Gemini [%s]: model=%s  %.1fs", operation, model, time.time() - t0)
        return response

    async def _image(self, operation: str, contents: List[Any]) -> str:
        from google.genai import types

        response = await self._generate(
            operation,
            self.config.gemini_image_model,
            contents,
            types.GenerateContentConfig(response_modalities=["IMAGE"]),
        )
        for candidate in getattr(response, "candidates", None) or []:
            content = getattr(candidate, "content", None)
            for part in getattr(content, "parts", None) or []:
                inline = getattr(part, "inline_data", None)
                if inline is not None and inline.data:
                    data = inline.data
                    if isinstance(data, str):
                        try:
                            data = base64.b64decode(data)
                        except binascii.Error as exc:
                            raise GenerationError("The model returned unreadable image data.", operation) from exc
                    mime = inline.mime_type or "image/png"
                    return ImageUpload("generated", data, mime).to_data_uri()
        raise GenerationError("Image generation failed: the model returned no image data.", operation)

    async def _json(self, operation: str, contents: List[Any]) -> Any:
        from google.genai import types

        response = await self._generate(
            operation,
            self.config.gemini_text_model,
            contents,
            types.GenerateContentConfig(response_mime_type="application/json"),
        )
        text = getattr(response, "text", None) or ""
        try:
            return parse_json_response(text)
        except ValueError as exc:
            log.debug("Unparseable %s response: %.500s", operation, text)
            raise GenerationError("The model returned an invalid JSON response. Please retry.", operation) from exc

    async def remove_watermark(self, image: ImageUpload) -> str:
        return await self._image(
            "remove_watermark", [self._upload_part(image), prompts.WATERMARK_REMOVAL_PROMPT]
        )

    async def detect_watermark(self, image: ImageUpload) -> WatermarkReport:
        data = await self._json(
            "detect_watermark", [self._upload_part(image), prompts.WATERMARK_DETECTION_PROMPT]
        )
        if not isinstance(data, dict):
            raise GenerationError("Watermark check returned an unexpected shape.", "detect_watermark")
        return WatermarkReport.from_dict(data)

    async def analyze_images(self, images: List[ImageUpload]) -> AnalysisResult:
        if not images:
            raise GenerationError("No images to analyze.", "analyze_images")
        contents = [self._upload_part(img) for img in images]
        contents.append(prompts.analysis_prompt(len(images)))
        data = await self._json("analyze_images", contents)
        try:
            return parse_analysis(data)
        except ValueError as exc:
            raise GenerationError(f"Analysis result is incomplete: {exc}", "analyze_images") from exc

    async def analyze_for_knowledge_base(self, image: ImageUpload) -> KnowledgeBaseAnalysis:
        data = await self._json(
            "analyze_for_knowledge_base", [self._upload_part(image), prompts.KB_ANALYSIS_PROMPT]
        )
        if not isinstance(data, dict):
            raise GenerationError("Knowledge-base analysis failed.", "analyze_for_knowledge_base")
        return KnowledgeBaseAnalysis.from_dict(data)

    async def generate_master_image(
        self, images: List[str], consistent_prompt: str, variable_prompt: str
    ) -> str:
        contents = await self._artifact_parts(images)
        contents.append(prompts.master_prompt(consistent_prompt, variable_prompt))
        return await self._image("generate_master_image", contents)

    async def modify_master_image(
        self,
        images: List[str],
        master: str,
        consistent_prompt: str,
        variable_prompt: str,
        instruction: str,
    ) -> str:
        contents = await self._artifact_parts(images + [master])
        contents.append(
            prompts.modify_prompt(consistent_prompt, variable_prompt, extract_ai_instructions(instruction))
        )
        return await self._image("modify_master_image", contents)

    async def generate_single_from_master(
        self,
        images: List[str],
        master: str,
        consistent_prompt: str,
        variable_prompt: str,
        is_regeneration: bool,
        reference_image: Optional[str] = None,
    ) -> str:
        artifacts = images + [master]
        prompt = prompts.series_prompt(consistent_prompt, variable_prompt, is_regeneration)
        if reference_image:
            artifacts.append(reference_image)
            prompt += prompts.fusion_note()
        contents = await self._artifact_parts(artifacts)
        contents.append(prompt)
        return await self._image("generate_single_from_master", contents)


# ---------------------------------------------------------------------------
# Replicate
# ---------------------------------------------------------------------------

class ReplicateClient(GenerationClient):
    provider = "Replicate"

    def _run_replicate(self, operation: str, model: str, payload: Dict) -> Any:
        """Submit a prediction to Replicate and return its raw output (blocking)."""
        token = self._require_key(operation)

        import replicate as rep

        # Sanitise payload for the log (don't embed full URLs/base64)
        log_payload = {
            k: (v[:120] + "…" if isinstance(v, str) and len(v) > 120 else v)
            for k, v in payload.items()
            if not isinstance(v, list)
        }
        log.debug("Replicate [%s] %s input=%s", operation, model, log_payload)

        t0 = time.time()
        try:
            client = rep.Client(api_token=token)
            if ":" in model:
                prediction = client.predictions.create(version=model.split(":", 1)[1], input=payload)
            else:
                prediction = client.predictions.create(model=model, input=payload)
            prediction.wait()
            if prediction.status == "failed":
                raise RuntimeError(f"Replicate prediction failed: {prediction.error}")
            predict_time = (prediction.metrics or {}).get("predict_time", 0.0)
        except Exception as exc:
            log.error("Replicate error [%s] after %.1fs: %s", operation, time.time() - t0, exc)
            raise GenerationError(_friendly_error(self.provider, exc), operation) from exc

        log.info(
            "Replicate [%s]: model=%s  predict=%.1fs  total=%.1fs",
            operation, model, predict_time, time.time() - t0,
        )
        return prediction.output

    async def _predict(self, operation: str, model: str, payload: Dict) -> Any:
        return await asyncio.to_thread(self._run_replicate, operation, model, payload)

    def _pinned(self, operation: str, model: str) -> str:
        """``owner/name:version`` for community models, which need an explicit version."""
        if ":" in model:
            return model
        token = self._require_key(operation)

        import replicate as rep

        try:
            version = rep.Client(api_token=token).models.get(model).latest_version
        except Exception as exc:
            log.error("Replicate version lookup failed for %s: %s", model, exc)
            raise GenerationError(_friendly_error(self.provider, exc), operation) from exc
        if version is None:
            raise GenerationError(f"No published version of {model}.", operation)
        return f"{model}:{version.id}"

    @staticmethod
    def _output_url(operation: str, raw_output: Any) -> str:
        # Normalise output to URL string
        if isinstance(raw_output, list):
            raw = raw_output[0] if raw_output else None
        else:
            raw = raw_output
        if raw is None:
            raise GenerationError("Replicate returned no image.", operation)
        return getattr(raw, "url", None) or str(raw)

    @staticmethod
    def _output_text(raw_output: Any) -> str:
        if isinstance(raw_output, list):
            return "".join(str(chunk) for chunk in raw_output)
        return str(raw_output or "")

    async def _vision(self, operation: str, prompt: str, images: List[str]) -> str:
        payload = {
            "prompt": prompt,
            "system_prompt": prompts.VISION_SYSTEM_PROMPT,
            "image_input": images,
            "temperature": 0.2,
            "max_completion_tokens": 3000,
        }
        raw = await self._predict(operation, self.config.replicate_vision_model, payload)
        text = self._output_text(raw).strip()
        if not text:
            raise GenerationError("Vision model returned an empty answer.", operation)
        return text

    async def _vision_json(self, operation: str, prompt: str, images: List[str]) -> Any:
        text = await self._vision(operation, prompt, images)
        try:
            return parse_json_response(text)
        except ValueError as exc:
            log.debug("Unparseable %s response: %.500s", operation, text)
            raise GenerationError("The model returned an invalid JSON response. Please retry.", operation) from exc

    async def remove_watermark(self, image: ImageUpload) -> str:
        try:
            mask = await asyncio.to_thread(storage.corner_mask, image.data)
        except (OSError, ValueError) as exc:
            raise GenerationError(f"Could not read image {image.filename}: {exc}", "remove_watermark") from exc
        payload = {
            "image": image.to_data_uri(),
            "mask": ImageUpload("mask.png", mask, "image/png").to_data_uri(),
            "prompt": prompts.WATERMARK_REMOVAL_PROMPT,
            "guidance": INPAINT_GUIDANCE,
            "output_format": "jpg",
        }
        raw = await self._predict("remove_watermark", self.config.replicate_inpaint_model, payload)
        return self._output_url("remove_watermark", raw)

    async def detect_watermark(self, image: ImageUpload) -> WatermarkReport:
        data = await self._vision_json(
            "detect_watermark", prompts.WATERMARK_DETECTION_PROMPT, [image.to_data_uri()]
        )
        if not isinstance(data, dict):
            raise GenerationError("Watermark check returned an unexpected shape.", "detect_watermark")
        return WatermarkReport.from_dict(data)

    async def analyze_images(self, images: List[ImageUpload]) -> AnalysisResult:
        if not images:
            raise GenerationError("No images to analyze.", "analyze_images")
        data = await self._vision_json(
            "analyze_images",
            prompts.analysis_prompt(len(images)),
            [img.to_data_uri() for img in images],
        )
        try:
            return parse_analysis(data)
        except ValueError as exc:
            raise GenerationError(f"Analysis result is incomplete: {exc}", "analyze_images") from exc

    async def analyze_for_knowledge_base(self, image: ImageUpload) -> KnowledgeBaseAnalysis:
        text = await self._vision(
            "analyze_for_knowledge_base", prompts.IMAGE_UNDERSTANDING_PROMPT, [image.to_data_uri()]
        )
        return fragments_from_understanding(text)

    async def generate_master_image(
        self, images: List[str], consistent_prompt: str, variable_prompt: str
    ) -> str:
        payload: Dict[str, Any] = {
            "prompt": prompts.master_prompt(consistent_prompt, variable_prompt),
            "aspect_ratio": "3:4",
            "output_format": "jpg",
        }
        if images:
            payload["image_input"] = list(images)
        raw = await self._predict("generate_master_image", self.config.replicate_image_model, payload)
        return self._output_url("generate_master_image", raw)

    async def modify_master_image(
        self,
        images: List[str],
        master: str,
        consistent_prompt: str,
        variable_prompt: str,
        instruction: str,
    ) -> str:
        payload = {
            "prompt": prompts.modify_prompt(
                consistent_prompt, variable_prompt, extract_ai_instructions(instruction)
            ),
            "image_input": [master],
            "aspect_ratio": "match_input_image",
            "output_format": "jpg",
            "prompt_strength": parse_strength(instruction, MODIFY_STRENGTH),
        }
        raw = await self._predict("modify_master_image", self.config.replicate_image_model, payload)
        return self._output_url("modify_master_image", raw)

    async def generate_single_from_master(
        self,
        images: List[str],
        master: str,
        consistent_prompt: str,
        variable_prompt: str,
        is_regeneration: bool,
        reference_image: Optional[str] = None,
    ) -> str:
        prompt = prompts.series_prompt(consistent_prompt, variable_prompt, is_regeneration)
        inputs = [master]
        if reference_image:
            inputs.append(reference_image)
            prompt += prompts.fusion_note()
        payload = {
            "prompt": prompt,
            "image_input": inputs,
            "aspect_ratio": "match_input_image",
            "output_format": "jpg",
            "prompt_strength": SERIES_STRENGTH,
        }
        raw = await self._predict("generate_single_from_master", self.config.replicate_image_model, payload)
        return self._output_url("generate_single_from_master", raw)

    async def upscale_image(self, artifact: str, scale: int = 2, face_enhance: bool = False) -> str:
        model = await asyncio.to_thread(self._pinned, "upscale_image", self.config.replicate_upscale_model)
        payload = {"image": artifact, "scale": scale, "face_enhance": face_enhance}
        raw = await self._predict("upscale_image", model, payload)
        return self._output_url("upscale_image", raw)


def build_client(config: StudioConfig, api_key: Optional[str] = None) -> GenerationClient:
    """Construct the client for ``config.provider``; *api_key* overrides the configured key."""
    key = api_key if api_key is not None else config.api_key
    if config.provider == "replicate":
        return ReplicateClient(key, config)
    return GeminiClient(key, config)
