"""Tests for provider clients: payload shapes, output handling and error mapping."""

from __future__ import annotations

import json
from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

import prompts
from config import StudioConfig
from conftest import make_upload
from errors import GenerationError
from generation_client import (
    MODIFY_STRENGTH,
    SERIES_STRENGTH,
    GeminiClient,
    ReplicateClient,
    _friendly_error,
    build_client,
)
from models import KnowledgeBaseCategory, SynthesizedAnalysis


@pytest.fixture
def replicate_client() -> ReplicateClient:
    return ReplicateClient("r8-token", StudioConfig(provider="replicate"))


def _prediction(output, status="succeeded", error=None):
    return SimpleNamespace(output=output, status=status, error=error, metrics={"predict_time": 1.2}, wait=MagicMock())


class TestBuildClient:
    """Provider selection and key precedence."""

    def test_provider_selection(self) -> None:
        assert isinstance(build_client(StudioConfig(provider="replicate", replicate_api_token="t")), ReplicateClient)
        assert isinstance(build_client(StudioConfig(gemini_api_key="g")), GeminiClient)

    def test_explicit_key_wins(self) -> None:
        client = build_client(StudioConfig(gemini_api_key="env-key"), api_key="header-key")
        assert client._api_key == "header-key"

    @pytest.mark.asyncio
    async def test_missing_key_is_a_generation_error(self) -> None:
        client = ReplicateClient("", StudioConfig(provider="replicate"))
        assert client.has_api_key is False
        with pytest.raises(GenerationError) as info:
            await client.generate_master_image([], "c", "v")
        assert info.value.operation == "generate_master_image"


class TestFriendlyErrors:
    """Provider exceptions become short user-facing messages."""

    def test_mapping(self) -> None:
        assert "invalid or expired" in _friendly_error("Gemini", Exception("401 Unauthorized"))
        assert "quota" in _friendly_error("Gemini", Exception("Quota exceeded"))
        assert "rate limit" in _friendly_error("Replicate", Exception("429 Too Many Requests"))
        assert "safety filter" in _friendly_error("Replicate", Exception("NSFW content detected"))
        assert _friendly_error("Replicate", Exception("boom")) == "Replicate request failed: boom"


class TestReplicateRun:
    """The blocking prediction wrapper."""

    def test_returns_output(self, replicate_client) -> None:
        prediction = _prediction(["https://replicate.delivery/out.jpg"])
        with patch("replicate.Client") as client_cls:
            client_cls.return_value.predictions.create.return_value = prediction
            out = replicate_client._run_replicate("op", "google/nano-banana", {"prompt": "x"})
        client_cls.assert_called_once_with(api_token="r8-token")
        prediction.wait.assert_called_once()
        assert out == ["https://replicate.delivery/out.jpg"]

    def test_failed_prediction(self, replicate_client) -> None:
        with patch("replicate.Client") as client_cls:
            client_cls.return_value.predictions.create.return_value = _prediction(None, "failed", "OOM")
            with pytest.raises(GenerationError) as info:
                replicate_client._run_replicate("op", "m", {})
        assert "OOM" in str(info.value)
        assert info.value.operation == "op"

    def test_output_normalisation(self) -> None:
        file_output = SimpleNamespace(url="https://replicate.delivery/f.jpg")
        assert ReplicateClient._output_url("op", [file_output]) == "https://replicate.delivery/f.jpg"
        assert ReplicateClient._output_url("op", "https://x/y.jpg") == "https://x/y.jpg"
        with pytest.raises(GenerationError):
            ReplicateClient._output_url("op", [])
        assert ReplicateClient._output_text(["{", '"a": 1', "}"]) == '{"a": 1}'


class TestReplicatePayloads:
    """What each operation sends to Replicate."""

    @pytest.mark.asyncio
    async def test_master(self, replicate_client) -> None:
        with patch.object(replicate_client, "_run_replicate", return_value="https://x/m.jpg") as run:
            out = await replicate_client.generate_master_image(["https://x/r1.jpg"], "Consistent", "Shot")
        assert out == "https://x/m.jpg"
        op, model, payload = run.call_args.args
        assert op == "generate_master_image"
        assert model == "google/nano-banana"
        assert payload["image_input"] == ["https://x/r1.jpg"]
        assert payload["aspect_ratio"] == "3:4"
        assert "Consistent" in payload["prompt"] and "Shot" in payload["prompt"]

    @pytest.mark.asyncio
    async def test_modify_reads_strength(self, replicate_client) -> None:
        with patch.object(replicate_client, "_run_replicate", return_value="https://x/m2.jpg") as run:
            await replicate_client.modify_master_image(
                ["https://x/r1.jpg"], "https://x/m.jpg", "C", "V", "[For AI]\nSoften shadows\nstrength: 0.4"
            )
        payload = run.call_args.args[2]
        assert payload["image_input"] == ["https://x/m.jpg"]
        assert payload["prompt_strength"] == pytest.approx(0.4)
        assert "Soften shadows" in payload["prompt"]
        assert "strength: 0.4" not in payload["prompt"]

    @pytest.mark.asyncio
    async def test_modify_default_strength(self, replicate_client) -> None:
        with patch.object(replicate_client, "_run_replicate", return_value="https://x/m2.jpg") as run:
            await replicate_client.modify_master_image([], "https://x/m.jpg", "C", "V", "brighter")
        assert run.call_args.args[2]["prompt_strength"] == MODIFY_STRENGTH

    @pytest.mark.asyncio
    async def test_series_with_unit_reference(self, replicate_client) -> None:
        with patch.object(replicate_client, "_run_replicate", return_value="https://x/s.jpg") as run:
            await replicate_client.generate_single_from_master(
                ["https://x/r1.jpg"], "https://x/m.jpg", "C", "Seated", True, "https://x/unit-ref.jpg"
            )
        payload = run.call_args.args[2]
        assert payload["image_input"] == ["https://x/m.jpg", "https://x/unit-ref.jpg"]
        assert payload["prompt_strength"] == SERIES_STRENGTH
        assert payload["prompt"].endswith(prompts.fusion_note())

    @pytest.mark.asyncio
    async def test_remove_watermark_sends_corner_mask(self, replicate_client) -> None:
        with patch.object(replicate_client, "_run_replicate", return_value=["https://x/clean.jpg"]) as run:
            out = await replicate_client.remove_watermark(make_upload())
        assert out == "https://x/clean.jpg"
        op, model, payload = run.call_args.args
        assert model == "black-forest-labs/flux-fill-dev"
        assert payload["image"].startswith("data:image/png;base64,")
        assert payload["mask"].startswith("data:image/png;base64,")

    @pytest.mark.asyncio
    async def test_remove_watermark_unreadable_image(self, replicate_client) -> None:
        upload = make_upload()
        upload.data = b"not an image"
        with pytest.raises(GenerationError):
            await replicate_client.remove_watermark(upload)

    @pytest.mark.asyncio
    async def test_detect_watermark_parses_vision_json(self, replicate_client) -> None:
        answer = '```json\n{"hasWatermark": true, "subjectDescription": "a dog"}\n```'
        with patch.object(replicate_client, "_run_replicate", return_value=[answer]) as run:
            report = await replicate_client.detect_watermark(make_upload())
        assert report.has_watermark is True
        assert report.subject_description == "a dog"
        assert run.call_args.args[1] == "openai/gpt-4o-mini"

    @pytest.mark.asyncio
    async def test_analyze_images(self, replicate_client) -> None:
        answer = json.dumps({
            "consistent_elements": {"synthesized_definition": {"subject_summary": "Bag"}},
            "inconsistent_elements": [{"subject_ref": "bag", "action_and_pose": "on a chair"}],
        })
        with patch.object(replicate_client, "_run_replicate", return_value=answer):
            result = await replicate_client.analyze_images([make_upload()])
        assert isinstance(result, SynthesizedAnalysis)
        assert result.variable_elements[0].subject_ref == "bag"

    @pytest.mark.asyncio
    async def test_analyze_images_bad_json(self, replicate_client) -> None:
        with patch.object(replicate_client, "_run_replicate", return_value="I cannot help with that"):
            with pytest.raises(GenerationError):
                await replicate_client.analyze_images([make_upload()])

    @pytest.mark.asyncio
    async def test_knowledge_base_analysis_from_sections(self, replicate_client) -> None:
        answer = "Summary line\n[Pose]\nArms folded\n[Lighting]\nRim light"
        with patch.object(replicate_client, "_run_replicate", return_value=answer):
            analysis = await replicate_client.analyze_for_knowledge_base(make_upload())
        assert analysis.fragments[KnowledgeBaseCategory.POSE] == "Arms folded"
        assert analysis.fragments[KnowledgeBaseCategory.LIGHTING] == "Rim light"


class TestUpscale:
    """Real-ESRGAN upscaling on Replicate."""

    def test_version_is_resolved_for_community_models(self, replicate_client) -> None:
        with patch("replicate.Client") as client_cls:
            client_cls.return_value.models.get.return_value = SimpleNamespace(
                latest_version=SimpleNamespace(id="abc123")
            )
            pinned = replicate_client._pinned("upscale_image", "nightmareai/real-esrgan")
        client_cls.return_value.models.get.assert_called_once_with("nightmareai/real-esrgan")
        assert pinned == "nightmareai/real-esrgan:abc123"
        assert replicate_client._pinned("upscale_image", "owner/model:v1") == "owner/model:v1"

    def test_missing_version(self, replicate_client) -> None:
        with patch("replicate.Client") as client_cls:
            client_cls.return_value.models.get.return_value = SimpleNamespace(latest_version=None)
            with pytest.raises(GenerationError) as info:
                replicate_client._pinned("upscale_image", "nightmareai/real-esrgan")
        assert info.value.operation == "upscale_image"

    def test_pinned_model_runs_by_version(self, replicate_client) -> None:
        with patch("replicate.Client") as client_cls:
            client_cls.return_value.predictions.create.return_value = _prediction("https://x/u.png")
            replicate_client._run_replicate("upscale_image", "nightmareai/real-esrgan:abc123", {"scale": 2})
        client_cls.return_value.predictions.create.assert_called_once_with(version="abc123", input={"scale": 2})

    @pytest.mark.asyncio
    async def test_payload(self, replicate_client) -> None:
        with patch.object(replicate_client, "_pinned", return_value="nightmareai/real-esrgan:abc123"), \
                patch.object(replicate_client, "_run_replicate", return_value="https://x/u.png") as run:
            out = await replicate_client.upscale_image("https://x/m.jpg", 4, True)
        assert out == "https://x/u.png"
        op, model, payload = run.call_args.args
        assert op == "upscale_image"
        assert model == "nightmareai/real-esrgan:abc123"
        assert payload == {"image": "https://x/m.jpg", "scale": 4, "face_enhance": True}

    @pytest.mark.asyncio
    async def test_gemini_cannot_upscale(self) -> None:
        with pytest.raises(GenerationError) as info:
            await GeminiClient("g-key", StudioConfig()).upscale_image("https://x/m.jpg")
        assert info.value.operation == "upscale_image"


class TestGemini:
    """Response handling for the google-genai client."""

    @pytest.fixture
    def gemini(self) -> GeminiClient:
        return GeminiClient("g-key", StudioConfig())

    @pytest.mark.asyncio
    async def test_image_from_inline_data(self, gemini) -> None:
        part = SimpleNamespace(inline_data=SimpleNamespace(data=b"\x89PNG", mime_type="image/png"))
        response = SimpleNamespace(candidates=[SimpleNamespace(content=SimpleNamespace(parts=[part]))])
        with patch.object(gemini, "_generate", AsyncMock(return_value=response)) as generate:
            out = await gemini.generate_master_image([], "C", "V")
        assert out.startswith("data:image/png;base64,")
        assert generate.await_args.args[1] == "gemini-2.5-flash-image"

    @pytest.mark.asyncio
    async def test_no_image_is_an_error(self, gemini) -> None:
        response = SimpleNamespace(candidates=[SimpleNamespace(content=SimpleNamespace(parts=[]))])
        with patch.object(gemini, "_generate", AsyncMock(return_value=response)):
            with pytest.raises(GenerationError):
                await gemini.remove_watermark(make_upload())

    @pytest.mark.asyncio
    async def test_undecodable_inline_data_is_an_error(self, gemini) -> None:
        part = SimpleNamespace(inline_data=SimpleNamespace(data="abc", mime_type="image/png"))
        response = SimpleNamespace(candidates=[SimpleNamespace(content=SimpleNamespace(parts=[part]))])
        with patch.object(gemini, "_generate", AsyncMock(return_value=response)):
            with pytest.raises(GenerationError) as info:
                await gemini.generate_master_image([], "C", "V")
        assert info.value.operation == "generate_master_image"

    @pytest.mark.asyncio
    async def test_json_watermark_check(self, gemini) -> None:
        response = SimpleNamespace(text='{"hasWatermark": false, "subjectDescription": "shoe"}')
        with patch.object(gemini, "_generate", AsyncMock(return_value=response)) as generate:
            report = await gemini.detect_watermark(make_upload())
        assert report.has_watermark is False
        assert generate.await_args.args[1] == "gemini-2.5-flash"

    @pytest.mark.asyncio
    async def test_unloadable_artifact(self, gemini) -> None:
        with pytest.raises(GenerationError) as info:
            await gemini.generate_master_image(["/no/such/file.png"], "C", "V")
        assert info.value.operation == "load_artifact"

    def test_key_rotation_resets_client(self, gemini) -> None:
        gemini._client = object()
        gemini.update_api_key("other")
        assert gemini._client is None
        assert gemini.has_api_key
