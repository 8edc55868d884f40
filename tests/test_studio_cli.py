"""Tests for the command-line runner."""

from __future__ import annotations

import json
from unittest.mock import MagicMock

import pytest

import studio_cli
import studio_core
from conftest import FakeGenerationClient, png_bytes
from errors import GenerationError


@pytest.fixture
def fake(monkeypatch) -> FakeGenerationClient:
    client = FakeGenerationClient()
    monkeypatch.setattr(studio_core, "build_client", lambda config, api_key=None: client)
    monkeypatch.setenv("STUDIO_PROVIDER", "gemini")
    monkeypatch.setenv("STUDIO_WATERMARK_MODE", "eager")
    monkeypatch.setenv("GEMINI_API_KEY", "test-key")
    return client


@pytest.fixture
def saver(monkeypatch) -> MagicMock:
    save = MagicMock(side_effect=lambda artifact, directory, stem: f"{directory}/{stem}.jpg")
    monkeypatch.setattr(studio_cli.storage, "save_artifact", save)
    return save


@pytest.fixture
def image(tmp_path):
    path = tmp_path / "look.png"
    path.write_bytes(png_bytes())
    return str(path)


class TestConfiguration:
    """Exit code 2 for setup problems."""

    def test_missing_key(self, fake, monkeypatch, image, tmp_path, capsys) -> None:
        monkeypatch.setenv("GEMINI_API_KEY", "")
        assert studio_cli.main(["--image", image, "--output-dir", str(tmp_path)]) == 2
        assert "GEMINI_API_KEY not set" in capsys.readouterr().err

    def test_unreadable_image(self, fake, tmp_path) -> None:
        missing = str(tmp_path / "nope.png")
        assert studio_cli.main(["--image", missing, "--output-dir", str(tmp_path)]) == 2

    def test_image_required(self, fake) -> None:
        with pytest.raises(SystemExit):
            studio_cli.main([])


class TestRun:
    """End-to-end runs over the fake client."""

    def test_analyze_and_batch(self, fake, saver, image, tmp_path, capsys) -> None:
        code = studio_cli.main(["--image", image, "--analyze", "--json", "--output-dir", str(tmp_path)])
        assert code == 0

        out = capsys.readouterr().out
        assert "Pictures: 2/2 generated" in out
        snapshot = json.loads(out[out.index("{"):])
        assert set(snapshot["saved"]) == {"master", "picture_1", "picture_2"}
        stems = [c.args[2] for c in saver.call_args_list]
        assert stems == ["master", "picture_1", "picture_2"]

    def test_shots_replace_units(self, fake, saver, image, tmp_path) -> None:
        code = studio_cli.main([
            "--image", image,
            "--consistent", "Red wool coat",
            "--shot", "Walking", "--shot", "Side profile", "--shot", "Close-up",
            "--output-dir", str(tmp_path),
        ])
        assert code == 0
        assert fake.generate_master_image.await_args.args[1:] == ("Red wool coat", "Walking")
        assert [s["variable"] for s in fake.singles] == ["Walking", "Side profile", "Close-up"]

    def test_skip_batch_with_modify(self, fake, saver, image, tmp_path) -> None:
        code = studio_cli.main([
            "--image", image, "--consistent", "Coat", "--shot", "Walking",
            "--modify", "warmer light", "--skip-batch", "--output-dir", str(tmp_path),
        ])
        assert code == 0
        fake.modify_master_image.assert_awaited_once()
        fake.generate_single_from_master.assert_not_awaited()
        saver.assert_called_once()

    def test_upscaled_master_is_saved(self, fake, saver, image, tmp_path) -> None:
        code = studio_cli.main([
            "--image", image, "--consistent", "Coat", "--shot", "Walking",
            "--upscale", "2", "--skip-batch", "--output-dir", str(tmp_path),
        ])
        assert code == 0
        fake.upscale_image.assert_awaited_once_with("https://img.test/master-1.jpg", 2, False)
        assert [c.args[2] for c in saver.call_args_list] == ["master", "master_upscaled"]
        assert saver.call_args_list[1].args[0] == "https://img.test/upscaled.jpg"

    def test_master_failure(self, fake, saver, image, tmp_path, capsys) -> None:
        fake.generate_master_image.side_effect = GenerationError("quota exceeded", "generate_master_image")
        code = studio_cli.main(["--image", image, "--consistent", "Coat", "--output-dir", str(tmp_path)])
        assert code == 1
        assert "quota exceeded" in capsys.readouterr().err
        saver.assert_not_called()

    def test_nothing_to_generate_from(self, fake, saver, image, tmp_path, capsys) -> None:
        assert studio_cli.main(["--image", image, "--output-dir", str(tmp_path)]) == 1
        fake.generate_master_image.assert_not_awaited()
