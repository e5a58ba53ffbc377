"""Tests for LocalMediaSink."""
import base64
from pathlib import Path

from app.models.generation import GenerationResult
from app.services.media import LocalMediaSink, extension_for

IMAGE = b"\x89PNG\r\n\x1a\nbody"


def _result(**kwargs: object) -> GenerationResult:
    data: dict = {
        "image_data": base64.b64encode(IMAGE).decode(),
        "prompt": "a cat, masterpiece",
        "with_avatar": False,
    }
    data.update(kwargs)
    return GenerationResult(**data)


class TestLocalMediaSink:
    def test_writes_file_and_returns_attachment(self, tmp_path: Path) -> None:
        sink = LocalMediaSink(tmp_path / "media")
        attachment = sink.save(_result(), source_text="a cat")

        assert attachment.url.startswith("/media/nano_")
        assert attachment.url.endswith(".png")
        saved = tmp_path / "media" / Path(attachment.url).name
        assert saved.read_bytes() == IMAGE
        assert attachment.type == "image"
        assert attachment.source == "generated"
        assert attachment.title == "Nano: a cat"
        assert attachment.generated_with == "No reference"

    def test_title_truncated_to_80_chars(self, tmp_path: Path) -> None:
        attachment = LocalMediaSink(tmp_path).save(_result(), source_text="x" * 200)
        assert attachment.title == "Nano: " + "x" * 80

    def test_title_defaults_to_prompt(self, tmp_path: Path) -> None:
        attachment = LocalMediaSink(tmp_path).save(_result())
        assert attachment.title == "Nano: a cat, masterpiece"

    def test_avatar_reference_label(self, tmp_path: Path) -> None:
        attachment = LocalMediaSink(tmp_path).save(_result(with_avatar=True))
        assert attachment.generated_with == "Avatar reference"

    def test_jpeg_extension(self, tmp_path: Path) -> None:
        attachment = LocalMediaSink(tmp_path).save(_result(mime_type="image/jpeg"))
        assert attachment.url.endswith(".jpg")


def test_extension_for_unknown_mime() -> None:
    assert extension_for("image/x-unknown-format") == ".png"
    assert extension_for("image/webp") == ".webp"
