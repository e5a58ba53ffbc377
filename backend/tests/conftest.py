"""Shared test fixtures and configuration."""
from pathlib import Path

import pytest

from app.core.config import get_settings
from app.models.generation import GenerationConfig, ReferenceImage

# PNG signature plus filler; never decoded as an image.
PNG_BYTES = b"\x89PNG\r\n\x1a\n fake image body"


@pytest.fixture(autouse=True)
def isolated_settings(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    """Point settings/media storage at a per-test directory."""
    monkeypatch.setenv("IMAGE_BRIDGE_SETTINGS_PATH", str(tmp_path / "settings.json"))
    monkeypatch.setenv("IMAGE_BRIDGE_MEDIA_DIR", str(tmp_path / "media"))
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


@pytest.fixture
def plain_config() -> GenerationConfig:
    """JSON config with every prompt modifier switched off and no avatar."""
    return GenerationConfig(
        endpoint_url="https://gen.example.com/v1/generate",
        use_avatar_reference=False,
        quality="draft",
        style="none",
        request_format="json",
        seed=42,
    )


@pytest.fixture
def reference_image() -> ReferenceImage:
    return ReferenceImage(
        mime_type="image/png",
        data=PNG_BYTES,
        filename="hana.png",
        name="Hana",
    )
