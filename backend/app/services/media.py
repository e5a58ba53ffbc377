"""Local media sink: persist generated images and describe them as message attachments."""
import logging
import mimetypes
import time
from pathlib import Path
from typing import Optional

from app.models.generation import GenerationResult, MediaAttachment

logger = logging.getLogger(__name__)

TITLE_MAX_CHARS = 80
_PREFERRED_EXTENSIONS = {"image/jpeg": ".jpg", "image/png": ".png", "image/webp": ".webp"}


def extension_for(mime_type: str) -> str:
    """File extension for an image mime type, ``.png`` when unknown."""
    return (
        _PREFERRED_EXTENSIONS.get(mime_type)
        or mimetypes.guess_extension(mime_type)
        or ".png"
    )


class LocalMediaSink:
    """Writes images under ``media_dir`` and serves them from ``url_prefix``."""

    def __init__(self, media_dir: Path, url_prefix: str = "/media") -> None:
        self.media_dir = Path(media_dir)
        self.url_prefix = url_prefix.rstrip("/")

    def save(
        self, result: GenerationResult, source_text: Optional[str] = None
    ) -> MediaAttachment:
        """Save ``result`` to disk and build the attachment record.

        File name format: nano_{epoch_ms}{ext}

        Args:
            result: Successful generation.
            source_text: Text the image was generated from; used for the title.
                Defaults to the enhanced prompt.

        Returns:
            MediaAttachment pointing at the saved file's URL path.
        """
        self.media_dir.mkdir(parents=True, exist_ok=True)
        filename = f"nano_{int(time.time() * 1000)}{extension_for(result.mime_type)}"
        file_path = self.media_dir / filename
        file_path.write_bytes(result.image_bytes)
        logger.info("Image saved to %s", file_path)

        title_source = source_text if source_text is not None else result.prompt
        return MediaAttachment(
            url=f"{self.url_prefix}/{filename}",
            title=f"Nano: {title_source[:TITLE_MAX_CHARS]}",
            generated_with="Avatar reference" if result.with_avatar else "No reference",
        )
