"""Character avatar lookup against the host application."""
import logging
from typing import Optional, Protocol
from urllib.parse import quote

import httpx

from app.models.generation import CharacterRef, ReferenceImage

logger = logging.getLogger(__name__)

DEFAULT_AVATAR_MIME = "image/png"


class AvatarSource(Protocol):
    async def fetch(self, character: Optional[CharacterRef]) -> Optional[ReferenceImage]:
        """Return the character's avatar, or None when it cannot be found."""
        ...


class HttpAvatarSource:
    """Fetch avatars from the host's ``/characters/<file>`` route.

    A missing avatar, a non-2xx answer and a transport failure all map to None;
    the caller decides whether that is an error.
    """

    def __init__(self, client: httpx.AsyncClient, base_url: str) -> None:
        self.client = client
        self.base_url = base_url.rstrip("/")

    def avatar_url(self, avatar: str) -> str:
        return f"{self.base_url}/characters/{quote(avatar, safe='')}"

    async def fetch(self, character: Optional[CharacterRef]) -> Optional[ReferenceImage]:
        if character is None or not character.avatar:
            logger.warning("No character avatar found")
            return None

        url = self.avatar_url(character.avatar)
        logger.debug("Fetching avatar from %s", url)
        try:
            response = await self.client.get(url)
        except httpx.HTTPError as exc:
            logger.warning(
                "Error fetching character avatar: %s",
                exc,
                extra={"service": "HttpAvatarSource", "error_type": type(exc).__name__},
            )
            return None

        if not response.is_success:
            logger.warning("Failed to fetch avatar: %d", response.status_code)
            return None

        mime_type = response.headers.get("content-type", "").split(";", 1)[0].strip()
        return ReferenceImage(
            mime_type=mime_type if mime_type.startswith("image/") else DEFAULT_AVATAR_MIME,
            data=response.content,
            filename=character.avatar,
            name=character.name,
        )
