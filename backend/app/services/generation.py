"""Image generation orchestration: avatar -> prompt -> request -> one HTTP call -> result."""
import logging
import random
import time
from contextlib import contextmanager
from typing import TYPE_CHECKING, Iterator, Mapping, Optional, Sequence

import httpx

from app.core.errors import GenerationInProgressError, MissingReferenceError, ServiceError
from app.models.generation import (
    CharacterRef,
    ContextMessage,
    GenerationConfig,
    GenerationResult,
    LastGenerated,
    PreparedRequest,
    ReferenceImage,
)
from app.services.prompt import build_prompt
from app.services.request import build_request, validate_endpoint
from app.services.response import FetchedImage, normalize_response

if TYPE_CHECKING:
    from app.services.avatar import AvatarSource
    from app.services.settings_store import JsonSettingsStore

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT_SECONDS = 120.0


class GenerationGuard:
    """Tracks in-flight generations so one UI control cannot start two at once."""

    def __init__(self) -> None:
        self._active: set[str] = set()

    def is_busy(self, key: str) -> bool:
        return key in self._active

    @contextmanager
    def hold(self, key: str) -> Iterator[None]:
        """Mark ``key`` busy for the duration of the block.

        Raises:
            GenerationInProgressError: ``key`` is already held.
        """
        if key in self._active:
            raise GenerationInProgressError(key)
        self._active.add(key)
        try:
            yield
        finally:
            self._active.discard(key)


class ImageGenerationService:
    """Runs one generation call against the configured backend.

    The service holds no per-call state: each ``generate`` receives its own
    GenerationConfig snapshot, so independent calls may run concurrently on the
    shared HTTP client. Every failure propagates as a GenerationError subclass,
    and nothing is persisted unless the call succeeds.
    """

    def __init__(
        self,
        http_client: httpx.AsyncClient,
        avatar_source: "AvatarSource",
        settings_store: Optional["JsonSettingsStore"] = None,
        default_headers: Optional[Mapping[str, str]] = None,
        timeout: float = DEFAULT_TIMEOUT_SECONDS,
        rng: Optional[random.Random] = None,
    ) -> None:
        self.http_client = http_client
        self.avatar_source = avatar_source
        self.settings_store = settings_store
        self.default_headers = dict(default_headers or {})
        self.timeout = timeout
        self.rng = rng

    async def generate(
        self,
        user_prompt: str,
        config: GenerationConfig,
        recent_messages: Sequence[ContextMessage] = (),
        character: Optional[CharacterRef] = None,
        timeout: Optional[float] = None,
    ) -> GenerationResult:
        """Generate one image for ``user_prompt``.

        Args:
            user_prompt: Raw prompt text.
            config: Config snapshot for this call.
            recent_messages: Chat turns, oldest first, offered as context.
            character: Character whose avatar is used when avatar reference is on.
            timeout: Seconds allowed for each network call; defaults to the
                service timeout.

        Returns:
            GenerationResult for the image.

        Raises:
            ConfigError: Endpoint missing or not HTTP(S).
            MissingReferenceError: Avatar reference on but no avatar available.
            ServiceError: Non-2xx answer, timeout or transport failure.
            UnrecognizedFormatError: JSON body without a known image shape.
            UnsupportedFormatError: Body is not JSON, an image, or base64.
        """
        validate_endpoint(config)
        call_timeout = self.timeout if timeout is None else timeout

        reference: Optional[ReferenceImage] = None
        if config.use_avatar_reference:
            reference = await self.avatar_source.fetch(character)
            if reference is None:
                raise MissingReferenceError()

        enhanced_prompt = build_prompt(user_prompt, config, recent_messages)
        logger.debug("Enhanced prompt: %s", enhanced_prompt)

        prepared = build_request(
            config, enhanced_prompt, reference, self.default_headers, self.rng
        )
        logger.info(
            "Sending %s request to %s",
            config.request_format.value,
            prepared.url,
            extra={"with_avatar": reference is not None},
        )
        response = await self._send(prepared, call_timeout)

        async def fetch_hosted(url: str) -> FetchedImage:
            return await self._fetch_hosted_image(url, call_timeout)

        result = await normalize_response(
            response.status_code,
            response.headers.get("content-type", ""),
            response.content,
            fetch_hosted,
            prompt=enhanced_prompt,
            with_avatar=reference is not None,
        )
        self._record_audit(user_prompt, result)
        return result

    async def _send(self, prepared: PreparedRequest, timeout: float) -> httpx.Response:
        kwargs: dict = {"headers": prepared.headers, "timeout": timeout}
        if prepared.is_multipart:
            kwargs["files"] = _multipart_parts(prepared)
        else:
            kwargs["json"] = prepared.json_body
        try:
            return await self.http_client.request(prepared.method, prepared.url, **kwargs)
        except httpx.TimeoutException as exc:
            raise ServiceError(0, f"Request timed out after {timeout:g}s") from exc
        except httpx.HTTPError as exc:
            raise ServiceError(0, f"Request failed: {exc}") from exc

    async def _fetch_hosted_image(self, url: str, timeout: float) -> FetchedImage:
        try:
            response = await self.http_client.get(url, timeout=timeout)
        except httpx.TimeoutException as exc:
            raise ServiceError(0, f"Hosted image fetch timed out after {timeout:g}s") from exc
        except httpx.HTTPError as exc:
            raise ServiceError(0, f"Hosted image fetch failed: {exc}") from exc
        if not response.is_success:
            raise ServiceError(
                response.status_code,
                f"Failed to fetch generated image: {response.status_code}",
            )
        return FetchedImage(
            content=response.content,
            content_type=response.headers.get("content-type", ""),
        )

    def _record_audit(self, user_prompt: str, result: GenerationResult) -> None:
        """Hand the audit record to the store; its write is debounced and not awaited."""
        if self.settings_store is None:
            return
        self.settings_store.record_last_generated(
            LastGenerated(
                timestamp=int(time.time() * 1000),
                prompt=user_prompt,
                with_avatar=result.with_avatar,
                image_size=len(result.image_data),
            )
        )
        logger.debug("Scheduled last-generated audit write")


def _multipart_parts(prepared: PreparedRequest) -> list[tuple[str, tuple]]:
    # Plain fields go in as file parts without a filename so the body is always
    # multipart/form-data, even when no reference image is attached.
    parts: list[tuple[str, tuple]] = [
        (name, (None, value)) for name, value in (prepared.form_fields or {}).items()
    ]
    for name, (filename, content, mime_type) in (prepared.files or {}).items():
        parts.append((name, (filename, content, mime_type)))
    return parts
