"""Response normalization: classify a backend response and extract one base64 image.

Success bodies come in five shapes:

* JSON with the image inline (``image``, ``artifacts[0].base64`` or any
  ``data:image/...`` string field),
* JSON pointing at hosted files (``data[0].url`` or ``output[0]``), which
  needs one extra GET,
* a raw ``image/*`` body,
* a bare base64 / data-URI text body.

JSON shapes are probed by ``JSON_SHAPE_MATCHERS`` in order, first match wins.
Providers can return bodies satisfying several shapes, so the order is part of
the contract.
"""
import base64
import binascii
import json
import logging
import re
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Mapping, Optional, Union

from app.core.errors import ServiceError, UnrecognizedFormatError, UnsupportedFormatError
from app.models.generation import GenerationResult

logger = logging.getLogger(__name__)

DEFAULT_MIME_TYPE = "image/png"

_DATA_URI_PREFIX = re.compile(r"^data:(image/[\w.+-]+);base64,")


@dataclass(frozen=True)
class InlineImage:
    """Base64 payload found directly in the response."""

    data: str
    mime_type: Optional[str] = None


@dataclass(frozen=True)
class HostedImage:
    """Response only links to the image; it must be fetched."""

    url: str


@dataclass(frozen=True)
class FetchedImage:
    content: bytes
    content_type: str = ""


ShapeMatch = Union[InlineImage, HostedImage]
ShapeMatcher = Callable[[Mapping[str, Any]], Optional[ShapeMatch]]
ImageFetcher = Callable[[str], Awaitable[FetchedImage]]


def strip_data_uri(value: str) -> InlineImage:
    """Split ``data:image/<x>;base64,<payload>`` into payload and mime type.

    Values without the prefix are returned unchanged with no mime type.
    """
    match = _DATA_URI_PREFIX.match(value)
    if match is None:
        return InlineImage(data=value)
    return InlineImage(data=value[match.end():], mime_type=match.group(1))


def _base_mime(content_type: str) -> str:
    return content_type.split(";", 1)[0].strip().lower()


def _first(body: Mapping[str, Any], key: str) -> Any:
    items = body.get(key)
    if isinstance(items, list) and items:
        return items[0]
    return None


# ---------------------------------------------------------------------------
# JSON shape matchers
# ---------------------------------------------------------------------------


def match_inline_image_field(body: Mapping[str, Any]) -> Optional[ShapeMatch]:
    """``{"image": "<base64 or data URI>"}``"""
    value = body.get("image")
    if isinstance(value, str) and value:
        return strip_data_uri(value)
    return None


def match_data_url_list(body: Mapping[str, Any]) -> Optional[ShapeMatch]:
    """``{"data": [{"url": "https://..."}]}`` (OpenAI images API)."""
    first = _first(body, "data")
    if isinstance(first, dict):
        url = first.get("url")
        if isinstance(url, str) and url:
            return HostedImage(url=url)
    return None


def match_output_url_list(body: Mapping[str, Any]) -> Optional[ShapeMatch]:
    """``{"output": ["https://..."]}`` (Replicate predictions)."""
    first = _first(body, "output")
    if isinstance(first, str) and first:
        return HostedImage(url=first)
    return None


def match_artifacts_base64(body: Mapping[str, Any]) -> Optional[ShapeMatch]:
    """``{"artifacts": [{"base64": "..."}]}`` (Stability AI)."""
    first = _first(body, "artifacts")
    if isinstance(first, dict):
        value = first.get("base64")
        if isinstance(value, str) and value:
            return InlineImage(data=value)
    return None


def match_any_data_uri_field(body: Mapping[str, Any]) -> Optional[ShapeMatch]:
    """First top-level string field holding a ``data:image/`` URI.

    Keys are scanned in the order the server serialized them; json.loads keeps
    that order, but a different server library version may change it.
    """
    for value in body.values():
        if isinstance(value, str) and value.startswith("data:image/"):
            return strip_data_uri(value)
    return None


JSON_SHAPE_MATCHERS: tuple[ShapeMatcher, ...] = (
    match_inline_image_field,
    match_data_url_list,
    match_output_url_list,
    match_artifacts_base64,
    match_any_data_uri_field,
)


def classify_json_body(body: Any) -> ShapeMatch:
    """Run the matchers in priority order over a decoded JSON body."""
    if isinstance(body, dict):
        for matcher in JSON_SHAPE_MATCHERS:
            found = matcher(body)
            if found is not None:
                logger.debug("JSON response matched %s", matcher.__name__)
                return found
    raise UnrecognizedFormatError()


# ---------------------------------------------------------------------------
# Errors
# ---------------------------------------------------------------------------


def extract_error_message(status: int, body: bytes) -> str:
    """Human-readable message for a failed response.

    Looks at ``error.message``, ``detail`` and ``message`` in that order, and
    falls back to ``Service error: <status>``.
    """
    fallback = f"Service error: {status}"
    try:
        parsed = json.loads(body.decode("utf-8", errors="replace"))
    except ValueError:
        return fallback
    if not isinstance(parsed, dict):
        return fallback

    error = parsed.get("error")
    if isinstance(error, dict) and error.get("message"):
        return str(error["message"])
    for key in ("detail", "message"):
        if parsed.get(key):
            return str(parsed[key])
    return fallback


# ---------------------------------------------------------------------------
# Normalizer
# ---------------------------------------------------------------------------


async def _resolve(match: ShapeMatch, fetch_bytes: Optional[ImageFetcher]) -> InlineImage:
    if isinstance(match, InlineImage):
        return match
    if fetch_bytes is None:
        raise UnrecognizedFormatError("Response links to a hosted image but no fetcher was given")
    logger.debug("Fetching hosted image %s", match.url)
    fetched = await fetch_bytes(match.url)
    mime = _base_mime(fetched.content_type)
    return InlineImage(
        data=base64.b64encode(fetched.content).decode("ascii"),
        mime_type=mime if mime.startswith("image/") else None,
    )


def clean_base64(data: str) -> Optional[str]:
    """Canonical form of a base64 payload, or None when it does not decode.

    Line breaks and other ASCII whitespace are dropped and missing ``=`` padding
    is restored, so MIME-wrapped and unpadded payloads are accepted.
    """
    compact = "".join(data.split())
    if not compact:
        return None
    padded = compact + "=" * (-len(compact) % 4)
    try:
        base64.b64decode(padded, validate=True)
    except (binascii.Error, ValueError):
        return None
    return padded


def _decode_text_body(content_type: str, body: bytes) -> InlineImage:
    text = body.decode("utf-8", errors="replace").strip()
    image = strip_data_uri(text) if text.startswith("data:image/") else InlineImage(data=text)
    data = clean_base64(image.data)
    if data is None:
        raise UnsupportedFormatError(content_type)
    return InlineImage(data=data, mime_type=image.mime_type)


async def normalize_response(
    status: int,
    content_type: str,
    body: bytes,
    fetch_bytes: Optional[ImageFetcher] = None,
    *,
    prompt: str = "",
    with_avatar: bool = False,
) -> GenerationResult:
    """Turn a raw backend response into a GenerationResult.

    Args:
        status: HTTP status code.
        content_type: Value of the Content-Type header ("" when absent).
        body: Raw response body.
        fetch_bytes: Coroutine used to download hosted-URL responses.
        prompt: Enhanced prompt that produced this response.
        with_avatar: Whether a reference image was sent.

    Returns:
        GenerationResult with a non-empty base64 payload. The mime type is the one
        the response declared when known, otherwise image/png.

    Raises:
        ServiceError: Non-2xx status.
        UnrecognizedFormatError: JSON success body with no known image shape, or
            whose image payload is not valid base64.
        UnsupportedFormatError: Body is neither JSON, an image, nor base64 text.
    """
    if not 200 <= status < 300:
        raise ServiceError(status, extract_error_message(status, body))

    content_type = content_type or ""
    lowered = content_type.lower()

    if "application/json" in lowered:
        try:
            parsed = json.loads(body)
        except ValueError as exc:
            raise UnrecognizedFormatError() from exc
        image = await _resolve(classify_json_body(parsed), fetch_bytes)
        data = clean_base64(image.data)
        if data is None:
            raise UnrecognizedFormatError("Image data in JSON response is not valid base64")
        image = InlineImage(data=data, mime_type=image.mime_type)
    elif "image/" in lowered:
        if not body:
            raise UnsupportedFormatError(content_type)
        image = InlineImage(
            data=base64.b64encode(body).decode("ascii"),
            mime_type=_base_mime(content_type),
        )
    else:
        image = _decode_text_body(content_type, body)

    return GenerationResult(
        image_data=image.data,
        mime_type=image.mime_type or DEFAULT_MIME_TYPE,
        prompt=prompt,
        with_avatar=with_avatar,
    )
