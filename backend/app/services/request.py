"""Provider-agnostic request assembly: auth headers, body encoding, seed substitution."""
import logging
import random
from typing import Any, Mapping, Optional

from app.core.errors import ConfigError, MissingReferenceError
from app.models.generation import (
    GenerationConfig,
    PreparedRequest,
    ReferenceImage,
    RequestFormat,
    ServiceType,
)

logger = logging.getLogger(__name__)

RANDOM_SEED = -1
SEED_UPPER_BOUND = 1_000_000

DEFAULT_PROMPT_FIELD = "prompt"
DEFAULT_AVATAR_FIELD = "reference_image"
DEFAULT_AVATAR_FILENAME = "avatar.png"


# ---------------------------------------------------------------------------
# Auth header strategies
# ---------------------------------------------------------------------------


class AuthStrategy:
    """Builds the auth headers for one backend family."""

    def headers(self, api_key: str) -> dict[str, str]:
        raise NotImplementedError


class BearerAuth(AuthStrategy):
    def headers(self, api_key: str) -> dict[str, str]:
        return {"Authorization": f"Bearer {api_key}"}


class TokenAuth(AuthStrategy):
    def headers(self, api_key: str) -> dict[str, str]:
        return {"Authorization": f"Token {api_key}"}


class StabilityAuth(AuthStrategy):
    """Bearer token plus an explicit PNG accept header."""

    def headers(self, api_key: str) -> dict[str, str]:
        return {"Authorization": f"Bearer {api_key}", "Accept": "image/png"}


class GenericKeyAuth(AuthStrategy):
    """Send the key under every header name common proxies look for."""

    def headers(self, api_key: str) -> dict[str, str]:
        return {
            "X-API-Key": api_key,
            "Authorization": f"Bearer {api_key}",
            "api-key": api_key,
        }


AUTH_STRATEGIES: dict[ServiceType, AuthStrategy] = {
    ServiceType.openai: BearerAuth(),
    ServiceType.replicate: TokenAuth(),
    ServiceType.stability: StabilityAuth(),
}
GENERIC_AUTH = GenericKeyAuth()

# Checked in order; the first substring found in the endpoint URL wins.
_URL_MARKERS: tuple[tuple[str, ServiceType], ...] = (
    ("openai", ServiceType.openai),
    ("replicate.com", ServiceType.replicate),
    ("stability.ai", ServiceType.stability),
)


def sniff_service_type(endpoint_url: str) -> Optional[ServiceType]:
    """Guess the backend family from the endpoint URL, or None for a generic proxy."""
    for marker, service_type in _URL_MARKERS:
        if marker in endpoint_url:
            return service_type
    return None


def resolve_auth_strategy(config: GenerationConfig) -> AuthStrategy:
    """Pick the auth strategy for ``config``.

    Explicit service types map directly. ``custom`` endpoints keep the URL
    heuristic so configs relying on it behave exactly as before.
    """
    service_type: Optional[ServiceType] = config.service_type
    if service_type is ServiceType.custom:
        service_type = sniff_service_type(config.endpoint_url)
    if service_type is None:
        return GENERIC_AUTH
    return AUTH_STRATEGIES.get(service_type, GENERIC_AUTH)


def build_headers(
    config: GenerationConfig, default_headers: Optional[Mapping[str, str]] = None
) -> dict[str, str]:
    """Auth headers (only when an API key is set), then host defaults on top."""
    headers: dict[str, str] = {}
    if config.api_key:
        headers.update(resolve_auth_strategy(config).headers(config.api_key))
    if default_headers:
        headers.update(default_headers)
    return headers


# ---------------------------------------------------------------------------
# Body encoding
# ---------------------------------------------------------------------------


def resolve_seed(configured: int, rng: Optional[random.Random] = None) -> int:
    """Return the seed to put on the wire; -1 draws a fresh one in [0, 1_000_000)."""
    if configured == RANDOM_SEED:
        return (rng or random).randrange(SEED_UPPER_BOUND)
    return configured


def _form_number(value: float) -> str:
    # Whole floats are sent without a trailing ".0" (7.0 -> "7", 7.5 -> "7.5").
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    return str(value)


def _multipart_fields(
    config: GenerationConfig,
    prompt: str,
    seed: int,
    reference_image: Optional[ReferenceImage],
) -> tuple[dict[str, str], dict[str, tuple[str, bytes, str]]]:
    fields: dict[str, str] = {
        config.prompt_field_name or DEFAULT_PROMPT_FIELD: prompt,
        "model": config.model,
        "negative_prompt": config.negative_prompt,
        "width": str(config.width),
        "height": str(config.height),
        "guidance_scale": _form_number(config.guidance_scale),
        "seed": str(seed),
        "quality": config.quality,
    }
    if config.system_prompt:
        fields["system_instruction"] = config.system_prompt

    files: dict[str, tuple[str, bytes, str]] = {}
    if reference_image is not None:
        files[config.avatar_field_name or DEFAULT_AVATAR_FIELD] = (
            reference_image.filename or DEFAULT_AVATAR_FILENAME,
            reference_image.data,
            reference_image.mime_type,
        )
        fields["face_strength"] = _form_number(config.face_reference_strength)
        fields["preserve_facial_features"] = "true"
    return fields, files


def _json_payload(
    config: GenerationConfig,
    prompt: str,
    seed: int,
    reference_image: Optional[ReferenceImage],
) -> dict[str, Any]:
    payload: dict[str, Any] = {
        config.prompt_field_name or DEFAULT_PROMPT_FIELD: prompt,
        "model": config.model,
        "negative_prompt": config.negative_prompt,
        "width": int(config.width),
        "height": int(config.height),
        "guidance_scale": float(config.guidance_scale),
        "seed": seed,
        "quality": config.quality,
        "style": config.style,
    }
    if reference_image is not None:
        payload[config.avatar_field_name or DEFAULT_AVATAR_FIELD] = reference_image.data_uri
        payload["face_strength"] = float(config.face_reference_strength)
        payload["preserve_facial_features"] = True
        payload["reference_mode"] = "exact_face"
    if config.system_prompt:
        payload["system_instruction"] = config.system_prompt
    return payload


def validate_endpoint(config: GenerationConfig) -> None:
    """Raise ConfigError unless the endpoint looks like an HTTP(S) URL."""
    if not config.endpoint_url or not config.endpoint_url.startswith("http"):
        raise ConfigError()


def build_request(
    config: GenerationConfig,
    enhanced_prompt: str,
    reference_image: Optional[ReferenceImage],
    default_headers: Optional[Mapping[str, str]] = None,
    rng: Optional[random.Random] = None,
) -> PreparedRequest:
    """Assemble the generation request for ``config``.

    Args:
        config: Generation config snapshot.
        enhanced_prompt: Output of build_prompt().
        reference_image: Avatar to attach, or None.
        default_headers: Host-level headers; they override auth headers on collision.
        rng: Source for the random seed when the configured seed is -1.

    Returns:
        PreparedRequest carrying either a JSON body or multipart fields/files.

    Raises:
        ConfigError: Endpoint URL missing or not HTTP(S).
        MissingReferenceError: Avatar reference enabled but no image supplied.
    """
    validate_endpoint(config)
    if config.use_avatar_reference and reference_image is None:
        raise MissingReferenceError()
    if not config.use_avatar_reference:
        reference_image = None

    headers = build_headers(config, default_headers)
    seed = resolve_seed(config.seed, rng)

    if config.request_format is RequestFormat.multipart:
        fields, files = _multipart_fields(config, enhanced_prompt, seed, reference_image)
        prepared = PreparedRequest(
            url=config.endpoint_url,
            headers=headers,
            form_fields=fields,
            files=files or None,
            sent_seed=seed,
        )
    else:
        prepared = PreparedRequest(
            url=config.endpoint_url,
            headers=headers,
            json_body=_json_payload(config, enhanced_prompt, seed, reference_image),
            sent_seed=seed,
        )

    logger.debug(
        "Prepared %s request to %s (avatar=%s)",
        config.request_format.value,
        config.endpoint_url,
        reference_image is not None,
    )
    return prepared
