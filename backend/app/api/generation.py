"""Generation and settings API router."""
import logging
from typing import Any

from fastapi import APIRouter, Body, Depends, HTTPException, Request
from pydantic import ValidationError

from app.core.errors import (
    ConfigError,
    GenerationError,
    GenerationInProgressError,
    MissingReferenceError,
    ServiceError,
    UnrecognizedFormatError,
    UnsupportedFormatError,
)
from app.models.api import GenerateRequest, MessageGenerateRequest, MessageGenerateResponse
from app.models.generation import GenerationResult
from app.services.generation import GenerationGuard, ImageGenerationService
from app.services.media import LocalMediaSink
from app.services.settings_store import LAST_GENERATED_KEY, JsonSettingsStore

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api", tags=["generation"])

API_KEY_MASK = "********"

ERROR_STATUS: dict[type[GenerationError], int] = {
    ConfigError: 400,
    MissingReferenceError: 422,
    GenerationInProgressError: 409,
    ServiceError: 502,
    UnrecognizedFormatError: 502,
    UnsupportedFormatError: 502,
}


def _state(request: Request, name: str) -> Any:
    value = getattr(request.app.state, name, None)
    if value is None:
        raise HTTPException(status_code=503, detail="Generation service not initialized.")
    return value


def get_generation_service(request: Request) -> ImageGenerationService:
    """FastAPI dependency: ImageGenerationService from app.state (503 if missing)."""
    return _state(request, "generation_service")


def get_settings_store(request: Request) -> JsonSettingsStore:
    return _state(request, "settings_store")


def get_media_sink(request: Request) -> LocalMediaSink:
    return _state(request, "media_sink")


def get_guard(request: Request) -> GenerationGuard:
    return _state(request, "generation_guard")


def _to_http_error(exc: GenerationError) -> HTTPException:
    status = next(
        (code for cls, code in ERROR_STATUS.items() if isinstance(exc, cls)), 500
    )
    logger.error(
        "Generation failed: %s",
        exc.message,
        extra={"service": "GenerationRouter", "error_type": type(exc).__name__},
    )
    return HTTPException(status_code=status, detail=exc.message)


def _public_settings(store: JsonSettingsStore) -> dict[str, Any]:
    data = store.load().model_dump(by_alias=True, mode="json")
    if data.get("apiKey"):
        data["apiKey"] = API_KEY_MASK
    last = store.last_generated()
    data[LAST_GENERATED_KEY] = last.model_dump(by_alias=True) if last else None
    return data


@router.get("/settings")
async def get_settings_record(
    store: JsonSettingsStore = Depends(get_settings_store),
) -> dict[str, Any]:
    """Current generation settings (API key masked) plus the last-generated audit."""
    return _public_settings(store)


@router.put("/settings")
async def update_settings_record(
    updates: dict[str, Any] = Body(...),
    store: JsonSettingsStore = Depends(get_settings_store),
) -> dict[str, Any]:
    """Apply a partial settings update and schedule a debounced save.

    Keys may use either camelCase aliases or snake_case field names. A masked
    API key sent back unchanged is ignored.
    """
    updates = {
        key: value
        for key, value in updates.items()
        if key != LAST_GENERATED_KEY
        and not (key in ("apiKey", "api_key") and value == API_KEY_MASK)
    }
    try:
        config = store.load().with_changes(**updates)
    except ValidationError as exc:
        raise HTTPException(
            status_code=422,
            detail=exc.errors(include_url=False, include_context=False),
        ) from exc
    store.save(config)
    return _public_settings(store)


@router.post("/generate", response_model=GenerationResult)
async def quick_generate(
    body: GenerateRequest,
    service: ImageGenerationService = Depends(get_generation_service),
    store: JsonSettingsStore = Depends(get_settings_store),
) -> GenerationResult:
    """Generate an image from a free-form prompt.

    Raises:
        HTTPException 400: Endpoint not configured.
        HTTPException 422: Avatar reference required but not found.
        HTTPException 502: Backend error or unreadable backend response.
    """
    prompt = body.prompt.strip()
    if not prompt:
        raise HTTPException(status_code=422, detail="Please enter a prompt first.")
    try:
        return await service.generate(
            prompt, store.load(), body.messages, body.character
        )
    except GenerationError as exc:
        raise _to_http_error(exc) from exc


@router.post("/messages/{message_id}/generate", response_model=MessageGenerateResponse)
async def generate_for_message(
    message_id: str,
    body: MessageGenerateRequest,
    service: ImageGenerationService = Depends(get_generation_service),
    store: JsonSettingsStore = Depends(get_settings_store),
    media_sink: LocalMediaSink = Depends(get_media_sink),
    guard: GenerationGuard = Depends(get_guard),
) -> MessageGenerateResponse:
    """Generate an image from a chat message and save it as an attachment.

    Only one generation per message runs at a time; a second request for the
    same message while the first is running gets HTTP 409.
    """
    if not body.text:
        raise HTTPException(status_code=400, detail="No message content to generate from.")
    try:
        with guard.hold(message_id):
            result = await service.generate(
                body.text, store.load(), body.messages, body.character
            )
    except GenerationError as exc:
        raise _to_http_error(exc) from exc

    attachment = media_sink.save(result, source_text=body.text)
    logger.info(
        "Image generated for message %s%s",
        message_id,
        " with avatar reference" if result.with_avatar else "",
    )
    return MessageGenerateResponse(result=result, attachment=attachment)
