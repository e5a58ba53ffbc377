"""Generation config, reference image and result data models."""
import base64
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from pydantic.alias_generators import to_camel

DEFAULT_SYSTEM_PROMPT = (
    "You are Nano Banana Pro image generator. Generate high-quality images based on "
    "the prompt and reference images. When character avatar is provided, use it as "
    "exact facial reference maintaining all facial features, eye color, skin tone, "
    "and unique characteristics."
)

MIN_CONTEXT_DEPTH = 1
MAX_CONTEXT_DEPTH = 10


class ServiceType(str, Enum):
    """Backend family; selects the auth header strategy."""

    custom = "custom"
    replicate = "replicate"
    openai = "openai"
    stability = "stability"


class RequestFormat(str, Enum):
    """Wire encoding of the generation request body."""

    multipart = "multipart"
    json = "json"


class Quality(str, Enum):
    """Known quality presets. Any other string is accepted and adds no modifiers."""

    draft = "draft"
    standard = "standard"
    premium = "premium"


class GenerationConfig(BaseModel):
    """Immutable snapshot of the generation options used for one call.

    Stored under camelCase keys (``endpointUrl``, ``useAvatarReference``...) so the
    settings record written by the host extension loads unchanged.
    """

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        frozen=True,
        extra="ignore",
    )

    service_type: ServiceType = ServiceType.custom
    endpoint_url: str = "https://your-service.com/nano-banana/generate"
    api_key: str = ""

    use_avatar_reference: bool = True
    face_reference_strength: float = Field(0.85, ge=0.0, le=1.0)
    use_character_context: bool = False
    message_context_depth: int = 2

    model: str = "nano-banana-pro"
    quality: str = Quality.premium.value
    style: str = "realistic"
    negative_prompt: str = "low quality, blurry, deformed"
    width: int = Field(1024, gt=0)
    height: int = Field(1024, gt=0)
    guidance_scale: float = 7.5
    seed: int = -1

    system_prompt: str = DEFAULT_SYSTEM_PROMPT

    request_format: RequestFormat = RequestFormat.multipart
    avatar_field_name: str = "reference_image"
    prompt_field_name: str = "prompt"

    @field_validator("message_context_depth", mode="before")
    @classmethod
    def _clamp_context_depth(cls, value: Any) -> int:
        try:
            depth = int(value)
        except (TypeError, ValueError):
            return MIN_CONTEXT_DEPTH
        return max(MIN_CONTEXT_DEPTH, min(MAX_CONTEXT_DEPTH, depth))

    @field_validator("quality", "style", "api_key", "endpoint_url", mode="before")
    @classmethod
    def _none_as_empty(cls, value: Any) -> Any:
        return "" if value is None else value

    def with_changes(self, **updates: Any) -> "GenerationConfig":
        """Return a new validated snapshot with ``updates`` applied.

        Keys may be given either as field names or as their camelCase aliases.
        """
        data = self.model_dump(by_alias=True)
        fields = type(self).model_fields
        for key, value in updates.items():
            field = fields.get(key)
            data[field.alias if field is not None and field.alias else key] = value
        return type(self).model_validate(data)


class ReferenceImage(BaseModel):
    """Character face image sent to the backend as a facial reference."""

    mime_type: str = "image/png"
    data: bytes
    filename: str = "avatar.png"
    name: str = "Character"

    @property
    def base64_data(self) -> str:
        return base64.b64encode(self.data).decode("ascii")

    @property
    def data_uri(self) -> str:
        return f"data:{self.mime_type};base64,{self.base64_data}"


class CharacterRef(BaseModel):
    """Identifies the active character whose avatar is used as face reference."""

    name: str = "Character"
    avatar: Optional[str] = None  # avatar file name as known to the host


class ContextMessage(BaseModel):
    """One chat turn offered as prompt context."""

    sender: str
    text: str = ""
    is_system: bool = False


class GenerationResult(BaseModel):
    """Canonical output of one successful generation."""

    image_data: str = Field(..., min_length=1)
    mime_type: str = "image/png"
    prompt: str
    with_avatar: bool = False

    @property
    def image_bytes(self) -> bytes:
        return base64.b64decode(self.image_data)


class LastGenerated(BaseModel):
    """Audit record of the latest successful generation, kept in the settings record."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    timestamp: int  # epoch milliseconds
    prompt: str
    with_avatar: bool
    image_size: int


class PreparedRequest(BaseModel):
    """Fully assembled generation request, ready to hand to the HTTP client."""

    url: str
    method: str = "POST"
    headers: dict[str, str] = Field(default_factory=dict)
    json_body: Optional[dict[str, Any]] = None
    form_fields: Optional[dict[str, str]] = None
    # field name -> (filename, content, mime type)
    files: Optional[dict[str, tuple[str, bytes, str]]] = None
    sent_seed: int

    @model_validator(mode="after")
    def _exactly_one_encoding(self) -> "PreparedRequest":
        if (self.json_body is None) == (self.form_fields is None):
            raise ValueError("exactly one of json_body or form_fields must be set")
        if self.files and self.form_fields is None:
            raise ValueError("files can only be sent with a multipart body")
        return self

    @property
    def is_multipart(self) -> bool:
        return self.form_fields is not None


class MediaAttachment(BaseModel):
    """Media entry appended to a chat message after a generation."""

    url: str
    type: str = "image"
    title: str
    source: str = "generated"
    generated_with: str
