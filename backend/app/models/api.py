"""Request/response bodies for the HTTP API."""
from typing import Optional

from pydantic import BaseModel, Field

from app.models.generation import CharacterRef, ContextMessage, GenerationResult, MediaAttachment


class GenerateRequest(BaseModel):
    """Quick-generate request: a free-form prompt."""

    prompt: str = Field(..., min_length=1, max_length=4000)
    messages: list[ContextMessage] = Field(default_factory=list)
    character: Optional[CharacterRef] = None


class MessageGenerateRequest(BaseModel):
    """Generate from an existing chat message; ``text`` is the message content."""

    text: str = ""
    messages: list[ContextMessage] = Field(default_factory=list)
    character: Optional[CharacterRef] = None


class MessageGenerateResponse(BaseModel):
    result: GenerationResult
    attachment: MediaAttachment
