"""Enhanced prompt composition."""
from typing import Iterable, Sequence

from app.models.generation import ContextMessage, GenerationConfig, Quality

QUALITY_MODIFIERS: dict[str, str] = {
    Quality.premium.value: "masterpiece, best quality, ultra detailed",
    Quality.standard.value: "high quality, detailed",
}

FACE_PRESERVATION_HINT = (
    "exact facial features, precise face structure, "
    "identical facial characteristics, maintain eye color and skin tone"
)

NO_STYLE = "none"


def select_context(messages: Iterable[ContextMessage], depth: int) -> list[ContextMessage]:
    """Drop empty and system turns, then keep the last ``depth`` of what remains."""
    usable = [m for m in messages if m.text and not m.is_system]
    if depth <= 0:
        return []
    return usable[-depth:]


def render_context(messages: Sequence[ContextMessage]) -> str:
    lines = "\n".join(f"[{m.sender}]: {m.text}" for m in messages)
    return f"Context from recent conversation:\n{lines}\n\n"


def build_prompt(
    user_prompt: str,
    config: GenerationConfig,
    recent_messages: Sequence[ContextMessage] = (),
) -> str:
    """Compose the prompt actually sent to the backend.

    Steps run in a fixed order, each only when enabled: conversation context
    prefix, style suffix, quality modifiers, face-preservation hint. The result
    is stripped of surrounding whitespace. Pure function of its arguments.

    Args:
        user_prompt: Raw prompt typed by the user (or the chat message text).
        config: Generation config snapshot.
        recent_messages: Chat turns, oldest first.

    Returns:
        The enhanced prompt.
    """
    prompt = user_prompt

    if config.use_character_context and recent_messages:
        selected = select_context(recent_messages, config.message_context_depth)
        if selected:
            prompt = f"{render_context(selected)}Based on above context, generate: {prompt}"

    if config.style and config.style != NO_STYLE:
        prompt = f"{prompt}, {config.style} style"

    modifier = QUALITY_MODIFIERS.get(config.quality)
    if modifier:
        prompt = f"{prompt}, {modifier}"

    if config.use_avatar_reference:
        prompt = f"{prompt}, {FACE_PRESERVATION_HINT}"

    return prompt.strip()
