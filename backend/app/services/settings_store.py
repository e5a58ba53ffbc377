"""JSON-file settings store with debounced, fire-and-forget writes."""
import asyncio
import json
import logging
from pathlib import Path
from typing import Any, Optional

from pydantic import ValidationError

from app.models.generation import GenerationConfig, LastGenerated

logger = logging.getLogger(__name__)

LAST_GENERATED_KEY = "lastGenerated"


class JsonSettingsStore:
    """Settings records keyed by extension name inside one JSON file.

    The record is loaded once; ``save`` and ``record_last_generated`` update the
    in-memory copy and schedule a single write after ``debounce_seconds`` of
    quiet. Callers never await the write. A crash before it lands loses the
    pending changes.
    """

    def __init__(self, path: Path, extension_name: str, debounce_seconds: float = 1.0) -> None:
        self.path = Path(path)
        self.extension_name = extension_name
        self.debounce_seconds = debounce_seconds
        self._record: dict[str, Any] = self._read_file().get(extension_name) or {}
        self._pending: Optional[asyncio.Task] = None

    def _read_file(self) -> dict[str, Any]:
        if not self.path.exists():
            return {}
        try:
            data = json.loads(self.path.read_text(encoding="utf-8"))
        except ValueError:
            logger.error("Settings file %s is not valid JSON; starting from defaults", self.path)
            return {}
        return data if isinstance(data, dict) else {}

    def load(self) -> GenerationConfig:
        """Return the stored config, with defaults for any missing key."""
        try:
            return GenerationConfig.model_validate(self._record)
        except ValidationError:
            logger.error(
                "Stored settings are invalid; using defaults",
                exc_info=True,
                extra={"service": "JsonSettingsStore"},
            )
            return GenerationConfig()

    def last_generated(self) -> Optional[LastGenerated]:
        raw = self._record.get(LAST_GENERATED_KEY)
        if not raw:
            return None
        try:
            return LastGenerated.model_validate(raw)
        except ValidationError:
            logger.error(
                "Stored lastGenerated record is invalid; ignoring it",
                exc_info=True,
                extra={"service": "JsonSettingsStore"},
            )
            return None

    def save(self, config: GenerationConfig) -> None:
        self._record.update(config.model_dump(by_alias=True, mode="json"))
        self._schedule_write()

    def record_last_generated(self, audit: LastGenerated) -> None:
        self._record[LAST_GENERATED_KEY] = audit.model_dump(by_alias=True)
        self._schedule_write()

    def flush(self) -> None:
        """Cancel any pending debounced write and write immediately."""
        if self._pending is not None and not self._pending.done():
            self._pending.cancel()
        self._pending = None
        self._write()

    @property
    def has_pending_write(self) -> bool:
        return self._pending is not None and not self._pending.done()

    def _schedule_write(self) -> None:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            # No event loop (scripts, sync tests): nothing to debounce against.
            self._write()
            return
        if self._pending is not None and not self._pending.done():
            self._pending.cancel()
        self._pending = loop.create_task(self._delayed_write())

    async def _delayed_write(self) -> None:
        await asyncio.sleep(self.debounce_seconds)
        try:
            self._write()
        except Exception as exc:
            logger.error(
                "Failed to persist settings: %s",
                exc,
                exc_info=True,
                extra={"service": "JsonSettingsStore", "error_type": type(exc).__name__},
            )

    def _write(self) -> None:
        data = self._read_file()
        data[self.extension_name] = self._record
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = self.path.with_suffix(self.path.suffix + ".tmp")
        tmp_path.write_text(json.dumps(data, ensure_ascii=False, indent=2), encoding="utf-8")
        tmp_path.replace(self.path)
        logger.debug("Settings written to %s", self.path)
