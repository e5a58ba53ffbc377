"""Tests for ImageGenerationService.generate() and GenerationGuard."""
import base64
import json
import random
from typing import Callable, Optional
from unittest.mock import MagicMock

import httpx
import pytest

from app.core.errors import (
    ConfigError,
    GenerationInProgressError,
    MissingReferenceError,
    ServiceError,
    UnrecognizedFormatError,
)
from app.models.generation import (
    CharacterRef,
    ContextMessage,
    GenerationConfig,
    LastGenerated,
    ReferenceImage,
)
from app.services.generation import GenerationGuard, ImageGenerationService

ENDPOINT = "https://gen.example.com/v1/generate"
IMAGE_B64 = base64.b64encode(b"generated image").decode()
HANA = CharacterRef(name="Hana", avatar="hana.png")


class FakeAvatarSource:
    def __init__(self, image: Optional[ReferenceImage]) -> None:
        self.image = image
        self.calls: list[Optional[CharacterRef]] = []

    async def fetch(self, character: Optional[CharacterRef]) -> Optional[ReferenceImage]:
        self.calls.append(character)
        return self.image


class Recorder:
    """MockTransport handler that records requests and replies via ``responder``."""

    def __init__(self, responder: Callable[[httpx.Request], httpx.Response]) -> None:
        self.responder = responder
        self.requests: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        return self.responder(request)


def _image_json(_: httpx.Request) -> httpx.Response:
    return httpx.Response(200, json={"image": f"data:image/png;base64,{IMAGE_B64}"})


def _service(
    recorder: Recorder,
    avatar: Optional[ReferenceImage] = None,
    store: Optional[MagicMock] = None,
    **kwargs: object,
) -> tuple[ImageGenerationService, FakeAvatarSource]:
    client = httpx.AsyncClient(transport=httpx.MockTransport(recorder))
    source = FakeAvatarSource(avatar)
    service = ImageGenerationService(
        http_client=client,
        avatar_source=source,
        settings_store=store,
        **kwargs,  # type: ignore[arg-type]
    )
    return service, source


@pytest.fixture
def json_config(plain_config: GenerationConfig) -> GenerationConfig:
    return plain_config.with_changes(endpoint_url=ENDPOINT, quality="premium")


class TestGenerate:
    """End-to-end generate() against a mocked transport."""

    async def test_json_scenario_without_avatar(self, json_config: GenerationConfig) -> None:
        recorder = Recorder(_image_json)
        service, source = _service(recorder)

        result = await service.generate("a cat", json_config)

        assert len(recorder.requests) == 1
        sent = recorder.requests[0]
        assert sent.method == "POST"
        assert str(sent.url) == ENDPOINT
        body = json.loads(sent.content)
        assert body["prompt"] == "a cat, masterpiece, best quality, ultra detailed"
        assert "reference_image" not in body
        assert source.calls == []
        assert result.image_data == IMAGE_B64
        assert result.prompt == "a cat, masterpiece, best quality, ultra detailed"
        assert result.with_avatar is False

    async def test_missing_avatar_fails_before_network(self, json_config: GenerationConfig) -> None:
        recorder = Recorder(_image_json)
        service, source = _service(recorder, avatar=None)

        with pytest.raises(MissingReferenceError):
            await service.generate(
                "a cat", json_config.with_changes(use_avatar_reference=True), character=HANA
            )
        assert source.calls == [HANA]
        assert recorder.requests == []

    async def test_config_error_before_avatar_fetch(
        self, json_config: GenerationConfig, reference_image: ReferenceImage
    ) -> None:
        recorder = Recorder(_image_json)
        service, source = _service(recorder, avatar=reference_image)
        config = json_config.with_changes(endpoint_url="", use_avatar_reference=True)

        with pytest.raises(ConfigError):
            await service.generate("a cat", config, character=HANA)
        assert source.calls == []
        assert recorder.requests == []

    async def test_multipart_with_avatar(
        self, json_config: GenerationConfig, reference_image: ReferenceImage
    ) -> None:
        recorder = Recorder(_image_json)
        service, _ = _service(recorder, avatar=reference_image)
        config = json_config.with_changes(request_format="multipart", use_avatar_reference=True)

        result = await service.generate("a cat", config, character=HANA)

        sent = recorder.requests[0]
        assert sent.headers["content-type"].startswith("multipart/form-data")
        assert b'name="prompt"' in sent.content
        assert b'name="reference_image"; filename="hana.png"' in sent.content
        assert b'name="preserve_facial_features"' in sent.content
        assert reference_image.data in sent.content
        assert result.with_avatar is True

    async def test_multipart_without_avatar_is_still_multipart(
        self, json_config: GenerationConfig
    ) -> None:
        recorder = Recorder(_image_json)
        service, _ = _service(recorder)

        await service.generate("a cat", json_config.with_changes(request_format="multipart"))

        sent = recorder.requests[0]
        assert sent.headers["content-type"].startswith("multipart/form-data")
        assert b'name="seed"' in sent.content
        assert b"filename=" not in sent.content

    async def test_context_passed_to_prompt(self, json_config: GenerationConfig) -> None:
        recorder = Recorder(_image_json)
        service, _ = _service(recorder)
        config = json_config.with_changes(use_character_context=True, quality="draft")

        result = await service.generate(
            "a cat", config, [ContextMessage(sender="User", text="I love cats")]
        )
        assert result.prompt.startswith("Context from recent conversation:\n[User]: I love cats")

    async def test_hosted_url_triggers_second_fetch(self, json_config: GenerationConfig) -> None:
        def responder(request: httpx.Request) -> httpx.Response:
            if request.method == "POST":
                return httpx.Response(200, json={"data": [{"url": "https://cdn.example.com/1.jpg"}]})
            return httpx.Response(200, content=b"jpeg bytes", headers={"content-type": "image/jpeg"})

        recorder = Recorder(responder)
        service, _ = _service(recorder)

        result = await service.generate("a cat", json_config)

        assert [r.method for r in recorder.requests] == ["POST", "GET"]
        assert str(recorder.requests[1].url) == "https://cdn.example.com/1.jpg"
        assert result.image_data == base64.b64encode(b"jpeg bytes").decode()
        assert result.mime_type == "image/jpeg"

    async def test_hosted_fetch_failure_is_service_error(
        self, json_config: GenerationConfig
    ) -> None:
        def responder(request: httpx.Request) -> httpx.Response:
            if request.method == "POST":
                return httpx.Response(200, json={"output": ["https://r.example.com/1.png"]})
            return httpx.Response(404)

        service, _ = _service(Recorder(responder))
        with pytest.raises(ServiceError) as exc_info:
            await service.generate("a cat", json_config)
        assert exc_info.value.status == 404

    async def test_service_error_not_audited(self, json_config: GenerationConfig) -> None:
        recorder = Recorder(
            lambda _: httpx.Response(500, json={"error": {"message": "quota exceeded"}})
        )
        store = MagicMock()
        service, _ = _service(recorder, store=store)

        with pytest.raises(ServiceError) as exc_info:
            await service.generate("a cat", json_config)

        assert exc_info.value.status == 500
        assert exc_info.value.message == "quota exceeded"
        store.record_last_generated.assert_not_called()

    async def test_unrecognized_body_not_audited(self, json_config: GenerationConfig) -> None:
        recorder = Recorder(lambda _: httpx.Response(200, json={"status": "queued"}))
        store = MagicMock()
        service, _ = _service(recorder, store=store)

        with pytest.raises(UnrecognizedFormatError):
            await service.generate("a cat", json_config)
        store.record_last_generated.assert_not_called()

    async def test_success_records_audit(
        self, json_config: GenerationConfig, reference_image: ReferenceImage
    ) -> None:
        store = MagicMock()
        service, _ = _service(Recorder(_image_json), avatar=reference_image, store=store)

        result = await service.generate(
            "a cat", json_config.with_changes(use_avatar_reference=True), character=HANA
        )

        store.record_last_generated.assert_called_once()
        audit = store.record_last_generated.call_args.args[0]
        assert isinstance(audit, LastGenerated)
        assert audit.prompt == "a cat"
        assert audit.with_avatar is True
        assert audit.image_size == len(result.image_data)
        assert audit.timestamp > 0

    async def test_timeout_is_service_error(self, json_config: GenerationConfig) -> None:
        def responder(request: httpx.Request) -> httpx.Response:
            raise httpx.ReadTimeout("timed out", request=request)

        service, _ = _service(Recorder(responder))
        with pytest.raises(ServiceError) as exc_info:
            await service.generate("a cat", json_config, timeout=5)
        assert exc_info.value.status == 0
        assert "timed out after 5s" in exc_info.value.message

    async def test_transport_error_is_service_error(self, json_config: GenerationConfig) -> None:
        def responder(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("connection refused", request=request)

        service, _ = _service(Recorder(responder))
        with pytest.raises(ServiceError) as exc_info:
            await service.generate("a cat", json_config)
        assert exc_info.value.status == 0

    async def test_default_headers_and_auth_sent(self, json_config: GenerationConfig) -> None:
        recorder = Recorder(_image_json)
        service, _ = _service(recorder, default_headers={"X-Host": "st"})

        await service.generate("a cat", json_config.with_changes(api_key="k-1"))

        sent = recorder.requests[0]
        assert sent.headers["x-host"] == "st"
        assert sent.headers["x-api-key"] == "k-1"
        assert sent.headers["authorization"] == "Bearer k-1"

    async def test_random_seed_on_wire(self, json_config: GenerationConfig) -> None:
        recorder = Recorder(_image_json)
        service, _ = _service(recorder, rng=random.Random(3))
        config = json_config.with_changes(seed=-1)

        await service.generate("a cat", config)

        seed = json.loads(recorder.requests[0].content)["seed"]
        assert 0 <= seed < 1_000_000
        assert config.seed == -1


class TestGenerationGuard:
    def test_second_hold_rejected(self) -> None:
        guard = GenerationGuard()
        with guard.hold("msg-1"):
            assert guard.is_busy("msg-1")
            with pytest.raises(GenerationInProgressError):
                with guard.hold("msg-1"):
                    pass
            with guard.hold("msg-2"):
                assert guard.is_busy("msg-2")
        assert not guard.is_busy("msg-1")

    def test_released_on_error(self) -> None:
        guard = GenerationGuard()
        with pytest.raises(RuntimeError):
            with guard.hold("msg-1"):
                raise RuntimeError("boom")
        assert not guard.is_busy("msg-1")
