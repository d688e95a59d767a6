"""
Test the HTTP generation gateway against httpx.MockTransport (no network).
"""
import json

import httpx
import pytest

from soundstage.features.generation.gateway import (
    GenerationGatewayError,
    HttpGenerationGateway,
    normalize_status,
)
from soundstage.models.generation import (
    ImageGenerationRequest,
    MusicGenerationRequest,
    TaskStatus,
    VideoGenerationRequest,
)
from soundstage.models.plan import MusicModel


def _gateway(handler, api_key="gen-key"):
    return HttpGenerationGateway(
        base_url="https://gen.example.test/api/v1/",
        api_key=api_key,
        timeout=5,
        transport=httpx.MockTransport(handler),
    )


def test_submit_music_posts_payload_with_bearer_key():
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["url"] = str(request.url)
        seen["auth"] = request.headers["Authorization"]
        seen["body"] = json.loads(request.content)
        return httpx.Response(200, json={"id": "gen_42", "status": "queued"})

    handle = _gateway(handler).submit(
        MusicGenerationRequest(prompt="city pop", model=MusicModel.V4, custom_mode=True, title="Night", style="jazz")
    )

    assert seen["url"] == "https://gen.example.test/api/v1/generate"
    assert seen["auth"] == "Bearer gen-key"
    assert seen["body"] == {
        "model": "V4",
        "instrumental": False,
        "gender": "m",
        "custom_mode": True,
        "prompt": "city pop",
        "title": "Night",
        "tags": "jazz",
    }
    assert handle.task_id == "gen_42"
    assert handle.status == TaskStatus.PENDING


def test_submit_routes_by_operation():
    paths = []

    def handler(request: httpx.Request) -> httpx.Response:
        paths.append(request.url.path)
        return httpx.Response(200, json={"task_id": "t"})

    gateway = _gateway(handler)
    gateway.submit(ImageGenerationRequest(prompt="cat"))
    gateway.submit(VideoGenerationRequest(prompt="sea"))
    assert paths == ["/api/v1/generate-image", "/api/v1/generate-video"]


def test_upstream_error_status_raises():
    gateway = _gateway(lambda request: httpx.Response(503, text="overloaded"))
    with pytest.raises(GenerationGatewayError) as exc_info:
        gateway.submit(MusicGenerationRequest(prompt="x"))
    assert exc_info.value.status_code == 503


def test_transport_error_raises():
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    with pytest.raises(GenerationGatewayError):
        _gateway(handler).submit(MusicGenerationRequest(prompt="x"))


def test_response_without_task_id_raises():
    gateway = _gateway(lambda request: httpx.Response(200, json={"status": "queued"}))
    with pytest.raises(GenerationGatewayError):
        gateway.submit(MusicGenerationRequest(prompt="x"))


def test_invalid_json_raises():
    gateway = _gateway(lambda request: httpx.Response(200, content=b"<html>"))
    with pytest.raises(GenerationGatewayError):
        gateway.submit(MusicGenerationRequest(prompt="x"))


def test_missing_api_key_raises_before_request(monkeypatch):
    from soundstage.core.config import settings

    monkeypatch.setattr(settings, "GENERATION_API_KEY", None)
    called = []

    def handler(request: httpx.Request) -> httpx.Response:
        called.append(request)
        return httpx.Response(200, json={"id": "t"})

    with pytest.raises(GenerationGatewayError):
        _gateway(handler, api_key=None).submit(MusicGenerationRequest(prompt="x"))
    assert called == []


def test_fetch_status_normalizes_result():
    def handler(request: httpx.Request) -> httpx.Response:
        assert request.method == "GET"
        assert request.url.path == "/api/v1/tasks/gen_42"
        return httpx.Response(200, json={"status": "SUCCESS", "clips": [{"audio_url": "https://cdn/a.mp3"}]})

    handle = _gateway(handler).fetch_status("gen_42")
    assert handle.task_id == "gen_42"
    assert handle.status == TaskStatus.COMPLETE
    assert handle.result == {"items": [{"audio_url": "https://cdn/a.mp3"}]}


@pytest.mark.parametrize(
    "raw,expected",
    [
        (None, TaskStatus.PENDING),
        ("queued", TaskStatus.PENDING),
        ("streaming", TaskStatus.PROCESSING),
        ("completed", TaskStatus.COMPLETE),
        ("error", TaskStatus.FAILED),
        ("something_new", TaskStatus.PROCESSING),
    ],
)
def test_normalize_status(raw, expected):
    assert normalize_status(raw) == expected
