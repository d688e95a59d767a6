"""
Client for the third-party generation API.

The gateway is opaque to the rest of the service: submit() returns a task
handle, fetch_status() reports where that task is. Transport and protocol
failures surface as GenerationGatewayError so dispatch can decide whether
to refund.
"""
from typing import Any, Dict, Optional, Protocol

import httpx

from soundstage.core.config import settings
from soundstage.models.credits import OperationKind
from soundstage.models.generation import GenerationRequest, TaskHandle, TaskStatus

SUBMIT_PATHS = {
    OperationKind.MUSIC_GENERATION: "/generate",
    OperationKind.WAV_CONVERSION: "/convert-wav",
    OperationKind.IMAGE_GENERATION: "/generate-image",
    OperationKind.VIDEO_GENERATION: "/generate-video",
}

_STATUS_ALIASES = {
    "queued": TaskStatus.PENDING,
    "pending": TaskStatus.PENDING,
    "submitted": TaskStatus.PENDING,
    "processing": TaskStatus.PROCESSING,
    "running": TaskStatus.PROCESSING,
    "streaming": TaskStatus.PROCESSING,
    "complete": TaskStatus.COMPLETE,
    "completed": TaskStatus.COMPLETE,
    "success": TaskStatus.COMPLETE,
    "failed": TaskStatus.FAILED,
    "error": TaskStatus.FAILED,
}


class GenerationGatewayError(Exception):
    def __init__(self, message: str, *, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class GenerationGateway(Protocol):
    def submit(self, request: GenerationRequest) -> TaskHandle:
        ...

    def fetch_status(self, task_id: str) -> TaskHandle:
        ...


def normalize_status(raw: Optional[str]) -> TaskStatus:
    if not raw:
        return TaskStatus.PENDING
    return _STATUS_ALIASES.get(str(raw).lower(), TaskStatus.PROCESSING)


def _handle_from_response(data: Dict[str, Any], fallback_task_id: Optional[str] = None) -> TaskHandle:
    task_id = data.get("id") or data.get("task_id") or data.get("taskId") or fallback_task_id
    if not task_id:
        raise GenerationGatewayError("Generation API response has no task id")
    result = None
    items = data.get("clips") or data.get("tracks") or data.get("output")
    if items:
        result = {"items": items}
    return TaskHandle(task_id=str(task_id), status=normalize_status(data.get("status")), result=result)


class HttpGenerationGateway:
    """httpx-backed gateway; one short-lived client per call."""

    def __init__(
        self,
        base_url: Optional[str] = None,
        api_key: Optional[str] = None,
        timeout: Optional[float] = None,
        transport: Optional[httpx.BaseTransport] = None,
    ):
        self.base_url = (base_url or settings.GENERATION_API_URL).rstrip("/")
        self.api_key = api_key or settings.GENERATION_API_KEY
        self.timeout = timeout if timeout is not None else settings.GENERATION_TIMEOUT_SECONDS
        self.transport = transport

    def _client(self) -> httpx.Client:
        if not self.api_key:
            raise GenerationGatewayError("GENERATION_API_KEY not configured")
        return httpx.Client(
            base_url=self.base_url,
            timeout=self.timeout,
            transport=self.transport,
            headers={
                "Authorization": f"Bearer {self.api_key}",
                "Content-Type": "application/json",
            },
        )

    def _json(self, response: httpx.Response) -> Dict[str, Any]:
        if response.status_code >= 300:
            raise GenerationGatewayError(
                f"Generation API error: {response.status_code} {response.text[:200]}",
                status_code=response.status_code,
            )
        try:
            data = response.json()
        except ValueError:
            raise GenerationGatewayError("Generation API returned invalid JSON", status_code=response.status_code)
        if not isinstance(data, dict):
            raise GenerationGatewayError("Generation API returned an unexpected body", status_code=response.status_code)
        return data

    def submit(self, request: GenerationRequest) -> TaskHandle:
        path = SUBMIT_PATHS[request.operation_kind]
        try:
            with self._client() as client:
                response = client.post(path, json=request.gateway_payload())
        except httpx.HTTPError as e:
            raise GenerationGatewayError(f"Generation API unreachable: {e}")
        return _handle_from_response(self._json(response))

    def fetch_status(self, task_id: str) -> TaskHandle:
        try:
            with self._client() as client:
                response = client.get(f"/tasks/{task_id}")
        except httpx.HTTPError as e:
            raise GenerationGatewayError(f"Generation API unreachable: {e}")
        return _handle_from_response(self._json(response), fallback_task_id=task_id)


_gateway: Optional[GenerationGateway] = None


def get_gateway() -> GenerationGateway:
    global _gateway
    if _gateway is None:
        _gateway = HttpGenerationGateway()
    return _gateway

