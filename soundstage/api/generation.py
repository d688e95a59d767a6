"""
Paid generation routes and task status.

Every paid endpoint goes through GenerationDispatcher, which runs the
entitlement guard before touching credits.
"""
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, Header
from pydantic import BaseModel

from soundstage.api.deps import get_current_account, get_dispatcher
from soundstage.features.generation.dispatch import GenerationDispatcher, verify_callback_secret
from soundstage.models.credits import Account
from soundstage.models.generation import (
    DispatchResult,
    GenerationTask,
    ImageGenerationRequest,
    MusicGenerationRequest,
    TaskStatus,
    VideoGenerationRequest,
    WavConversionRequest,
)

router = APIRouter(prefix="/api", tags=["generation"])


class CallbackPayload(BaseModel):
    task_id: str
    status: TaskStatus
    result: Optional[Dict[str, Any]] = None
    error: Optional[str] = None


@router.post("/generate-music", response_model=DispatchResult)
def generate_music(
    body: MusicGenerationRequest,
    account: Account = Depends(get_current_account),
    dispatcher: GenerationDispatcher = Depends(get_dispatcher),
):
    return dispatcher.dispatch_generation(account.account_id, body)


@router.post("/convert-wav", response_model=DispatchResult)
def convert_wav(
    body: WavConversionRequest,
    account: Account = Depends(get_current_account),
    dispatcher: GenerationDispatcher = Depends(get_dispatcher),
):
    return dispatcher.dispatch_generation(account.account_id, body)


@router.post("/generate-image", response_model=DispatchResult)
def generate_image(
    body: ImageGenerationRequest,
    account: Account = Depends(get_current_account),
    dispatcher: GenerationDispatcher = Depends(get_dispatcher),
):
    return dispatcher.dispatch_generation(account.account_id, body)


@router.post("/generate-video", response_model=DispatchResult)
def generate_video(
    body: VideoGenerationRequest,
    account: Account = Depends(get_current_account),
    dispatcher: GenerationDispatcher = Depends(get_dispatcher),
):
    return dispatcher.dispatch_generation(account.account_id, body)


@router.get("/tasks/{task_id}", response_model=GenerationTask)
def get_task(
    task_id: str,
    account: Account = Depends(get_current_account),
    dispatcher: GenerationDispatcher = Depends(get_dispatcher),
):
    """Task status; asks the gateway for news while the task is still running."""
    return dispatcher.refresh_task(task_id, account.account_id)


@router.post("/generation/callback", response_model=GenerationTask)
def generation_callback(
    body: CallbackPayload,
    x_callback_secret: Optional[str] = Header(None),
    dispatcher: GenerationDispatcher = Depends(get_dispatcher),
):
    """Completion callback from the generation API (shared-secret authenticated)."""
    verify_callback_secret(x_callback_secret)
    return dispatcher.resolve_task(body.task_id, body.status, result=body.result, error=body.error)
