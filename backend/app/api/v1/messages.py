"""
FastAPI routes: message broadcasting and delivery tracking.

Provides endpoints to:
    POST /api/v1/messages                     — store a message and dispatch it
    POST /api/v1/messages/{id}/resend         — rerun dispatch for a message
    GET  /api/v1/messages                     — recent messages with summaries
    GET  /api/v1/messages/{id}                — full delivery report
    GET  /api/v1/messages/{id}/history        — audit trail, newest first
    GET  /api/v1/jobs/{task_id}               — background run progress
    GET  /api/v1/config-status                — which channels are configured

Dispatch runs are fire-and-forget: send and resend answer as soon as the
message is persisted and the run is queued.
"""

from __future__ import annotations

import logging
from typing import Any, Dict

from fastapi import APIRouter, Depends, Query, Request

from backend.app.api.schemas import (
    ConfigStatusResponse,
    DispatchAccepted,
    HistoryEntryOut,
    HistoryResponse,
    MessageListResponse,
    SendMessageRequest,
)
from backend.app.core.errors import NotFoundError
from backend.app.dispatch.channel_config import ChannelConfig
from backend.app.dispatch.jobs import DispatchJobManager, JobType
from backend.app.dispatch.models import Channel
from backend.app.dispatch.orchestrator import DispatchOrchestrator, DispatchRequest

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/v1", tags=["messages"])


# ---------------------------------------------------------------------------
# Dependencies
# ---------------------------------------------------------------------------

def get_orchestrator(request: Request) -> DispatchOrchestrator:
    return request.app.state.orchestrator


def get_job_manager(request: Request) -> DispatchJobManager:
    return request.app.state.job_manager


def get_channel_config(request: Request) -> ChannelConfig:
    return request.app.state.channel_config


# ---------------------------------------------------------------------------
# Routes
# ---------------------------------------------------------------------------

@router.post("/messages", response_model=DispatchAccepted)
async def send_message(
    body: SendMessageRequest,
    orchestrator: DispatchOrchestrator = Depends(get_orchestrator),
    jobs: DispatchJobManager = Depends(get_job_manager),
) -> DispatchAccepted:
    """Persist a message and queue its dispatch run."""
    message_id, channels = await orchestrator.submit(DispatchRequest(
        subject=body.subject,
        body=body.body,
        channels=body.channels,
        contact_ids=body.recipients,
        custom_addresses=body.custom_addresses,
        attachments=[a.to_attachment() for a in body.attachments],
    ))
    task_id = jobs.submit_run(message_id, channels)
    return DispatchAccepted(
        message_id=message_id,
        channels=[c.value for c in channels],
        task_id=task_id,
    )


@router.post("/messages/{message_id}/resend", response_model=DispatchAccepted)
async def resend_message(
    message_id: int,
    orchestrator: DispatchOrchestrator = Depends(get_orchestrator),
    jobs: DispatchJobManager = Depends(get_job_manager),
) -> DispatchAccepted:
    """Rerun dispatch on the message's stored channels that are still configured."""
    channels = await orchestrator.prepare_resend(message_id)
    task_id = jobs.submit_run(
        message_id, channels, orchestrator.resend_attachments(),
        job_type=JobType.RESEND,
    )
    return DispatchAccepted(
        message_id=message_id,
        channels=[c.value for c in channels],
        task_id=task_id,
    )


@router.get("/messages", response_model=MessageListResponse)
async def list_messages(
    limit: int = Query(50, ge=1, le=500),
    offset: int = Query(0, ge=0),
    orchestrator: DispatchOrchestrator = Depends(get_orchestrator),
) -> MessageListResponse:
    messages = await orchestrator.list_messages(limit=limit, offset=offset)
    return MessageListResponse(count=len(messages), messages=messages)


@router.get("/messages/{message_id}")
async def get_message(
    message_id: int,
    orchestrator: DispatchOrchestrator = Depends(get_orchestrator),
) -> Dict[str, Any]:
    return await orchestrator.message_report(message_id)


@router.get("/messages/{message_id}/history", response_model=HistoryResponse)
async def get_message_history(
    message_id: int,
    orchestrator: DispatchOrchestrator = Depends(get_orchestrator),
) -> HistoryResponse:
    entries = await orchestrator.history(message_id)
    return HistoryResponse(
        message_id=message_id,
        history=[HistoryEntryOut(**e.to_dict()) for e in entries],
    )


@router.get("/jobs/{task_id}")
async def get_job(
    task_id: str,
    jobs: DispatchJobManager = Depends(get_job_manager),
) -> Dict[str, Any]:
    progress = jobs.get_progress(task_id)
    if progress is None:
        raise NotFoundError("Job", task_id=task_id)
    return progress.to_dict()


@router.get("/config-status", response_model=ConfigStatusResponse)
async def config_status(
    config: ChannelConfig = Depends(get_channel_config),
    orchestrator: DispatchOrchestrator = Depends(get_orchestrator),
) -> ConfigStatusResponse:
    available = orchestrator.available_channels(list(Channel))
    return ConfigStatusResponse(
        **config.status(),
        available_channels=[c.value for c in available],
    )
