"""Milestone API routes.

Endpoints (all under /orders/{order_id}):
- POST /milestones/{stage}/photo     Upload a progress photo, returns its URL
- POST /milestones/{stage}/submit    Tailor submits proof of work
- POST /milestones/{stage}/approve   Customer approves; escrow release is queued
- POST /milestones/{stage}/reject    Customer rejects with a reason
- GET  /milestones/{stage}           Current state of one milestone
- GET  /milestones                   All milestones with order progress
- GET  /escrow                       Released / in-flight / remaining escrow
"""

import uuid

from fastapi import APIRouter, BackgroundTasks, Depends, File, HTTPException, UploadFile

from milestone_engine.api.deps import (
    get_actor_id,
    get_blob_store,
    get_milestone_service,
    get_release_processor,
    get_release_queue,
)
from milestone_engine.api.schemas.milestones import (
    EscrowSummaryResponse,
    MilestoneResponse,
    OrderProgressResponse,
    PhotoUploadResponse,
    RejectMilestoneRequest,
    SubmitMilestoneRequest,
)
from milestone_engine.domain.stages import parse_stage
from milestone_engine.integrations.blob_store import ALLOWED_CONTENT_TYPES, MAX_PHOTO_BYTES, BlobStore
from milestone_engine.queue.release_queue import ReleaseQueue
from milestone_engine.queue.worker import process_next_release
from milestone_engine.services.escrow_release import EscrowReleaseProcessor
from milestone_engine.services.milestone_service import MilestoneService

router = APIRouter()


@router.post("/{order_id}/milestones/{stage}/photo", response_model=PhotoUploadResponse, status_code=201)
async def upload_milestone_photo(
    order_id: uuid.UUID,
    stage: str,
    photo: UploadFile = File(...),
    actor_id: str = Depends(get_actor_id),
    blob_store: BlobStore = Depends(get_blob_store),
):
    """Store a progress photo. The returned URL is then passed to /submit."""
    parse_stage(stage)
    if photo.content_type not in ALLOWED_CONTENT_TYPES:
        raise HTTPException(status_code=415, detail=f"Unsupported photo type: {photo.content_type}")

    data = await photo.read()
    if not data:
        raise HTTPException(status_code=422, detail="Photo is empty")
    if len(data) > MAX_PHOTO_BYTES:
        raise HTTPException(status_code=413, detail="Photo exceeds the 10 MB limit")

    url = await blob_store.store(data, photo.content_type)
    return PhotoUploadResponse(photo_url=url)


@router.post("/{order_id}/milestones/{stage}/submit", response_model=MilestoneResponse, status_code=201)
async def submit_milestone(
    order_id: uuid.UUID,
    stage: str,
    body: SubmitMilestoneRequest,
    actor_id: str = Depends(get_actor_id),
    service: MilestoneService = Depends(get_milestone_service),
):
    return await service.submit_milestone(order_id, stage, body.photo_url, body.notes, actor_id)


@router.post("/{order_id}/milestones/{stage}/approve", response_model=MilestoneResponse)
async def approve_milestone(
    order_id: uuid.UUID,
    stage: str,
    background_tasks: BackgroundTasks,
    actor_id: str = Depends(get_actor_id),
    service: MilestoneService = Depends(get_milestone_service),
    processor: EscrowReleaseProcessor = Depends(get_release_processor),
    release_queue: ReleaseQueue = Depends(get_release_queue),
):
    """Approve a pending milestone. The release runs after the response is sent."""
    milestone = await service.approve_milestone(order_id, stage, actor_id)
    background_tasks.add_task(process_next_release, processor, release_queue)
    return milestone


@router.post("/{order_id}/milestones/{stage}/reject", response_model=MilestoneResponse)
async def reject_milestone(
    order_id: uuid.UUID,
    stage: str,
    body: RejectMilestoneRequest,
    actor_id: str = Depends(get_actor_id),
    service: MilestoneService = Depends(get_milestone_service),
):
    return await service.reject_milestone(order_id, stage, actor_id, body.reason)


@router.get("/{order_id}/milestones/{stage}", response_model=MilestoneResponse)
async def get_milestone(
    order_id: uuid.UUID,
    stage: str,
    service: MilestoneService = Depends(get_milestone_service),
):
    return await service.get_milestone_status(order_id, stage)


@router.get("/{order_id}/milestones", response_model=OrderProgressResponse)
async def list_milestones(
    order_id: uuid.UUID,
    service: MilestoneService = Depends(get_milestone_service),
):
    progress = await service.list_order_milestones(order_id)
    return OrderProgressResponse(
        order_id=progress.order_id,
        progress_percent=progress.progress_percent,
        next_stage=progress.next_stage.value if progress.next_stage else None,
        milestones=[MilestoneResponse.model_validate(m) for m in progress.milestones],
    )


@router.get("/{order_id}/escrow", response_model=EscrowSummaryResponse)
async def get_escrow_summary(
    order_id: uuid.UUID,
    processor: EscrowReleaseProcessor = Depends(get_release_processor),
):
    summary = await processor.summarize_order(order_id)
    return EscrowSummaryResponse.model_validate(summary)
