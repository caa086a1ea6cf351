import logging
from typing import Optional

from fastapi import APIRouter, Depends, File, HTTPException, UploadFile, status

from citypulse.auth import Actor
from citypulse.dependencies import get_current_actor, get_storage, get_workflow
from citypulse.schemas import ImageRef, UploadResponse, UserResponse, UserUpdate
from citypulse.services.workflow import WorkflowOrchestrator
from citypulse.storage_service import ALLOWED_MIME_TYPES, StorageService, StoredObject

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/v1/uploads", tags=["uploads"])

MAX_UPLOAD_BYTES = 5 * 1024 * 1024


async def _store(file: UploadFile, actor: Actor, storage: Optional[StorageService], folder: str) -> StoredObject:
    if file.content_type not in ALLOWED_MIME_TYPES:
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail="Only image files are allowed",
        )

    content = await file.read()
    if len(content) > MAX_UPLOAD_BYTES:
        raise HTTPException(
            status_code=status.HTTP_413_REQUEST_ENTITY_TOO_LARGE,
            detail="File too large",
        )

    stored = await storage.upload(content, file.content_type, folder=folder) if storage else None
    if stored is None:
        logger.warning("Upload unavailable", extra={"user_id": actor.id})
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Image storage is unavailable",
        )
    return stored


@router.post("/", response_model=UploadResponse, status_code=status.HTTP_201_CREATED)
async def upload_image(
    file: UploadFile = File(...),
    actor: Actor = Depends(get_current_actor),
    storage: Optional[StorageService] = Depends(get_storage),
):
    """Store an image and return the ``{url, public_id}`` pair to attach to an issue."""
    stored = await _store(file, actor, storage, "citypulse/issues")
    return UploadResponse(url=stored.url, public_id=stored.public_id)


@router.post("/profile", response_model=UserResponse)
async def upload_profile_image(
    file: UploadFile = File(...),
    actor: Actor = Depends(get_current_actor),
    storage: Optional[StorageService] = Depends(get_storage),
    workflow: WorkflowOrchestrator = Depends(get_workflow),
):
    """Store an image and set it as the caller's profile picture"""
    stored = await _store(file, actor, storage, "citypulse/profiles")
    image = ImageRef(url=stored.url, public_id=stored.public_id)
    return await workflow.update_profile(actor, UserUpdate(profile_image=image))
