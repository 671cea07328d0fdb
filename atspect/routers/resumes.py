from typing import List

from fastapi import APIRouter, Depends, Query

from atspect.core.config import settings
from atspect.core.exceptions import FileNotFoundInStorageError
from atspect.dependencies import get_container
from atspect.routers.auth_deps import get_current_user
from atspect.schemas.auth import CurrentUser
from atspect.schemas.resume import FileUrlResponse, ResumeResponse
from atspect.services.container import ServiceContainer

router = APIRouter(prefix="/resumes")


@router.get("", response_model=List[ResumeResponse])
async def list_resumes(
    container: ServiceContainer = Depends(get_container),
    current_user: CurrentUser = Depends(get_current_user),
):
    """Resumes of the signed-in user, newest first."""
    return await container.resumes.get_all(current_user.id)


@router.get("/{resume_id}", response_model=ResumeResponse)
async def get_resume(
    resume_id: str,
    container: ServiceContainer = Depends(get_container),
    current_user: CurrentUser = Depends(get_current_user),
):
    return await container.resumes.get_by_id(resume_id, current_user.id)


@router.delete("/{resume_id}")
async def delete_resume(
    resume_id: str,
    container: ServiceContainer = Depends(get_container),
    current_user: CurrentUser = Depends(get_current_user),
):
    """Delete the record; stored files are removed in the background."""
    await container.resumes.delete(resume_id, current_user.id)
    return {"success": True, "id": resume_id}


@router.get("/{resume_id}/file-url", response_model=FileUrlResponse)
async def get_resume_file_url(
    resume_id: str,
    kind: str = Query("pdf", pattern="^(pdf|image)$"),
    signed: bool = True,
    expires_in: int = Query(3600, ge=60, le=7 * 24 * 3600),
    container: ServiceContainer = Depends(get_container),
    current_user: CurrentUser = Depends(get_current_user),
):
    resume = await container.resumes.get_by_id(resume_id, current_user.id)
    if kind == "image":
        path, bucket = resume.image_path, settings.backend.image_bucket
    else:
        path, bucket = resume.resume_path, settings.backend.resume_bucket
    if not path:
        raise FileNotFoundInStorageError("No preview image is stored for this resume")

    url = await container.storage.get_file_url(path, bucket=bucket, signed=signed, expires_in=expires_in)
    return FileUrlResponse(
        resume_id=resume_id,
        kind=kind,
        url=url,
        signed=signed,
        expires_in=expires_in if signed else None,
    )
