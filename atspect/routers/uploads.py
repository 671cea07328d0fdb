from typing import Optional

from fastapi import APIRouter, Depends, File, Form, Request, UploadFile, status

from atspect.core.config import settings
from atspect.core.limiter import limiter
from atspect.dependencies import get_session_registry
from atspect.routers.auth_deps import get_current_user
from atspect.schemas.auth import CurrentUser
from atspect.schemas.upload import SampleJobPosting, UploadSnapshot
from atspect.services.analysis_client import ResumeMode
from atspect.services.pdf_processor import PDF_CONTENT_TYPE, UploadedDocument
from atspect.services.upload_orchestrator import SAMPLE_JOB_POSTING, UploadSessionRegistry

router = APIRouter(prefix="/uploads")


async def _read_upload(file: Optional[UploadFile]) -> Optional[UploadedDocument]:
    if file is None:
        return None
    content = await file.read()
    return UploadedDocument(
        filename=file.filename or "resume.pdf",
        content=content,
        content_type=file.content_type or PDF_CONTENT_TYPE,
    )


@router.post("", response_model=UploadSnapshot, status_code=status.HTTP_201_CREATED)
def create_upload_session(
    registry: UploadSessionRegistry = Depends(get_session_registry),
    current_user: CurrentUser = Depends(get_current_user),
):
    """Open an upload view for the signed-in user."""
    return registry.create(current_user).snapshot()


@router.get("/sample", response_model=SampleJobPosting)
def get_sample_job_posting(current_user: CurrentUser = Depends(get_current_user)):
    """Sample job posting used to quick-fill the upload form."""
    return SampleJobPosting(**SAMPLE_JOB_POSTING)


@router.get("/{session_id}", response_model=UploadSnapshot)
def get_upload_session(
    session_id: str,
    registry: UploadSessionRegistry = Depends(get_session_registry),
    current_user: CurrentUser = Depends(get_current_user),
):
    return registry.get(session_id, current_user).snapshot()


@router.post("/{session_id}/file", response_model=UploadSnapshot)
async def select_file(
    session_id: str,
    file: UploadFile = File(...),
    registry: UploadSessionRegistry = Depends(get_session_registry),
    current_user: CurrentUser = Depends(get_current_user),
):
    session = registry.get(session_id, current_user)
    session.select_file(await _read_upload(file))
    return session.snapshot()


@router.post("/{session_id}/submit", response_model=UploadSnapshot, status_code=status.HTTP_202_ACCEPTED)
@limiter.limit(settings.submit_rate_limit)
async def submit_analysis(
    request: Request,
    session_id: str,
    company_name: str = Form(""),
    job_title: str = Form(""),
    job_description: str = Form(""),
    mode: ResumeMode = Form(ResumeMode.RECRUITER),
    file: Optional[UploadFile] = File(None),
    registry: UploadSessionRegistry = Depends(get_session_registry),
    current_user: CurrentUser = Depends(get_current_user),
):
    """
    Start the analysis pipeline. The run continues in the background;
    poll the session snapshot for progress and the redirect target.
    """
    session = registry.get(session_id, current_user)
    session.submit_analysis(
        company_name,
        job_title,
        job_description,
        document=await _read_upload(file),
        mode=mode,
    )
    return session.snapshot()


@router.post("/{session_id}/cancel", response_model=UploadSnapshot)
async def cancel_upload(
    session_id: str,
    registry: UploadSessionRegistry = Depends(get_session_registry),
    current_user: CurrentUser = Depends(get_current_user),
):
    session = registry.get(session_id, current_user)
    await session.cancel_upload()
    return session.snapshot()


@router.post("/{session_id}/retry", response_model=UploadSnapshot, status_code=status.HTTP_202_ACCEPTED)
async def retry_upload(
    session_id: str,
    registry: UploadSessionRegistry = Depends(get_session_registry),
    current_user: CurrentUser = Depends(get_current_user),
):
    session = registry.get(session_id, current_user)
    session.retry()
    return session.snapshot()


@router.delete("/{session_id}", status_code=status.HTTP_204_NO_CONTENT)
async def close_upload_session(
    session_id: str,
    registry: UploadSessionRegistry = Depends(get_session_registry),
    current_user: CurrentUser = Depends(get_current_user),
):
    await registry.close(session_id, current_user)
