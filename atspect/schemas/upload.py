from pydantic import BaseModel
from typing import Any, Dict, List, Optional


class SelectedFile(BaseModel):
    filename: str
    size: int
    content_type: Optional[str] = None


class FileValidationResponse(BaseModel):
    is_valid: bool
    errors: List[str] = []
    size: int = 0
    content_type: Optional[str] = None


class UploadSnapshot(BaseModel):
    """Everything an upload view needs to render its current state."""
    session_id: str
    stage: str
    is_processing: bool

    step: int = 0
    total_steps: int
    progress_percent: int = 0
    status_text: str = ""

    error: Optional[str] = None
    error_code: Optional[str] = None
    auth_redirect: Optional[str] = None
    warnings: List[str] = []

    resume_id: Optional[str] = None
    redirect_to: Optional[str] = None
    redirect_delay: float = 0.0

    selected_file: Optional[SelectedFile] = None
    file_validation: Optional[FileValidationResponse] = None
    form_errors: Dict[str, str] = {}
    last_successful_upload: Optional[Dict[str, Any]] = None

    is_online: bool = True
    connection_healthy: bool = True


class SampleJobPosting(BaseModel):
    company_name: str
    job_title: str
    job_description: str
