from pydantic import BaseModel, ConfigDict, Field
from typing import Any, Dict, Optional
from datetime import datetime


class ResumeCreate(BaseModel):
    id: str
    user_id: str
    company_name: str
    job_title: str
    job_description: str
    resume_path: str
    image_path: Optional[str] = None
    feedback: Optional[Dict[str, Any]] = None


class ResumeResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    user_id: str
    company_name: str
    job_title: str
    job_description: str
    resume_path: str
    image_path: Optional[str] = None

    # Null while the analysis is pending
    feedback: Optional[Dict[str, Any]] = None
    overall_score: Optional[int] = None
    ats_score: Optional[int] = None

    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class FileUrlResponse(BaseModel):
    resume_id: str
    kind: str = Field(..., pattern="^(pdf|image)$")
    url: str
    signed: bool
    expires_in: Optional[int] = None
