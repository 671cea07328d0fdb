from sqlalchemy import Column, DateTime, Integer, JSON, String, Text
from sqlalchemy.sql import func

from atspect.database import Base


class ResumeRecord(Base):
    __tablename__ = "resumes"

    # Generated before persistence so blob paths can be tracked for rollback.
    id = Column(String(36), primary_key=True, index=True)
    user_id = Column(String(64), nullable=False, index=True)
    company_name = Column(String(100), nullable=False)
    job_title = Column(String(200), nullable=False)
    job_description = Column(Text, nullable=False)
    resume_path = Column(String(512), nullable=False)
    image_path = Column(String(512), nullable=True)

    # Null while pending analysis
    feedback = Column(JSON, nullable=True)
    overall_score = Column(Integer, nullable=True)
    ats_score = Column(Integer, nullable=True)

    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False)
