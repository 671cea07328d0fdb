import asyncio
import logging
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set

from sqlalchemy.exc import OperationalError, SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from atspect.core.config import settings
from atspect.core.exceptions import AppException, DatabaseError, ResumeNotFoundError, ValidationError
from atspect.core.resilience import fire_and_forget, retry_with_backoff, run_best_effort, run_in_thread, with_timeout
from atspect.models.resume import ResumeRecord
from atspect.schemas.resume import ResumeCreate, ResumeResponse
from atspect.services.storage_service import StorageService

logger = logging.getLogger(__name__)


def _as_score(value: Any) -> Optional[int]:
    try:
        return int(round(float(value)))
    except (TypeError, ValueError):
        return None


class ResumeService:
    """
    CRUD for resume records, scoped to the owning user.

    SQLAlchemy work runs on a worker thread with its own session so the event
    loop stays free; every call is time-boxed.
    """

    def __init__(
        self,
        session_factory: sessionmaker,
        storage: StorageService,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.session_factory = session_factory
        self.storage = storage
        self._sleep = sleep
        self._cleanups: Set[asyncio.Task] = set()

    def _run(self, fn: Callable[[Session], Any], error_code: str, action: str) -> Any:
        db = self.session_factory()
        try:
            result = fn(db)
            db.commit()
            return result
        except AppException:
            db.rollback()
            raise
        except SQLAlchemyError as e:
            db.rollback()
            # Dropped connections are worth another attempt; constraint errors are not.
            raise DatabaseError(
                f"Failed to {action}: {e}",
                error_code=error_code,
                retryable=isinstance(e, OperationalError),
            ) from e
        finally:
            db.close()

    async def _timed(self, fn: Callable[[Session], Any], *, timeout: float, error_code: str,
                     action: str, message: str) -> Any:
        return await with_timeout(
            run_in_thread(self._run, fn, error_code, action, settle_timeout=timeout), timeout, message
        )

    @staticmethod
    def _find(db: Session, resume_id: str, user_id: Optional[str]) -> Optional[ResumeRecord]:
        query = db.query(ResumeRecord).filter(ResumeRecord.id == resume_id)
        if user_id:
            query = query.filter(ResumeRecord.user_id == user_id)
        return query.first()

    async def create(self, data: ResumeCreate) -> ResumeResponse:
        def _insert(db: Session) -> ResumeResponse:
            feedback = data.feedback
            record = ResumeRecord(
                **data.model_dump(),
                overall_score=_as_score(feedback.get("overall_score")) if feedback else None,
                ats_score=_as_score(feedback.get("ats_score")) if feedback else None,
            )
            db.add(record)
            db.flush()
            db.refresh(record)
            return ResumeResponse.model_validate(record)

        async def _attempt(attempt: int) -> ResumeResponse:
            logger.info(f"Creating resume record {data.id} (attempt {attempt})")
            return await self._timed(
                _insert,
                timeout=30.0,
                error_code="DB_CREATE_FAILED",
                action="create resume record",
                message="Database insert timeout",
            )

        created = await retry_with_backoff(_attempt, max_attempts=2, sleep=self._sleep)
        logger.info(f"Resume record created: {created.id}")
        return created

    async def get_all(self, user_id: str) -> List[ResumeResponse]:
        if not user_id or not str(user_id).strip():
            raise ValidationError("User ID is required", error_code="INVALID_USER_ID")

        def _select(db: Session) -> List[ResumeResponse]:
            rows = (
                db.query(ResumeRecord)
                .filter(ResumeRecord.user_id == user_id)
                .order_by(ResumeRecord.created_at.desc())
                .all()
            )
            return [ResumeResponse.model_validate(row) for row in rows]

        try:
            resumes = await self._timed(
                _select,
                timeout=20.0,
                error_code="DB_FETCH_FAILED",
                action="fetch resumes",
                message="Database fetch timeout",
            )
        except Exception as e:
            logger.error(f"Resume fetch failed for user {user_id}: {e}")
            raise
        logger.debug(f"Found {len(resumes)} resumes for user {user_id}")
        return resumes

    async def get_by_id(self, resume_id: str, user_id: Optional[str] = None) -> ResumeResponse:
        if not resume_id:
            raise ValidationError("Resume ID is required", error_code="INVALID_RESUME_ID")

        def _select(db: Session) -> ResumeResponse:
            record = self._find(db, resume_id, user_id)
            if record is None:
                raise ResumeNotFoundError()
            return ResumeResponse.model_validate(record)

        return await self._timed(
            _select,
            timeout=15.0,
            error_code="DB_GET_FAILED",
            action="get resume",
            message="Database get timeout",
        )

    async def update_feedback(self, resume_id: str, feedback: Dict[str, Any]) -> ResumeResponse:
        if not resume_id or not feedback:
            raise ValidationError("Resume ID and feedback are required", error_code="INVALID_UPDATE_DATA")

        def _update(db: Session) -> ResumeResponse:
            record = self._find(db, resume_id, None)
            if record is None:
                raise ResumeNotFoundError("Resume not found for update")
            record.feedback = feedback
            record.overall_score = _as_score(feedback.get("overall_score"))
            record.ats_score = _as_score(feedback.get("ats_score"))
            record.updated_at = datetime.now(timezone.utc)
            db.flush()
            db.refresh(record)
            return ResumeResponse.model_validate(record)

        async def _attempt(attempt: int) -> ResumeResponse:
            logger.info(f"Updating feedback for resume {resume_id} (attempt {attempt})")
            return await self._timed(
                _update,
                timeout=30.0,
                error_code="DB_UPDATE_FAILED",
                action="update feedback",
                message="Database update timeout",
            )

        return await retry_with_backoff(_attempt, max_attempts=2, sleep=self._sleep)

    async def delete_row(self, resume_id: str) -> bool:
        """Delete only the database row; returns whether a row was removed."""
        def _delete(db: Session) -> bool:
            return db.query(ResumeRecord).filter(ResumeRecord.id == resume_id).delete() > 0

        return await self._timed(
            _delete,
            timeout=20.0,
            error_code="DB_DELETE_FAILED",
            action="delete resume",
            message="Database delete timeout",
        )

    async def delete(self, resume_id: str, user_id: Optional[str] = None) -> None:
        """Delete the record, then clean up its blobs in the background."""
        logger.info(f"Deleting resume {resume_id}")
        resume = await self.get_by_id(resume_id, user_id)
        await self.delete_row(resume_id)

        cleanup_timeout = settings.upload.cleanup_timeout
        if resume.resume_path:
            fire_and_forget(
                self.storage.delete_file(
                    resume.resume_path, bucket=settings.backend.resume_bucket, timeout=cleanup_timeout
                ),
                f"Resume file cleanup for {resume_id}",
                registry=self._cleanups,
            )
        if resume.image_path:
            fire_and_forget(
                self.storage.delete_file(
                    resume.image_path, bucket=settings.backend.image_bucket, timeout=cleanup_timeout
                ),
                f"Preview image cleanup for {resume_id}",
                registry=self._cleanups,
            )
        logger.info(f"Resume {resume_id} deleted")

    async def wait_for_cleanups(self) -> None:
        await run_best_effort(list(self._cleanups), "Pending blob cleanups")
