"""
Upload orchestration: one upload view's state machine.

A run walks PREFLIGHT_CHECK -> EXTRACT_TEXT -> UPLOAD_PDF -> GENERATE_PREVIEW ->
PERSIST_RECORD -> ANALYZE_WITH_AI -> PERSIST_FEEDBACK -> COMPLETE. Every side
effect (uploaded blob, created record) is tracked on an UploadTransaction so a
failure, a cancellation or a stuck stage can roll it back.
"""
import asyncio
import contextlib
import logging
import time
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, FrozenSet, List, Optional, Tuple

from atspect.core.config import UploadSettings, settings
from atspect.core.exceptions import (
    InvalidTransitionError,
    NotFoundError,
    UploadCancelledError,
    UploadInProgressError,
    ValidationError,
)
from atspect.core.logging import upload_session_var
from atspect.core.resilience import (
    ProgressTracker,
    ProgressUpdate,
    fire_and_forget,
    is_network_error,
    run_best_effort,
    with_timeout,
)
from atspect.schemas.auth import CurrentUser
from atspect.schemas.resume import ResumeCreate
from atspect.schemas.upload import FileValidationResponse, SelectedFile, UploadSnapshot
from atspect.services.analysis_client import ResumeAnalysisClient, ResumeMode, build_placeholder_feedback
from atspect.services.connection_monitor import ONLINE, ConnectionMonitor
from atspect.services.health import HealthCheckService
from atspect.services.pdf_processor import (
    DocumentValidation,
    UploadedDocument,
    extract_text,
    render_first_page_preview,
    validate_document,
)
from atspect.services.resume_service import ResumeService
from atspect.services.storage_service import StorageService, generate_file_path

logger = logging.getLogger(__name__)


class UploadStage(str, Enum):
    IDLE = "idle"
    PREFLIGHT_CHECK = "preflight_check"
    EXTRACT_TEXT = "extract_text"
    UPLOAD_PDF = "upload_pdf"
    GENERATE_PREVIEW = "generate_preview"
    PERSIST_RECORD = "persist_record"
    ANALYZE_WITH_AI = "analyze_with_ai"
    PERSIST_FEEDBACK = "persist_feedback"
    COMPLETE = "complete"
    CANCELLED = "cancelled"
    FAILED = "failed"


PIPELINE: Tuple[UploadStage, ...] = (
    UploadStage.PREFLIGHT_CHECK,
    UploadStage.EXTRACT_TEXT,
    UploadStage.UPLOAD_PDF,
    UploadStage.GENERATE_PREVIEW,
    UploadStage.PERSIST_RECORD,
    UploadStage.ANALYZE_WITH_AI,
    UploadStage.PERSIST_FEEDBACK,
    UploadStage.COMPLETE,
)
IN_PROGRESS: FrozenSet[UploadStage] = frozenset(PIPELINE[:-1])
TERMINAL: FrozenSet[UploadStage] = frozenset({UploadStage.COMPLETE, UploadStage.CANCELLED, UploadStage.FAILED})

# Step number shown to the user for each stage; COMPLETE is the last step.
STEP_INDEX: Dict[UploadStage, int] = {stage: index for index, stage in enumerate(PIPELINE)}
TOTAL_STEPS = STEP_INDEX[UploadStage.COMPLETE]


def _build_transitions() -> Dict[UploadStage, FrozenSet[UploadStage]]:
    table: Dict[UploadStage, FrozenSet[UploadStage]] = {UploadStage.IDLE: frozenset({UploadStage.PREFLIGHT_CHECK})}
    for current, following in zip(PIPELINE, PIPELINE[1:]):
        table[current] = frozenset({following, UploadStage.CANCELLED, UploadStage.FAILED})
    for terminal in TERMINAL:
        table[terminal] = frozenset({UploadStage.IDLE})
    return table


TRANSITIONS = _build_transitions()


def can_transition(current: UploadStage, target: UploadStage) -> bool:
    return target in TRANSITIONS.get(current, frozenset())


FORM_RULES: Dict[str, Tuple[int, int]] = {
    "company_name": (2, 100),
    "job_title": (3, 200),
    "job_description": (50, 5000),
}

SAMPLE_JOB_POSTING = {
    "company_name": "Zomato",
    "job_title": "Software Development Engineer 1",
    "job_description": (
        "As a Software Development Engineer 1 at Zomato, you will be part of a highly collaborative team "
        "responsible for designing, developing, and maintaining scalable software solutions that support our "
        "global food delivery platform. You will be working closely with cross-functional teams including "
        "product managers, designers, and other engineers to deliver high-quality and performant features.\n\n"
        "Key Responsibilities:\n"
        "- Develop robust, efficient, and maintainable code in languages such as Python, Java, or Go\n"
        "- Participate in the design and implementation of new features and improvements\n"
        "- Collaborate in the full software development lifecycle from requirement gathering to deployment\n"
        "- Write automated tests and contribute to ensure reliability and scalability of the platform\n"
        "- Troubleshoot and resolve production issues rapidly\n"
        "- Continuously learn and adopt new technologies and best practices\n\n"
        "Requirements:\n"
        "- Bachelor's degree in Computer Science or related field\n"
        "- Strong foundation in data structures, algorithms, and object-oriented design\n"
        "- Familiarity with microservices architecture and API development\n"
        "- Experience with cloud platforms (AWS/GCP/Azure) is a plus\n"
        "- Excellent communication skills and team-oriented mindset\n"
        "- 0-2 years of professional software development experience\n"
        "- Knowledge of databases (SQL/NoSQL) and caching mechanisms\n"
        "- Understanding of version control systems (Git) and CI/CD pipelines"
    ),
}

AUTH_REDIRECT = "/auth?next=/upload"


@dataclass
class UploadForm:
    company_name: str = ""
    job_title: str = ""
    job_description: str = ""

    def trimmed(self) -> "UploadForm":
        return UploadForm(
            company_name=(self.company_name or "").strip(),
            job_title=(self.job_title or "").strip(),
            job_description=(self.job_description or "").strip(),
        )


def validate_upload_form(form: UploadForm) -> Dict[str, str]:
    """Return field -> message for every rule the form breaks."""
    errors: Dict[str, str] = {}
    for name, (min_length, max_length) in FORM_RULES.items():
        value = getattr(form, name) or ""
        if not value.strip():
            errors[name] = f"{name} is required"
        elif len(value) < min_length:
            errors[name] = f"{name} must be at least {min_length} characters"
        elif len(value) > max_length:
            errors[name] = f"{name} must be no more than {max_length} characters"
    return errors


@dataclass
class UploadTransaction:
    """Side effects of one run, kept only to drive rollback."""
    resume_id: str
    pdf_path: Optional[str] = None
    image_path: Optional[str] = None
    db_record_created: bool = False
    files_uploaded: List[Tuple[str, str]] = field(default_factory=list)


def describe_error(error: BaseException, storage_max_mb: int = settings.upload.storage_max_size_mb) -> Tuple[str, Optional[str], bool]:
    """Map a pipeline failure to (user message, error code, needs sign-in)."""
    code = getattr(error, "error_code", None)
    message = getattr(error, "message", None) or str(error)
    lowered = message.lower()

    if code in {"AUTH_FAILED", "AUTH_REQUIRED", "PERMISSION_DENIED"} or "authentication" in lowered:
        return "Authentication issue detected. Please refresh the page and sign in again.", code, True
    if code in {"UPLOAD_TIMEOUT", "OPERATION_TIMEOUT"} or "timeout" in lowered or "timed out" in lowered:
        return "Upload timed out. Please check your internet connection and try again.", code, False
    if code in {"CONNECTIVITY_FAILED", "CONNECTION_FAILED"} or is_network_error(error):
        return "Connection issues detected. Please check your internet connection and try again.", code, False
    if code == "FILE_TOO_LARGE":
        return f"File size too large. Please use a file smaller than {storage_max_mb}MB.", code, False
    if code == "PDF_TEXT_EXTRACTION_FAILED":
        return "Could not read your PDF. Please ensure it contains selectable text, not just images.", code, False
    if code and code.startswith("DB_"):
        return "Database error occurred. Please try again or contact support if the issue persists.", code, False
    return f"Upload failed: {message or 'An unexpected error occurred. Please try again.'}", code, False


class UploadSession:
    """
    State of one upload view. At most one run (and one UploadTransaction)
    is active at a time; every state mutation made by a run first checks the
    view is still mounted and the run is still the current one.
    """

    def __init__(
        self,
        user: CurrentUser,
        *,
        storage: StorageService,
        resumes: ResumeService,
        health: HealthCheckService,
        analysis: ResumeAnalysisClient,
        monitor: Optional[ConnectionMonitor] = None,
        config: UploadSettings = settings.upload,
        session_id: Optional[str] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.session_id = session_id or str(uuid.uuid4())
        self.user = user
        self.storage = storage
        self.resumes = resumes
        self.health = health
        self.analysis = analysis
        self.monitor = monitor
        self.config = config
        self._clock = clock

        self.stage = UploadStage.IDLE
        self.error: Optional[str] = None
        self.error_code: Optional[str] = None
        self.auth_redirect: Optional[str] = None
        self.warnings: List[str] = []
        self.resume_id: Optional[str] = None
        self.redirect_to: Optional[str] = None
        self.selected_file: Optional[UploadedDocument] = None
        self.file_validation: Optional[DocumentValidation] = None
        self.form_errors: Dict[str, str] = {}
        self.last_successful_upload: Optional[Dict[str, Any]] = None
        self.status_text = ""
        self.last_progress_at = clock()
        self.tracker = self._new_tracker()

        self.is_online = monitor.is_online if monitor else True
        self.connection_healthy = True

        self._mounted = True
        self._generation = 0
        self._task: Optional[asyncio.Task] = None
        self._transaction: Optional[UploadTransaction] = None
        self._last_request: Optional[Tuple[UploadForm, UploadedDocument, ResumeMode]] = None
        self._cancel_requested = False
        self._rolling_back = False
        self._stuck_message: Optional[str] = None
        self._watchdog: Optional[asyncio.TimerHandle] = None
        self._skip_preflight: Optional[asyncio.Event] = None
        self._unsubscribe = monitor.add_listener(self._on_connection_change) if monitor else None

    # ------------------------------------------------------------------
    # State helpers
    # ------------------------------------------------------------------

    @property
    def is_processing(self) -> bool:
        return self.stage in IN_PROGRESS

    @property
    def task(self) -> Optional[asyncio.Task]:
        return self._task

    @property
    def transaction(self) -> Optional[UploadTransaction]:
        return self._transaction

    def _new_tracker(self) -> ProgressTracker:
        return ProgressTracker(TOTAL_STEPS, self._on_progress)

    def _on_progress(self, update: ProgressUpdate) -> None:
        self.status_text = update.message
        self.last_progress_at = self._clock()
        logger.debug(f"Progress {update.step}/{update.total_steps} ({update.progress_percent}%): {update.message}")

    def _is_current(self, generation: int) -> bool:
        return self._mounted and generation == self._generation

    def _transition(self, target: UploadStage) -> None:
        if not can_transition(self.stage, target):
            raise InvalidTransitionError(self.stage.value, target.value)
        logger.debug(f"Upload {self.session_id}: {self.stage.value} -> {target.value}")
        self.stage = target

    def _enter(self, generation: int, stage: UploadStage, message: str) -> None:
        # Step boundary: stop here if the run was cancelled or superseded.
        if self._cancel_requested or not self._is_current(generation):
            raise UploadCancelledError()
        self._transition(stage)
        self.tracker.update(STEP_INDEX[stage], message)
        self._arm_watchdog(generation, stage)

    def _set_status(self, generation: int, message: str) -> None:
        if self._is_current(generation):
            self.status_text = message
            self.last_progress_at = self._clock()

    def _reset_transient(self) -> None:
        self.tracker = self._new_tracker()
        self.status_text = ""
        self._transaction = None

    # ------------------------------------------------------------------
    # Stuck-stage watchdog
    # ------------------------------------------------------------------

    def _arm_watchdog(self, generation: int, stage: UploadStage) -> None:
        self._disarm_watchdog()
        self._watchdog = asyncio.get_running_loop().call_later(self._stage_limit(stage), self._on_stuck, generation, stage)

    def _stage_limit(self, stage: UploadStage) -> float:
        limit = self.config.stage_timeouts.get(stage.value, self.config.default_stage_timeout)
        if stage == UploadStage.ANALYZE_WITH_AI:
            # AI failures are not fatal, so the client must exhaust its own retries first.
            limit = max(limit, self.analysis.time_budget + self.config.stage_grace)
        return limit

    def _disarm_watchdog(self) -> None:
        if self._watchdog is not None:
            self._watchdog.cancel()
            self._watchdog = None

    def _on_stuck(self, generation: int, stage: UploadStage) -> None:
        self._watchdog = None
        if not self._is_current(generation) or self.stage != stage:
            return
        step = STEP_INDEX[stage]
        logger.warning(f"Step {step} ({stage.value}) appears stuck, attempting recovery")
        if stage == UploadStage.PREFLIGHT_CHECK:
            self.status_text = "Skipping health checks, proceeding with upload..."
            if self._skip_preflight is not None:
                self._skip_preflight.set()
            return
        self._stuck_message = f"Upload appears stuck at step {step}. Please try again."
        if self._task is not None and not self._task.done() and not self._cancel_requested:
            self._cancel_requested = True
            self._task.cancel()

    # ------------------------------------------------------------------
    # Connectivity
    # ------------------------------------------------------------------

    def _on_connection_change(self, status: str) -> None:
        if not self._mounted:
            return
        self.is_online = status == ONLINE
        if not self.is_online:
            logger.warning("Connection lost")
            self.connection_healthy = False
            return
        logger.info("Connection restored - checking health")
        try:
            asyncio.get_running_loop()
        except RuntimeError:
            return
        fire_and_forget(self.refresh_health(), f"Health re-check for upload {self.session_id}")

    async def refresh_health(self) -> bool:
        try:
            report = await with_timeout(self.health.test_all_connections(), 10.0, "Health check timeout")
            healthy = report.overall
            if not healthy:
                logger.warning(f"Some services unhealthy: {report.details}")
        except Exception as e:
            logger.warning(f"Health check failed or timed out: {e}")
            healthy = False
        if self._mounted:
            self.connection_healthy = healthy
        return healthy

    # ------------------------------------------------------------------
    # Client operations
    # ------------------------------------------------------------------

    def select_file(self, document: Optional[UploadedDocument]) -> DocumentValidation:
        if self.is_processing:
            raise UploadInProgressError()
        self.selected_file = document
        self.error = None
        self.error_code = None
        validation = validate_document(document)
        self.file_validation = validation if document is not None else None
        if document is not None and not validation.is_valid:
            self.error = f"File validation failed: {', '.join(validation.errors)}"
            self.error_code = "INVALID_FILE"
        if document is not None:
            logger.debug(
                f"File selected: {document.filename} ({document.size} bytes, valid={validation.is_valid})"
            )
        return validation

    def _reject(self, message: str, code: str, details: Optional[Dict[str, Any]] = None) -> None:
        self.error = message
        self.error_code = code
        raise ValidationError(message, error_code=code, details=details)

    def submit_analysis(
        self,
        company_name: str,
        job_title: str,
        job_description: str,
        document: Optional[UploadedDocument] = None,
        mode: ResumeMode = ResumeMode.RECRUITER,
    ) -> asyncio.Task:
        """Validate inputs and start a run; returns the pipeline task."""
        if self.is_processing:
            raise UploadInProgressError()
        if not self.user or not self.user.id:
            self.auth_redirect = AUTH_REDIRECT
            self._reject("Please sign in to upload your resume.", "AUTH_REQUIRED")
        if document is not None:
            self.select_file(document)

        document = self.selected_file
        if document is None:
            self._reject("Please select a PDF file to upload.", "INVALID_FILE")
        if self.file_validation is None or not self.file_validation.is_valid:
            errors = self.file_validation.errors if self.file_validation else []
            self._reject(f"File validation failed: {', '.join(errors)}", "INVALID_FILE", {"errors": errors})

        form = UploadForm(company_name, job_title, job_description).trimmed()
        self.form_errors = validate_upload_form(form)
        if self.form_errors:
            self._reject(next(iter(self.form_errors.values())), "VALIDATION_ERROR", {"form_errors": self.form_errors})

        return self._start(form, document, ResumeMode(mode))

    def retry(self) -> asyncio.Task:
        if self.is_processing:
            raise UploadInProgressError()
        if self._last_request is None:
            raise ValidationError("There is no previous upload to retry.", error_code="NOTHING_TO_RETRY")
        form, document, mode = self._last_request
        logger.info(f"Retrying upload {self.session_id}")
        return self._start(form, document, mode)

    async def cancel_upload(self) -> bool:
        """Abort the in-flight run and roll back its side effects."""
        task = self._task
        if not self.is_processing or task is None or task.done():
            return False
        if self._rolling_back:
            logger.info(f"Upload {self.session_id} is already rolling back; cancel ignored")
            return False
        if not self._cancel_requested:
            logger.info(f"User cancelled upload {self.session_id}")
            self._cancel_requested = True
            task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await task
        # A task cancelled before it starts never runs its own cleanup.
        self._disarm_watchdog()
        self._finish_cancelled(self._generation)
        return True

    async def close(self) -> None:
        """Unmount the view; an in-flight run is cancelled and rolled back."""
        if self._unsubscribe:
            self._unsubscribe()
            self._unsubscribe = None
        task = self._task
        if task is not None and not task.done():
            if not self._cancel_requested and not self._rolling_back:
                self._cancel_requested = True
                task.cancel()
            self._mounted = False
            with contextlib.suppress(asyncio.CancelledError):
                await task
        self._mounted = False
        self._disarm_watchdog()

    def snapshot(self) -> UploadSnapshot:
        progress = self.tracker.current
        return UploadSnapshot(
            session_id=self.session_id,
            stage=self.stage.value,
            is_processing=self.is_processing,
            step=progress.step,
            total_steps=TOTAL_STEPS,
            progress_percent=progress.progress_percent,
            status_text=self.status_text,
            error=self.error,
            error_code=self.error_code,
            auth_redirect=self.auth_redirect,
            warnings=list(self.warnings),
            resume_id=self.resume_id,
            redirect_to=self.redirect_to,
            redirect_delay=self.config.redirect_delay if self.redirect_to else 0.0,
            selected_file=(
                SelectedFile(
                    filename=self.selected_file.filename,
                    size=self.selected_file.size,
                    content_type=self.selected_file.content_type,
                )
                if self.selected_file
                else None
            ),
            file_validation=(
                FileValidationResponse(
                    is_valid=self.file_validation.is_valid,
                    errors=self.file_validation.errors,
                    size=self.file_validation.size,
                    content_type=self.file_validation.content_type,
                )
                if self.file_validation
                else None
            ),
            form_errors=dict(self.form_errors),
            last_successful_upload=self.last_successful_upload,
            is_online=self.is_online,
            connection_healthy=self.connection_healthy,
        )

    # ------------------------------------------------------------------
    # Pipeline
    # ------------------------------------------------------------------

    def _start(self, form: UploadForm, document: UploadedDocument, mode: ResumeMode) -> asyncio.Task:
        if self.stage in TERMINAL:
            self._transition(UploadStage.IDLE)
        self._generation += 1
        self._cancel_requested = False
        self._stuck_message = None
        self._last_request = (form, document, mode)
        self.error = None
        self.error_code = None
        self.auth_redirect = None
        self.warnings = []
        self.resume_id = None
        self.redirect_to = None
        self.tracker = self._new_tracker()
        self._enter(self._generation, UploadStage.PREFLIGHT_CHECK, "Performing pre-flight checks...")
        self._task = asyncio.create_task(self._run(self._generation, form, document, mode))
        return self._task

    async def _run(self, generation: int, form: UploadForm, document: UploadedDocument, mode: ResumeMode) -> None:
        # The task runs in its own copy of the context, so this stays scoped to the run.
        upload_session_var.set(self.session_id)
        transaction = UploadTransaction(resume_id=str(uuid.uuid4()))
        self._transaction = transaction
        try:
            await self._pipeline(generation, transaction, form, document, mode)
        except asyncio.CancelledError:
            await self._cleanup(transaction)
            self._finish_cancelled(generation)
            raise
        except UploadCancelledError:
            await self._cleanup(transaction)
            self._finish_cancelled(generation)
        except Exception as e:
            logger.error(f"Upload process failed at {self.stage.value}: {e}")
            await self._cleanup(transaction)
            if self._is_current(generation):
                message, code, needs_auth = describe_error(e, self.config.storage_max_size_mb)
                if self.stage in IN_PROGRESS:
                    self._transition(UploadStage.FAILED)
                self.error = message
                self.error_code = code
                self.auth_redirect = AUTH_REDIRECT if needs_auth else None
                self._reset_transient()
        finally:
            self._disarm_watchdog()
            if self._transaction is transaction:
                self._transaction = None

    def _finish_cancelled(self, generation: int) -> None:
        if not self._is_current(generation) or self.stage not in IN_PROGRESS:
            return
        if self._stuck_message:
            # A stuck stage is a failure the user should see.
            self._transition(UploadStage.FAILED)
            self.error = self._stuck_message
            self.error_code = "UPLOAD_STUCK"
        else:
            logger.info(f"Upload {self.session_id} was cancelled by user")
            self._transition(UploadStage.CANCELLED)
            self.error = None
            self.error_code = None
        self._reset_transient()

    async def _preflight(self, generation: int) -> None:
        self._skip_preflight = asyncio.Event()
        probe = asyncio.ensure_future(
            with_timeout(
                self.health.test_all_connections(),
                self.config.preflight_timeout,
                "Pre-flight checks timed out",
            )
        )
        skipped = asyncio.ensure_future(self._skip_preflight.wait())
        try:
            done, _ = await asyncio.wait({probe, skipped}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            for pending in (probe, skipped):
                if not pending.done():
                    pending.cancel()
            self._skip_preflight = None

        # Preflight never blocks progression; problems only become warnings.
        if probe not in done:
            self._warn(generation, "Pre-flight checks skipped; proceeding with upload.")
            return
        error = probe.exception()
        if error is not None:
            logger.warning(f"Pre-flight checks failed, proceeding anyway: {error}")
            self._warn(generation, "Pre-flight checks failed; proceeding with upload.")
        elif not probe.result().overall:
            logger.warning(f"Some services unhealthy, proceeding with caution: {probe.result().details}")
            self._warn(generation, "Some services are unhealthy; proceeding with upload.")
        else:
            logger.info("Pre-flight checks passed")

    def _warn(self, generation: int, message: str) -> None:
        if self._is_current(generation):
            self.warnings.append(message)

    async def _pipeline(
        self,
        generation: int,
        transaction: UploadTransaction,
        form: UploadForm,
        document: UploadedDocument,
        mode: ResumeMode,
    ) -> None:
        resume_bucket = settings.backend.resume_bucket
        image_bucket = settings.backend.image_bucket

        await self._preflight(generation)

        self._enter(generation, UploadStage.EXTRACT_TEXT, "Extracting text from PDF...")
        resume_text = await asyncio.to_thread(extract_text, document)
        logger.info(f"Extracted {len(resume_text)} characters from PDF")

        self._enter(generation, UploadStage.UPLOAD_PDF, "Uploading PDF file...")
        pdf_path = generate_file_path(self.user.id, document.filename, "pdf")
        # Registered before the request so a cancelled in-flight upload is still cleaned up.
        transaction.files_uploaded.append((pdf_path, resume_bucket))

        def _upload_progress(info: Dict[str, Any]) -> None:
            if info.get("stage") == "uploading":
                self._set_status(generation, f"Uploading PDF... {info.get('progress', 0)}%")
            elif info.get("stage") == "retrying":
                self._set_status(generation, info.get("message", "Upload failed, retrying..."))

        def _upload_retry(info: Dict[str, Any]) -> None:
            logger.warning(f"Upload retry {info['attempt']}/{info['max_retries']}: {info['error']}")
            self._set_status(generation, f"Upload attempt {info['attempt']} failed, retrying...")

        await self.storage.upload_file(
            document,
            pdf_path,
            bucket=resume_bucket,
            skip_health_check=True,
            max_retries=3,
            timeout=self.config.pdf_upload_timeout,
            on_progress=_upload_progress,
            on_retry=_upload_retry,
        )
        transaction.pdf_path = pdf_path
        self._set_status(generation, "PDF uploaded successfully")
        logger.info(f"PDF uploaded: {pdf_path}")

        self._enter(generation, UploadStage.GENERATE_PREVIEW, "Creating image preview...")
        image_path = await self._upload_preview(generation, transaction, document, image_bucket)

        self._enter(generation, UploadStage.PERSIST_RECORD, "Saving resume information...")
        # Marked before the insert so a cancelled insert is still rolled back.
        transaction.db_record_created = True
        await self.resumes.create(
            ResumeCreate(
                id=transaction.resume_id,
                user_id=self.user.id,
                company_name=form.company_name,
                job_title=form.job_title,
                job_description=form.job_description,
                resume_path=pdf_path,
                image_path=image_path,
                feedback=None,
            )
        )
        self._set_status(generation, "Resume information saved")
        logger.info(f"Database record created: {transaction.resume_id}")

        self._enter(
            generation,
            UploadStage.ANALYZE_WITH_AI,
            "Analyzing resume with AI (this may take up to 90 seconds)...",
        )
        try:
            feedback = await self.analysis.analyze(
                resume_text, form.job_title, form.job_description, form.company_name, mode
            )
            logger.info("AI analysis completed")
        except Exception as e:
            logger.error(f"AI analysis failed, saving placeholder feedback: {e}")
            feedback = build_placeholder_feedback()
            self._warn(generation, "AI analysis is temporarily unavailable; placeholder feedback was saved.")

        self._enter(generation, UploadStage.PERSIST_FEEDBACK, "Saving analysis results...")
        await self.resumes.update_feedback(transaction.resume_id, feedback)

        self._complete(generation, transaction, form, document)

    async def _upload_preview(
        self,
        generation: int,
        transaction: UploadTransaction,
        document: UploadedDocument,
        image_bucket: str,
    ) -> Optional[str]:
        """Render and store the preview. Failure leaves the run without one."""
        try:
            preview = await asyncio.to_thread(render_first_page_preview, document, self.config.preview_scale)
            image_path = generate_file_path(self.user.id, preview.filename, "image")
            transaction.files_uploaded.append((image_path, image_bucket))
            await self.storage.upload_file(
                preview,
                image_path,
                bucket=image_bucket,
                skip_health_check=True,
                timeout=self.config.image_upload_timeout,
                max_retries=2,
            )
        except Exception as e:
            logger.warning(f"Image conversion failed (non-critical): {e}")
            self._set_status(generation, "PDF uploaded (preview generation failed)")
            self._warn(generation, "Preview image could not be generated.")
            return None

        transaction.image_path = image_path
        self._set_status(generation, "Image preview created successfully")
        return image_path

    def _complete(self, generation: int, transaction: UploadTransaction, form: UploadForm,
                  document: UploadedDocument) -> None:
        if self._cancel_requested or not self._is_current(generation):
            raise UploadCancelledError()
        self._disarm_watchdog()
        self._transition(UploadStage.COMPLETE)
        self.tracker.complete("Analysis complete! Redirecting...")
        self.resume_id = transaction.resume_id
        self.redirect_to = f"/resume/{transaction.resume_id}"
        self.last_successful_upload = {
            "resume_id": transaction.resume_id,
            "timestamp": int(self._clock() * 1000),
            "file_name": document.filename,
            "company_name": form.company_name,
            "job_title": form.job_title,
        }
        logger.info(f"Upload {self.session_id} complete: resume {transaction.resume_id}")

    async def _cleanup(self, transaction: UploadTransaction) -> None:
        """Roll back once the run has stopped; cancel requests are ignored until it finishes."""
        self._disarm_watchdog()
        self._rolling_back = True
        try:
            await asyncio.shield(self._rollback(transaction))
        finally:
            self._rolling_back = False

    async def _rollback(self, transaction: UploadTransaction) -> None:
        """Best-effort removal of everything the run created. Never raises."""
        logger.info(
            f"Starting cleanup for failed upload {transaction.resume_id} "
            f"(record={transaction.db_record_created}, files={len(transaction.files_uploaded)})"
        )
        tasks = []
        if transaction.db_record_created:
            tasks.append(self.resumes.delete_row(transaction.resume_id))
        for path, bucket in transaction.files_uploaded:
            tasks.append(self.storage.delete_file(path, bucket=bucket, timeout=self.config.cleanup_timeout))
        await run_best_effort(tasks, f"Cleanup of upload {transaction.resume_id}")


SessionFactory = Callable[[CurrentUser], UploadSession]


class UploadSessionRegistry:
    """Upload sessions by id, each owned by one user."""

    def __init__(self, factory: SessionFactory):
        self._factory = factory
        self._sessions: Dict[str, UploadSession] = {}

    def create(self, user: CurrentUser) -> UploadSession:
        session = self._factory(user)
        self._sessions[session.session_id] = session
        logger.info(f"Upload session {session.session_id} opened for user {user.id}")
        return session

    def get(self, session_id: str, user: CurrentUser) -> UploadSession:
        session = self._sessions.get(session_id)
        if session is None or session.user.id != user.id:
            raise NotFoundError("Upload session not found", error_code="UPLOAD_SESSION_NOT_FOUND")
        return session

    async def close(self, session_id: str, user: CurrentUser) -> None:
        session = self.get(session_id, user)
        await session.close()
        self._sessions.pop(session_id, None)
        logger.info(f"Upload session {session_id} closed")

    async def close_all(self) -> None:
        sessions = list(self._sessions.values())
        self._sessions.clear()
        await run_best_effort([session.close() for session in sessions], "Closing upload sessions")

    def __len__(self) -> int:
        return len(self._sessions)
