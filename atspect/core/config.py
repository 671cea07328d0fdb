import os
import logging
from pydantic import BaseModel, Field
from typing import Dict, List, Optional
from dotenv import load_dotenv

from atspect.core.exceptions import ConfigurationError

load_dotenv()


def _env_bool(name: str, default: str) -> bool:
    return os.getenv(name, default).strip().lower() in {"1", "true", "yes", "on"}


class BackendSettings(BaseModel):
    """Hosted backend-as-a-service: auth, Postgres and blob storage."""
    url: Optional[str] = Field(default_factory=lambda: os.getenv("SUPABASE_URL"))
    key: Optional[str] = Field(default_factory=lambda: os.getenv("SUPABASE_KEY"))
    database_url: str = Field(default_factory=lambda: os.getenv("DATABASE_URL", "sqlite:///./atspect.db"))
    resume_bucket: str = Field(default_factory=lambda: os.getenv("RESUME_BUCKET", "resumes"))
    image_bucket: str = Field(default_factory=lambda: os.getenv("IMAGE_BUCKET", "resume-images"))
    client_info: str = "atspect-app@1.0.0"


class AISettings(BaseModel):
    api_key: Optional[str] = Field(default_factory=lambda: os.getenv("AI_API_KEY"))
    api_url: str = Field(default_factory=lambda: os.getenv("AI_API_URL", "https://api.perplexity.ai/chat/completions"))
    model_name: str = Field(default_factory=lambda: os.getenv("AI_MODEL_NAME", "sonar-pro"))
    kill_switch: bool = Field(default_factory=lambda: _env_bool("AI_KILL_SWITCH", "false"))
    temperature: float = 0.2
    max_tokens: int = 4096
    timeout: float = float(os.getenv("AI_TIMEOUT_SECONDS", "60"))
    max_attempts: int = 2
    retry_delay: float = 1.0


class UploadSettings(BaseModel):
    document_max_size_mb: int = 20
    storage_max_size_mb: int = 50
    min_text_length: int = 50
    preview_scale: float = 1.5
    preflight_timeout: float = 12.0
    pdf_upload_timeout: float = 180.0
    image_upload_timeout: float = 90.0
    cleanup_timeout: float = 15.0
    redirect_delay: float = 1.5
    # Maximum dwell time per stage before the watchdog steps in (seconds).
    stage_timeouts: Dict[str, float] = Field(
        default_factory=lambda: {
            "preflight_check": 15.0,
            "extract_text": 30.0,
            "upload_pdf": 240.0,
            "generate_preview": 60.0,
            "persist_record": 30.0,
            "analyze_with_ai": 120.0,
            "persist_feedback": 30.0,
        }
    )
    default_stage_timeout: float = 45.0
    # Headroom over the AI client's own retry budget before the watchdog may fire.
    stage_grace: float = 5.0


class HealthSettings(BaseModel):
    failure_threshold: int = 3
    reset_timeout: float = 30.0
    probe_timeout: float = 5.0
    combined_timeout: float = 6.0
    connectivity_url: str = Field(
        default_factory=lambda: os.getenv("CONNECTIVITY_PROBE_URL", "https://www.google.com/favicon.ico")
    )
    # Seconds between background connectivity probes; 0 disables polling.
    connectivity_interval: float = Field(default_factory=lambda: float(os.getenv("CONNECTIVITY_INTERVAL_SECONDS", "15")))
    online_debounce: float = 1.0


class Config(BaseModel):
    app_name: str = "ATSpect Resume Feedback"
    environment: str = os.getenv("APP_ENV", "development")
    api_prefix: str = "/api"
    version: str = "1.0.0"
    request_id_header: str = "X-Request-ID"
    log_level: str = os.getenv("LOG_LEVEL", "INFO")

    backend: BackendSettings = Field(default_factory=BackendSettings)
    ai: AISettings = Field(default_factory=AISettings)
    upload: UploadSettings = Field(default_factory=UploadSettings)
    health: HealthSettings = Field(default_factory=HealthSettings)

    rate_limit_enabled: bool = Field(default_factory=lambda: _env_bool("RATE_LIMIT_ENABLED", "true"))
    submit_rate_limit: str = os.getenv("SUBMIT_RATE_LIMIT", "10/minute")

    cors_origins: List[str] = Field(
        default_factory=lambda: [
            o.strip()
            for o in os.getenv(
                "CORS_ORIGINS",
                "http://localhost:3000,http://127.0.0.1:3000",
            ).split(",")
            if o.strip()
        ]
    )


settings = Config()

_logger = logging.getLogger(__name__)


def validate_settings(config: Config = settings) -> None:
    """Fail fast when the backend or AI credentials are missing."""
    missing = []
    if not config.backend.url:
        missing.append("SUPABASE_URL")
    if not config.backend.key:
        missing.append("SUPABASE_KEY")
    if not config.ai.api_key:
        missing.append("AI_API_KEY")
    if missing:
        raise ConfigurationError(
            f"FATAL: The following settings are required: {', '.join(missing)}. "
            f"Set them as environment variables."
        )
    if config.ai.kill_switch:
        _logger.warning("⚠ AI kill switch is active; uploads will receive placeholder feedback.")
