import logging
from contextvars import ContextVar
from datetime import datetime, timezone
from typing import Any, Dict

from pythonjsonlogger import jsonlogger

# Correlation ID of the HTTP request being served
request_id_var: ContextVar[str] = ContextVar("request_id", default="")
# Upload session whose pipeline is running; set inside each run's task
upload_session_var: ContextVar[str] = ContextVar("upload_session_id", default="")


class CustomJsonFormatter(jsonlogger.JsonFormatter):
    def add_fields(self, log_record: Dict[str, Any], record: logging.LogRecord, message_dict: Dict[str, Any]) -> None:
        super().add_fields(log_record, record, message_dict)

        req_id = request_id_var.get()
        if req_id:
            log_record["request_id"] = req_id

        # Pipeline lines outlive the request that started them, so they carry their own key.
        session_id = upload_session_var.get()
        if session_id:
            log_record["upload_session_id"] = session_id

        if not log_record.get("timestamp"):
            log_record["timestamp"] = datetime.now(timezone.utc).isoformat()
        log_record["level"] = record.levelname


def setup_logging(level: str = "INFO"):
    logger = logging.getLogger()
    # Idempotent: the app module may be imported more than once per process (tests).
    if any(isinstance(h.formatter, CustomJsonFormatter) for h in logger.handlers):
        return
    log_handler = logging.StreamHandler()
    log_handler.setFormatter(CustomJsonFormatter("%(timestamp) %(level) %(name) %(message)"))
    logger.addHandler(log_handler)
    logger.setLevel(level)

    # Request logs come from the middleware; the PDF and HTTP libraries are noisy below WARNING.
    for name in ("uvicorn.access", "sqlalchemy.engine", "urllib3", "PyPDF2"):
        logging.getLogger(name).setLevel(logging.WARNING)
