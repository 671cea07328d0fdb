import json
import logging

from atspect.core.logging import CustomJsonFormatter, request_id_var, upload_session_var


def format_record(message="Upload step finished"):
    formatter = CustomJsonFormatter("%(timestamp) %(level) %(name) %(message)")
    record = logging.LogRecord("atspect.services.upload_orchestrator", logging.WARNING, __file__, 1, message, None, None)
    return json.loads(formatter.format(record))


def test_formatter_adds_level_and_timestamp():
    """Test every line carries an upper-case level and an ISO timestamp."""
    line = format_record()
    assert line["level"] == "WARNING"
    assert line["name"] == "atspect.services.upload_orchestrator"
    assert line["message"] == "Upload step finished"
    assert "T" in line["timestamp"]
    assert "request_id" not in line
    assert "upload_session_id" not in line


def test_formatter_adds_request_and_upload_context():
    """Test the correlation id and the running upload session are attached when set."""
    request_token = request_id_var.set("req-42")
    session_token = upload_session_var.set("session-7")
    try:
        line = format_record()
    finally:
        upload_session_var.reset(session_token)
        request_id_var.reset(request_token)
    assert line["request_id"] == "req-42"
    assert line["upload_session_id"] == "session-7"
