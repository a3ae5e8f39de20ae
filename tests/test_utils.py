import json
import logging

from keyrack.utils import (
    StructuredFormatter,
    format_duration,
    mask_command,
    sanitize_name,
    setup_logging,
)


def test_mask_command_hides_flag_values_and_assignments():
    text = mask_command(["tool", "--secret-key", "hunter2", "secret_key=abc", "--bucket", "b"])
    assert "hunter2" not in text
    assert "abc" not in text
    assert "--bucket b" in text


def test_sanitize_name():
    assert sanitize_name("First.Last_2@Mail") == "first-last-2-mail"


def test_format_duration():
    assert format_duration(45) == "45s"
    assert format_duration(83) == "1m 23s"
    assert format_duration(3725) == "1h 2m 5s"


def test_structured_formatter_lifts_extra_fields():
    record = logging.LogRecord("keyrack", logging.INFO, __file__, 1, "created", None, None)
    record.event = "project_created"
    record.project = "proj-a"
    data = json.loads(StructuredFormatter().format(record))
    assert data["message"] == "created"
    assert data["event"] == "project_created"
    assert data["project"] == "proj-a"


def test_setup_logging_writes_json_file(tmp_path):
    log_file = tmp_path / "logs" / "keyrack.log"
    logger = setup_logging(log_file, "DEBUG", console_output=False)
    try:
        logging.getLogger("keyrack.session").info("hello", extra={"event": "session_started"})
        for handler in logger.handlers:
            handler.flush()
        line = json.loads(log_file.read_text().splitlines()[-1])
        assert line["event"] == "session_started"
        assert line["logger"] == "keyrack.session"
    finally:
        for handler in list(logger.handlers):
            handler.close()
        logger.handlers = []
