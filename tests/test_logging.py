import json
import logging

import pytest

from trustgate.core.logging import (
    SecureLogFilter,
    StructuredLogFormatter,
    get_secure_logger,
    short_id,
)

pytestmark = pytest.mark.unit


def _record(msg, *args):
    return logging.LogRecord("t", logging.INFO, __file__, 1, msg, args, None)


def test_device_digests_are_redacted():
    record = _record("Device %s registered", "f" * 64)
    SecureLogFilter().filter(record)
    assert "f" * 64 not in record.getMessage()
    assert "[REDACTED]" in record.getMessage()


def test_tokens_are_redacted():
    record = _record("Authorization: Bearer abc.def token=xyz")
    SecureLogFilter().filter(record)
    assert "xyz" not in record.getMessage()


def test_plain_messages_untouched():
    record = _record("Login blocked for %s", "alice")
    SecureLogFilter().filter(record)
    assert record.getMessage() == "Login blocked for alice"


def test_short_id():
    assert short_id("0123456789abcdef") == "01234567..."
    assert short_id("abc") == "abc"
    assert short_id(None) == "-"


def test_structured_formatter():
    output = json.loads(StructuredLogFormatter().format(_record("hello %s", "world")))
    assert output["message"] == "hello world"
    assert output["level"] == "INFO"


def test_file_logger(tmp_path):
    logger = get_secure_logger(
        "trustgate.tests.file", log_dir=tmp_path, enable_console=False, enable_json=True,
    )
    logger.info("Device %s seen", "e" * 64)
    for handler in logger.handlers:
        handler.flush()

    content = (tmp_path / "trustgate_tests_file.log").read_text()
    assert "e" * 64 not in content
    assert json.loads(content.splitlines()[0])["logger"] == "trustgate.tests.file"
    assert logger.propagate is False
