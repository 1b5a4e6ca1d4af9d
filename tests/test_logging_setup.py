"""Tests for logging configuration."""

import logging

from lobclient.infra.logging_setup import KeyValueFormatter, setup_logging


def make_record(extra=None):
    record = logging.LogRecord("Session", logging.INFO, __file__, 1, "Cancel order", (), None)
    for key, value in (extra or {}).items():
        setattr(record, key, value)
    return record


def test_formatter_appends_extra_fields():
    formatter = KeyValueFormatter("%(name)s: %(message)s")

    line = formatter.format(make_record({"order_id": 7, "reason": "price band"}))

    assert line == "Session: Cancel order order_id=7 reason='price band'"


def test_formatter_without_extra():
    formatter = KeyValueFormatter("%(levelname)s %(message)s")

    assert formatter.format(make_record()) == "INFO Cancel order"


def test_setup_logging_configures_root_and_file(tmp_path):
    log_file = tmp_path / "client.log"
    root = logging.getLogger()
    saved_handlers, saved_level = list(root.handlers), root.level
    try:
        setup_logging({"level": "debug", "file": str(log_file)})

        assert root.level == logging.DEBUG
        assert any(isinstance(h, logging.FileHandler) for h in root.handlers)

        logging.getLogger("EngineClient").info("Engine HTTP error", extra={"status": 500})
        for handler in root.handlers:
            handler.flush()
        assert "Engine HTTP error status=500" in log_file.read_text(encoding="utf-8")
    finally:
        for handler in list(root.handlers):
            root.removeHandler(handler)
            handler.close()
        for handler in saved_handlers:
            root.addHandler(handler)
        root.setLevel(saved_level)
