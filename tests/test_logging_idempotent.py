import logging
import os
import sys

from sitecron.utils import configure_logging, log_event


def test_configure_logging_idempotent(tmp_path, monkeypatch):
    log_file = tmp_path / "app.log"
    monkeypatch.setenv("SC_LOG_LEVEL", "INFO")
    monkeypatch.setenv("SC_LOG_FILE", str(log_file))

    root = logging.getLogger()
    original_handlers = list(root.handlers)
    original_level = root.level
    try:
        root.handlers = []
        configure_logging("sitecron.api")
        configure_logging("sitecron.api")

        stream_handlers = [
            handler
            for handler in root.handlers
            if isinstance(handler, logging.StreamHandler)
            and not isinstance(handler, logging.FileHandler)
        ]
        file_handlers = [
            handler for handler in root.handlers if isinstance(handler, logging.FileHandler)
        ]

        assert len(stream_handlers) == 1
        assert stream_handlers[0].stream is sys.stdout
        assert len(file_handlers) == 1
        assert os.path.abspath(file_handlers[0].baseFilename) == os.path.abspath(
            str(log_file)
        )
    finally:
        for handler in root.handlers:
            if handler not in original_handlers:
                handler.close()
        root.handlers = original_handlers
        root.setLevel(original_level)


def test_per_logger_level_overrides(monkeypatch):
    monkeypatch.setenv("SC_LOG_LEVELS", "sitecron.lock=DEBUG, sitecron.cache=ERROR")
    target = logging.getLogger("sitecron.lock")
    other = logging.getLogger("sitecron.cache")
    original = (target.level, other.level)
    try:
        configure_logging("sitecron.worker")
        assert target.level == logging.DEBUG
        assert other.level == logging.ERROR
    finally:
        target.setLevel(original[0])
        other.setLevel(original[1])


def test_log_event_formats_key_values(caplog):
    logger = logging.getLogger("sitecron.test")
    with caplog.at_level(logging.INFO, logger="sitecron.test"):
        log_event(logger, logging.INFO, "lock_acquired", host="web-1", pid=42)
    assert caplog.records[-1].getMessage() == "event=lock_acquired host=web-1 pid=42"
