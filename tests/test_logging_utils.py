import json
import logging
from pathlib import Path

from claude_relay.config import LogConfig
from claude_relay.logging_utils import log_event, prompt_preview, setup_rotating_logger


def test_rotating_loggers_are_isolated(tmp_path: Path):
    log_a = tmp_path / "a.log"
    log_b = tmp_path / "b.log"
    cfg_a = LogConfig(path=log_a, max_bytes=80, backup_count=1)
    cfg_b = LogConfig(path=log_b, max_bytes=40, backup_count=2)

    logger_a = setup_rotating_logger("relay:a", cfg_a)
    logger_b = setup_rotating_logger("relay:b", cfg_b)

    logger_a.info("first")
    logger_b.info("second")

    assert log_a.exists()
    assert log_b.exists()
    assert logger_a.handlers[0] is not logger_b.handlers[0]

    # Rotation should be contained per logger
    for _ in range(10):
        logger_b.info("x" * 20)
    logger_b.handlers[0].flush()
    assert (tmp_path / "b.log.1").exists()

    # Reusing the same name reuses the same handler
    same_logger = setup_rotating_logger("relay:a", cfg_a)
    assert same_logger is logger_a
    assert len(same_logger.handlers) == 1


def test_log_event_emits_json(caplog):
    logger = logging.getLogger("test.log_event")
    with caplog.at_level(logging.INFO, logger="test.log_event"):
        log_event(
            logger,
            logging.INFO,
            "queue.enqueued",
            chat="telegram:1",
            skipped=None,
            path=Path("/tmp/x"),
            exc=ValueError("bad"),
        )
    payload = json.loads(caplog.records[-1].getMessage())
    assert payload == {
        "event": "queue.enqueued",
        "chat": "telegram:1",
        "path": "/tmp/x",
        "error": "bad",
        "error_type": "ValueError",
    }


def test_log_event_respects_level(caplog):
    logger = logging.getLogger("test.log_event.level")
    with caplog.at_level(logging.WARNING, logger="test.log_event.level"):
        log_event(logger, logging.INFO, "ignored")
    assert caplog.records == []


def test_prompt_preview_flattens_and_truncates():
    assert prompt_preview("line one\nline two") == "line one line two"
    assert prompt_preview("y" * 80) == "y" * 50 + "..."
