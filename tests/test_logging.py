import logging

from stdiorelay.logging import get_logger, set_level


def test_get_logger_is_cached():
    assert get_logger("stdiorelay.test.cached") is get_logger("stdiorelay.test.cached")


def test_logs_go_to_stderr_only(capsys):
    logger = get_logger("stdiorelay.test.streams")
    assert logger.level == logging.WARN

    logger.warning("read failed")

    captured = capsys.readouterr()
    assert captured.out == ""
    assert "stdiorelay.test.streams - WARNING - read failed" in captured.err


def test_set_level(capsys):
    logger = get_logger("stdiorelay.test.level")
    logger.info("hidden")

    set_level("INFO")
    try:
        logger.info("shown")
    finally:
        set_level(logging.WARN)

    captured = capsys.readouterr()
    assert captured.out == ""
    assert "hidden" not in captured.err
    assert "shown" in captured.err
