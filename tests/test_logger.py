import inspect
from datetime import datetime, timedelta

import pytest

from advocache import logger

INFO_PREFIX = "\033[34mINFO: \033[0m"
STAMP_FORMAT = "%Y/%m/%d %H:%M:%S"


@pytest.fixture(autouse=True)
def restore_level():
    yield
    logger.set_level(logger.Level.INFO)


def test_info_uses_coloured_prefix(capsys):
    logger.info("hello")
    out = capsys.readouterr().out
    assert out.startswith(INFO_PREFIX)
    assert out.endswith("hello\n")


def test_info_line_has_timestamp(capsys):
    before = datetime.now().replace(microsecond=0)
    logger.info("hello")
    after = datetime.now()
    out = capsys.readouterr().out
    assert out.startswith(INFO_PREFIX)
    rest = out[len(INFO_PREFIX):]
    stamp, message = rest[:19], rest[19:]
    assert message == " hello\n"
    logged_at = datetime.strptime(stamp, STAMP_FORMAT)
    assert before - timedelta(seconds=1) <= logged_at <= after


def test_warning_prefix(capsys):
    logger.warning("careful")
    out = capsys.readouterr().out
    assert out.startswith("\033[33mWARN: \033[0m")
    assert "careful" in out


def test_warning_level_suppresses_info(capsys):
    logger.set_level(logger.Level.WARNING)
    logger.info("hidden")
    logger.warning("shown")
    out = capsys.readouterr().out
    assert "hidden" not in out
    assert "shown" in out


def test_error_level_suppresses_warning(capsys):
    logger.set_level(logger.Level.ERROR)
    logger.warning("hidden")
    logger.error("broken")
    out = capsys.readouterr().out
    assert "hidden" not in out
    assert out.startswith("\033[31mERROR: \033[0m")
    assert "broken" in out


def test_error_reports_caller_location(capsys):
    line = inspect.currentframe().f_lineno + 1
    logger.error("boom")
    out = capsys.readouterr().out
    assert out.endswith(f"test_logger.py:{line}: boom\n")


def test_set_level_accepts_plain_int(capsys):
    logger.set_level(2)
    logger.info("a")
    logger.warning("b")
    assert capsys.readouterr().out == ""


@pytest.mark.parametrize(
    "level, expected",
    [
        (logger.Level.INFO, ["info-msg", "warn-msg", "error-msg"]),
        (logger.Level.WARNING, ["warn-msg", "error-msg"]),
        (logger.Level.ERROR, ["error-msg"]),
    ],
)
def test_levels_are_ordered(capsys, level, expected):
    logger.set_level(level)
    logger.info("info-msg")
    logger.warning("warn-msg")
    logger.error("error-msg")
    out = capsys.readouterr().out
    shown = [m for m in ("info-msg", "warn-msg", "error-msg") if m in out]
    assert shown == expected