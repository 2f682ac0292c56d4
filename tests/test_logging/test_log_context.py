import asyncio
import io
import json

import pytest
import structlog

from hobbes.config import LoggingConfig
from hobbes.logging import bind_session, configure_logging, get_logger, unbind_session


@pytest.fixture
def json_lines():
    out = io.StringIO()
    configure_logging(settings=LoggingConfig(level="DEBUG", format="json"), stream=out)

    def lines() -> list[dict]:
        return [json.loads(line) for line in out.getvalue().splitlines() if line]

    yield lines
    unbind_session()
    structlog.reset_defaults()


def test_bound_session_id_appears_on_log_lines(json_lines):
    logger = get_logger("hobbes.tests")

    bind_session("s-42")
    logger.info("Tool call finished", tool="weather")
    unbind_session()
    logger.info("Idle")

    first, second = json_lines()
    assert first["event"] == "Tool call finished"
    assert first["session_id"] == "s-42"
    assert first["tool"] == "weather"
    assert first["level"] == "info"
    assert "session_id" not in second


def test_level_filter_drops_lower_levels():
    out = io.StringIO()
    configure_logging(level="WARNING", settings=LoggingConfig(format="json"), stream=out)
    try:
        logger = get_logger("hobbes.tests")
        logger.info("hidden")
        logger.warning("shown")
    finally:
        structlog.reset_defaults()

    assert [json.loads(line)["event"] for line in out.getvalue().splitlines()] == ["shown"]


def test_log_file_setting_appends_to_file(tmp_path):
    path = tmp_path / "logs" / "hobbes.log"
    configure_logging(settings=LoggingConfig(format="json", file=str(path)))
    try:
        get_logger("hobbes.tests").warning("to file")
    finally:
        structlog.reset_defaults()

    assert json.loads(path.read_text(encoding="utf-8").splitlines()[0])["event"] == "to file"


@pytest.mark.asyncio
async def test_session_binding_in_a_task_stays_in_that_task(json_lines):
    logger = get_logger("hobbes.tests")

    async def turn() -> None:
        bind_session("inside")
        logger.info("in turn")

    await asyncio.create_task(turn())
    logger.info("after turn")

    inside, after = json_lines()
    assert inside["session_id"] == "inside"
    assert "session_id" not in after
