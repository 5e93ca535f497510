# tests/unit/core/test_logging.py
"""Tests for logging configuration."""

import json
import logging
from collections.abc import Iterator

import pytest
import structlog

from vmsync.core.logging import configure_logging, get_logger, run_context


@pytest.fixture(autouse=True)
def _restore_root_logging() -> Iterator[None]:
    root = logging.getLogger()
    handlers, level = root.handlers[:], root.level
    yield
    root.handlers = handlers
    root.setLevel(level)
    structlog.reset_defaults()


class TestConfigureLogging:
    def test_json_output_goes_to_stderr(self, capsys: pytest.CaptureFixture[str]) -> None:
        configure_logging(json_output=True, level="INFO")
        get_logger("vmsync.test").info("Batch exported", rows=3)

        captured = capsys.readouterr()
        assert captured.out == ""
        record = json.loads(captured.err.strip().splitlines()[-1])
        assert record["event"] == "Batch exported"
        assert record["rows"] == 3
        assert record["level"] == "info"
        assert "_record" not in record

    def test_stdlib_records_use_same_format(self, capsys: pytest.CaptureFixture[str]) -> None:
        configure_logging(json_output=True, level="INFO")
        logging.getLogger("vmsync.stdlib").warning("plain %s", "message")

        record = json.loads(capsys.readouterr().err.strip().splitlines()[-1])
        assert record["event"] == "plain message"
        assert record["level"] == "warning"

    def test_level_filters_debug(self, capsys: pytest.CaptureFixture[str]) -> None:
        configure_logging(json_output=True, level="INFO")
        get_logger("vmsync.test").debug("hidden")
        assert capsys.readouterr().err == ""

    def test_noisy_loggers_stay_at_warning_in_debug(self) -> None:
        configure_logging(json_output=False, level="DEBUG")
        assert logging.getLogger().level == logging.DEBUG
        assert logging.getLogger("httpx").level == logging.WARNING
        assert logging.getLogger("pyVmomi").level == logging.WARNING

    def test_records_carry_logger_name(self, capsys: pytest.CaptureFixture[str]) -> None:
        configure_logging(json_output=True)
        get_logger("vmsync.export.batch").info("Batch exported")

        record = json.loads(capsys.readouterr().err.strip().splitlines()[-1])
        assert record["logger"] == "vmsync.export.batch"


class TestRunContext:
    def test_fields_bound_inside_block_only(self, capsys: pytest.CaptureFixture[str]) -> None:
        configure_logging(json_output=True)
        log = get_logger("vmsync.test")

        with run_context(datacenter="dc1"):
            log.info("inside")
        log.info("outside")

        inside, outside = (json.loads(line) for line in capsys.readouterr().err.strip().splitlines()[-2:])
        assert inside["datacenter"] == "dc1"
        assert "datacenter" not in outside
