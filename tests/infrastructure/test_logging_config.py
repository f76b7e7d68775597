"""Unit tests for logging setup."""

import io
import json
import logging

from src.infrastructure.logging_config import setup_logging


class TestSetupLogging:
    """Test suite for setup_logging."""

    def test_json_lines(self, restore_root_logger):
        stream = io.StringIO()
        setup_logging(use_json=True, log_level="INFO", stream=stream)

        logging.getLogger("src.services.record_store").warning(
            "Fallback active", extra={"record_id": "abc123", "backend": "memory"}
        )

        entry = json.loads(stream.getvalue().splitlines()[-1])
        assert entry["level"] == "WARNING"
        assert entry["logger"] == "src.services.record_store"
        assert entry["message"] == "Fallback active"
        assert entry["record_id"] == "abc123"
        assert entry["backend"] == "memory"
        assert "error_code" not in entry
        assert entry["timestamp"].endswith("Z")

    def test_exception_included(self, restore_root_logger):
        stream = io.StringIO()
        setup_logging(use_json=True, stream=stream)

        try:
            raise RuntimeError("boom")
        except RuntimeError:
            logging.getLogger("test").exception("failed")

        assert "RuntimeError: boom" in json.loads(stream.getvalue())["exception"]

    def test_plain_format_and_level(self, restore_root_logger):
        stream = io.StringIO()
        setup_logging(log_level="warning", stream=stream)

        logging.getLogger("test").info("hidden")
        logging.getLogger("test").warning("shown")

        output = stream.getvalue()
        assert "hidden" not in output
        assert " - test - WARNING - shown" in output

    def test_repeated_setup_replaces_handler(self, restore_root_logger):
        setup_logging(stream=io.StringIO())
        setup_logging(stream=io.StringIO())
        assert len(logging.getLogger().handlers) == 1
