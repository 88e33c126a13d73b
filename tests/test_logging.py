"""
Tests for logging and resource helpers.
"""
import json
import logging

import pytest

from stream_queue.core.logging import ContextLogger, get_logger, setup_logging
from stream_queue.core.resources import format_bytes, memory_usage


class TestResources:
    """Test cases for memory helpers."""

    @pytest.mark.parametrize("num_bytes,expected", [
        (0, "0.0 B"),
        (512, "512.0 B"),
        (1024, "1.0 KB"),
        (1536, "1.5 KB"),
        (128 * 1024 * 1024, "128.0 MB"),
        (3 * 1024 ** 4, "3072.0 GB"),
    ])
    def test_format_bytes(self, num_bytes, expected):
        assert format_bytes(num_bytes) == expected

    def test_memory_usage(self):
        assert memory_usage() > 0


class TestLogging:
    """Test cases for structured logging setup."""

    def test_get_logger(self):
        logger = get_logger("stream_queue.test")

        assert isinstance(logger, ContextLogger)
        assert logger.name == "stream_queue.test"

    def test_file_sink_writes_json(self, tmp_path):
        """Test the rotating file sink writes one JSON object per record."""
        log_file = tmp_path / "queue.log"
        root = logging.getLogger()
        handlers_before = list(root.handlers)

        try:
            setup_logging(level="WARNING", log_file=str(log_file))
            logging.getLogger("stream_queue.test").warning("disk almost full")
        finally:
            for handler in list(root.handlers):
                if handler not in handlers_before:
                    handler.close()
                    root.removeHandler(handler)

        record = json.loads(log_file.read_text().strip().splitlines()[-1])
        assert record["message"] == "disk almost full"
        assert record["levelname"] == "WARNING"
        assert record["name"] == "stream_queue.test"
