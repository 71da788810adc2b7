"""Tests for logging configuration."""

import logging

import pytest

from neon_mcp.core.logging import RequestIdFilter, configure_logging, request_id_ctx


@pytest.fixture
def restore_level():
    package_logger = logging.getLogger("neon_mcp")
    level = package_logger.level
    yield
    package_logger.setLevel(level)


class TestConfigureLogging:
    def test_debug_mode_reaches_module_loggers(self, monkeypatch, restore_level):
        monkeypatch.setenv("MCP_DEBUG", "true")
        logger = configure_logging()

        assert logger.name == "neon_mcp"
        assert logging.getLogger("neon_mcp.auth.oauth2_server").getEffectiveLevel() == logging.DEBUG
        assert logging.getLogger("neon_mcp.tools.enforcement").isEnabledFor(logging.DEBUG)

    def test_module_records_reach_package_logger(self, caplog):
        with caplog.at_level("INFO", logger="neon_mcp"):
            logging.getLogger("neon_mcp.auth.kv_store").info("swept")

        assert [r.message for r in caplog.records] == ["swept"]


class TestRequestIdFilter:
    def test_adds_request_id_prefix(self):
        record = logging.LogRecord("neon_mcp", logging.INFO, __file__, 1, "msg", None, None)
        token = request_id_ctx.set("req-1")
        try:
            RequestIdFilter().filter(record)
        finally:
            request_id_ctx.reset(token)
        assert record.request_id == "[req-1] "

    def test_empty_without_request(self):
        record = logging.LogRecord("neon_mcp", logging.INFO, __file__, 1, "msg", None, None)
        RequestIdFilter().filter(record)
        assert record.request_id == ""
