"""Tests for correlation context and log formatting."""

import json
import logging

from spark_fees.logging_config import CorrelationContext, JSONFormatter, StructuredFormatter


def make_record(msg="claimed"):
    return logging.LogRecord("spark_fees.test", logging.INFO, __file__, 1, msg, None, None)


class TestCorrelationContext:

    def test_context_fields_in_json(self):
        with CorrelationContext(run_id="run-123", creator_id="creator-1", token_mint="MintA"):
            data = json.loads(JSONFormatter(extra_fields={"service": "fees"}).format(make_record()))

        assert data["message"] == "claimed"
        assert data["run_id"] == "run-123"
        assert data["creator_id"] == "creator-1"
        assert data["token_mint"] == "MintA"
        assert data["service"] == "fees"

    def test_nested_context_keeps_run_id(self):
        with CorrelationContext(run_id="run-123"):
            with CorrelationContext(creator_id="creator-2") as inner:
                assert inner.run_id == "run-123"

        data = json.loads(JSONFormatter().format(make_record()))
        assert "run_id" not in data
        assert "creator_id" not in data

    def test_console_format_shortens_run_id(self):
        with CorrelationContext(run_id="abcdefghijkl", creator_id="creator-1"):
            line = StructuredFormatter(use_color=False).format(make_record())

        assert "[INFO]" in line
        assert "run_id=abcdefgh," in line
        assert "creator_id=creator-1" in line
