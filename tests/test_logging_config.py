"""Tests for the JSON log formatter"""

import json
import logging

import sys
import os
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..'))

from app.utils.logging_config import JSONFormatter, clear_request_context, set_request_context


def make_record(**extra):
    logger = logging.getLogger("app.services.job_sync")
    return logger.makeRecord(
        logger.name, logging.INFO, __file__, 10, "Created job %s", ("j-1",), None, extra=extra
    )


class TestJSONFormatter:
    def test_extra_ids_included(self):
        record = make_record(job_id="j-1", booking_id="bk-1", duration_ms=42)
        data = json.loads(JSONFormatter().format(record))

        assert data["message"] == "Created job j-1"
        assert data["level"] == "INFO"
        assert data["job_id"] == "j-1"
        assert data["booking_id"] == "bk-1"
        assert data["duration_ms"] == 42
        assert "event_id" not in data

    def test_request_context(self):
        set_request_context("req-1", "u-mgr")
        try:
            data = json.loads(JSONFormatter().format(make_record()))
        finally:
            clear_request_context()

        assert data["request_id"] == "req-1"
        assert data["user_id"] == "u-mgr"
