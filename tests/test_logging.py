"""
Tests for structured logging setup.
"""

import json
import logging

import structlog

from arcvault.logging_setup import configure_logging


class TestConfigureLogging:

    def test_logfile_receives_json_events(self, tmp_path):
        logfile = tmp_path / "arcvault.log"
        configure_logging(logfile=str(logfile))
        try:
            structlog.get_logger("arcvault.test").info("test.event", answer=42)
        finally:
            configure_logging()

        line = json.loads(logfile.read_text().splitlines()[-1])
        assert line["event"] == "test.event"
        assert line["answer"] == 42
        assert line["level"] == "info"

    def test_reconfigure_keeps_foreign_handlers(self):
        root = logging.getLogger()
        foreign = logging.NullHandler()
        root.addHandler(foreign)
        try:
            configure_logging()
            configure_logging(debug=True)

            assert foreign in root.handlers
            assert [h.get_name() for h in root.handlers].count("arcvault") == 1
            assert root.level == logging.DEBUG
        finally:
            root.removeHandler(foreign)
            configure_logging()
