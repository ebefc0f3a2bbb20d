"""Tests for setup_logging."""

import logging
from pathlib import Path

from eventbus.logging_config import setup_logging


class TestSetupLogging:
    """Rotating file handler plus optional console."""

    def test_writes_to_configured_file(self, tmp_path: Path) -> None:
        root = logging.getLogger()
        saved_handlers, saved_level = root.handlers[:], root.level
        try:
            setup_logging(
                tmp_path,
                {"logging": {"file": "logs/bus.log", "level": "debug", "log_to_console": False}},
            )
            assert root.level == logging.DEBUG
            assert len(root.handlers) == 1
            logging.getLogger("eventbus.test").info("hello %s", "world")
            root.handlers[0].flush()
            text = (tmp_path / "logs" / "bus.log").read_text(encoding="utf-8")
            assert "[INFO] eventbus.test: hello world" in text
        finally:
            for h in root.handlers[:]:
                root.removeHandler(h)
                h.close()
            for h in saved_handlers:
                root.addHandler(h)
            root.setLevel(saved_level)
