"""
Logging and metrics wiring.
"""

import logging
from unittest.mock import patch

from prometheus_client import REGISTRY

from workflow_gate import logging_setup, metrics
from workflow_gate.config import Settings


class TestLoggingSetup:

    def test_file_handler_when_log_dir_set(self, tmp_path):
        """A log dir adds a rotating file handler next to the stream handler."""
        root = logging.getLogger()
        saved = root.handlers[:]
        try:
            logging_setup.setup_logging("DEBUG", str(tmp_path))
            assert logging_setup.file_handler is not None
            assert (tmp_path / "workflow_gate.log").exists()
            assert root.level == logging.DEBUG
            assert len(root.handlers) == 2
        finally:
            logging_setup.close_logging()
            root.handlers = saved

    def test_stream_only_without_log_dir(self):
        """Without a log dir only the stream handler is installed."""
        root = logging.getLogger()
        saved = root.handlers[:]
        try:
            logging_setup.setup_logging("INFO", "")
            assert logging_setup.file_handler is None
            assert len(root.handlers) == 1
            assert root.handlers[0].formatter._fmt == logging_setup.LOG_FORMAT
        finally:
            root.handlers = saved


class TestMetrics:

    def test_counters_registered(self):
        """Counters are exported under their documented names."""
        metrics.workflow_runs_total.labels("analysis", "ok").inc()
        value = REGISTRY.get_sample_value("workflow_runs_total", {"phase": "analysis", "status": "ok"})
        assert value is not None and value >= 1

    def test_metrics_server_disabled_by_default(self):
        """Port 0 means no HTTP server."""
        cfg = Settings()
        cfg.METRICS_PORT = 0
        with patch.object(metrics, "get_settings", return_value=cfg), \
                patch.object(metrics, "start_http_server") as start:
            metrics.start_metrics_server_if_enabled()
        start.assert_not_called()

    def test_metrics_server_started_on_port(self):
        """A configured port starts the exporter."""
        cfg = Settings()
        cfg.METRICS_PORT = 9109
        with patch.object(metrics, "get_settings", return_value=cfg), \
                patch.object(metrics, "start_http_server") as start:
            metrics.start_metrics_server_if_enabled()
        start.assert_called_once_with(9109)
