"""Prometheus metrics for the workflow core."""

import logging

from prometheus_client import Counter, Histogram, start_http_server

from .config import get_settings

logger = logging.getLogger(__name__)

workflow_runs_total = Counter("workflow_runs_total", "Workflow calls by phase and status", ["phase", "status"])
policy_blockers_total = Counter("policy_blockers_total", "Blockers returned, by code", ["code"])
broadcasts_total = Counter("broadcasts_total", "Ledger broadcasts by outcome", ["result"])
idempotency_conflicts_total = Counter("idempotency_conflicts_total", "Execute calls refused for a used run id")
adapter_call_seconds = Histogram("adapter_call_seconds", "Adapter call latency", ["operation"])


def start_metrics_server_if_enabled():
    cfg = get_settings()
    try:
        if getattr(cfg, "METRICS_PORT", None):
            start_http_server(cfg.METRICS_PORT)
    except OSError:
        logger.exception("failed to start metrics server")
