#!/usr/bin/env python3
"""
Prometheus metrics for TrapGuard.

Collectors are module-level, as prometheus_client expects; labels are
limited to closed enums and rule ids to keep cardinality bounded.
Addresses are never used as label values.
"""

import logging
from typing import Dict

from prometheus_client import Counter, Gauge, Histogram, start_http_server


ATTACKS_TOTAL = Counter(
    'trapguard_attacks_total', 'Classified attack requests',
    ['attack_type', 'severity'],
)
BLOCKS_TOTAL = Counter(
    'trapguard_blocks_total', 'Block records written',
    ['actor', 'duration'],
)
RULE_TRIGGERS_TOTAL = Counter(
    'trapguard_rule_triggers_total', 'Auto-block rule triggers',
    ['rule_id'],
)
BLOCK_BACKEND_DEGRADED = Gauge(
    'trapguard_block_backend_degraded',
    'Set to 1 while the block registry runs on its in-memory fallback',
)
HISTORY_ADDRESSES = Gauge(
    'trapguard_history_addresses', 'Addresses with retained attack history',
)
DECISION_SECONDS = Histogram(
    'trapguard_decision_seconds', 'Classify and rule evaluation latency',
    buckets=[0.0001, 0.0005, 0.001, 0.005, 0.01, 0.05, 0.1, 0.5],
)


def start_metrics_server(config: Dict) -> bool:
    """
    Start the Prometheus exporter if enabled in configuration.

    Returns:
        True if the exporter was started
    """
    logger = logging.getLogger(__name__)
    metrics_config = config.get('metrics', {})
    if not metrics_config.get('enabled', False):
        logger.info("Metrics exporter disabled")
        return False

    port = int(metrics_config.get('port', 9090))
    start_http_server(port)
    logger.info(f"Metrics exporter listening on port {port}")
    logger.warning(
        "SECURITY: Metrics endpoint has no authentication. "
        "Restrict the port to internal networks."
    )
    return True
