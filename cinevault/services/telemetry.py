from __future__ import annotations

from collections import defaultdict
import logging


logger = logging.getLogger(__name__)

_counters: dict[str, int] = defaultdict(int)


def increment_counter(name: str, value: int = 1) -> None:
    _counters[name] += value


def record_external_call(*, integration: str, latency_ms: float, success: bool) -> None:
    # Count gateway outcomes per integration.
    increment_counter(f"external_calls_total.{integration}")
    if not success:
        increment_counter(f"external_failures_total.{integration}")
    logger.debug("external_call integration=%s success=%s latency_ms=%.1f", integration, success, latency_ms)


def counters_snapshot() -> dict[str, int]:
    return dict(_counters)


def reset_telemetry() -> None:
    # Clear in-process counters for deterministic tests.
    _counters.clear()
