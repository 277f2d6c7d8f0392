"""
Preemption Metrics - Prometheus-compatible observability.

All metrics use the `preemption_` namespace prefix.

Tracks:
- preemption_runs_total{outcome}: completed / skipped / failed runs
- preemption_stage_failures_total{stage}: discover, deactivate, annotate, notify
- preemption_deactivated_total{mode}: graceful / forced deactivations
- preemption_annotations_total{result}: per-resource annotation writes
- preemption_notifications_total{result}: ack / nack
- preemption_activity_attempts_total{activity,result}: success / retry / exhausted / non_retryable
- preemption_heartbeats_total{activity}: liveness signals
- preemption_inflight_calls: remote calls currently in flight
- preemption_run_duration_seconds: pipeline duration
"""

import logging
from typing import Dict

from prometheus_client import CollectorRegistry, Counter, Gauge, Histogram, generate_latest

logger = logging.getLogger(__name__)

RUN_OUTCOMES = ("completed", "skipped", "failed")
STAGES = ("discover", "deactivate", "annotate", "notify")


class PreemptionMetrics:
    """
    Prometheus metrics for the preemption worker.

    Uses an instance-level CollectorRegistry for test isolation.
    snapshot() and reset() are intended for test/debug only.
    """

    def __init__(self, registry: CollectorRegistry | None = None) -> None:
        self._registry = registry or CollectorRegistry()
        self._init_metrics()

    def _init_metrics(self) -> None:
        """Register all prometheus metrics on the current registry."""
        self._runs_total = Counter(
            "preemption_runs_total",
            "Preemption runs by outcome",
            labelnames=["outcome"],
            registry=self._registry,
        )
        self._stage_failures_total = Counter(
            "preemption_stage_failures_total",
            "Pipeline stage failures",
            labelnames=["stage"],
            registry=self._registry,
        )
        self._deactivated_total = Counter(
            "preemption_deactivated_total",
            "Deactivated resources",
            labelnames=["mode"],
            registry=self._registry,
        )
        self._annotations_total = Counter(
            "preemption_annotations_total",
            "Annotation writes",
            labelnames=["result"],
            registry=self._registry,
        )
        self._notifications_total = Counter(
            "preemption_notifications_total",
            "Reply event deliveries",
            labelnames=["result"],
            registry=self._registry,
        )
        self._activity_attempts_total = Counter(
            "preemption_activity_attempts_total",
            "Activity attempts",
            labelnames=["activity", "result"],
            registry=self._registry,
        )
        self._heartbeats_total = Counter(
            "preemption_heartbeats_total",
            "Activity heartbeats",
            labelnames=["activity"],
            registry=self._registry,
        )
        self._inflight_calls = Gauge(
            "preemption_inflight_calls",
            "Remote calls currently in flight",
            registry=self._registry,
        )
        self._run_duration = Histogram(
            "preemption_run_duration_seconds",
            "Preemption pipeline duration",
            buckets=(0.1, 0.5, 1, 2.5, 5, 10, 30, 60, 120, 300),
            registry=self._registry,
        )

    # ── Recorders ─────────────────────────────────────────────────────────

    def inc_run(self, outcome: str) -> None:
        if outcome not in RUN_OUTCOMES:
            logger.warning(f"[METRICS] Invalid run outcome: {outcome}")
            return
        self._runs_total.labels(outcome=outcome).inc()

    def inc_stage_failure(self, stage: str) -> None:
        if stage not in STAGES:
            logger.warning(f"[METRICS] Invalid stage: {stage}")
            return
        self._stage_failures_total.labels(stage=stage).inc()

    def inc_deactivated(self, forced: bool, count: int = 1) -> None:
        if count > 0:
            self._deactivated_total.labels(mode="forced" if forced else "graceful").inc(count)

    def inc_annotation(self, success: bool, count: int = 1) -> None:
        if count > 0:
            self._annotations_total.labels(result="success" if success else "failure").inc(count)

    def inc_notification(self, ack: bool) -> None:
        self._notifications_total.labels(result="ack" if ack else "nack").inc()

    def inc_activity_attempt(self, activity: str, result: str) -> None:
        self._activity_attempts_total.labels(activity=activity, result=result).inc()

    def inc_heartbeat(self, activity: str) -> None:
        self._heartbeats_total.labels(activity=activity).inc()

    def add_inflight_calls(self, delta: int) -> None:
        self._inflight_calls.inc(delta)

    def observe_run_duration(self, duration_seconds: float) -> None:
        self._run_duration.observe(duration_seconds)

    # ── Snapshot (test/debug) ─────────────────────────────────────────────

    def snapshot(self) -> Dict:
        """Current values as a plain dict. Test/debug only."""
        return {
            "runs_total": {
                o: self._get_counter_value(self._runs_total, {"outcome": o}) for o in RUN_OUTCOMES
            },
            "stage_failures_total": {
                s: self._get_counter_value(self._stage_failures_total, {"stage": s}) for s in STAGES
            },
            "deactivated_total": {
                m: self._get_counter_value(self._deactivated_total, {"mode": m})
                for m in ("graceful", "forced")
            },
            "annotations_total": {
                r: self._get_counter_value(self._annotations_total, {"result": r})
                for r in ("success", "failure")
            },
            "notifications_total": {
                r: self._get_counter_value(self._notifications_total, {"result": r})
                for r in ("ack", "nack")
            },
            "inflight_calls": int(self._inflight_calls._value.get()),
        }

    def activity_attempts(self, activity: str, result: str) -> int:
        return self._get_counter_value(
            self._activity_attempts_total, {"activity": activity, "result": result}
        )

    def heartbeats(self, activity: str) -> int:
        return self._get_counter_value(self._heartbeats_total, {"activity": activity})

    @staticmethod
    def _get_counter_value(counter: Counter, labels: Dict[str, str]) -> int:
        """Read current value of a labeled counter. Returns 0 if label combo not yet initialized."""
        try:
            return int(counter.labels(**labels)._value.get())
        except Exception:
            return 0

    # ── Reset (test only) ─────────────────────────────────────────────────

    def reset(self) -> None:
        """Reset all metrics by creating a fresh CollectorRegistry."""
        self._registry = CollectorRegistry()
        self._init_metrics()

    # ── Prometheus exposition ─────────────────────────────────────────────

    def generate_metrics(self) -> bytes:
        """Generate Prometheus text exposition format output."""
        return generate_latest(self._registry)

    @property
    def registry(self) -> CollectorRegistry:
        return self._registry


_metrics = PreemptionMetrics()


def get_preemption_metrics() -> PreemptionMetrics:
    """Get singleton PreemptionMetrics instance."""
    return _metrics
