"""SLA Monitor — on_track / warning / breached state for routing decisions.

State is derived purely from elapsed time since the decision; the monitor
never alerts by itself. Breach and warning transitions are handed to
registered sinks (the Celery sweep logs them for the alerting pipeline).
"""
import enum
import json
import logging
import threading
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

from sqlalchemy import select
from sqlalchemy.orm import Session

from app.core.config import settings
from app.rules.snapshot import SlaTargetSpec

logger = logging.getLogger(__name__)


class SlaState(str, enum.Enum):
    ON_TRACK = "on_track"
    WARNING = "warning"
    BREACHED = "breached"
    UNKNOWN = "unknown"


_SEVERITY = {
    SlaState.UNKNOWN: -1,
    SlaState.ON_TRACK: 0,
    SlaState.WARNING: 1,
    SlaState.BREACHED: 2,
}

# Conversion factors to minutes. Targets in any other unit are not time-based.
TIME_UNITS = {
    None: 1.0,
    "": 1.0,
    "m": 1.0, "min": 1.0, "mins": 1.0, "minute": 1.0, "minutes": 1.0,
    "h": 60.0, "hr": 60.0, "hrs": 60.0, "hour": 60.0, "hours": 60.0,
    "s": 1 / 60, "sec": 1 / 60, "secs": 1 / 60, "second": 1 / 60, "seconds": 1 / 60,
}


@dataclass(frozen=True)
class SlaEvaluation:
    state: SlaState
    elapsed_minutes: float
    threshold_minutes: float | None = None
    warning_minutes: float | None = None
    metric: str | None = None
    deadline: datetime | None = None

    def to_dict(self) -> dict:
        return {
            "state": self.state.value,
            "elapsed_minutes": round(self.elapsed_minutes, 3),
            "threshold_minutes": self.threshold_minutes,
            "warning_minutes": self.warning_minutes,
            "metric": self.metric,
            "deadline": self.deadline.isoformat() if self.deadline else None,
        }


def _to_minutes(value: float | None, unit: str | None) -> float | None:
    if value is None:
        return None
    factor = TIME_UNITS.get(unit.strip().lower() if isinstance(unit, str) else unit)
    if factor is None:
        return None
    return float(value) * factor


def is_time_target(target: SlaTargetSpec) -> bool:
    unit = target.unit.strip().lower() if isinstance(target.unit, str) else target.unit
    return unit in TIME_UNITS


def default_warning_minutes(threshold: float, max_lag_minutes: float, ratio: float | None = None) -> float:
    """Warn `max_lag_minutes` before the breach, or at `ratio` of the threshold."""
    if 0 < max_lag_minutes < threshold:
        return threshold - max_lag_minutes
    ratio = settings.SLA_DEFAULT_WARNING_RATIO if ratio is None else ratio
    return threshold * ratio


def furthest_state(*states: SlaState) -> SlaState:
    """The most advanced of `states` (breached > warning > on_track > unknown)."""
    return max(states, key=_SEVERITY.__getitem__)


def _state_for(elapsed: float, threshold: float, warning: float) -> SlaState:
    if elapsed >= threshold:
        return SlaState.BREACHED
    if elapsed >= warning:
        return SlaState.WARNING
    return SlaState.ON_TRACK


def evaluate_sla(
    decision,
    now: datetime | None = None,
    targets=(),
    warning_ratio: float | None = None,
) -> SlaEvaluation:
    """Compute the SLA state of `decision` at `now`.

    `decision` needs `decided_at`, `sla_minutes` and `max_lag_minutes`
    (RoutingDecision and RoutingDecisionRecord both qualify). Time-unit
    targets are evaluated individually and the worst state wins. Without
    any usable threshold the state is `unknown`, never an error.
    """
    now = now or datetime.now(timezone.utc)
    decided_at = decision.decided_at
    if decided_at.tzinfo is None:
        decided_at = decided_at.replace(tzinfo=timezone.utc)
    elapsed = max(0.0, (now - decided_at).total_seconds() / 60.0)
    sla_minutes = float(decision.sla_minutes or 0)
    max_lag = float(decision.max_lag_minutes or 0)

    thresholds: list[tuple[str | None, float, float]] = []
    for target in targets:
        if not is_time_target(target):
            continue
        threshold = _to_minutes(target.threshold, target.unit)
        if threshold is None:
            threshold = sla_minutes
        if not threshold or threshold <= 0:
            continue
        warning = _to_minutes(target.warning_threshold, target.unit)
        if warning is None:
            warning = default_warning_minutes(threshold, max_lag, warning_ratio)
        thresholds.append((target.metric, threshold, min(warning, threshold)))

    if not thresholds and sla_minutes > 0:
        thresholds.append(("sla_minutes", sla_minutes, default_warning_minutes(sla_minutes, max_lag, warning_ratio)))

    if not thresholds:
        logger.debug("No SLA target for decision at %s; state unknown", decided_at)
        return SlaEvaluation(state=SlaState.UNKNOWN, elapsed_minutes=elapsed)

    worst: SlaEvaluation | None = None
    for metric, threshold, warning in thresholds:
        candidate = SlaEvaluation(
            state=_state_for(elapsed, threshold, warning),
            elapsed_minutes=elapsed,
            threshold_minutes=threshold,
            warning_minutes=warning,
            metric=metric,
            deadline=decided_at + timedelta(minutes=threshold),
        )
        if worst is None or _SEVERITY[candidate.state] > _SEVERITY[worst.state]:
            worst = candidate
    return worst


# ─── Transition tracking ───

@dataclass(frozen=True)
class SlaTransition:
    decision_id: str
    previous: SlaState | None
    current: SlaState
    evaluation: SlaEvaluation
    occurred_at: datetime


def log_transition(transition: SlaTransition) -> None:
    """Default sink: structured log line picked up by the alerting pipeline."""
    if transition.current == SlaState.BREACHED:
        logger.warning(
            "SLA BREACHED: decision %s (%s) elapsed=%.1fmin threshold=%.1fmin",
            transition.decision_id, transition.evaluation.metric,
            transition.evaluation.elapsed_minutes, transition.evaluation.threshold_minutes,
        )
    else:
        logger.info(
            "SLA WARNING: decision %s (%s) elapsed=%.1fmin warning_at=%.1fmin",
            transition.decision_id, transition.evaluation.metric,
            transition.evaluation.elapsed_minutes, transition.evaluation.warning_minutes,
        )


class SlaMonitor:
    """Remembers the last state per decision and emits forward transitions.

    State only moves forward (on_track → warning → breached); an evaluation
    that would move it backwards (e.g. an SLA target was relaxed) is ignored.
    Callers that persist state themselves pass `previous`; those observations
    are not remembered here.
    """

    def __init__(self, sinks: list[Callable[[SlaTransition], None]] | None = None):
        self._sinks = list(sinks) if sinks is not None else [log_transition]
        self._states: dict[str, SlaState] = {}
        self._lock = threading.Lock()

    def add_sink(self, sink: Callable[[SlaTransition], None]) -> None:
        self._sinks.append(sink)

    def state_of(self, decision_id: str) -> SlaState | None:
        with self._lock:
            return self._states.get(decision_id)

    def observe(
        self,
        decision_id: str,
        evaluation: SlaEvaluation,
        previous: SlaState | None = None,
        now: datetime | None = None,
    ) -> SlaTransition | None:
        with self._lock:
            prior = previous if previous is not None else self._states.get(decision_id)
            current = evaluation.state
            if prior is not None and _SEVERITY[current] <= _SEVERITY[prior]:
                return None
            if previous is None:
                self._states[decision_id] = current

        if current not in (SlaState.WARNING, SlaState.BREACHED):
            return None
        transition = SlaTransition(
            decision_id=decision_id,
            previous=prior,
            current=current,
            evaluation=evaluation,
            occurred_at=now or datetime.now(timezone.utc),
        )
        for sink in self._sinks:
            try:
                sink(transition)
            except Exception:
                logger.exception("SLA transition sink %r failed", sink)
        return transition

    def check(self, decision, now: datetime | None = None, targets=()) -> tuple[SlaEvaluation, SlaTransition | None]:
        evaluation = evaluate_sla(decision, now=now, targets=targets)
        transition = self.observe(str(decision.decision_id), evaluation, now=now)
        return evaluation, transition

    def forget(self, decision_id: str) -> None:
        with self._lock:
            self._states.pop(decision_id, None)


# ─── Sweep over persisted decisions (Celery) ───

def sweep_sla_states(db: Session, now: datetime | None = None, monitor: SlaMonitor | None = None) -> dict:
    """Re-evaluate open routing decisions and persist forward state changes.

    Args:
        db: Synchronous SQLAlchemy session; caller commits.
        now: Evaluation time (defaults to UTC now).
        monitor: Receives transitions; a fresh logging monitor by default.

    Returns:
        Stats dict: {checked, warnings, breaches, unknown}.
    """
    from app.models.routing_decision import RoutingDecisionRecord
    from app.models.sla_target import SlaTarget

    now = now or datetime.now(timezone.utc)
    monitor = monitor or SlaMonitor()
    lookback = now - timedelta(hours=settings.SLA_SWEEP_LOOKBACK_HOURS)

    records = db.execute(
        select(RoutingDecisionRecord).where(
            RoutingDecisionRecord.sla_state.in_([SlaState.ON_TRACK.value, SlaState.WARNING.value]),
            RoutingDecisionRecord.decided_at >= lookback,
        )
    ).scalars().all()

    targets_by_policy: dict = {}
    stats = {"checked": 0, "warnings": 0, "breaches": 0, "unknown": 0}

    for record in records:
        if record.policy_id not in targets_by_policy:
            rows = db.execute(
                select(SlaTarget).where(SlaTarget.policy_id == record.policy_id)
            ).scalars().all()
            targets_by_policy[record.policy_id] = [SlaTargetSpec.from_model(t) for t in rows]

        evaluation = evaluate_sla(record, now=now, targets=targets_by_policy[record.policy_id])
        stats["checked"] += 1
        if evaluation.state == SlaState.UNKNOWN:
            stats["unknown"] += 1
            continue

        transition = monitor.observe(
            str(record.id), evaluation, previous=SlaState(record.sla_state), now=now,
        )
        if transition is None:
            continue
        record.sla_state = transition.current.value
        record.sla_state_changed_at = now
        if transition.current == SlaState.BREACHED:
            stats["breaches"] += 1
        else:
            stats["warnings"] += 1

    db.flush()
    logger.info(
        "sweep_sla_states: checked=%d warnings=%d breaches=%d unknown=%d",
        stats["checked"], stats["warnings"], stats["breaches"], stats["unknown"],
    )
    return stats


def decision_record_payload(record) -> dict:
    """Decoded RoutingDecision payload stored on a decision record."""
    return json.loads(record.payload_json or "{}")
