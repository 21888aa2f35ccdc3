"""Vendor health tracker — applies external load/health telemetry to vendor profiles.

Reports come from fulfillment partners (or the orchestration layer). They
are telemetry, not policy edits: no audit entry, no policy version bump.
"""
import logging
from dataclasses import dataclass
from datetime import datetime, timezone

from app.models.routing_policy_vendor import RoutingPolicyVendor

logger = logging.getLogger(__name__)

HEALTH_STATES = ("healthy", "warning", "critical")


@dataclass(frozen=True)
class HealthReport:
    current_load_percent: float | None = None
    health: str | None = None
    incident: bool = False
    reported_at: datetime | None = None


@dataclass(frozen=True)
class HealthUpdate:
    applied: bool
    load_percent: float
    health: str
    auto_paused: bool
    was_auto_paused: bool
    reason: str | None = None

    @property
    def paused_now(self) -> bool:
        return self.auto_paused and not self.was_auto_paused

    @property
    def resumed_now(self) -> bool:
        return self.was_auto_paused and not self.auto_paused


def _is_paused(profile: RoutingPolicyVendor) -> bool:
    return profile.health == "critical" or profile.current_load_percent >= profile.auto_pause_threshold


def _as_utc(value: datetime) -> datetime:
    # Reporters that omit the offset mean UTC.
    return value.replace(tzinfo=timezone.utc) if value.tzinfo is None else value


def apply_health_report(
    profile: RoutingPolicyVendor,
    report: HealthReport,
    now: datetime | None = None,
) -> HealthUpdate:
    """Mutate `profile` with the report; the caller commits the session."""
    now = now or datetime.now(timezone.utc)
    reported_at = _as_utc(report.reported_at or now)
    was_paused = _is_paused(profile)

    if report.health is not None and report.health not in HEALTH_STATES:
        raise ValueError(f"Unknown health state '{report.health}'")

    if profile.last_incident_at is not None and reported_at < _as_utc(profile.last_incident_at):
        logger.info(
            "Ignoring stale health report for vendor profile %s (reported %s, last incident %s)",
            profile.id, reported_at.isoformat(), profile.last_incident_at.isoformat(),
        )
        return HealthUpdate(
            applied=False,
            load_percent=profile.current_load_percent,
            health=profile.health,
            auto_paused=was_paused,
            was_auto_paused=was_paused,
            reason="stale_report",
        )

    if report.current_load_percent is not None:
        profile.current_load_percent = min(100.0, max(0.0, float(report.current_load_percent)))
    if report.health is not None:
        profile.health = report.health
    if report.incident or report.health == "critical":
        profile.last_incident_at = reported_at
    profile.updated_at = now

    paused = _is_paused(profile)
    if paused and not was_paused:
        logger.warning(
            "Vendor profile %s auto-paused (load=%.1f%%, threshold=%.1f%%, health=%s)",
            profile.id, profile.current_load_percent, profile.auto_pause_threshold, profile.health,
        )
    elif was_paused and not paused:
        logger.info("Vendor profile %s resumed (load=%.1f%%)", profile.id, profile.current_load_percent)

    return HealthUpdate(
        applied=True,
        load_percent=profile.current_load_percent,
        health=profile.health,
        auto_paused=paused,
        was_auto_paused=was_paused,
    )
