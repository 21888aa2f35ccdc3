"""Celery task that refreshes the SLA state of recent routing decisions."""
import logging

from app.workers.celery_app import celery_app

logger = logging.getLogger(__name__)


@celery_app.task(name="app.workers.sla_tasks.sweep_routing_sla")
def sweep_routing_sla():
    """Re-evaluate open routing decisions and persist warning/breach transitions.

    Runs every 5 minutes. Decisions older than SLA_SWEEP_LOOKBACK_HOURS or
    already breached are not revisited.
    """
    logger.info("sweep_routing_sla: starting")
    try:
        from app.db.session import make_sync_session_factory
        from app.services.sla_monitor import sweep_sla_states

        Session = make_sync_session_factory()
        with Session() as db:
            stats = sweep_sla_states(db)
            db.commit()
        return stats

    except Exception as exc:
        logger.exception("sweep_routing_sla failed: %s", exc)
        return {"status": "error", "error": str(exc)}
