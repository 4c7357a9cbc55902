# ============================================================
# sweeper.py - Expiration des holds en arrière-plan
# ------------------------------------------------------------
# Une réservation pending non confirmée dans les HOLD_MINUTES
# passe à cancelled et libère le stock. Relancer le balayage
# sur une réservation déjà confirmée ou annulée ne fait rien.
# ============================================================
import logging
import time

from sqlmodel import Session

from config import SWEEP_INTERVAL_SECONDS
from db import engine
from lifecycle import BookingLifecycle
from publisher import publish_transition

logger = logging.getLogger(__name__)


def sweep_once(bind=None, now=None):
    with Session(bind or engine) as s:
        expired = BookingLifecycle(s).expire_holds(now)
        for b in expired:
            publish_transition(b, reason=b.cancellation_reason)
        return [b.id for b in expired]


def start_sweeper(interval: int = SWEEP_INTERVAL_SECONDS):
    logger.info("[sweeper] expiring pending holds every %ss", interval)
    while True:
        try:
            expired = sweep_once()
            if expired:
                logger.info("[sweeper] expired %s hold(s): %s", len(expired), expired)
        except Exception as e:
            logger.error("[sweeper] sweep failed: %s - next run in %ss", e, interval)
        time.sleep(interval)
