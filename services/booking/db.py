# ============================================================
# db.py - Moteur SQLModel + session par requête
# ------------------------------------------------------------
# Les lectures (disponibilité, devis) peuvent être relancées si
# la base ne répond pas. Les écritures ne le sont jamais : un
# timeout est remonté comme un échec (pas de double réservation).
# ============================================================
import logging
import time
from typing import Optional

from sqlalchemy.exc import DBAPIError, OperationalError, PendingRollbackError
from sqlmodel import Session, create_engine

from config import (
    DATABASE_URL,
    STORE_RETRY_ATTEMPTS,
    STORE_RETRY_DELAY_SECONDS,
    STORE_TIMEOUT_SECONDS,
)
from errors import StoreUnavailableError

logger = logging.getLogger(__name__)


def make_engine(url: str):
    if url.startswith("sqlite"):
        connect_args = {"check_same_thread": False, "timeout": STORE_TIMEOUT_SECONDS}
    else:
        connect_args = {"connect_timeout": STORE_TIMEOUT_SECONDS}
    return create_engine(url, pool_pre_ping=True, connect_args=connect_args)


engine = make_engine(DATABASE_URL)


# Dépendance FastAPI : fournit une Session DB par requête, auto-close
def get_session():
    with Session(engine) as s:
        yield s


# Connexion perdue / timeout : seules erreurs relancées
def is_transient(e: Exception) -> bool:
    if isinstance(e, (OperationalError, PendingRollbackError)):
        return True
    return isinstance(e, DBAPIError) and e.connection_invalidated


# Relance une lecture idempotente avec un délai croissant (plafonné à 30s).
# La session est remise à zéro (rollback) avant chaque nouvel essai.
def with_store_retry(fn, session: Optional[Session] = None, attempts: int = STORE_RETRY_ATTEMPTS,
                     delay: float = STORE_RETRY_DELAY_SECONDS):
    attempt = 0
    while True:
        try:
            return fn()
        except (DBAPIError, PendingRollbackError) as e:
            if not is_transient(e):
                raise
            attempt += 1
            if session is not None:
                session.rollback()
            if attempt >= attempts:
                logger.error("[store] giving up after %s attempts: %s", attempt, e)
                raise StoreUnavailableError("booking store is unavailable") from e
            wait = min(delay * attempt, 30)
            logger.warning("[store] read failed (%s), retrying in %.1fs", e, wait)
            time.sleep(wait)
