# ============================================================
# timeutil.py - Conversions de dates
# ------------------------------------------------------------
# En base toutes les dates sont en UTC "naïf" (sans tzinfo) pour
# rester comparables sous PostgreSQL comme sous SQLite.
# ============================================================
from datetime import datetime, timezone
from zoneinfo import ZoneInfo

from config import LOCAL_TZ_NAME

LOCAL_TZ = ZoneInfo(LOCAL_TZ_NAME)


def utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


# si pas de tz, on suppose la timezone locale, puis on normalise en UTC
def to_utc(dt: datetime) -> datetime:
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=LOCAL_TZ)
    return dt.astimezone(timezone.utc).replace(tzinfo=None)


# datetime stocké (UTC) vers affichage local
def to_local(dt):
    if dt is None:
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(LOCAL_TZ).isoformat()
