# ============================================================
# app.py - Point d'entrée du service Booking
# ------------------------------------------------------------
# Ce module initialise l'application FastAPI du service Booking :
#   - Crée les tables dans la base de données
#   - Démarre le consommateur RabbitMQ (paiements) et le sweeper
#     des holds expirés, chacun dans un thread
#   - Convertit les erreurs métier en réponses JSON
#   - Monte les routes API
# ============================================================
import logging
import threading

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from sqlmodel import SQLModel

import models  # noqa: F401  (enregistre les tables)
from api import router
from config import CONSUMER_ENABLED, LOG_LEVEL, SWEEPER_ENABLED
from consumer import start_consumer
from db import engine
from errors import BookingEngineError
from sweeper import start_sweeper

logging.basicConfig(level=LOG_LEVEL, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
logger = logging.getLogger(__name__)

app = FastAPI(title="Booking Service")


@app.exception_handler(BookingEngineError)
async def booking_error_handler(request: Request, exc: BookingEngineError):
    if exc.status_code >= 500:
        logger.error("%s %s failed: %s", request.method, request.url.path, exc)
    else:
        logger.info("%s %s rejected (%s): %s", request.method, request.url.path, exc.kind, exc)
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


# Exécuté automatiquement par FastAPI au lancement du conteneur.
# 1. Crée les tables SQL.
# 2. Lance les threads secondaires sans bloquer l'API.
@app.on_event("startup")
def start():
    SQLModel.metadata.create_all(engine)
    if CONSUMER_ENABLED:
        threading.Thread(target=start_consumer, daemon=True).start()
    if SWEEPER_ENABLED:
        threading.Thread(target=start_sweeper, daemon=True).start()


@app.get("/health")
def health():
    return {"status": "ok"}


app.include_router(router)


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host="0.0.0.0", port=8000)
