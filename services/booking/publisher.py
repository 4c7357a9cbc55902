# ============================================================
# publisher.py - Émission d'événements RabbitMQ
# ------------------------------------------------------------
# Informe les autres services d'un changement d'état d'une
# réservation (BookingCreated, BookingConfirmed, BookingStarted,
# BookingCompleted, BookingCancelled, BookingConfirmationFailed).
# La réservation est déjà commitée quand on publie : un broker
# injoignable est journalisé, il n'annule pas l'opération.
# ============================================================
import json
import logging
import uuid

import pika
from pika.exceptions import AMQPError

from config import EVENTS_ENABLED, RABBITMQ_HOST
from models import Booking, BookingStatus
from timeutil import to_local

logger = logging.getLogger(__name__)

EXCHANGE = "events"

EVENT_BY_STATUS = {
    BookingStatus.CONFIRMED: "BookingConfirmed",
    BookingStatus.IN_PROGRESS: "BookingStarted",
    BookingStatus.COMPLETED: "BookingCompleted",
    BookingStatus.CANCELLED: "BookingCancelled",
}


def booking_payload(b: Booking, **extra) -> dict:
    payload = {
        "bookingId": b.id,
        "reference": b.reference,
        "customerId": b.customer_id,
        "categoryId": b.category_id,
        "status": b.status.value,
        "pickupAt": to_local(b.pickup_at),
        "returnAt": to_local(b.return_at),
        "total": str(b.total_price),
        "isPaid": b.is_paid,
    }
    payload.update(extra)
    return payload


# Publie un message sur l'échange "events" en mode fanout :
#   - event_type : nom de l'événement
#   - payload    : contenu du message
def publish_event(event_type: str, payload: dict):
    if not EVENTS_ENABLED:
        return
    message = {"type": event_type, "messageId": str(uuid.uuid4()), "payload": payload}
    try:
        conn = pika.BlockingConnection(pika.ConnectionParameters(host=RABBITMQ_HOST))
        try:
            ch = conn.channel()
            # durable=True pour survivre aux redémarrages RabbitMQ
            ch.exchange_declare(exchange=EXCHANGE, exchange_type="fanout", durable=True)
            ch.basic_publish(exchange=EXCHANGE, routing_key="", body=json.dumps(message))
        finally:
            conn.close()
    except AMQPError as e:
        logger.warning("[event] could not publish %s for booking %s: %s", event_type, payload.get("bookingId"), e)
        return
    logger.info("[event] %s %s", event_type, payload.get("reference") or payload.get("bookingId"))


def publish_transition(b: Booking, **extra):
    event_type = EVENT_BY_STATUS.get(b.status)
    if event_type:
        publish_event(event_type, booking_payload(b, **extra))
