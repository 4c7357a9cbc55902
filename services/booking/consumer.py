# ============================================================
# Booking Service - RabbitMQ Consumer
# ------------------------------------------------------------
# Écoute les événements du processeur de paiement publiés sur
# l'échange "events" :
#   - PaymentSucceeded : confirme une réservation pending, la marque payée
#   - PaymentRefunded  : la marque non payée (le statut ne change pas)
# Le webhook HTTP (POST /v1/payments/webhook) passe par la même
# fonction handle_payment_event.
# ============================================================
import json
import logging
import time

import pika
from sqlmodel import Session, select

from config import RABBITMQ_HOST
from db import engine
from errors import (
    AvailabilityConflictError,
    BookingNotFoundError,
    InvalidTransitionError,
    TerminalStateError,
)
from lifecycle import SYSTEM_ACTOR, BookingLifecycle
from models import BookingStatus, ProcessedMessage
from publisher import publish_event, publish_transition

logger = logging.getLogger(__name__)

PAYMENT_SUCCEEDED = "PaymentSucceeded"
PAYMENT_REFUNDED = "PaymentRefunded"


# ------------------------------------------------------------
# Ici on évite de traiter deux fois le même message
# ------------------------------------------------------------
# On garde en base (table ProcessedMessage) l'ID des messages
# déjà traités : le broker ou le processeur de paiement peuvent
# relivrer le même événement.
# ------------------------------------------------------------
def already_processed(s: Session, mid: str) -> bool:
    return s.exec(select(ProcessedMessage).where(ProcessedMessage.message_id == mid)).first() is not None


def mark_processed(s: Session, mid: str):
    s.add(ProcessedMessage(message_id=mid))
    s.commit()


def message_id_for(msg: dict) -> str:
    payload = msg.get("payload") or {}
    return msg.get("messageId") or f"{msg.get('type')}:{payload.get('bookingId', '?')}"


# payé mais plus confirmable (hold expiré, stock perdu) :
# on garde la trace du paiement, le remboursement est externe
def confirmation_failed(b, reason: str, detail) -> str:
    logger.error("[consumer] booking %s paid but not confirmable: %s", b.id, detail)
    publish_event("BookingConfirmationFailed", {"bookingId": b.id, "reason": reason})
    return "rejected"


def handle_payment_event(s: Session, etype: str, payload: dict, message_id: str) -> str:
    if etype not in (PAYMENT_SUCCEEDED, PAYMENT_REFUNDED):
        return "ignored"
    booking_id = payload.get("bookingId")
    if not booking_id:
        logger.info("[consumer] skipping %s (no bookingId)", etype)
        return "ignored"
    if already_processed(s, message_id):
        logger.info("[consumer] %s already processed, skipping", message_id)
        return "duplicate"

    lifecycle = BookingLifecycle(s)
    try:
        b = lifecycle.get(int(booking_id))
    except BookingNotFoundError:
        logger.warning("[consumer] booking %s not found", booking_id)
        mark_processed(s, message_id)
        return "not_found"

    if etype == PAYMENT_REFUNDED:
        lifecycle.mark_unpaid(b.id)
        mark_processed(s, message_id)
        return "refunded"

    outcome = "confirmed"
    if b.status == BookingStatus.PENDING:
        try:
            b = lifecycle.confirm(b.id, SYSTEM_ACTOR)
        except (TerminalStateError, InvalidTransitionError, AvailabilityConflictError) as e:
            outcome = confirmation_failed(b, e.kind, e)
    elif b.status == BookingStatus.CANCELLED:
        outcome = confirmation_failed(b, TerminalStateError.kind, "booking is cancelled")
    elif b.status == BookingStatus.CONFIRMED:
        outcome = "already_confirmed"
    else:
        # payé après la prise en charge (comptoir, frais au retour) : seul le flag change
        outcome = "paid"

    b = lifecycle.mark_paid(b.id, method=payload.get("method", "card"), reference=payload.get("paymentIntentId"))
    if outcome == "confirmed":
        publish_transition(b)
    mark_processed(s, message_id)
    return outcome


# Callback exécuté à chaque message reçu depuis RabbitMQ
def on_message(ch, method, properties, body):
    try:
        msg = json.loads(body)
    except ValueError as e:
        logger.warning("[consumer] bad payload: %s", e)
        return

    etype = msg.get("type")
    if etype not in (PAYMENT_SUCCEEDED, PAYMENT_REFUNDED):
        return
    message_id = message_id_for(msg)
    logger.info("[consumer] received %s mid=%s", etype, message_id)
    with Session(engine) as s:
        outcome = handle_payment_event(s, etype, msg.get("payload") or {}, message_id)
    logger.info("[consumer] %s -> %s", message_id, outcome)


# Boucle de connexion + consommation RabbitMQ
def start_consumer():
    attempt = 0
    while True:
        try:
            logger.info("[consumer] connecting to rabbitmq at %s...", RABBITMQ_HOST)
            conn = pika.BlockingConnection(pika.ConnectionParameters(host=RABBITMQ_HOST, heartbeat=60))
            ch = conn.channel()
            ch.exchange_declare(exchange="events", exchange_type="fanout", durable=True)
            q = ch.queue_declare(queue="", exclusive=True).method.queue
            ch.queue_bind(exchange="events", queue=q)
            logger.info("[consumer] bound to exchange 'events' queue='%s'. waiting for messages...", q)
            attempt = 0
            ch.basic_consume(queue=q, on_message_callback=on_message, auto_ack=True)
            ch.start_consuming()
        except Exception as e:
            attempt += 1
            wait = min(5 * attempt, 30)
            logger.error("[consumer] connection error: %s - retrying in %ss", e, wait)
            time.sleep(wait)
