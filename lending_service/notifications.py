import json
import logging
from datetime import datetime

import requests
from sqlalchemy import select

from .models import PendingNotification

logger = logging.getLogger(__name__)


def _event_payload(event):
    r = event.reservation
    return {
        "type": event.type,
        "reservation_id": r.id,
        "book_id": r.book_id,
        "user_id": r.user_id,
        "pickup_date": r.pickup_date.isoformat(),
        "queue_position": r.queue_position,
        "timestamp": datetime.utcnow().isoformat(),
    }


def _post(config, payload):
    url = f'{config["NOTIFY_BASE_URL"].rstrip("/")}/api/notifications'
    resp = requests.post(
        url,
        json=payload,
        headers={"X-API-Key": config["SERVICE_API_KEY"]},
        timeout=3,
    )
    if resp.status_code not in (200, 201, 202):
        raise RuntimeError(f"Notifier returned {resp.status_code}")


def dispatch_events(events, session, config):
    """
    Push reservation events to the notifier.
    Whatever doesn't get through is kept in PendingNotification for retry.
    """
    if not events:
        return 0
    if not config.get("NOTIFY_BASE_URL"):
        logger.debug("NOTIFY_BASE_URL not set, dropping %d event(s)", len(events))
        return 0

    queued = 0
    for event in events:
        payload = _event_payload(event)
        try:
            _post(config, payload)
            logger.info("Sent %s for reservation %s", event.type, event.reservation.id)
        except (requests.RequestException, RuntimeError) as e:
            logger.warning(
                "Failed to send %s for reservation %s: %s",
                event.type,
                event.reservation.id,
                e,
            )
            session.add(
                PendingNotification(
                    event_type=event.type,
                    reservation_id=event.reservation.id,
                    payload=json.dumps(payload),
                )
            )
            queued += 1
    session.commit()
    return queued


def retry_pending_notifications(session, config):
    """
    Retry sending all pending notifications.
    Returns the number of events that went through.
    """
    if not config.get("NOTIFY_BASE_URL"):
        return 0

    sent = 0
    pending = session.execute(
        select(PendingNotification).order_by(PendingNotification.id)
    ).scalars().all()
    for evt in pending:
        try:
            _post(config, json.loads(evt.payload))
        except (requests.RequestException, RuntimeError) as e:
            # leave for next retry
            logger.warning("Retry of notification %s failed: %s", evt.id, e)
            continue
        session.delete(evt)
        sent += 1
    session.commit()
    logger.info("Retried %d pending notification(s), %d sent", len(pending), sent)
    return sent
