"""
Fire-and-forget hooks towards the external collaborators: the notification
dispatcher (email/WhatsApp) and the invoice generator. Delivery failures are
logged and never propagate to the caller.
"""
import logging

import requests
from flask import current_app

log = logging.getLogger(__name__)


def _post(url: str, payload: dict) -> bool:
    headers = {"Content-Type": "application/json"}
    token = current_app.config.get("COLLABORATOR_TOKEN")
    if token:
        headers["Authorization"] = f"Bearer {token}"
    timeout = current_app.config.get("COLLABORATOR_TIMEOUT_SECONDS", 5)

    try:
        resp = requests.post(url, json=payload, headers=headers, timeout=timeout)
        resp.raise_for_status()
        return True
    except requests.RequestException as exc:
        log.warning("Collaborator call to %s failed: %s", url, exc)
        return False


def emit_event(event_type: str, **data) -> bool:
    """Send a domain event (booking.created, payment.approved, ...) to the notification dispatcher."""
    url = current_app.config.get("NOTIFICATIONS_URL")
    if not url:
        log.debug("NOTIFICATIONS_URL not configured, dropping %s", event_type)
        return False
    return _post(url, {"event": event_type, **data})


def request_invoice_document(invoice_id: int, booking_id=None, subscription_id=None) -> bool:
    """Ask the invoice generator to render and email the document for an issued invoice."""
    url = current_app.config.get("INVOICE_SERVICE_URL")
    if not url:
        log.debug("INVOICE_SERVICE_URL not configured, invoice %s not rendered", invoice_id)
        return False
    return _post(url, {
        "invoice_id": invoice_id,
        "booking_id": booking_id,
        "subscription_id": subscription_id,
    })
