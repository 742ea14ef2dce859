"""
Stripe Integration Module
Verifies payment webhooks and turns completed checkouts into launch orders
"""
import json
import logging
import uuid

import stripe
from config import Config
from launch_scheduler import (
    PLAN_TIERS, LaunchSchedulingError, OrderFulfilled, parse_requested_date, process_fulfilled_order
)
from utils import sanitize_html, sanitize_input

logger = logging.getLogger(__name__)

# Initialize Stripe
stripe.api_key = Config.STRIPE_SECRET_KEY

REQUIRED_METADATA = ('user_id', 'plan', 'product_slug', 'product_name')

# Column limits from schema.sql
MAX_SLUG_LENGTH = 120
MAX_CATEGORY_LENGTH = 64
MAX_SESSION_ID_LENGTH = 255


class InvalidOrderEvent(ValueError):
    """Checkout session metadata does not describe a launch order"""


def construct_webhook_event(payload, sig_header):
    """
    Construct and verify a Stripe webhook event.

    Args:
        payload: Raw request body
        sig_header: Stripe-Signature header value

    Returns:
        Event as a plain dict

    Raises:
        ValueError: If the payload is not valid JSON
        stripe.SignatureVerificationError: If signature verification fails
    """
    event = stripe.Webhook.construct_event(
        payload,
        sig_header,
        Config.STRIPE_WEBHOOK_SECRET
    )
    return event.to_dict()


def _json_metadata(metadata, key, default):
    raw = metadata.get(key)
    if not raw:
        return default
    try:
        value = json.loads(raw)
    except ValueError as e:
        raise InvalidOrderEvent(f"Metadata field '{key}' is not valid JSON") from e
    if not isinstance(value, type(default)):
        raise InvalidOrderEvent(f"Metadata field '{key}' has the wrong shape")
    return value


def _require_uuid(metadata, key):
    value = metadata[key]
    try:
        uuid.UUID(str(value))
    except ValueError as e:
        raise InvalidOrderEvent(f"Metadata field '{key}' is not a UUID") from e
    return value


def _require_text(value, field, max_length):
    if not isinstance(value, str) or not value.strip():
        raise InvalidOrderEvent(f"{field} must be a non-empty string")
    if len(value) > max_length:
        raise InvalidOrderEvent(f"{field} is longer than {max_length} characters")
    return value


def _parse_categories(metadata):
    categories = _json_metadata(metadata, 'categories', [])
    return [_require_text(c, 'Category', MAX_CATEGORY_LENGTH) for c in categories]


def _parse_media(metadata):
    media = _json_metadata(metadata, 'media', {})
    for key in ('icon', 'thumbnail'):
        if media.get(key) is not None and not isinstance(media[key], str):
            raise InvalidOrderEvent(f"Media field '{key}' must be a URL string")
    screenshots = media.get('screenshots')
    if screenshots is None:
        screenshots = []
    if not isinstance(screenshots, list) or not all(isinstance(url, str) for url in screenshots):
        raise InvalidOrderEvent("Media field 'screenshots' must be a list of URL strings")
    return {
        'icon': media.get('icon') or None,
        'thumbnail': media.get('thumbnail') or None,
        'screenshots': [url for url in screenshots if url],
    }


def order_from_checkout_session(session):
    """
    Build an OrderFulfilled from a checkout session's metadata.

    Stripe metadata values are strings, so categories and media arrive as
    JSON-encoded values. Fields are checked against the column limits so a
    payload that can never be stored is rejected up front.
    """
    session_id = _require_text(session.get('id'), 'Checkout session id', MAX_SESSION_ID_LENGTH)
    metadata = session.get('metadata') or {}
    if not isinstance(metadata, dict):
        raise InvalidOrderEvent(f"Checkout session {session_id} metadata is not an object")
    missing = [key for key in REQUIRED_METADATA if not metadata.get(key)]
    if missing:
        raise InvalidOrderEvent(f"Checkout session {session_id} missing metadata: {', '.join(missing)}")

    plan = metadata['plan']
    if plan not in PLAN_TIERS:
        raise InvalidOrderEvent(f"Unknown plan '{plan}'")

    user_id = _require_uuid(metadata, 'user_id')
    product_slug = _require_text(metadata['product_slug'], 'Product slug', MAX_SLUG_LENGTH)
    try:
        selected_date = parse_requested_date(metadata.get('selected_date'))
    except ValueError as e:
        raise InvalidOrderEvent(f"Invalid selected_date '{metadata.get('selected_date')}'") from e

    return OrderFulfilled(
        session_id=session_id,
        user_id=user_id,
        plan_tier=plan,
        product_slug=product_slug,
        product_name=sanitize_input(metadata['product_name'], max_length=100),
        tagline=sanitize_input(metadata.get('tagline'), max_length=140),
        description=sanitize_html(metadata.get('description')),
        domain_url=metadata.get('domain_url'),
        categories=_parse_categories(metadata),
        media=_parse_media(metadata),
        selected_date=selected_date,
    )


# ============== Webhook Event Handlers ==============

def handle_checkout_completed(event):
    """
    Schedule the product paid for in a completed checkout.

    Sessions whose payment has not settled yet are acknowledged and left for
    the async_payment_succeeded event.
    """
    data = event.get('data')
    session = data.get('object') if isinstance(data, dict) else None
    if not isinstance(session, dict):
        raise InvalidOrderEvent(f"Event {event.get('id')} has no checkout session payload")

    if session.get('payment_status') not in ('paid', 'no_payment_required'):
        logger.info(f"Checkout {session.get('id')} completed with payment pending, waiting")
        return {'received': True, 'status': 'pending_payment'}

    order = order_from_checkout_session(session)
    result = process_fulfilled_order(order)
    return {
        'received': True,
        'status': 'duplicate' if result['duplicate'] else result['status'],
        'product_id': result['product_id'],
    }


# Webhook handler dispatch
WEBHOOK_HANDLERS = {
    'checkout.session.completed': handle_checkout_completed,
    'checkout.session.async_payment_succeeded': handle_checkout_completed,
}


def process_webhook_event(event):
    """
    Process a Stripe webhook event.

    A scheduling failure (no capacity, slug taken) is reported as
    'needs_attention' rather than raised: the payment already went through
    and redelivery would not help.
    Datastore errors propagate so the webhook can answer with a retryable
    status.
    """
    event_type = event.get('type')
    handler = WEBHOOK_HANDLERS.get(event_type)

    if not handler:
        logger.info(f"Unhandled webhook event: {event_type}")
        return {'received': True, 'status': 'ignored'}

    try:
        return handler(event)
    except LaunchSchedulingError as e:
        logger.error(f"Order from event {event.get('id')} needs manual attention: {e}")
        return {'received': True, 'status': 'needs_attention'}
