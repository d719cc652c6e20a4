# services/billing_events.py
"""
Billing Webhook Normalizer

Turns provider-specific webhook payloads into one BillingEvent shape and
applies the matching subscription transition.

Providers:
- paddle: 'Paddle-Signature: ts=<unix>;h1=<hmac-sha256 of "ts:body">'
- stripe: 'Stripe-Signature: t=<unix>,v1=<hmac-sha256 of "t.body">'
- fondy:  'signature' field, sha1 of the merchant password and the sorted
          non-empty payload values joined with '|'

Normalized event types:
- subscription.created / subscription.updated, by the provider's status:
    active or trialing with a tier -> upgrade to the event's tier
    active or trialing, no tier    -> status-only update
    past_due / unpaid              -> status 'past_due'
    canceled                       -> cancel
- subscription.cancelled -> cancel
- payment.succeeded -> status 'active'
- payment.failed -> status 'past_due'
Anything else is logged and ignored.

Each (provider, event id) is applied at most once: the processed marker is
committed in the same transaction as the transition. Fondy reuses one
payment_id for every status change of an order, so its event id also
carries the order status.
"""

import hashlib
import hmac
import json
import logging
import time
from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from flask import current_app

from models import db, ProcessedBillingEvent
from services import billing_service
from services.exceptions import WebhookVerificationError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class BillingEvent:
    """A provider event reduced to what the subscription lifecycle needs."""
    provider: str
    event_id: str
    event_type: str
    workspace_id: Optional[int] = None
    tier: Optional[str] = None
    status: Optional[str] = None
    external_subscription_id: Optional[str] = None
    current_period_end: Optional[datetime] = None


# Provider subscription status -> Subscription.status
PROVIDER_STATUSES = {
    'active': 'active',
    'trialing': 'trialing',
    'past_due': 'past_due',
    'unpaid': 'past_due',
    'canceled': 'cancelled',
    'cancelled': 'cancelled',
    'incomplete_expired': 'cancelled',
}


def _to_status(value) -> Optional[str]:
    """Map a provider status; unmapped values pass through as-is."""
    if not value:
        return None
    return PROVIDER_STATUSES.get(value, value)


def _to_int(value) -> Optional[int]:
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def _to_datetime(value) -> Optional[datetime]:
    """Accept unix timestamps and ISO-8601 strings."""
    if value in (None, ''):
        return None
    if isinstance(value, (int, float)):
        return datetime.utcfromtimestamp(value)
    try:
        parsed = datetime.fromisoformat(str(value).replace('Z', '+00:00'))
    except ValueError:
        return None
    if parsed.tzinfo is not None:
        parsed = parsed.replace(tzinfo=None) - parsed.utcoffset()
    return parsed


def _within_tolerance(timestamp, tolerance: int) -> bool:
    ts = _to_int(timestamp)
    if ts is None:
        return False
    return abs(time.time() - ts) <= tolerance


# =============================================================================
# PROVIDER ADAPTERS
# =============================================================================

class PaddleAdapter:
    name = 'paddle'
    secret_setting = 'PADDLE_WEBHOOK_SECRET'

    EVENT_TYPES = {
        'subscription.created': 'subscription.created',
        'subscription.updated': 'subscription.updated',
        'subscription.canceled': 'subscription.cancelled',
        'transaction.completed': 'payment.succeeded',
        'transaction.payment_failed': 'payment.failed',
    }

    def verify(self, raw_body: bytes, headers, payload: dict, secret: str, tolerance: int) -> bool:
        header = headers.get('Paddle-Signature', '')
        parts = dict(item.split('=', 1) for item in header.split(';') if '=' in item)
        ts, received = parts.get('ts'), parts.get('h1')
        if not ts or not received or not _within_tolerance(ts, tolerance):
            return False
        expected = hmac.new(secret.encode(), f'{ts}:'.encode() + raw_body, hashlib.sha256).hexdigest()
        return hmac.compare_digest(expected, received)

    def normalize(self, payload: dict, plan_tiers: dict) -> BillingEvent:
        data = payload.get('data') or {}
        custom = data.get('custom_data') or {}
        items = data.get('items') or []
        price_id = ((items[0] or {}).get('price') or {}).get('id') if items else None
        raw_type = payload.get('event_type', '')
        is_subscription = raw_type.startswith('subscription.')
        external_id = data.get('subscription_id') or (data.get('id') if is_subscription else None)
        return BillingEvent(
            provider=self.name,
            event_id=payload.get('event_id'),
            event_type=self.EVENT_TYPES.get(raw_type, raw_type),
            workspace_id=_to_int(custom.get('workspace_id')),
            tier=custom.get('tier') or plan_tiers.get(price_id),
            status=_to_status(data.get('status')) if is_subscription else None,
            external_subscription_id=external_id,
            current_period_end=_to_datetime((data.get('current_billing_period') or {}).get('ends_at')),
        )


class StripeAdapter:
    name = 'stripe'
    secret_setting = 'STRIPE_WEBHOOK_SECRET'

    EVENT_TYPES = {
        'customer.subscription.created': 'subscription.created',
        'customer.subscription.updated': 'subscription.updated',
        'customer.subscription.deleted': 'subscription.cancelled',
        'invoice.payment_succeeded': 'payment.succeeded',
        'invoice.paid': 'payment.succeeded',
        'invoice.payment_failed': 'payment.failed',
    }

    def verify(self, raw_body: bytes, headers, payload: dict, secret: str, tolerance: int) -> bool:
        header = headers.get('Stripe-Signature', '')
        timestamp = None
        signatures = []
        for item in header.split(','):
            key, _, value = item.strip().partition('=')
            if key == 't':
                timestamp = value
            elif key == 'v1':
                signatures.append(value)
        if not timestamp or not signatures or not _within_tolerance(timestamp, tolerance):
            return False
        expected = hmac.new(secret.encode(), f'{timestamp}.'.encode() + raw_body, hashlib.sha256).hexdigest()
        return any(hmac.compare_digest(expected, sig) for sig in signatures)

    def normalize(self, payload: dict, plan_tiers: dict) -> BillingEvent:
        obj = (payload.get('data') or {}).get('object') or {}
        raw_type = payload.get('type', '')
        is_invoice = raw_type.startswith('invoice.')

        if is_invoice:
            metadata = (obj.get('subscription_details') or {}).get('metadata') or obj.get('metadata') or {}
            external_id = obj.get('subscription')
        else:
            metadata = obj.get('metadata') or {}
            external_id = obj.get('id')

        price_id = None
        item_list = (obj.get('items') or {}).get('data') or []
        if item_list:
            price_id = (item_list[0].get('price') or {}).get('id')

        return BillingEvent(
            provider=self.name,
            event_id=payload.get('id'),
            event_type=self.EVENT_TYPES.get(raw_type, raw_type),
            workspace_id=_to_int(metadata.get('workspace_id')),
            tier=metadata.get('tier') or plan_tiers.get(price_id),
            status=None if is_invoice else _to_status(obj.get('status')),
            external_subscription_id=external_id,
            current_period_end=_to_datetime(obj.get('current_period_end')),
        )


class FondyAdapter:
    name = 'fondy'
    secret_setting = 'FONDY_MERCHANT_PASSWORD'

    EXCLUDED_FROM_SIGNATURE = ('signature', 'response_signature_string')

    @classmethod
    def sign(cls, payload: dict, password: str) -> str:
        values = [str(payload[key]) for key in sorted(payload)
                  if key not in cls.EXCLUDED_FROM_SIGNATURE and payload[key] not in (None, '')]
        return hashlib.sha1('|'.join([password] + values).encode()).hexdigest()

    def verify(self, raw_body: bytes, headers, payload: dict, secret: str, tolerance: int) -> bool:
        received = payload.get('signature')
        if not received:
            return False
        return hmac.compare_digest(self.sign(payload, secret), str(received))

    def normalize(self, payload: dict, plan_tiers: dict) -> BillingEvent:
        merchant_data = payload.get('merchant_data') or {}
        if isinstance(merchant_data, str):
            try:
                merchant_data = json.loads(merchant_data)
            except ValueError:
                merchant_data = {}

        tier = merchant_data.get('tier') or plan_tiers.get(payload.get('product_id'))
        status = payload.get('order_status')
        if status == 'approved':
            event_type = 'subscription.updated' if tier else 'payment.succeeded'
        elif status in ('declined', 'expired'):
            event_type = 'payment.failed'
        elif status == 'reversed':
            event_type = 'subscription.cancelled'
        else:
            event_type = f'order.{status}'

        payment_id = payload.get('payment_id') or payload.get('order_id')
        return BillingEvent(
            provider=self.name,
            event_id=f'{payment_id}:{status}' if payment_id else '',
            event_type=event_type,
            workspace_id=_to_int(merchant_data.get('workspace_id')),
            tier=tier,
            external_subscription_id=payload.get('order_id'),
        )


PROVIDERS = {adapter.name: adapter for adapter in (PaddleAdapter(), StripeAdapter(), FondyAdapter())}


# =============================================================================
# TRANSITIONS
# =============================================================================

def _apply_upgrade(event: BillingEvent) -> dict:
    return billing_service.upgrade(
        event.workspace_id,
        event.tier,
        payment_provider=event.provider,
        external_subscription_id=event.external_subscription_id,
        current_period_end=event.current_period_end,
    )


def _apply_cancel(event: BillingEvent) -> dict:
    return billing_service.cancel(event.workspace_id)


def _apply_status(event: BillingEvent) -> dict:
    return billing_service.set_status(event.workspace_id, event.status)


def _apply_active(event: BillingEvent) -> dict:
    return billing_service.set_status(event.workspace_id, 'active')


def _apply_past_due(event: BillingEvent) -> dict:
    return billing_service.set_status(event.workspace_id, 'past_due')


def _subscription_handler(event: BillingEvent):
    """
    Pick the transition for a subscription.created/updated event from the
    provider's status. Only an active or trialing subscription moves tier;
    None means there is nothing to apply.
    """
    if event.status == 'cancelled':
        return _apply_cancel
    if event.status == 'past_due':
        return _apply_past_due
    if event.status not in (None, 'active', 'trialing'):
        return None
    if event.tier:
        return _apply_upgrade
    if event.status:
        return _apply_status
    return None


SUBSCRIPTION_EVENTS = ('subscription.created', 'subscription.updated')

EVENT_HANDLERS = {
    'subscription.cancelled': _apply_cancel,
    'payment.succeeded': _apply_active,
    'payment.failed': _apply_past_due,
}


def select_handler(event: BillingEvent):
    """Transition for a normalized event, or None to ignore it."""
    if event.event_type in SUBSCRIPTION_EVENTS:
        return _subscription_handler(event)
    return EVENT_HANDLERS.get(event.event_type)


def normalize_event(provider: str, payload: dict, raw_body: bytes = b'', headers=None) -> BillingEvent:
    """
    Verify and normalize a provider payload.

    Raises:
        WebhookVerificationError: Unknown provider, missing secret,
            bad signature, or no event id
    """
    adapter = PROVIDERS.get(provider)
    if adapter is None:
        raise WebhookVerificationError(f"Unknown billing provider: {provider}")

    secret = current_app.config.get(adapter.secret_setting)
    if not secret:
        logger.error(f"{adapter.secret_setting} not configured; rejecting {provider} webhook")
        raise WebhookVerificationError(f"Webhook secret for {provider} is not configured.")

    tolerance = current_app.config.get('WEBHOOK_TOLERANCE_SECONDS', 300)
    if not adapter.verify(raw_body or b'', headers or {}, payload, secret, tolerance):
        logger.warning(f"Invalid {provider} webhook signature")
        raise WebhookVerificationError("Invalid webhook signature.")

    event = adapter.normalize(payload, current_app.config.get('BILLING_PLAN_TIERS', {}))
    if not event.event_id:
        raise WebhookVerificationError("Webhook payload has no event id.")
    return event


def handle_webhook(provider: str, payload: dict, raw_body: bytes = b'', headers=None) -> dict:
    """
    Verify, normalize, dedupe and apply one inbound billing event.

    Returns:
        dict with keys:
            - success (bool)
            - ignored (bool): Event type has no transition
            - duplicate (bool): Event id was already applied
            - error, code (str): On failure
    """
    try:
        event = normalize_event(provider, payload or {}, raw_body, headers)
    except WebhookVerificationError as e:
        return {'success': False, 'error': e.message, 'code': e.code}

    handler = select_handler(event)
    if handler is None:
        logger.warning(f"Nothing to apply for {provider} event {event.event_id} "
                       f"({event.event_type}, status={event.status}, tier={event.tier})")
        return {'success': True, 'ignored': True, 'event_type': event.event_type}

    if event.workspace_id is None:
        logger.warning(f"{provider} event {event.event_id} has no workspace id")
        return {'success': False, 'error': 'Workspace ID is missing from webhook.', 'code': 'invalid_webhook'}

    already_processed = ProcessedBillingEvent.query.filter_by(
        provider=provider, event_id=event.event_id
    ).first()
    if already_processed:
        logger.info(f"Skipping duplicate {provider} event {event.event_id}")
        return {'success': True, 'duplicate': True, 'event_type': event.event_type}

    # Committed or rolled back together with the transition
    db.session.add(ProcessedBillingEvent(
        provider=provider,
        event_id=event.event_id,
        event_type=event.event_type,
        workspace_id=event.workspace_id,
    ))

    result = handler(event)
    result['event_type'] = event.event_type
    return result
