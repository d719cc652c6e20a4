"""
Billing webhook tests: signature checks per provider, event normalization,
replay protection and the HTTP contract of /billing/webhook/<provider>.

Run with: python -m pytest tests/test_billing_events.py -v
"""

import hashlib
import hmac
import json
import sys
import time
from pathlib import Path

import pytest

PROJECT_ROOT = Path(__file__).parent.parent
sys.path.insert(0, str(PROJECT_ROOT))

from models import ProcessedBillingEvent
from services import billing_service, quota_service
from services.billing_events import FondyAdapter, normalize_event
from services.exceptions import WebhookVerificationError

PADDLE_SECRET = 'paddle-test-secret'
STRIPE_SECRET = 'stripe-test-secret'
FONDY_PASSWORD = 'fondy-test-password'


def paddle_post(client, payload, secret=PADDLE_SECRET, ts=None):
    body = json.dumps(payload).encode()
    ts = str(ts if ts is not None else int(time.time()))
    digest = hmac.new(secret.encode(), f'{ts}:'.encode() + body, hashlib.sha256).hexdigest()
    return client.post('/billing/webhook/paddle', data=body, content_type='application/json',
                       headers={'Paddle-Signature': f'ts={ts};h1={digest}'})


def stripe_post(client, payload, secret=STRIPE_SECRET):
    body = json.dumps(payload).encode()
    ts = str(int(time.time()))
    digest = hmac.new(secret.encode(), f'{ts}.'.encode() + body, hashlib.sha256).hexdigest()
    return client.post('/billing/webhook/stripe', data=body, content_type='application/json',
                       headers={'Stripe-Signature': f't={ts},v1={digest}'})


def paddle_event(workspace_id, event_id='evt_01', event_type='subscription.updated', tier='pro'):
    return {
        'event_id': event_id,
        'event_type': event_type,
        'data': {
            'id': 'sub_01',
            'custom_data': {'workspace_id': str(workspace_id), 'tier': tier},
            'current_billing_period': {'ends_at': '2030-01-31T00:00:00Z'},
        },
    }


class TestPaddle:

    def test_subscription_update_upgrades(self, client, workspace_id):
        response = paddle_post(client, paddle_event(workspace_id))
        assert response.status_code == 200
        assert response.get_json()['received'] is True

        subscription = billing_service.get_subscription(workspace_id)
        assert subscription.tier == 'pro'
        assert subscription.payment_provider == 'paddle'
        assert subscription.external_subscription_id == 'sub_01'
        assert subscription.current_period_end.year == 2030
        assert quota_service.get_quota(workspace_id).max_users == 20

    def test_tier_from_price_id(self, client, workspace_id):
        payload = paddle_event(workspace_id, tier=None)
        payload['data']['items'] = [{'price': {'id': 'pri_starter_monthly'}}]
        assert paddle_post(client, payload).status_code == 200
        assert billing_service.get_subscription(workspace_id).tier == 'starter'

    def test_replay_is_not_reapplied(self, client, workspace_id):
        paddle_post(client, paddle_event(workspace_id, event_id='evt_once'))
        billing_service.downgrade(workspace_id, 'free')

        response = paddle_post(client, paddle_event(workspace_id, event_id='evt_once'))
        assert response.status_code == 200
        assert response.get_json()['duplicate'] is True
        assert billing_service.get_subscription(workspace_id).tier == 'free'
        assert ProcessedBillingEvent.query.filter_by(event_id='evt_once').count() == 1

    def test_payment_failed_marks_past_due(self, client, workspace_id):
        payload = paddle_event(workspace_id, event_id='txn_01', event_type='transaction.payment_failed')
        assert paddle_post(client, payload).status_code == 200
        subscription = billing_service.get_subscription(workspace_id)
        assert subscription.status == 'past_due'
        assert subscription.tier == 'free'

    def test_bad_signature(self, client, workspace_id):
        response = paddle_post(client, paddle_event(workspace_id), secret='wrong')
        assert response.status_code == 400
        assert response.get_json()['code'] == 'invalid_webhook'
        assert billing_service.get_subscription(workspace_id).tier == 'free'

    def test_stale_timestamp(self, client, workspace_id):
        response = paddle_post(client, paddle_event(workspace_id), ts=int(time.time()) - 3600)
        assert response.status_code == 400

    def test_unknown_event_type_is_ignored(self, client, workspace_id):
        payload = paddle_event(workspace_id, event_type='customer.updated')
        response = paddle_post(client, payload)
        assert response.status_code == 200
        assert response.get_json()['ignored'] is True
        assert ProcessedBillingEvent.query.count() == 0

    def test_missing_workspace_id(self, client, workspace_id):
        payload = paddle_event(workspace_id)
        payload['data']['custom_data'] = {'tier': 'pro'}
        response = paddle_post(client, payload)
        assert response.status_code == 400
        assert response.get_json()['code'] == 'invalid_webhook'

    def test_failed_transition_is_not_recorded(self, client, workspace_id):
        response = paddle_post(client, paddle_event(workspace_id, event_id='evt_bad', tier='platinum'))
        assert response.status_code == 400
        assert response.get_json()['code'] == 'invalid_input'
        assert ProcessedBillingEvent.query.filter_by(event_id='evt_bad').count() == 0

    def test_update_without_tier_is_acknowledged(self, client, workspace_id):
        payload = paddle_event(workspace_id, event_id='evt_no_tier', tier=None)
        response = paddle_post(client, payload)
        assert response.status_code == 200
        assert response.get_json()['ignored'] is True
        assert billing_service.get_subscription(workspace_id).tier == 'free'

    def test_update_without_tier_applies_status(self, client, workspace_id):
        payload = paddle_event(workspace_id, event_id='evt_past_due', tier=None)
        payload['data']['status'] = 'past_due'
        assert paddle_post(client, payload).status_code == 200
        subscription = billing_service.get_subscription(workspace_id)
        assert subscription.status == 'past_due'
        assert subscription.tier == 'free'


class TestStripe:

    def test_subscription_deleted_cancels(self, client, workspace_id):
        billing_service.upgrade(workspace_id, 'pro')
        payload = {
            'id': 'evt_stripe_1',
            'type': 'customer.subscription.deleted',
            'data': {'object': {'id': 'sub_123', 'metadata': {'workspace_id': str(workspace_id)}}},
        }
        response = stripe_post(client, payload)
        assert response.status_code == 200

        subscription = billing_service.get_subscription(workspace_id)
        assert subscription.status == 'cancelled'
        assert subscription.tier == 'pro'

    def test_invoice_paid_reactivates(self, client, workspace_id):
        billing_service.set_status(workspace_id, 'past_due')
        payload = {
            'id': 'evt_stripe_2',
            'type': 'invoice.paid',
            'data': {'object': {
                'subscription': 'sub_123',
                'subscription_details': {'metadata': {'workspace_id': str(workspace_id)}},
            }},
        }
        assert stripe_post(client, payload).status_code == 200
        assert billing_service.get_subscription(workspace_id).status == 'active'

    def test_bad_signature(self, client, workspace_id):
        payload = {'id': 'evt_x', 'type': 'invoice.paid', 'data': {'object': {}}}
        assert stripe_post(client, payload, secret='wrong').status_code == 400

    def subscription_updated(self, workspace_id, event_id, status):
        return {
            'id': event_id,
            'type': 'customer.subscription.updated',
            'data': {'object': {
                'id': 'sub_123',
                'status': status,
                'metadata': {'workspace_id': str(workspace_id), 'tier': 'pro'},
            }},
        }

    def test_past_due_update_keeps_past_due(self, client, workspace_id):
        billing_service.set_status(workspace_id, 'past_due')
        payload = self.subscription_updated(workspace_id, 'evt_stripe_3', 'past_due')
        assert stripe_post(client, payload).status_code == 200

        subscription = billing_service.get_subscription(workspace_id)
        assert subscription.status == 'past_due'
        assert subscription.tier == 'free'

    def test_unpaid_update_marks_past_due(self, client, workspace_id):
        billing_service.upgrade(workspace_id, 'pro')
        payload = self.subscription_updated(workspace_id, 'evt_stripe_4', 'unpaid')
        assert stripe_post(client, payload).status_code == 200
        assert billing_service.get_subscription(workspace_id).status == 'past_due'

    def test_canceled_update_cancels(self, client, workspace_id):
        billing_service.upgrade(workspace_id, 'pro')
        payload = self.subscription_updated(workspace_id, 'evt_stripe_5', 'canceled')
        assert stripe_post(client, payload).status_code == 200
        assert billing_service.get_subscription(workspace_id).status == 'cancelled'

    def test_active_update_upgrades(self, client, workspace_id):
        payload = self.subscription_updated(workspace_id, 'evt_stripe_6', 'active')
        assert stripe_post(client, payload).status_code == 200
        subscription = billing_service.get_subscription(workspace_id)
        assert subscription.tier == 'pro'
        assert subscription.status == 'active'

    def test_incomplete_update_is_ignored(self, client, workspace_id):
        payload = self.subscription_updated(workspace_id, 'evt_stripe_7', 'incomplete')
        response = stripe_post(client, payload)
        assert response.status_code == 200
        assert response.get_json()['ignored'] is True
        assert billing_service.get_subscription(workspace_id).tier == 'free'


class TestFondy:

    def fondy_payload(self, workspace_id, **overrides):
        payload = {
            'order_id': 'order_42',
            'payment_id': '9001',
            'order_status': 'approved',
            'amount': '2900',
            'currency': 'USD',
            'merchant_data': json.dumps({'workspace_id': workspace_id, 'tier': 'starter'}),
        }
        payload.update(overrides)
        payload['signature'] = FondyAdapter.sign(payload, FONDY_PASSWORD)
        return payload

    def test_approved_form_callback_upgrades(self, client, workspace_id):
        response = client.post('/billing/webhook/fondy', data=self.fondy_payload(workspace_id))
        assert response.status_code == 200
        subscription = billing_service.get_subscription(workspace_id)
        assert subscription.tier == 'starter'
        assert subscription.payment_provider == 'fondy'

    def test_tampered_payload(self, client, workspace_id):
        payload = self.fondy_payload(workspace_id)
        payload['amount'] = '1'
        assert client.post('/billing/webhook/fondy', data=payload).status_code == 400

    def test_declined_marks_past_due(self, client, workspace_id):
        payload = self.fondy_payload(workspace_id, order_status='declined', payment_id='9002')
        assert client.post('/billing/webhook/fondy', data=payload).status_code == 200
        assert billing_service.get_subscription(workspace_id).status == 'past_due'

    def test_reversal_after_approval_cancels(self, client, workspace_id):
        approved = self.fondy_payload(workspace_id)
        assert client.post('/billing/webhook/fondy', data=approved).status_code == 200

        reversed_ = self.fondy_payload(workspace_id, order_status='reversed')
        response = client.post('/billing/webhook/fondy', data=reversed_)
        assert response.status_code == 200
        assert 'duplicate' not in response.get_json()
        assert billing_service.get_subscription(workspace_id).status == 'cancelled'

    def test_repeated_callback_is_a_duplicate(self, client, workspace_id):
        payload = self.fondy_payload(workspace_id)
        client.post('/billing/webhook/fondy', data=payload)
        response = client.post('/billing/webhook/fondy', data=payload)
        assert response.get_json()['duplicate'] is True
        assert ProcessedBillingEvent.query.filter_by(provider='fondy').count() == 1


class TestEndpoint:

    def test_unknown_provider(self, client):
        response = client.post('/billing/webhook/paypal', json={'id': 'x'})
        assert response.status_code == 400

    def test_empty_payload(self, client):
        response = client.post('/billing/webhook/paddle', data=b'', content_type='application/json')
        assert response.status_code == 400

    def test_missing_secret_rejects(self, app, workspace_id):
        app.config['STRIPE_WEBHOOK_SECRET'] = None
        with pytest.raises(WebhookVerificationError):
            normalize_event('stripe', {'id': 'evt', 'type': 'invoice.paid'}, b'{}', {})
