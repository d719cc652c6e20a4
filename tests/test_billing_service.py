"""
Subscription lifecycle tests: tier changes keep ceilings in step with the
subscription, downgrades never touch data, and failures leave nothing
half applied.

Run with: python -m pytest tests/test_billing_service.py -v
"""

import sys
from pathlib import Path

PROJECT_ROOT = Path(__file__).parent.parent
sys.path.insert(0, str(PROJECT_ROOT))

from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError

from models import db, Contact
from services import billing_service, quota_service, workspace_service
from feature_flags import workspace_has_module, get_workspace_modules


def add_contacts(workspace_id, user_id, count):
    db.session.add_all([
        Contact(workspace_id=workspace_id, created_by_id=user_id, owner_id=user_id,
                first_name=f'Contact{i}', last_name='Test')
        for i in range(count)
    ])
    quota_service.adjust_current(workspace_id, {'contacts': count}, commit=False)
    db.session.commit()


class TestInitialState:

    def test_new_workspace_is_free_and_active(self, workspace_id):
        subscription = billing_service.get_subscription(workspace_id)
        assert subscription.tier == 'free'
        assert subscription.status == 'active'
        assert subscription.trial_ends_at is None
        assert subscription.enabled_modules == []

    def test_trial_period_when_configured(self, app, owner):
        app.config['TRIAL_DAYS'] = 14
        result = workspace_service.create_workspace(owner.id, 'Trial Co')
        subscription = billing_service.get_subscription(result['workspace']['id'])
        assert subscription.status == 'trialing'
        assert subscription.trial_ends_at is not None

    def test_missing_subscription_reads_as_none(self, app):
        assert billing_service.get_subscription(999) is None


class TestUpgrade:

    def test_upgrade_applies_tier_ceilings(self, workspace_id):
        result = billing_service.upgrade(workspace_id, 'pro')
        assert result['success']
        assert result['subscription']['tier'] == 'pro'
        assert result['subscription']['status'] == 'active'

        quota = quota_service.get_quota(workspace_id)
        assert quota.max_users == 20
        assert quota.max_contacts == 50000
        assert quota.max_storage_mb == 51200

    def test_upgrade_is_idempotent(self, workspace_id):
        billing_service.upgrade(workspace_id, 'pro')
        first = quota_service.get_quota(workspace_id).to_dict()
        result = billing_service.upgrade(workspace_id, 'pro')
        assert result['success']
        assert quota_service.get_quota(workspace_id).to_dict() == first

    def test_enterprise_is_unlimited(self, workspace_id):
        billing_service.upgrade(workspace_id, 'enterprise')
        quota = quota_service.get_quota(workspace_id)
        assert quota.max_contacts is None
        assert quota_service.get_remaining(workspace_id, 'contacts') is None

    def test_upgrade_reactivates_past_due(self, workspace_id):
        billing_service.set_status(workspace_id, 'past_due')
        result = billing_service.upgrade(workspace_id, 'starter')
        assert result['subscription']['status'] == 'active'

    def test_invalid_tier_changes_nothing(self, workspace_id):
        result = billing_service.upgrade(workspace_id, 'platinum')
        assert not result['success']
        assert result['code'] == 'invalid_input'
        assert billing_service.get_subscription(workspace_id).tier == 'free'
        assert quota_service.get_quota(workspace_id).max_contacts == 100

    def test_missing_subscription(self, app):
        result = billing_service.upgrade(999, 'pro')
        assert not result['success']
        assert result['code'] == 'not_found'

    def test_storage_failure_rolls_back_tier(self, workspace_id, monkeypatch):
        def broken(*args, **kwargs):
            raise SQLAlchemyError('disk full')

        monkeypatch.setattr(quota_service, 'set_maxima', broken)
        result = billing_service.upgrade(workspace_id, 'pro')
        assert not result['success']
        assert result['code'] == 'service_unavailable'

        db.session.expire_all()
        assert billing_service.get_subscription(workspace_id).tier == 'free'
        assert quota_service.get_quota(workspace_id).max_users == 2

    def test_concurrent_change_is_a_conflict(self, workspace_id, monkeypatch):
        locked_subscription = billing_service._locked_subscription

        def locked_then_changed_elsewhere(ws_id):
            subscription = locked_subscription(ws_id)
            # Another transaction commits a change after this one read the row
            db.session.execute(
                text("UPDATE subscriptions SET version = version + 1 WHERE workspace_id = :ws"),
                {'ws': ws_id}
            )
            return subscription

        monkeypatch.setattr(billing_service, '_locked_subscription', locked_then_changed_elsewhere)
        result = billing_service.upgrade(workspace_id, 'pro')
        assert result == {
            'success': False,
            'error': 'The subscription was changed by another request. Please retry.',
            'code': 'conflict',
        }

        db.session.expire_all()
        assert billing_service.get_subscription(workspace_id).tier == 'free'
        assert quota_service.get_quota(workspace_id).max_users == 2
        assert quota_service.get_quota(workspace_id).max_contacts == 100


class TestDowngrade:

    def test_over_limit_data_is_kept_with_one_warning(self, owner, workspace_id):
        billing_service.upgrade(workspace_id, 'pro')
        add_contacts(workspace_id, owner.id, 250)

        result = billing_service.downgrade(workspace_id, 'free')
        assert result['success']
        assert result['subscription']['tier'] == 'free'
        assert len(result['warnings']) == 1
        warning = result['warnings'][0]
        assert 'contacts' in warning
        assert '250' in warning
        assert '100' in warning

        quota = quota_service.get_quota(workspace_id)
        assert quota.max_contacts == 100
        assert quota.current_contacts == 250
        assert Contact.query.filter_by(workspace_id=workspace_id).count() == 250
        assert not quota_service.can_create(workspace_id, 'contacts')

    def test_downgrade_within_limits_has_no_warnings(self, workspace_id):
        billing_service.upgrade(workspace_id, 'pro')
        result = billing_service.downgrade(workspace_id, 'starter')
        assert result['warnings'] == []

    def test_downgrade_keeps_status(self, workspace_id):
        billing_service.upgrade(workspace_id, 'pro')
        billing_service.set_status(workspace_id, 'past_due')
        result = billing_service.downgrade(workspace_id, 'starter')
        assert result['subscription']['status'] == 'past_due'


class TestCancelAndStatus:

    def test_cancel_keeps_tier_and_ceilings(self, workspace_id):
        billing_service.upgrade(workspace_id, 'pro')
        result = billing_service.cancel(workspace_id)
        assert result['success']
        assert result['subscription']['status'] == 'cancelled'
        assert result['subscription']['tier'] == 'pro'
        assert result['subscription']['cancelled_at'] is not None
        assert quota_service.get_quota(workspace_id).max_users == 20

    def test_set_status(self, workspace_id):
        result = billing_service.set_status(workspace_id, 'past_due')
        assert result['success']
        assert result['subscription']['status'] == 'past_due'
        assert result['subscription']['tier'] == 'free'

    def test_invalid_status(self, workspace_id):
        result = billing_service.set_status(workspace_id, 'frozen')
        assert not result['success']
        assert result['code'] == 'invalid_input'
        assert billing_service.get_subscription(workspace_id).status == 'active'

    def test_status_change_leaves_ceilings_alone(self, workspace_id):
        billing_service.upgrade(workspace_id, 'starter')
        billing_service.set_status(workspace_id, 'past_due')
        quota = quota_service.get_quota(workspace_id)
        assert quota.max_users == 5
        assert quota.max_contacts == 5000


class TestModules:

    def test_tier_modules(self, workspace_id):
        subscription = billing_service.get_subscription(workspace_id)
        assert get_workspace_modules(subscription) == set()
        billing_service.upgrade(workspace_id, 'starter')
        assert workspace_has_module('reports', billing_service.get_subscription(workspace_id))

    def test_purchased_modules(self, workspace_id):
        result = billing_service.set_enabled_modules(workspace_id, ['api_access'])
        assert result['success']
        assert result['subscription']['enabled_modules'] == ['api_access']
        subscription = billing_service.get_subscription(workspace_id)
        assert workspace_has_module('api_access', subscription)
        assert not workspace_has_module('reports', subscription)

    def test_unknown_module_is_rejected(self, workspace_id):
        result = billing_service.set_enabled_modules(workspace_id, ['teleport'])
        assert not result['success']
        assert result['code'] == 'invalid_input'

    def test_no_subscription_has_no_modules(self):
        assert not workspace_has_module('reports', None)
