# routes/billing.py
"""
Subscription and quota routes plus the inbound billing webhook.
"""

import logging

from flask import Blueprint, request, jsonify, g
from flask_login import login_required

from feature_flags import get_workspace_modules
from services import billing_service, quota_service
from services.billing_events import handle_webhook
from services.exceptions import status_for_code
from services.tenant_service import permission_required

logger = logging.getLogger(__name__)

billing_bp = Blueprint('billing', __name__)


def _respond(result):
    if result['success']:
        return jsonify(result)
    return jsonify(result), status_for_code(result.get('code'))


# =============================================================================
# SUBSCRIPTION
# =============================================================================

@billing_bp.route('/workspaces/<int:workspace_id>/subscription', methods=['GET'])
@login_required
@permission_required('view_billing')
def get_subscription(workspace_id):
    subscription = billing_service.get_subscription(workspace_id)
    if subscription is None:
        return jsonify({'success': False, 'error': 'Subscription not configured.', 'code': 'not_found'}), 404
    return jsonify({
        'success': True,
        'subscription': subscription.to_dict(),
        'modules': sorted(get_workspace_modules(subscription)),
    })


@billing_bp.route('/workspaces/<int:workspace_id>/subscription/upgrade', methods=['POST'])
@login_required
@permission_required('manage_billing')
def upgrade(workspace_id):
    data = request.get_json(silent=True) or {}
    return _respond(billing_service.upgrade(workspace_id, data.get('tier')))


@billing_bp.route('/workspaces/<int:workspace_id>/subscription/downgrade', methods=['POST'])
@login_required
@permission_required('manage_billing')
def downgrade(workspace_id):
    data = request.get_json(silent=True) or {}
    return _respond(billing_service.downgrade(workspace_id, data.get('tier')))


@billing_bp.route('/workspaces/<int:workspace_id>/subscription/cancel', methods=['POST'])
@login_required
@permission_required('manage_billing')
def cancel(workspace_id):
    return _respond(billing_service.cancel(workspace_id))


@billing_bp.route('/workspaces/<int:workspace_id>/subscription/modules', methods=['PUT'])
@login_required
@permission_required('manage_billing')
def set_modules(workspace_id):
    data = request.get_json(silent=True) or {}
    return _respond(billing_service.set_enabled_modules(workspace_id, data.get('modules') or []))


@billing_bp.route('/workspaces/<int:workspace_id>/quota', methods=['GET'])
@login_required
@permission_required('view_billing')
def get_quota(workspace_id):
    quota = quota_service.get_quota(workspace_id)
    if quota is None:
        return jsonify({'success': False, 'error': 'Quota not configured.', 'code': 'not_found'}), 404
    return jsonify({
        'success': True,
        'tier': g.workspace.subscription.tier if g.workspace.subscription else None,
        'quota': quota.to_dict(),
    })


# =============================================================================
# WEBHOOK ENDPOINT
# =============================================================================

@billing_bp.route('/billing/webhook/<provider>', methods=['POST'])
def billing_webhook(provider):
    """
    Receive subscription and payment events from a billing provider.

    Configure in the provider dashboard: https://yourdomain.com/billing/webhook/<provider>

    Processed, duplicate and ignored events all answer 200 so the provider
    stops retrying. Bad signatures and payloads answer 400; storage
    failures answer 5xx so the provider retries later.
    """
    raw_body = request.get_data()
    payload = request.get_json(silent=True)
    if payload is None:
        payload = request.form.to_dict()  # Fondy posts form-encoded callbacks

    if not payload:
        return jsonify({'received': False, 'error': 'No payload'}), 400

    result = handle_webhook(provider, payload, raw_body=raw_body, headers=request.headers)
    if result['success']:
        return jsonify({'received': True, **result})

    logger.warning(f"{provider} webhook not applied: {result.get('error')}")
    return jsonify({'received': False, **result}), status_for_code(result.get('code'))
