# routes/resources.py
"""
Owned resource routes: contacts, companies, deals, tasks and activities.

All five share one set of endpoints; the resource name in the URL picks
the model. Visibility, permission and quota checks live in
services/resource_service.py.
"""

from flask import Blueprint, request, jsonify
from flask_login import login_required, current_user

from feature_flags import module_required
from models import OWNED_RESOURCE_MODELS
from services import resource_service, quota_service
from services.tenant_service import permission_required
from tier_config import QUOTA_KINDS

resources_bp = Blueprint('resources', __name__, url_prefix='/workspaces/<int:workspace_id>')

RESOURCE_PATH = '/<any(' + ', '.join(sorted(OWNED_RESOURCE_MODELS)) + '):resource>'


@resources_bp.errorhandler(ValueError)
def handle_invalid_input(e):
    return jsonify({'success': False, 'error': str(e), 'code': 'invalid_input'}), 400


def _truthy(value) -> bool:
    return (value or '').lower() in ('1', 'true', 'yes')


# =============================================================================
# COLLECTION
# =============================================================================

@resources_bp.route(RESOURCE_PATH, methods=['GET'])
@login_required
def list_items(workspace_id, resource):
    items = resource_service.list_resources(
        workspace_id, current_user.id, resource,
        include_deleted=_truthy(request.args.get('include_deleted')),
    )
    return jsonify({'success': True, resource: [item.to_dict() for item in items]})


@resources_bp.route(RESOURCE_PATH, methods=['POST'])
@login_required
def create_item(workspace_id, resource):
    data = request.get_json(silent=True) or {}
    item = resource_service.create_resource(workspace_id, current_user.id, resource, data)
    return jsonify({'success': True, 'item': item.to_dict()}), 201


# =============================================================================
# SINGLE ITEM
# =============================================================================

@resources_bp.route(RESOURCE_PATH + '/<int:item_id>', methods=['GET'])
@login_required
def get_item(workspace_id, resource, item_id):
    item = resource_service.get_resource(workspace_id, current_user.id, resource, item_id)
    if item is None:
        return jsonify({'success': False, 'error': 'Not found.', 'code': 'not_found'}), 404
    return jsonify({'success': True, 'item': item.to_dict()})


@resources_bp.route(RESOURCE_PATH + '/<int:item_id>', methods=['PATCH'])
@login_required
def update_item(workspace_id, resource, item_id):
    data = request.get_json(silent=True) or {}
    item = resource_service.update_resource(workspace_id, current_user.id, resource, item_id, data)
    return jsonify({'success': True, 'item': item.to_dict()})


@resources_bp.route(RESOURCE_PATH + '/<int:item_id>', methods=['DELETE'])
@login_required
def delete_item(workspace_id, resource, item_id):
    item = resource_service.soft_delete_resource(workspace_id, current_user.id, resource, item_id)
    return jsonify({'success': True, 'item': item.to_dict()})


@resources_bp.route(RESOURCE_PATH + '/<int:item_id>/restore', methods=['POST'])
@login_required
def restore_item(workspace_id, resource, item_id):
    item = resource_service.restore_resource(workspace_id, current_user.id, resource, item_id)
    return jsonify({'success': True, 'item': item.to_dict()})


# =============================================================================
# REPORTS
# =============================================================================

@resources_bp.route('/reports/summary', methods=['GET'])
@login_required
@permission_required('view_reports')
@module_required('reports')
def reports_summary(workspace_id):
    """Visible record counts per resource with remaining quota."""
    counts = {
        resource: len(resource_service.list_resources(workspace_id, current_user.id, resource))
        for resource in sorted(OWNED_RESOURCE_MODELS)
    }
    remaining = {
        kind: quota_service.get_remaining(workspace_id, kind)
        for kind in QUOTA_KINDS
    }
    return jsonify({'success': True, 'counts': counts, 'remaining': remaining})
