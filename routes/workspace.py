# routes/workspace.py
"""
Workspace management routes.
Creation, settings, soft deletion and member management.
"""

from flask import Blueprint, request, jsonify
from flask_login import login_required, current_user

from services import workspace_service
from services.exceptions import status_for_code

workspace_bp = Blueprint('workspace', __name__, url_prefix='/workspaces')


def _respond(result, success_status=200):
    if result['success']:
        return jsonify(result), success_status
    return jsonify(result), status_for_code(result.get('code'))


# =============================================================================
# WORKSPACES
# =============================================================================

@workspace_bp.route('', methods=['POST'])
@login_required
def create_workspace():
    data = request.get_json(silent=True) or {}
    result = workspace_service.create_workspace(
        owner_id=current_user.id,
        name=data.get('name'),
        slug=data.get('slug'),
        visibility_mode=data.get('visibility_mode', 'all'),
    )
    return _respond(result, 201)


@workspace_bp.route('', methods=['GET'])
@login_required
def list_workspaces():
    """Workspaces the current user is an active member of, with their role."""
    workspaces = [
        {**workspace.to_dict(), 'role': membership.role}
        for workspace, membership in workspace_service.get_workspaces_for_user(current_user.id)
    ]
    return jsonify({'success': True, 'workspaces': workspaces})


@workspace_bp.route('/<int:workspace_id>/settings', methods=['PATCH'])
@login_required
def update_settings(workspace_id):
    data = request.get_json(silent=True) or {}
    return _respond(workspace_service.update_settings(workspace_id, current_user.id, data))


@workspace_bp.route('/<int:workspace_id>', methods=['DELETE'])
@login_required
def delete_workspace(workspace_id):
    return _respond(workspace_service.delete_workspace(workspace_id, current_user.id))


# =============================================================================
# MEMBER MANAGEMENT
# =============================================================================

@workspace_bp.route('/<int:workspace_id>/members', methods=['GET'])
@login_required
def list_members(workspace_id):
    members = workspace_service.list_members(workspace_id, current_user.id)
    return jsonify({'success': True, 'members': [m.to_dict() for m in members]})


@workspace_bp.route('/<int:workspace_id>/members', methods=['POST'])
@login_required
def add_member(workspace_id):
    data = request.get_json(silent=True) or {}
    result = workspace_service.add_member(
        workspace_id,
        current_user.id,
        role=data.get('role', 'user'),
        user_id=data.get('user_id'),
        email=data.get('email'),
    )
    return _respond(result, 201)


@workspace_bp.route('/<int:workspace_id>/members/<int:user_id>/role', methods=['POST'])
@login_required
def change_member_role(workspace_id, user_id):
    data = request.get_json(silent=True) or {}
    return _respond(workspace_service.change_member_role(
        workspace_id, current_user.id, user_id, data.get('role')
    ))


@workspace_bp.route('/<int:workspace_id>/members/<int:user_id>', methods=['DELETE'])
@login_required
def remove_member(workspace_id, user_id):
    suspend = request.args.get('suspend', '').lower() in ('1', 'true', 'yes')
    if user_id == current_user.id:
        return _respond(workspace_service.leave_workspace(workspace_id, current_user.id))
    return _respond(workspace_service.remove_member(workspace_id, current_user.id, user_id, suspend=suspend))
