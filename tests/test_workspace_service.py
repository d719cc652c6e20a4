"""
Workspace and membership management tests.

Run with: python -m pytest tests/test_workspace_service.py -v
"""

import sys
from pathlib import Path

import pytest

PROJECT_ROOT = Path(__file__).parent.parent
sys.path.insert(0, str(PROJECT_ROOT))

from models import db, Workspace, Membership, Subscription, WorkspaceQuota
from services import quota_service, workspace_service
from services.exceptions import AuthorizationDenied, NotFound
from services.tenant_service import can_modify_member, validate_last_owner, get_membership


class TestCreateWorkspace:

    def test_creates_everything_together(self, owner):
        result = workspace_service.create_workspace(owner.id, 'Acme Sales', visibility_mode='own')
        assert result['success']
        workspace = result['workspace']
        assert workspace['slug'] == 'acme-sales'
        assert workspace['settings']['visibility_mode'] == 'own'

        membership = get_membership(workspace['id'], owner.id)
        assert membership.role == 'owner'
        assert Subscription.query.filter_by(workspace_id=workspace['id']).one().tier == 'free'
        assert WorkspaceQuota.query.filter_by(workspace_id=workspace['id']).one().current_users == 1

    def test_duplicate_slug_leaves_nothing_behind(self, owner, workspace_id):
        result = workspace_service.create_workspace(owner.id, 'Acme Sales')
        assert not result['success']
        assert result['code'] == 'conflict'
        assert Workspace.query.count() == 1
        assert Subscription.query.count() == 1

    def test_invalid_input(self, owner):
        assert workspace_service.create_workspace(owner.id, '  ')['code'] == 'invalid_input'
        assert workspace_service.create_workspace(owner.id, 'X', visibility_mode='secret')['code'] == 'invalid_input'
        assert Workspace.query.count() == 0

    def test_unknown_owner(self, app):
        assert workspace_service.create_workspace(999, 'Ghost')['code'] == 'not_found'

    def test_slugify(self):
        assert workspace_service.slugify('  Hello, World!  ') == 'hello-world'
        assert workspace_service.slugify('!!!') == 'workspace'

    def test_workspaces_for_user(self, owner, workspace_id, member):
        member('alice', 'user')
        other = workspace_service.create_workspace(owner.id, 'Second')['workspace']['id']
        pairs = workspace_service.get_workspaces_for_user(owner.id)
        assert [ws.id for ws, _ in pairs] == [workspace_id, other]
        assert all(m.role == 'owner' for _, m in pairs)


class TestSettings:

    def test_admin_updates_settings(self, workspace_id, member):
        admin = member('ada', 'admin')
        result = workspace_service.update_settings(workspace_id, admin.id,
                                                   {'name': 'Renamed', 'visibility_mode': 'own'})
        assert result['success']
        assert result['workspace']['name'] == 'Renamed'
        assert db.session.get(Workspace, workspace_id).visibility_mode == 'own'

    def test_manager_cannot(self, workspace_id, member):
        manager = member('max', 'manager')
        result = workspace_service.update_settings(workspace_id, manager.id, {'visibility_mode': 'own'})
        assert result['code'] == 'forbidden'

    def test_bad_visibility_mode(self, owner, workspace_id):
        result = workspace_service.update_settings(workspace_id, owner.id, {'visibility_mode': 'secret'})
        assert result['code'] == 'invalid_input'

    def test_unknown_setting_is_rejected(self, owner, workspace_id):
        result = workspace_service.update_settings(workspace_id, owner.id,
                                                   {'visibility_mode': 'own', 'is_admin': True})
        assert result['code'] == 'invalid_input'
        workspace = db.session.get(Workspace, workspace_id)
        assert 'is_admin' not in workspace.settings
        assert workspace.visibility_mode == 'all'

    def test_delete_is_owner_only(self, owner, workspace_id, member):
        admin = member('ada', 'admin')
        assert workspace_service.delete_workspace(workspace_id, admin.id)['code'] == 'forbidden'

        assert workspace_service.delete_workspace(workspace_id, owner.id)['success']
        assert workspace_service.get_workspaces_for_user(owner.id) == []
        # Deleted workspaces look missing to everyone
        assert workspace_service.update_settings(workspace_id, owner.id, {})['code'] == 'not_found'


class TestAddMember:

    def test_free_plan_allows_one_extra_user(self, owner, workspace_id, make_user):
        first = make_user('first')
        second = make_user('second')

        result = workspace_service.add_member(workspace_id, owner.id, role='user', user_id=first.id)
        assert result['success']
        assert quota_service.get_quota(workspace_id).current_users == 2

        result = workspace_service.add_member(workspace_id, owner.id, role='user', user_id=second.id)
        assert not result['success']
        assert result['code'] == 'quota_exceeded'
        assert get_membership(workspace_id, second.id) is None
        assert quota_service.get_quota(workspace_id).current_users == 2

    def test_add_by_email(self, owner, workspace_id, make_user):
        make_user('eve')
        result = workspace_service.add_member(workspace_id, owner.id, role='guest', email='EVE@example.com ')
        assert result['success']
        assert result['member']['role'] == 'guest'

    def test_already_member(self, owner, workspace_id, member):
        alice = member('alice', 'user')
        result = workspace_service.add_member(workspace_id, owner.id, user_id=alice.id)
        assert result['code'] == 'conflict'

    def test_cannot_assign_own_level(self, workspace_id, member, make_user):
        admin = member('ada', 'admin')
        newcomer = make_user('newcomer')
        result = workspace_service.add_member(workspace_id, admin.id, role='admin', user_id=newcomer.id)
        assert result['code'] == 'forbidden'

    def test_unknown_role(self, owner, workspace_id, make_user):
        newcomer = make_user('newcomer')
        result = workspace_service.add_member(workspace_id, owner.id, role='superuser', user_id=newcomer.id)
        assert result['code'] == 'invalid_input'

    def test_user_cannot_invite(self, workspace_id, member, make_user):
        alice = member('alice', 'user')
        newcomer = make_user('newcomer')
        result = workspace_service.add_member(workspace_id, alice.id, role='guest', user_id=newcomer.id)
        assert result['code'] == 'forbidden'

    def test_non_member_gets_not_found(self, workspace_id, make_user):
        outsider = make_user('outsider')
        newcomer = make_user('newcomer')
        result = workspace_service.add_member(workspace_id, outsider.id, user_id=newcomer.id)
        assert result['code'] == 'not_found'


class TestChangeRole:

    def test_admin_promotes_user_to_manager(self, workspace_id, member):
        admin = member('ada', 'admin')
        alice = member('alice', 'user')
        result = workspace_service.change_member_role(workspace_id, admin.id, alice.id, 'manager')
        assert result['success']
        assert get_membership(workspace_id, alice.id).role == 'manager'

    def test_peer_cannot_change_peer(self, workspace_id, member):
        ada = member('ada', 'admin')
        bea = member('bea', 'admin')
        result = workspace_service.change_member_role(workspace_id, ada.id, bea.id, 'user')
        assert result['code'] == 'forbidden'
        assert get_membership(workspace_id, bea.id).role == 'admin'

    def test_cannot_promote_to_own_level(self, workspace_id, member):
        admin = member('ada', 'admin')
        alice = member('alice', 'user')
        result = workspace_service.change_member_role(workspace_id, admin.id, alice.id, 'admin')
        assert result['code'] == 'forbidden'

    def test_no_self_change(self, owner, workspace_id):
        result = workspace_service.change_member_role(workspace_id, owner.id, owner.id, 'admin')
        assert result['code'] == 'forbidden'

    def test_missing_target(self, owner, workspace_id):
        result = workspace_service.change_member_role(workspace_id, owner.id, 999, 'user')
        assert result['code'] == 'not_found'


class TestRemoveMember:

    def test_remove_releases_users_quota(self, owner, workspace_id, make_user):
        alice = make_user('alice')
        workspace_service.add_member(workspace_id, owner.id, user_id=alice.id)

        result = workspace_service.remove_member(workspace_id, owner.id, alice.id)
        assert result['success']
        assert get_membership(workspace_id, alice.id) is None
        assert quota_service.get_quota(workspace_id).current_users == 1

    def test_suspend_and_reactivate(self, owner, workspace_id, make_user):
        alice = make_user('alice')
        workspace_service.add_member(workspace_id, owner.id, user_id=alice.id)

        result = workspace_service.remove_member(workspace_id, owner.id, alice.id, suspend=True)
        assert result['member']['status'] == 'suspended'
        assert Membership.query.filter_by(workspace_id=workspace_id, user_id=alice.id).one().status == 'suspended'
        assert quota_service.get_quota(workspace_id).current_users == 1

        result = workspace_service.add_member(workspace_id, owner.id, role='manager', user_id=alice.id)
        assert result['success']
        assert get_membership(workspace_id, alice.id).role == 'manager'
        assert quota_service.get_quota(workspace_id).current_users == 2

    def test_manager_cannot_remove(self, workspace_id, member):
        manager = member('max', 'manager')
        guest = member('gus', 'guest')
        result = workspace_service.remove_member(workspace_id, manager.id, guest.id)
        assert result['code'] == 'forbidden'

    def test_member_leaves(self, workspace_id, member):
        alice = member('alice', 'user')
        assert workspace_service.leave_workspace(workspace_id, alice.id)['success']
        assert get_membership(workspace_id, alice.id) is None

    def test_last_owner_cannot_leave(self, owner, workspace_id):
        result = workspace_service.leave_workspace(workspace_id, owner.id)
        assert result['code'] == 'invalid_input'
        assert get_membership(workspace_id, owner.id).role == 'owner'


class TestListMembers:

    def test_most_senior_first(self, owner, workspace_id, member):
        member('gus', 'guest')
        member('max', 'manager')
        roles = [m.role for m in workspace_service.list_members(workspace_id, owner.id)]
        assert roles == ['owner', 'manager', 'guest']

    def test_guest_cannot_list(self, workspace_id, member):
        guest = member('gus', 'guest')
        with pytest.raises(AuthorizationDenied):
            workspace_service.list_members(workspace_id, guest.id)

    def test_outsider(self, workspace_id, make_user):
        with pytest.raises(NotFound):
            workspace_service.list_members(workspace_id, make_user('outsider').id)


class TestMemberRules:

    def test_can_modify_member(self, owner, workspace_id, member):
        admin = member('ada', 'admin')
        owner_m = get_membership(workspace_id, owner.id)
        admin_m = get_membership(workspace_id, admin.id)
        assert can_modify_member(owner_m, admin_m)
        assert not can_modify_member(admin_m, owner_m)
        assert not can_modify_member(owner_m, owner_m)

    def test_second_owner_may_leave(self, owner, workspace_id, member):
        member('olga', 'owner')
        validate_last_owner(get_membership(workspace_id, owner.id))
        assert workspace_service.leave_workspace(workspace_id, owner.id)['success']

    def test_last_owner_is_guarded(self, owner, workspace_id):
        with pytest.raises(ValueError):
            validate_last_owner(get_membership(workspace_id, owner.id))

    def test_owner_role_is_never_granted(self, owner, workspace_id, member):
        admin = member('ada', 'admin')
        result = workspace_service.change_member_role(workspace_id, owner.id, admin.id, 'owner')
        assert result['code'] == 'forbidden'
        assert get_membership(workspace_id, admin.id).role == 'admin'

    def test_co_owner_cannot_be_demoted(self, owner, workspace_id, member):
        olga = member('olga', 'owner')
        result = workspace_service.change_member_role(workspace_id, owner.id, olga.id, 'admin')
        assert result['code'] == 'forbidden'
        assert get_membership(workspace_id, olga.id).role == 'owner'
