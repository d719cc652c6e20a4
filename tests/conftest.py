"""
Shared fixtures: an app on in-memory SQLite, users known to the identity
provider, and a free-tier workspace owned by the 'owner' user.

Run with: python -m pytest tests/ -v
"""

import sys
from pathlib import Path

import pytest
from flask import g
from flask.testing import FlaskClient

# Add project root to path
PROJECT_ROOT = Path(__file__).parent.parent
sys.path.insert(0, str(PROJECT_ROOT))

from app import create_app
from models import db, User, Membership
from services import workspace_service


class PrincipalClient(FlaskClient):
    """
    Requests reuse the fixture's app context, so drop the user Flask-Login
    cached on g by the previous request before sending the next one.
    """

    def open(self, *args, **kwargs):
        g.pop('_login_user', None)
        return super().open(*args, **kwargs)


@pytest.fixture
def app():
    app = create_app('config.TestConfig')
    app.test_client_class = PrincipalClient
    with app.app_context():
        db.create_all()
        yield app
        db.session.remove()
        db.drop_all()


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture
def make_user(app):
    """Create a user whose identity-provider subject is 'idp|<name>'."""
    def _make(name):
        user = User(external_id=f'idp|{name}', email=f'{name}@example.com', first_name=name.capitalize())
        db.session.add(user)
        db.session.commit()
        return user
    return _make


@pytest.fixture
def owner(make_user):
    return make_user('owner')


@pytest.fixture
def workspace_id(owner):
    result = workspace_service.create_workspace(owner.id, 'Acme Sales')
    assert result['success'], result
    return result['workspace']['id']


@pytest.fixture
def member(make_user, workspace_id):
    """
    Create a user with an active membership, bypassing invitations and
    the users quota.
    """
    def _member(name, role, ws_id=None):
        user = make_user(name)
        db.session.add(Membership(workspace_id=ws_id or workspace_id, user_id=user.id,
                                  role=role, status='active'))
        db.session.commit()
        return user
    return _member


@pytest.fixture
def auth_headers(app):
    """Headers the identity provider proxy would add for a user."""
    def _headers(user):
        return {app.config['PRINCIPAL_HEADER']: user.external_id}
    return _headers
