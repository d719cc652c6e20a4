import logging

from flask import Flask, jsonify, request
from flask_login import LoginManager, current_user
from flask_migrate import Migrate
from models import db, User
from routes import register_blueprints
from services.exceptions import WorkspaceError
from services.permissions import PermissionEvaluator, DEFAULT_PERMISSION_TABLE
from services.tenant_service import set_workspace_context


def create_app(config_object='config.Config'):
    app = Flask(__name__)
    app.config.from_object(config_object)

    logging.basicConfig(
        level=logging.DEBUG if app.config.get('FLASK_ENV') == 'development' else logging.INFO,
        format='%(asctime)s %(levelname)s %(name)s: %(message)s'
    )

    # Initialize extensions
    db.init_app(app)
    Migrate(app, db)

    login_manager = LoginManager()
    login_manager.init_app(app)

    # One immutable permission table per app
    app.extensions['permission_evaluator'] = PermissionEvaluator(DEFAULT_PERMISSION_TABLE)

    @login_manager.user_loader
    def load_user(user_id):
        return db.session.get(User, int(user_id))

    @login_manager.request_loader
    def load_user_from_request(request):
        # The identity provider in front of us authenticates the caller
        # and forwards its subject id in this header
        principal = request.headers.get(app.config['PRINCIPAL_HEADER'])
        if not principal:
            return None
        return User.query.filter_by(external_id=principal).first()

    @login_manager.unauthorized_handler
    def unauthorized():
        return jsonify({'success': False, 'error': 'Authentication required.', 'code': 'unauthenticated'}), 401

    @app.before_request
    def set_rls_context():
        if current_user.is_authenticated:
            set_workspace_context((request.view_args or {}).get('workspace_id'), current_user.id)

    @app.errorhandler(WorkspaceError)
    def handle_workspace_error(e):
        return jsonify({'success': False, 'error': e.message, 'code': e.code}), e.status_code

    @app.errorhandler(404)
    def handle_not_found(e):
        return jsonify({'success': False, 'error': 'Not found.', 'code': 'not_found'}), 404

    # Register blueprints
    register_blueprints(app)

    return app


app = create_app()

if __name__ == '__main__':
    with app.app_context():
        db.create_all()
    app.run(host='0.0.0.0', port=5005, debug=True)
