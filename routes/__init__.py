from .workspace import workspace_bp
from .billing import billing_bp
from .resources import resources_bp


def register_blueprints(app):
    app.register_blueprint(workspace_bp)
    app.register_blueprint(billing_bp)
    app.register_blueprint(resources_bp)
