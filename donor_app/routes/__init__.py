# donor_app/routes/__init__.py
"""
Application routes package
"""

from .donors import donors_blueprint
from .segments import segments_blueprint


def init_routes(app):
    """Initialize all application routes"""
    for blueprint in (segments_blueprint, donors_blueprint):
        if blueprint.name not in app.blueprints:
            app.register_blueprint(blueprint)
