"""
Deferred extension instances.

Created here, bound to the app in create_app() via init_app().
"""

from flask import jsonify
from flask_sqlalchemy import SQLAlchemy
from flask_migrate import Migrate
from flask_login import LoginManager
from flask_wtf.csrf import CSRFProtect
from flask_limiter import Limiter
from flask_limiter.util import get_remote_address

db = SQLAlchemy()
migrate = Migrate()
login_manager = LoginManager()
csrf = CSRFProtect()
limiter = Limiter(
    key_func=get_remote_address,
    default_limits=[],  # per-route limits only
    storage_uri="memory://",
)


@login_manager.user_loader
def load_user(user_id):
    """Load user by ID from session. Imports lazily to avoid circular deps."""
    from pointtracker.models.user import User

    user = db.session.get(User, user_id)
    if user is not None and not user.is_active:
        return None
    return user


@login_manager.unauthorized_handler
def unauthorized():
    """JSON API — answer 401 instead of redirecting to a login page."""
    return jsonify({
        "error": "unauthorized",
        "message": "Please log in to access this resource.",
    }), 401
