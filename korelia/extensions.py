"""
Deferred extension instances.

Created here, bound to the app in create_app() via init_app().
"""

from flask import jsonify
from flask_login import LoginManager
from flask_wtf.csrf import CSRFProtect
from flask_limiter import Limiter
from flask_limiter.util import get_remote_address

login_manager = LoginManager()
csrf = CSRFProtect()
limiter = Limiter(
    key_func=get_remote_address,
    storage_uri="memory://",
)


@login_manager.request_loader
def load_user_from_request(request):
    """Resolve the session JWT (cookie or Bearer header) to a SessionUser.

    Imports lazily to avoid circular deps.
    """
    from korelia.services.auth_service import user_from_request

    return user_from_request(request)


@login_manager.unauthorized_handler
def unauthorized():
    return jsonify({"error": "Not authenticated"}), 401
