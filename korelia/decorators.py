"""
Custom route decorators for access control.

- admin_required: ensures the user is logged in AND has the admin role.
"""

from functools import wraps

from flask import jsonify
from flask_login import current_user, login_required


def admin_required(f):
    """Require login + admin role."""

    @wraps(f)
    @login_required
    def decorated(*args, **kwargs):
        if not current_user.is_admin:
            return jsonify({"error": "Admin only"}), 403
        return f(*args, **kwargs)

    return decorated
