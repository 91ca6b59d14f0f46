from functools import wraps
from flask_login import current_user
from flask import jsonify


def role_required(*roles):
    """
    Restrict an API endpoint to users with one of ``roles``.
    Example: @role_required('Admin', 'Accountant')
    """
    def decorator(f):
        @wraps(f)
        def decorated_function(*args, **kwargs):
            if not current_user.is_authenticated:
                # Normally handled by @login_required
                return jsonify(error='Authentication required', code='unauthorized'), 401
            user_role = getattr(current_user, 'role', None)
            # normalize case for comparison
            allowed = {r.lower() for r in roles}
            if user_role is None or user_role.lower() not in allowed:
                return jsonify(error='You do not have permission to perform this action',
                               code='forbidden'), 403
            return f(*args, **kwargs)
        return decorated_function
    return decorator
