from flask import Blueprint, request, jsonify
from flask_login import login_user, logout_user, login_required, current_user
from passlib.hash import pbkdf2_sha256
import logging

from extensions import limiter
from models import db, User
from routes.utils import json_body, log_action

logger = logging.getLogger(__name__)

auth_bp = Blueprint('auth', __name__, url_prefix='/auth')


@auth_bp.route('/login', methods=['POST'])
@limiter.limit("10 per minute")
def login():
    data = json_body()
    username = (data.get('username') or '').strip()
    password = data.get('password') or ''

    if not username or not password:
        return jsonify(error='Username and password are required.', code='validation_error'), 400

    if len(username) > 100 or len(password) > 100:
        return jsonify(error='Username or password is too long.', code='validation_error'), 400

    user = User.query.filter_by(username=username).first()

    if user and pbkdf2_sha256.verify(password, user.password_hash):
        login_user(user)
        log_action('User logged in successfully.', user=user)
        db.session.commit()
        return jsonify(user.to_dict())

    log_action(f'Failed login attempt for username: {username}.',
               organization_id=user.organization_id if user else None)
    db.session.commit()
    logger.info("Failed login attempt for %r from %s", username, request.remote_addr)
    return jsonify(error='Invalid username or password.', code='unauthorized'), 401


@auth_bp.route('/logout', methods=['POST'])
@login_required
def logout():
    log_action('User logged out.', user=current_user)
    db.session.commit()
    logout_user()
    return jsonify(status='ok')


@auth_bp.route('/me')
@login_required
def me():
    return jsonify(current_user.to_dict())
