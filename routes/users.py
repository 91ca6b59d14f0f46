from flask import Blueprint, request, jsonify
from models import db, User
from passlib.hash import pbkdf2_sha256
from flask_login import login_required, current_user
from .decorators import role_required
from .utils import json_body, log_action
from sqlalchemy import func

user_bp = Blueprint('users', __name__, url_prefix='/users')

VALID_ROLES = ('Admin', 'Accountant', 'Cashier')


def _bad_request(message):
    return jsonify(error=message, code='validation_error'), 400


def _normalize_role(role):
    for valid in VALID_ROLES:
        if valid.lower() == (role or '').strip().lower():
            return valid
    return None


def _org_user_or_404(user_id):
    user = User.query.filter_by(id=user_id, organization_id=current_user.organization_id).first()
    if user is None:
        return None, (jsonify(error=f'User {user_id} not found', code='not_found'), 404)
    return user, None


@user_bp.route('', methods=['GET'])
@login_required
@role_required('Admin')
def list_users():
    users = User.query.filter_by(organization_id=current_user.organization_id).order_by(User.username).all()
    return jsonify(items=[u.to_dict() for u in users])


@user_bp.route('', methods=['POST'])
@login_required
@role_required('Admin')
def create_user():
    data = json_body()
    username = (data.get('username') or '').strip()
    password = data.get('password') or ''
    role = _normalize_role(data.get('role'))

    # Basic validation
    if not username or not password or not data.get('role'):
        return _bad_request('username, password and role are required.')
    if role is None:
        return _bad_request(f'role must be one of: {", ".join(VALID_ROLES)}')
    if len(username) > 100 or len(password) > 200:
        return _bad_request('Username or password is too long.')
    if len(password) < 6:
        return _bad_request('Password must be at least 6 characters.')

    # Prevent duplicate usernames (case-insensitive check)
    existing = User.query.filter(func.lower(User.username) == username.lower()).first()
    if existing:
        return jsonify(error=f'Username "{username}" already exists.', code='duplicate_key'), 409

    try:
        new_user = User(
            organization_id=current_user.organization_id,
            username=username,
            password_hash=pbkdf2_sha256.hash(password),
            role=role
        )
        db.session.add(new_user)
        log_action(f'Created new user: {username} with role: {role}.')
        db.session.commit()
    except Exception:
        db.session.rollback()
        raise

    return jsonify(new_user.to_dict()), 201


@user_bp.route('/<int:user_id>', methods=['PUT'])
@login_required
@role_required('Admin')
def update_user(user_id):
    user, error = _org_user_or_404(user_id)
    if error:
        return error
    data = json_body()
    new_password = data.get('password')

    if 'role' in data:
        role = _normalize_role(data.get('role'))
        if role is None:
            return _bad_request(f'role must be one of: {", ".join(VALID_ROLES)}')
        user.role = role

    if new_password:
        if len(new_password) < 6:
            db.session.rollback()
            return _bad_request('Password must be at least 6 characters.')
        user.password_hash = pbkdf2_sha256.hash(new_password)

    try:
        log_action(f'Updated user: {user.username}. Role is {user.role}.')
        db.session.commit()
    except Exception:
        db.session.rollback()
        raise

    return jsonify(user.to_dict())


@user_bp.route('/<int:user_id>', methods=['DELETE'])
@login_required
@role_required('Admin')
def delete_user(user_id):
    user, error = _org_user_or_404(user_id)
    if error:
        return error

    # Safety check: prevent a user from deleting themselves
    if user.id == current_user.id:
        return _bad_request('You cannot delete your own account.')

    # Prevent removing the last Admin account
    if user.role and user.role.lower() == 'admin':
        admin_count = User.query.filter(
            User.organization_id == current_user.organization_id,
            func.lower(User.role) == 'admin',
        ).count()
        if admin_count <= 1:
            return _bad_request('Cannot delete the last admin account.')

    try:
        username = user.username
        db.session.delete(user)
        log_action(f'Deleted user: {username}.')
        db.session.commit()
    except Exception:
        db.session.rollback()
        raise

    return jsonify(status='deleted', id=user_id)
