import os
import logging

from flask import Flask, jsonify
from flask_login import LoginManager
from flask_migrate import Migrate
from passlib.hash import pbkdf2_sha256

from models import db, User, Organization
from config import Config
from extensions import cache, limiter
from routes.errors import ConsignmentError, error_response
from routes.folio_utils import ensure_folio_sequences

logger = logging.getLogger(__name__)


def create_app(config_object=Config):
    app = Flask(__name__, instance_relative_config=True)
    app.config.from_object(config_object)

    # Cache and rate limiter
    app.config.setdefault('CACHE_TYPE', 'SimpleCache')
    cache.init_app(app)
    limiter.init_app(app)

    # Register blueprints (lazy imports to avoid circulars)
    from routes.auth import auth_bp
    from routes.consignment import consignment_bp
    from routes.reports import reports_bp
    from routes.suppliers import suppliers_bp
    from routes.users import user_bp
    app.register_blueprint(auth_bp)
    app.register_blueprint(consignment_bp)
    app.register_blueprint(reports_bp)
    app.register_blueprint(suppliers_bp)
    app.register_blueprint(user_bp)

    # DB and migrations
    db.init_app(app)
    Migrate(app, db)

    # --- Login Manager ---
    login_manager = LoginManager()
    login_manager.init_app(app)

    @login_manager.user_loader
    def load_user(user_id):
        try:
            uid = int(user_id)
        except (TypeError, ValueError):
            return None
        return db.session.get(User, uid)

    @login_manager.unauthorized_handler
    def unauthorized():
        return jsonify(error='Authentication required', code='unauthorized'), 401

    # --- JSON error handlers ---
    @app.errorhandler(ConsignmentError)
    def handle_consignment_error(e):
        db.session.rollback()
        return error_response(e)

    @app.errorhandler(404)
    def not_found(e):
        return jsonify(error='Not found', code='not_found'), 404

    @app.errorhandler(405)
    def method_not_allowed(e):
        return jsonify(error='Method not allowed', code='method_not_allowed'), 405

    @app.errorhandler(429)
    def rate_limited(e):
        return jsonify(error='Too many requests', code='rate_limited'), 429

    @app.errorhandler(500)
    def internal_error(e):
        db.session.rollback()
        logger.error("Unhandled server error: %s", getattr(e, 'original_exception', e))
        return jsonify(error='Internal server error', code='internal_error'), 500

    return app


def seed_essential_data(app):
    """Seeds the first organization, its admin user and folio counters if the database is empty."""
    with app.app_context():
        if Organization.query.count() > 0:
            return
        print("Seeding organization and admin user...")
        try:
            org = Organization(name=os.environ.get('CONSIGNA_ORG_NAME', 'Default Organization'))
            db.session.add(org)
            db.session.flush()

            username = os.environ.get('CONSIGNA_ADMIN_USER', 'admin')
            password = os.environ.get('CONSIGNA_ADMIN_PASSWORD', 'admin123')
            db.session.add(User(
                organization_id=org.id,
                username=username,
                password_hash=pbkdf2_sha256.hash(password),
                role='Admin',
            ))
            ensure_folio_sequences(org.id)
            db.session.commit()
            print(f"Organization '{org.name}' seeded with admin user '{username}'.")
            if 'CONSIGNA_ADMIN_PASSWORD' not in os.environ:
                logger.warning("Admin user created with the default password; change it after first login")
        except Exception as e:
            db.session.rollback()
            print(f"Error seeding essential data: {e}")
            raise
