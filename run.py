import os
import sys
import socket
import logging
import tempfile
from pathlib import Path
from logging.handlers import RotatingFileHandler

from sqlalchemy import inspect

from config import Config
from app import create_app, seed_essential_data
from models import db, Organization

logger = logging.getLogger('consigna')


def get_lan_ip() -> str:
    """Best-effort LAN address for the startup banner."""
    try:
        with socket.socket(socket.AF_INET, socket.SOCK_DGRAM) as s:
            # UDP connect sends nothing; it only selects the outgoing interface
            s.connect(('10.255.255.255', 1))
            return s.getsockname()[0]
    except OSError:
        return '127.0.0.1'


def configure_logging(log_dir: Path) -> Path:
    """Log to a rotating file plus stderr; level from LOGLEVEL."""
    try:
        log_dir.mkdir(parents=True, exist_ok=True)
    except OSError as e:
        print(f"WARNING: cannot use log directory {log_dir} ({e}); logging to temp dir")
        log_dir = Path(tempfile.gettempdir())
    logfile = log_dir / Config.LOG_FILE.name

    formatter = logging.Formatter('%(asctime)s %(levelname)s %(name)s: %(message)s')
    file_handler = RotatingFileHandler(logfile, maxBytes=10 * 1024 * 1024, backupCount=5, encoding='utf-8')
    stream_handler = logging.StreamHandler()
    root = logging.getLogger()
    for handler in (file_handler, stream_handler):
        handler.setFormatter(formatter)
        root.addHandler(handler)
    root.setLevel(os.environ.get('LOGLEVEL', 'INFO').upper())

    # Waitress logs every queue warning at WARNING; keep it but not its debug chatter
    logging.getLogger('waitress').setLevel(logging.WARNING)
    return logfile


def initialize_database(app):
    """Create missing tables and seed the first organization on an empty database."""
    with app.app_context():
        if not inspect(db.engine).has_table(Organization.__tablename__):
            logger.info("Creating tables on %s", db.engine.url.render_as_string(hide_password=True))
            db.create_all()

        if Organization.query.count() == 0:
            logger.info("Empty database; seeding organization and admin user")
            seed_essential_data(app)


def serve_app(app, host, port):
    if os.environ.get('USE_WAITRESS', '1').lower() in ('0', 'false', 'no'):
        logger.info("Serving with the Flask development server")
        app.run(host=host, port=port, debug=app.config.get('DEBUG', False), use_reloader=False)
        return

    from waitress import serve
    threads = int(os.environ.get('WAITRESS_THREADS', '8'))
    logger.info("Serving with Waitress (threads=%d)", threads)
    serve(app, host=host, port=port, threads=threads)


if __name__ == '__main__':
    logfile = configure_logging(Config.LOG_DIR)
    logger.info("Logging to %s", logfile)

    app = create_app()
    try:
        initialize_database(app)
    except Exception:
        logger.exception("Database initialization failed; check db_config.ini or DATABASE_URL")
        sys.exit(1)

    # All interfaces, so POS terminals on the LAN can post sales
    host = os.environ.get('FLASK_HOST', '0.0.0.0')
    port = int(os.environ.get('FLASK_PORT', '5000'))
    logger.info("Consignment API at http://%s:%d/", get_lan_ip(), port)
    serve_app(app, host, port)
