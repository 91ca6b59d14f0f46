import os
import configparser
from pathlib import Path
import tempfile

BASE_DIR = Path(__file__).resolve().parent
INI_FILE = Path(os.environ.get('CONSIGNA_CONFIG', BASE_DIR / 'db_config.ini'))


def _read_ini(path):
    parser = configparser.ConfigParser()
    if path.exists():
        parser.read(path)
    return parser


def _database_uri(parser):
    """db_config.ini [database] wins; then DATABASE_URL; then a local SQLite file."""
    if parser.has_section('database'):
        section = parser['database']
        return 'mysql+pymysql://{}:{}@{}:{}/{}?charset=utf8mb4'.format(
            section.get('username', 'consigna_app'),
            section.get('password', ''),
            section.get('host', 'localhost'),
            section.get('port', '3306'),
            section.get('database', 'consigna'),
        )
    uri = os.environ.get('DATABASE_URL')
    if uri:
        return uri
    print("WARNING: no database configured; using SQLite at app.db")
    return f'sqlite:///{BASE_DIR / "app.db"}'


def _log_dir():
    candidates = []
    if os.environ.get('CONSIGNA_LOG_DIR'):
        candidates.append(Path(os.environ['CONSIGNA_LOG_DIR']))
    candidates.append(Path.home() / '.local' / 'share' / 'consigna' / 'logs')
    candidates.append(BASE_DIR / 'logs')
    for candidate in candidates:
        try:
            candidate.mkdir(parents=True, exist_ok=True)
            return candidate
        except OSError:
            continue
    return Path(tempfile.gettempdir()) / 'consigna_logs'


def _secret_key(parser):
    """Explicit key from the ini or env, else one persisted in ~/.consigna/.secret_key."""
    key = parser.get('app', 'secret_key', fallback=None) or os.environ.get('SECRET_KEY')
    if key and key != 'AUTO_GENERATED':
        return key

    secret_file = Path.home() / '.consigna' / '.secret_key'
    try:
        if secret_file.exists():
            return secret_file.read_text().strip()
        secret_file.parent.mkdir(parents=True, exist_ok=True)
        key = os.urandom(32).hex()
        secret_file.write_text(key)
        os.chmod(secret_file, 0o600)
        return key
    except OSError:
        # Sessions will not survive a restart
        return os.urandom(32).hex()


def _setting(parser, section, option, env, default):
    if parser.has_option(section, option):
        return parser.getint(section, option)
    return int(os.environ.get(env, default))


_ini = _read_ini(INI_FILE)


class Config:
    BASE_DIR = BASE_DIR

    LOG_DIR = _log_dir()
    LOG_FILE = LOG_DIR / 'consigna.log'

    SQLALCHEMY_DATABASE_URI = _database_uri(_ini)
    SQLALCHEMY_TRACK_MODIFICATIONS = False
    if SQLALCHEMY_DATABASE_URI.startswith('mysql'):
        # InnoDB row locks back the stock and settlement writes
        SQLALCHEMY_ENGINE_OPTIONS = {
            'pool_pre_ping': True,
            'pool_recycle': 280,
            'pool_size': 10,
            'max_overflow': 20,
            'connect_args': {'charset': 'utf8mb4', 'connect_timeout': 10},
        }
    else:
        SQLALCHEMY_ENGINE_OPTIONS = {'pool_pre_ping': True}

    DEBUG = _ini.getboolean('app', 'debug', fallback=os.environ.get('FLASK_DEBUG', 'false').lower() == 'true')
    SECRET_KEY = _secret_key(_ini)

    # Agreement defaults when the request leaves them out
    CONSIGNMENT_DEFAULT_PERIOD_DAYS = _setting(
        _ini, 'consignment', 'settlement_period_days', 'CONSIGNMENT_DEFAULT_PERIOD_DAYS', 30)
    CONSIGNMENT_DEFAULT_RETURN_GRACE_DAYS = _setting(
        _ini, 'consignment', 'return_grace_days', 'CONSIGNMENT_DEFAULT_RETURN_GRACE_DAYS', 60)

    # Unit-of-work retries on lock timeouts / stale versions
    TRANSACTION_RETRIES = int(os.environ.get('TRANSACTION_RETRIES', 3))

    CACHE_TYPE = os.environ.get('CACHE_TYPE', 'SimpleCache')
    REPORT_CACHE_SECONDS = int(os.environ.get('REPORT_CACHE_SECONDS', 60))
    CACHE_DEFAULT_TIMEOUT = REPORT_CACHE_SECONDS

    RATELIMIT_STORAGE_URI = os.environ.get('RATELIMIT_STORAGE_URI', 'memory://')

    SESSION_COOKIE_SECURE = False
    SESSION_COOKIE_HTTPONLY = True
    SESSION_COOKIE_SAMESITE = 'Lax'
    PERMANENT_SESSION_LIFETIME = 3600
