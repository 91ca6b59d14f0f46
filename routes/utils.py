from flask import request, current_app
from models import db, AuditLog
from datetime import datetime, date
from decimal import Decimal, ROUND_HALF_UP, InvalidOperation, getcontext
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm.exc import StaleDataError
import logging
import time

from routes.errors import ValidationError

getcontext().prec = 28

logger = logging.getLogger(__name__)

# Lock timeouts, dropped connections and lost optimistic-version races
TRANSIENT_ERRORS = (OperationalError, StaleDataError)
RETRY_BACKOFF_SECONDS = 0.05


def to_decimal(value, field='amount'):
    """Coerce value (int, str, Decimal) -> Decimal quantized to 2dp.

    - Accepts strings with commas "1,234.56", parentheses for negatives "(1,234.56)".
    - Rejects floats, blanks and garbage with ValidationError; money never
      defaults to zero.
    """
    if value is None or (isinstance(value, str) and value.strip() == ''):
        raise ValidationError(f'{field} is required', field=field)
    if isinstance(value, bool):
        raise ValidationError(f'{field} must be numeric', field=field)
    if isinstance(value, float):
        # JSON numbers with a fractional part arrive as float; go through str()
        value = str(value)
    if isinstance(value, Decimal):
        d = value
    elif isinstance(value, int):
        d = Decimal(value)
    else:
        s = str(value).strip().replace(',', '')
        if s.startswith('(') and s.endswith(')'):
            s = '-' + s[1:-1]
        try:
            d = Decimal(s)
        except InvalidOperation:
            raise ValidationError(f'{field} must be numeric (got {value!r})', field=field)
    if not d.is_finite():
        raise ValidationError(f'{field} must be a finite number', field=field)
    return d.quantize(Decimal('0.01'), rounding=ROUND_HALF_UP)


# Small helper for safe integer conversion (used in query-string parsing)
def safe_int(value, default=None):
    try:
        if value is None or (isinstance(value, str) and value.strip() == ''):
            return default
        return int(value)
    except (ValueError, TypeError):
        return default


def parse_int(value, field, minimum=None, required=True):
    """Strict integer parsing for request bodies; raises ValidationError."""
    if value is None or (isinstance(value, str) and value.strip() == ''):
        if required:
            raise ValidationError(f'{field} is required', field=field)
        return None
    if isinstance(value, bool):
        raise ValidationError(f'{field} must be an integer', field=field)
    if isinstance(value, float) and not value.is_integer():
        raise ValidationError(f'{field} must be a whole number', field=field)
    try:
        v = int(value)
    except (TypeError, ValueError):
        raise ValidationError(f'{field} must be an integer (got {value!r})', field=field)
    if minimum is not None and v < minimum:
        raise ValidationError(f'{field} must be >= {minimum}', field=field)
    return v


def parse_bool(value, default=False):
    if value is None:
        return default
    if isinstance(value, bool):
        return value
    return str(value).strip().lower() in ('1', 'true', 'yes', 'on')


def parse_date(value, field='date', required=True):
    """Parse YYYY-MM-DD (or pass through date objects)."""
    if value is None or value == '':
        if required:
            raise ValidationError(f'{field} is required', field=field)
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    try:
        return datetime.strptime(str(value), "%Y-%m-%d").date()
    except ValueError:
        raise ValidationError(f'{field} must be a date in YYYY-MM-DD format', field=field)


def parse_datetime(value, field='datetime'):
    if value is None or value == '':
        return None
    if isinstance(value, datetime):
        return value
    try:
        return datetime.fromisoformat(str(value))
    except ValueError:
        raise ValidationError(f'{field} must be an ISO-8601 datetime', field=field)


def json_body():
    """Return the request JSON object or raise ValidationError."""
    data = request.get_json(silent=True)
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ValidationError('Request body must be a JSON object')
    return data


def paginate_query(query, per_page=20, max_per_page=200):
    """Paginate SQLAlchemy query based on ?page= and ?per_page= parameters."""
    page = safe_int(request.args.get('page'), 1)
    if page < 1:
        page = 1
    per_page = safe_int(request.args.get('per_page'), per_page)
    per_page = max(1, min(per_page, max_per_page))

    if not hasattr(query, 'paginate'):
        raise RuntimeError("paginate_query: provided query object does not support paginate().")
    return query.paginate(page=page, per_page=per_page, error_out=False)


def pagination_meta(pagination):
    return {
        'page': pagination.page,
        'per_page': pagination.per_page,
        'total': pagination.total,
        'pages': pagination.pages,
    }


def log_action(action_description, user=None, organization_id=None):
    """
    Create an AuditLog row for the action_description.

    - Does not commit (caller controls transaction).
    - Never raises on logging failures; logs internal exception instead to avoid breaking user flows.
    """
    try:
        user_to_log = user
        if user_to_log is None:
            try:
                from flask_login import current_user
                if getattr(current_user, 'is_authenticated', False):
                    user_to_log = current_user
            except RuntimeError:
                # Outside a request context (CLI, tests)
                user_to_log = None

        try:
            ip_addr = request.remote_addr
        except RuntimeError:
            ip_addr = None

        if organization_id is None and user_to_log is not None:
            organization_id = getattr(user_to_log, 'organization_id', None)

        log_entry = AuditLog(
            organization_id=organization_id,
            user_id=(user_to_log.id if user_to_log else None),
            action=(str(action_description)[:500] if action_description is not None else ''),
            ip_address=ip_addr
        )
        db.session.add(log_entry)
        return log_entry
    except Exception:
        logger.exception("Failed to create audit log for action: %s", action_description)
        return None


def run_in_transaction(work, retries=None):
    """
    Run ``work()`` and commit, as one all-or-nothing unit.

    - Transient failures (lock timeout, lost connection, stale version) roll back
      and re-run ``work`` from scratch, so every precondition is re-read.
    - Any other exception rolls back and propagates.
    """
    if retries is None:
        retries = current_app.config.get('TRANSACTION_RETRIES', 3)
    attempt = 0
    while True:
        attempt += 1
        try:
            result = work()
            db.session.commit()
            return result
        except TRANSIENT_ERRORS as e:
            db.session.rollback()
            if attempt > retries:
                logger.error("Giving up after %d attempts: %s", attempt, e)
                raise
            logger.warning("Transient database failure (attempt %d/%d): %s; retrying",
                           attempt, retries + 1, e)
            # Let the competing transaction commit before re-reading
            time.sleep(RETRY_BACKOFF_SECONDS * attempt)
        except Exception:
            db.session.rollback()
            raise
