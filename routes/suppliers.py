from flask import Blueprint, request, jsonify
from flask_login import login_required, current_user
from sqlalchemy.exc import IntegrityError
from decimal import Decimal
import logging

from models import db, ConsignmentSupplier
from routes.decorators import role_required
from routes.errors import ConsignmentError, DuplicateKey, NotFound, ValidationError, error_response
from routes.report_utils import clear_report_cache
from routes.utils import json_body, log_action, paginate_query, pagination_meta, parse_int, run_in_transaction, to_decimal

logger = logging.getLogger(__name__)

suppliers_bp = Blueprint('suppliers', __name__, url_prefix='/suppliers')

TEXT_FIELDS = ('tin', 'address', 'contact_person', 'phone', 'email', 'notes')


def _get_supplier(supplier_id):
    supplier = ConsignmentSupplier.query.filter_by(
        id=supplier_id, organization_id=current_user.organization_id).first()
    if supplier is None:
        raise NotFound(f'Supplier {supplier_id} not found')
    return supplier


def _apply_fields(supplier, data, partial=False):
    if 'name' in data or not partial:
        name = (data.get('name') or '').strip()
        if not name:
            raise ValidationError('name is required', field='name')
        supplier.name = name[:200]
    for field in TEXT_FIELDS:
        if field in data:
            value = data.get(field)
            setattr(supplier, field, str(value).strip() if value is not None else None)
    if 'commission_rate' in data or 'default_commission_rate' in data:
        rate = to_decimal(data.get('default_commission_rate', data.get('commission_rate')), 'commission_rate')
        if rate < 0 or rate > 100:
            raise ValidationError('commission_rate must be between 0 and 100', field='commission_rate')
        supplier.default_commission_rate = rate
    elif not partial:
        supplier.default_commission_rate = Decimal('15.00')
    if 'payment_terms_days' in data:
        supplier.payment_terms_days = parse_int(data['payment_terms_days'], 'payment_terms_days', minimum=0)


def _save(work, status=200):
    try:
        result = run_in_transaction(work)
    except ConsignmentError as e:
        return error_response(e)
    except IntegrityError:
        return error_response(DuplicateKey('A supplier with that name already exists'))
    except Exception:
        logger.exception("Unexpected error in %s", request.endpoint)
        return jsonify(error='Internal server error', code='internal_error'), 500
    # Supplier names appear in the cached stock and pending reports
    clear_report_cache()
    return jsonify(result), status


@suppliers_bp.route('', methods=['GET'])
@login_required
@role_required('Admin', 'Accountant', 'Cashier')
def list_suppliers():
    """List consignment suppliers"""
    search = request.args.get('search', '').strip()

    query = ConsignmentSupplier.query.filter_by(organization_id=current_user.organization_id)

    if search:
        query = query.filter(
            (ConsignmentSupplier.name.ilike(f'%{search}%')) |
            (ConsignmentSupplier.tin.ilike(f'%{search}%'))
        )

    query = query.order_by(ConsignmentSupplier.is_active.desc(), ConsignmentSupplier.name.asc())
    pagination = paginate_query(query, per_page=20)
    return jsonify(items=[s.to_dict() for s in pagination.items], pagination=pagination_meta(pagination))


@suppliers_bp.route('', methods=['POST'])
@login_required
@role_required('Admin', 'Accountant')
def add_supplier():
    """Add a new consignment supplier"""
    data = json_body()

    def work():
        supplier = ConsignmentSupplier(organization_id=current_user.organization_id, is_active=True)
        _apply_fields(supplier, data)
        db.session.add(supplier)
        db.session.flush()
        log_action(f'Added consignment supplier: {supplier.name}')
        return supplier.to_dict()

    return _save(work, status=201)


@suppliers_bp.route('/<int:supplier_id>', methods=['PUT'])
@login_required
@role_required('Admin', 'Accountant')
def edit_supplier(supplier_id):
    """Edit an existing consignment supplier"""
    data = json_body()

    def work():
        supplier = _get_supplier(supplier_id)
        _apply_fields(supplier, data, partial=True)
        db.session.flush()
        log_action(f'Updated consignment supplier: {supplier.name}')
        return supplier.to_dict()

    return _save(work)


@suppliers_bp.route('/<int:supplier_id>/toggle', methods=['POST'])
@login_required
@role_required('Admin', 'Accountant')
def toggle_supplier(supplier_id):
    """Toggle supplier active status"""
    def work():
        supplier = _get_supplier(supplier_id)
        supplier.is_active = not supplier.is_active
        status = "activated" if supplier.is_active else "deactivated"
        log_action(f'{status.capitalize()} consignment supplier: {supplier.name}')
        return supplier.to_dict()

    return _save(work)
