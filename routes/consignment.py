from flask import Blueprint, request, jsonify
from flask_login import login_required, current_user
import logging

from routes.decorators import role_required
from routes.errors import ConsignmentError, error_response
from routes.line_items import parse_line_items
from routes.utils import (json_body, paginate_query, pagination_meta, parse_bool, parse_datetime,
                          parse_int, run_in_transaction, safe_int)
from routes import agreement_utils, ledger_utils, settlement_utils
from routes.report_utils import clear_report_cache, pending_amount

logger = logging.getLogger(__name__)

consignment_bp = Blueprint('consignment', __name__, url_prefix='/consignment')

ALL_ROLES = ('Admin', 'Accountant', 'Cashier')
MANAGERS = ('Admin', 'Accountant')

PRODUCT_TERMS = ('consignment_price', 'suggested_retail_price', 'min_quantity', 'max_quantity', 'active')


# ============================================
# Helpers
# ============================================

def _org():
    return current_user.organization_id


def _user():
    return current_user._get_current_object()


def _transact(work, status=200, invalidate=True):
    """Run ``work`` as one unit of work and answer with its JSON result."""
    try:
        result = run_in_transaction(work)
    except ConsignmentError as e:
        return error_response(e)
    except Exception:
        logger.exception("Unexpected error in %s", request.endpoint)
        return jsonify(error='Internal server error', code='internal_error'), 500
    if invalidate:
        clear_report_cache()
    return jsonify(result), status


def _variant_arg(data=None):
    raw = request.args.get('variant_id')
    if raw is None and data:
        raw = data.get('variant_id')
    return parse_int(raw, 'variant_id', minimum=1, required=False)


# ============================================
# AGREEMENTS
# ============================================

@consignment_bp.route('/agreements', methods=['GET'])
@login_required
@role_required(*ALL_ROLES)
def list_agreements():
    """List agreements (filters: supplier_id, state, search)"""
    query = agreement_utils.agreements_query(
        _org(),
        supplier_id=safe_int(request.args.get('supplier_id')),
        state=(request.args.get('state') or '').strip() or None,
        search=(request.args.get('search') or '').strip() or None,
    )
    pagination = paginate_query(query, per_page=20)
    items = []
    for agreement in pagination.items:
        data = agreement.to_dict()
        data['pending_amount'] = format(pending_amount(_org(), agreement.id), '0.2f')
        items.append(data)
    return jsonify(items=items, pagination=pagination_meta(pagination))


@consignment_bp.route('/agreements', methods=['POST'])
@login_required
@role_required(*MANAGERS)
def create_agreement():
    data = json_body()

    def work():
        agreement = agreement_utils.create_agreement(
            _org(),
            supplier_id=data.get('supplier_id'),
            commission_pct=data.get('commission_pct'),
            settlement_period_days=data.get('settlement_period_days'),
            return_grace_days=data.get('return_grace_days'),
            location_id=data.get('location_id'),
            notes=data.get('notes'),
            start_date=data.get('start_date'),
            end_date=data.get('end_date'),
            user=_user(),
        )
        return agreement.to_dict()

    return _transact(work, status=201, invalidate=False)


@consignment_bp.route('/agreements/<int:agreement_id>', methods=['GET'])
@login_required
@role_required(*ALL_ROLES)
def get_agreement(agreement_id):
    agreement = agreement_utils.get_agreement(_org(), agreement_id)
    data = agreement.to_dict()
    data['products'] = agreement_utils.list_products(_org(), agreement_id)
    data['pending_amount'] = format(pending_amount(_org(), agreement.id), '0.2f')
    return jsonify(data)


@consignment_bp.route('/agreements/<int:agreement_id>', methods=['PUT'])
@login_required
@role_required(*MANAGERS)
def update_agreement(agreement_id):
    data = json_body()
    # Commission edits change the pending report's estimates
    return _transact(lambda: agreement_utils.update_agreement(_org(), agreement_id, data, user=_user()).to_dict())


@consignment_bp.route('/agreements/<int:agreement_id>/<any(activate, pause, terminate):event>', methods=['POST'])
@login_required
@role_required(*MANAGERS)
def agreement_transition(agreement_id, event):
    data = json_body()
    force = parse_bool(data.get('force', request.args.get('force')))
    return _transact(lambda: agreement_utils.transition(_org(), agreement_id, event, force=force,
                                                        user=_user()).to_dict())


# ============================================
# AGREEMENT PRODUCTS
# ============================================

@consignment_bp.route('/agreements/<int:agreement_id>/products', methods=['GET'])
@login_required
@role_required(*ALL_ROLES)
def list_products(agreement_id):
    return jsonify(items=agreement_utils.list_products(_org(), agreement_id))


@consignment_bp.route('/agreements/<int:agreement_id>/products', methods=['POST'])
@login_required
@role_required(*MANAGERS)
def add_product(agreement_id):
    data = json_body()
    terms = {k: data[k] for k in PRODUCT_TERMS if k in data and k != 'active'}

    def work():
        ap = agreement_utils.add_product(_org(), agreement_id, data.get('product_id'),
                                         variant_id=data.get('variant_id'), user=_user(), **terms)
        return ap.to_dict()

    return _transact(work, status=201)


@consignment_bp.route('/agreements/<int:agreement_id>/products/<int:product_id>', methods=['PUT'])
@login_required
@role_required(*MANAGERS)
def update_product(agreement_id, product_id):
    data = json_body()
    variant_id = _variant_arg(data)
    terms = {k: data[k] for k in PRODUCT_TERMS if k in data}
    return _transact(lambda: agreement_utils.update_product(_org(), agreement_id, product_id, variant_id,
                                                            user=_user(), **terms).to_dict())


@consignment_bp.route('/agreements/<int:agreement_id>/products/<int:product_id>', methods=['DELETE'])
@login_required
@role_required(*MANAGERS)
def remove_product(agreement_id, product_id):
    variant_id = _variant_arg(json_body())
    return _transact(lambda: agreement_utils.remove_product(_org(), agreement_id, product_id, variant_id,
                                                            user=_user()).to_dict())


# ============================================
# STOCK MOVEMENTS
# ============================================

@consignment_bp.route('/agreements/<int:agreement_id>/receive', methods=['POST'])
@login_required
@role_required(*ALL_ROLES)
def receive(agreement_id):
    """Receive consigned goods from the supplier"""
    data = json_body()

    def work():
        items = parse_line_items(data.get('items'))
        movements = ledger_utils.receive_items(_org(), agreement_id, items, user=_user())
        return {'movements': [m.to_dict() for m in movements]}

    return _transact(work, status=201)


@consignment_bp.route('/agreements/<int:agreement_id>/sell', methods=['POST'])
@login_required
@role_required(*ALL_ROLES)
def sell(agreement_id):
    """Record consigned units sold by the point of sale"""
    data = json_body()

    def work():
        items = parse_line_items(data.get('items'))
        sold_at = parse_datetime(data.get('sold_at'), 'sold_at')
        movements = ledger_utils.sell_items(_org(), agreement_id, items, data.get('sale_ref'),
                                            sold_at=sold_at, user=_user())
        return {'movements': [m.to_dict() for m in movements]}

    return _transact(work, status=201)


@consignment_bp.route('/agreements/<int:agreement_id>/return', methods=['POST'])
@login_required
@role_required(*ALL_ROLES)
def return_to_supplier(agreement_id):
    """Return unsold goods to the supplier"""
    data = json_body()

    def work():
        items = parse_line_items(data.get('items'))
        movements = ledger_utils.return_items(_org(), agreement_id, items, user=_user())
        return {'movements': [m.to_dict() for m in movements]}

    return _transact(work, status=201)


@consignment_bp.route('/agreements/<int:agreement_id>/balance', methods=['GET'])
@login_required
@role_required(*ALL_ROLES)
def agreement_balance(agreement_id):
    product_id = parse_int(request.args.get('product_id'), 'product_id', minimum=1, required=False)
    if product_id is None:
        records = ledger_utils.balances_for_agreement(
            _org(), agreement_id, only_available=parse_bool(request.args.get('only_available')))
        return jsonify(items=[r.to_dict() for r in records])
    return jsonify(ledger_utils.balance(_org(), agreement_id, product_id, _variant_arg()))


@consignment_bp.route('/stock', methods=['GET'])
@login_required
@role_required(*ALL_ROLES)
def list_stock():
    query = ledger_utils.stock_query(
        _org(),
        agreement_id=safe_int(request.args.get('agreement_id')),
        supplier_id=safe_int(request.args.get('supplier_id')),
        product_id=safe_int(request.args.get('product_id')),
        location_id=safe_int(request.args.get('location_id')),
        only_available=parse_bool(request.args.get('only_available')),
    )
    pagination = paginate_query(query, per_page=50)
    return jsonify(items=[r.to_dict() for r in pagination.items], pagination=pagination_meta(pagination))


@consignment_bp.route('/stock/<int:record_id>/movements', methods=['GET'])
@login_required
@role_required(*ALL_ROLES)
def stock_movements(record_id):
    movements = ledger_utils.movements_for_record(_org(), record_id)
    return jsonify(items=[m.to_dict() for m in movements])


@consignment_bp.route('/stock/<int:record_id>/adjust', methods=['POST'])
@login_required
@role_required(*MANAGERS)
def adjust_stock(record_id):
    """Administrative correction of a stock record"""
    data = json_body()

    def work():
        movement = ledger_utils.adjust_record(_org(), record_id, data.get('delta'), data.get('reason'),
                                              user=_user())
        return {'movement': movement.to_dict(), 'stock': movement.stock.to_dict()}

    return _transact(work)


# ============================================
# LIQUIDATIONS
# ============================================

@consignment_bp.route('/liquidations', methods=['GET'])
@login_required
@role_required(*MANAGERS)
def list_liquidations():
    query = settlement_utils.liquidations_query(
        _org(),
        agreement_id=safe_int(request.args.get('agreement_id')),
        supplier_id=safe_int(request.args.get('supplier_id')),
        state=(request.args.get('state') or '').strip() or None,
    )
    pagination = paginate_query(query, per_page=20)
    return jsonify(items=[l.to_dict(include_items=False) for l in pagination.items],
                   pagination=pagination_meta(pagination))


@consignment_bp.route('/liquidations', methods=['POST'])
@login_required
@role_required(*MANAGERS)
def create_liquidation():
    """Generate a draft liquidation for an agreement and period"""
    data = json_body()
    idempotency_key = data.get('idempotency_key') or request.headers.get('Idempotency-Key')

    def work():
        liquidation = settlement_utils.generate(
            _org(),
            parse_int(data.get('agreement_id'), 'agreement_id', minimum=1),
            data.get('fecha_desde'),
            data.get('fecha_hasta'),
            idempotency_key=idempotency_key,
            user=_user(),
        )
        return liquidation.to_dict()

    return _transact(work, status=201)


@consignment_bp.route('/liquidations/preview', methods=['POST'])
@login_required
@role_required(*MANAGERS)
def preview_liquidation():
    data = json_body()
    return jsonify(settlement_utils.preview(
        _org(),
        parse_int(data.get('agreement_id'), 'agreement_id', minimum=1),
        data.get('fecha_desde'),
        data.get('fecha_hasta'),
    ))


@consignment_bp.route('/liquidations/<int:liquidation_id>', methods=['GET'])
@login_required
@role_required(*MANAGERS)
def get_liquidation(liquidation_id):
    liquidation = settlement_utils.get_liquidation(_org(), liquidation_id)
    data = liquidation.to_dict()
    data['sales'] = [m.to_dict() for m in settlement_utils.attached_sales(liquidation)]
    return jsonify(data)


@consignment_bp.route('/liquidations/<int:liquidation_id>/confirm', methods=['POST'])
@login_required
@role_required(*MANAGERS)
def confirm_liquidation(liquidation_id):
    return _transact(lambda: settlement_utils.confirm(_org(), liquidation_id, user=_user()).to_dict())


@consignment_bp.route('/liquidations/<int:liquidation_id>/pay', methods=['POST'])
@login_required
@role_required(*MANAGERS)
def pay_liquidation(liquidation_id):
    """Record supplier payment"""
    data = json_body()
    return _transact(lambda: settlement_utils.pay(
        _org(), liquidation_id,
        fecha_pago=data.get('fecha_pago'),
        metodo_pago=data.get('metodo_pago'),
        referencia_pago=data.get('referencia_pago'),
        user=_user(),
    ).to_dict())


@consignment_bp.route('/liquidations/<int:liquidation_id>/cancel', methods=['POST'])
@login_required
@role_required(*MANAGERS)
def cancel_liquidation(liquidation_id):
    data = json_body()
    return _transact(lambda: settlement_utils.cancel(_org(), liquidation_id, reason=data.get('reason'),
                                                     user=_user()).to_dict())


@consignment_bp.errorhandler(ConsignmentError)
def _consignment_error(e):
    return error_response(e)
