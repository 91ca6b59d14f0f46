"""
Consignment Stock Ledger.

Each call is one physical movement: it appends a ConsignmentMovement row and
updates the materialized ConsignmentStock record in the same transaction.
Records are read with populate_existing() + FOR UPDATE and carry a version
counter, so two callers can never both pass the availability check on the
same stale balance. Nothing here commits.
"""
from datetime import datetime
from decimal import Decimal
import logging

from sqlalchemy import func

from models import (db, Agreement, ConsignmentMovement, ConsignmentStock, Liquidation, LiquidationState,
                    MovementKind)
from routes.agreement_utils import get_agreement, get_product
from routes.errors import InsufficientStock, InvalidState, NotFound, PeriodSettled, ValidationError
from routes.state_machines import LIVE_AGREEMENT_STATES
from routes.utils import log_action, parse_int

logger = logging.getLogger(__name__)


def _lock_stock(agreement_id, product_id, variant_id, location_id):
    return (ConsignmentStock.query
            .filter_by(agreement_id=agreement_id, product_id=product_id,
                       variant_key=variant_id or 0, location_key=location_id or 0)
            .populate_existing()
            .with_for_update()
            .first())


def _lock_stock_by_id(organization_id, record_id):
    stock = (ConsignmentStock.query
             .filter_by(id=record_id, organization_id=organization_id)
             .populate_existing()
             .with_for_update()
             .first())
    if stock is None:
        raise NotFound(f'Stock record {record_id} not found')
    return stock


def _ensure_live(agreement, action):
    if agreement.state not in LIVE_AGREEMENT_STATES:
        raise InvalidState(
            f'Cannot {action} on agreement {agreement.folio} in state {agreement.state.value}',
            state=agreement.state.value,
        )


def _priced_product(agreement, item, active_only):
    try:
        return get_product(agreement.id, item.product_id, item.variant_id, active_only=active_only)
    except NotFound:
        raise ValidationError(
            f'Product {item.product_id} (variant {item.variant_id}) is not included in agreement {agreement.folio}',
            product_id=item.product_id, variant_id=item.variant_id,
        )


def _line_value(quantity, unit_price):
    if unit_price is None:
        return None
    return (Decimal(quantity) * unit_price).quantize(Decimal('0.01'))


def _append_movement(stock, kind, quantity, unit_price=None, sale_ref=None, notes=None,
                     occurred_at=None, user=None):
    movement = ConsignmentMovement(
        organization_id=stock.organization_id,
        agreement_id=stock.agreement_id,
        stock_id=stock.id,
        product_id=stock.product_id,
        variant_id=stock.variant_id,
        kind=kind,
        quantity=quantity,
        unit_price=unit_price,
        subtotal=_line_value(abs(quantity), unit_price),
        sale_ref=sale_ref,
        notes=notes,
        occurred_at=occurred_at or datetime.utcnow(),
        created_by_id=user.id if user is not None else None,
    )
    db.session.add(movement)
    return movement


def _ensure_period_open(agreement, occurred_at):
    """A sale dated inside a live liquidation's period could never be claimed by generate()."""
    day = occurred_at.date()
    settled = (Liquidation.query
               .filter(Liquidation.agreement_id == agreement.id,
                       Liquidation.state != LiquidationState.CANCELLED,
                       Liquidation.fecha_desde <= day,
                       Liquidation.fecha_hasta >= day)
               .order_by(Liquidation.id)
               .first())
    if settled is not None:
        raise PeriodSettled(
            f'{day.isoformat()} is already covered by liquidation {settled.folio} '
            f'({settled.fecha_desde.isoformat()}..{settled.fecha_hasta.isoformat()}); '
            f'cancel it or date the sale after {settled.fecha_hasta.isoformat()}',
            liquidation_id=settled.id, folio=settled.folio,
        )


def _insufficient(stock, requested, action):
    available = stock.quantity_available if stock is not None else 0
    return InsufficientStock(
        f'Cannot {action} {requested} units of product {stock.product_id if stock else "?"}: '
        f'only {available} available',
        available=available, requested=requested,
    )


def receive(organization_id, agreement_id, item, user=None):
    """Credit consigned units; the record is created on the first receipt."""
    agreement = get_agreement(organization_id, agreement_id)
    _ensure_live(agreement, 'receive stock')
    ap = _priced_product(agreement, item, active_only=True)

    location_id = item.location_id or agreement.location_id
    stock = _lock_stock(agreement.id, item.product_id, item.variant_id, location_id)
    if stock is None:
        stock = ConsignmentStock(
            organization_id=organization_id,
            agreement_id=agreement.id,
            product_id=item.product_id,
            variant_id=item.variant_id,
            location_id=location_id,
            quantity_received=0,
            quantity_sold=0,
            quantity_returned=0,
        )
        db.session.add(stock)
        db.session.flush()

    stock.quantity_received += item.quantity
    movement = _append_movement(stock, MovementKind.RECEIVE, item.quantity,
                                unit_price=ap.consignment_price, notes=item.notes, user=user)
    db.session.flush()

    log_action(f'Received {item.quantity} units of product {item.product_id} on {agreement.folio}',
               user=user, organization_id=organization_id)
    return movement


def sell(organization_id, agreement_id, item, sale_ref, sold_at=None, user=None):
    """Debit sold units and leave them pending settlement (no liquidation yet)."""
    if sale_ref is None or not str(sale_ref).strip():
        raise ValidationError('sale_ref is required to attribute a consignment sale', field='sale_ref')
    # Share lock: generate() holds the agreement FOR UPDATE while it reads the period
    agreement = get_agreement(organization_id, agreement_id, shared=True)
    ap = _priced_product(agreement, item, active_only=False)
    occurred_at = sold_at or datetime.utcnow()
    _ensure_period_open(agreement, occurred_at)

    location_id = item.location_id or agreement.location_id
    stock = _lock_stock(agreement.id, item.product_id, item.variant_id, location_id)
    if stock is None or stock.quantity_available < item.quantity:
        raise _insufficient(stock, item.quantity, 'sell')

    stock.quantity_sold += item.quantity
    movement = _append_movement(stock, MovementKind.SELL, item.quantity,
                                unit_price=ap.consignment_price, sale_ref=str(sale_ref).strip()[:100],
                                notes=item.notes, occurred_at=occurred_at, user=user)
    db.session.flush()
    # Again under the write lock: SQLite ignores the share lock above
    _ensure_period_open(agreement, occurred_at)

    log_action(f'Sold {item.quantity} consigned units of product {item.product_id} '
               f'on {agreement.folio} (sale {sale_ref})', user=user, organization_id=organization_id)
    return movement


def return_to_supplier(organization_id, agreement_id, item, user=None):
    """Send unsold units back to the supplier."""
    agreement = get_agreement(organization_id, agreement_id)
    _ensure_live(agreement, 'return stock')
    ap = _priced_product(agreement, item, active_only=False)

    location_id = item.location_id or agreement.location_id
    stock = _lock_stock(agreement.id, item.product_id, item.variant_id, location_id)
    if stock is None or stock.quantity_available < item.quantity:
        raise _insufficient(stock, item.quantity, 'return')

    stock.quantity_returned += item.quantity
    movement = _append_movement(stock, MovementKind.RETURN, item.quantity,
                                unit_price=ap.consignment_price,
                                notes=item.notes or 'Return to supplier', user=user)
    db.session.flush()

    log_action(f'Returned {item.quantity} units of product {item.product_id} to supplier on {agreement.folio}',
               user=user, organization_id=organization_id)
    return movement


def _apply_adjustment(stock, delta, reason, user=None):
    delta = parse_int(delta, 'delta')
    if delta == 0:
        raise ValidationError('delta must be non-zero', field='delta')
    reason = (reason or '').strip() if isinstance(reason, str) else reason
    if not reason:
        raise ValidationError('reason is required for stock adjustments', field='reason')
    if stock.quantity_available + delta < 0:
        raise InsufficientStock(
            f'Adjustment of {delta} would leave stock record {stock.id} negative '
            f'(available {stock.quantity_available})',
            available=stock.quantity_available, requested=-delta,
        )

    # Corrections restate what was actually received
    stock.quantity_received += delta
    movement = _append_movement(stock, MovementKind.ADJUST, delta, notes=str(reason)[:500], user=user)
    db.session.flush()

    log_action(f'Adjusted stock record {stock.id} by {delta}: {reason}',
               user=user, organization_id=stock.organization_id)
    logger.info("Stock record %s adjusted by %d (%s)", stock.id, delta, reason)
    return movement


def adjust(organization_id, agreement_id, product_id, variant_id, delta, reason,
           location_id=None, user=None):
    """Administrative correction; allowed in every agreement state."""
    agreement = get_agreement(organization_id, agreement_id)
    stock = _lock_stock(agreement.id, product_id, variant_id, location_id or agreement.location_id)
    if stock is None:
        raise NotFound(f'No consignment stock for product {product_id} on {agreement.folio}')
    return _apply_adjustment(stock, delta, reason, user=user)


def adjust_record(organization_id, record_id, delta, reason, user=None):
    stock = _lock_stock_by_id(organization_id, record_id)
    return _apply_adjustment(stock, delta, reason, user=user)


def receive_items(organization_id, agreement_id, items, user=None):
    return [receive(organization_id, agreement_id, item, user=user) for item in items]


def sell_items(organization_id, agreement_id, items, sale_ref, sold_at=None, user=None):
    return [sell(organization_id, agreement_id, item, sale_ref, sold_at=sold_at, user=user) for item in items]


def return_items(organization_id, agreement_id, items, user=None):
    return [return_to_supplier(organization_id, agreement_id, item, user=user) for item in items]


def balance(organization_id, agreement_id, product_id, variant_id=None):
    """Totals for one product/variant across every location."""
    agreement = get_agreement(organization_id, agreement_id)
    received, sold, returned = db.session.query(
        func.coalesce(func.sum(ConsignmentStock.quantity_received), 0),
        func.coalesce(func.sum(ConsignmentStock.quantity_sold), 0),
        func.coalesce(func.sum(ConsignmentStock.quantity_returned), 0),
    ).filter(
        ConsignmentStock.agreement_id == agreement.id,
        ConsignmentStock.product_id == product_id,
        ConsignmentStock.variant_key == (variant_id or 0),
    ).one()
    received, sold, returned = int(received), int(sold), int(returned)
    return {
        'received': received,
        'sold': sold,
        'returned': returned,
        'available': received - sold - returned,
    }


def balances_for_agreement(organization_id, agreement_id, only_available=False):
    agreement = get_agreement(organization_id, agreement_id)
    query = ConsignmentStock.query.filter_by(agreement_id=agreement.id)
    if only_available:
        query = query.filter(ConsignmentStock.quantity_available > 0)
    return query.order_by(ConsignmentStock.product_id, ConsignmentStock.variant_key,
                          ConsignmentStock.location_key).all()


def stock_query(organization_id, agreement_id=None, supplier_id=None, product_id=None,
                location_id=None, only_available=False):
    query = ConsignmentStock.query.filter(ConsignmentStock.organization_id == organization_id)
    if agreement_id:
        query = query.filter(ConsignmentStock.agreement_id == agreement_id)
    if supplier_id:
        query = query.join(Agreement, Agreement.id == ConsignmentStock.agreement_id) \
                     .filter(Agreement.supplier_id == supplier_id)
    if product_id:
        query = query.filter(ConsignmentStock.product_id == product_id)
    if location_id:
        query = query.filter(ConsignmentStock.location_id == location_id)
    if only_available:
        query = query.filter(ConsignmentStock.quantity_available > 0)
    return query.order_by(ConsignmentStock.agreement_id, ConsignmentStock.product_id,
                          ConsignmentStock.variant_key, ConsignmentStock.id)


def movements_for_record(organization_id, record_id):
    stock = ConsignmentStock.query.filter_by(id=record_id, organization_id=organization_id).first()
    if stock is None:
        raise NotFound(f'Stock record {record_id} not found')
    return ConsignmentMovement.query.filter_by(stock_id=stock.id) \
        .order_by(ConsignmentMovement.occurred_at, ConsignmentMovement.id).all()
