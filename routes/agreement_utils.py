"""
Agreement Store: consignment agreements, their products and lifecycle.

Functions here never commit; route handlers wrap them in run_in_transaction.
"""
from datetime import datetime
from decimal import Decimal
import logging

from flask import current_app
from sqlalchemy import func, or_

from models import (db, Agreement, AgreementProduct, AgreementState, ConsignmentStock,
                    ConsignmentSupplier)
from routes.errors import Conflict, DuplicateKey, InvalidState, NotFound, ValidationError
from routes.folio_utils import next_folio
from routes.state_machines import AgreementEvent, next_agreement_state, parse_agreement_event
from routes.utils import log_action, parse_date, parse_int, to_decimal

logger = logging.getLogger(__name__)

MIN_COMMISSION = Decimal('0.00')
MAX_COMMISSION = Decimal('100.00')


def validate_commission(value):
    pct = to_decimal(value, 'commission_pct')
    if pct < MIN_COMMISSION or pct > MAX_COMMISSION:
        raise ValidationError('commission_pct must be between 0 and 100', field='commission_pct')
    return pct


def get_agreement(organization_id, agreement_id, lock=False, shared=False):
    """``lock`` takes the row FOR UPDATE; ``shared`` takes a share lock (sells vs. generate)."""
    query = Agreement.query.filter_by(id=agreement_id, organization_id=organization_id)
    if lock or shared:
        query = query.populate_existing().with_for_update(read=not lock)
    agreement = query.first()
    if agreement is None:
        raise NotFound(f'Agreement {agreement_id} not found')
    return agreement


def _get_supplier(organization_id, supplier_id):
    supplier = ConsignmentSupplier.query.filter_by(id=supplier_id, organization_id=organization_id).first()
    if supplier is None:
        raise ValidationError(f'Supplier {supplier_id} is unknown', field='supplier_id')
    if not supplier.is_active:
        raise ValidationError(f'Supplier "{supplier.name}" is inactive', field='supplier_id')
    return supplier


def _ensure_not_terminated(agreement, action):
    if agreement.state == AgreementState.TERMINATED:
        raise InvalidState(f'Cannot {action} on terminated agreement {agreement.folio}',
                           state=agreement.state.value)


def create_agreement(organization_id, supplier_id, commission_pct=None, settlement_period_days=None,
                     return_grace_days=None, location_id=None, notes=None,
                     start_date=None, end_date=None, user=None):
    """Create an agreement in draft; commission defaults to the supplier's rate."""
    supplier_id = parse_int(supplier_id, 'supplier_id', minimum=1)
    supplier = _get_supplier(organization_id, supplier_id)
    # An omitted commission inherits the supplier's default rate
    if commission_pct is None or (isinstance(commission_pct, str) and not commission_pct.strip()):
        commission_pct = supplier.default_commission_rate
    pct = validate_commission(commission_pct)

    if settlement_period_days is None:
        settlement_period_days = current_app.config.get('CONSIGNMENT_DEFAULT_PERIOD_DAYS', 30)
    if return_grace_days is None:
        return_grace_days = current_app.config.get('CONSIGNMENT_DEFAULT_RETURN_GRACE_DAYS', 60)
    period = parse_int(settlement_period_days, 'settlement_period_days', minimum=1)
    grace = parse_int(return_grace_days, 'return_grace_days', minimum=0)
    location_id = parse_int(location_id, 'location_id', minimum=1, required=False)
    start = parse_date(start_date, 'start_date', required=False) or datetime.utcnow().date()
    end = parse_date(end_date, 'end_date', required=False)
    if end is not None and end < start:
        raise ValidationError('end_date cannot be before start_date', field='end_date')

    folio, folio_number = next_folio(organization_id, 'agreement')

    agreement = Agreement(
        organization_id=organization_id,
        folio=folio,
        folio_number=folio_number,
        supplier_id=supplier.id,
        commission_pct=pct,
        settlement_period_days=period,
        return_grace_days=grace,
        location_id=location_id,
        notes=notes,
        state=AgreementState.DRAFT,
        start_date=start,
        end_date=end,
        created_by_id=user.id if user is not None else None,
    )
    db.session.add(agreement)
    db.session.flush()

    log_action(f'Created consignment agreement {folio} with {supplier.name} ({pct}% commission)',
               user=user, organization_id=organization_id)
    logger.info("Agreement %s created for supplier %s", folio, supplier.id)
    return agreement


UPDATABLE_FIELDS = ('commission_pct', 'settlement_period_days', 'return_grace_days',
                    'location_id', 'notes', 'end_date')


def update_agreement(organization_id, agreement_id, data, user=None):
    """Update agreement terms. Past liquidations keep their commission snapshot."""
    agreement = get_agreement(organization_id, agreement_id, lock=True)
    _ensure_not_terminated(agreement, 'update')

    unknown = set(data) - set(UPDATABLE_FIELDS)
    if unknown:
        raise ValidationError(f'Fields cannot be updated: {", ".join(sorted(unknown))}')

    if 'commission_pct' in data:
        agreement.commission_pct = validate_commission(data['commission_pct'])
    if 'settlement_period_days' in data:
        agreement.settlement_period_days = parse_int(data['settlement_period_days'],
                                                     'settlement_period_days', minimum=1)
    if 'return_grace_days' in data:
        agreement.return_grace_days = parse_int(data['return_grace_days'], 'return_grace_days', minimum=0)
    if 'location_id' in data:
        agreement.location_id = parse_int(data['location_id'], 'location_id', minimum=1, required=False)
    if 'notes' in data:
        agreement.notes = data['notes']
    if 'end_date' in data:
        end = parse_date(data['end_date'], 'end_date', required=False)
        if end is not None and agreement.start_date and end < agreement.start_date:
            raise ValidationError('end_date cannot be before start_date', field='end_date')
        agreement.end_date = end

    db.session.flush()
    log_action(f'Updated consignment agreement {agreement.folio}: {", ".join(sorted(data))}',
               user=user, organization_id=organization_id)
    return agreement


def outstanding_stock(agreement_id, product_id=None, variant_id=None, match_variant=False):
    """Units still on hand for an agreement (optionally one product/variant)."""
    query = db.session.query(
        func.coalesce(func.sum(ConsignmentStock.quantity_available), 0)
    ).filter(ConsignmentStock.agreement_id == agreement_id)
    if product_id is not None:
        query = query.filter(ConsignmentStock.product_id == product_id)
    if match_variant:
        query = query.filter(ConsignmentStock.variant_key == (variant_id or 0))
    return int(query.scalar() or 0)


def transition(organization_id, agreement_id, event, force=False, user=None):
    """Apply activate / pause / terminate through the transition table."""
    event = parse_agreement_event(event)
    agreement = get_agreement(organization_id, agreement_id, lock=True)
    new_state = next_agreement_state(agreement.state, event)

    if event == AgreementEvent.ACTIVATE and agreement.state == AgreementState.DRAFT:
        active_products = agreement.products.filter_by(active=True).count()
        if active_products == 0:
            raise InvalidState(f'Agreement {agreement.folio} needs at least one product before activation',
                               state=agreement.state.value)

    now = datetime.utcnow()
    if event == AgreementEvent.TERMINATE:
        remaining = outstanding_stock(agreement.id)
        if remaining > 0:
            if not force:
                raise Conflict(
                    f'Agreement {agreement.folio} still has {remaining} consigned units on hand; '
                    f'return them first or terminate with force',
                    outstanding_units=remaining,
                )
            agreement.forced_termination = True
            logger.warning("Agreement %s force-terminated with %d units outstanding",
                           agreement.folio, remaining)
            log_action(f'WARNING: force-terminated agreement {agreement.folio} with {remaining} units outstanding',
                       user=user, organization_id=organization_id)
        agreement.terminated_at = now
        if agreement.end_date is None:
            agreement.end_date = now.date()
    elif new_state == AgreementState.ACTIVE and agreement.activated_at is None:
        agreement.activated_at = now

    previous = agreement.state
    agreement.state = new_state
    db.session.flush()

    log_action(f'Agreement {agreement.folio}: {previous.value} -> {new_state.value}',
               user=user, organization_id=organization_id)
    logger.info("Agreement %s moved %s -> %s", agreement.folio, previous.value, new_state.value)
    return agreement


def _find_product(agreement_id, product_id, variant_id):
    return AgreementProduct.query.filter_by(
        agreement_id=agreement_id, product_id=product_id, variant_key=variant_id or 0
    ).first()


def get_product(agreement_id, product_id, variant_id=None, active_only=True):
    ap = _find_product(agreement_id, product_id, variant_id)
    if ap is None or (active_only and not ap.active):
        raise NotFound(f'Product {product_id} (variant {variant_id}) is not part of agreement {agreement_id}')
    return ap


def _parse_product_terms(data, partial=False):
    terms = {}
    if 'consignment_price' in data or not partial:
        price = to_decimal(data.get('consignment_price'), 'consignment_price')
        if price < 0:
            raise ValidationError('consignment_price cannot be negative', field='consignment_price')
        terms['consignment_price'] = price
    if data.get('suggested_retail_price') not in (None, ''):
        terms['suggested_retail_price'] = to_decimal(data['suggested_retail_price'], 'suggested_retail_price')
    if 'min_quantity' in data:
        terms['min_quantity'] = parse_int(data['min_quantity'], 'min_quantity', minimum=0)
    if 'max_quantity' in data:
        terms['max_quantity'] = parse_int(data['max_quantity'], 'max_quantity', minimum=0, required=False)
    if partial and 'active' in data:
        terms['active'] = bool(data['active'])
    return terms


def add_product(organization_id, agreement_id, product_id, variant_id=None, user=None, **data):
    """Add a product to an agreement; a deactivated row is reactivated."""
    agreement = get_agreement(organization_id, agreement_id, lock=True)
    _ensure_not_terminated(agreement, 'add products')

    product_id = parse_int(product_id, 'product_id', minimum=1)
    variant_id = parse_int(variant_id, 'variant_id', minimum=1, required=False)
    terms = _parse_product_terms(data)

    ap = _find_product(agreement.id, product_id, variant_id)
    if ap is not None and ap.active:
        raise DuplicateKey(
            f'Product {product_id} (variant {variant_id}) is already in agreement {agreement.folio}',
            product_id=product_id, variant_id=variant_id,
        )
    if ap is None:
        ap = AgreementProduct(agreement_id=agreement.id, product_id=product_id, variant_id=variant_id)
        db.session.add(ap)
    ap.active = True
    for field, value in terms.items():
        setattr(ap, field, value)
    db.session.flush()

    log_action(f'Added product {product_id}/{variant_id} to agreement {agreement.folio} '
               f'at {ap.consignment_price}', user=user, organization_id=organization_id)
    return ap


def update_product(organization_id, agreement_id, product_id, variant_id=None, user=None, **data):
    agreement = get_agreement(organization_id, agreement_id)
    _ensure_not_terminated(agreement, 'update products')
    ap = get_product(agreement.id, product_id, variant_id, active_only=False)

    terms = _parse_product_terms(data, partial=True)
    if terms.get('active') is False:
        remaining = outstanding_stock(agreement.id, product_id, variant_id, match_variant=True)
        if remaining:
            raise Conflict(f'Cannot deactivate product {product_id}: {remaining} units still on hand',
                           outstanding_units=remaining)
    for field, value in terms.items():
        setattr(ap, field, value)
    db.session.flush()

    log_action(f'Updated product {product_id}/{variant_id} on agreement {agreement.folio}',
               user=user, organization_id=organization_id)
    return ap


def remove_product(organization_id, agreement_id, product_id, variant_id=None, user=None):
    """Deactivate a product; only allowed when its consigned balance is zero."""
    agreement = get_agreement(organization_id, agreement_id, lock=True)
    ap = get_product(agreement.id, product_id, variant_id)

    remaining = outstanding_stock(agreement.id, product_id, variant_id, match_variant=True)
    if remaining != 0:
        raise Conflict(
            f'Cannot remove product {product_id} from {agreement.folio}: {remaining} units still on hand',
            outstanding_units=remaining,
        )
    ap.active = False
    db.session.flush()

    log_action(f'Removed product {product_id}/{variant_id} from agreement {agreement.folio}',
               user=user, organization_id=organization_id)
    return ap


def list_products(organization_id, agreement_id):
    """Agreement products with their current on-hand quantity."""
    agreement = get_agreement(organization_id, agreement_id)
    rows = db.session.query(
        ConsignmentStock.product_id,
        ConsignmentStock.variant_key,
        func.coalesce(func.sum(ConsignmentStock.quantity_available), 0),
    ).filter(ConsignmentStock.agreement_id == agreement.id) \
     .group_by(ConsignmentStock.product_id, ConsignmentStock.variant_key).all()
    stock = {(pid, vkey): int(qty) for pid, vkey, qty in rows}

    result = []
    for ap in agreement.products.order_by(AgreementProduct.product_id, AgreementProduct.variant_key):
        data = ap.to_dict()
        data['stock_actual'] = stock.get((ap.product_id, ap.variant_key), 0)
        result.append(data)
    return result


def agreements_query(organization_id, supplier_id=None, state=None, search=None):
    query = Agreement.query.filter(Agreement.organization_id == organization_id)
    if supplier_id:
        query = query.filter(Agreement.supplier_id == supplier_id)
    if state:
        try:
            query = query.filter(Agreement.state == AgreementState(state))
        except ValueError:
            raise ValidationError(f'Unknown agreement state {state!r}', field='state')
    if search:
        query = query.join(ConsignmentSupplier).filter(or_(
            Agreement.folio.ilike(f'%{search}%'),
            ConsignmentSupplier.name.ilike(f'%{search}%'),
        ))
    return query.order_by(Agreement.created_at.desc(), Agreement.id.desc())
