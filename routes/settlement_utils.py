"""
Settlement engine: liquidation generation and its draft -> confirmed -> pagada
lifecycle.

A sale belongs to at most one non-cancelled liquidation. generate() claims
sales with a single conditional UPDATE guarded by ``liquidation_id IS NULL``;
cancel() releases them so a later generate over the same period reproduces the
same totals. Commission is computed on the liquidation total, never per line.
"""
from collections import namedtuple
from datetime import datetime, time, timedelta
from decimal import Decimal, ROUND_HALF_UP
import logging

from sqlalchemy.exc import IntegrityError

from models import (db, CENT, ConsignmentMovement, Liquidation, LiquidationItem,
                    LiquidationState, MovementKind)
from routes.agreement_utils import get_agreement, validate_commission
from routes.errors import (Conflict, NoSalesInPeriod, NotFound, OverlappingPeriod,
                           ValidationError)
from routes.folio_utils import next_folio
from routes.line_items import LineItem
from routes.state_machines import (LiquidationEvent, next_liquidation_state,
                                   parse_liquidation_event)
from routes.utils import log_action, parse_date

logger = logging.getLogger(__name__)

Totals = namedtuple('Totals', ['subtotal_ventas', 'comision', 'total_pagar', 'total_unidades'])


def compute_totals(lines, commission_pct):
    """lines: iterable of (quantity, unit_price)."""
    pct = Decimal(str(commission_pct))
    subtotal = Decimal('0.00')
    units = 0
    for quantity, unit_price in lines:
        subtotal += Decimal(quantity) * unit_price
        units += quantity
    subtotal = subtotal.quantize(CENT, rounding=ROUND_HALF_UP)
    comision = (subtotal * pct / Decimal('100')).quantize(CENT, rounding=ROUND_HALF_UP)
    return Totals(subtotal, comision, subtotal - comision, units)


def _period_bounds(fecha_desde, fecha_hasta):
    fecha_desde = parse_date(fecha_desde, 'fecha_desde')
    fecha_hasta = parse_date(fecha_hasta, 'fecha_hasta')
    if fecha_desde > fecha_hasta:
        raise ValidationError('fecha_desde must not be after fecha_hasta',
                              fecha_desde=fecha_desde.isoformat(), fecha_hasta=fecha_hasta.isoformat())
    return fecha_desde, fecha_hasta


def _unsettled_query(agreement_id, fecha_desde, fecha_hasta):
    start = datetime.combine(fecha_desde, time.min)
    end = datetime.combine(fecha_hasta + timedelta(days=1), time.min)
    return ConsignmentMovement.query.filter(
        ConsignmentMovement.agreement_id == agreement_id,
        ConsignmentMovement.kind == MovementKind.SELL,
        ConsignmentMovement.liquidation_id.is_(None),
        ConsignmentMovement.occurred_at >= start,
        ConsignmentMovement.occurred_at < end,
    )


def _unsettled_sales(agreement_id, fecha_desde, fecha_hasta):
    return (_unsettled_query(agreement_id, fecha_desde, fecha_hasta)
            .order_by(ConsignmentMovement.occurred_at, ConsignmentMovement.id)
            .all())


def _group_sales(sales):
    """Collapse sales into LineItems keyed by (product, variant, unit price)."""
    grouped = {}
    for sale in sales:
        if sale.unit_price is None:
            raise ValidationError(
                f'Sale movement {sale.id} has no unit price; settlement aborted',
                movement_id=sale.id,
            )
        key = (sale.product_id, sale.variant_id, sale.unit_price)
        grouped[key] = grouped.get(key, 0) + sale.quantity

    ordered = sorted(grouped.items(), key=lambda kv: (kv[0][0], kv[0][1] or 0, kv[0][2]))
    return [(LineItem(product_id=p, variant_id=v, quantity=qty), price)
            for (p, v, price), qty in ordered]


def _check_overlap(agreement, fecha_desde, fecha_hasta):
    clash = (Liquidation.query
             .filter(Liquidation.agreement_id == agreement.id,
                     Liquidation.state != LiquidationState.CANCELLED,
                     Liquidation.fecha_desde <= fecha_hasta,
                     Liquidation.fecha_hasta >= fecha_desde)
             .order_by(Liquidation.id)
             .first())
    if clash is not None:
        raise OverlappingPeriod(
            f'Period {fecha_desde.isoformat()}..{fecha_hasta.isoformat()} overlaps liquidation '
            f'{clash.folio} ({clash.fecha_desde.isoformat()}..{clash.fecha_hasta.isoformat()})',
            liquidation_id=clash.id, folio=clash.folio,
        )


def preview(organization_id, agreement_id, fecha_desde, fecha_hasta):
    """Totals generate() would produce right now, without writing anything."""
    agreement = get_agreement(organization_id, agreement_id)
    fecha_desde, fecha_hasta = _period_bounds(fecha_desde, fecha_hasta)
    lines = _group_sales(_unsettled_sales(agreement.id, fecha_desde, fecha_hasta))
    totals = compute_totals(((item.quantity, price) for item, price in lines), agreement.commission_pct)
    return {
        'agreement_id': agreement.id,
        'agreement_folio': agreement.folio,
        'fecha_desde': fecha_desde.isoformat(),
        'fecha_hasta': fecha_hasta.isoformat(),
        'commission_pct': format(agreement.commission_pct, '0.2f'),
        'subtotal_ventas': format(totals.subtotal_ventas, '0.2f'),
        'comision': format(totals.comision, '0.2f'),
        'total_pagar': format(totals.total_pagar, '0.2f'),
        'total_unidades': totals.total_unidades,
        'items': [{
            'product_id': item.product_id,
            'variant_id': item.variant_id,
            'quantity_sold': item.quantity,
            'unit_price': format(price, '0.2f'),
            'line_subtotal': format((Decimal(item.quantity) * price).quantize(CENT), '0.2f'),
        } for item, price in lines],
    }


def _find_by_idempotency_key(organization_id, idempotency_key):
    return Liquidation.query.filter_by(organization_id=organization_id,
                                       idempotency_key=idempotency_key).first()


def generate(organization_id, agreement_id, fecha_desde, fecha_hasta, idempotency_key=None, user=None):
    """Create a draft liquidation claiming every unsettled sale in [fecha_desde, fecha_hasta]."""
    if idempotency_key is not None:
        idempotency_key = str(idempotency_key).strip()[:100] or None
    if idempotency_key:
        existing = _find_by_idempotency_key(organization_id, idempotency_key)
        if existing is not None:
            if existing.agreement_id != int(agreement_id):
                raise Conflict('idempotency_key was already used for another agreement',
                               liquidation_id=existing.id)
            logger.info("Liquidation %s returned for repeated idempotency key", existing.folio)
            return existing

    agreement = get_agreement(organization_id, agreement_id, lock=True)
    fecha_desde, fecha_hasta = _period_bounds(fecha_desde, fecha_hasta)
    _check_overlap(agreement, fecha_desde, fecha_hasta)

    sales = _unsettled_sales(agreement.id, fecha_desde, fecha_hasta)
    if not sales:
        raise NoSalesInPeriod(
            f'No unsettled sales for {agreement.folio} between {fecha_desde.isoformat()} '
            f'and {fecha_hasta.isoformat()}'
        )
    lines = _group_sales(sales)
    pct = validate_commission(agreement.commission_pct)
    totals = compute_totals(((item.quantity, price) for item, price in lines), pct)

    folio, folio_number = next_folio(organization_id, 'liquidation')
    liquidation = Liquidation(
        organization_id=organization_id,
        folio=folio,
        folio_number=folio_number,
        agreement_id=agreement.id,
        supplier_id=agreement.supplier_id,
        fecha_desde=fecha_desde,
        fecha_hasta=fecha_hasta,
        state=LiquidationState.DRAFT,
        commission_pct=pct,
        subtotal_ventas=totals.subtotal_ventas,
        comision=totals.comision,
        total_pagar=totals.total_pagar,
        total_unidades=totals.total_unidades,
        idempotency_key=idempotency_key,
        created_by_id=user.id if user is not None else None,
    )
    for item, price in lines:
        liquidation.items.append(LiquidationItem(
            product_id=item.product_id,
            variant_id=item.variant_id,
            quantity_sold=item.quantity,
            unit_price=price,
            line_subtotal=(Decimal(item.quantity) * price).quantize(CENT, rounding=ROUND_HALF_UP),
        ))
    db.session.add(liquidation)
    try:
        db.session.flush()
    except IntegrityError:
        # Lost a race on the folio or idempotency key; the caller rolls back
        if idempotency_key:
            raise Conflict('idempotency_key was claimed by a concurrent request; retry to fetch it',
                           idempotency_key=idempotency_key)
        raise Conflict(f'Liquidation for {agreement.folio} was generated concurrently; retry the request')

    # Claim by period, not by the ids read above, so a sale committed in between
    # cannot stay unsettled inside this period; any drift aborts the liquidation
    sale_ids = {s.id for s in sales}
    _unsettled_query(agreement.id, fecha_desde, fecha_hasta).update(
        {'liquidation_id': liquidation.id, 'settled_at': datetime.utcnow()},
        synchronize_session='fetch')
    claimed = {row.id for row in db.session.query(ConsignmentMovement.id)
               .filter(ConsignmentMovement.liquidation_id == liquidation.id)}
    if claimed != sale_ids:
        raise Conflict(
            'Sales in the period changed while the liquidation was being generated; retry the request',
            expected=len(sale_ids), attached=len(claimed),
        )

    log_action(f'Generated liquidation {folio} for {agreement.folio} '
               f'({fecha_desde.isoformat()}..{fecha_hasta.isoformat()}): '
               f'subtotal {totals.subtotal_ventas}, commission {totals.comision}, '
               f'payable {totals.total_pagar}',
               user=user, organization_id=organization_id)
    logger.info("Liquidation %s generated with %d sale(s)", folio, len(sale_ids))
    return liquidation


def get_liquidation(organization_id, liquidation_id, lock=False):
    query = Liquidation.query.filter_by(id=liquidation_id, organization_id=organization_id)
    if lock:
        query = query.populate_existing().with_for_update()
    liquidation = query.first()
    if liquidation is None:
        raise NotFound(f'Liquidation {liquidation_id} not found')
    return liquidation


def attached_sales(liquidation):
    return (ConsignmentMovement.query
            .filter_by(liquidation_id=liquidation.id)
            .order_by(ConsignmentMovement.occurred_at, ConsignmentMovement.id)
            .all())


def _verify_totals(liquidation):
    validate_commission(liquidation.commission_pct)
    expected = compute_totals(((i.quantity_sold, i.unit_price) for i in liquidation.items),
                              liquidation.commission_pct)
    stored = Totals(liquidation.subtotal_ventas, liquidation.comision,
                    liquidation.total_pagar, liquidation.total_unidades)
    if expected != stored:
        raise Conflict(f'Liquidation {liquidation.folio} totals do not match its items',
                       expected=[str(v) for v in expected], stored=[str(v) for v in stored])

    sales = attached_sales(liquidation)
    from_sales = compute_totals(((s.quantity, s.unit_price) for s in sales), liquidation.commission_pct)
    if from_sales != expected:
        raise Conflict(f'Liquidation {liquidation.folio} items do not match its attached sales')


def _apply_event(organization_id, liquidation_id, event):
    liquidation = get_liquidation(organization_id, liquidation_id, lock=True)
    event = parse_liquidation_event(event)
    new_state = next_liquidation_state(liquidation.state, event)
    return liquidation, event, new_state


def confirm(organization_id, liquidation_id, user=None):
    liquidation, _, new_state = _apply_event(organization_id, liquidation_id, LiquidationEvent.CONFIRM)
    _verify_totals(liquidation)

    liquidation.state = new_state
    liquidation.confirmed_at = datetime.utcnow()
    liquidation.confirmed_by_id = user.id if user is not None else None
    db.session.flush()

    log_action(f'Confirmed liquidation {liquidation.folio} (payable {liquidation.total_pagar})',
               user=user, organization_id=organization_id)
    return liquidation


def pay(organization_id, liquidation_id, fecha_pago=None, metodo_pago=None, referencia_pago=None, user=None):
    liquidation, _, new_state = _apply_event(organization_id, liquidation_id, LiquidationEvent.PAY)

    liquidation.state = new_state
    liquidation.fecha_pago = parse_date(fecha_pago, 'fecha_pago', required=False) or datetime.utcnow().date()
    liquidation.metodo_pago = (str(metodo_pago).strip()[:50] or None) if metodo_pago else None
    liquidation.referencia_pago = (str(referencia_pago).strip()[:100] or None) if referencia_pago else None
    liquidation.paid_at = datetime.utcnow()
    liquidation.paid_by_id = user.id if user is not None else None
    db.session.flush()

    log_action(f'Paid liquidation {liquidation.folio}: {liquidation.total_pagar} '
               f'via {liquidation.metodo_pago or "unspecified"}',
               user=user, organization_id=organization_id)
    return liquidation


def cancel(organization_id, liquidation_id, reason=None, user=None):
    """Cancel a draft or confirmed liquidation and release its sales."""
    liquidation, _, new_state = _apply_event(organization_id, liquidation_id, LiquidationEvent.CANCEL)

    released = (ConsignmentMovement.query
                .filter(ConsignmentMovement.liquidation_id == liquidation.id)
                .update({'liquidation_id': None, 'settled_at': None}, synchronize_session='fetch'))

    liquidation.state = new_state
    liquidation.cancelled_at = datetime.utcnow()
    liquidation.cancel_reason = (str(reason).strip()[:500] or None) if reason else None
    db.session.flush()

    log_action(f'Cancelled liquidation {liquidation.folio}; released {released} sale(s)'
               + (f': {liquidation.cancel_reason}' if liquidation.cancel_reason else ''),
               user=user, organization_id=organization_id)
    return liquidation


def liquidations_query(organization_id, agreement_id=None, supplier_id=None, state=None):
    query = Liquidation.query.filter(Liquidation.organization_id == organization_id)
    if agreement_id:
        query = query.filter(Liquidation.agreement_id == agreement_id)
    if supplier_id:
        query = query.filter(Liquidation.supplier_id == supplier_id)
    if state:
        try:
            query = query.filter(Liquidation.state == LiquidationState(state))
        except ValueError:
            raise ValidationError(f'Unknown liquidation state {state!r}', field='state')
    return query.order_by(Liquidation.folio_number.desc())
