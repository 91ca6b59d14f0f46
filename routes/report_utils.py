"""
Read-only consignment reports.

The stock and pending reports are memoized through Flask-Caching for
CACHE_DEFAULT_TIMEOUT seconds; ledger and settlement writes call
clear_report_cache() after committing.
"""
from collections import OrderedDict
from datetime import datetime, time, timedelta
from decimal import Decimal
import logging

from sqlalchemy import and_, func

from extensions import cache
from models import (db, Agreement, AgreementProduct, ConsignmentMovement, ConsignmentStock,
                    ConsignmentSupplier, MovementKind, fmt_money)
from routes.settlement_utils import compute_totals

logger = logging.getLogger(__name__)

ZERO = Decimal('0.00')


@cache.memoize()
def stock_report(organization_id, supplier_id=None):
    """Available consigned units and their value at consignment price."""
    query = (db.session.query(ConsignmentStock, Agreement, ConsignmentSupplier, AgreementProduct.consignment_price)
             .join(Agreement, Agreement.id == ConsignmentStock.agreement_id)
             .join(ConsignmentSupplier, ConsignmentSupplier.id == Agreement.supplier_id)
             .outerjoin(AgreementProduct, and_(
                 AgreementProduct.agreement_id == ConsignmentStock.agreement_id,
                 AgreementProduct.product_id == ConsignmentStock.product_id,
                 AgreementProduct.variant_key == ConsignmentStock.variant_key))
             .filter(ConsignmentStock.organization_id == organization_id))
    if supplier_id:
        query = query.filter(Agreement.supplier_id == supplier_id)
    query = query.order_by(ConsignmentSupplier.name, Agreement.folio_number,
                           ConsignmentStock.product_id, ConsignmentStock.variant_key)

    rows = OrderedDict()
    for stock, agreement, supplier, price in query.all():
        key = (agreement.id, stock.product_id, stock.variant_id)
        row = rows.get(key)
        if row is None:
            row = rows[key] = {
                'supplier_id': supplier.id,
                'supplier_name': supplier.name,
                'agreement_id': agreement.id,
                'agreement_folio': agreement.folio,
                'product_id': stock.product_id,
                'variant_id': stock.variant_id,
                'received': 0,
                'sold': 0,
                'returned': 0,
                'available': 0,
                'unit_price': price,
                'value': ZERO,
            }
        row['received'] += stock.quantity_received
        row['sold'] += stock.quantity_sold
        row['returned'] += stock.quantity_returned
        row['available'] += stock.quantity_available
        if price is not None:
            row['value'] += Decimal(stock.quantity_available) * price

    total_units = sum(r['available'] for r in rows.values())
    total_value = sum((r['value'] for r in rows.values()), ZERO)
    for r in rows.values():
        r['unit_price'] = fmt_money(r['unit_price'])
        r['value'] = fmt_money(r['value'])
    return {
        'rows': list(rows.values()),
        'total_units': total_units,
        'total_value': fmt_money(total_value),
    }


def sales_report(organization_id, fecha_desde, fecha_hasta):
    """Consigned sales per agreement in [fecha_desde, fecha_hasta]."""
    start = datetime.combine(fecha_desde, time.min)
    end = datetime.combine(fecha_hasta + timedelta(days=1), time.min)
    query = (db.session.query(ConsignmentMovement, Agreement, ConsignmentSupplier)
             .join(Agreement, Agreement.id == ConsignmentMovement.agreement_id)
             .join(ConsignmentSupplier, ConsignmentSupplier.id == Agreement.supplier_id)
             .filter(ConsignmentMovement.organization_id == organization_id,
                     ConsignmentMovement.kind == MovementKind.SELL,
                     ConsignmentMovement.occurred_at >= start,
                     ConsignmentMovement.occurred_at < end)
             .order_by(ConsignmentSupplier.name, Agreement.folio_number, ConsignmentMovement.id))

    rows = OrderedDict()
    sale_refs = set()
    for movement, agreement, supplier in query.all():
        row = rows.get(agreement.id)
        if row is None:
            row = rows[agreement.id] = {
                'supplier_id': supplier.id,
                'supplier_name': supplier.name,
                'agreement_id': agreement.id,
                'agreement_folio': agreement.folio,
                'units': 0,
                'units_settled': 0,
                'value': ZERO,
                '_refs': set(),
            }
        row['units'] += movement.quantity
        if movement.liquidation_id is not None:
            row['units_settled'] += movement.quantity
        row['value'] += movement.subtotal or ZERO
        if movement.sale_ref:
            row['_refs'].add(movement.sale_ref)
            sale_refs.add(movement.sale_ref)

    total_value = sum((r['value'] for r in rows.values()), ZERO)
    for r in rows.values():
        r['sales'] = len(r.pop('_refs'))
        r['value'] = fmt_money(r['value'])
    return {
        'fecha_desde': fecha_desde.isoformat(),
        'fecha_hasta': fecha_hasta.isoformat(),
        'rows': list(rows.values()),
        'total_units': sum(r['units'] for r in rows.values()),
        'total_value': fmt_money(total_value),
        'total_sales': len(sale_refs),
    }


@cache.memoize()
def pending_report(organization_id):
    """Unsettled sales per agreement with the commission they would carry today."""
    query = (db.session.query(ConsignmentMovement, Agreement, ConsignmentSupplier)
             .join(Agreement, Agreement.id == ConsignmentMovement.agreement_id)
             .join(ConsignmentSupplier, ConsignmentSupplier.id == Agreement.supplier_id)
             .filter(ConsignmentMovement.organization_id == organization_id,
                     ConsignmentMovement.kind == MovementKind.SELL,
                     ConsignmentMovement.liquidation_id.is_(None))
             .order_by(ConsignmentSupplier.name, Agreement.folio_number, ConsignmentMovement.occurred_at))

    grouped = OrderedDict()
    for movement, agreement, supplier in query.all():
        entry = grouped.setdefault(agreement.id, {
            'agreement': agreement,
            'supplier': supplier,
            'lines': [],
            'oldest': movement.occurred_at,
        })
        entry['lines'].append((movement.quantity, movement.unit_price or ZERO))

    rows = []
    total_payable = ZERO
    for entry in grouped.values():
        agreement = entry['agreement']
        totals = compute_totals(entry['lines'], agreement.commission_pct)
        total_payable += totals.total_pagar
        rows.append({
            'supplier_id': entry['supplier'].id,
            'supplier_name': entry['supplier'].name,
            'agreement_id': agreement.id,
            'agreement_folio': agreement.folio,
            'commission_pct': fmt_money(agreement.commission_pct),
            'units': totals.total_unidades,
            'subtotal_ventas': fmt_money(totals.subtotal_ventas),
            'comision_estimada': fmt_money(totals.comision),
            'total_pagar_estimado': fmt_money(totals.total_pagar),
            'oldest_sale': entry['oldest'].isoformat() if entry['oldest'] else None,
        })
    return {
        'rows': rows,
        'total_pagar_estimado': fmt_money(total_payable),
    }


def pending_amount(organization_id, agreement_id):
    """Unsettled subtotal for one agreement (uncached; used by agreement listings)."""
    value = db.session.query(func.coalesce(func.sum(ConsignmentMovement.subtotal), 0)).filter(
        ConsignmentMovement.organization_id == organization_id,
        ConsignmentMovement.agreement_id == agreement_id,
        ConsignmentMovement.kind == MovementKind.SELL,
        ConsignmentMovement.liquidation_id.is_(None),
    ).scalar()
    return Decimal(str(value)).quantize(Decimal('0.01'))


def clear_report_cache():
    try:
        cache.delete_memoized(stock_report)
        cache.delete_memoized(pending_report)
    except Exception:
        # A cache backend outage must not fail a committed write
        logger.exception("Failed to invalidate consignment report cache")
