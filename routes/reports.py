from flask import Blueprint, request, jsonify, Response
from flask_login import login_required, current_user
from datetime import datetime, timedelta
import io
import csv

from routes.decorators import role_required
from routes.errors import ConsignmentError, error_response
from routes.report_utils import stock_report, sales_report, pending_report
from routes.utils import parse_date, safe_int

reports_bp = Blueprint('reports', __name__, url_prefix='/reportes')

STOCK_COLUMNS = ['supplier_name', 'agreement_folio', 'product_id', 'variant_id',
                 'received', 'sold', 'returned', 'available', 'unit_price', 'value']
SALES_COLUMNS = ['supplier_name', 'agreement_folio', 'units', 'units_settled', 'sales', 'value']
PENDING_COLUMNS = ['supplier_name', 'agreement_folio', 'commission_pct', 'units', 'subtotal_ventas',
                   'comision_estimada', 'total_pagar_estimado', 'oldest_sale']


def _wants_csv():
    return (request.args.get('format') or '').lower() == 'csv'


def _csv_response(rows, columns, filename):
    output = io.StringIO()
    writer = csv.DictWriter(output, fieldnames=columns, extrasaction='ignore')
    writer.writeheader()
    for row in rows:
        writer.writerow(row)
    return Response(
        output.getvalue(),
        mimetype='text/csv',
        headers={'Content-Disposition': f'attachment; filename={filename}'},
    )


@reports_bp.route('/stock')
@login_required
@role_required('Admin', 'Accountant')
def stock():
    """Consigned stock on hand valued at consignment price"""
    report = stock_report(current_user.organization_id, safe_int(request.args.get('supplier_id')))
    if _wants_csv():
        return _csv_response(report['rows'], STOCK_COLUMNS, 'consignment_stock.csv')
    return jsonify(report)


@reports_bp.route('/ventas')
@login_required
@role_required('Admin', 'Accountant')
def ventas():
    """Consigned sales in a date range (defaults to the last 30 days)"""
    today = datetime.utcnow().date()
    fecha_hasta = parse_date(request.args.get('fecha_hasta'), 'fecha_hasta', required=False) or today
    fecha_desde = parse_date(request.args.get('fecha_desde'), 'fecha_desde', required=False) \
        or fecha_hasta - timedelta(days=30)
    report = sales_report(current_user.organization_id, fecha_desde, fecha_hasta)
    if _wants_csv():
        return _csv_response(report['rows'], SALES_COLUMNS,
                             f'consignment_sales_{fecha_desde.isoformat()}_{fecha_hasta.isoformat()}.csv')
    return jsonify(report)


@reports_bp.route('/pendiente')
@login_required
@role_required('Admin', 'Accountant')
def pendiente():
    """Unsettled consigned sales per agreement"""
    report = pending_report(current_user.organization_id)
    if _wants_csv():
        return _csv_response(report['rows'], PENDING_COLUMNS, 'consignment_pending.csv')
    return jsonify(report)


@reports_bp.errorhandler(ConsignmentError)
def _report_error(e):
    return error_response(e)
