from flask_sqlalchemy import SQLAlchemy
from flask_login import UserMixin
from datetime import datetime
import enum
from sqlalchemy.orm import validates
from sqlalchemy.ext.hybrid import hybrid_property
from decimal import Decimal, ROUND_HALF_UP, InvalidOperation, getcontext
from sqlalchemy.types import TypeDecorator, Numeric as SA_Numeric


db = SQLAlchemy()

getcontext().prec = 28

CENT = Decimal('0.01')


class Money(TypeDecorator):
    """
    SQLAlchemy TypeDecorator to store Decimal values in a NUMERIC/DECIMAL column.
    - Python value: decimal.Decimal (quantized to 2 decimal places, ROUND_HALF_UP)
    - DB value: Decimal stored in NUMERIC(18,2)
    """
    impl = SA_Numeric(precision=18, scale=2)
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is None:
            return None
        if isinstance(value, float):
            raise ValueError(f"Refusing to store float {value!r} as money; pass a Decimal or string")
        if not isinstance(value, Decimal):
            try:
                value = Decimal(str(value))
            except InvalidOperation:
                raise ValueError(f"Cannot convert {value!r} to Decimal")
        return value.quantize(CENT, rounding=ROUND_HALF_UP)

    def process_result_value(self, value, dialect):
        if value is None:
            return None
        if isinstance(value, Decimal):
            return value.quantize(CENT, rounding=ROUND_HALF_UP)
        # Drivers sometimes hand back float/str; go through str() to avoid binary float artifacts
        return Decimal(str(value)).quantize(CENT, rounding=ROUND_HALF_UP)

    @property
    def python_type(self):
        return Decimal


def fmt_money(value):
    return format(value, '0.2f') if value is not None else None


def _enum_column(enum_cls, **kwargs):
    # Store the enum *value* ('draft', 'pagada', ...) rather than the member name
    return db.Column(
        db.Enum(enum_cls, native_enum=False, length=20, validate_strings=True,
                values_callable=lambda members: [m.value for m in members]),
        **kwargs
    )


class AgreementState(str, enum.Enum):
    DRAFT = 'draft'
    ACTIVE = 'active'
    PAUSED = 'paused'
    TERMINATED = 'terminated'


class LiquidationState(str, enum.Enum):
    DRAFT = 'draft'
    CONFIRMED = 'confirmed'
    PAID = 'pagada'
    CANCELLED = 'cancelada'


class MovementKind(str, enum.Enum):
    RECEIVE = 'receive'
    SELL = 'sell'
    RETURN = 'return'
    ADJUST = 'adjust'


class Organization(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(200), nullable=False)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)


class User(db.Model, UserMixin):
    id = db.Column(db.Integer, primary_key=True)
    organization_id = db.Column(db.Integer, db.ForeignKey('organization.id'), nullable=False)
    organization = db.relationship('Organization')
    username = db.Column(db.String(100), unique=True, nullable=False)
    password_hash = db.Column(db.String(200), nullable=False)
    role = db.Column(db.String(50), nullable=False, default='Cashier')
    created_at = db.Column(db.DateTime, default=datetime.utcnow)

    def to_dict(self):
        return {
            'id': self.id,
            'username': self.username,
            'role': self.role,
            'organization_id': self.organization_id,
        }


class AuditLog(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    organization_id = db.Column(db.Integer, db.ForeignKey('organization.id'), nullable=True)
    user_id = db.Column(db.Integer, db.ForeignKey('user.id', ondelete="SET NULL"))
    user = db.relationship('User')
    action = db.Column(db.String(500), nullable=False)
    timestamp = db.Column(db.DateTime, default=datetime.utcnow)
    ip_address = db.Column(db.String(45))

    def __repr__(self):
        username = self.user.username if self.user else 'System'
        return f'<AuditLog {self.timestamp} - {username}: {self.action}>'

    __table_args__ = (
        db.Index('idx_auditlog_user_id', 'user_id'),
        db.Index('idx_auditlog_timestamp', 'timestamp'),
    )


class FolioSequence(db.Model):
    """Per-organization counter backing agreement and liquidation folios."""
    __tablename__ = 'folio_sequence'

    id = db.Column(db.Integer, primary_key=True)
    organization_id = db.Column(db.Integer, db.ForeignKey('organization.id'), nullable=False)
    kind = db.Column(db.String(20), nullable=False)
    last_value = db.Column(db.Integer, nullable=False, default=0)

    __table_args__ = (
        db.UniqueConstraint('organization_id', 'kind', name='uq_folio_sequence_org_kind'),
    )


class ConsignmentSupplier(db.Model):
    """Suppliers who consign goods to you (Consignors)"""
    __tablename__ = 'consignment_supplier'

    id = db.Column(db.Integer, primary_key=True)
    organization_id = db.Column(db.Integer, db.ForeignKey('organization.id'), nullable=False)
    name = db.Column(db.String(200), nullable=False)
    tin = db.Column(db.String(50))
    address = db.Column(db.String(300))
    contact_person = db.Column(db.String(200))
    phone = db.Column(db.String(50))
    email = db.Column(db.String(100))

    # Commission suggested for new agreements with this supplier (%)
    default_commission_rate = db.Column(db.Numeric(5, 2), nullable=False, default=Decimal('15.00'))
    payment_terms_days = db.Column(db.Integer, default=30)

    is_active = db.Column(db.Boolean, default=True, nullable=False)
    notes = db.Column(db.Text)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)

    agreements = db.relationship('Agreement', back_populates='supplier', lazy='dynamic')

    def to_dict(self):
        return {
            'id': self.id,
            'name': self.name,
            'tin': self.tin,
            'address': self.address,
            'contact_person': self.contact_person,
            'phone': self.phone,
            'email': self.email,
            'default_commission_rate': fmt_money(self.default_commission_rate),
            'payment_terms_days': self.payment_terms_days,
            'is_active': self.is_active,
            'notes': self.notes,
        }

    __table_args__ = (
        db.UniqueConstraint('organization_id', 'name', name='uq_cons_supplier_org_name'),
        db.Index('idx_cons_supplier_tin', 'tin'),
    )


class Agreement(db.Model):
    """Consignment agreement with one supplier (acuerdo de consignacion)."""
    __tablename__ = 'agreement'

    id = db.Column(db.Integer, primary_key=True)
    organization_id = db.Column(db.Integer, db.ForeignKey('organization.id'), nullable=False)
    folio = db.Column(db.String(20), nullable=False)
    folio_number = db.Column(db.Integer, nullable=False)

    supplier_id = db.Column(db.Integer, db.ForeignKey('consignment_supplier.id'), nullable=False)
    supplier = db.relationship('ConsignmentSupplier', back_populates='agreements')

    commission_pct = db.Column(db.Numeric(5, 2), nullable=False)
    settlement_period_days = db.Column(db.Integer, nullable=False, default=30)
    return_grace_days = db.Column(db.Integer, nullable=False, default=60)
    location_id = db.Column(db.Integer, nullable=True)
    notes = db.Column(db.Text)

    state = _enum_column(AgreementState, nullable=False, default=AgreementState.DRAFT)
    start_date = db.Column(db.Date, nullable=False, default=lambda: datetime.utcnow().date())
    end_date = db.Column(db.Date, nullable=True)
    forced_termination = db.Column(db.Boolean, nullable=False, default=False)

    activated_at = db.Column(db.DateTime)
    terminated_at = db.Column(db.DateTime)
    created_by_id = db.Column(db.Integer, db.ForeignKey('user.id', ondelete="SET NULL"))
    created_by = db.relationship('User')
    created_at = db.Column(db.DateTime, default=datetime.utcnow)
    updated_at = db.Column(db.DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    products = db.relationship('AgreementProduct', back_populates='agreement',
                               cascade='all, delete-orphan', lazy='dynamic')

    def to_dict(self):
        return {
            'id': self.id,
            'folio': self.folio,
            'supplier_id': self.supplier_id,
            'supplier_name': self.supplier.name if self.supplier else None,
            'commission_pct': fmt_money(self.commission_pct),
            'settlement_period_days': self.settlement_period_days,
            'return_grace_days': self.return_grace_days,
            'location_id': self.location_id,
            'notes': self.notes,
            'state': self.state.value,
            'start_date': self.start_date.isoformat() if self.start_date else None,
            'end_date': self.end_date.isoformat() if self.end_date else None,
            'forced_termination': self.forced_termination,
            'activated_at': self.activated_at.isoformat() if self.activated_at else None,
            'terminated_at': self.terminated_at.isoformat() if self.terminated_at else None,
            'created_at': self.created_at.isoformat() if self.created_at else None,
        }

    __table_args__ = (
        db.UniqueConstraint('organization_id', 'folio_number', name='uq_agreement_org_folio'),
        db.CheckConstraint('commission_pct >= 0 AND commission_pct <= 100', name='ck_agreement_commission_range'),
        db.Index('idx_agreement_supplier', 'supplier_id'),
        db.Index('idx_agreement_state', 'state'),
    )


class AgreementProduct(db.Model):
    """A product (or variant) covered by an agreement, with its consignment price."""
    __tablename__ = 'agreement_product'

    id = db.Column(db.Integer, primary_key=True)
    agreement_id = db.Column(db.Integer, db.ForeignKey('agreement.id'), nullable=False)
    agreement = db.relationship('Agreement', back_populates='products')

    product_id = db.Column(db.Integer, nullable=False)
    variant_id = db.Column(db.Integer, nullable=True)
    # NULL-safe twin of variant_id for the unique key
    variant_key = db.Column(db.Integer, nullable=False, default=0)

    consignment_price = db.Column(Money(), nullable=False)
    suggested_retail_price = db.Column(Money(), nullable=True)
    min_quantity = db.Column(db.Integer, nullable=False, default=0)
    max_quantity = db.Column(db.Integer, nullable=True)
    active = db.Column(db.Boolean, nullable=False, default=True)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)

    @validates('variant_id')
    def _sync_variant_key(self, key, value):
        self.variant_key = value or 0
        return value

    @validates('consignment_price')
    def validate_price(self, key, value):
        if value is None:
            raise ValueError('consignment_price is required')
        if not isinstance(value, Decimal):
            value = Decimal(str(value))
        if value < 0:
            raise ValueError('consignment_price cannot be negative')
        return value.quantize(CENT, rounding=ROUND_HALF_UP)

    def to_dict(self):
        return {
            'id': self.id,
            'agreement_id': self.agreement_id,
            'product_id': self.product_id,
            'variant_id': self.variant_id,
            'consignment_price': fmt_money(self.consignment_price),
            'suggested_retail_price': fmt_money(self.suggested_retail_price),
            'min_quantity': self.min_quantity,
            'max_quantity': self.max_quantity,
            'active': self.active,
        }

    __table_args__ = (
        db.UniqueConstraint('agreement_id', 'product_id', 'variant_key', name='uq_agreement_product_key'),
    )


class ConsignmentStock(db.Model):
    """Materialized consigned balance for one (agreement, product, variant, location)."""
    __tablename__ = 'consignment_stock'

    id = db.Column(db.Integer, primary_key=True)
    organization_id = db.Column(db.Integer, db.ForeignKey('organization.id'), nullable=False)
    agreement_id = db.Column(db.Integer, db.ForeignKey('agreement.id'), nullable=False)
    agreement = db.relationship('Agreement')

    product_id = db.Column(db.Integer, nullable=False)
    variant_id = db.Column(db.Integer, nullable=True)
    variant_key = db.Column(db.Integer, nullable=False, default=0)
    location_id = db.Column(db.Integer, nullable=True)
    location_key = db.Column(db.Integer, nullable=False, default=0)

    quantity_received = db.Column(db.Integer, nullable=False, default=0)
    quantity_sold = db.Column(db.Integer, nullable=False, default=0)
    quantity_returned = db.Column(db.Integer, nullable=False, default=0)

    version = db.Column(db.Integer, nullable=False)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)
    updated_at = db.Column(db.DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    __mapper_args__ = {'version_id_col': version}

    @validates('variant_id')
    def _sync_variant_key(self, key, value):
        self.variant_key = value or 0
        return value

    @validates('location_id')
    def _sync_location_key(self, key, value):
        self.location_key = value or 0
        return value

    @hybrid_property
    def quantity_available(self):
        return self.quantity_received - self.quantity_sold - self.quantity_returned

    def to_dict(self):
        return {
            'id': self.id,
            'agreement_id': self.agreement_id,
            'product_id': self.product_id,
            'variant_id': self.variant_id,
            'location_id': self.location_id,
            'received': self.quantity_received,
            'sold': self.quantity_sold,
            'returned': self.quantity_returned,
            'available': self.quantity_available,
        }

    __table_args__ = (
        db.UniqueConstraint('agreement_id', 'product_id', 'variant_key', 'location_key',
                            name='uq_consignment_stock_key'),
        db.CheckConstraint('quantity_received - quantity_sold - quantity_returned >= 0',
                           name='ck_consignment_stock_available'),
        db.Index('idx_consignment_stock_product', 'product_id'),
    )


class ConsignmentMovement(db.Model):
    """Append-only log of receive/sell/return/adjust events.

    quantity is positive for receive, sell and return; signed for adjust.
    A sell row with liquidation_id NULL is an unsettled sale.
    """
    __tablename__ = 'consignment_movement'

    id = db.Column(db.Integer, primary_key=True)
    organization_id = db.Column(db.Integer, db.ForeignKey('organization.id'), nullable=False)
    agreement_id = db.Column(db.Integer, db.ForeignKey('agreement.id'), nullable=False)
    stock_id = db.Column(db.Integer, db.ForeignKey('consignment_stock.id'), nullable=False)
    stock = db.relationship('ConsignmentStock')

    product_id = db.Column(db.Integer, nullable=False)
    variant_id = db.Column(db.Integer, nullable=True)
    kind = _enum_column(MovementKind, nullable=False)
    quantity = db.Column(db.Integer, nullable=False)
    unit_price = db.Column(Money(), nullable=True)
    subtotal = db.Column(Money(), nullable=True)
    sale_ref = db.Column(db.String(100), nullable=True)
    notes = db.Column(db.String(500), nullable=True)
    occurred_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow)

    liquidation_id = db.Column(db.Integer, db.ForeignKey('liquidation.id'), nullable=True)
    settled_at = db.Column(db.DateTime, nullable=True)

    created_by_id = db.Column(db.Integer, db.ForeignKey('user.id', ondelete="SET NULL"))
    created_at = db.Column(db.DateTime, default=datetime.utcnow)

    def to_dict(self):
        return {
            'id': self.id,
            'agreement_id': self.agreement_id,
            'stock_id': self.stock_id,
            'product_id': self.product_id,
            'variant_id': self.variant_id,
            'kind': self.kind.value,
            'quantity': self.quantity,
            'unit_price': fmt_money(self.unit_price),
            'subtotal': fmt_money(self.subtotal),
            'sale_ref': self.sale_ref,
            'notes': self.notes,
            'occurred_at': self.occurred_at.isoformat() if self.occurred_at else None,
            'liquidation_id': self.liquidation_id,
        }

    __table_args__ = (
        db.Index('idx_cons_movement_settlement', 'agreement_id', 'kind', 'liquidation_id', 'occurred_at'),
        db.Index('idx_cons_movement_stock', 'stock_id'),
    )


class Liquidation(db.Model):
    """Settlement document for one agreement over one date range."""
    __tablename__ = 'liquidation'

    id = db.Column(db.Integer, primary_key=True)
    organization_id = db.Column(db.Integer, db.ForeignKey('organization.id'), nullable=False)
    folio = db.Column(db.String(20), nullable=False)
    folio_number = db.Column(db.Integer, nullable=False)

    agreement_id = db.Column(db.Integer, db.ForeignKey('agreement.id'), nullable=False)
    agreement = db.relationship('Agreement')
    supplier_id = db.Column(db.Integer, db.ForeignKey('consignment_supplier.id'), nullable=False)
    supplier = db.relationship('ConsignmentSupplier')

    fecha_desde = db.Column(db.Date, nullable=False)
    fecha_hasta = db.Column(db.Date, nullable=False)
    state = _enum_column(LiquidationState, nullable=False, default=LiquidationState.DRAFT)

    commission_pct = db.Column(db.Numeric(5, 2), nullable=False)
    subtotal_ventas = db.Column(Money(), nullable=False)
    comision = db.Column(Money(), nullable=False)
    total_pagar = db.Column(Money(), nullable=False)
    total_unidades = db.Column(db.Integer, nullable=False)

    idempotency_key = db.Column(db.String(100), nullable=True)

    fecha_pago = db.Column(db.Date, nullable=True)
    metodo_pago = db.Column(db.String(50), nullable=True)
    referencia_pago = db.Column(db.String(100), nullable=True)
    cancel_reason = db.Column(db.String(500), nullable=True)

    created_by_id = db.Column(db.Integer, db.ForeignKey('user.id', ondelete="SET NULL"))
    confirmed_by_id = db.Column(db.Integer, db.ForeignKey('user.id', ondelete="SET NULL"))
    paid_by_id = db.Column(db.Integer, db.ForeignKey('user.id', ondelete="SET NULL"))
    created_at = db.Column(db.DateTime, default=datetime.utcnow)
    confirmed_at = db.Column(db.DateTime)
    paid_at = db.Column(db.DateTime)
    cancelled_at = db.Column(db.DateTime)

    items = db.relationship('LiquidationItem', back_populates='liquidation',
                            cascade='all, delete-orphan', order_by='LiquidationItem.id')

    def to_dict(self, include_items=True):
        data = {
            'id': self.id,
            'folio': self.folio,
            'agreement_id': self.agreement_id,
            'agreement_folio': self.agreement.folio if self.agreement else None,
            'supplier_id': self.supplier_id,
            'supplier_name': self.supplier.name if self.supplier else None,
            'fecha_desde': self.fecha_desde.isoformat(),
            'fecha_hasta': self.fecha_hasta.isoformat(),
            'state': self.state.value,
            'commission_pct': fmt_money(self.commission_pct),
            'subtotal_ventas': fmt_money(self.subtotal_ventas),
            'comision': fmt_money(self.comision),
            'total_pagar': fmt_money(self.total_pagar),
            'total_unidades': self.total_unidades,
            'fecha_pago': self.fecha_pago.isoformat() if self.fecha_pago else None,
            'metodo_pago': self.metodo_pago,
            'referencia_pago': self.referencia_pago,
            'cancel_reason': self.cancel_reason,
            'created_at': self.created_at.isoformat() if self.created_at else None,
            'confirmed_at': self.confirmed_at.isoformat() if self.confirmed_at else None,
            'paid_at': self.paid_at.isoformat() if self.paid_at else None,
            'cancelled_at': self.cancelled_at.isoformat() if self.cancelled_at else None,
        }
        if include_items:
            data['items'] = [item.to_dict() for item in self.items]
        return data

    __table_args__ = (
        db.UniqueConstraint('organization_id', 'folio_number', name='uq_liquidation_org_folio'),
        db.UniqueConstraint('organization_id', 'idempotency_key', name='uq_liquidation_idempotency'),
        db.CheckConstraint('fecha_desde <= fecha_hasta', name='ck_liquidation_period'),
        db.Index('idx_liquidation_agreement_state', 'agreement_id', 'state'),
    )


class LiquidationItem(db.Model):
    """One settled line: a product/variant at one consignment price."""
    __tablename__ = 'liquidation_item'

    id = db.Column(db.Integer, primary_key=True)
    liquidation_id = db.Column(db.Integer, db.ForeignKey('liquidation.id'), nullable=False)
    liquidation = db.relationship('Liquidation', back_populates='items')

    product_id = db.Column(db.Integer, nullable=False)
    variant_id = db.Column(db.Integer, nullable=True)
    quantity_sold = db.Column(db.Integer, nullable=False)
    unit_price = db.Column(Money(), nullable=False)
    line_subtotal = db.Column(Money(), nullable=False)

    def to_dict(self):
        return {
            'product_id': self.product_id,
            'variant_id': self.variant_id,
            'quantity_sold': self.quantity_sold,
            'unit_price': fmt_money(self.unit_price),
            'line_subtotal': fmt_money(self.line_subtotal),
        }
