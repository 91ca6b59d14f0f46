"""
Tests for routes.settlement_utils: liquidation generation, totals and lifecycle.
"""
from datetime import datetime, timedelta
from decimal import Decimal, ROUND_HALF_UP

import pytest

from models import db, ConsignmentMovement, ConsignmentStock, Liquidation, LiquidationState, MovementKind
from routes import ledger_utils, settlement_utils
from routes.errors import (Conflict, InvalidTransition, NoSalesInPeriod, OverlappingPeriod, PeriodSettled,
                           ValidationError)
from routes.line_items import LineItem
from routes.settlement_utils import compute_totals
from routes.utils import run_in_transaction


def _sell(org, agreement, qty, ref='T-1', product_id=1, sold_at=None):
    return ledger_utils.sell(org.id, agreement.id, LineItem(product_id, None, qty), ref, sold_at=sold_at)


def _noon(day):
    return datetime.combine(day, datetime.min.time()) + timedelta(hours=12)


class TestComputeTotals:
    def test_basic(self):
        totals = compute_totals([(30, Decimal('50.00'))], Decimal('10'))
        assert totals.subtotal_ventas == Decimal('1500.00')
        assert totals.comision == Decimal('150.00')
        assert totals.total_pagar == Decimal('1350.00')
        assert totals.total_unidades == 30

    def test_rounds_half_up(self):
        # 0.05 * 10% = 0.005 -> 0.01 (banker's rounding would give 0.00)
        assert compute_totals([(1, Decimal('0.05'))], Decimal('10')).comision == Decimal('0.01')

    def test_commission_is_computed_on_the_total(self):
        lines = [(1, Decimal('0.05')), (1, Decimal('0.05')), (1, Decimal('0.05'))]
        totals = compute_totals(lines, Decimal('10'))
        # per-line rounding would give 0.03
        assert totals.comision == Decimal('0.02')

    @pytest.mark.parametrize('lines, pct', [
        ([(3, Decimal('33.33'))], Decimal('12.5')),
        ([(7, Decimal('19.99')), (2, Decimal('0.01'))], Decimal('33.33')),
        ([(1, Decimal('999999.99'))], Decimal('100')),
        ([(5, Decimal('12.34'))], Decimal('0')),
    ])
    def test_totals_always_reconcile(self, lines, pct):
        totals = compute_totals(lines, pct)
        assert totals.total_pagar + totals.comision == totals.subtotal_ventas
        expected = (totals.subtotal_ventas * pct / 100).quantize(Decimal('0.01'), rounding=ROUND_HALF_UP)
        assert totals.comision == expected


class TestGenerate:
    def test_end_to_end_scenario(self, org, make_agreement, admin_user, today):
        agreement = make_agreement(commission='10', price='50.00', receive=100)
        _sell(org, agreement, 30)
        db.session.commit()

        liq = settlement_utils.generate(org.id, agreement.id, today, today, user=admin_user)
        db.session.commit()
        assert liq.state == LiquidationState.DRAFT
        assert liq.folio == 'LIQ-000001'
        assert liq.subtotal_ventas == Decimal('1500.00')
        assert liq.comision == Decimal('150.00')
        assert liq.total_pagar == Decimal('1350.00')
        assert liq.total_unidades == 30
        assert len(liq.items) == 1

        settlement_utils.confirm(org.id, liq.id, user=admin_user)
        settlement_utils.pay(org.id, liq.id, metodo_pago='transferencia', user=admin_user)
        db.session.commit()

        assert liq.state == LiquidationState.PAID
        assert liq.metodo_pago == 'transferencia'
        assert liq.fecha_pago == today
        assert ConsignmentStock.query.one().quantity_available == 70

    def test_attaches_sales(self, org, make_agreement, today):
        agreement = make_agreement(receive=10)
        sale = _sell(org, agreement, 2)
        liq = settlement_utils.generate(org.id, agreement.id, today, today)
        assert sale.liquidation_id == liq.id
        assert sale.settled_at is not None

    def test_only_sales_inside_the_period(self, org, make_agreement, today):
        agreement = make_agreement(receive=10)
        _sell(org, agreement, 1, sold_at=datetime.utcnow() - timedelta(days=10))
        _sell(org, agreement, 2)
        liq = settlement_utils.generate(org.id, agreement.id, today - timedelta(days=1), today)
        assert liq.total_unidades == 2

    def test_period_end_is_inclusive(self, org, make_agreement, today):
        agreement = make_agreement(receive=10)
        late = datetime.combine(today - timedelta(days=1), datetime.min.time()) + timedelta(hours=23, minutes=59)
        _sell(org, agreement, 3, sold_at=late)
        liq = settlement_utils.generate(org.id, agreement.id, today - timedelta(days=1), today - timedelta(days=1))
        assert liq.total_unidades == 3

    def test_groups_by_product_and_price(self, org, make_agreement, today):
        from routes import agreement_utils
        agreement = make_agreement(receive=10)
        agreement_utils.add_product(org.id, agreement.id, 2, consignment_price='20')
        ledger_utils.receive(org.id, agreement.id, LineItem(2, None, 10))
        _sell(org, agreement, 1, ref='A')
        _sell(org, agreement, 2, ref='B')
        _sell(org, agreement, 4, ref='C', product_id=2)
        agreement_utils.update_product(org.id, agreement.id, 1, consignment_price='55')
        _sell(org, agreement, 1, ref='D')

        liq = settlement_utils.generate(org.id, agreement.id, today, today)
        lines = [(i.product_id, i.quantity_sold, i.unit_price) for i in liq.items]
        assert lines == [
            (1, 3, Decimal('50.00')),
            (1, 1, Decimal('55.00')),
            (2, 4, Decimal('20.00')),
        ]
        assert liq.subtotal_ventas == Decimal('285.00')

    def test_no_sales(self, org, make_agreement, today):
        agreement = make_agreement(receive=10)
        with pytest.raises(NoSalesInPeriod):
            settlement_utils.generate(org.id, agreement.id, today, today)

    def test_inverted_period(self, org, make_agreement, today):
        agreement = make_agreement(receive=10)
        with pytest.raises(ValidationError):
            settlement_utils.generate(org.id, agreement.id, today, today - timedelta(days=1))

    def test_overlap_is_checked_before_sales(self, org, make_agreement, today):
        agreement = make_agreement(receive=10)
        _sell(org, agreement, 2)
        settlement_utils.generate(org.id, agreement.id, today, today)
        with pytest.raises(OverlappingPeriod):
            settlement_utils.generate(org.id, agreement.id, today, today)

    def test_partial_overlap(self, org, make_agreement, today):
        agreement = make_agreement(receive=10)
        _sell(org, agreement, 2)
        settlement_utils.generate(org.id, agreement.id, today - timedelta(days=5), today)
        with pytest.raises(OverlappingPeriod):
            settlement_utils.generate(org.id, agreement.id, today, today + timedelta(days=5))

    def test_missing_unit_price_fails_closed(self, org, make_agreement, today):
        agreement = make_agreement(receive=10)
        sale = _sell(org, agreement, 2)
        sale.unit_price = None
        db.session.flush()
        with pytest.raises(ValidationError):
            settlement_utils.generate(org.id, agreement.id, today, today)

    def test_idempotency_key_returns_existing(self, org, make_agreement, today):
        agreement = make_agreement(receive=10)
        _sell(org, agreement, 2)
        first = settlement_utils.generate(org.id, agreement.id, today, today, idempotency_key='k-1')
        db.session.commit()
        again = settlement_utils.generate(org.id, agreement.id, today, today, idempotency_key='k-1')
        assert again.id == first.id

    def test_idempotency_key_claimed_concurrently_is_conflict(self, org, make_agreement, today, monkeypatch):
        agreement = make_agreement(receive=10)
        yesterday = today - timedelta(days=1)
        _sell(org, agreement, 1, ref='T-1', sold_at=_noon(yesterday))
        _sell(org, agreement, 2, ref='T-2')
        settlement_utils.generate(org.id, agreement.id, yesterday, yesterday, idempotency_key='k-9')
        db.session.commit()
        # The other request committed after this one looked the key up
        monkeypatch.setattr(settlement_utils, '_find_by_idempotency_key', lambda *args: None)

        with pytest.raises(Conflict) as exc:
            run_in_transaction(lambda: settlement_utils.generate(org.id, agreement.id, today, today,
                                                                 idempotency_key='k-9'))
        assert exc.value.details['idempotency_key'] == 'k-9'
        assert Liquidation.query.count() == 1
        assert ConsignmentMovement.query.filter_by(liquidation_id=None).filter(
            ConsignmentMovement.kind == MovementKind.SELL).count() == 1

    def test_commission_snapshot_survives_agreement_update(self, org, make_agreement, today):
        from routes import agreement_utils
        agreement = make_agreement(commission='10', receive=10)
        _sell(org, agreement, 2)
        liq = settlement_utils.generate(org.id, agreement.id, today, today)
        agreement_utils.update_agreement(org.id, agreement.id, {'commission_pct': '30'})
        assert liq.commission_pct == Decimal('10.00')
        assert settlement_utils.confirm(org.id, liq.id).comision == Decimal('10.00')


class TestLifecycle:
    def _draft(self, org, make_agreement, today, qty=30):
        agreement = make_agreement(commission='10', receive=100)
        _sell(org, agreement, qty)
        liq = settlement_utils.generate(org.id, agreement.id, today, today)
        db.session.commit()
        return agreement, liq

    def test_cancel_releases_sales_and_regenerate_matches(self, org, make_agreement, today):
        agreement, liq = self._draft(org, make_agreement, today)
        totals = (liq.subtotal_ventas, liq.comision, liq.total_pagar, liq.total_unidades)

        settlement_utils.cancel(org.id, liq.id, reason='error de captura')
        db.session.commit()
        assert liq.state == LiquidationState.CANCELLED
        assert ConsignmentMovement.query.filter(ConsignmentMovement.liquidation_id.isnot(None)).count() == 0

        again = settlement_utils.generate(org.id, agreement.id, today, today)
        assert again.folio == 'LIQ-000002'
        assert (again.subtotal_ventas, again.comision, again.total_pagar, again.total_unidades) == totals

    def test_cancel_confirmed(self, org, make_agreement, today):
        _, liq = self._draft(org, make_agreement, today)
        settlement_utils.confirm(org.id, liq.id)
        settlement_utils.cancel(org.id, liq.id)
        assert liq.state == LiquidationState.CANCELLED

    def test_paid_is_irreversible(self, org, make_agreement, today):
        _, liq = self._draft(org, make_agreement, today)
        settlement_utils.confirm(org.id, liq.id)
        settlement_utils.pay(org.id, liq.id, fecha_pago='2024-03-01', referencia_pago='SPEI-1')
        db.session.commit()
        for action in (settlement_utils.cancel, settlement_utils.confirm, settlement_utils.pay):
            with pytest.raises(InvalidTransition):
                action(org.id, liq.id)
        assert liq.state == LiquidationState.PAID
        assert liq.referencia_pago == 'SPEI-1'

    def test_cannot_pay_draft(self, org, make_agreement, today):
        _, liq = self._draft(org, make_agreement, today)
        with pytest.raises(InvalidTransition):
            settlement_utils.pay(org.id, liq.id)
        assert liq.state == LiquidationState.DRAFT

    def test_confirm_rejects_tampered_totals(self, org, make_agreement, today):
        _, liq = self._draft(org, make_agreement, today)
        liq.comision = Decimal('1.00')
        db.session.commit()
        with pytest.raises(Conflict):
            settlement_utils.confirm(org.id, liq.id)

    def test_sale_belongs_to_one_open_liquidation(self, org, make_agreement, today):
        agreement, liq = self._draft(org, make_agreement, today, qty=5)
        _sell(org, agreement, 2, ref='T-2', sold_at=datetime.utcnow() + timedelta(days=2))
        later = settlement_utils.generate(org.id, agreement.id, today + timedelta(days=1), today + timedelta(days=3))

        owners = {m.liquidation_id for m in ConsignmentMovement.query.filter_by(kind=MovementKind.SELL)}
        assert owners == {liq.id, later.id}
        assert later.total_unidades == 2

    def test_folios_increase(self, org, make_agreement, today):
        agreement = make_agreement(receive=50)
        folios = []
        for offset in range(3):
            day = today - timedelta(days=offset)
            _sell(org, agreement, 1, ref=f'T-{offset}',
                  sold_at=datetime.combine(day, datetime.min.time()) + timedelta(hours=12))
            folios.append(settlement_utils.generate(org.id, agreement.id, day, day).folio_number)
        assert folios == sorted(folios) and len(set(folios)) == 3

    def test_list_by_state(self, org, make_agreement, today):
        _, liq = self._draft(org, make_agreement, today)
        assert settlement_utils.liquidations_query(org.id, state='draft').count() == 1
        assert settlement_utils.liquidations_query(org.id, state='pagada').count() == 0
        with pytest.raises(ValidationError):
            settlement_utils.liquidations_query(org.id, state='bogus')

    def test_preview_does_not_write(self, org, make_agreement, today):
        agreement = make_agreement(commission='10', receive=100)
        _sell(org, agreement, 30)
        preview = settlement_utils.preview(org.id, agreement.id, today, today)
        assert preview['subtotal_ventas'] == '1500.00'
        assert preview['comision'] == '150.00'
        assert preview['total_pagar'] == '1350.00'
        assert settlement_utils.liquidations_query(org.id).count() == 0


class TestSettledPeriods:
    def _paid_through(self, org, make_agreement, start, end):
        agreement = make_agreement(commission='10', receive=50)
        _sell(org, agreement, 5, ref='T-1', sold_at=_noon(start + timedelta(days=1)))
        liq = settlement_utils.generate(org.id, agreement.id, start, end)
        settlement_utils.confirm(org.id, liq.id)
        settlement_utils.pay(org.id, liq.id, fecha_pago=end.isoformat(), referencia_pago='SPEI-7')
        db.session.commit()
        return agreement, liq

    @pytest.mark.parametrize('days_back', [5, 0])
    def test_sale_inside_paid_period_is_rejected(self, org, make_agreement, today, days_back):
        agreement, liq = self._paid_through(org, make_agreement, today - timedelta(days=30), today)
        sold_at = datetime.utcnow() - timedelta(days=days_back)

        with pytest.raises(PeriodSettled) as exc:
            run_in_transaction(lambda: _sell(org, agreement, 1, ref='T-LATE', sold_at=sold_at))
        assert exc.value.details['folio'] == liq.folio

        assert ConsignmentMovement.query.filter_by(kind=MovementKind.SELL, liquidation_id=None).count() == 0
        assert ConsignmentStock.query.one().quantity_sold == 5

    def test_sale_after_period_is_claimable(self, org, make_agreement, today):
        agreement, liq = self._paid_through(org, make_agreement, today - timedelta(days=30),
                                            today - timedelta(days=1))
        _sell(org, agreement, 2, ref='T-2')
        later = settlement_utils.generate(org.id, agreement.id, today, today)

        assert later.total_unidades == 2
        assert ConsignmentMovement.query.filter_by(kind=MovementKind.SELL, liquidation_id=None).count() == 0

    def test_cancelled_period_accepts_sales_again(self, org, make_agreement, today):
        agreement = make_agreement(commission='10', receive=50)
        _sell(org, agreement, 3)
        liq = settlement_utils.generate(org.id, agreement.id, today, today)
        settlement_utils.cancel(org.id, liq.id, reason='faltaron ventas')
        db.session.commit()

        _sell(org, agreement, 2, ref='T-2')
        again = settlement_utils.generate(org.id, agreement.id, today, today)
        assert again.total_unidades == 5
