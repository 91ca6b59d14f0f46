"""
Tests for routes.agreement_utils: agreement lifecycle and agreement products.
"""
from decimal import Decimal

import pytest

from models import db, AgreementState, AuditLog, ConsignmentSupplier
from routes import agreement_utils, ledger_utils
from routes.errors import (Conflict, DuplicateKey, InvalidState, InvalidTransition, NotFound,
                           ValidationError)
from routes.line_items import LineItem


class TestCreateAgreement:
    def test_creates_draft_with_defaults(self, org, supplier, admin_user):
        agreement = agreement_utils.create_agreement(org.id, supplier.id, '12.5', user=admin_user)
        db.session.commit()

        assert agreement.state == AgreementState.DRAFT
        assert agreement.folio == 'ACU-000001'
        assert agreement.commission_pct == Decimal('12.50')
        assert agreement.settlement_period_days == 30
        assert agreement.return_grace_days == 60

    def test_folios_are_sequential(self, org, supplier, admin_user):
        folios = [agreement_utils.create_agreement(org.id, supplier.id, '10', user=admin_user).folio
                  for _ in range(3)]
        assert folios == ['ACU-000001', 'ACU-000002', 'ACU-000003']

    @pytest.mark.parametrize('pct', ['-1', '100.01', '150', 'abc'])
    def test_rejects_bad_commission(self, org, supplier, pct):
        with pytest.raises(ValidationError):
            agreement_utils.create_agreement(org.id, supplier.id, pct)

    def test_omitted_commission_uses_supplier_default(self, org, supplier):
        supplier.default_commission_rate = Decimal('22.50')
        db.session.commit()
        assert agreement_utils.create_agreement(org.id, supplier.id).commission_pct == Decimal('22.50')
        assert agreement_utils.create_agreement(org.id, supplier.id, '').commission_pct == Decimal('22.50')

    def test_explicit_commission_overrides_supplier_default(self, org, supplier):
        assert agreement_utils.create_agreement(org.id, supplier.id, '7').commission_pct == Decimal('7.00')

    def test_commission_bounds_are_inclusive(self, org, supplier):
        assert agreement_utils.create_agreement(org.id, supplier.id, '0').commission_pct == Decimal('0.00')
        assert agreement_utils.create_agreement(org.id, supplier.id, '100').commission_pct == Decimal('100.00')

    def test_rejects_unknown_supplier(self, org):
        with pytest.raises(ValidationError):
            agreement_utils.create_agreement(org.id, 9999, '10')

    def test_rejects_inactive_supplier(self, org):
        inactive = ConsignmentSupplier(organization_id=org.id, name='Cerrado', is_active=False)
        db.session.add(inactive)
        db.session.commit()
        with pytest.raises(ValidationError):
            agreement_utils.create_agreement(org.id, inactive.id, '10')

    def test_end_date_before_start(self, org, supplier):
        with pytest.raises(ValidationError):
            agreement_utils.create_agreement(org.id, supplier.id, '10',
                                             start_date='2024-05-10', end_date='2024-05-01')


class TestUpdateAgreement:
    def test_updates_terms(self, org, make_agreement, admin_user):
        agreement = make_agreement()
        agreement_utils.update_agreement(org.id, agreement.id,
                                         {'commission_pct': '20', 'notes': 'renegociado'}, user=admin_user)
        assert agreement.commission_pct == Decimal('20.00')
        assert agreement.notes == 'renegociado'

    def test_rejects_unknown_fields(self, org, make_agreement):
        agreement = make_agreement()
        with pytest.raises(ValidationError):
            agreement_utils.update_agreement(org.id, agreement.id, {'state': 'active'})

    def test_terminated_cannot_be_updated(self, org, make_agreement):
        agreement = make_agreement()
        agreement_utils.transition(org.id, agreement.id, 'terminate')
        with pytest.raises(InvalidState):
            agreement_utils.update_agreement(org.id, agreement.id, {'notes': 'x'})

    def test_other_organization_is_not_found(self, org, make_agreement):
        agreement = make_agreement()
        with pytest.raises(NotFound):
            agreement_utils.get_agreement(org.id + 1, agreement.id)


class TestTransitions:
    def test_activation_requires_products(self, org, supplier):
        agreement = agreement_utils.create_agreement(org.id, supplier.id, '10')
        with pytest.raises(InvalidState):
            agreement_utils.transition(org.id, agreement.id, 'activate')
        assert agreement.state == AgreementState.DRAFT

    def test_pause_and_resume(self, org, make_agreement):
        agreement = make_agreement()
        activated_at = agreement.activated_at
        agreement_utils.transition(org.id, agreement.id, 'pause')
        assert agreement.state == AgreementState.PAUSED
        agreement_utils.transition(org.id, agreement.id, 'activate')
        assert agreement.state == AgreementState.ACTIVE
        assert agreement.activated_at == activated_at

    def test_terminate_without_stock(self, org, make_agreement):
        agreement = make_agreement()
        agreement_utils.transition(org.id, agreement.id, 'terminate')
        assert agreement.state == AgreementState.TERMINATED
        assert agreement.terminated_at is not None
        assert agreement.forced_termination is False

    def test_terminate_with_stock_requires_force(self, org, make_agreement):
        agreement = make_agreement(receive=5)
        with pytest.raises(Conflict):
            agreement_utils.transition(org.id, agreement.id, 'terminate')
        assert agreement.state == AgreementState.ACTIVE

    def test_forced_terminate_is_audited(self, org, make_agreement, admin_user):
        agreement = make_agreement(receive=5)
        agreement_utils.transition(org.id, agreement.id, 'terminate', force=True, user=admin_user)
        db.session.commit()

        assert agreement.state == AgreementState.TERMINATED
        assert agreement.forced_termination is True
        warnings = AuditLog.query.filter(AuditLog.action.like('WARNING: force-terminated%')).all()
        assert len(warnings) == 1
        assert '5 units' in warnings[0].action

    def test_terminated_rejects_every_event(self, org, make_agreement):
        agreement = make_agreement()
        agreement_utils.transition(org.id, agreement.id, 'terminate')
        for event in ('activate', 'pause', 'terminate'):
            with pytest.raises(InvalidTransition):
                agreement_utils.transition(org.id, agreement.id, event)
        assert agreement.state == AgreementState.TERMINATED


class TestAgreementProducts:
    def test_duplicate_product(self, org, make_agreement):
        agreement = make_agreement()
        with pytest.raises(DuplicateKey):
            agreement_utils.add_product(org.id, agreement.id, 1, consignment_price='10')

    def test_variants_are_distinct_products(self, org, make_agreement):
        agreement = make_agreement()
        ap = agreement_utils.add_product(org.id, agreement.id, 1, variant_id=7, consignment_price='55')
        assert ap.variant_id == 7
        assert len(agreement_utils.list_products(org.id, agreement.id)) == 2

    def test_negative_price_rejected(self, org, make_agreement):
        agreement = make_agreement()
        with pytest.raises(ValidationError):
            agreement_utils.add_product(org.id, agreement.id, 2, consignment_price='-1')

    def test_cannot_add_to_terminated(self, org, make_agreement):
        agreement = make_agreement()
        agreement_utils.transition(org.id, agreement.id, 'terminate')
        with pytest.raises(InvalidState):
            agreement_utils.add_product(org.id, agreement.id, 2, consignment_price='10')

    def test_remove_with_stock_conflicts(self, org, make_agreement):
        agreement = make_agreement(receive=3)
        with pytest.raises(Conflict):
            agreement_utils.remove_product(org.id, agreement.id, 1)

    def test_remove_then_readd_reactivates(self, org, make_agreement):
        agreement = make_agreement()
        removed = agreement_utils.remove_product(org.id, agreement.id, 1)
        assert removed.active is False

        readded = agreement_utils.add_product(org.id, agreement.id, 1, consignment_price='60')
        assert readded.id == removed.id
        assert readded.active is True
        assert readded.consignment_price == Decimal('60.00')

    def test_update_price(self, org, make_agreement):
        agreement = make_agreement()
        ap = agreement_utils.update_product(org.id, agreement.id, 1, consignment_price='75.5')
        assert ap.consignment_price == Decimal('75.50')

    def test_list_products_reports_stock(self, org, make_agreement, admin_user):
        agreement = make_agreement(receive=10)
        ledger_utils.sell(org.id, agreement.id, LineItem(1, None, 4), 'T-1', user=admin_user)
        products = agreement_utils.list_products(org.id, agreement.id)
        assert products[0]['stock_actual'] == 6
        assert products[0]['consignment_price'] == '50.00'
