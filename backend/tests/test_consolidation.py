"""
Tests for consolidation and classification:
- Payment history from bills and charges
- Product/service split of MIXED payments
- Status, missing payments and churn decision tables
- Renewal aggregation and subscription compliance per tax id
"""
from datetime import datetime, timedelta, timezone

import pytest

from engine import (build_payment_records, classify_churn_risk, classify_line_items, classify_status,
                    consolidate, count_missing_payments, match_all, pick_primary_record, split_mixed_amount)
from models import (BillingInvoice, BillItem, ChargeType, ChurnRisk, CustomerStatus, PaymentStatus,
                    SheetRecord)

NOW = datetime(2025, 1, 31, 12, 0, tzinfo=timezone.utc)
TAX_ID = '30426864859'
CUSTOMER = {'id': 1, 'name': 'João Silva', 'email': 'joao@example.com',
            'registry_code': '304.268.648-59', 'status': 'active'}


def rec(row=2, expected=1000.0, exp_product=0.0, exp_service=0.0, **kw):
    kw.setdefault('name', 'João Silva')
    return SheetRecord(row_number=row, tax_id=TAX_ID, raw_tax_id=TAX_ID, expected_total=expected,
                       expected_product=exp_product, expected_service=exp_service, **kw)

def charge(cid, amount, status='paid', paid_at='2024-06-01T10:00:00+00:00', method='Pix'):
    return {'id': cid, 'amount': str(amount), 'status': status, 'paid_at': paid_at,
            'payment_method': {'name': method}}

def bill(bid, amount, status='paid', charges=None, items=None, due='2024-06-01T10:00:00+00:00', subscription_id=None):
    return {'id': bid, 'amount': str(amount), 'status': status, 'due_at': due, 'customer': {'id': 1},
            'bill_items': items if items is not None else [{'amount': str(amount), 'product': {'name': 'Curso Online'}}],
            'charges': charges or [], 'subscription': {'id': subscription_id} if subscription_id else None}

def item(name, amount=0):
    return {'amount': str(amount), 'product': {'name': name}}

def run(records, bills, subscriptions=(), customers=(CUSTOMER,), **kw):
    matches = match_all(records, list(customers))
    return consolidate(records, matches, list(bills), list(subscriptions), now=NOW, **kw)


class TestClassifyStatus:
    """Status decision table"""

    @pytest.mark.parametrize("matched,expected,collected,status", [
        (True, 1000, 1000, CustomerStatus.FULLY_PAID),
        (True, 1000, 1200, CustomerStatus.OVERPAID),
        (True, 1000, 1050, CustomerStatus.OVERPAID),
        (True, 1000, 960, CustomerStatus.FULLY_PAID),
        (True, 1000, 950, CustomerStatus.FULLY_PAID),
        (True, 1000, 500, CustomerStatus.PARTIALLY_PAID),
        (True, 1000, 0, CustomerStatus.NO_PAYMENT),
        (True, 0, 0, CustomerStatus.FULLY_PAID),
        (False, 1000, 0, CustomerStatus.MISSING_VINDI),
        (False, 1000, 1000, CustomerStatus.MISSING_VINDI),
    ])
    def test_boundaries(self, matched, expected, collected, status):
        assert classify_status(matched, expected, collected) == status


class TestMissingPaymentsAndChurn:
    """Recurring compliance and churn risk"""

    def test_count_missing_payments(self):
        assert count_missing_payments(None, NOW) == 0
        assert count_missing_payments(NOW + timedelta(days=3), NOW) == 0
        assert count_missing_payments(NOW, NOW) == 0
        assert count_missing_payments(NOW - timedelta(days=1), NOW) == 1
        assert count_missing_payments(NOW - timedelta(days=30), NOW) == 2
        assert count_missing_payments(NOW - timedelta(days=65), NOW) == 3

    @pytest.mark.parametrize("missing,pct,risk", [
        (3, 0, ChurnRisk.HIGH),
        (2, 0, ChurnRisk.MEDIUM),
        (1, 0, ChurnRisk.MEDIUM),
        (0, 60, ChurnRisk.MEDIUM),
        (0, 50, ChurnRisk.LOW),
        (0, -200, ChurnRisk.LOW),
    ])
    def test_churn_risk(self, missing, pct, risk):
        assert classify_churn_risk(missing, pct) == risk


class TestPaymentHistory:
    """Bills and charges into payment records"""

    def test_line_item_classification(self):
        as_items = lambda *names: [BillItem.model_validate(item(n)) for n in names]
        assert classify_line_items(as_items('Curso Online')) == ChargeType.PRODUCT
        assert classify_line_items(as_items('Mentoria Individual')) == ChargeType.SERVICE
        assert classify_line_items(as_items('Curso Online', 'Serviço de Mentoria')) == ChargeType.MIXED
        assert classify_line_items(as_items('Taxa')) == ChargeType.MIXED
        assert classify_line_items([]) == ChargeType.MIXED
        assert classify_line_items(as_items('E-book'), {'ebook': 'PRODUCT'}) == ChargeType.PRODUCT
        assert classify_line_items(as_items('E-book'), {'ebook': 'product'}) == ChargeType.PRODUCT
        assert classify_line_items(as_items('E-book'), {'ebook': ChargeType.SERVICE}) == ChargeType.SERVICE

    def test_records_from_charges_and_bills(self):
        bills = [BillingInvoice.model_validate(b) for b in [
            bill(10, 1000, charges=[charge(100, 600, paid_at='2024-06-02T00:00:00+00:00'),
                                    charge(101, 400, status='failed', paid_at=None)]),
            bill(11, 500, status='review', due='2024-08-01T00:00:00+00:00'),
            bill(12, 200, status='canceled', due=None),
        ]]
        records = build_payment_records(bills)
        assert [(r.bill_id, r.charge_id, r.status) for r in records] == [
            ('11', None, PaymentStatus.PENDING),
            ('10', '100', PaymentStatus.PAID),
            ('10', '101', PaymentStatus.OVERDUE),
            ('12', None, PaymentStatus.CANCELLED),
        ]
        assert records[1].payment_method == 'Pix'
        assert records[1].type == ChargeType.PRODUCT
        assert records[3].date is None
        print("✓ Payment history sorted most recent first, undated last")

    def test_mixed_split(self):
        assert split_mixed_amount(1000, 1500, 500) == pytest.approx((750, 250))
        assert split_mixed_amount(100, 0, 0) == (50, 50)
        assert split_mixed_amount(100, 0, 800) == (0, 100)


class TestConsolidate:
    """Per tax id consolidation"""

    def test_renewals_are_summed(self):
        records = [rec(2, expected=100.0, exp_product=100.0), rec(3, expected=200.0, exp_product=200.0, is_renewal=True)]
        customers = run(records, [bill(10, 100, charges=[charge(1, 100)]), bill(11, 200, charges=[charge(2, 200)])])
        assert len(customers) == 1
        c = customers[0]
        assert c.expected_total == 300.0
        assert c.collected_total == 300.0
        assert c.status == CustomerStatus.FULLY_PAID
        assert c.has_renewal is True
        assert c.renewal_count == 1
        assert c.renewal_flag is True
        assert c.source_rows == [2, 3]
        print("✓ Renewals 100 + 200 = 300, FULLY_PAID")

    def test_identity_fields(self):
        c = run([rec()], [bill(10, 1000, charges=[charge(1, 1000)])])[0]
        assert c.tax_id_formatted == '304.268.648-59'
        assert c.tax_id_kind == 'CPF'
        assert c.customer_type == 'B2C'
        assert c.billing_customer_id == '1'
        assert c.billing_status == 'active'
        assert c.email == 'joao@example.com'
        assert c.match_confidence == 1.0

    def test_mixed_payment_split_by_expected_ratio(self):
        items = [item('Curso Online', 1500), item('Mentoria', 500)]
        c = run([rec(expected=2000.0, exp_product=1500.0, exp_service=500.0)],
                [bill(10, 2000, items=items, charges=[charge(1, 1000)])])[0]
        assert c.collected_total == 1000.0
        assert c.collected_product == 750.0
        assert c.collected_service == 250.0
        assert c.status == CustomerStatus.PARTIALLY_PAID
        assert c.discrepancy == 1000.0
        assert c.discrepancy_percentage == 50.0

    def test_service_only_flag(self):
        c = run([rec(expected=800.0, exp_service=800.0)],
                [bill(10, 800, items=[item('Mentoria Individual', 800)], charges=[charge(1, 800)])])[0]
        assert c.collected_service == 800.0
        assert 'SERVICE_ONLY' in c.flags

    def test_pending_overdue_and_last_payment(self):
        bills = [
            bill(10, 300, charges=[charge(1, 300, paid_at='2024-03-01T00:00:00+00:00')]),
            bill(11, 300, charges=[charge(2, 300, paid_at='2024-05-01T00:00:00+00:00')]),
            bill(12, 300, status='pending', due='2024-12-01T00:00:00+00:00'),
            bill(13, 100, status='overdue', due='2024-11-01T00:00:00+00:00'),
        ]
        c = run([rec(expected=1000.0)], bills)[0]
        assert c.collected_total == 600.0
        assert c.pending_total == 300.0
        assert c.overdue_total == 100.0
        assert c.last_payment_date == datetime(2024, 5, 1, tzinfo=timezone.utc)
        assert len(c.payment_history) == 4
        assert {'DISCREPANCY', 'PENDING_PAYMENT', 'OVERDUE_PAYMENT'} <= set(c.flags)

    def test_overdue_subscription(self):
        subs = [{'id': 7, 'status': 'active', 'customer': {'id': 1},
                 'next_billing_at': (NOW - timedelta(days=65)).isoformat(),
                 'payment_method': {'name': 'Cartão de crédito'}}]
        c = run([rec()], [bill(10, 1000, charges=[charge(1, 1000)], subscription_id=7)], subs)[0]
        assert c.is_recurring is True
        assert c.subscription_id == '7'
        assert c.missing_payments == 3
        assert c.payment_ok is False
        assert c.churn_risk == ChurnRisk.HIGH
        assert c.payment_method_billing == 'Cartão de crédito'
        assert c.next_due_date == NOW - timedelta(days=65)
        assert c.ltv == 13000.0
        print("✓ Active subscription 65 days past billing: 3 missing, HIGH churn")

    def test_inactive_subscription_not_checked(self):
        subs = [{'id': 7, 'status': 'canceled', 'customer': {'id': 1},
                 'next_billing_at': (NOW - timedelta(days=200)).isoformat()}]
        c = run([rec()], [bill(10, 1000, charges=[charge(1, 1000)])], subs)[0]
        assert c.is_recurring is True
        assert c.missing_payments == 0
        assert c.payment_ok is True

    def test_active_subscription_preferred(self):
        subs = [{'id': 7, 'status': 'canceled', 'customer': {'id': 1}},
                {'id': 8, 'status': 'active', 'customer': {'id': 1}, 'next_billing_at': (NOW + timedelta(days=5)).isoformat()}]
        c = run([rec()], [bill(10, 1000, charges=[charge(1, 1000)])], subs)[0]
        assert c.subscription_id == '8'
        assert c.payment_ok is True

    def test_unmatched_customer(self):
        c = run([rec(expected=1997.0)], [], customers=())[0]
        assert c.status == CustomerStatus.MISSING_VINDI
        assert c.flags == ['NOT_IN_BILLING']
        assert c.collected_total == 0.0
        assert c.discrepancy == 1997.0
        assert c.payment_history == []
        assert c.billing_customer_id is None

    def test_cancelled_without_followup(self):
        archived = {**CUSTOMER, 'status': 'archived'}
        c = run([rec(expected=3000.0)], [bill(10, 3000, charges=[charge(1, 1000)])], customers=(archived,))[0]
        assert 'CANCELLED_NO_FOLLOWUP' in c.flags

    def test_overpayment_flag(self):
        c = run([rec(expected=1000.0)], [bill(10, 1000, charges=[charge(1, 1500)])])[0]
        assert c.status == CustomerStatus.OVERPAID
        assert c.discrepancy == -500.0
        assert 'OVERPAYMENT' in c.flags

    def test_primary_record_and_days_as_customer(self):
        records = [rec(2, sale_date=datetime(2024, 3, 1, tzinfo=timezone.utc), product='Antigo'),
                   rec(3, sale_date=datetime(2025, 1, 1, tzinfo=timezone.utc), product='Novo'),
                   rec(4, product='Sem Data')]
        assert pick_primary_record(records).row_number == 3
        assert pick_primary_record([records[2]]).row_number == 4
        c = run(records, [])[0]
        assert c.product == 'Novo'
        assert c.days_as_customer == 30

    def test_other_customers_bills_ignored(self):
        other = {'id': 2, 'name': 'Outra Pessoa', 'registry_code': '11144477735'}
        bills = [bill(10, 1000, charges=[charge(1, 1000)]), {**bill(11, 5000, charges=[charge(2, 5000)]), 'customer': {'id': 2}}]
        c = run([rec()], bills, customers=(CUSTOMER, other))[0]
        assert c.collected_total == 1000.0

    def test_billing_customer_without_id_gets_no_unreferenced_bills(self):
        no_id = {'name': 'João Silva', 'registry_code': TAX_ID, 'status': 'active'}
        orphan_bill = {'id': 7, 'amount': '999', 'status': 'paid'}
        orphan_sub = {'id': 8, 'status': 'active', 'next_billing_at': (NOW - timedelta(days=90)).isoformat()}
        c = run([rec(expected=100.0)], [orphan_bill], [orphan_sub], customers=(no_id,))[0]
        assert c.match_type is not None
        assert c.collected_total == 0.0
        assert c.payment_history == []
        assert c.is_recurring is False
        assert c.status == CustomerStatus.NO_PAYMENT
        assert 'OVERPAYMENT' not in c.flags

    def test_naive_clock_read_as_utc(self):
        records = [rec(sale_date=datetime(2024, 12, 22, tzinfo=timezone.utc))]
        subs = [{'id': 7, 'status': 'active', 'customer': {'id': 1},
                 'next_billing_at': '2024-12-31T12:00:00+00:00'}]
        matches = match_all(records, [CUSTOMER])
        c = consolidate(records, matches, [], subs, now=datetime(2025, 1, 1))[0]
        assert c.days_as_customer == 10
        assert c.missing_payments == 1
        assert count_missing_payments(datetime(2024, 12, 1), datetime(2025, 1, 1)) == 2

    def test_empty(self):
        assert consolidate([], {}, [], [], now=NOW) == []
