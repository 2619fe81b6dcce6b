"""
Sheet x Billing Reconciliation Engine
Deterministic, rule-based matching of sales-ledger rows to billing-provider
customers, and consolidation into one classified record per tax id.
No AI, no ML, no probabilistic logic. Stateless: every run recomputes the
full result from complete snapshots of both sources.
"""
import logging
from collections import Counter, defaultdict
from datetime import datetime, timedelta, timezone

from pydantic import ValidationError

from models import (BillingCustomer, BillingInvoice, BillingSubscription, ChargeType, ChurnRisk,
                    CustomerStatus, MatchResult, MatchType, PaymentMethodStat, PaymentRecord,
                    PaymentStatus, ReconciledCustomer, ReconciliationResult, ReconciliationSummary,
                    SheetRecord)
from normalize import (format_tax_id, is_valid_tax_id, name_similarity, normalize_email,
                       normalize_header_key, normalize_name, normalize_tax_id, parse_datetime, parse_int,
                       parse_monetary_value, r2, tax_id_digits, tax_id_kind)
from settings import DEFAULT_THRESHOLDS

logger = logging.getLogger(__name__)

# =============================================================================
# CONSTANTS
# =============================================================================
# Ordered alias lists, compared against normalize_header_key(header).
# The first alias present in an export wins; later ones are value fallbacks.
SHEET_FIELD_ALIASES = {
    'tax_id': ['cpf/cnpj', 'cpf_cnpj', 'cpfcnpj', 'cpf_/_cnpj', 'documento', 'cpf', 'cnpj', 'tax_id'],
    'name': ['nome', 'name', 'nome_completo', 'razao_social', 'cliente'],
    'email': ['email', 'e_mail', 'cliente'],
    'expected_total': ['valor_total', 'valor', 'amount', 'total', 'valor_venda'],
    'expected_product': ['valor_produto', 'product_amount'],
    'expected_service': ['valor_servico', 'service_amount'],
    'sale_date': ['data_venda', 'data', 'date', 'data_transacao', 'sale_date'],
    'payment_form': ['forma', 'forma_pagamento', 'forma_de_pagamento', 'payment_method'],
    'installments': ['parcelas', 'installments', 'numero_parcelas'],
    'renewal': ['renovacao', 'renewal'],
    'seller': ['vendedor', 'vendedora', 'seller'],
    'source': ['fonte', 'origem', 'canal', 'source'],
    'product': ['produto', 'curso', 'product'],
    'level': ['nivel', 'level'],
    'phone': ['celular', 'telefone', 'phone', 'whatsapp'],
    'address': ['endereco', 'address'],
    'card_brand': ['bandeira', 'card_brand'],
}
REQUIRED_SHEET_FIELDS = ('tax_id',)
RECOMMENDED_SHEET_FIELDS = ('name', 'email', 'expected_total', 'expected_product', 'expected_service', 'sale_date')
RENEWAL_TRUE_VALUES = {'sim', 's', 'yes', 'y', 'true', '1', 'x'}

# Keyword -> line-item type. Matched as substrings of the accent-free item text.
DEFAULT_ITEM_KEYWORDS = {
    'produto': ChargeType.PRODUCT,
    'course': ChargeType.PRODUCT,
    'curso': ChargeType.PRODUCT,
    'servico': ChargeType.SERVICE,
    'service': ChargeType.SERVICE,
    'mentoria': ChargeType.SERVICE,
}

CHARGE_STATUS_MAP = {
    'paid': PaymentStatus.PAID,
    'pending': PaymentStatus.PENDING,
    'processing': PaymentStatus.PENDING,
    'failed': PaymentStatus.OVERDUE,
}
BILL_STATUS_MAP = {
    'paid': PaymentStatus.PAID,
    'pending': PaymentStatus.PENDING,
    'review': PaymentStatus.PENDING,
    'overdue': PaymentStatus.OVERDUE,
}

ACTIVE = 'active'
CANCELLED_BILLING_STATUSES = ('inactive', 'archived')
MONEY_EPSILON = 0.01
UNKNOWN_METHOD = 'Unknown'
_OLDEST = datetime.min.replace(tzinfo=timezone.utc)


class MissingColumnError(ValueError):
    """A required logical field matched none of its header aliases."""

    def __init__(self, fields, headers=None):
        self.fields = list(fields)
        self.headers = list(headers or [])
        super().__init__(f"Missing required column(s): {', '.join(self.fields)}. "
                         f"Accepted headers: {', '.join(a for f in self.fields for a in SHEET_FIELD_ALIASES.get(f, []))}")

# =============================================================================
# HELPERS
# =============================================================================
def now_utc():
    return datetime.now(timezone.utc)

def _exclusion(record_type, record_id, reason_code, description, at=None):
    return {
        'record_type': record_type, 'record_id': record_id,
        'reason_code': reason_code, 'description': description,
        'excluded_at': (at or now_utc()).isoformat(),
    }

def _coerce_all(model, items, record_type, at=None):
    """Validate raw provider payloads into `model`. Returns (valid, exclusions)."""
    valid, exclusions = [], []
    for i, item in enumerate(items or []):
        if isinstance(item, model):
            valid.append(item)
            continue
        try:
            valid.append(model.model_validate(item))
        except ValidationError as e:
            rid = str(item.get('id', f'#{i}')) if isinstance(item, dict) else f'#{i}'
            first = e.errors()[0]
            logger.warning(f"Skipping malformed {record_type} {rid}: {first.get('msg')}")
            exclusions.append(_exclusion(record_type, rid, 'MALFORMED_BILLING_RECORD',
                                         f"{first.get('loc')}: {first.get('msg')}", at))
    return valid, exclusions

# =============================================================================
# SHEET INGESTION
# =============================================================================
def resolve_columns(headers, required=REQUIRED_SHEET_FIELDS):
    """Resolve export headers to logical fields once per export.

    Returns {field: [header, ...]} in alias priority order. Raises
    MissingColumnError when a required field matches no alias.
    """
    by_key = {}
    for h in headers:
        by_key.setdefault(normalize_header_key(h), h)
    columns = {}
    for field, aliases in SHEET_FIELD_ALIASES.items():
        found = [by_key[a] for a in aliases if a in by_key]
        if found:
            columns[field] = found
    missing = [f for f in required if f not in columns]
    if missing:
        raise MissingColumnError(missing, headers)
    return columns

def _collect_headers(rows):
    headers = []
    seen = set()
    for row in rows:
        for h in row.keys():
            if h not in seen:
                seen.add(h)
                headers.append(h)
    return headers

def _first_value(row, columns, field):
    for header in columns.get(field, []):
        v = row.get(header)
        if v is not None and str(v).strip() != '':
            return str(v).strip()
    return ''

def _build_record(row_number, row, columns):
    value = lambda field: _first_value(row, columns, field)
    raw_tax_id = value('tax_id')
    raw_date = value('sale_date')
    return SheetRecord(
        row_number=row_number,
        tax_id=normalize_tax_id(raw_tax_id), raw_tax_id=raw_tax_id,
        name=value('name'), email=value('email'),
        expected_total=parse_monetary_value(value('expected_total')),
        expected_product=parse_monetary_value(value('expected_product')),
        expected_service=parse_monetary_value(value('expected_service')),
        sale_date=parse_datetime(raw_date), sale_date_raw=raw_date,
        payment_form=value('payment_form'),
        installments=max(parse_int(value('installments'), 1), 1),
        is_renewal=normalize_name(value('renewal')) in RENEWAL_TRUE_VALUES,
        seller=value('seller'), source=value('source'), product=value('product'),
        level=value('level'), phone=value('phone'), address=value('address'),
        card_brand=value('card_brand'),
    )

def ingest_sheet_rows(rows, at=None):
    """Turn raw export rows into SheetRecords. Returns (records, exclusions).

    Rows whose tax id does not normalize to 11 or 14 digits are excluded,
    keeping their raw digits in the exclusion for diagnostics.
    """
    rows = list(rows or [])
    if not any(rows):
        return [], []
    columns = resolve_columns(_collect_headers([r for r in rows if r]))
    records, exclusions = [], []
    for i, row in enumerate(rows):
        if not row:
            continue
        rn = i + 2
        record = _build_record(rn, row, columns)
        if record.tax_id:
            records.append(record)
            continue
        digits = tax_id_digits(record.raw_tax_id)
        if not record.raw_tax_id:
            exclusions.append(_exclusion('sheet_row', rn, 'MISSING_TAX_ID', 'Row has no CPF/CNPJ value.', at))
        else:
            exclusions.append(_exclusion('sheet_row', rn, 'INVALID_TAX_ID',
                                         f"CPF/CNPJ '{record.raw_tax_id}' has {len(digits)} digit(s) ({digits}); expected 11 or 14.", at))
    logger.debug(f"Ingested {len(records)} sheet rows, {len(exclusions)} excluded")
    return records, exclusions

def validate_sheet(rows):
    """Soft validation of an export: errors only for showstoppers, warnings otherwise."""
    errors, warnings = [], []
    rows = [r for r in (rows or []) if r]
    if not rows:
        errors.append({'row': 0, 'field': '', 'message': 'No data rows found.'})
        return {'valid': False, 'errors': errors, 'warnings': warnings, 'columns': {}}

    try:
        columns = resolve_columns(_collect_headers(rows))
    except MissingColumnError as e:
        errors.append({'row': 0, 'field': ', '.join(e.fields), 'message': str(e)})
        return {'valid': False, 'errors': errors, 'warnings': warnings, 'columns': {}}

    for f in RECOMMENDED_SHEET_FIELDS:
        if f not in columns:
            warnings.append({'row': 0, 'field': f, 'message': f"Optional column '{f}' not found. Defaults will be applied."})

    bad_tax_ids, bad_amounts, bad_dates = 0, 0, 0
    tax_id_rows = defaultdict(int)
    for row in rows:
        tid = normalize_tax_id(_first_value(row, columns, 'tax_id'))
        if tid:
            tax_id_rows[tid] += 1
        else:
            bad_tax_ids += 1
        for f in ('expected_total', 'expected_product', 'expected_service'):
            v = _first_value(row, columns, f)
            if v and not any(ch.isdigit() for ch in v):
                bad_amounts += 1
        d = _first_value(row, columns, 'sale_date')
        if d and parse_datetime(d) is None:
            bad_dates += 1

    if bad_tax_ids == len(rows):
        errors.append({'row': 0, 'field': 'tax_id', 'message': 'No row has a valid 11- or 14-digit CPF/CNPJ.'})
    elif bad_tax_ids:
        warnings.append({'row': 0, 'field': 'tax_id', 'message': f'{bad_tax_ids} row(s) have a missing or invalid CPF/CNPJ. These rows will be skipped.'})
    if bad_amounts:
        warnings.append({'row': 0, 'field': 'amount', 'message': f'{bad_amounts} amount value(s) are not numeric. These will be treated as 0.'})
    if bad_dates:
        warnings.append({'row': 0, 'field': 'sale_date', 'message': f'{bad_dates} row(s) have unparseable sale dates. Use DD/MM/YYYY or YYYY-MM-DD.'})
    renewals = sum(1 for n in tax_id_rows.values() if n > 1)
    if renewals:
        warnings.append({'row': 0, 'field': 'tax_id', 'message': f'{renewals} CPF/CNPJ value(s) appear on more than one row and will be summed as renewals.'})

    return {'valid': len(errors) == 0, 'errors': errors, 'warnings': warnings, 'columns': columns}

# =============================================================================
# IDENTITY MATCHING (3-tier cascade)
# =============================================================================
class BillingIndex:
    """Normalized view of the billing customers, built once per run."""

    def __init__(self, customers):
        self.entries = []
        self.by_tax_id = {}
        for c in customers:
            tid = normalize_tax_id(c.registry_code)
            self.entries.append((c, tid, normalize_email(c.email)))
            if tid:
                # First billing customer with a given tax id wins tier 1.
                self.by_tax_id.setdefault(tid, c)

    def __len__(self):
        return len(self.entries)

def _match_by_email(record, index, t):
    email = normalize_email(record.email)
    if '@' not in email:
        return None
    best, best_conf = None, -1.0
    for customer, tid, c_email in index.entries:
        if c_email != email:
            continue
        if not tid:
            conf = t.email_confidence_no_tax_id
        elif tid == record.tax_id:
            conf = t.email_confidence_same_tax_id
        else:
            conf = t.email_confidence_conflicting_tax_id
        if conf > best_conf:
            best, best_conf = customer, conf
    if best is None:
        return None
    return MatchResult(tax_id=record.tax_id, billing_customer=best, confidence=best_conf,
                       match_type=MatchType.EMAIL_EXACT, source_row=record.row_number)

def _tax_id_similarity(a, b, t):
    if a == b:
        return 1.0
    n = t.tax_id_prefix_length
    if len(a) >= n and a[:n] == b[:n]:
        return t.tax_id_prefix_score
    return 0.0

def _match_by_name(record, index, t):
    if not normalize_name(record.name):
        return None
    best, best_conf = None, -1.0
    for customer, tid, _ in index.entries:
        if not tid:
            continue
        tax_sim = _tax_id_similarity(record.tax_id, tid, t)
        if tax_sim == 0.0:
            continue
        name_sim = name_similarity(record.name, customer.name, symmetric=t.symmetric_name_similarity)
        if name_sim <= t.name_similarity_cutoff:
            continue
        conf = min(1.0, t.fuzzy_name_weight * name_sim + t.fuzzy_tax_id_weight * tax_sim)
        if conf > t.fuzzy_confidence_cutoff and conf > best_conf:
            best, best_conf = customer, conf
    if best is None:
        return None
    return MatchResult(tax_id=record.tax_id, billing_customer=best, confidence=best_conf,
                       match_type=MatchType.NAME_FUZZY, source_row=record.row_number)

def match_record(record, index, thresholds=None):
    """Best billing customer for one sheet record, or None.

    Tiers are tried in order and the first one that yields a candidate wins:
    exact tax id (1.0), exact email (1.0 / 0.8 / 0.7), fuzzy name gated by a
    tax-id prefix. Ties inside a tier keep the first candidate seen.
    """
    t = thresholds or DEFAULT_THRESHOLDS
    if not record.tax_id:
        return None
    customer = index.by_tax_id.get(record.tax_id)
    if customer is not None:
        return MatchResult(tax_id=record.tax_id, billing_customer=customer, confidence=1.0,
                           match_type=MatchType.TAX_ID_EXACT, source_row=record.row_number)
    return _match_by_email(record, index, t) or _match_by_name(record, index, t)

def match_all(records, billing_customers, thresholds=None):
    """Match every record independently, then keep one result per tax id.

    A later record for the same tax id only replaces the kept match when its
    confidence is strictly higher.
    """
    t = thresholds or DEFAULT_THRESHOLDS
    if isinstance(billing_customers, BillingIndex):
        index = billing_customers
    else:
        index = BillingIndex(_coerce_all(BillingCustomer, billing_customers, 'billing_customer')[0])
    results = [match_record(r, index, t) for r in records]
    matches = {}
    for m in results:
        if m is None:
            continue
        current = matches.get(m.tax_id)
        if current is None or m.confidence > current.confidence:
            matches[m.tax_id] = m
    return matches

# =============================================================================
# PAYMENT HISTORY
# =============================================================================
def _keyword_table(item_keywords):
    table = DEFAULT_ITEM_KEYWORDS if item_keywords is None else item_keywords
    return [(normalize_name(k), ChargeType(str(getattr(v, 'value', v)).upper())) for k, v in table.items() if normalize_name(k)]

def classify_line_items(items, item_keywords=None):
    """PRODUCT or SERVICE when only one kind of keyword appears in the items, MIXED otherwise."""
    table = _keyword_table(item_keywords)
    kinds = set()
    for item in items:
        text = normalize_name(f"{item.product_name} {item.description}")
        for keyword, kind in table:
            if keyword in text:
                kinds.add(kind)
    if kinds == {ChargeType.PRODUCT}:
        return ChargeType.PRODUCT
    if kinds == {ChargeType.SERVICE}:
        return ChargeType.SERVICE
    return ChargeType.MIXED

def build_payment_records(bills, item_keywords=None):
    """One PaymentRecord per charge, or per bill when it has no charges. Most recent first."""
    records = []
    for bill in bills:
        kind = classify_line_items(bill.bill_items, item_keywords)
        for ch in bill.charges:
            records.append(PaymentRecord(
                date=parse_datetime(ch.paid_at) or parse_datetime(bill.due_at) or parse_datetime(ch.created_at),
                amount=r2(ch.amount),
                status=CHARGE_STATUS_MAP.get(ch.status.lower(), PaymentStatus.CANCELLED),
                payment_method=ch.payment_method or bill.payment_method or UNKNOWN_METHOD,
                type=kind, bill_id=bill.id, charge_id=ch.id or None,
                subscription_id=bill.subscription_id,
            ))
        if not bill.charges:
            records.append(PaymentRecord(
                date=parse_datetime(bill.paid_at) or parse_datetime(bill.due_at) or parse_datetime(bill.created_at),
                amount=r2(bill.amount),
                status=BILL_STATUS_MAP.get(bill.status.lower(), PaymentStatus.CANCELLED),
                payment_method=bill.payment_method or UNKNOWN_METHOD,
                type=kind, bill_id=bill.id, subscription_id=bill.subscription_id,
            ))
    records.sort(key=lambda r: r.date or _OLDEST, reverse=True)
    return records

def split_mixed_amount(amount, expected_product, expected_service):
    """Split a MIXED amount by the customer's own expected product/service ratio (50/50 if undefined)."""
    base = expected_product + expected_service
    ratio = expected_product / base if base > 0 else 0.5
    return amount * ratio, amount * (1 - ratio)

# =============================================================================
# CLASSIFICATION
# =============================================================================
def classify_status(matched, expected_total, collected_total, thresholds=None):
    t = thresholds or DEFAULT_THRESHOLDS
    if not matched:
        return CustomerStatus.MISSING_VINDI
    discrepancy = r2(expected_total - collected_total)
    if discrepancy <= -t.status_tolerance:
        return CustomerStatus.OVERPAID
    if abs(discrepancy) <= t.status_tolerance:
        return CustomerStatus.FULLY_PAID
    if collected_total > 0:
        return CustomerStatus.PARTIALLY_PAID
    return CustomerStatus.NO_PAYMENT

def count_missing_payments(next_billing, now, thresholds=None):
    """Billing periods elapsed since a past next-billing date, counting the one it opened."""
    t = thresholds or DEFAULT_THRESHOLDS
    if next_billing is None:
        return 0
    now = parse_datetime(now) or now_utc()
    next_billing = parse_datetime(next_billing)
    if next_billing is None or next_billing >= now:
        return 0
    return int((now - next_billing) // timedelta(days=t.billing_period_days)) + 1

def classify_churn_risk(missing_payments, discrepancy_percentage, thresholds=None):
    t = thresholds or DEFAULT_THRESHOLDS
    if missing_payments > t.churn_high_missing_payments:
        return ChurnRisk.HIGH
    if missing_payments > 0 or discrepancy_percentage > t.churn_medium_discrepancy_pct:
        return ChurnRisk.MEDIUM
    return ChurnRisk.LOW

def customer_flags(c):
    if c.status == CustomerStatus.MISSING_VINDI:
        return ['NOT_IN_BILLING']
    flags = []
    if c.collected_total > 0 and abs(c.collected_service - c.collected_total) < MONEY_EPSILON:
        flags.append('SERVICE_ONLY')
    if abs(c.discrepancy) > MONEY_EPSILON:
        flags.append('DISCREPANCY')
    if (c.billing_status or '').lower() in CANCELLED_BILLING_STATUSES and c.collected_total < c.expected_total:
        flags.append('CANCELLED_NO_FOLLOWUP')
    if c.collected_total > c.expected_total:
        flags.append('OVERPAYMENT')
    if c.pending_total > 0:
        flags.append('PENDING_PAYMENT')
    if c.overdue_total > 0:
        flags.append('OVERDUE_PAYMENT')
    return flags

# =============================================================================
# CONSOLIDATION
# =============================================================================
def group_by_tax_id(records):
    groups = defaultdict(list)
    for r in records:
        if r.tax_id:
            groups[r.tax_id].append(r)
    return dict(groups)

def pick_primary_record(records):
    """Most recent sale date wins; the first row when no row has a date."""
    dated = [r for r in records if r.sale_date is not None]
    if not dated:
        return records[0]
    return max(dated, key=lambda r: r.sale_date)

def _first_nonempty(*values):
    for v in values:
        if v:
            return v
    return ''

def consolidate_customer(tax_id, records, match, bills, subscriptions, thresholds=None,
                         item_keywords=None, now=None):
    """Build one ReconciledCustomer from all sheet rows sharing `tax_id`.

    `bills` and `subscriptions` are the ones belonging to the matched billing
    customer (ignored when `match` is None).
    """
    t = thresholds or DEFAULT_THRESHOLDS
    now = parse_datetime(now) or now_utc()
    primary = pick_primary_record(records)

    expected_total = r2(sum(r.expected_total for r in records))
    expected_product = r2(sum(r.expected_product for r in records))
    expected_service = r2(sum(r.expected_service for r in records))

    billing = match.billing_customer if match else None
    history = build_payment_records(bills, item_keywords) if billing else []

    collected = collected_product = collected_service = pending = overdue = 0.0
    last_payment = None
    for p in history:
        if p.status == PaymentStatus.PAID:
            collected += p.amount
            if p.type == ChargeType.PRODUCT:
                collected_product += p.amount
            elif p.type == ChargeType.SERVICE:
                collected_service += p.amount
            else:
                prod, serv = split_mixed_amount(p.amount, expected_product, expected_service)
                collected_product += prod
                collected_service += serv
            if last_payment is None:
                last_payment = p.date
        elif p.status == PaymentStatus.PENDING:
            pending += p.amount
        elif p.status == PaymentStatus.OVERDUE:
            overdue += p.amount
    collected, pending, overdue = r2(collected), r2(pending), r2(overdue)

    subscription = None
    if billing and subscriptions:
        subscription = next((s for s in subscriptions if s.status.lower() == ACTIVE), subscriptions[0])
    is_recurring = subscription is not None
    next_billing = parse_datetime(subscription.next_billing_at) if subscription else None

    payment_method = None
    if subscription and subscription.payment_method:
        payment_method = subscription.payment_method
    elif history:
        payment_method = history[0].payment_method

    discrepancy = r2(expected_total - collected)
    discrepancy_pct = r2(discrepancy / expected_total * 100) if expected_total > 0 else 0.0
    status = classify_status(billing is not None, expected_total, collected, t)

    payment_ok, missing = True, 0
    if is_recurring and subscription.status.lower() == ACTIVE:
        missing = count_missing_payments(next_billing, now, t)
        payment_ok = overdue == 0 and missing == 0

    customer = ReconciledCustomer(
        tax_id=tax_id,
        tax_id_formatted=format_tax_id(tax_id),
        tax_id_kind=tax_id_kind(tax_id),
        tax_id_checksum_ok=is_valid_tax_id(tax_id),
        customer_type='B2C' if tax_id_kind(tax_id) == 'CPF' else 'B2B',
        name=_first_nonempty(primary.name, *(r.name for r in records), billing.name if billing else '') or 'Unknown',
        email=_first_nonempty(billing.email if billing else '', primary.email, *(r.email for r in records)),
        phone=_first_nonempty(primary.phone, *(r.phone for r in records)),
        address=_first_nonempty(primary.address, *(r.address for r in records)),
        product=primary.product, level=primary.level,
        seller=primary.seller, source=primary.source,
        sale_date=primary.sale_date, payment_form=primary.payment_form,
        installments=primary.installments,
        expected_total=expected_total, expected_product=expected_product, expected_service=expected_service,
        source_rows=[r.row_number for r in records],
        renewal_flag=any(r.is_renewal for r in records),
        has_renewal=len(records) > 1, renewal_count=len(records) - 1,
        billing_customer_id=billing.id if billing else None,
        billing_status=billing.status if billing else None,
        match_type=match.match_type if match else None,
        match_confidence=match.confidence if match else 0.0,
        collected_total=collected, collected_product=r2(collected_product), collected_service=r2(collected_service),
        pending_total=pending, overdue_total=overdue,
        payment_history=history, payment_method_billing=payment_method,
        last_payment_date=last_payment,
        is_recurring=is_recurring,
        subscription_id=subscription.id if subscription else None,
        subscription_status=subscription.status if subscription else None,
        subscription_next_billing=next_billing, next_due_date=next_billing,
        status=status, discrepancy=discrepancy, discrepancy_percentage=discrepancy_pct,
        payment_ok=payment_ok, missing_payments=missing,
        churn_risk=classify_churn_risk(missing, discrepancy_pct, t),
        ltv=r2(collected + (collected * t.recurring_ltv_multiplier if is_recurring else 0)),
        days_as_customer=max((now - primary.sale_date).days, 0) if primary.sale_date else 0,
    )
    customer.flags = customer_flags(customer)
    return customer

def consolidate(records, matches, bills, subscriptions, thresholds=None, item_keywords=None, now=None):
    """One ReconciledCustomer per tax id, in first-seen sheet order."""
    t = thresholds or DEFAULT_THRESHOLDS
    now = parse_datetime(now) or now_utc()
    bills, _ = _coerce_all(BillingInvoice, bills, 'bill')
    subscriptions, _ = _coerce_all(BillingSubscription, subscriptions, 'subscription')

    bills_by_customer = defaultdict(list)
    for b in bills:
        bills_by_customer[b.customer_id].append(b)
    subs_by_customer = defaultdict(list)
    for s in subscriptions:
        subs_by_customer[s.customer_id].append(s)

    customers = []
    for tax_id, group in group_by_tax_id(records).items():
        match = matches.get(tax_id)
        # Bills and subscriptions only join on a real provider id.
        cid = match.billing_customer.id if match else None
        customers.append(consolidate_customer(
            tax_id, group, match,
            bills_by_customer.get(cid, []) if cid else [],
            subs_by_customer.get(cid, []) if cid else [],
            t, item_keywords, now,
        ))
    return customers

# =============================================================================
# METRICS
# =============================================================================
def summarize(customers, thresholds=None, now=None):
    """Reduce reconciled customers to one summary. Empty input gives an all-zero summary."""
    t = thresholds or DEFAULT_THRESHOLDS
    total = len(customers)
    status_counts = Counter(c.status.value for c in customers)
    recurring = [c for c in customers if c.is_recurring]

    with_expected = [c for c in customers if c.expected_total > 0]
    abs_discrepancy = sum(abs(c.discrepancy) for c in customers)
    renewing = [c for c in customers if c.has_renewal]
    renewal_total = sum(c.renewal_count for c in customers)

    methods = {}
    for c in customers:
        method = c.payment_method_billing or c.payment_form or UNKNOWN_METHOD
        stat = methods.setdefault(method, {'count': 0, 'amount': 0.0})
        stat['count'] += 1
        stat['amount'] += c.collected_total
    payment_methods = [
        PaymentMethodStat(method=m, count=s['count'], total_amount=r2(s['amount']),
                          percentage=r2(s['count'] / total * 100))
        for m, s in sorted(methods.items(), key=lambda kv: (-kv[1]['count'], kv[0]))
    ]

    flag_counts = Counter(f for c in customers for f in c.flags)

    return ReconciliationSummary(
        total_customers=total,
        active_customers=sum(1 for c in customers if c.status != CustomerStatus.MISSING_VINDI and (c.billing_status or '').lower() == ACTIVE),
        cancelled_customers=sum(1 for c in customers if (c.billing_status or '').lower() in CANCELLED_BILLING_STATUSES),
        recurring_customers=len(recurring),
        one_time_customers=total - len(recurring),
        b2c_customers=sum(1 for c in customers if c.customer_type == 'B2C'),
        b2b_customers=sum(1 for c in customers if c.customer_type == 'B2B'),
        total_expected=r2(sum(c.expected_total for c in customers)),
        total_collected=r2(sum(c.collected_total for c in customers)),
        total_product_expected=r2(sum(c.expected_product for c in customers)),
        total_service_expected=r2(sum(c.expected_service for c in customers)),
        total_product_collected=r2(sum(c.collected_product for c in customers)),
        total_service_collected=r2(sum(c.collected_service for c in customers)),
        total_pending=r2(sum(c.pending_total for c in customers)),
        total_overdue=r2(sum(c.overdue_total for c in customers)),
        status_counts={s.value: status_counts.get(s.value, 0) for s in CustomerStatus},
        fully_paid=status_counts.get(CustomerStatus.FULLY_PAID.value, 0),
        partially_paid=status_counts.get(CustomerStatus.PARTIALLY_PAID.value, 0),
        no_payment=status_counts.get(CustomerStatus.NO_PAYMENT.value, 0),
        overpaid=status_counts.get(CustomerStatus.OVERPAID.value, 0),
        missing_billing=status_counts.get(CustomerStatus.MISSING_VINDI.value, 0),
        recurring_ok=sum(1 for c in recurring if c.payment_ok),
        recurring_missing=sum(1 for c in recurring if not c.payment_ok and c.missing_payments > 0),
        recurring_overdue=sum(1 for c in recurring if c.overdue_total > 0),
        total_discrepancy=r2(abs_discrepancy),
        net_discrepancy=r2(sum(c.discrepancy for c in customers)),
        avg_discrepancy=r2(abs_discrepancy / total) if total else 0.0,
        avg_discrepancy_percentage=r2(sum(abs(c.discrepancy_percentage) for c in with_expected) / len(with_expected)) if with_expected else 0.0,
        high_discrepancy_count=sum(1 for c in customers if abs(c.discrepancy) > t.high_discrepancy_threshold),
        customers_with_renewals=len(renewing),
        total_renewal_count=renewal_total,
        avg_renewals_per_customer=r2(renewal_total / len(renewing)) if renewing else 0.0,
        churn_risk_counts={r.value: sum(1 for c in customers if c.churn_risk == r) for r in ChurnRisk},
        match_type_counts={m.value: sum(1 for c in customers if c.match_type == m) for m in MatchType},
        flag_counts=dict(sorted(flag_counts.items())),
        payment_methods=payment_methods,
        last_update=now or now_utc(),
    )

# =============================================================================
# PIPELINE
# =============================================================================
def reconcile(sheet_rows, billing_customers, bills, subscriptions, thresholds=None,
              item_keywords=None, now=None):
    """Full run: ingest -> match -> consolidate -> summarize.

    `now` is the single clock reading for the run (missing payments, days as
    customer, exclusion timestamps); pass it for reproducible output.
    """
    t = thresholds or DEFAULT_THRESHOLDS
    now = parse_datetime(now) or now_utc()

    records, exclusions = ingest_sheet_rows(sheet_rows, at=now)
    customers, ex = _coerce_all(BillingCustomer, billing_customers, 'billing_customer', now)
    exclusions.extend(ex)
    bills, ex = _coerce_all(BillingInvoice, bills, 'bill', now)
    exclusions.extend(ex)
    subscriptions, ex = _coerce_all(BillingSubscription, subscriptions, 'subscription', now)
    exclusions.extend(ex)
    logger.info(f"Ingestion: {len(records)} sheet rows, {len(customers)} billing customers, "
                f"{len(bills)} bills, {len(subscriptions)} subscriptions, {len(exclusions)} excluded")

    index = BillingIndex(customers)
    matches = match_all(records, index, t)
    by_type = Counter(m.match_type.value for m in matches.values())
    logger.info(f"Matching: {len(matches)} of {len(group_by_tax_id(records))} tax ids matched {dict(by_type)}")

    reconciled = consolidate(records, matches, bills, subscriptions, t, item_keywords, now)
    reconciled.sort(key=lambda c: (-abs(c.discrepancy), c.tax_id))
    logger.info(f"Consolidation: {len(reconciled)} customers reconciled")

    summary = summarize(reconciled, t, now)
    matched_ids = {m.billing_customer.id for m in matches.values()}
    unmatched = [c for c in customers if c.id not in matched_ids]
    logger.info(f"Summary: expected {summary.total_expected:,.2f}, collected {summary.total_collected:,.2f}, "
                f"{summary.high_discrepancy_count} high discrepancies")

    return ReconciliationResult(matches=matches, customers=reconciled, summary=summary,
                                exclusions=exclusions, unmatched_billing_customers=unmatched)
