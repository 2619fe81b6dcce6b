"""
Data models for the reconciliation engine.

Billing-side models accept the billing provider's raw JSON shapes
(nested ``customer: {id: ...}``, ``payment_method: {name, code}``,
``bill_items[].product.name``, money as strings) and coerce them into flat,
typed records. Output models are plain pydantic models; use
``model_dump(mode='json')`` for serialization.
"""
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from normalize import parse_monetary_value


class MatchType(str, Enum):
    """How a sheet tax id was tied to a billing customer."""
    TAX_ID_EXACT = "TAX_ID_EXACT"
    EMAIL_EXACT = "EMAIL_EXACT"
    NAME_FUZZY = "NAME_FUZZY"


class PaymentStatus(str, Enum):
    PAID = "PAID"
    PENDING = "PENDING"
    OVERDUE = "OVERDUE"
    CANCELLED = "CANCELLED"


class ChargeType(str, Enum):
    PRODUCT = "PRODUCT"
    SERVICE = "SERVICE"
    MIXED = "MIXED"


class CustomerStatus(str, Enum):
    FULLY_PAID = "FULLY_PAID"
    PARTIALLY_PAID = "PARTIALLY_PAID"
    NO_PAYMENT = "NO_PAYMENT"
    OVERPAID = "OVERPAID"
    MISSING_VINDI = "MISSING_VINDI"


class ChurnRisk(str, Enum):
    LOW = "LOW"
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"


# =============================================================================
# Coercion helpers
# =============================================================================

def _as_text(value) -> str:
    if value is None:
        return ''
    return str(value).strip()


def _as_optional_text(value) -> Optional[str]:
    text = _as_text(value)
    return text or None


def _ref_id(value):
    """Id of a nested reference ({'id': 1, ...}) or the scalar itself."""
    if isinstance(value, dict):
        return value.get('id')
    return value


def _method_label(value) -> str:
    if isinstance(value, dict):
        return _as_text(value.get('name') or value.get('code'))
    return _as_text(value)


class _ProviderModel(BaseModel):
    model_config = ConfigDict(extra='ignore')


# =============================================================================
# Billing-provider inputs
# =============================================================================

class BillingCustomer(_ProviderModel):
    """A billing-provider customer identity. Read-only here."""
    id: str = ''
    name: str = ''
    email: str = ''
    registry_code: str = Field(default='', description="CPF/CNPJ as stored by the provider")
    status: str = Field(default='', description="active / inactive / archived")
    code: str = ''
    created_at: Optional[str] = None

    @field_validator('id', 'name', 'email', 'registry_code', 'status', 'code', mode='before')
    @classmethod
    def _text_fields(cls, v):
        return _as_text(v)

    @field_validator('created_at', mode='before')
    @classmethod
    def _optional_text(cls, v):
        return _as_optional_text(v)


class BillItem(_ProviderModel):
    amount: float = 0.0
    product_name: str = ''
    description: str = ''

    @model_validator(mode='before')
    @classmethod
    def _flatten(cls, data):
        if isinstance(data, dict) and 'product_name' not in data:
            product = data.get('product')
            if isinstance(product, dict):
                data = {**data, 'product_name': product.get('name')}
        return data

    @field_validator('amount', mode='before')
    @classmethod
    def _money(cls, v):
        return parse_monetary_value(v)

    @field_validator('product_name', 'description', mode='before')
    @classmethod
    def _text_fields(cls, v):
        return _as_text(v)


class BillingCharge(_ProviderModel):
    """A single payment attempt against a bill."""
    id: str = ''
    amount: float = 0.0
    status: str = Field(default='', description="pending / paid / failed / canceled")
    paid_at: Optional[str] = None
    created_at: Optional[str] = None
    payment_method: str = ''

    @field_validator('amount', mode='before')
    @classmethod
    def _money(cls, v):
        return parse_monetary_value(v)

    @field_validator('id', 'status', mode='before')
    @classmethod
    def _text_fields(cls, v):
        return _as_text(v)

    @field_validator('payment_method', mode='before')
    @classmethod
    def _method(cls, v):
        return _method_label(v)

    @field_validator('paid_at', 'created_at', mode='before')
    @classmethod
    def _optional_text(cls, v):
        return _as_optional_text(v)


class BillingInvoice(_ProviderModel):
    """A bill: an amount owed by one billing customer, with its charges."""
    id: str = ''
    amount: float = 0.0
    status: str = Field(default='', description="pending / paid / overdue / canceled")
    due_at: Optional[str] = None
    paid_at: Optional[str] = None
    created_at: Optional[str] = None
    customer_id: str = ''
    subscription_id: Optional[str] = None
    payment_method: str = ''
    bill_items: List[BillItem] = Field(default_factory=list)
    charges: List[BillingCharge] = Field(default_factory=list)

    @model_validator(mode='before')
    @classmethod
    def _flatten(cls, data):
        if not isinstance(data, dict):
            return data
        data = dict(data)
        if 'customer_id' not in data and 'customer' in data:
            data['customer_id'] = _ref_id(data.get('customer'))
        if 'subscription_id' not in data and 'subscription' in data:
            data['subscription_id'] = _ref_id(data.get('subscription'))
        if not data.get('payment_method') and data.get('payment_method_code'):
            data['payment_method'] = data['payment_method_code']
        return data

    @field_validator('amount', mode='before')
    @classmethod
    def _money(cls, v):
        return parse_monetary_value(v)

    @field_validator('id', 'status', 'customer_id', mode='before')
    @classmethod
    def _text_fields(cls, v):
        return _as_text(v)

    @field_validator('payment_method', mode='before')
    @classmethod
    def _method(cls, v):
        return _method_label(v)

    @field_validator('due_at', 'paid_at', 'created_at', 'subscription_id', mode='before')
    @classmethod
    def _optional_text(cls, v):
        return _as_optional_text(v)

    @field_validator('bill_items', 'charges', mode='before')
    @classmethod
    def _list(cls, v):
        return v or []


class BillingSubscription(_ProviderModel):
    id: str = ''
    status: str = Field(default='', description="active / suspended / canceled / future")
    customer_id: str = ''
    plan_name: str = ''
    next_billing_at: Optional[str] = None
    start_at: Optional[str] = None
    payment_method: str = ''

    @model_validator(mode='before')
    @classmethod
    def _flatten(cls, data):
        if not isinstance(data, dict):
            return data
        data = dict(data)
        if 'customer_id' not in data and 'customer' in data:
            data['customer_id'] = _ref_id(data.get('customer'))
        if 'plan_name' not in data and isinstance(data.get('plan'), dict):
            data['plan_name'] = data['plan'].get('name')
        return data

    @field_validator('id', 'status', 'customer_id', 'plan_name', mode='before')
    @classmethod
    def _text_fields(cls, v):
        return _as_text(v)

    @field_validator('payment_method', mode='before')
    @classmethod
    def _method(cls, v):
        return _method_label(v)

    @field_validator('next_billing_at', 'start_at', mode='before')
    @classmethod
    def _optional_text(cls, v):
        return _as_optional_text(v)


# =============================================================================
# Sheet side
# =============================================================================

class SheetRecord(BaseModel):
    """One spreadsheet row after alias resolution and normalization."""
    row_number: int
    tax_id: str = Field(default='', description="Normalized CPF/CNPJ, empty when invalid")
    raw_tax_id: str = ''
    name: str = ''
    email: str = ''
    expected_total: float = 0.0
    expected_product: float = 0.0
    expected_service: float = 0.0
    sale_date: Optional[datetime] = None
    sale_date_raw: str = ''
    payment_form: str = ''
    installments: int = 1
    is_renewal: bool = False
    seller: str = ''
    source: str = ''
    product: str = ''
    level: str = ''
    phone: str = ''
    address: str = ''
    card_brand: str = ''


# =============================================================================
# Engine outputs
# =============================================================================

class MatchResult(BaseModel):
    tax_id: str
    billing_customer: BillingCustomer
    confidence: float = Field(..., ge=0, le=1)
    match_type: MatchType
    source_row: Optional[int] = Field(default=None, description="Sheet row that produced the match")


class PaymentRecord(BaseModel):
    """One charge (or one charge-less bill) seen from the customer's side."""
    date: Optional[datetime] = None
    amount: float = 0.0
    status: PaymentStatus
    payment_method: str = 'Unknown'
    type: ChargeType = ChargeType.MIXED
    bill_id: str = ''
    charge_id: Optional[str] = None
    subscription_id: Optional[str] = None
    source: str = 'billing'


class ReconciledCustomer(BaseModel):
    # Identity
    tax_id: str
    tax_id_formatted: str = ''
    tax_id_kind: str = ''
    tax_id_checksum_ok: bool = False
    customer_type: str = Field(default='', description="B2C for CPF, B2B for CNPJ")
    name: str = 'Unknown'
    email: str = ''
    phone: str = ''
    address: str = ''

    # Sheet side
    product: str = ''
    level: str = ''
    seller: str = ''
    source: str = ''
    sale_date: Optional[datetime] = None
    payment_form: str = ''
    installments: int = 1
    expected_total: float = 0.0
    expected_product: float = 0.0
    expected_service: float = 0.0
    source_rows: List[int] = Field(default_factory=list)
    renewal_flag: bool = False
    has_renewal: bool = False
    renewal_count: int = 0

    # Billing side
    billing_customer_id: Optional[str] = None
    billing_status: Optional[str] = None
    match_type: Optional[MatchType] = None
    match_confidence: float = 0.0
    collected_total: float = 0.0
    collected_product: float = 0.0
    collected_service: float = 0.0
    pending_total: float = 0.0
    overdue_total: float = 0.0
    payment_history: List[PaymentRecord] = Field(default_factory=list)
    payment_method_billing: Optional[str] = None
    last_payment_date: Optional[datetime] = None

    # Subscription
    is_recurring: bool = False
    subscription_id: Optional[str] = None
    subscription_status: Optional[str] = None
    subscription_next_billing: Optional[datetime] = None
    next_due_date: Optional[datetime] = None

    # Reconciliation
    status: CustomerStatus
    discrepancy: float = 0.0
    discrepancy_percentage: float = 0.0
    payment_ok: bool = True
    missing_payments: int = 0
    churn_risk: ChurnRisk = ChurnRisk.LOW
    flags: List[str] = Field(default_factory=list)
    ltv: float = 0.0
    days_as_customer: int = 0


class PaymentMethodStat(BaseModel):
    method: str
    count: int = 0
    total_amount: float = 0.0
    percentage: float = 0.0


class ReconciliationSummary(BaseModel):
    # Customers
    total_customers: int = 0
    active_customers: int = 0
    cancelled_customers: int = 0
    recurring_customers: int = 0
    one_time_customers: int = 0
    b2c_customers: int = 0
    b2b_customers: int = 0

    # Money
    total_expected: float = 0.0
    total_collected: float = 0.0
    total_product_expected: float = 0.0
    total_service_expected: float = 0.0
    total_product_collected: float = 0.0
    total_service_collected: float = 0.0
    total_pending: float = 0.0
    total_overdue: float = 0.0

    # Status buckets
    status_counts: Dict[str, int] = Field(default_factory=dict)
    fully_paid: int = 0
    partially_paid: int = 0
    no_payment: int = 0
    overpaid: int = 0
    missing_billing: int = 0

    # Recurring compliance
    recurring_ok: int = 0
    recurring_missing: int = 0
    recurring_overdue: int = 0

    # Discrepancies
    total_discrepancy: float = 0.0
    net_discrepancy: float = 0.0
    avg_discrepancy: float = 0.0
    avg_discrepancy_percentage: float = 0.0
    high_discrepancy_count: int = 0

    # Renewals
    customers_with_renewals: int = 0
    total_renewal_count: int = 0
    avg_renewals_per_customer: float = 0.0

    # Distributions
    churn_risk_counts: Dict[str, int] = Field(default_factory=dict)
    match_type_counts: Dict[str, int] = Field(default_factory=dict)
    flag_counts: Dict[str, int] = Field(default_factory=dict)
    payment_methods: List[PaymentMethodStat] = Field(default_factory=list)

    last_update: Optional[datetime] = None


class ReconciliationResult(BaseModel):
    matches: Dict[str, MatchResult] = Field(default_factory=dict)
    customers: List[ReconciledCustomer] = Field(default_factory=list)
    summary: ReconciliationSummary = Field(default_factory=ReconciliationSummary)
    exclusions: List[Dict[str, Any]] = Field(default_factory=list)
    unmatched_billing_customers: List[BillingCustomer] = Field(default_factory=list)
