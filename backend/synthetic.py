"""
Synthetic Snapshot Generator
Builds a sheet export plus billing-provider customers, bills and subscriptions
(provider JSON shapes) with known ground-truth anomalies. Deterministic for a
given seed; `now` is fixed so time-based classifications are reproducible.
"""
import random
from datetime import date, datetime, timedelta, timezone

from normalize import format_tax_id

NOW = datetime(2025, 1, 31, 12, 0, tzinfo=timezone.utc)
BRT = timezone(timedelta(hours=-3))
REGULAR_CUSTOMERS = 30

FIRST_NAMES = ["Ana", "Bruno", "Carla", "Diego", "Eduarda", "Felipe", "Gabriela", "Henrique",
               "Isabela", "João", "Larissa", "Marcelo", "Natália", "Otávio", "Paula"]
LAST_NAMES = ["Almeida", "Barbosa", "Cardoso", "Duarte", "Esteves", "Ferreira", "Gonçalves", "Hoffmann",
              "Ibrahim", "Junqueira", "Kowalski", "Lacerda", "Moreira", "Nogueira", "Oliveira"]
PRODUCTS = ["Formação Completa", "Imersão Presencial", "Programa Avançado"]
SELLERS = ["Rafaela", "Tiago", "Vanessa"]
SOURCES = ["Instagram", "Indicação", "Evento", "Site"]
PAYMENT_FORMS = ["Cartão", "Pix", "Boleto"]
METHODS = [{'name': 'Cartão de crédito', 'code': 'credit_card'},
           {'name': 'Pix', 'code': 'pix'},
           {'name': 'Boleto bancário', 'code': 'bank_slip'}]

# Known-valid CNPJ used for the B2B customer.
B2B_CNPJ = '11222333000181'


def gen_cpf(rng):
    digits = [rng.randint(0, 9) for _ in range(9)]
    for start in (10, 11):
        total = sum(d * (start - i) for i, d in enumerate(digits))
        r = total % 11
        digits.append(0 if r < 2 else 11 - r)
    return ''.join(str(d) for d in digits)

def fmt_brl(v):
    s = f"R$ {v:,.2f}"
    return s.replace(',', '#').replace('.', ',').replace('#', '.')

def fmt_dmy(d):
    return d.strftime('%d/%m/%Y')

def iso(dt):
    """Provider timestamps are Brasilia-time ISO strings."""
    return dt.astimezone(BRT).isoformat(timespec='seconds')


class _Builder:
    def __init__(self, seed):
        self.rng = random.Random(seed)
        self.sheet_rows, self.customers, self.bills, self.subscriptions = [], [], [], []
        self.used_tax_ids = set()
        self.next_customer_id, self.next_bill_id, self.next_charge_id, self.next_sub_id = 1001, 5001, 9001, 701

    def cpf(self):
        while True:
            c = gen_cpf(self.rng)
            if c not in self.used_tax_ids and len(set(c)) > 1:
                self.used_tax_ids.add(c)
                return c

    def sale_date(self):
        return date(2024, self.rng.randint(1, 12), self.rng.randint(1, 28))

    def sheet_row(self, tax_id, name, email, product_amount, service_amount, sale_date, renewal=False, product=None):
        self.sheet_rows.append({
            'CPF/CNPJ': format_tax_id(tax_id), 'Nome': name, 'Cliente': email,
            'Valor Total': fmt_brl(product_amount + service_amount),
            'Valor Produto': fmt_brl(product_amount), 'Valor Serviço': fmt_brl(service_amount),
            'Data Venda': fmt_dmy(sale_date),
            'Forma': self.rng.choice(PAYMENT_FORMS), 'Parcelas': str(self.rng.choice([1, 6, 12])),
            'Renovação': 'Sim' if renewal else 'Não',
            'Vendedor': self.rng.choice(SELLERS), 'Fonte': self.rng.choice(SOURCES),
            'Produto': product or self.rng.choice(PRODUCTS), 'Nível': self.rng.choice(['Iniciante', 'Avançado']),
        })

    def customer(self, name, email, registry_code, status='active'):
        cid = self.next_customer_id
        self.next_customer_id += 1
        self.customers.append({
            'id': cid, 'name': name, 'email': email, 'registry_code': registry_code,
            'code': f"CLI-{cid}", 'status': status, 'created_at': iso(NOW - timedelta(days=400)),
        })
        return cid

    def bill(self, cid, items, paid=None, status='paid', due=None, subscription_id=None, method=None):
        """items: [(product_name, amount)]; paid: charge amount, None for a charge-less bill."""
        bid = self.next_bill_id
        self.next_bill_id += 1
        due = due or (NOW - timedelta(days=self.rng.randint(20, 300)))
        method = method or self.rng.choice(METHODS)
        charges = []
        if paid is not None:
            charges.append({
                'id': self.next_charge_id, 'amount': f"{paid:.2f}", 'status': 'paid',
                'paid_at': iso(due), 'created_at': iso(due - timedelta(days=1)),
                'payment_method': method,
            })
            self.next_charge_id += 1
        self.bills.append({
            'id': bid, 'amount': f"{sum(a for _, a in items):.2f}", 'status': status,
            'due_at': iso(due), 'created_at': iso(due - timedelta(days=5)),
            'customer': {'id': cid}, 'payment_method_code': method['code'],
            'subscription': {'id': subscription_id} if subscription_id else None,
            'bill_items': [{'amount': f"{a:.2f}", 'product': {'id': i + 1, 'name': n}} for i, (n, a) in enumerate(items)],
            'charges': charges,
        })
        return bid

    def subscription(self, cid, next_billing, status='active'):
        sid = self.next_sub_id
        self.next_sub_id += 1
        self.subscriptions.append({
            'id': sid, 'status': status, 'customer': {'id': cid}, 'plan': {'name': 'Mentoria Mensal'},
            'start_at': iso(NOW - timedelta(days=180)), 'next_billing_at': iso(next_billing),
            'payment_method': METHODS[0],
        })
        return sid


def _items(product, product_amount, service_amount):
    items = []
    if product_amount:
        items.append((f"Curso {product}", product_amount))
    if service_amount:
        items.append(("Mentoria em grupo", service_amount))
    return items

def generate_synthetic(seed=42):
    b = _Builder(seed)
    truth = {}

    # Regular customers: exact tax-id match, paid in full. Every fifth is recurring.
    for i in range(REGULAR_CUSTOMERS):
        name = f"{FIRST_NAMES[i % 15]} {LAST_NAMES[(i // 15 + i) % 15]}"
        email = f"{name.lower().replace(' ', '.')}@example.com"
        cpf = b.cpf()
        p = b.rng.choice([997.0, 1497.0, 1997.0])
        s = b.rng.choice([0.0, 500.0, 1000.0])
        product = b.rng.choice(PRODUCTS)
        b.sheet_row(cpf, name, email, p, s, b.sale_date(), product=product)
        cid = b.customer(name, email, cpf if i % 2 else format_tax_id(cpf))
        sid = None
        if i % 5 == 0:
            sid = b.subscription(cid, NOW + timedelta(days=10))
        b.bill(cid, _items(product, p, s), paid=p + s, subscription_id=sid)

    # B2B customer on a CNPJ.
    b.used_tax_ids.add(B2B_CNPJ)
    b.sheet_row(B2B_CNPJ, "Instituto Horizonte Ltda", "financeiro@horizonte.com.br", 4000.0, 2000.0, date(2024, 3, 10))
    cid = b.customer("INSTITUTO HORIZONTE LTDA", "financeiro@horizonte.com.br", format_tax_id(B2B_CNPJ))
    b.bill(cid, _items("Corporativo", 4000.0, 2000.0), paid=6000.0)
    truth['b2b'] = {'tax_id': B2B_CNPJ, 'status': 'FULLY_PAID', 'customer_type': 'B2B'}

    # Matched on email: billing customer has no registry code.
    cpf = b.cpf()
    b.sheet_row(cpf, "Renata Vasconcelos", "renata.vasc@gmail.com", 1497.0, 0.0, date(2024, 5, 2))
    cid = b.customer("Renata Vasconcelos", "Renata.Vasc@gmail.com", '')
    b.bill(cid, _items("Formação Completa", 1497.0, 0.0), paid=1497.0)
    truth['email_match'] = {'tax_id': cpf, 'match_type': 'EMAIL_EXACT', 'confidence': 0.8, 'status': 'FULLY_PAID'}

    # Matched on name: registry code shares the first six digits only.
    cpf = b.cpf()
    billing_cpf = cpf[:6] + ('00000' if cpf[6:] != '00000' else '11111')
    b.used_tax_ids.add(billing_cpf)
    b.sheet_row(cpf, "Maria Aparecida Souza", "maria.ap@hotmail.com", 997.0, 0.0, date(2024, 6, 18))
    cid = b.customer("Maria Aparecida de Souza", "contato@mariasouza.com.br", billing_cpf)
    b.bill(cid, _items("Imersão Presencial", 997.0, 0.0), paid=997.0)
    truth['fuzzy_match'] = {'tax_id': cpf, 'match_type': 'NAME_FUZZY', 'confidence': 0.84, 'status': 'FULLY_PAID'}

    # Sold but never registered with the billing provider.
    cpf = b.cpf()
    b.sheet_row(cpf, "Wagner Quintela", "wq@protonmail.com", 1997.0, 0.0, date(2024, 8, 9))
    truth['missing'] = {'tax_id': cpf, 'status': 'MISSING_VINDI'}

    # Paid more than sold.
    cpf = b.cpf()
    b.sheet_row(cpf, "Sofia Brandão", "sofia.b@gmail.com", 1000.0, 0.0, date(2024, 2, 14))
    cid = b.customer("Sofia Brandão", "sofia.b@gmail.com", cpf)
    b.bill(cid, [("Curso Formação Completa", 1000.0)], paid=1500.0)
    truth['overpaid'] = {'tax_id': cpf, 'status': 'OVERPAID', 'discrepancy': -500.0}

    # Half paid on a mixed bill: collected splits 75/25 by expected product/service.
    cpf = b.cpf()
    b.sheet_row(cpf, "Caio Teixeira", "caio.t@gmail.com", 1500.0, 500.0, date(2024, 9, 1))
    cid = b.customer("Caio Teixeira", "caio.t@gmail.com", cpf)
    b.bill(cid, _items("Programa Avançado", 1500.0, 500.0), paid=1000.0)
    truth['partial'] = {'tax_id': cpf, 'status': 'PARTIALLY_PAID', 'collected_product': 750.0, 'collected_service': 250.0}

    # Bill issued, nothing collected yet.
    cpf = b.cpf()
    b.sheet_row(cpf, "Lucas Pimentel", "lucas.p@gmail.com", 1997.0, 0.0, date(2024, 12, 20))
    cid = b.customer("Lucas Pimentel", "lucas.p@gmail.com", cpf)
    b.bill(cid, [("Curso Programa Avançado", 1997.0)], paid=None, status='pending', due=NOW + timedelta(days=5))
    truth['no_payment'] = {'tax_id': cpf, 'status': 'NO_PAYMENT', 'pending_total': 1997.0}

    # Two sales to the same person, both paid.
    cpf = b.cpf()
    b.sheet_row(cpf, "Beatriz Rocha", "bia.rocha@gmail.com", 100.0, 0.0, date(2024, 1, 15))
    b.sheet_row(cpf, "Beatriz Rocha", "bia.rocha@gmail.com", 200.0, 0.0, date(2024, 7, 15), renewal=True)
    cid = b.customer("Beatriz Rocha", "bia.rocha@gmail.com", cpf)
    b.bill(cid, [("Curso Formação Completa", 100.0)], paid=100.0)
    b.bill(cid, [("Curso Formação Completa", 200.0)], paid=200.0)
    truth['renewal'] = {'tax_id': cpf, 'status': 'FULLY_PAID', 'expected_total': 300.0, 'renewal_count': 1}

    # Service-only purchase.
    cpf = b.cpf()
    b.sheet_row(cpf, "Gustavo Lemos", "g.lemos@gmail.com", 0.0, 800.0, date(2024, 10, 3))
    cid = b.customer("Gustavo Lemos", "g.lemos@gmail.com", cpf)
    b.bill(cid, [("Mentoria individual", 800.0)], paid=800.0)
    truth['service_only'] = {'tax_id': cpf, 'status': 'FULLY_PAID', 'flag': 'SERVICE_ONLY'}

    # Active subscription whose next billing date passed 65 days ago.
    cpf = b.cpf()
    b.sheet_row(cpf, "Fernanda Queiroz", "fe.queiroz@gmail.com", 997.0, 0.0, date(2024, 4, 4))
    cid = b.customer("Fernanda Queiroz", "fe.queiroz@gmail.com", cpf)
    sid = b.subscription(cid, NOW - timedelta(days=65))
    b.bill(cid, [("Curso Formação Completa", 997.0)], paid=997.0, subscription_id=sid)
    truth['overdue_subscription'] = {'tax_id': cpf, 'missing_payments': 3, 'churn_risk': 'HIGH', 'payment_ok': False}

    # Archived at the provider with money still owed.
    cpf = b.cpf()
    b.sheet_row(cpf, "Rodrigo Amaral", "r.amaral@gmail.com", 3000.0, 0.0, date(2024, 2, 2))
    cid = b.customer("Rodrigo Amaral", "r.amaral@gmail.com", cpf, status='archived')
    b.bill(cid, [("Curso Imersão Presencial", 3000.0)], paid=1000.0)
    truth['cancelled'] = {'tax_id': cpf, 'status': 'PARTIALLY_PAID', 'flag': 'CANCELLED_NO_FOLLOWUP'}

    # Sheet row with an unusable tax id.
    b.sheet_rows.append({'CPF/CNPJ': '123.456', 'Nome': 'Registro Incompleto', 'Cliente': '',
                         'Valor Total': fmt_brl(500.0), 'Data Venda': '05/05/2024'})
    truth['invalid_tax_id'] = {'row_number': len(b.sheet_rows) + 1, 'reason_code': 'INVALID_TAX_ID'}

    # Billing customer with no sheet counterpart.
    orphan_id = b.customer("Cliente Sem Planilha", "orfao@example.com", b.cpf())
    truth['unmatched_billing'] = {'billing_customer_id': str(orphan_id)}

    # Bill the provider returned in a broken shape.
    b.bills.append({'id': 'broken-1', 'amount': '10.00', 'status': 'paid', 'customer': {'id': orphan_id},
                    'charges': 'unavailable'})
    truth['malformed_bill'] = {'record_id': 'broken-1', 'reason_code': 'MALFORMED_BILLING_RECORD'}

    return {
        'sheet_rows': b.sheet_rows, 'customers': b.customers, 'bills': b.bills,
        'subscriptions': b.subscriptions, 'now': NOW, 'truth': truth,
        'metadata': {
            'total_sheet_rows': len(b.sheet_rows), 'total_customers': len(b.customers),
            'total_bills': len(b.bills), 'total_subscriptions': len(b.subscriptions),
        },
    }
