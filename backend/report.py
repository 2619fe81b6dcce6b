"""
Exports for a reconciliation run: CSV tables and a PDF summary report.
Functions return text (CSV) or bytes (PDF); delivery is the caller's concern.
"""
import io
import csv
from datetime import datetime, timezone

from reportlab.lib import colors
from reportlab.lib.pagesizes import A4
from reportlab.lib.styles import getSampleStyleSheet, ParagraphStyle
from reportlab.platypus import SimpleDocTemplate, Paragraph, Spacer, Table, TableStyle

CUSTOMER_EXPORT_FIELDS = [
    'tax_id_formatted', 'name', 'email', 'customer_type', 'product', 'seller', 'source',
    'match_type', 'match_confidence', 'billing_customer_id', 'billing_status',
    'expected_total', 'collected_total', 'expected_product', 'collected_product',
    'expected_service', 'collected_service', 'pending_total', 'overdue_total',
    'discrepancy', 'discrepancy_percentage', 'status', 'is_recurring', 'payment_ok',
    'missing_payments', 'churn_risk', 'renewal_count', 'ltv', 'last_payment_date', 'flags',
]
PAYMENT_EXPORT_FIELDS = ['date', 'amount', 'status', 'type', 'payment_method', 'bill_id', 'charge_id', 'subscription_id']
EXCLUSION_EXPORT_FIELDS = ['record_type', 'record_id', 'reason_code', 'description', 'excluded_at']
MATCH_EXPORT_FIELDS = ['tax_id', 'billing_customer_id', 'billing_customer_name', 'billing_registry_code',
                       'match_type', 'confidence', 'source_row']

HEADER_BG = colors.Color(0.06, 0.09, 0.16)
REPORT_TITLE = "Sheet x Billing Reconciliation Report"


def _cell(v):
    if v is None:
        return ''
    if isinstance(v, list):
        return ';'.join(str(x) for x in v)
    if isinstance(v, bool):
        return 'Yes' if v else 'No'
    if isinstance(v, float):
        return round(v, 4)
    return v

def _write(fieldnames, rows):
    output = io.StringIO()
    writer = csv.DictWriter(output, fieldnames=fieldnames, extrasaction='ignore')
    writer.writeheader()
    for row in rows:
        writer.writerow({k: _cell(row.get(k)) for k in fieldnames})
    return output.getvalue()

def export_filename(kind, at=None, ext='csv'):
    """e.g. Reconciliation_Customers_2025-01-31.csv"""
    stamp = (at or datetime.now(timezone.utc)).strftime('%Y-%m-%d')
    return f"Reconciliation_{kind}_{stamp}.{ext}"

def export_customers_csv(customers, statuses=None):
    """Reconciled customers, optionally restricted to the given status values."""
    if statuses:
        wanted = {getattr(s, 'value', s) for s in statuses}
        customers = [c for c in customers if c.status.value in wanted]
    return _write(CUSTOMER_EXPORT_FIELDS, (c.model_dump(mode='json') for c in customers))

def export_payment_history_csv(customer):
    return _write(PAYMENT_EXPORT_FIELDS, (p.model_dump(mode='json') for p in customer.payment_history))

def export_exclusions_csv(exclusions):
    return _write(EXCLUSION_EXPORT_FIELDS, exclusions)

def export_matches_csv(matches):
    """Match audit: one line per matched tax id, with the evidence tier and confidence."""
    rows = []
    for tax_id in sorted(matches):
        m = matches[tax_id]
        rows.append({
            'tax_id': tax_id, 'billing_customer_id': m.billing_customer.id,
            'billing_customer_name': m.billing_customer.name,
            'billing_registry_code': m.billing_customer.registry_code,
            'match_type': m.match_type.value, 'confidence': m.confidence, 'source_row': m.source_row,
        })
    return _write(MATCH_EXPORT_FIELDS, rows)

def _money(v):
    return f"R$ {v:,.2f}"

def _styled_table(data, col_widths):
    t = Table(data, colWidths=col_widths)
    t.setStyle(TableStyle([
        ('BACKGROUND', (0, 0), (-1, 0), HEADER_BG),
        ('TEXTCOLOR', (0, 0), (-1, 0), colors.white),
        ('GRID', (0, 0), (-1, -1), 0.5, colors.grey),
        ('FONTSIZE', (0, 0), (-1, -1), 9),
    ]))
    return t

def build_pdf_report(result, generated_at=None, top_n=15):
    """PDF summary of a ReconciliationResult: totals, status buckets and the largest discrepancies."""
    summary = result.summary
    generated_at = generated_at or summary.last_update or datetime.now(timezone.utc)

    buf = io.BytesIO()
    doc = SimpleDocTemplate(buf, pagesize=A4, title=REPORT_TITLE)
    styles = getSampleStyleSheet()
    title_style = ParagraphStyle('ReportTitle', parent=styles['Title'], fontSize=20, spaceAfter=20)
    elements = []

    elements.append(Paragraph(REPORT_TITLE, title_style))
    elements.append(Paragraph(f"Generated: {generated_at.strftime('%Y-%m-%d %H:%M')} UTC", styles['Normal']))
    elements.append(Paragraph(f"Customers: {summary.total_customers} "
                              f"({summary.b2c_customers} B2C, {summary.b2b_customers} B2B, "
                              f"{summary.recurring_customers} recurring)", styles['Normal']))
    elements.append(Spacer(1, 15))

    elements.append(Paragraph("<b>Totals</b>", styles['Heading2']))
    totals = [['', 'Expected', 'Collected'],
              ['Total', _money(summary.total_expected), _money(summary.total_collected)],
              ['Product', _money(summary.total_product_expected), _money(summary.total_product_collected)],
              ['Service', _money(summary.total_service_expected), _money(summary.total_service_collected)]]
    elements.append(_styled_table(totals, [130, 150, 150]))
    elements.append(Spacer(1, 8))
    elements.append(Paragraph(f"Pending: {_money(summary.total_pending)} | Overdue: {_money(summary.total_overdue)} | "
                              f"Absolute discrepancy: {_money(summary.total_discrepancy)}", styles['Normal']))
    elements.append(Spacer(1, 15))

    elements.append(Paragraph("<b>Status</b>", styles['Heading2']))
    status_rows = [['Status', 'Customers']] + [[k, str(v)] for k, v in summary.status_counts.items()]
    elements.append(_styled_table(status_rows, [230, 100]))
    elements.append(Spacer(1, 15))

    elements.append(Paragraph(f"<b>Largest discrepancies</b> ({summary.high_discrepancy_count} above threshold)", styles['Heading2']))
    top = sorted(result.customers, key=lambda c: abs(c.discrepancy), reverse=True)[:top_n]
    rows = [['CPF/CNPJ', 'Name', 'Expected', 'Collected', 'Status']]
    for c in top:
        rows.append([c.tax_id_formatted, c.name[:28], _money(c.expected_total), _money(c.collected_total), c.status.value])
    elements.append(_styled_table(rows, [105, 145, 85, 85, 95]))
    elements.append(Spacer(1, 20))

    if result.exclusions:
        elements.append(Paragraph(f"{len(result.exclusions)} record(s) were excluded from this run. See the exclusions export.", styles['Italic']))
    elements.append(Paragraph("All calculations are deterministic and rule-based. No AI or machine learning is used.", styles['Italic']))

    doc.build(elements)
    return buf.getvalue()
