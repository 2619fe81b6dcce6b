"""
Field normalization for sheet exports and billing-provider payloads.

Every function here is total: malformed input yields a neutral value
("" / 0.0 / None) instead of raising, so a single bad cell never aborts a
reconciliation run.

Examples:
    normalize_tax_id("304.268.648-59")      -> "30426864859"
    normalize_tax_id("29.188.305/0001-50")  -> "29188305000150"
    normalize_tax_id("123")                 -> ""
    parse_monetary_value("R$ 1.234,56")     -> 1234.56
    normalize_name("  João  da Silva-ME ")  -> "joao da silvame"
"""
import re
import math
import unicodedata
from datetime import date, datetime, time, timezone
from typing import List, Optional

CPF_LENGTH = 11
CNPJ_LENGTH = 14
TAX_ID_LENGTHS = (CPF_LENGTH, CNPJ_LENGTH)

MIN_NAME_TOKEN_LENGTH = 3

_CNPJ_WEIGHTS_1 = [5, 4, 3, 2, 9, 8, 7, 6, 5, 4, 3, 2]
_CNPJ_WEIGHTS_2 = [6, 5, 4, 3, 2, 9, 8, 7, 6, 5, 4, 3, 2]

_DMY_RE = re.compile(r'^(\d{1,2})/(\d{1,2})/(\d{2,4})(?:[\sT]+(\d{1,2}):(\d{2})(?::(\d{2}))?)?')
_YMD_RE = re.compile(r'^(\d{4})-(\d{1,2})-(\d{1,2})')
_LEADING_NUMBER_RE = re.compile(r'-?\d+(?:\.\d+)?')


def _text(raw):
    if raw is None:
        return ''
    return str(raw).strip()

# =============================================================================
# TAX IDS (CPF / CNPJ)
# =============================================================================
def tax_id_digits(raw):
    """Digits of a tax id with no length check. Diagnostic use only."""
    return re.sub(r'\D', '', _text(raw))

def normalize_tax_id(raw):
    """Digits-only tax id, or "" unless it has 11 (CPF) or 14 (CNPJ) digits."""
    digits = tax_id_digits(raw)
    return digits if len(digits) in TAX_ID_LENGTHS else ''

def tax_id_kind(raw):
    digits = tax_id_digits(raw)
    if len(digits) == CPF_LENGTH:
        return 'CPF'
    if len(digits) == CNPJ_LENGTH:
        return 'CNPJ'
    return 'INVALID'

def format_tax_id(raw):
    """000.000.000-00 for CPF, 00.000.000/0000-00 for CNPJ, input otherwise."""
    digits = tax_id_digits(raw)
    if len(digits) == CPF_LENGTH:
        return f"{digits[:3]}.{digits[3:6]}.{digits[6:9]}-{digits[9:]}"
    if len(digits) == CNPJ_LENGTH:
        return f"{digits[:2]}.{digits[2:5]}.{digits[5:8]}/{digits[8:12]}-{digits[12:]}"
    return _text(raw)

def _check_digit(total):
    remainder = total % 11
    return 0 if remainder < 2 else 11 - remainder

def _valid_cpf(digits):
    nums = [int(d) for d in digits]
    d1 = _check_digit(sum(n * (10 - i) for i, n in enumerate(nums[:9])))
    if nums[9] != d1:
        return False
    d2 = _check_digit(sum(n * (11 - i) for i, n in enumerate(nums[:10])))
    return nums[10] == d2

def _valid_cnpj(digits):
    nums = [int(d) for d in digits]
    d1 = _check_digit(sum(n * w for n, w in zip(nums[:12], _CNPJ_WEIGHTS_1)))
    if nums[12] != d1:
        return False
    d2 = _check_digit(sum(n * w for n, w in zip(nums[:13], _CNPJ_WEIGHTS_2)))
    return nums[13] == d2

def is_valid_tax_id(raw):
    """Check-digit validation. Ids made of one repeated digit are invalid."""
    digits = normalize_tax_id(raw)
    if not digits or len(set(digits)) == 1:
        return False
    if len(digits) == CPF_LENGTH:
        return _valid_cpf(digits)
    return _valid_cnpj(digits)

# =============================================================================
# TEXT
# =============================================================================
def strip_accents(text):
    decomposed = unicodedata.normalize('NFD', text)
    return ''.join(c for c in decomposed if not unicodedata.combining(c))

def normalize_email(raw):
    return _text(raw).lower()

def normalize_name(raw):
    """Lowercase, accent-free, punctuation-free, single-spaced."""
    text = strip_accents(_text(raw).lower())
    text = re.sub(r'[^\w\s]', '', text)
    return re.sub(r'\s+', ' ', text).strip()

def normalize_header_key(header):
    """Header key used for alias lookup: lowercase, no accents, spaces/hyphens as underscores."""
    text = strip_accents(_text(header).lower())
    return re.sub(r'[\s\-]+', '_', text)

def name_tokens(name) -> List[str]:
    return [w for w in normalize_name(name).split(' ') if len(w) >= MIN_NAME_TOKEN_LENGTH]

def _containment_ratio(tokens_a, tokens_b):
    matches = sum(1 for ta in tokens_a if any(ta in tb or tb in ta for tb in tokens_b))
    return matches / max(len(tokens_a), len(tokens_b))

def name_similarity(a, b, symmetric=True):
    """Word-overlap similarity in [0, 1].

    A token of `a` counts when it is a substring of, or contains, some token
    of `b`; the count is divided by the larger token list. The one-directional
    count depends on argument order, so by default the score is the mean of
    both directions.
    """
    tokens_a, tokens_b = name_tokens(a), name_tokens(b)
    if not tokens_a or not tokens_b:
        return 0.0
    forward = _containment_ratio(tokens_a, tokens_b)
    if not symmetric:
        return forward
    return (forward + _containment_ratio(tokens_b, tokens_a)) / 2

# =============================================================================
# NUMBERS AND DATES
# =============================================================================
def r2(v):
    return round(float(v), 2)

def parse_monetary_value(raw):
    """Parse "1.234,56", "1,234.56", "R$ 1234.56" and plain numbers; 0.0 on failure."""
    if isinstance(raw, bool) or raw is None:
        return 0.0
    if isinstance(raw, (int, float)):
        return float(raw) if math.isfinite(raw) else 0.0
    cleaned = re.sub(r'[^\d,.\-]', '', str(raw))
    if not cleaned:
        return 0.0
    if ',' in cleaned and cleaned.rfind(',') > cleaned.rfind('.'):
        cleaned = cleaned.replace('.', '').replace(',', '.')
    else:
        cleaned = cleaned.replace(',', '')
    try:
        value = float(cleaned)
    except ValueError:
        m = _LEADING_NUMBER_RE.search(cleaned)
        if not m:
            return 0.0
        value = float(m.group(0))
    return value if math.isfinite(value) else 0.0

def parse_int(raw, default=0):
    if isinstance(raw, bool) or raw is None:
        return default
    if isinstance(raw, int):
        return raw
    m = re.search(r'-?\d+', str(raw))
    return int(m.group(0)) if m else default

def _as_utc(dt):
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)

def parse_datetime(raw) -> Optional[datetime]:
    """Timezone-aware (UTC) datetime from DD/MM/YYYY, ISO strings, date or datetime.

    Naive inputs are taken as UTC. Returns None for anything unparseable.
    """
    if raw is None or isinstance(raw, bool):
        return None
    if isinstance(raw, datetime):
        return _as_utc(raw)
    if isinstance(raw, date):
        return datetime.combine(raw, time.min, tzinfo=timezone.utc)
    s = _text(raw)
    if not s:
        return None
    try:
        m = _DMY_RE.match(s)
        if m:
            day, month, year = int(m.group(1)), int(m.group(2)), int(m.group(3))
            if year < 100:
                year += 2000
            hour, minute, second = (int(g) if g else 0 for g in m.group(4, 5, 6))
            return datetime(year, month, day, hour, minute, second, tzinfo=timezone.utc)
        try:
            return _as_utc(datetime.fromisoformat(s))
        except ValueError:
            pass
        m = _YMD_RE.match(s)
        if m:
            return datetime(int(m.group(1)), int(m.group(2)), int(m.group(3)), tzinfo=timezone.utc)
    except (ValueError, OverflowError):
        return None
    return None

def parse_date(raw) -> Optional[str]:
    """ISO-8601 timestamp string for a sheet/billing date, or None."""
    dt = parse_datetime(raw)
    return dt.isoformat() if dt else None
