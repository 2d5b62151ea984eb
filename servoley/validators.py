"""
Input validation helpers.
Password strength rules, contact formats, money amounts, pagination and dates.
"""

import re
from datetime import datetime, timezone
from decimal import ROUND_HALF_UP, Decimal
from typing import List, Tuple

from .errors import ValidationError

CENT = Decimal('0.01')
MAX_DIGITS = 12


PASSWORD_REQUIREMENTS = {
    'min_length': 8,
    'require_uppercase': True,
    'require_lowercase': True,
    'require_digit': True,
    'require_special': True,
    'special_characters': r'!@#$%^&*()_+\-=\[\]{};\':"\\|,.<>\/?`~'
}

# Common weak passwords
COMMON_PASSWORDS = {
    'password', 'password1', 'password123', '12345678', 'qwerty123',
    'letmein', 'welcome', 'admin123', 'iloveyou', 'sunshine',
    'princess', 'football', 'monkey123', 'shadow', 'master',
    'dragon', 'trustno1', 'whatever', 'qazwsx', 'michael'
}

EMAIL_RE = re.compile(r'^[^@\s]+@[^@\s]+\.[A-Za-z]{2,}$')
INDIAN_PHONE_RE = re.compile(r'^(?:\+91)?[6-9]\d{9}$')
OTP_RE = re.compile(r'^\d{6}$')


def validate_password_strength(password: str) -> Tuple[bool, List[str]]:
    """
    Validate password strength.

    Requirements:
    - Minimum 8 characters
    - At least 1 uppercase letter (A-Z)
    - At least 1 lowercase letter (a-z)
    - At least 1 digit (0-9)
    - At least 1 special character (!@#$%^&*...)
    - Not a commonly used password

    Returns:
        Tuple of (is_valid, list_of_errors)
    """
    errors = []
    password = password or ''

    if len(password) < PASSWORD_REQUIREMENTS['min_length']:
        errors.append(f"Password must be at least {PASSWORD_REQUIREMENTS['min_length']} characters long.")

    if PASSWORD_REQUIREMENTS['require_uppercase'] and not re.search(r'[A-Z]', password):
        errors.append("Password must contain at least 1 uppercase letter (A-Z).")

    if PASSWORD_REQUIREMENTS['require_lowercase'] and not re.search(r'[a-z]', password):
        errors.append("Password must contain at least 1 lowercase letter (a-z).")

    if PASSWORD_REQUIREMENTS['require_digit'] and not re.search(r'\d', password):
        errors.append("Password must contain at least 1 number (0-9).")

    if PASSWORD_REQUIREMENTS['require_special']:
        special_pattern = f"[{re.escape(PASSWORD_REQUIREMENTS['special_characters'])}]"
        if not re.search(special_pattern, password):
            errors.append("Password must contain at least 1 special character (!@#$%^&*...).")

    if password.lower() in COMMON_PASSWORDS:
        errors.append("This password is too common. Please choose a stronger password.")

    return len(errors) == 0, errors


def is_valid_email(email) -> bool:
    return bool(email) and bool(EMAIL_RE.match(email))


def normalize_phone(phone):
    """'+91 98765-43210' -> '9876543210'; None when it is not an Indian mobile number."""
    if not phone:
        return None
    compact = re.sub(r'[\s-]', '', str(phone))
    if not INDIAN_PHONE_RE.match(compact):
        return None
    return compact[-10:]


def is_valid_otp(code) -> bool:
    return bool(code) and bool(OTP_RE.match(str(code)))


def parse_amount(value, field='amount', minimum=None, maximum=None, exclusive_minimum=None):
    """Parse a money amount into a Decimal rounded to paise. Raises ValidationError."""
    if isinstance(value, bool) or value is None or value == '':
        raise ValidationError([f'{field} is required and must be a number'])
    if isinstance(value, float):
        value = repr(value)
    try:
        amount = Decimal(str(value).strip())
    except (ArithmeticError, TypeError, ValueError):
        raise ValidationError([f'{field} must be a number'])
    if not amount.is_finite():
        raise ValidationError([f'{field} must be a finite number'])
    if amount.adjusted() >= MAX_DIGITS:
        raise ValidationError([f'{field} is too large'])

    if exclusive_minimum is not None and amount <= exclusive_minimum:
        raise ValidationError([f'{field} must be greater than {exclusive_minimum:g}'])
    if minimum is not None and amount < minimum:
        raise ValidationError([f'{field} must be at least {minimum:g}'])
    if maximum is not None and amount > maximum:
        raise ValidationError([f'{field} must not exceed {maximum:g}'])
    return amount.quantize(CENT, rounding=ROUND_HALF_UP)


def parse_int(value, field, minimum=None, maximum=None, default=None):
    if value is None or value == '':
        if default is not None:
            return default
        raise ValidationError([f'{field} is required'])
    if isinstance(value, bool):
        raise ValidationError([f'{field} must be an integer'])
    try:
        number = int(str(value).strip())
    except (TypeError, ValueError):
        raise ValidationError([f'{field} must be an integer'])
    if minimum is not None and number < minimum:
        raise ValidationError([f'{field} must be at least {minimum}'])
    if maximum is not None and number > maximum:
        raise ValidationError([f'{field} must be at most {maximum}'])
    return number


def get_pagination(args, default_limit=10, max_limit=100):
    """Read page/limit query args. Returns (page, limit)."""
    page = parse_int(args.get('page'), 'page', minimum=1, default=1)
    limit = parse_int(args.get('limit'), 'limit', minimum=1, maximum=max_limit, default=default_limit)
    return page, limit


def pagination_meta(pagination):
    """Wire shape of a Flask-SQLAlchemy Pagination."""
    return {
        'page': pagination.page,
        'limit': pagination.per_page,
        'total': pagination.total,
        'pages': pagination.pages,
    }


def parse_datetime(value, field='date'):
    """
    Parse an ISO-8601 date or datetime into naive UTC.
    Raises ValidationError on anything unparseable.
    """
    if not value or not isinstance(value, str):
        raise ValidationError([f'{field} must be a valid ISO-8601 date'])
    text = value.strip()
    if text.endswith('Z') or text.endswith('z'):
        text = text[:-1] + '+00:00'
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError:
        raise ValidationError([f'{field} must be a valid ISO-8601 date'])
    if parsed.tzinfo is not None:
        parsed = parsed.astimezone(timezone.utc).replace(tzinfo=None)
    return parsed


def parse_date_range(args):
    """Optional startDate/endDate query window."""
    start = parse_datetime(args['startDate'], 'startDate') if args.get('startDate') else None
    end = parse_datetime(args['endDate'], 'endDate') if args.get('endDate') else None
    if start and end and start > end:
        raise ValidationError(['startDate must be before endDate'])
    return start, end


def parse_bool(value):
    if isinstance(value, bool):
        return value
    if value is None:
        return None
    text = str(value).strip().lower()
    if text in ('true', '1', 'yes'):
        return True
    if text in ('false', '0', 'no'):
        return False
    return None


PAN_RE = re.compile(r'^[A-Z]{5}[0-9]{4}[A-Z]$')
AADHAAR_RE = re.compile(r'^\d{12}$')
BANK_ACCOUNT_RE = re.compile(r'^\d{9,18}$')
GST_RE = re.compile(r'^[0-9A-Z]{15}$')


def validate_provider_identity(data, errors):
    """Check the optional identity fields of a provider payload, appending to errors."""
    pan = data.get('panNumber')
    if pan and not PAN_RE.match(str(pan).upper()):
        errors.append('Invalid PAN number format.')
    aadhaar = data.get('aadhaarNumber')
    if aadhaar and not AADHAAR_RE.match(re.sub(r'\s', '', str(aadhaar))):
        errors.append('Aadhaar number must be 12 digits.')
    bank = data.get('bankAccount')
    if bank and not BANK_ACCOUNT_RE.match(str(bank)):
        errors.append('Bank account number must be 9 to 18 digits.')
    gst = data.get('gstNumber')
    if gst and not GST_RE.match(str(gst).upper()):
        errors.append('Invalid GST number format.')
    experience = data.get('experience')
    if experience not in (None, ''):
        if isinstance(experience, bool) or not str(experience).isdigit() or int(experience) > 80:
            errors.append('Experience must be a whole number of years.')
