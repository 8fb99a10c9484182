"""
Scannable member codes.

Every customer and dependent carries two identifiers the front desk can
use to find them:
    qr_code        ELDC_USER_<id>_<ts36>_<rand> / ELDC_FAMILY_MEMBER_<id>_<ts36>_<rand>
    check_in_code  4 characters typed by hand, no look-alike glyphs
"""
import secrets
import time
import uuid

from punchcard.errors import InvalidIdentifier
from punchcard.models.holder import Holder, HolderKind

CODE_PREFIX = 'ELDC'
CHECK_IN_CODE_CHARS = 'ABCDEFGHJKMNPQRSTUVWXYZ23456789'  # no O, 0, I, 1, L
CHECK_IN_CODE_LENGTH = 4
MAX_CODE_ATTEMPTS = 100

_TYPE_SEGMENTS = {
    HolderKind.CUSTOMER: 'USER',
    HolderKind.DEPENDENT: 'FAMILY_MEMBER',
}


def _base36(number):
    digits = '0123456789abcdefghijklmnopqrstuvwxyz'
    if number == 0:
        return '0'
    out = []
    while number:
        number, rem = divmod(number, 36)
        out.append(digits[rem])
    return ''.join(reversed(out))


def encode_scannable_code(holder):
    """Build the QR payload for a holder."""
    timestamp = _base36(int(time.time() * 1000))
    suffix = uuid.uuid4().hex[:8]
    return f'{CODE_PREFIX}_{_TYPE_SEGMENTS[holder.kind]}_{holder.id}_{timestamp}_{suffix}'


def decode_scannable_code(code):
    """
    Parse a QR payload into a Holder.

    Pure function: never touches the database.

    Raises:
        InvalidIdentifier: on any malformed input
    """
    if not code or not isinstance(code, str) or not code.startswith(f'{CODE_PREFIX}_'):
        raise InvalidIdentifier('Invalid QR code.', details={'code': code})

    parts = code.strip().split('_')
    if len(parts) < 4:
        raise InvalidIdentifier('Invalid QR code.', details={'code': code})

    if parts[1] == 'USER':
        kind, raw_id = HolderKind.CUSTOMER, parts[2]
    elif parts[1] == 'FAMILY' and parts[2] == 'MEMBER':
        kind, raw_id = HolderKind.DEPENDENT, parts[3]
    else:
        raise InvalidIdentifier('Invalid QR code.', details={'code': code})

    if not raw_id.isdigit():
        raise InvalidIdentifier('Invalid QR code.', details={'code': code})
    return Holder(kind, int(raw_id))


def generate_check_in_code():
    return ''.join(secrets.choice(CHECK_IN_CODE_CHARS) for _ in range(CHECK_IN_CODE_LENGTH))


def is_check_in_code(value):
    """True if `value` looks like a hand-typed 4-character code."""
    if not value or len(value) != CHECK_IN_CODE_LENGTH:
        return False
    return all(ch in CHECK_IN_CODE_CHARS for ch in value.upper())


def generate_unique_check_in_code():
    """Check-in code unused by any customer or dependent."""
    from punchcard.models.user import User, Dependent

    for _ in range(MAX_CODE_ATTEMPTS):
        code = generate_check_in_code()
        taken = (
            User.query.filter_by(check_in_code=code).first()
            or Dependent.query.filter_by(check_in_code=code).first()
        )
        if not taken:
            return code
    raise RuntimeError('Failed to generate unique check-in code after max attempts')


def lookup_check_in_code(code):
    """
    Resolve a 4-character check-in code to a Holder.

    Raises:
        InvalidIdentifier: unknown code
    """
    from punchcard.models.user import User, Dependent

    normalized = (code or '').strip().upper()
    user = User.query.filter_by(check_in_code=normalized).first()
    if user is not None:
        return user.holder
    dependent = Dependent.query.filter_by(check_in_code=normalized).first()
    if dependent is not None:
        return dependent.holder
    raise InvalidIdentifier('Unknown check-in code.', details={'code': normalized})


def resolve_code(code):
    """Holder for either a QR payload or a 4-character check-in code."""
    if code and is_check_in_code(code.strip()):
        return lookup_check_in_code(code)
    return decode_scannable_code(code)


def assign_codes(record):
    """Give a freshly flushed User/Dependent its QR and check-in codes if missing."""
    if not record.qr_code:
        record.qr_code = encode_scannable_code(record.holder)
    if not record.check_in_code:
        record.check_in_code = generate_unique_check_in_code()
    return record
