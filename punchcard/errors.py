"""
Error taxonomy for the card engine.

Every rejection the ledger, the check-in processor or the birthday pass
manager can produce is a CardEngineError subclass carrying a stable
machine code, an HTTP status and optional details. The API layer turns
them into the standard error envelope; the scheduler collects them.
"""


class CardEngineError(Exception):
    """Base class for typed engine errors."""

    code = 'engine_error'
    status = 400
    default_message = 'Card engine error.'

    def __init__(self, message=None, details=None):
        self.message = message or self.default_message
        self.details = details or {}
        super().__init__(self.message)

    def to_dict(self):
        body = {'code': self.code, 'message': self.message}
        if self.details:
            body['details'] = self.details
        return body


# ── Validation ──────────────────────────────────────────────

class ValidationError(CardEngineError):
    """Malformed input, rejected before any persistence."""
    code = 'validation_error'
    status = 422
    default_message = 'Invalid request.'


class InvalidIdentifier(ValidationError):
    """Holder could not be identified from the request."""
    code = 'invalid_identifier'
    status = 400
    default_message = 'Could not identify the customer from the request.'


# ── Not found ───────────────────────────────────────────────

class NotFoundError(CardEngineError):
    code = 'not_found'
    status = 404
    default_message = 'Resource not found.'


class CardTypeNotFound(NotFoundError):
    code = 'card_type_not_found'
    default_message = 'Card type not found.'


class CardNotFound(NotFoundError):
    code = 'card_not_found'
    default_message = 'Card not found.'


class HolderNotFound(NotFoundError):
    code = 'holder_not_found'
    default_message = 'Customer not found.'


class BirthdayPassNotFound(NotFoundError):
    code = 'birthday_pass_not_found'
    default_message = 'Birthday pass not found.'


# ── Conflicts ───────────────────────────────────────────────

class ConflictError(CardEngineError):
    code = 'conflict'
    status = 409
    default_message = 'Conflicting state.'


class DuplicateActiveCard(ConflictError):
    """Holder already owns a usable card and stacking was not requested."""
    code = 'duplicate_active_card'
    default_message = 'Customer already has an active card.'


class PassAlreadyUsed(ConflictError):
    code = 'pass_already_used'
    default_message = 'Birthday pass has already been used.'


class PaymentReferenceConflict(ConflictError):
    """Payment reference already issued a card to another holder or card type."""
    code = 'payment_reference_conflict'
    default_message = 'This payment reference was already used for a different card.'


# ── Exhaustion (expected, user-facing) ──────────────────────

class ExhaustionError(CardEngineError):
    code = 'exhausted'
    status = 409
    default_message = 'Nothing left to use.'


class NoClassesRemaining(ExhaustionError):
    code = 'no_classes_remaining'
    default_message = 'No classes remaining on this card.'


class NoActiveCard(ExhaustionError):
    """
    Holder has no usable card today.

    reason tells the UI which prompt to show:
        no_card   - never bought one (buy a card)
        exhausted - all punches used (buy another)
        expired   - card ran out of time (renew)
    """
    code = 'no_active_card'
    default_message = 'No active card found.'

    REASON_MESSAGES = {
        'no_card': 'No card found. Please purchase a class card.',
        'exhausted': 'All classes on your card have been used. Please purchase a new card.',
        'expired': 'Your card has expired. Please renew to continue.',
    }

    def __init__(self, reason='no_card', details=None):
        self.reason = reason
        details = dict(details or {})
        details['reason'] = reason
        super().__init__(self.REASON_MESSAGES.get(reason, self.default_message), details)


class NoBirthdayPass(ExhaustionError):
    code = 'no_birthday_pass'
    default_message = 'No valid birthday pass found for today.'


class NotBirthdayToday(ExhaustionError):
    code = 'not_birthday_today'
    status = 422
    default_message = "Today is not this customer's birthday."


# ── Dependencies ────────────────────────────────────────────

class DependencyError(CardEngineError):
    """Persistence or delivery collaborator failed."""
    code = 'dependency_error'
    status = 503
    default_message = 'A backing service is unavailable.'
