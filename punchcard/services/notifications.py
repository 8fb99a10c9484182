"""
Notification outbox writer.

Services call emit() inside their own transaction. The trigger row is
written in a SAVEPOINT so a failing insert only loses the notification,
never the card or check-in being recorded alongside it. Delivery happens
later in punchcard.utils.email.dispatch_pending().
"""
import logging
from datetime import date, datetime
from decimal import Decimal

from sqlalchemy.exc import SQLAlchemyError

from punchcard.extensions import db
from punchcard.models.notification import NotificationTrigger, NotificationKind

logger = logging.getLogger(__name__)


def _jsonable(value):
    """Coerce dates and decimals so the payload fits a JSON column."""
    if isinstance(value, (date, datetime)):
        return value.isoformat()
    if isinstance(value, Decimal):
        return str(value)
    if isinstance(value, dict):
        return {k: _jsonable(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_jsonable(v) for v in value]
    return value


def build_trigger(kind, holder, payload):
    return NotificationTrigger(
        kind=NotificationKind(kind),
        payload=_jsonable(payload or {}),
        **holder.column_values(),
    )


def emit(kind, holder, payload=None):
    """
    Append a notification trigger to the outbox.

    Args:
        kind: NotificationKind (or its value)
        holder: Holder the notification is about
        payload: data the delivery worker needs to render the message

    Returns:
        NotificationTrigger or None if the outbox write failed (logged)
    """
    try:
        with db.session.begin_nested():
            trigger = build_trigger(kind, holder, payload)
            db.session.add(trigger)
    except (SQLAlchemyError, ValueError) as e:
        logger.error('[OUTBOX] Failed to queue %s for %s: %s', kind, holder, e)
        return None
    logger.debug('[OUTBOX] Queued %s for %s', trigger.kind.value, holder)
    return trigger


def purchase_confirmed(card):
    return emit(NotificationKind.PURCHASE_CONFIRMED, card.holder, {
        'card_id': card.id,
        'card_name': card.card_name,
        'total_classes': card.total_classes,
        'amount_paid': card.amount_paid,
        'purchase_date': card.purchase_date,
        'expiration_date': card.expiration_date,
        'payment_method': card.payment_method.value,
    })


def low_balance(card):
    return emit(NotificationKind.LOW_BALANCE, card.holder, {
        'card_id': card.id,
        'card_name': card.card_name,
        'classes_remaining': card.classes_remaining,
        'expiration_date': card.expiration_date,
    })


def exhausted(card):
    return emit(NotificationKind.EXHAUSTED, card.holder, {
        'card_id': card.id,
        'card_name': card.card_name,
        'total_classes': card.total_classes,
    })


def expiring_soon(card, days_left):
    return emit(NotificationKind.EXPIRING_SOON, card.holder, {
        'card_id': card.id,
        'card_name': card.card_name,
        'days_left': days_left,
        'classes_remaining': None if card.is_subscription else card.classes_remaining,
        'expiration_date': card.expiration_date,
    })


def expired(card):
    return emit(NotificationKind.EXPIRED, card.holder, {
        'card_id': card.id,
        'card_name': card.card_name,
        'classes_forfeited': 0 if card.is_subscription else card.classes_remaining,
        'expiration_date': card.expiration_date,
    })


def birthday(holder, name, birthday_pass=None):
    return emit(NotificationKind.BIRTHDAY, holder, {
        'name': name,
        'birthday_pass_id': birthday_pass.id if birthday_pass else None,
        'valid_date': birthday_pass.valid_date if birthday_pass else None,
    })
