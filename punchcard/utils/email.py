"""
Outbox delivery via Flask-Mailman.

Drains pending NotificationTrigger rows and turns each into an email to
the holder (or, for dependents, the account owner). Retries with
exponential backoff per message; a row that keeps failing is marked
failed after NOTIFICATION_MAX_ATTEMPTS dispatch runs.
"""
import time
import uuid
import logging

from flask import current_app
from flask_mailman import EmailMessage

from punchcard.extensions import db
from punchcard.models.notification import NotificationTrigger, NotificationKind

logger = logging.getLogger(__name__)

# Retry configuration
MAX_RETRIES = 3
RETRY_BASE_DELAY = 2  # seconds (2, 4, 8 with exponential backoff)


def _studio_name():
    return current_app.config.get('STUDIO_NAME', 'Studio')


def render_message(trigger):
    """
    Subject and plain-text body for a trigger.

    Returns:
        tuple: (subject, body)
    """
    payload = trigger.payload or {}
    name = trigger.holder_name or 'there'
    card_name = payload.get('card_name') or 'class card'
    kind = trigger.kind

    if kind == NotificationKind.PURCHASE_CONFIRMED:
        classes = payload.get('total_classes')
        what = f'{classes} classes' if classes else 'unlimited classes'
        return (
            f'Your {card_name} is ready',
            f'Hi {name},\n\nThanks for your purchase! Your {card_name} ({what}) '
            f'is valid until {payload.get("expiration_date")}.\n',
        )
    if kind == NotificationKind.LOW_BALANCE:
        remaining = payload.get('classes_remaining')
        noun = 'class' if remaining == 1 else 'classes'
        return (
            f'Only {remaining} {noun} left on your {card_name}',
            f'Hi {name},\n\nYou have {remaining} {noun} left on your {card_name}. '
            f'Renew now so you never miss a class.\n',
        )
    if kind == NotificationKind.EXHAUSTED:
        return (
            f'Your {card_name} is used up',
            f'Hi {name},\n\nYou have used all classes on your {card_name}. '
            f'Purchase a new card to keep dancing.\n',
        )
    if kind == NotificationKind.EXPIRING_SOON:
        days = payload.get('days_left')
        when = 'tomorrow' if days == 1 else f'in {days} days'
        return (
            f'Your {card_name} expires {when}',
            f'Hi {name},\n\nYour {card_name} expires on {payload.get("expiration_date")}. '
            f'Use your remaining classes before then.\n',
        )
    if kind == NotificationKind.EXPIRED:
        forfeited = payload.get('classes_forfeited') or 0
        extra = f' {forfeited} unused class(es) were not used.' if forfeited else ''
        return (
            f'Your {card_name} has expired',
            f'Hi {name},\n\nYour {card_name} expired on {payload.get("expiration_date")}.{extra} '
            f'Renew to continue.\n',
        )
    if kind == NotificationKind.BIRTHDAY:
        return (
            f'Happy birthday, {payload.get("name") or name}!',
            f'Hi {name},\n\nHappy birthday from everyone at {_studio_name()}! '
            f'Your class today is on us.\n',
        )
    return (f'Update from {_studio_name()}', f'Hi {name},\n\nYou have a new notification.\n')


def build_message(trigger):
    """EmailMessage for a trigger, or None when there is no recipient."""
    recipient = trigger.recipient_email
    if not recipient:
        return None
    subject, body = render_message(trigger)
    return EmailMessage(
        subject=f'[{_studio_name()}] {subject}',
        body=body,
        from_email=current_app.config.get('MAIL_DEFAULT_SENDER'),
        to=[recipient],
    )


def _send_with_retry(msg, email_id, recipient):
    """
    Send a prepared Message with exponential backoff retry.

    Returns:
        tuple: (sent, last_error)
    """
    last_error = None
    for attempt in range(1, MAX_RETRIES + 1):
        try:
            msg.send()
            logger.info(f"[EMAIL:{email_id}] Sent to {recipient}"
                        + (f" (attempt {attempt})" if attempt > 1 else ""))
            return True, None
        except Exception as e:
            last_error = e
            if attempt < MAX_RETRIES:
                delay = RETRY_BASE_DELAY * (2 ** (attempt - 1))
                logger.warning(
                    f"[EMAIL:{email_id}] Attempt {attempt}/{MAX_RETRIES} failed "
                    f"for {recipient}: {e} - retrying in {delay}s"
                )
                time.sleep(delay)
            else:
                logger.error(
                    f"[EMAIL:{email_id}] Giving up after {MAX_RETRIES} attempts "
                    f"for {recipient}: {last_error}"
                )
    return False, last_error


def deliver(trigger):
    """
    Deliver one trigger and update its outbox state (no commit).

    Returns:
        bool: True when the message went out (or there was nobody to send it to)
    """
    max_attempts = current_app.config.get('NOTIFICATION_MAX_ATTEMPTS', 5)
    email_id = str(uuid.uuid4())[:8]

    try:
        msg = build_message(trigger)
    except Exception as e:
        logger.error(f"[EMAIL:{email_id}] Could not build message for trigger {trigger.id}: {e}")
        trigger.mark_attempt_failed(e, max_attempts)
        return False

    if msg is None:
        logger.info(f"[EMAIL:{email_id}] Trigger {trigger.id} has no recipient, skipping")
        trigger.mark_dispatched()
        return True

    user = trigger.dependent.primary_user if trigger.dependent_id else trigger.customer
    if user is not None and not user.receive_emails:
        logger.info(f"[EMAIL:{email_id}] Skipped - {msg.to[0]} opted out of emails")
        trigger.mark_dispatched()
        return True

    sent, error = _send_with_retry(msg, email_id, msg.to[0])
    if sent:
        trigger.mark_dispatched()
    else:
        trigger.mark_attempt_failed(error, max_attempts)
    return sent


def dispatch_pending(limit=None):
    """
    Drain pending outbox rows.

    Returns:
        dict: {'sent': n, 'failed': n}
    """
    limit = limit or current_app.config.get('NOTIFICATION_BATCH_SIZE', 50)
    stats = {'sent': 0, 'failed': 0}
    for trigger in NotificationTrigger.pending(limit=limit):
        if deliver(trigger):
            stats['sent'] += 1
        else:
            stats['failed'] += 1
        db.session.commit()
    if stats['sent'] or stats['failed']:
        logger.info(f"[EMAIL] Outbox dispatch: {stats['sent']} sent, {stats['failed']} failed")
    return stats

