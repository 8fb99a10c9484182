"""
Card ledger service.

Owns punch cards and subscriptions: picks the one usable card for a
holder, issues new cards, deducts classes and moves cards through
active -> exhausted / expired. Every state change that can race with a
concurrent check-in or the scheduler is a single conditional UPDATE.
"""
import logging
from datetime import datetime, timedelta
from decimal import Decimal, InvalidOperation
from typing import List, Optional

from sqlalchemy import case, literal, update
from sqlalchemy.exc import IntegrityError

from punchcard.errors import (
    CardNotFound, DuplicateActiveCard, HolderNotFound, NoClassesRemaining, PaymentReferenceConflict,
    ValidationError,
)
from punchcard.extensions import db
from punchcard.models.card import Card, CardType, CardCategory, CardStatus, PaymentMethod
from punchcard.models.holder import Holder
from punchcard.services import catalog, notifications
from punchcard.utils.timezone import studio_today, add_months

logger = logging.getLogger(__name__)

LOW_BALANCE_THRESHOLD = 2


def _parse_amount(amount_paid) -> Decimal:
    try:
        amount = Decimal(str(amount_paid))
    except (InvalidOperation, TypeError, ValueError):
        raise ValidationError('amount_paid must be a number.', details={'amount_paid': amount_paid})
    if amount < 0:
        raise ValidationError('amount_paid cannot be negative.', details={'amount_paid': str(amount)})
    return amount.quantize(Decimal('0.01'))


def _parse_payment_method(payment_method) -> PaymentMethod:
    try:
        return PaymentMethod(payment_method)
    except ValueError:
        raise ValidationError(
            f'Invalid payment method: {payment_method}',
            details={'allowed': [m.value for m in PaymentMethod]},
        )


def require_holder(holder: Holder):
    """Load the holder's row or raise HolderNotFound."""
    record = holder.load()
    if record is None:
        raise HolderNotFound(details={'holder': holder.to_dict()})
    return record


def _card_for_payment(external_ref, holder: Holder, card_type_id) -> Optional[Card]:
    """Card already issued for a payment reference, if any.

    A reference may only ever issue one card; seeing it again for another
    holder or card type raises PaymentReferenceConflict.
    """
    card = Card.query.filter_by(external_payment_reference=external_ref).first()
    if card is None:
        return None
    if card.holder != holder or card.card_type_id != card_type_id:
        raise PaymentReferenceConflict(details={
            'external_ref': external_ref,
            'card_id': card.id,
        })
    return card


class CardLedger:
    """Card lifecycle operations."""

    # ── Resolution ──────────────────────────────────────────

    @staticmethod
    def holder_cards(holder: Holder) -> List[Card]:
        """All cards of a holder, newest first."""
        return (
            Card.query
            .filter(holder.filter_for(Card))
            .order_by(Card.purchase_date.desc(), Card.id.desc())
            .all()
        )

    @staticmethod
    def resolve_active_card(holder: Holder, today=None) -> Optional[Card]:
        """
        The single card a check-in should use today.

        Punch cards with classes left come first (soonest expiration,
        then lowest id) so manually issued passes are used up before a
        recurring subscription. Cards past their expiration date are
        ignored even if the nightly sweep has not marked them expired yet.

        Returns:
            Card or None
        """
        today = today or studio_today()
        candidates = (
            Card.query
            .filter(
                holder.filter_for(Card),
                Card.status == CardStatus.ACTIVE,
                Card.expiration_date >= today,
            )
            .order_by(Card.expiration_date, Card.id)
            .all()
        )

        punch_cards = [c for c in candidates if not c.is_subscription and c.classes_remaining > 0]
        if punch_cards:
            return punch_cards[0]

        subscriptions = [c for c in candidates if c.is_subscription]
        if subscriptions:
            return subscriptions[0]
        return None

    @staticmethod
    def explain_no_active_card(holder: Holder, today=None) -> str:
        """
        Why resolve_active_card() found nothing: 'no_card', 'exhausted' or 'expired'.

        Looks at the holder's most recent card.
        """
        today = today or studio_today()
        latest = (
            Card.query
            .filter(holder.filter_for(Card))
            .order_by(Card.expiration_date.desc(), Card.id.desc())
            .first()
        )
        if latest is None:
            return 'no_card'
        if latest.status == CardStatus.EXPIRED or latest.expiration_date < today:
            return 'expired'
        return 'exhausted'

    # ── Issuing ─────────────────────────────────────────────

    @staticmethod
    def create_card(holder: Holder, card_type_id, payment_method, amount_paid,
                    external_ref=None, allow_stacking=False, created_by_id=None,
                    purchase_date=None) -> Card:
        """
        Issue a card after a confirmed payment or an admin sale.

        Args:
            holder: customer or dependent receiving the card
            card_type_id: catalog entry
            payment_method: 'online', 'cash' or 'admin_created'
            amount_paid: amount actually charged
            external_ref: payment gateway reference; a repeated reference
                returns the card already issued for it (same holder and
                card type) or raises PaymentReferenceConflict
            allow_stacking: issue even if the holder already has a usable card
            created_by_id: staff member recording the sale

        Returns:
            The new (or previously issued) Card

        Raises:
            CardTypeNotFound, HolderNotFound, ValidationError, DuplicateActiveCard,
            PaymentReferenceConflict
        """
        card_type = catalog.get_type(card_type_id)
        if not card_type.is_active:
            raise ValidationError('This card type is no longer sold.', details={'card_type_id': card_type.id})
        require_holder(holder)
        method = _parse_payment_method(payment_method)
        amount = _parse_amount(amount_paid)

        if external_ref:
            existing = _card_for_payment(external_ref, holder, card_type.id)
            if existing is not None:
                logger.info('Payment %s already applied to card %s', external_ref, existing.id)
                return existing

        if not allow_stacking:
            current = CardLedger.resolve_active_card(holder)
            if current is not None:
                raise DuplicateActiveCard(details={
                    'card_id': current.id,
                    'card_name': current.card_name,
                    'expiration_date': current.expiration_date.isoformat(),
                })

        purchased_on = purchase_date or studio_today()
        class_count = 0 if card_type.is_subscription else card_type.class_count
        card = Card(
            card_type_id=card_type.id,
            total_classes=class_count,
            classes_remaining=class_count,
            purchase_date=purchased_on,
            expiration_date=add_months(purchased_on, card_type.validity_months),
            amount_paid=amount,
            status=CardStatus.ACTIVE,
            payment_method=method,
            external_payment_reference=external_ref,
            created_by_id=created_by_id,
            **holder.column_values(),
        )
        try:
            with db.session.begin_nested():
                db.session.add(card)
                db.session.flush()
        except IntegrityError:
            if not external_ref:
                raise
            # Same payment confirmed twice at once; the other request won.
            existing = _card_for_payment(external_ref, holder, card_type.id)
            if existing is None:
                raise
            logger.info('Payment %s already applied to card %s', external_ref, existing.id)
            return existing

        notifications.purchase_confirmed(card)
        db.session.commit()

        logger.info('Card %s (%s) issued to %s, expires %s',
                    card.id, card_type.name, holder, card.expiration_date)
        return card

    @staticmethod
    def admin_create_pass(holder: Holder, classes, expiration_date, amount_paid, admin_id) -> Card:
        """
        Admin-issued pass with a hand-picked class count and expiration.

        Always stacks on top of existing cards (cash sales, comps).
        """
        try:
            classes = int(classes)
        except (TypeError, ValueError):
            raise ValidationError('classes must be an integer.', details={'classes': classes})
        if classes <= 0:
            raise ValidationError('classes must be at least 1.', details={'classes': classes})
        today = studio_today()
        if expiration_date is None or expiration_date < today:
            raise ValidationError(
                'expiration_date must be today or later.',
                details={'expiration_date': expiration_date.isoformat() if expiration_date else None},
            )
        require_holder(holder)
        amount = _parse_amount(amount_paid)
        card_type = catalog.resolve_admin_pass_type()

        card = Card(
            card_type_id=card_type.id,
            total_classes=classes,
            classes_remaining=classes,
            purchase_date=today,
            expiration_date=expiration_date,
            amount_paid=amount,
            status=CardStatus.ACTIVE,
            payment_method=PaymentMethod.ADMIN_CREATED,
            created_by_id=admin_id,
            **holder.column_values(),
        )
        db.session.add(card)
        db.session.flush()

        notifications.purchase_confirmed(card)
        db.session.commit()

        logger.info('Admin %s created %d-class pass %s for %s', admin_id, classes, card.id, holder)
        return card

    # ── Mutation ────────────────────────────────────────────

    @staticmethod
    def deduct_class(card_id) -> Card:
        """
        Use one class of a punch card.

        Single conditional UPDATE: only matches while classes_remaining > 0
        and status is active, and flips status to exhausted in the same
        statement when the last class is used. The caller owns the
        transaction (commit or rollback).

        Returns:
            Card reloaded with the post-deduction balance

        Raises:
            CardNotFound, ValidationError (subscription card), NoClassesRemaining
        """
        status_type = Card.__table__.c.status.type
        stmt = (
            update(Card)
            .where(
                Card.id == card_id,
                Card.classes_remaining > 0,
                Card.status == CardStatus.ACTIVE,
            )
            .values(
                classes_remaining=Card.classes_remaining - 1,
                status=case(
                    (Card.classes_remaining == 1, literal(CardStatus.EXHAUSTED, status_type)),
                    else_=Card.status,
                ),
                updated_at=datetime.utcnow(),
            )
            .execution_options(synchronize_session=False)
        )
        result = db.session.execute(stmt)

        if result.rowcount == 0:
            card = db.session.get(Card, card_id, populate_existing=True)
            if card is None:
                raise CardNotFound(details={'card_id': card_id})
            if card.is_subscription:
                raise ValidationError('Subscription cards have no classes to deduct.',
                                      details={'card_id': card_id})
            raise NoClassesRemaining(details={
                'card_id': card_id,
                'status': card.status.value,
                'classes_remaining': card.classes_remaining,
            })

        return db.session.get(Card, card_id, populate_existing=True)

    @staticmethod
    def expire_overdue_cards(today=None) -> List[Card]:
        """
        Mark every active card whose expiration date has passed as expired.

        Each transition is a conditional UPDATE (status still active), so a
        card is only reported by the call that actually expired it. The
        `expired` triggers are queued before the single batch commit.

        Returns:
            Cards transitioned by this call
        """
        today = today or studio_today()
        overdue_ids = [
            row.id for row in
            db.session.query(Card.id)
            .filter(Card.status == CardStatus.ACTIVE, Card.expiration_date < today)
            .order_by(Card.id)
            .all()
        ]

        expired_ids = []
        now = datetime.utcnow()
        for card_id in overdue_ids:
            result = db.session.execute(
                update(Card)
                .where(
                    Card.id == card_id,
                    Card.status == CardStatus.ACTIVE,
                    Card.expiration_date < today,
                )
                .values(status=CardStatus.EXPIRED, updated_at=now)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount:
                expired_ids.append(card_id)

        cards = []
        if expired_ids:
            cards = (
                Card.query
                .filter(Card.id.in_(expired_ids))
                .order_by(Card.id)
                .populate_existing()
                .all()
            )
            for card in cards:
                notifications.expired(card)
        db.session.commit()

        if expired_ids:
            logger.info('Expired %d card(s) overdue before %s', len(expired_ids), today)
        return cards

    @staticmethod
    def sweep_expire_overdue(today=None) -> int:
        """Expire overdue cards and return how many were transitioned."""
        return len(CardLedger.expire_overdue_cards(today))

    # ── Queries ─────────────────────────────────────────────

    @staticmethod
    def get_card(card_id) -> Card:
        card = db.session.get(Card, card_id)
        if card is None:
            raise CardNotFound(details={'card_id': card_id})
        return card

    @staticmethod
    def list_cards(status=None, holder: Optional[Holder] = None):
        """Query of cards for admin listings (newest first)."""
        query = Card.query
        if status:
            query = query.filter(Card.status == CardStatus(status))
        if holder is not None:
            query = query.filter(holder.filter_for(Card))
        return query.order_by(Card.created_at.desc(), Card.id.desc())

    @staticmethod
    def cards_expiring_on(day) -> List[Card]:
        """Active cards whose last valid day is `day` (excluding used-up punch cards)."""
        cards = (
            Card.query
            .filter(Card.status == CardStatus.ACTIVE, Card.expiration_date == day)
            .order_by(Card.id)
            .all()
        )
        return [c for c in cards if c.is_subscription or c.classes_remaining > 0]

    @staticmethod
    def cards_expiring_within(days, today=None) -> List[Card]:
        """Active cards expiring between today and today + days (inclusive)."""
        today = today or studio_today()
        return (
            Card.query
            .filter(
                Card.status == CardStatus.ACTIVE,
                Card.expiration_date >= today,
                Card.expiration_date <= today + timedelta(days=days),
            )
            .order_by(Card.expiration_date, Card.id)
            .all()
        )

    @staticmethod
    def low_balance_cards(threshold=LOW_BALANCE_THRESHOLD, today=None) -> List[Card]:
        """Active, unexpired punch cards with 0 < classes_remaining <= threshold."""
        today = today or studio_today()
        punch_type_ids = db.session.query(CardType.id).filter(
            CardType.category == CardCategory.PUNCH_CARD
        )
        return (
            Card.query
            .filter(
                Card.status == CardStatus.ACTIVE,
                Card.expiration_date >= today,
                Card.classes_remaining > 0,
                Card.classes_remaining <= threshold,
                Card.card_type_id.in_(punch_type_ids),
            )
            .order_by(Card.classes_remaining, Card.id)
            .all()
        )

    @staticmethod
    def active_card_count(today=None) -> int:
        today = today or studio_today()
        return Card.query.filter(
            Card.status == CardStatus.ACTIVE,
            Card.expiration_date >= today,
        ).count()
