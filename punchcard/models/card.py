"""
Card catalog and card ledger models.
A CardType is a product in the catalog; a Card is one purchased or
issued instance owned by a holder.
"""
import enum
from datetime import datetime
from decimal import Decimal

from punchcard.extensions import db
from punchcard.models.holder import HolderMixin, one_holder_constraint


class CardCategory(str, enum.Enum):
    """Punch cards carry a fixed class count; subscriptions are unlimited."""
    PUNCH_CARD = 'punch_card'
    SUBSCRIPTION = 'subscription'


class CardStatus(str, enum.Enum):
    """Card lifecycle. EXPIRED is terminal."""
    ACTIVE = 'active'
    EXHAUSTED = 'exhausted'
    EXPIRED = 'expired'


class PaymentMethod(str, enum.Enum):
    """How the card was paid for."""
    ONLINE = 'online'
    CASH = 'cash'
    ADMIN_CREATED = 'admin_created'


class CardType(db.Model):
    """Catalog entry (e.g. '8 Classes', 'Urban Dance Monthly')."""

    __tablename__ = 'card_types'

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(100), nullable=False, unique=True)
    category = db.Column(
        db.Enum(CardCategory, values_callable=lambda x: [e.value for e in x]),
        nullable=False,
        default=CardCategory.PUNCH_CARD,
    )
    class_count = db.Column(db.Integer, nullable=False, default=0)
    validity_months = db.Column(db.Integer, nullable=False, default=1)
    price = db.Column(db.Numeric(10, 2), nullable=False, default=0)
    description = db.Column(db.Text)
    is_active = db.Column(db.Boolean, nullable=False, default=True)

    created_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow)

    __table_args__ = (
        db.CheckConstraint(
            "category <> 'punch_card' OR class_count > 0",
            name='ck_card_types_punch_class_count',
        ),
        db.CheckConstraint('validity_months > 0', name='ck_card_types_validity'),
    )

    def __repr__(self):
        return f'<CardType {self.id} {self.name!r}>'

    @property
    def is_subscription(self):
        return self.category == CardCategory.SUBSCRIPTION

    @property
    def price_per_class(self):
        """Unit price for punch cards, None for subscriptions."""
        if self.is_subscription or not self.class_count:
            return None
        return (Decimal(self.price) / self.class_count).quantize(Decimal('0.01'))


class Card(HolderMixin, db.Model):
    """A punch card or subscription owned by a customer or dependent."""

    __tablename__ = 'cards'

    id = db.Column(db.Integer, primary_key=True)
    customer_id = db.Column(
        db.Integer, db.ForeignKey('users.id', ondelete='CASCADE'), nullable=True, index=True,
    )
    dependent_id = db.Column(
        db.Integer, db.ForeignKey('dependents.id', ondelete='CASCADE'), nullable=True, index=True,
    )
    card_type_id = db.Column(db.Integer, db.ForeignKey('card_types.id'), nullable=False)

    total_classes = db.Column(db.Integer, nullable=False, default=0)
    classes_remaining = db.Column(db.Integer, nullable=False, default=0)
    purchase_date = db.Column(db.Date, nullable=False)
    expiration_date = db.Column(db.Date, nullable=False, index=True)
    amount_paid = db.Column(db.Numeric(10, 2), nullable=False, default=0)

    status = db.Column(
        db.Enum(CardStatus, values_callable=lambda x: [e.value for e in x]),
        nullable=False,
        default=CardStatus.ACTIVE,
        index=True,
    )
    payment_method = db.Column(
        db.Enum(PaymentMethod, values_callable=lambda x: [e.value for e in x]),
        nullable=False,
        default=PaymentMethod.ONLINE,
    )
    external_payment_reference = db.Column(db.String(255), nullable=True)  # unique when set
    created_by_id = db.Column(db.Integer, db.ForeignKey('users.id'), nullable=True)

    created_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow)
    updated_at = db.Column(db.DateTime, nullable=True, onupdate=datetime.utcnow)

    __table_args__ = (
        one_holder_constraint('cards'),
        db.CheckConstraint('classes_remaining >= 0', name='ck_cards_remaining_non_negative'),
        db.CheckConstraint('classes_remaining <= total_classes', name='ck_cards_remaining_le_total'),
        db.UniqueConstraint('external_payment_reference', name='uq_cards_external_payment_reference'),
    )

    card_type = db.relationship('CardType', lazy='joined')
    customer = db.relationship('User', foreign_keys=[customer_id])
    dependent = db.relationship('Dependent', foreign_keys=[dependent_id])
    created_by = db.relationship('User', foreign_keys=[created_by_id])

    def __repr__(self):
        return f'<Card {self.id} {self.status.value} {self.classes_remaining}/{self.total_classes}>'

    @property
    def is_subscription(self):
        return self.card_type is not None and self.card_type.is_subscription

    @property
    def card_name(self):
        return self.card_type.name if self.card_type else None
