"""
Card catalog: read-only lookup of card type definitions.
"""
import logging
from decimal import Decimal

from punchcard.errors import CardTypeNotFound, ValidationError
from punchcard.extensions import db
from punchcard.models.card import CardType, CardCategory

logger = logging.getLogger(__name__)

ADMIN_PASS_NAME = 'Admin Pass'
# Legacy names tried when the dedicated admin pass entry is missing
ADMIN_PASS_FALLBACK_PATTERNS = ('12 Class', '5 Class')
ADMIN_PASS_FALLBACK_EXACT = ('Salsa & Bachata',)

DEFAULT_CARD_TYPES = [
    # name, category, class_count, validity_months, price, description
    ('Single Class', CardCategory.PUNCH_CARD, 1, 1, '25.00', 'Pay per class - 1 month expiration'),
    ('4 Classes Card', CardCategory.PUNCH_CARD, 4, 1, '95.00', '1 month expiration from purchase'),
    ('8 Classes Card', CardCategory.PUNCH_CARD, 8, 1, '150.00', '1 month expiration from purchase'),
    ('12 Classes Card', CardCategory.PUNCH_CARD, 12, 2, '195.00', '2 months expiration from purchase'),
    ('15 Classes Card', CardCategory.PUNCH_CARD, 15, 2, '225.00', '2 months expiration from purchase'),
    (ADMIN_PASS_NAME, CardCategory.PUNCH_CARD, 1, 3, '0.00',
     'Manually created pass by admin - classes and expiration set per customer'),
    ('Urban/Hip Hop Dance', CardCategory.SUBSCRIPTION, 0, 1, '150.00',
     'Urban/Hip Hop Dance Monthly Package - 1 Month Classes Pass'),
    ('Latin Rhythms/Kids', CardCategory.SUBSCRIPTION, 0, 1, '150.00',
     'Salsa - Bachata - Merengue Monthly Package - 1 Month Classes Pass'),
    ('Gymnastics', CardCategory.SUBSCRIPTION, 0, 1, '95.00',
     'Gymnastics Monthly Package - 1 Month Classes Pass'),
    ('Gymnastics Kids', CardCategory.SUBSCRIPTION, 0, 1, '45.00',
     'Gymnastics Kids Monthly Package - 1 Month Classes Pass'),
]


def list_active_types():
    """Active card types, smallest class count first."""
    return (
        CardType.query
        .filter(CardType.is_active.is_(True))
        .order_by(CardType.class_count, CardType.name, CardType.id)
        .all()
    )


def get_type(type_id):
    """Return the card type or raise CardTypeNotFound."""
    card_type = db.session.get(CardType, type_id) if type_id is not None else None
    if card_type is None:
        raise CardTypeNotFound(details={'card_type_id': type_id})
    return card_type


def resolve_admin_pass_type():
    """
    Card type used for admin-issued passes.

    Prefers the dedicated 'Admin Pass' punch card entry. Older catalogs
    without it fall back to a known punch card name, then any punch card,
    then whatever is first in the catalog.
    """
    types = list_active_types()
    punch_cards = [t for t in types if t.category != CardCategory.SUBSCRIPTION]

    for card_type in punch_cards:
        if card_type.name == ADMIN_PASS_NAME:
            return card_type

    for card_type in punch_cards:
        if (any(pattern in card_type.name for pattern in ADMIN_PASS_FALLBACK_PATTERNS)
                or card_type.name in ADMIN_PASS_FALLBACK_EXACT):
            logger.warning('Admin Pass card type missing, falling back to %r', card_type.name)
            return card_type

    if punch_cards:
        logger.warning('Admin Pass card type missing, falling back to %r', punch_cards[0].name)
        return punch_cards[0]

    if types:
        logger.warning('No punch card types in catalog, using %r for admin pass', types[0].name)
        return types[0]

    raise CardTypeNotFound('No card types available for admin passes.')


def validate_type_definition(category, class_count, validity_months):
    """Reject definitions that would break ledger invariants."""
    if category == CardCategory.PUNCH_CARD and (class_count is None or class_count <= 0):
        raise ValidationError(
            'Punch cards need a positive class count.',
            details={'class_count': class_count},
        )
    if validity_months is None or validity_months <= 0:
        raise ValidationError(
            'Validity must be at least one month.',
            details={'validity_months': validity_months},
        )


def seed_card_types():
    """
    Insert the default catalog entries that are missing.

    Returns:
        list: names of the card types created
    """
    created = []
    for name, category, class_count, months, price, description in DEFAULT_CARD_TYPES:
        if CardType.query.filter_by(name=name).first():
            continue
        validate_type_definition(category, class_count, months)
        db.session.add(CardType(
            name=name,
            category=category,
            class_count=class_count,
            validity_months=months,
            price=Decimal(price),
            description=description,
            is_active=True,
        ))
        created.append(name)
    db.session.commit()
    if created:
        logger.info('Seeded %d card type(s): %s', len(created), ', '.join(created))
    return created
