"""
Database models.
"""
from punchcard.models.holder import Holder, HolderKind
from punchcard.models.user import User, Dependent, UserRole
from punchcard.models.card import CardType, CardCategory, Card, CardStatus, PaymentMethod
from punchcard.models.check_in import CheckIn
from punchcard.models.birthday_pass import BirthdayPass
from punchcard.models.notification import (
    NotificationTrigger, NotificationKind, NotificationStatus,
)

__all__ = [
    'Holder', 'HolderKind',
    'User', 'Dependent', 'UserRole',
    'CardType', 'CardCategory', 'Card', 'CardStatus', 'PaymentMethod',
    'CheckIn',
    'BirthdayPass',
    'NotificationTrigger', 'NotificationKind', 'NotificationStatus',
]
