# =============================================================================
# Studio card engine - Pytest Fixtures Configuration
# =============================================================================

import pytest
from datetime import date, timedelta
from decimal import Decimal

from punchcard import create_app
from punchcard.extensions import db
from punchcard.models.card import Card, CardType, CardCategory, CardStatus, PaymentMethod
from punchcard.models.user import User, Dependent, UserRole
from punchcard.utils.timezone import studio_today, add_months


# =============================================================================
# Application Fixtures
# =============================================================================

@pytest.fixture(scope='function')
def app():
    """Create and configure test application with SQLite in-memory database."""
    application = create_app('testing')

    with application.app_context():
        db.create_all()
        yield application
        db.session.remove()
        db.drop_all()


@pytest.fixture(scope='function')
def client(app):
    """Test client for HTTP requests."""
    return app.test_client()


@pytest.fixture(scope='function')
def runner(app):
    """CLI test runner."""
    return app.test_cli_runner()


@pytest.fixture
def today(app):
    """Studio civil date for the current test run."""
    return studio_today()


# =============================================================================
# Helpers
# =============================================================================

def birthday_today(today):
    """A birthday (year 2000) falling on today's month/day."""
    return date(2000, today.month, today.day)


def birthday_not_today(today):
    """A birthday (year 2000) guaranteed not to fall on today's month/day."""
    other = today + timedelta(days=40)
    return date(2000, other.month, min(other.day, 28))


def make_user(email, role=UserRole.CUSTOMER, **kwargs):
    user = User(
        email=email,
        first_name=kwargs.pop('first_name', 'Test'),
        last_name=kwargs.pop('last_name', 'User'),
        role=role,
        is_active=kwargs.pop('is_active', True),
        **kwargs,
    )
    db.session.add(user)
    db.session.commit()
    return user


def make_card(holder, card_type, classes_remaining=None, purchase_date=None,
              expiration_date=None, status=CardStatus.ACTIVE, total_classes=None):
    """Insert a card directly, bypassing the ledger (fixtures only)."""
    purchase_date = purchase_date or studio_today()
    total = card_type.class_count if total_classes is None else total_classes
    if card_type.category == CardCategory.SUBSCRIPTION:
        total = 0
    card = Card(
        card_type_id=card_type.id,
        total_classes=total,
        classes_remaining=total if classes_remaining is None else classes_remaining,
        purchase_date=purchase_date,
        expiration_date=expiration_date or add_months(purchase_date, card_type.validity_months),
        amount_paid=card_type.price,
        status=status,
        payment_method=PaymentMethod.CASH,
        **holder.column_values(),
    )
    db.session.add(card)
    db.session.commit()
    card_id = card.id
    db.session.expire_all()
    return db.session.get(Card, card_id)


# =============================================================================
# User Fixtures
# =============================================================================

@pytest.fixture
def staff_user(app):
    """Front desk staff member."""
    user = make_user('staff@test.com', role=UserRole.STAFF, first_name='Front', last_name='Desk')
    user_id = user.id
    db.session.expire_all()
    return db.session.get(User, user_id)


@pytest.fixture
def admin_user(app):
    """Studio admin."""
    user = make_user('admin@test.com', role=UserRole.ADMIN, first_name='Studio', last_name='Admin')
    user_id = user.id
    db.session.expire_all()
    return db.session.get(User, user_id)


@pytest.fixture
def customer(app, today):
    """Customer whose birthday is not today."""
    user = make_user(
        'maria@test.com',
        first_name='Maria',
        last_name='Lopez',
        birthday=birthday_not_today(today),
        check_in_code='K7PX',
    )
    user_id = user.id
    db.session.expire_all()
    return db.session.get(User, user_id)


@pytest.fixture
def dependent(app, customer, today):
    """Child on the customer's account."""
    child = Dependent(
        primary_user_id=customer.id,
        first_name='Sofia',
        last_name='Lopez',
        birthday=birthday_not_today(today),
        relationship_label='child',
        check_in_code='M3QZ',
    )
    db.session.add(child)
    db.session.commit()
    child_id = child.id
    db.session.expire_all()
    return db.session.get(Dependent, child_id)


# =============================================================================
# Catalog Fixtures
# =============================================================================

@pytest.fixture
def punch_type(app):
    """8-class punch card, valid one month."""
    card_type = CardType(
        name='8 Classes Card',
        category=CardCategory.PUNCH_CARD,
        class_count=8,
        validity_months=1,
        price=Decimal('150.00'),
    )
    db.session.add(card_type)
    db.session.commit()
    type_id = card_type.id
    db.session.expire_all()
    return db.session.get(CardType, type_id)


@pytest.fixture
def subscription_type(app):
    """Unlimited monthly subscription."""
    card_type = CardType(
        name='Urban/Hip Hop Dance',
        category=CardCategory.SUBSCRIPTION,
        class_count=0,
        validity_months=1,
        price=Decimal('150.00'),
    )
    db.session.add(card_type)
    db.session.commit()
    type_id = card_type.id
    db.session.expire_all()
    return db.session.get(CardType, type_id)


@pytest.fixture
def punch_card(customer, punch_type):
    """Fresh 8-class card owned by the customer."""
    return make_card(customer.holder, punch_type)


# =============================================================================
# Auth Fixtures
# =============================================================================

def auth_headers(user):
    from punchcard.blueprints.api.decorators import create_access_token
    return {'Authorization': f'Bearer {create_access_token(user.id)}'}


@pytest.fixture
def staff_headers(staff_user):
    return auth_headers(staff_user)


@pytest.fixture
def admin_headers(admin_user):
    return auth_headers(admin_user)


@pytest.fixture
def customer_headers(customer):
    return auth_headers(customer)
