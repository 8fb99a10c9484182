# =============================================================================
# Studio card engine - Card Ledger Tests
# =============================================================================

import threading
from datetime import timedelta
from decimal import Decimal

import pytest
from sqlalchemy.exc import IntegrityError

from punchcard import create_app
from punchcard.config import TestingConfig
from punchcard.errors import (
    CardNotFound, CardTypeNotFound, DuplicateActiveCard, HolderNotFound,
    NoClassesRemaining, PaymentReferenceConflict, ValidationError,
)
from punchcard.extensions import db
from punchcard.models.card import Card, CardType, CardCategory, CardStatus, PaymentMethod
from punchcard.models.holder import Holder
from punchcard.models.notification import NotificationTrigger, NotificationKind
from punchcard.models.user import User
from punchcard.services.ledger import CardLedger
from punchcard.utils.timezone import add_months

from tests.conftest import make_card


def _triggers(kind):
    return NotificationTrigger.query.filter_by(kind=kind).all()


class TestCreateCard:
    """Tests for CardLedger.create_card()."""

    def test_punch_card_from_catalog(self, customer, punch_type, today):
        card = CardLedger.create_card(customer.holder, punch_type.id, 'online', '150.00')

        assert card.status == CardStatus.ACTIVE
        assert card.total_classes == 8
        assert card.classes_remaining == 8
        assert card.purchase_date == today
        assert card.expiration_date == add_months(today, 1)
        assert card.amount_paid == Decimal('150.00')
        assert card.payment_method == PaymentMethod.ONLINE
        assert card.holder == customer.holder

    def test_subscription_has_no_class_balance(self, customer, subscription_type):
        card = CardLedger.create_card(customer.holder, subscription_type.id, 'cash', 150)
        assert card.is_subscription
        assert card.total_classes == 0
        assert card.classes_remaining == 0

    def test_dependent_card(self, dependent, punch_type):
        card = CardLedger.create_card(dependent.holder, punch_type.id, 'cash', 150)
        assert card.dependent_id == dependent.id
        assert card.customer_id is None

    def test_queues_purchase_notification(self, customer, punch_type):
        card = CardLedger.create_card(customer.holder, punch_type.id, 'online', 150)
        triggers = _triggers(NotificationKind.PURCHASE_CONFIRMED)
        assert len(triggers) == 1
        assert triggers[0].payload['card_id'] == card.id
        assert triggers[0].payload['amount_paid'] == '150.00'

    def test_rejects_second_active_card(self, customer, punch_type, punch_card):
        with pytest.raises(DuplicateActiveCard) as exc:
            CardLedger.create_card(customer.holder, punch_type.id, 'online', 150)
        assert exc.value.details['card_id'] == punch_card.id
        assert Card.query.count() == 1

    def test_allow_stacking(self, customer, punch_type, punch_card):
        card = CardLedger.create_card(customer.holder, punch_type.id, 'online', 150, allow_stacking=True)
        assert card.id != punch_card.id
        assert Card.query.count() == 2

    def test_exhausted_card_does_not_block_purchase(self, customer, punch_type):
        make_card(customer.holder, punch_type, classes_remaining=0, status=CardStatus.EXHAUSTED)
        card = CardLedger.create_card(customer.holder, punch_type.id, 'online', 150)
        assert card.status == CardStatus.ACTIVE

    def test_repeated_payment_reference_is_idempotent(self, customer, punch_type):
        first = CardLedger.create_card(customer.holder, punch_type.id, 'online', 150, external_ref='pi_123')
        second = CardLedger.create_card(customer.holder, punch_type.id, 'online', 150, external_ref='pi_123')
        assert first.id == second.id
        assert Card.query.count() == 1
        assert len(_triggers(NotificationKind.PURCHASE_CONFIRMED)) == 1

    def test_payment_reference_reused_for_another_holder(self, customer, dependent, punch_type):
        first = CardLedger.create_card(customer.holder, punch_type.id, 'online', 150, external_ref='pay_1')

        with pytest.raises(PaymentReferenceConflict) as exc:
            CardLedger.create_card(dependent.holder, punch_type.id, 'online', 150, external_ref='pay_1')

        assert exc.value.status == 409
        assert exc.value.details['card_id'] == first.id
        assert Card.query.count() == 1
        assert CardLedger.holder_cards(dependent.holder) == []

    def test_payment_reference_reused_for_another_card_type(self, customer, punch_type, subscription_type):
        CardLedger.create_card(customer.holder, punch_type.id, 'online', 150, external_ref='pay_2')

        with pytest.raises(PaymentReferenceConflict):
            CardLedger.create_card(customer.holder, subscription_type.id, 'online', 150,
                                   external_ref='pay_2', allow_stacking=True)
        assert Card.query.count() == 1

    def test_payment_reference_is_unique_in_the_table(self, customer, dependent, punch_type):
        make_card(customer.holder, punch_type)
        make_card(dependent.holder, punch_type)
        first, second = Card.query.order_by(Card.id).all()
        first.external_payment_reference = 'pay_3'
        second.external_payment_reference = 'pay_3'
        with pytest.raises(IntegrityError):
            db.session.commit()
        db.session.rollback()

    def test_unknown_card_type(self, customer):
        with pytest.raises(CardTypeNotFound):
            CardLedger.create_card(customer.holder, 999, 'online', 150)

    def test_inactive_card_type(self, customer, punch_type):
        punch_type.is_active = False
        db.session.commit()
        with pytest.raises(ValidationError):
            CardLedger.create_card(customer.holder, punch_type.id, 'online', 150)

    def test_unknown_holder(self, punch_type):
        with pytest.raises(HolderNotFound):
            CardLedger.create_card(Holder.customer(999), punch_type.id, 'online', 150)

    @pytest.mark.parametrize('method,amount', [('paypal', 150), ('online', 'abc'), ('online', -5)])
    def test_invalid_payment_input(self, customer, punch_type, method, amount):
        with pytest.raises(ValidationError):
            CardLedger.create_card(customer.holder, punch_type.id, method, amount)


class TestAdminCreatePass:
    """Tests for CardLedger.admin_create_pass()."""

    @pytest.fixture
    def admin_pass_type(self, app):
        card_type = CardType(name='Admin Pass', category=CardCategory.PUNCH_CARD,
                             class_count=1, validity_months=3, price=Decimal('0'))
        db.session.add(card_type)
        db.session.commit()
        return card_type

    def test_custom_classes_and_expiration(self, customer, admin_user, admin_pass_type, today):
        expires = today + timedelta(days=45)
        card = CardLedger.admin_create_pass(customer.holder, 5, expires, '60', admin_user.id)

        assert card.card_type_id == admin_pass_type.id
        assert card.total_classes == 5
        assert card.classes_remaining == 5
        assert card.expiration_date == expires
        assert card.payment_method == PaymentMethod.ADMIN_CREATED
        assert card.created_by_id == admin_user.id

    def test_stacks_on_existing_card(self, customer, admin_user, admin_pass_type, punch_card, today):
        CardLedger.admin_create_pass(customer.holder, 3, today + timedelta(days=10), 0, admin_user.id)
        assert len(CardLedger.holder_cards(customer.holder)) == 2

    def test_rejects_zero_classes(self, customer, admin_user, admin_pass_type, today):
        with pytest.raises(ValidationError):
            CardLedger.admin_create_pass(customer.holder, 0, today + timedelta(days=10), 0, admin_user.id)

    def test_rejects_past_expiration(self, customer, admin_user, admin_pass_type, today):
        with pytest.raises(ValidationError):
            CardLedger.admin_create_pass(customer.holder, 3, today - timedelta(days=1), 0, admin_user.id)


class TestResolveActiveCard:
    """Tests for CardLedger.resolve_active_card() ordering rules."""

    def test_no_cards(self, customer):
        assert CardLedger.resolve_active_card(customer.holder) is None
        assert CardLedger.explain_no_active_card(customer.holder) == 'no_card'

    def test_punch_card_before_subscription(self, customer, punch_type, subscription_type, today):
        make_card(customer.holder, subscription_type, expiration_date=today + timedelta(days=5))
        punch = make_card(customer.holder, punch_type, expiration_date=today + timedelta(days=20))
        assert CardLedger.resolve_active_card(customer.holder).id == punch.id

    def test_soonest_expiring_punch_card_first(self, customer, punch_type, today):
        later = make_card(customer.holder, punch_type, expiration_date=today + timedelta(days=20))
        sooner = make_card(customer.holder, punch_type, expiration_date=today + timedelta(days=3))
        assert CardLedger.resolve_active_card(customer.holder).id == sooner.id
        assert later.id != sooner.id

    def test_subscription_when_punch_cards_used_up(self, customer, punch_type, subscription_type):
        make_card(customer.holder, punch_type, classes_remaining=0, status=CardStatus.EXHAUSTED)
        sub = make_card(customer.holder, subscription_type)
        assert CardLedger.resolve_active_card(customer.holder).id == sub.id

    def test_subscription_when_only_punch_card_is_past_expiration(self, customer, punch_type,
                                                                   subscription_type, today):
        make_card(customer.holder, punch_type, classes_remaining=3,
                  purchase_date=today - timedelta(days=40), expiration_date=today - timedelta(days=1))
        sub = make_card(customer.holder, subscription_type)

        assert CardLedger.resolve_active_card(customer.holder).id == sub.id

    def test_overdue_card_ignored_before_sweep(self, customer, punch_type, today):
        make_card(customer.holder, punch_type, purchase_date=today - timedelta(days=40),
                  expiration_date=today - timedelta(days=1))
        assert CardLedger.resolve_active_card(customer.holder) is None
        assert CardLedger.explain_no_active_card(customer.holder) == 'expired'

    def test_expires_today_is_still_usable(self, customer, punch_type, today):
        card = make_card(customer.holder, punch_type, purchase_date=today - timedelta(days=30),
                         expiration_date=today)
        assert CardLedger.resolve_active_card(customer.holder).id == card.id

    def test_explains_exhausted(self, customer, punch_type):
        make_card(customer.holder, punch_type, classes_remaining=0, status=CardStatus.EXHAUSTED)
        assert CardLedger.explain_no_active_card(customer.holder) == 'exhausted'

    def test_customer_and_dependent_are_separate(self, customer, dependent, punch_type):
        make_card(dependent.holder, punch_type)
        assert CardLedger.resolve_active_card(customer.holder) is None
        assert CardLedger.resolve_active_card(dependent.holder) is not None


class TestDeductClass:
    """Tests for CardLedger.deduct_class()."""

    def test_decrements_balance(self, punch_card):
        card = CardLedger.deduct_class(punch_card.id)
        db.session.commit()
        assert card.classes_remaining == 7
        assert card.status == CardStatus.ACTIVE

    def test_last_class_exhausts_card(self, customer, punch_type):
        card = make_card(customer.holder, punch_type, classes_remaining=1)
        card = CardLedger.deduct_class(card.id)
        db.session.commit()
        assert card.classes_remaining == 0
        assert card.status == CardStatus.EXHAUSTED

    def test_empty_card_raises(self, customer, punch_type):
        card = make_card(customer.holder, punch_type, classes_remaining=0, status=CardStatus.EXHAUSTED)
        with pytest.raises(NoClassesRemaining):
            CardLedger.deduct_class(card.id)

    def test_expired_card_is_never_deducted(self, customer, punch_type):
        card = make_card(customer.holder, punch_type, classes_remaining=4, status=CardStatus.EXPIRED)
        with pytest.raises(NoClassesRemaining):
            CardLedger.deduct_class(card.id)
        db.session.rollback()
        assert db.session.get(Card, card.id).classes_remaining == 4

    def test_subscription_cannot_be_deducted(self, customer, subscription_type):
        card = make_card(customer.holder, subscription_type)
        with pytest.raises(ValidationError):
            CardLedger.deduct_class(card.id)

    def test_unknown_card(self, app):
        with pytest.raises(CardNotFound):
            CardLedger.deduct_class(12345)


class TestExpireOverdueCards:
    """Tests for CardLedger.expire_overdue_cards()."""

    def test_expires_only_past_due_active_cards(self, customer, dependent, punch_type, today):
        overdue = make_card(customer.holder, punch_type, purchase_date=today - timedelta(days=40),
                            expiration_date=today - timedelta(days=1))
        due_today = make_card(dependent.holder, punch_type, purchase_date=today - timedelta(days=30),
                              expiration_date=today)
        exhausted = make_card(customer.holder, punch_type, classes_remaining=0, status=CardStatus.EXHAUSTED,
                              purchase_date=today - timedelta(days=60), expiration_date=today - timedelta(days=30))

        expired = CardLedger.expire_overdue_cards(today)

        assert [c.id for c in expired] == [overdue.id]
        assert db.session.get(Card, overdue.id).status == CardStatus.EXPIRED
        assert db.session.get(Card, due_today.id).status == CardStatus.ACTIVE
        assert db.session.get(Card, exhausted.id).status == CardStatus.EXHAUSTED

    def test_queues_expired_notification_with_the_transition(self, customer, punch_type, today):
        card = make_card(customer.holder, punch_type, classes_remaining=3,
                         purchase_date=today - timedelta(days=40), expiration_date=today - timedelta(days=1))

        CardLedger.expire_overdue_cards(today)
        db.session.rollback()

        triggers = _triggers(NotificationKind.EXPIRED)
        assert len(triggers) == 1
        assert triggers[0].payload['card_id'] == card.id
        assert triggers[0].payload['classes_forfeited'] == 3

        CardLedger.expire_overdue_cards(today)
        assert len(_triggers(NotificationKind.EXPIRED)) == 1

    def test_second_run_reports_nothing(self, customer, punch_type, today):
        make_card(customer.holder, punch_type, purchase_date=today - timedelta(days=40),
                  expiration_date=today - timedelta(days=1))
        assert CardLedger.sweep_expire_overdue(today) == 1
        assert CardLedger.sweep_expire_overdue(today) == 0


class TestQueries:
    """Tests for the ledger query helpers."""

    def test_low_balance_cards(self, customer, dependent, punch_type, subscription_type):
        low = make_card(customer.holder, punch_type, classes_remaining=2)
        make_card(dependent.holder, punch_type, classes_remaining=5)
        make_card(dependent.holder, subscription_type)
        assert [c.id for c in CardLedger.low_balance_cards(2)] == [low.id]

    def test_cards_expiring_on_skips_used_up_punch_cards(self, customer, dependent, punch_type, today):
        target = today + timedelta(days=3)
        live = make_card(customer.holder, punch_type, expiration_date=target)
        make_card(dependent.holder, punch_type, classes_remaining=0, expiration_date=target)
        assert [c.id for c in CardLedger.cards_expiring_on(target)] == [live.id]

    def test_cards_expiring_within(self, customer, dependent, punch_type, today):
        soon = make_card(customer.holder, punch_type, expiration_date=today + timedelta(days=6))
        make_card(dependent.holder, punch_type, expiration_date=today + timedelta(days=30))
        assert [c.id for c in CardLedger.cards_expiring_within(7, today)] == [soon.id]

    def test_list_cards_by_status(self, customer, punch_type):
        make_card(customer.holder, punch_type, classes_remaining=0, status=CardStatus.EXHAUSTED)
        active = make_card(customer.holder, punch_type)
        assert [c.id for c in CardLedger.list_cards(status='active')] == [active.id]


class TestConcurrentDeduction:
    """Two front desks scanning the same card with one class left."""

    def test_exactly_one_deduction_succeeds(self, tmp_path):
        class FileConfig(TestingConfig):
            SQLALCHEMY_DATABASE_URI = f"sqlite:///{tmp_path / 'ledger.db'}"

        app = create_app(FileConfig)
        with app.app_context():
            db.create_all()
            customer = User(email='race@test.com', first_name='Race', last_name='Test')
            card_type = CardType(name='Single Class', category=CardCategory.PUNCH_CARD,
                                 class_count=1, validity_months=1, price=Decimal('25'))
            db.session.add_all([customer, card_type])
            db.session.commit()
            card_id = make_card(customer.holder, card_type).id

        barrier = threading.Barrier(2)
        outcomes = []
        lock = threading.Lock()

        def scan():
            with app.app_context():
                barrier.wait()
                try:
                    CardLedger.deduct_class(card_id)
                    db.session.commit()
                    result = 'ok'
                except NoClassesRemaining:
                    db.session.rollback()
                    result = 'empty'
                finally:
                    db.session.remove()
                with lock:
                    outcomes.append(result)

        threads = [threading.Thread(target=scan) for _ in range(2)]
        for t in threads:
            t.start()
        for t in threads:
            t.join(10)

        assert sorted(outcomes) == ['empty', 'ok']
        with app.app_context():
            card = db.session.get(Card, card_id)
            assert card.classes_remaining == 0
            assert card.status == CardStatus.EXHAUSTED
            db.drop_all()
