"""
Check-in processor: the transactional entry point for class attendance.

A request is resolved to a holder, routed by mode (standard, birthday
pass, direct birthday), applied against the ledger or the pass manager,
and recorded as an immutable CheckIn. Any rejection rolls the whole unit
of work back, so no CheckIn row exists for a rejected request.
"""
import enum
import logging
from dataclasses import dataclass
from typing import List, Optional

from flask import current_app
from sqlalchemy.exc import SQLAlchemyError

from punchcard.errors import (
    CardEngineError, InvalidIdentifier, NoActiveCard, NoBirthdayPass, NoClassesRemaining,
    ValidationError,
)
from punchcard.extensions import db
from punchcard.models.check_in import CheckIn
from punchcard.models.holder import Holder
from punchcard.models.user import User
from punchcard.services import notifications
from punchcard.services.birthday import BirthdayPassService
from punchcard.services.ledger import CardLedger, require_holder
from punchcard.utils.codes import resolve_code
from punchcard.utils.timezone import studio_today, studio_day_bounds

logger = logging.getLogger(__name__)

BIRTHDAY_CARD_LABEL = 'Birthday Free Class'
DIRECT_BIRTHDAY_NOTE = 'Birthday check-in - Free class!'
PASS_BIRTHDAY_NOTE = 'Birthday check-in!'
UNLIMITED = -1

# A concurrent check-in can take the last class between resolve and deduct
MAX_RESOLVE_ATTEMPTS = 3


class CheckInMode(str, enum.Enum):
    STANDARD = 'standard'
    BIRTHDAY_PASS = 'birthday_pass'
    BIRTHDAY_DIRECT = 'birthday_direct'


@dataclass
class CheckInRequest:
    """Inbound check-in. Identify the holder by id or by scanned/typed code."""
    performed_by_id: int
    customer_id: Optional[int] = None
    dependent_id: Optional[int] = None
    scannable_code: Optional[str] = None
    mode: CheckInMode = CheckInMode.STANDARD
    notes: Optional[str] = None


@dataclass(frozen=True)
class CheckInDetail:
    """What the front desk shows after a check-in."""
    check_in: CheckIn
    holder_name: str
    card_name: str
    performed_by_name: str
    classes_remaining: Optional[int]  # -1 = unlimited subscription

    def to_dict(self):
        check_in = self.check_in
        return {
            'id': check_in.id,
            'holder': check_in.holder.to_dict(),
            'holder_name': self.holder_name,
            'card_id': check_in.card_id,
            'card_name': self.card_name,
            'is_birthday_checkin': check_in.is_birthday_checkin,
            'birthday_pass_id': check_in.birthday_pass_id,
            'classes_remaining': self.classes_remaining,
            'performed_by_id': check_in.performed_by_id,
            'performed_by_name': self.performed_by_name,
            'checked_in_at': check_in.checked_in_at.isoformat() if check_in.checked_in_at else None,
            'notes': check_in.notes,
        }


def _low_balance_threshold():
    return current_app.config.get('LOW_BALANCE_THRESHOLD', 2)


class CheckInProcessor:
    """Check-in workflow and attendance queries."""

    @staticmethod
    def resolve_holder(request: CheckInRequest) -> Holder:
        """
        Holder named by the request.

        A scanned code wins over explicit ids. Without a code exactly one
        of customer_id / dependent_id must be given.

        Raises:
            InvalidIdentifier, HolderNotFound
        """
        if request.scannable_code:
            holder = resolve_code(request.scannable_code)
        else:
            try:
                holder = Holder.from_columns(request.customer_id, request.dependent_id)
            except (ValueError, TypeError):
                raise InvalidIdentifier(
                    'Provide exactly one of customer_id, dependent_id or a scannable code.',
                    details={'customer_id': request.customer_id, 'dependent_id': request.dependent_id},
                )
        require_holder(holder)
        return holder

    @staticmethod
    def check_in(request: CheckInRequest) -> CheckInDetail:
        """
        Process one check-in request synchronously.

        Returns:
            CheckInDetail for the recorded check-in

        Raises:
            InvalidIdentifier, HolderNotFound, ValidationError,
            NoActiveCard, NoBirthdayPass, NoClassesRemaining
        """
        try:
            try:
                mode = CheckInMode(request.mode)
            except ValueError:
                raise ValidationError(
                    f'Invalid check-in mode: {request.mode}',
                    details={'allowed': [m.value for m in CheckInMode]},
                )

            holder = CheckInProcessor.resolve_holder(request)
            staff = db.session.get(User, request.performed_by_id) if request.performed_by_id else None
            if staff is None or not staff.is_staff:
                raise ValidationError('Check-ins must be performed by a staff member.',
                                      details={'performed_by_id': request.performed_by_id})

            if mode == CheckInMode.BIRTHDAY_DIRECT:
                detail = CheckInProcessor._direct_birthday(holder, staff, request.notes)
            elif mode == CheckInMode.BIRTHDAY_PASS:
                detail = CheckInProcessor._with_birthday_pass(holder, staff, request.notes)
            else:
                detail = CheckInProcessor._standard(holder, staff, request.notes)

            db.session.commit()
        except (CardEngineError, SQLAlchemyError) as e:
            db.session.rollback()
            logger.info('Check-in rejected: %s', e)
            raise

        logger.info('Check-in %s recorded for %s (%s) by %s',
                    detail.check_in.id, holder, mode.value, staff.id)
        return detail

    # ── Modes ───────────────────────────────────────────────

    @staticmethod
    def _record(holder, staff, notes, **fields):
        check_in = CheckIn(
            performed_by_id=staff.id,
            notes=notes,
            **holder.column_values(),
            **fields,
        )
        db.session.add(check_in)
        db.session.flush()
        return check_in

    @staticmethod
    def _direct_birthday(holder, staff, notes):
        """Free class, no pass lookup, no ledger mutation."""
        check_in = CheckInProcessor._record(
            holder, staff, notes or DIRECT_BIRTHDAY_NOTE,
            card_id=None,
            is_birthday_checkin=True,
            birthday_pass_id=None,
        )
        return CheckInDetail(check_in, check_in.holder_name, BIRTHDAY_CARD_LABEL, staff.full_name, None)

    @staticmethod
    def _with_birthday_pass(holder, staff, notes):
        """Legacy path: today's unused pass is required and consumed."""
        birthday_pass = BirthdayPassService.find_valid_pass(holder)
        if birthday_pass is None:
            raise NoBirthdayPass(details={'holder': holder.to_dict()})

        check_in = CheckInProcessor._record(
            holder, staff, notes or PASS_BIRTHDAY_NOTE,
            card_id=None,
            is_birthday_checkin=True,
            birthday_pass_id=birthday_pass.id,
        )
        BirthdayPassService.consume_pass(birthday_pass.id, check_in.id)
        return CheckInDetail(check_in, check_in.holder_name, BIRTHDAY_CARD_LABEL, staff.full_name, None)

    @staticmethod
    def _standard(holder, staff, notes):
        """Resolve the active card; deduct for punch cards, attendance only for subscriptions."""
        card = None
        for _ in range(MAX_RESOLVE_ATTEMPTS):
            card = CardLedger.resolve_active_card(holder)
            if card is None:
                raise NoActiveCard(CardLedger.explain_no_active_card(holder))
            if card.is_subscription:
                break
            try:
                card = CardLedger.deduct_class(card.id)
                break
            except NoClassesRemaining:
                logger.info('Card %s used up concurrently, re-resolving for %s', card.id, holder)
                card = None
        if card is None:
            raise NoActiveCard('exhausted')

        if card.is_subscription:
            check_in = CheckInProcessor._record(
                holder, staff, notes,
                card_id=card.id,
                is_birthday_checkin=False,
            )
            return CheckInDetail(check_in, check_in.holder_name, card.card_name, staff.full_name, UNLIMITED)

        check_in = CheckInProcessor._record(
            holder, staff, notes,
            card_id=card.id,
            is_birthday_checkin=False,
            classes_remaining_after=card.classes_remaining,
        )

        if card.classes_remaining <= _low_balance_threshold():
            notifications.low_balance(card)
        if card.classes_remaining == 0:
            notifications.exhausted(card)

        return CheckInDetail(check_in, check_in.holder_name, card.card_name, staff.full_name,
                             card.classes_remaining)

    # ── Queries ─────────────────────────────────────────────

    @staticmethod
    def detail_for(check_in: CheckIn) -> CheckInDetail:
        """Rebuild the detail view of a stored check-in."""
        if check_in.is_birthday_checkin:
            card_name, remaining = BIRTHDAY_CARD_LABEL, None
        elif check_in.card is not None and check_in.card.is_subscription:
            card_name, remaining = check_in.card.card_name, UNLIMITED
        else:
            card_name = check_in.card.card_name if check_in.card else None
            remaining = check_in.classes_remaining_after
        performed_by = check_in.performed_by.full_name if check_in.performed_by else 'Unknown'
        return CheckInDetail(check_in, check_in.holder_name, card_name, performed_by, remaining)

    @staticmethod
    def todays_check_ins() -> List[CheckIn]:
        start, end = studio_day_bounds(studio_today())
        return (
            CheckIn.query
            .filter(CheckIn.checked_in_at >= start, CheckIn.checked_in_at < end)
            .order_by(CheckIn.checked_in_at.desc(), CheckIn.id.desc())
            .all()
        )

    @staticmethod
    def today_check_in_count() -> int:
        start, end = studio_day_bounds(studio_today())
        return CheckIn.query.filter(
            CheckIn.checked_in_at >= start,
            CheckIn.checked_in_at < end,
        ).count()

    @staticmethod
    def check_in_history(start_date=None, end_date=None, holder: Optional[Holder] = None):
        """Query of check-ins (newest first) between two studio dates, inclusive."""
        query = CheckIn.query
        if start_date:
            query = query.filter(CheckIn.checked_in_at >= studio_day_bounds(start_date)[0])
        if end_date:
            query = query.filter(CheckIn.checked_in_at < studio_day_bounds(end_date)[1])
        if holder is not None:
            query = query.filter(holder.filter_for(CheckIn))
        return query.order_by(CheckIn.checked_in_at.desc(), CheckIn.id.desc())

    @staticmethod
    def holder_check_ins(holder: Holder, limit=50) -> List[CheckIn]:
        return CheckInProcessor.check_in_history(holder=holder).limit(limit).all()
