"""
Birthday pass manager.
Issues, validates and consumes the once-a-year free class, independently
of the holder's cards.
"""
import logging
from dataclasses import dataclass
from datetime import date, datetime
from typing import List, Optional

from sqlalchemy import update
from sqlalchemy.exc import IntegrityError

from punchcard.errors import BirthdayPassNotFound, NotBirthdayToday, PassAlreadyUsed
from punchcard.extensions import db
from punchcard.models.birthday_pass import BirthdayPass
from punchcard.models.holder import Holder
from punchcard.models.user import User, Dependent, UserRole
from punchcard.services.ledger import require_holder
from punchcard.utils.timezone import studio_today, end_of_studio_day, month_day

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class BirthdayPerson:
    """Holder celebrating today, with what the front desk needs to greet them."""
    holder: Holder
    first_name: str
    last_name: str
    birthday: Optional[date]
    email: Optional[str] = None
    check_in_code: Optional[str] = None

    @property
    def full_name(self):
        return f'{self.first_name} {self.last_name}'.strip()

    def to_dict(self):
        return {
            'type': self.holder.kind.value,
            'id': self.holder.id,
            'first_name': self.first_name,
            'last_name': self.last_name,
            'birthday': self.birthday.isoformat() if self.birthday else None,
            'email': self.email,
            'check_in_code': self.check_in_code,
        }


def _matches_today(birthday, today):
    parts = month_day(birthday)
    return parts is not None and parts == (today.month, today.day)


class BirthdayPassService:
    """Birthday pass lifecycle."""

    @staticmethod
    def is_birthday(holder: Holder, today=None) -> bool:
        """True when the holder's stored birthday month/day is today's."""
        record = require_holder(holder)
        return _matches_today(record.birthday, today or studio_today())

    @staticmethod
    def pass_for_day(holder: Holder, day) -> Optional[BirthdayPass]:
        return BirthdayPass.query.filter(
            holder.filter_for(BirthdayPass),
            BirthdayPass.valid_date == day,
        ).first()

    @staticmethod
    def create_pass(holder: Holder, enforce_birthday=True) -> BirthdayPass:
        """
        Issue today's birthday pass. Idempotent per holder and day.

        Args:
            holder: customer or dependent
            enforce_birthday: reject when today is not the holder's birthday.
                The scheduler passes False since it only calls this for
                holders it already matched.

        Returns:
            The new pass, or the one already issued today

        Raises:
            HolderNotFound, NotBirthdayToday
        """
        today = studio_today()
        if enforce_birthday and not BirthdayPassService.is_birthday(holder, today):
            raise NotBirthdayToday(details={'holder': holder.to_dict()})

        existing = BirthdayPassService.pass_for_day(holder, today)
        if existing is not None:
            return existing

        birthday_pass = BirthdayPass(
            valid_date=today,
            expires_at=end_of_studio_day(today),
            used=False,
            **holder.column_values(),
        )
        try:
            with db.session.begin_nested():
                db.session.add(birthday_pass)
        except IntegrityError:
            # Lost a race with another request creating the same pass
            existing = BirthdayPassService.pass_for_day(holder, today)
            if existing is None:
                raise
            logger.info('Birthday pass for %s on %s already exists (id=%s)', holder, today, existing.id)
            return existing

        db.session.commit()
        logger.info('Birthday pass %s issued to %s for %s', birthday_pass.id, holder, today)
        return birthday_pass

    @staticmethod
    def find_valid_pass(holder: Holder) -> Optional[BirthdayPass]:
        """Unused pass dated today that has not yet expired."""
        return BirthdayPass.query.filter(
            holder.filter_for(BirthdayPass),
            BirthdayPass.valid_date == studio_today(),
            BirthdayPass.used.is_(False),
            BirthdayPass.expires_at > datetime.utcnow(),
        ).order_by(BirthdayPass.id).first()

    @staticmethod
    def consume_pass(pass_id, check_in_id) -> BirthdayPass:
        """
        Mark a pass used and link the check-in that used it.

        Conditional UPDATE on used = false; the caller owns the transaction.

        Raises:
            BirthdayPassNotFound, PassAlreadyUsed
        """
        result = db.session.execute(
            update(BirthdayPass)
            .where(BirthdayPass.id == pass_id, BirthdayPass.used.is_(False))
            .values(used=True, used_at=datetime.utcnow(), check_in_id=check_in_id)
            .execution_options(synchronize_session=False)
        )
        birthday_pass = db.session.get(BirthdayPass, pass_id, populate_existing=True)
        if birthday_pass is None:
            raise BirthdayPassNotFound(details={'birthday_pass_id': pass_id})
        if result.rowcount == 0:
            raise PassAlreadyUsed(details={
                'birthday_pass_id': pass_id,
                'check_in_id': birthday_pass.check_in_id,
            })
        return birthday_pass

    @staticmethod
    def find_todays_birthdays(today=None) -> List[BirthdayPerson]:
        """Active customers and all dependents whose birthday is today."""
        today = today or studio_today()
        people = []

        customers = User.query.filter(
            User.role == UserRole.CUSTOMER,
            User.is_active.is_(True),
            User.birthday.isnot(None),
        ).order_by(User.id).all()
        for user in customers:
            if _matches_today(user.birthday, today):
                people.append(BirthdayPerson(
                    holder=user.holder,
                    first_name=user.first_name,
                    last_name=user.last_name,
                    birthday=user.birthday,
                    email=user.email,
                    check_in_code=user.check_in_code,
                ))

        dependents = Dependent.query.filter(Dependent.birthday.isnot(None)).order_by(Dependent.id).all()
        for dependent in dependents:
            if _matches_today(dependent.birthday, today):
                people.append(BirthdayPerson(
                    holder=dependent.holder,
                    first_name=dependent.first_name,
                    last_name=dependent.last_name,
                    birthday=dependent.birthday,
                    email=dependent.notification_email,
                    check_in_code=dependent.check_in_code,
                ))

        logger.info('Found %d birthday(s) for %s', len(people), today)
        return people

    @staticmethod
    def purge_unused_passes(before=None) -> int:
        """Delete passes never used and dated before `before` (default today)."""
        before = before or studio_today()
        count = BirthdayPass.query.filter(
            BirthdayPass.used.is_(False),
            BirthdayPass.valid_date < before,
        ).delete(synchronize_session=False)
        db.session.commit()
        if count:
            logger.info('Removed %d unused birthday pass(es) before %s', count, before)
        return count
