"""
Expiration & alert sweep.

Pure orchestration over the ledger and the birthday pass manager: expire
overdue cards, queue reminder / low-balance / birthday notifications and
issue birthday passes. Safe to re-run; the underlying operations are
idempotent. A failure on one card or holder is recorded in the report and
the sweep moves on to the next item.
"""
import logging
from datetime import timedelta
from dataclasses import dataclass, field
from typing import Any, Dict, List

from flask import current_app

from punchcard.extensions import db
from punchcard.models.card import Card, CardStatus
from punchcard.services import notifications
from punchcard.services.birthday import BirthdayPassService
from punchcard.services.ledger import CardLedger
from punchcard.utils.timezone import studio_today, days_until

logger = logging.getLogger(__name__)


@dataclass
class SweepReport:
    """Counters and per-item failures of one sweep run."""
    expired: int = 0
    expiring_soon: int = 0
    low_balance: int = 0
    birthdays: int = 0
    passes_created: int = 0
    passes_purged: int = 0
    dry_run: bool = False
    errors: List[Dict[str, Any]] = field(default_factory=list)

    @property
    def ok(self):
        return not self.errors

    def record_error(self, step, item, error):
        logger.error('[SWEEP] %s failed for %s: %s', step, item, error)
        self.errors.append({'step': step, 'item': str(item), 'error': str(error)})

    def to_dict(self):
        return {
            'expired': self.expired,
            'expiring_soon': self.expiring_soon,
            'low_balance': self.low_balance,
            'birthdays': self.birthdays,
            'passes_created': self.passes_created,
            'passes_purged': self.passes_purged,
            'dry_run': self.dry_run,
            'errors': list(self.errors),
        }


class AlertSweep:
    """Periodic sweep over cards and birthdays."""

    def __init__(self, reminder_days=None, low_balance_threshold=None):
        config = current_app.config
        self.reminder_days = tuple(reminder_days or config.get('EXPIRATION_REMINDER_DAYS', (7, 3, 1)))
        self.low_balance_threshold = (
            low_balance_threshold if low_balance_threshold is not None
            else config.get('LOW_BALANCE_THRESHOLD', 2)
        )

    # ── Entry points ────────────────────────────────────────

    def run_daily(self, dry_run=False) -> SweepReport:
        """Full daily sweep: expire, remind, low balance, birthdays, pass cleanup."""
        report = SweepReport(dry_run=dry_run)
        today = studio_today()
        logger.info('[SWEEP] Daily sweep for %s%s', today, ' (dry run)' if dry_run else '')

        self._expire_overdue(report, today)
        self._expiration_reminders(report, today)
        self._low_balance(report, today)
        self._birthdays(report, today)
        self._purge_passes(report, today)

        logger.info('[SWEEP] Daily sweep done: %s', report.to_dict())
        return report

    def run_balance_check(self) -> SweepReport:
        """Low-balance pass only (runs every few hours)."""
        report = SweepReport()
        self._low_balance(report, studio_today())
        return report

    def run_midnight_cleanup(self) -> SweepReport:
        """Expire cards that ran out yesterday and drop unused birthday passes."""
        report = SweepReport()
        today = studio_today()
        self._expire_overdue(report, today)
        self._purge_passes(report, today)
        return report

    # ── Steps ───────────────────────────────────────────────

    def _expire_overdue(self, report, today):
        if report.dry_run:
            report.expired = Card.query.filter(
                Card.status == CardStatus.ACTIVE,
                Card.expiration_date < today,
            ).count()
            return

        try:
            report.expired = len(CardLedger.expire_overdue_cards(today))
        except Exception as e:
            db.session.rollback()
            report.record_error('expire', 'batch', e)

    def _expiration_reminders(self, report, today):
        for days in self.reminder_days:
            target = today + timedelta(days=days)
            for card in CardLedger.cards_expiring_on(target):
                if report.dry_run:
                    report.expiring_soon += 1
                    continue
                try:
                    notifications.expiring_soon(card, days_until(card.expiration_date, today))
                    db.session.commit()
                    report.expiring_soon += 1
                except Exception as e:
                    db.session.rollback()
                    report.record_error('expiring_soon', f'card:{card.id}', e)

    def _low_balance(self, report, today):
        for card in CardLedger.low_balance_cards(self.low_balance_threshold, today):
            if report.dry_run:
                report.low_balance += 1
                continue
            try:
                notifications.low_balance(card)
                db.session.commit()
                report.low_balance += 1
            except Exception as e:
                db.session.rollback()
                report.record_error('low_balance', f'card:{card.id}', e)

    def _birthdays(self, report, today):
        for person in BirthdayPassService.find_todays_birthdays(today):
            if report.dry_run:
                report.birthdays += 1
                continue
            try:
                existing = BirthdayPassService.pass_for_day(person.holder, today)
                birthday_pass = existing or BirthdayPassService.create_pass(
                    person.holder, enforce_birthday=False,
                )
                if existing is None:
                    report.passes_created += 1
                notifications.birthday(person.holder, person.full_name, birthday_pass)
                db.session.commit()
                report.birthdays += 1
            except Exception as e:
                db.session.rollback()
                report.record_error('birthday', person.holder, e)

    def _purge_passes(self, report, today):
        if report.dry_run:
            return
        try:
            report.passes_purged = BirthdayPassService.purge_unused_passes(before=today)
        except Exception as e:
            db.session.rollback()
            report.record_error('purge_passes', 'batch', e)
