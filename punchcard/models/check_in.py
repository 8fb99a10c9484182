"""
Check-in audit trail. Rows are append-only.
"""
from datetime import datetime

from punchcard.extensions import db
from punchcard.models.holder import HolderMixin, one_holder_constraint


class CheckIn(HolderMixin, db.Model):
    """One class attendance, optionally tied to a card deduction."""

    __tablename__ = 'check_ins'

    id = db.Column(db.Integer, primary_key=True)
    customer_id = db.Column(
        db.Integer, db.ForeignKey('users.id', ondelete='CASCADE'), nullable=True, index=True,
    )
    dependent_id = db.Column(
        db.Integer, db.ForeignKey('dependents.id', ondelete='CASCADE'), nullable=True, index=True,
    )
    card_id = db.Column(db.Integer, db.ForeignKey('cards.id'), nullable=True, index=True)
    is_birthday_checkin = db.Column(db.Boolean, nullable=False, default=False)
    birthday_pass_id = db.Column(db.Integer, db.ForeignKey('birthday_passes.id'), nullable=True)

    # Post-deduction balance captured at check-in time (punch cards only)
    classes_remaining_after = db.Column(db.Integer, nullable=True)

    checked_in_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow, index=True)
    performed_by_id = db.Column(db.Integer, db.ForeignKey('users.id'), nullable=False)
    notes = db.Column(db.Text)

    __table_args__ = (
        one_holder_constraint('check_ins'),
    )

    card = db.relationship('Card', backref=db.backref('check_ins', lazy='dynamic'))
    customer = db.relationship('User', foreign_keys=[customer_id])
    dependent = db.relationship('Dependent', foreign_keys=[dependent_id])
    performed_by = db.relationship('User', foreign_keys=[performed_by_id])
    birthday_pass = db.relationship('BirthdayPass', foreign_keys=[birthday_pass_id])

    def __repr__(self):
        return f'<CheckIn {self.id} {self.holder} card={self.card_id}>'
