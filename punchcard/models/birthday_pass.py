"""
Birthday pass: single-use free class valid on the holder's birthday.
"""
from datetime import datetime

from punchcard.extensions import db
from punchcard.models.holder import HolderMixin, one_holder_constraint


class BirthdayPass(HolderMixin, db.Model):
    """Once-per-day free class entitlement."""

    __tablename__ = 'birthday_passes'

    id = db.Column(db.Integer, primary_key=True)
    customer_id = db.Column(
        db.Integer, db.ForeignKey('users.id', ondelete='CASCADE'), nullable=True, index=True,
    )
    dependent_id = db.Column(
        db.Integer, db.ForeignKey('dependents.id', ondelete='CASCADE'), nullable=True, index=True,
    )
    valid_date = db.Column(db.Date, nullable=False, index=True)
    expires_at = db.Column(db.DateTime, nullable=False)  # end of valid_date, naive UTC
    used = db.Column(db.Boolean, nullable=False, default=False)
    used_at = db.Column(db.DateTime, nullable=True)
    # use_alter: check_ins also points back here
    check_in_id = db.Column(
        db.Integer,
        db.ForeignKey('check_ins.id', use_alter=True, name='fk_birthday_passes_check_in_id'),
        nullable=True,
    )

    created_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow)

    __table_args__ = (
        one_holder_constraint('birthday_passes'),
        db.UniqueConstraint('customer_id', 'valid_date', name='uq_birthday_pass_customer_day'),
        db.UniqueConstraint('dependent_id', 'valid_date', name='uq_birthday_pass_dependent_day'),
    )

    customer = db.relationship('User', foreign_keys=[customer_id])
    dependent = db.relationship('Dependent', foreign_keys=[dependent_id])

    def __repr__(self):
        return f'<BirthdayPass {self.id} {self.holder} {self.valid_date} used={self.used}>'
