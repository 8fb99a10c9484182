"""
Notification outbox.

The engine never talks to email/SMS directly: it appends a trigger row in
the same transaction as the change that caused it, and a delivery worker
drains pending rows afterwards (at-least-once, best-effort).
"""
import enum
from datetime import datetime

from punchcard.extensions import db
from punchcard.models.holder import HolderMixin, one_holder_constraint


class NotificationKind(str, enum.Enum):
    """What happened."""
    PURCHASE_CONFIRMED = 'purchase_confirmed'
    LOW_BALANCE = 'low_balance'
    EXHAUSTED = 'exhausted'
    EXPIRING_SOON = 'expiring_soon'
    EXPIRED = 'expired'
    BIRTHDAY = 'birthday'


class NotificationStatus(str, enum.Enum):
    """Delivery state of an outbox row."""
    PENDING = 'pending'
    DISPATCHED = 'dispatched'
    FAILED = 'failed'


class NotificationTrigger(HolderMixin, db.Model):
    """Outbox row consumed by the delivery worker."""

    __tablename__ = 'notification_triggers'

    id = db.Column(db.Integer, primary_key=True)
    kind = db.Column(
        db.Enum(NotificationKind, values_callable=lambda x: [e.value for e in x]),
        nullable=False,
        index=True,
    )
    customer_id = db.Column(
        db.Integer, db.ForeignKey('users.id', ondelete='CASCADE'), nullable=True, index=True,
    )
    dependent_id = db.Column(
        db.Integer, db.ForeignKey('dependents.id', ondelete='CASCADE'), nullable=True, index=True,
    )
    payload = db.Column(db.JSON, nullable=False, default=dict)

    status = db.Column(
        db.Enum(NotificationStatus, values_callable=lambda x: [e.value for e in x]),
        nullable=False,
        default=NotificationStatus.PENDING,
        index=True,
    )
    attempts = db.Column(db.Integer, nullable=False, default=0)
    last_error = db.Column(db.Text)

    created_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow)
    dispatched_at = db.Column(db.DateTime, nullable=True)

    __table_args__ = (
        one_holder_constraint('notification_triggers'),
    )

    customer = db.relationship('User', foreign_keys=[customer_id])
    dependent = db.relationship('Dependent', foreign_keys=[dependent_id])

    def __repr__(self):
        return f'<NotificationTrigger {self.id} {self.kind.value} {self.status.value}>'

    @classmethod
    def pending(cls, limit=None):
        """Oldest-first pending rows."""
        query = cls.query.filter_by(status=NotificationStatus.PENDING).order_by(cls.created_at, cls.id)
        if limit:
            query = query.limit(limit)
        return query.all()

    @property
    def recipient_email(self):
        """Dependents' notifications go to the account owner."""
        record = self.holder_record
        return record.notification_email if record else None

    def mark_dispatched(self):
        self.status = NotificationStatus.DISPATCHED
        self.dispatched_at = datetime.utcnow()
        self.attempts = (self.attempts or 0) + 1
        self.last_error = None

    def mark_attempt_failed(self, error, max_attempts):
        """Record a failed delivery; give up once max_attempts is reached."""
        self.attempts = (self.attempts or 0) + 1
        self.last_error = str(error)[:2000]
        if self.attempts >= max_attempts:
            self.status = NotificationStatus.FAILED

    def to_dict(self):
        return {
            'id': self.id,
            'kind': self.kind.value,
            'holder': self.holder.to_dict(),
            'payload': self.payload,
            'status': self.status.value,
            'attempts': self.attempts,
            'created_at': self.created_at.isoformat() if self.created_at else None,
        }
