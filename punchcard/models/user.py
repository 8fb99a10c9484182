"""
Studio accounts: customers, staff, admins and their dependents.
Authentication lives in the identity service; these rows only carry
what the card engine needs (names, birthday, scannable codes, role).
"""
import enum
from datetime import datetime

from punchcard.extensions import db
from punchcard.models.holder import Holder


class UserRole(str, enum.Enum):
    """Account roles."""
    CUSTOMER = 'customer'
    STAFF = 'staff'
    ADMIN = 'admin'


class User(db.Model):
    """Customer or staff account."""

    __tablename__ = 'users'

    id = db.Column(db.Integer, primary_key=True)
    email = db.Column(db.String(255), unique=True, nullable=False, index=True)
    first_name = db.Column(db.String(100), nullable=False)
    last_name = db.Column(db.String(100), nullable=False)
    phone = db.Column(db.String(30))
    birthday = db.Column(db.Date, nullable=True)
    role = db.Column(
        db.Enum(UserRole, values_callable=lambda x: [e.value for e in x]),
        nullable=False,
        default=UserRole.CUSTOMER,
    )
    qr_code = db.Column(db.String(120), unique=True, nullable=True)
    check_in_code = db.Column(db.String(4), unique=True, nullable=True, index=True)
    is_active = db.Column(db.Boolean, nullable=False, default=True)
    receive_emails = db.Column(db.Boolean, nullable=False, default=True)

    created_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow)
    updated_at = db.Column(db.DateTime, nullable=True, onupdate=datetime.utcnow)

    dependents = db.relationship(
        'Dependent',
        back_populates='primary_user',
        cascade='all, delete-orphan',
        order_by='Dependent.id',
    )

    def __repr__(self):
        return f'<User {self.id} {self.email} ({self.role.value})>'

    @property
    def full_name(self):
        return f'{self.first_name} {self.last_name}'.strip()

    @property
    def is_staff(self):
        """Staff and admins can perform check-ins."""
        return self.role in (UserRole.STAFF, UserRole.ADMIN)

    @property
    def is_admin(self):
        return self.role == UserRole.ADMIN

    @property
    def holder(self):
        return Holder.customer(self.id)

    @property
    def notification_email(self):
        return self.email


class Dependent(db.Model):
    """Family member attending classes on a customer's account."""

    __tablename__ = 'dependents'

    id = db.Column(db.Integer, primary_key=True)
    primary_user_id = db.Column(
        db.Integer,
        db.ForeignKey('users.id', ondelete='CASCADE'),
        nullable=False,
        index=True,
    )
    first_name = db.Column(db.String(100), nullable=False)
    last_name = db.Column(db.String(100), nullable=False)
    birthday = db.Column(db.Date, nullable=True)
    relationship_label = db.Column(db.String(50))  # child, spouse, ...
    qr_code = db.Column(db.String(120), unique=True, nullable=True)
    check_in_code = db.Column(db.String(4), unique=True, nullable=True, index=True)

    created_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow)

    primary_user = db.relationship('User', back_populates='dependents')

    def __repr__(self):
        return f'<Dependent {self.id} of user={self.primary_user_id}>'

    @property
    def full_name(self):
        return f'{self.first_name} {self.last_name}'.strip()

    @property
    def holder(self):
        return Holder.dependent(self.id)

    @property
    def notification_email(self):
        """Dependents have no inbox; the account owner gets their mail."""
        return self.primary_user.email if self.primary_user else None
