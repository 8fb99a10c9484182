"""
Holder reference shared by cards, check-ins, birthday passes and the
notification outbox.

A holder is either a customer account or a dependent (family member)
of a customer. Tables store it as the column pair customer_id /
dependent_id with exactly one set; code passes a Holder value around.
"""
import enum
from dataclasses import dataclass

from punchcard.extensions import db


class HolderKind(str, enum.Enum):
    """Which table a holder id points into."""
    CUSTOMER = 'customer'
    DEPENDENT = 'dependent'


@dataclass(frozen=True)
class Holder:
    """Tagged holder reference: Customer(id) or Dependent(id)."""
    kind: HolderKind
    id: int

    @classmethod
    def customer(cls, customer_id):
        return cls(HolderKind.CUSTOMER, int(customer_id))

    @classmethod
    def dependent(cls, dependent_id):
        return cls(HolderKind.DEPENDENT, int(dependent_id))

    @classmethod
    def from_columns(cls, customer_id=None, dependent_id=None):
        """Build from a customer_id/dependent_id pair. Exactly one must be set."""
        if (customer_id is None) == (dependent_id is None):
            raise ValueError('Exactly one of customer_id or dependent_id is required')
        if customer_id is not None:
            return cls.customer(customer_id)
        return cls.dependent(dependent_id)

    @property
    def is_dependent(self):
        return self.kind == HolderKind.DEPENDENT

    def column_values(self):
        """Column assignment for a row owned by this holder."""
        if self.is_dependent:
            return {'customer_id': None, 'dependent_id': self.id}
        return {'customer_id': self.id, 'dependent_id': None}

    def filter_for(self, model):
        """WHERE criterion selecting rows of `model` owned by this holder."""
        if self.is_dependent:
            return model.dependent_id == self.id
        return model.customer_id == self.id

    def load(self):
        """Fetch the User or Dependent row, or None."""
        from punchcard.models.user import User, Dependent
        model = Dependent if self.is_dependent else User
        return db.session.get(model, self.id)

    def to_dict(self):
        return {'kind': self.kind.value, 'id': self.id}

    def __str__(self):
        return f'{self.kind.value}:{self.id}'


def one_holder_constraint(table_name):
    """CHECK constraint: exactly one of customer_id / dependent_id is set."""
    return db.CheckConstraint(
        '(customer_id IS NULL) <> (dependent_id IS NULL)',
        name=f'ck_{table_name}_one_holder',
    )


class HolderMixin:
    """Accessors for models carrying the customer_id / dependent_id pair."""

    @property
    def holder(self):
        return Holder.from_columns(self.customer_id, self.dependent_id)

    @property
    def holder_record(self):
        return self.dependent if self.dependent_id is not None else self.customer

    @property
    def holder_name(self):
        record = self.holder_record
        return record.full_name if record else None
