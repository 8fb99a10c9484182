"""
Marshmallow schemas for API serialization.
Dump schemas turn models into JSON-safe dictionaries; load schemas
validate request bodies before they reach the services.
"""
from marshmallow import Schema, fields, validate, validates_schema, ValidationError, EXCLUDE

from punchcard.models.card import PaymentMethod
from punchcard.services.checkin import CheckInMode


# ── Shared helpers ──────────────────────────────────────────

class BaseSchema(Schema):
    """Base schema with common config."""
    class Meta:
        ordered = True


def _enum_value(value):
    return value.value if hasattr(value, 'value') else value


class HolderFieldsMixin:
    """customer_id / dependent_id pair; exactly one must be given."""

    @validates_schema
    def validate_one_holder(self, data, **kwargs):
        if (data.get('customer_id') is None) == (data.get('dependent_id') is None):
            raise ValidationError('Provide exactly one of customer_id or dependent_id.', '_schema')


# ── Catalog ─────────────────────────────────────────────────

class CardTypeSchema(BaseSchema):
    """Catalog entry."""
    id = fields.Int(dump_only=True)
    name = fields.Str()
    category = fields.Method('get_category')
    class_count = fields.Int()
    validity_months = fields.Int()
    price = fields.Decimal(as_string=True)
    price_per_class = fields.Decimal(as_string=True, dump_only=True, allow_none=True)
    description = fields.Str(allow_none=True)
    is_active = fields.Bool()

    def get_category(self, obj):
        return _enum_value(obj.category)


# ── Cards ───────────────────────────────────────────────────

class HolderSchema(BaseSchema):
    kind = fields.Method('get_kind')
    id = fields.Int()

    def get_kind(self, obj):
        return _enum_value(obj.kind)


class CardSchema(BaseSchema):
    """Card with its balance and status."""
    id = fields.Int(dump_only=True)
    holder = fields.Nested(HolderSchema, dump_only=True)
    holder_name = fields.Str(dump_only=True)
    card_type_id = fields.Int()
    card_name = fields.Str(dump_only=True)
    is_subscription = fields.Bool(dump_only=True)
    total_classes = fields.Int()
    classes_remaining = fields.Int()
    purchase_date = fields.Date(format='iso')
    expiration_date = fields.Date(format='iso')
    amount_paid = fields.Decimal(as_string=True)
    status = fields.Method('get_status')
    payment_method = fields.Method('get_payment_method')
    external_payment_reference = fields.Str(allow_none=True)
    created_by_id = fields.Int(allow_none=True)
    created_at = fields.DateTime(format='iso')

    def get_status(self, obj):
        return _enum_value(obj.status)

    def get_payment_method(self, obj):
        return _enum_value(obj.payment_method)


class PaymentConfirmedSchema(HolderFieldsMixin, BaseSchema):
    """Inbound payment confirmation from the storefront / payment gateway."""
    class Meta:
        ordered = True
        unknown = EXCLUDE

    customer_id = fields.Int(load_default=None, allow_none=True)
    dependent_id = fields.Int(load_default=None, allow_none=True)
    card_type_id = fields.Int(required=True)
    amount_paid = fields.Decimal(required=True, validate=validate.Range(min=0))
    payment_method = fields.Str(
        load_default=PaymentMethod.ONLINE.value,
        validate=validate.OneOf([m.value for m in PaymentMethod]),
    )
    external_ref = fields.Str(load_default=None, allow_none=True)
    allow_stacking = fields.Bool(load_default=False)


class AdminPassSchema(HolderFieldsMixin, BaseSchema):
    """Admin-created pass with a custom class count and expiration."""
    customer_id = fields.Int(load_default=None, allow_none=True)
    dependent_id = fields.Int(load_default=None, allow_none=True)
    classes = fields.Int(required=True, validate=validate.Range(min=1))
    expiration_date = fields.Date(required=True)
    amount_paid = fields.Decimal(load_default=0, validate=validate.Range(min=0))


# ── Check-ins ───────────────────────────────────────────────

class CheckInRequestSchema(BaseSchema):
    """Front desk check-in. A scanned code or one holder id."""
    customer_id = fields.Int(load_default=None, allow_none=True)
    dependent_id = fields.Int(load_default=None, allow_none=True)
    scannable_code = fields.Str(load_default=None, allow_none=True)
    mode = fields.Str(
        load_default=CheckInMode.STANDARD.value,
        validate=validate.OneOf([m.value for m in CheckInMode]),
    )
    notes = fields.Str(load_default=None, allow_none=True, validate=validate.Length(max=500))


class CheckInSchema(BaseSchema):
    """Check-in history row."""
    id = fields.Int(dump_only=True)
    holder = fields.Nested(HolderSchema, dump_only=True)
    holder_name = fields.Str(dump_only=True)
    card_id = fields.Int(allow_none=True)
    card_name = fields.Method('get_card_name')
    is_birthday_checkin = fields.Bool()
    birthday_pass_id = fields.Int(allow_none=True)
    classes_remaining_after = fields.Int(allow_none=True)
    performed_by_id = fields.Int()
    checked_in_at = fields.DateTime(format='iso')
    notes = fields.Str(allow_none=True)

    def get_card_name(self, obj):
        return obj.card.card_name if obj.card else None


class HistoryArgsSchema(BaseSchema):
    """Query parameters for check-in history."""
    class Meta:
        ordered = True
        unknown = EXCLUDE

    start_date = fields.Date(load_default=None)
    end_date = fields.Date(load_default=None)
    customer_id = fields.Int(load_default=None)
    dependent_id = fields.Int(load_default=None)

    @validates_schema
    def validate_range(self, data, **kwargs):
        start, end = data.get('start_date'), data.get('end_date')
        if start and end and start > end:
            raise ValidationError('start_date must not be after end_date.', 'start_date')


# ── Birthdays ───────────────────────────────────────────────

class BirthdayPassSchema(BaseSchema):
    """Birthday pass."""
    id = fields.Int(dump_only=True)
    holder = fields.Nested(HolderSchema, dump_only=True)
    holder_name = fields.Str(dump_only=True)
    valid_date = fields.Date(format='iso')
    expires_at = fields.DateTime(format='iso')
    used = fields.Bool()
    used_at = fields.DateTime(format='iso', allow_none=True)
    check_in_id = fields.Int(allow_none=True)


class BirthdayPassRequestSchema(HolderFieldsMixin, BaseSchema):
    customer_id = fields.Int(load_default=None, allow_none=True)
    dependent_id = fields.Int(load_default=None, allow_none=True)


# ── Notifications ───────────────────────────────────────────

class NotificationTriggerSchema(BaseSchema):
    """Outbox row as seen by the delivery consumer."""
    id = fields.Int(dump_only=True)
    kind = fields.Method('get_kind')
    holder = fields.Nested(HolderSchema, dump_only=True)
    recipient_email = fields.Str(dump_only=True, allow_none=True)
    payload = fields.Dict()
    status = fields.Method('get_status')
    attempts = fields.Int()
    last_error = fields.Str(allow_none=True)
    created_at = fields.DateTime(format='iso')

    def get_kind(self, obj):
        return _enum_value(obj.kind)

    def get_status(self, obj):
        return _enum_value(obj.status)


# ── Admin ───────────────────────────────────────────────────

class SchedulerRunSchema(BaseSchema):
    job = fields.Str(required=True)


class RevenueArgsSchema(BaseSchema):
    class Meta:
        ordered = True
        unknown = EXCLUDE

    start_date = fields.Date(load_default=None)
    end_date = fields.Date(load_default=None)
