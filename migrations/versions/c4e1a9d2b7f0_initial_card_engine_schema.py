"""Initial card engine schema

Revision ID: c4e1a9d2b7f0
Revises:
Create Date: 2026-10-18 09:12:41.503218

"""
from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = 'c4e1a9d2b7f0'
down_revision = None
branch_labels = None
depends_on = None

user_role = sa.Enum('customer', 'staff', 'admin', name='userrole')
card_category = sa.Enum('punch_card', 'subscription', name='cardcategory')
card_status = sa.Enum('active', 'exhausted', 'expired', name='cardstatus')
payment_method = sa.Enum('online', 'cash', 'admin_created', name='paymentmethod')
notification_kind = sa.Enum(
    'purchase_confirmed', 'low_balance', 'exhausted', 'expiring_soon', 'expired', 'birthday',
    name='notificationkind',
)
notification_status = sa.Enum('pending', 'dispatched', 'failed', name='notificationstatus')

ONE_HOLDER = '(customer_id IS NULL) <> (dependent_id IS NULL)'


def _holder_columns():
    return [
        sa.Column('customer_id', sa.Integer(), nullable=True),
        sa.Column('dependent_id', sa.Integer(), nullable=True),
        sa.ForeignKeyConstraint(['customer_id'], ['users.id'], ondelete='CASCADE'),
        sa.ForeignKeyConstraint(['dependent_id'], ['dependents.id'], ondelete='CASCADE'),
    ]


def _holder_indexes(table):
    with op.batch_alter_table(table, schema=None) as batch_op:
        batch_op.create_index(f'ix_{table}_customer_id', ['customer_id'], unique=False)
        batch_op.create_index(f'ix_{table}_dependent_id', ['dependent_id'], unique=False)


def upgrade():
    op.create_table('users',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('email', sa.String(length=255), nullable=False),
        sa.Column('first_name', sa.String(length=100), nullable=False),
        sa.Column('last_name', sa.String(length=100), nullable=False),
        sa.Column('phone', sa.String(length=30), nullable=True),
        sa.Column('birthday', sa.Date(), nullable=True),
        sa.Column('role', user_role, nullable=False),
        sa.Column('qr_code', sa.String(length=120), nullable=True),
        sa.Column('check_in_code', sa.String(length=4), nullable=True),
        sa.Column('is_active', sa.Boolean(), nullable=False),
        sa.Column('receive_emails', sa.Boolean(), nullable=False),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('updated_at', sa.DateTime(), nullable=True),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('qr_code'),
    )
    with op.batch_alter_table('users', schema=None) as batch_op:
        batch_op.create_index('ix_users_email', ['email'], unique=True)
        batch_op.create_index('ix_users_check_in_code', ['check_in_code'], unique=True)

    op.create_table('dependents',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('primary_user_id', sa.Integer(), nullable=False),
        sa.Column('first_name', sa.String(length=100), nullable=False),
        sa.Column('last_name', sa.String(length=100), nullable=False),
        sa.Column('birthday', sa.Date(), nullable=True),
        sa.Column('relationship_label', sa.String(length=50), nullable=True),
        sa.Column('qr_code', sa.String(length=120), nullable=True),
        sa.Column('check_in_code', sa.String(length=4), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.ForeignKeyConstraint(['primary_user_id'], ['users.id'], ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('qr_code'),
    )
    with op.batch_alter_table('dependents', schema=None) as batch_op:
        batch_op.create_index('ix_dependents_primary_user_id', ['primary_user_id'], unique=False)
        batch_op.create_index('ix_dependents_check_in_code', ['check_in_code'], unique=True)

    op.create_table('card_types',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('name', sa.String(length=100), nullable=False),
        sa.Column('category', card_category, nullable=False),
        sa.Column('class_count', sa.Integer(), nullable=False),
        sa.Column('validity_months', sa.Integer(), nullable=False),
        sa.Column('price', sa.Numeric(precision=10, scale=2), nullable=False),
        sa.Column('description', sa.Text(), nullable=True),
        sa.Column('is_active', sa.Boolean(), nullable=False),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.CheckConstraint("category <> 'punch_card' OR class_count > 0", name='ck_card_types_punch_class_count'),
        sa.CheckConstraint('validity_months > 0', name='ck_card_types_validity'),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('name'),
    )

    op.create_table('cards',
        sa.Column('id', sa.Integer(), nullable=False),
        *_holder_columns(),
        sa.Column('card_type_id', sa.Integer(), nullable=False),
        sa.Column('total_classes', sa.Integer(), nullable=False),
        sa.Column('classes_remaining', sa.Integer(), nullable=False),
        sa.Column('purchase_date', sa.Date(), nullable=False),
        sa.Column('expiration_date', sa.Date(), nullable=False),
        sa.Column('amount_paid', sa.Numeric(precision=10, scale=2), nullable=False),
        sa.Column('status', card_status, nullable=False),
        sa.Column('payment_method', payment_method, nullable=False),
        sa.Column('external_payment_reference', sa.String(length=255), nullable=True),
        sa.Column('created_by_id', sa.Integer(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('updated_at', sa.DateTime(), nullable=True),
        sa.CheckConstraint(ONE_HOLDER, name='ck_cards_one_holder'),
        sa.CheckConstraint('classes_remaining >= 0', name='ck_cards_remaining_non_negative'),
        sa.CheckConstraint('classes_remaining <= total_classes', name='ck_cards_remaining_le_total'),
        sa.UniqueConstraint('external_payment_reference', name='uq_cards_external_payment_reference'),
        sa.ForeignKeyConstraint(['card_type_id'], ['card_types.id'], ),
        sa.ForeignKeyConstraint(['created_by_id'], ['users.id'], ),
        sa.PrimaryKeyConstraint('id'),
    )
    _holder_indexes('cards')
    with op.batch_alter_table('cards', schema=None) as batch_op:
        batch_op.create_index('ix_cards_expiration_date', ['expiration_date'], unique=False)
        batch_op.create_index('ix_cards_status', ['status'], unique=False)

    # check_ins <-> birthday_passes reference each other; the pass -> check-in
    # foreign key is added once both tables exist
    op.create_table('birthday_passes',
        sa.Column('id', sa.Integer(), nullable=False),
        *_holder_columns(),
        sa.Column('valid_date', sa.Date(), nullable=False),
        sa.Column('expires_at', sa.DateTime(), nullable=False),
        sa.Column('used', sa.Boolean(), nullable=False),
        sa.Column('used_at', sa.DateTime(), nullable=True),
        sa.Column('check_in_id', sa.Integer(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.CheckConstraint(ONE_HOLDER, name='ck_birthday_passes_one_holder'),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('customer_id', 'valid_date', name='uq_birthday_pass_customer_day'),
        sa.UniqueConstraint('dependent_id', 'valid_date', name='uq_birthday_pass_dependent_day'),
    )
    _holder_indexes('birthday_passes')
    with op.batch_alter_table('birthday_passes', schema=None) as batch_op:
        batch_op.create_index('ix_birthday_passes_valid_date', ['valid_date'], unique=False)

    op.create_table('check_ins',
        sa.Column('id', sa.Integer(), nullable=False),
        *_holder_columns(),
        sa.Column('card_id', sa.Integer(), nullable=True),
        sa.Column('is_birthday_checkin', sa.Boolean(), nullable=False),
        sa.Column('birthday_pass_id', sa.Integer(), nullable=True),
        sa.Column('classes_remaining_after', sa.Integer(), nullable=True),
        sa.Column('checked_in_at', sa.DateTime(), nullable=False),
        sa.Column('performed_by_id', sa.Integer(), nullable=False),
        sa.Column('notes', sa.Text(), nullable=True),
        sa.CheckConstraint(ONE_HOLDER, name='ck_check_ins_one_holder'),
        sa.ForeignKeyConstraint(['card_id'], ['cards.id'], ),
        sa.ForeignKeyConstraint(['birthday_pass_id'], ['birthday_passes.id'], ),
        sa.ForeignKeyConstraint(['performed_by_id'], ['users.id'], ),
        sa.PrimaryKeyConstraint('id'),
    )
    _holder_indexes('check_ins')
    with op.batch_alter_table('check_ins', schema=None) as batch_op:
        batch_op.create_index('ix_check_ins_card_id', ['card_id'], unique=False)
        batch_op.create_index('ix_check_ins_checked_in_at', ['checked_in_at'], unique=False)

    with op.batch_alter_table('birthday_passes', schema=None) as batch_op:
        batch_op.create_foreign_key(
            'fk_birthday_passes_check_in_id', 'check_ins', ['check_in_id'], ['id'],
        )

    op.create_table('notification_triggers',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('kind', notification_kind, nullable=False),
        *_holder_columns(),
        sa.Column('payload', sa.JSON(), nullable=False),
        sa.Column('status', notification_status, nullable=False),
        sa.Column('attempts', sa.Integer(), nullable=False),
        sa.Column('last_error', sa.Text(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('dispatched_at', sa.DateTime(), nullable=True),
        sa.CheckConstraint(ONE_HOLDER, name='ck_notification_triggers_one_holder'),
        sa.PrimaryKeyConstraint('id'),
    )
    _holder_indexes('notification_triggers')
    with op.batch_alter_table('notification_triggers', schema=None) as batch_op:
        batch_op.create_index('ix_notification_triggers_kind', ['kind'], unique=False)
        batch_op.create_index('ix_notification_triggers_status', ['status'], unique=False)


def downgrade():
    op.drop_table('notification_triggers')

    with op.batch_alter_table('birthday_passes', schema=None) as batch_op:
        batch_op.drop_constraint('fk_birthday_passes_check_in_id', type_='foreignkey')

    op.drop_table('check_ins')
    op.drop_table('birthday_passes')
    op.drop_table('cards')
    op.drop_table('card_types')
    op.drop_table('dependents')
    op.drop_table('users')

    bind = op.get_bind()
    for enum_type in (notification_status, notification_kind, payment_method,
                      card_status, card_category, user_role):
        enum_type.drop(bind, checkfirst=True)
