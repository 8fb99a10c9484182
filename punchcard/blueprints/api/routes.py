"""
API v1 Routes - catalog, cards, check-ins, birthdays, notifications, admin.
"""
from flask import request, jsonify

from punchcard.blueprints.api import api_bp
from punchcard.blueprints.api.decorators import jwt_required, requires_role
from punchcard.blueprints.api.schemas import (
    CardTypeSchema, CardSchema, CheckInSchema, BirthdayPassSchema,
    NotificationTriggerSchema, PaymentConfirmedSchema, AdminPassSchema,
    CheckInRequestSchema, HistoryArgsSchema, BirthdayPassRequestSchema,
    SchedulerRunSchema, RevenueArgsSchema,
)
from punchcard.blueprints.api.helpers import (
    paginate_query, load_body, load_args, api_error, api_success,
)
from punchcard.errors import InvalidIdentifier, NoActiveCard
from punchcard.models.holder import Holder, HolderKind
from punchcard.models.notification import NotificationTrigger
from punchcard.models.user import UserRole
from punchcard.services import analytics, catalog
from punchcard.services.birthday import BirthdayPassService
from punchcard.services.checkin import CheckInProcessor, CheckInRequest, CheckInMode
from punchcard.services.ledger import CardLedger, require_holder


def _path_holder(kind, holder_id):
    try:
        return Holder(HolderKind(kind), holder_id)
    except ValueError:
        raise InvalidIdentifier(
            f"Unknown holder kind '{kind}'.",
            details={'allowed': [k.value for k in HolderKind]},
        )


def _can_view_holder(user, holder):
    """Staff see every holder; customers see themselves and their dependents."""
    if user.is_staff:
        return True
    if holder.is_dependent:
        record = require_holder(holder)
        return record.primary_user_id == user.id
    return holder.id == user.id


# ── Catalog ─────────────────────────────────────────────────

@api_bp.route('/card-types', methods=['GET'])
@jwt_required
def api_list_card_types():
    """Active catalog entries."""
    return api_success(CardTypeSchema().dump(catalog.list_active_types(), many=True))


@api_bp.route('/card-types/<int:type_id>', methods=['GET'])
@jwt_required
def api_get_card_type(type_id):
    return api_success(CardTypeSchema().dump(catalog.get_type(type_id)))


# ── Cards ───────────────────────────────────────────────────

@api_bp.route('/payments/confirmed', methods=['POST'])
@requires_role(UserRole.STAFF)
def api_payment_confirmed():
    """Issue a card for a confirmed payment.

    Request body:
        {"customer_id"|"dependent_id": int, "card_type_id": int,
         "amount_paid": "80.00", "payment_method": "online",
         "external_ref": "...", "allow_stacking": false}

    A repeated external_ref returns the card already issued for it; the
    same reference for another holder or card type is a 409.
    """
    data = load_body(PaymentConfirmedSchema())
    holder = Holder.from_columns(data['customer_id'], data['dependent_id'])

    card = CardLedger.create_card(
        holder,
        data['card_type_id'],
        data['payment_method'],
        data['amount_paid'],
        external_ref=data['external_ref'],
        allow_stacking=data['allow_stacking'],
        created_by_id=request.api_user.id,
    )
    return api_success(CardSchema().dump(card), 201)


@api_bp.route('/cards/admin-pass', methods=['POST'])
@requires_role(UserRole.ADMIN)
def api_admin_pass():
    """Admin-created pass with a custom class count and expiration."""
    data = load_body(AdminPassSchema())
    holder = Holder.from_columns(data['customer_id'], data['dependent_id'])

    card = CardLedger.admin_create_pass(
        holder,
        data['classes'],
        data['expiration_date'],
        data['amount_paid'],
        admin_id=request.api_user.id,
    )
    return api_success(CardSchema().dump(card), 201)


@api_bp.route('/holders/<kind>/<int:holder_id>/cards', methods=['GET'])
@jwt_required
def api_holder_cards(kind, holder_id):
    """All cards of a holder, newest first."""
    holder = _path_holder(kind, holder_id)
    require_holder(holder)
    if not _can_view_holder(request.api_user, holder):
        return api_error('forbidden', 'Access denied.', 403)

    return api_success(CardSchema().dump(CardLedger.holder_cards(holder), many=True))


@api_bp.route('/holders/<kind>/<int:holder_id>/active-card', methods=['GET'])
@jwt_required
def api_holder_active_card(kind, holder_id):
    """The card the next check-in would use, or a no_active_card error with the reason."""
    holder = _path_holder(kind, holder_id)
    require_holder(holder)
    if not _can_view_holder(request.api_user, holder):
        return api_error('forbidden', 'Access denied.', 403)

    card = CardLedger.resolve_active_card(holder)
    if card is None:
        raise NoActiveCard(reason=CardLedger.explain_no_active_card(holder))
    return api_success(CardSchema().dump(card))


@api_bp.route('/holders/<kind>/<int:holder_id>/check-ins', methods=['GET'])
@jwt_required
def api_holder_check_ins(kind, holder_id):
    """Most recent check-ins of a holder (punch history)."""
    holder = _path_holder(kind, holder_id)
    require_holder(holder)
    if not _can_view_holder(request.api_user, holder):
        return api_error('forbidden', 'Access denied.', 403)

    limit = request.args.get('limit', 50, type=int)
    check_ins = CheckInProcessor.holder_check_ins(holder, limit=max(1, min(limit, 200)))
    return api_success(CheckInSchema().dump(check_ins, many=True))


@api_bp.route('/cards/<int:card_id>', methods=['GET'])
@requires_role(UserRole.STAFF)
def api_get_card(card_id):
    return api_success(CardSchema().dump(CardLedger.get_card(card_id)))


# ── Check-ins ───────────────────────────────────────────────

@api_bp.route('/check-ins', methods=['POST'])
@requires_role(UserRole.STAFF)
def api_check_in():
    """Check a holder in.

    Request body:
        {"scannable_code": "..."} or {"customer_id"|"dependent_id": int},
        plus optional "mode" (standard, birthday_pass, birthday_direct)
        and "notes".
    """
    data = load_body(CheckInRequestSchema())
    detail = CheckInProcessor.check_in(CheckInRequest(
        performed_by_id=request.api_user.id,
        customer_id=data['customer_id'],
        dependent_id=data['dependent_id'],
        scannable_code=data['scannable_code'],
        mode=CheckInMode(data['mode']),
        notes=data['notes'],
    ))
    return api_success(detail.to_dict(), 201)


@api_bp.route('/check-ins/today', methods=['GET'])
@requires_role(UserRole.STAFF)
def api_todays_check_ins():
    check_ins = CheckInProcessor.todays_check_ins()
    return jsonify({
        'data': CheckInSchema().dump(check_ins, many=True),
        'meta': {'total': len(check_ins)},
    }), 200


@api_bp.route('/check-ins', methods=['GET'])
@requires_role(UserRole.STAFF)
def api_check_in_history():
    """Check-in history.

    Query params:
        start_date, end_date (YYYY-MM-DD): studio dates, inclusive
        customer_id | dependent_id: restrict to one holder
        page, per_page: Pagination
    """
    args = load_args(HistoryArgsSchema())
    holder = None
    if args['customer_id'] is not None or args['dependent_id'] is not None:
        try:
            holder = Holder.from_columns(args['customer_id'], args['dependent_id'])
        except ValueError:
            return api_error('invalid_filter', 'Filter by customer_id or dependent_id, not both.', 422)

    query = CheckInProcessor.check_in_history(args['start_date'], args['end_date'], holder)
    return jsonify(paginate_query(query, CheckInSchema())), 200


# ── Birthdays ───────────────────────────────────────────────

@api_bp.route('/birthdays/today', methods=['GET'])
@requires_role(UserRole.STAFF)
def api_todays_birthdays():
    people = BirthdayPassService.find_todays_birthdays()
    return api_success([person.to_dict() for person in people])


@api_bp.route('/birthday-passes', methods=['POST'])
@requires_role(UserRole.STAFF)
def api_create_birthday_pass():
    """Issue today's birthday pass (idempotent per holder and day)."""
    data = load_body(BirthdayPassRequestSchema())
    holder = Holder.from_columns(data['customer_id'], data['dependent_id'])

    birthday_pass = BirthdayPassService.create_pass(holder)
    return api_success(BirthdayPassSchema().dump(birthday_pass), 201)


# ── Notifications ───────────────────────────────────────────

@api_bp.route('/notifications/pending', methods=['GET'])
@requires_role(UserRole.STAFF)
def api_pending_notifications():
    """Outbox rows waiting for delivery, oldest first."""
    limit = request.args.get('limit', 100, type=int)
    triggers = NotificationTrigger.pending(limit=max(1, min(limit, 500)))
    return api_success(NotificationTriggerSchema().dump(triggers, many=True))


# ── Admin ───────────────────────────────────────────────────

@api_bp.route('/admin/scheduler/run', methods=['POST'])
@requires_role(UserRole.ADMIN)
def api_run_scheduler_job():
    """Run a scheduler job now.

    Request body:
        {"job": "daily_sweep" | "midnight_cleanup" | "balance_check" | "dispatch_notifications"}
    """
    from punchcard.scheduler import get_scheduler

    data = load_body(SchedulerRunSchema())
    result = get_scheduler().run_now(data['job'])
    return api_success({'job': data['job'], 'result': result})


@api_bp.route('/analytics/dashboard', methods=['GET'])
@requires_role(UserRole.ADMIN)
def api_dashboard():
    return api_success(analytics.dashboard_stats())


@api_bp.route('/analytics/revenue-by-card-type', methods=['GET'])
@requires_role(UserRole.ADMIN)
def api_revenue_by_card_type():
    """Cards sold and revenue per card type.

    Query params:
        start_date, end_date (YYYY-MM-DD): purchase dates, inclusive
    """
    args = load_args(RevenueArgsSchema())
    return api_success(analytics.revenue_by_card_type(args['start_date'], args['end_date']))


@api_bp.route('/analytics/attendance', methods=['GET'])
@requires_role(UserRole.ADMIN)
def api_attendance_trends():
    """Check-ins per day.

    Query params:
        days (int): Look-back window (default 30, max 365)
    """
    days = request.args.get('days', 30, type=int)
    return api_success(analytics.attendance_trends(max(1, min(days, 365))))


@api_bp.route('/analytics/monthly', methods=['GET'])
@requires_role(UserRole.ADMIN)
def api_monthly_analytics():
    months = request.args.get('months', 6, type=int)
    return api_success(analytics.monthly_analytics(max(1, min(months, 24))))
