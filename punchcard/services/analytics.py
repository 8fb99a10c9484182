"""
Read-only projections over the ledger for the admin dashboard.
"""
from datetime import timedelta
from decimal import Decimal
from typing import Any, Dict, List

from punchcard.extensions import db
from punchcard.models.card import Card, CardType
from punchcard.models.check_in import CheckIn
from punchcard.models.user import User, UserRole
from punchcard.services.checkin import CheckInProcessor
from punchcard.services.ledger import CardLedger
from punchcard.utils.timezone import studio_today, studio_day_bounds, add_months


def _money(value) -> str:
    return str(Decimal(value or 0).quantize(Decimal('0.01')))


def revenue_by_card_type(start_date=None, end_date=None) -> List[Dict[str, Any]]:
    """Cards sold and revenue per card type, purchase dates inclusive."""
    query = (
        db.session.query(
            CardType.name,
            db.func.count(Card.id),
            db.func.coalesce(db.func.sum(Card.amount_paid), 0),
        )
        .join(Card, Card.card_type_id == CardType.id)
    )
    if start_date:
        query = query.filter(Card.purchase_date >= start_date)
    if end_date:
        query = query.filter(Card.purchase_date <= end_date)
    rows = query.group_by(CardType.name).order_by(CardType.name).all()
    return [
        {'card_type_name': name, 'total_sold': count, 'total_revenue': _money(total)}
        for name, count, total in rows
    ]


def revenue_between(start_date, end_date) -> Decimal:
    """Total amount paid for cards purchased in [start_date, end_date]."""
    total = db.session.query(db.func.coalesce(db.func.sum(Card.amount_paid), 0)).filter(
        Card.purchase_date >= start_date,
        Card.purchase_date <= end_date,
    ).scalar()
    return Decimal(total or 0)


def attendance_trends(days=30) -> List[Dict[str, Any]]:
    """Check-ins per studio day for the last `days` days, zero-filled."""
    today = studio_today()
    first_day = today - timedelta(days=days)
    result = []
    day = first_day
    while day <= today:
        start, end = studio_day_bounds(day)
        count = CheckIn.query.filter(CheckIn.checked_in_at >= start, CheckIn.checked_in_at < end).count()
        result.append({'date': day.isoformat(), 'checkins': count})
        day += timedelta(days=1)
    return result


def monthly_analytics(months=6) -> List[Dict[str, Any]]:
    """Per-month customers, check-ins, revenue and cards sold, oldest month first."""
    first_of_month = studio_today().replace(day=1)
    results = []
    for offset in range(months - 1, -1, -1):
        month_start = add_months(first_of_month, -offset)
        month_end = add_months(month_start, 1)
        start_ts = studio_day_bounds(month_start)[0]
        end_ts = studio_day_bounds(month_end)[0]

        new_customers = User.query.filter(
            User.role == UserRole.CUSTOMER,
            User.created_at >= start_ts,
            User.created_at < end_ts,
        ).count()
        total_checkins = CheckIn.query.filter(
            CheckIn.checked_in_at >= start_ts,
            CheckIn.checked_in_at < end_ts,
        ).count()
        cards = Card.query.filter(
            Card.purchase_date >= month_start,
            Card.purchase_date < month_end,
        )
        results.append({
            'month': month_start.strftime('%b %y'),
            'new_customers': new_customers,
            'total_checkins': total_checkins,
            'revenue': _money(revenue_between(month_start, month_end - timedelta(days=1))),
            'new_cards': cards.count(),
        })
    return results


def dashboard_stats() -> Dict[str, Any]:
    """Headline numbers for the admin dashboard."""
    today = studio_today()
    first_of_month = today.replace(day=1)
    month_start_ts = studio_day_bounds(first_of_month)[0]

    return {
        'today_checkins': CheckInProcessor.today_check_in_count(),
        'active_cards': CardLedger.active_card_count(today),
        'new_cards_today': Card.query.filter(Card.purchase_date == today).count(),
        'total_revenue_today': _money(revenue_between(today, today)),
        'total_revenue_month': _money(revenue_between(first_of_month, today)),
        'new_customers_month': User.query.filter(
            User.role == UserRole.CUSTOMER,
            User.created_at >= month_start_ts,
        ).count(),
        'expiring_cards_week': len(CardLedger.cards_expiring_within(7, today)),
    }
