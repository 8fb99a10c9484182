# =============================================================================
# Studio card engine - REST API v1 Tests
# =============================================================================

from datetime import timedelta
from unittest.mock import patch

from sqlalchemy.exc import OperationalError

from punchcard.blueprints.api.decorators import create_access_token
from punchcard.extensions import db
from punchcard.models.card import Card, CardStatus, PaymentMethod
from punchcard.models.check_in import CheckIn
from punchcard.models.notification import NotificationTrigger

from tests.conftest import auth_headers, birthday_today, make_card, make_user


API = '/api/v1'


# =============================================================================
# Authentication & error envelope
# =============================================================================

class TestAuthentication:
    """Tests for JWT verification and role checks."""

    def test_missing_token(self, client):
        response = client.get(f'{API}/card-types')
        assert response.status_code == 401
        assert response.get_json()['error']['code'] == 'missing_token'

    def test_invalid_token(self, client):
        response = client.get(f'{API}/card-types', headers={'Authorization': 'Bearer not-a-jwt'})
        assert response.status_code == 401
        assert response.get_json()['error']['code'] == 'invalid_token'

    def test_expired_token(self, client, customer):
        token = create_access_token(customer.id, expires_minutes=-1)
        response = client.get(f'{API}/card-types', headers={'Authorization': f'Bearer {token}'})
        assert response.get_json()['error']['code'] == 'invalid_token'

    def test_deactivated_user(self, client, customer):
        headers = auth_headers(customer)
        customer.is_active = False
        db.session.commit()

        response = client.get(f'{API}/card-types', headers=headers)
        assert response.status_code == 401
        assert response.get_json()['error']['code'] == 'user_not_found'

    def test_customer_cannot_check_in(self, client, customer_headers, customer):
        response = client.post(f'{API}/check-ins', json={'customer_id': customer.id}, headers=customer_headers)
        assert response.status_code == 403
        assert response.get_json()['error']['code'] == 'forbidden'

    def test_staff_cannot_use_admin_endpoints(self, client, staff_headers):
        response = client.get(f'{API}/analytics/dashboard', headers=staff_headers)
        assert response.status_code == 403

    def test_unknown_route_is_json(self, client):
        response = client.get(f'{API}/nope')
        assert response.status_code == 404
        assert response.get_json()['error']['code'] == 'not_found'

    def test_database_outage_is_503(self, client, customer_headers):
        outage = OperationalError('SELECT 1', {}, Exception('connection refused'))
        with patch('punchcard.blueprints.api.routes.catalog.list_active_types', side_effect=outage):
            response = client.get(f'{API}/card-types', headers=customer_headers)

        assert response.status_code == 503
        error = response.get_json()['error']
        assert error['code'] == 'dependency_error'
        assert error['details'] == {'service': 'database'}


# =============================================================================
# Catalog
# =============================================================================

class TestCardTypes:
    """Tests for /card-types."""

    def test_list(self, client, customer_headers, punch_type, subscription_type):
        response = client.get(f'{API}/card-types', headers=customer_headers)
        assert response.status_code == 200
        names = [t['name'] for t in response.get_json()['data']]
        assert set(names) == {'8 Classes Card', 'Urban/Hip Hop Dance'}

    def test_detail(self, client, customer_headers, punch_type):
        data = client.get(f'{API}/card-types/{punch_type.id}', headers=customer_headers).get_json()['data']
        assert data['category'] == 'punch_card'
        assert data['price'] == '150.00'

    def test_unknown_type(self, client, customer_headers):
        response = client.get(f'{API}/card-types/999', headers=customer_headers)
        assert response.status_code == 404
        assert response.get_json()['error']['code'] == 'card_type_not_found'


# =============================================================================
# Cards
# =============================================================================

class TestPaymentConfirmed:
    """Tests for POST /payments/confirmed."""

    def test_issues_card(self, client, staff_headers, staff_user, customer, punch_type):
        response = client.post(f'{API}/payments/confirmed', headers=staff_headers, json={
            'customer_id': customer.id,
            'card_type_id': punch_type.id,
            'amount_paid': '150.00',
            'external_ref': 'pi_123',
        })

        assert response.status_code == 201
        data = response.get_json()['data']
        assert data['classes_remaining'] == 8
        assert data['status'] == 'active'
        assert data['payment_method'] == 'online'
        assert data['holder'] == {'kind': 'customer', 'id': customer.id}
        assert data['created_by_id'] == staff_user.id
        assert NotificationTrigger.query.count() == 1

    def test_repeated_reference_is_idempotent(self, client, staff_headers, customer, punch_type):
        body = {
            'customer_id': customer.id,
            'card_type_id': punch_type.id,
            'amount_paid': '150.00',
            'external_ref': 'pi_dup',
        }
        first = client.post(f'{API}/payments/confirmed', headers=staff_headers, json=body).get_json()['data']
        second = client.post(f'{API}/payments/confirmed', headers=staff_headers, json=body).get_json()['data']

        assert first['id'] == second['id']
        assert Card.query.count() == 1

    def test_reference_reused_for_another_holder(self, client, staff_headers, customer, dependent, punch_type):
        body = {'customer_id': customer.id, 'card_type_id': punch_type.id,
                'amount_paid': '150.00', 'external_ref': 'pay_1'}
        first = client.post(f'{API}/payments/confirmed', headers=staff_headers, json=body).get_json()['data']

        response = client.post(f'{API}/payments/confirmed', headers=staff_headers, json={
            'dependent_id': dependent.id, 'card_type_id': punch_type.id,
            'amount_paid': '150.00', 'external_ref': 'pay_1',
        })

        assert response.status_code == 409
        error = response.get_json()['error']
        assert error['code'] == 'payment_reference_conflict'
        assert error['details']['card_id'] == first['id']
        assert Card.query.count() == 1

    def test_duplicate_active_card(self, client, staff_headers, customer, punch_type, punch_card):
        response = client.post(f'{API}/payments/confirmed', headers=staff_headers, json={
            'customer_id': customer.id, 'card_type_id': punch_type.id, 'amount_paid': '150.00',
        })
        assert response.status_code == 409
        error = response.get_json()['error']
        assert error['code'] == 'duplicate_active_card'
        assert error['details']['card_id'] == punch_card.id

    def test_both_holder_ids_rejected(self, client, staff_headers, customer, dependent, punch_type):
        response = client.post(f'{API}/payments/confirmed', headers=staff_headers, json={
            'customer_id': customer.id, 'dependent_id': dependent.id,
            'card_type_id': punch_type.id, 'amount_paid': '150.00',
        })
        assert response.status_code == 422
        assert response.get_json()['error']['code'] == 'validation_error'

    def test_body_must_be_json(self, client, staff_headers):
        response = client.post(f'{API}/payments/confirmed', headers=staff_headers, data='nope')
        assert response.status_code == 422


class TestAdminPass:
    """Tests for POST /cards/admin-pass."""

    def test_creates_pass(self, client, admin_headers, admin_user, dependent, punch_type, today):
        response = client.post(f'{API}/cards/admin-pass', headers=admin_headers, json={
            'dependent_id': dependent.id,
            'classes': 5,
            'expiration_date': (today + timedelta(days=30)).isoformat(),
        })

        assert response.status_code == 201
        data = response.get_json()['data']
        assert data['total_classes'] == 5
        assert data['payment_method'] == PaymentMethod.ADMIN_CREATED.value
        assert data['amount_paid'] == '0.00'
        assert data['created_by_id'] == admin_user.id

    def test_past_expiration_rejected(self, client, admin_headers, customer, punch_type, today):
        response = client.post(f'{API}/cards/admin-pass', headers=admin_headers, json={
            'customer_id': customer.id,
            'classes': 5,
            'expiration_date': (today - timedelta(days=1)).isoformat(),
        })
        assert response.status_code == 422


class TestHolderCards:
    """Tests for /holders/<kind>/<id>/cards and /active-card."""

    def test_customer_sees_own_dependent(self, client, customer_headers, dependent, punch_type):
        make_card(dependent.holder, punch_type)
        response = client.get(f'{API}/holders/dependent/{dependent.id}/cards', headers=customer_headers)
        assert response.status_code == 200
        assert len(response.get_json()['data']) == 1

    def test_customer_cannot_see_others(self, client, customer, punch_type):
        other = make_user('other@test.com')
        response = client.get(f'{API}/holders/customer/{customer.id}/cards', headers=auth_headers(other))
        assert response.status_code == 403

    def test_unknown_kind(self, client, staff_headers):
        response = client.get(f'{API}/holders/pet/1/cards', headers=staff_headers)
        assert response.status_code == 400
        assert response.get_json()['error']['code'] == 'invalid_identifier'

    def test_unknown_holder(self, client, staff_headers):
        response = client.get(f'{API}/holders/customer/999/cards', headers=staff_headers)
        assert response.status_code == 404

    def test_active_card(self, client, customer_headers, customer, punch_card):
        response = client.get(f'{API}/holders/customer/{customer.id}/active-card', headers=customer_headers)
        assert response.get_json()['data']['id'] == punch_card.id

    def test_holder_check_in_history(self, client, staff_headers, customer_headers, customer, punch_card):
        client.post(f'{API}/check-ins', headers=staff_headers, json={'customer_id': customer.id})
        response = client.get(f'{API}/holders/customer/{customer.id}/check-ins', headers=customer_headers)
        data = response.get_json()['data']
        assert len(data) == 1
        assert data[0]['classes_remaining_after'] == 7

    def test_get_card(self, client, staff_headers, punch_card):
        response = client.get(f'{API}/cards/{punch_card.id}', headers=staff_headers)
        assert response.get_json()['data']['card_name'] == '8 Classes Card'

    def test_get_unknown_card(self, client, staff_headers):
        response = client.get(f'{API}/cards/999', headers=staff_headers)
        assert response.status_code == 404
        assert response.get_json()['error']['code'] == 'card_not_found'

    def test_active_card_reason_when_exhausted(self, client, customer_headers, customer, punch_type):
        make_card(customer.holder, punch_type, classes_remaining=0, status=CardStatus.EXHAUSTED)
        response = client.get(f'{API}/holders/customer/{customer.id}/active-card', headers=customer_headers)
        assert response.status_code == 409
        error = response.get_json()['error']
        assert error['code'] == 'no_active_card'
        assert error['details']['reason'] == 'exhausted'


# =============================================================================
# Check-ins
# =============================================================================

class TestCheckIns:
    """Tests for /check-ins."""

    def test_check_in_by_code(self, client, staff_headers, customer, punch_card):
        response = client.post(f'{API}/check-ins', headers=staff_headers, json={'scannable_code': 'k7px'})

        assert response.status_code == 201
        data = response.get_json()['data']
        assert data['classes_remaining'] == 7
        assert data['holder_name'] == 'Maria Lopez'
        assert data['performed_by_name'] == 'Front Desk'

    def test_no_active_card(self, client, staff_headers, customer):
        response = client.post(f'{API}/check-ins', headers=staff_headers, json={'customer_id': customer.id})
        assert response.status_code == 409
        assert response.get_json()['error']['details']['reason'] == 'no_card'
        assert CheckIn.query.count() == 0

    def test_invalid_mode(self, client, staff_headers, customer, punch_card):
        response = client.post(f'{API}/check-ins', headers=staff_headers,
                               json={'customer_id': customer.id, 'mode': 'vip'})
        assert response.status_code == 422

    def test_unknown_code(self, client, staff_headers):
        response = client.post(f'{API}/check-ins', headers=staff_headers, json={'scannable_code': 'ZZZZ'})
        assert response.status_code == 400

    def test_todays_list(self, client, staff_headers, customer, punch_card):
        client.post(f'{API}/check-ins', headers=staff_headers, json={'customer_id': customer.id})
        body = client.get(f'{API}/check-ins/today', headers=staff_headers).get_json()
        assert body['meta']['total'] == 1
        assert body['data'][0]['card_name'] == '8 Classes Card'

    def test_history_paginated(self, client, staff_headers, customer, punch_card):
        for _ in range(3):
            client.post(f'{API}/check-ins', headers=staff_headers, json={'customer_id': customer.id})

        body = client.get(f'{API}/check-ins?per_page=2', headers=staff_headers).get_json()
        assert body['meta']['total'] == 3
        assert body['meta']['total_pages'] == 2
        assert len(body['data']) == 2
        assert 'next' in body['links']

    def test_history_rejects_both_holder_filters(self, client, staff_headers, customer, dependent):
        response = client.get(
            f'{API}/check-ins?customer_id={customer.id}&dependent_id={dependent.id}', headers=staff_headers,
        )
        assert response.status_code == 422

    def test_history_rejects_inverted_range(self, client, staff_headers):
        response = client.get(f'{API}/check-ins?start_date=2024-05-02&end_date=2024-05-01', headers=staff_headers)
        assert response.status_code == 422


# =============================================================================
# Birthdays & notifications
# =============================================================================

class TestBirthdays:
    """Tests for /birthdays/today and /birthday-passes."""

    def test_todays_birthdays(self, client, staff_headers, customer, dependent, today):
        dependent.birthday = birthday_today(today)
        db.session.commit()

        data = client.get(f'{API}/birthdays/today', headers=staff_headers).get_json()['data']
        assert [(p['type'], p['id']) for p in data] == [('dependent', dependent.id)]

    def test_issue_pass(self, client, staff_headers, customer, today):
        customer.birthday = birthday_today(today)
        db.session.commit()

        first = client.post(f'{API}/birthday-passes', headers=staff_headers, json={'customer_id': customer.id})
        second = client.post(f'{API}/birthday-passes', headers=staff_headers, json={'customer_id': customer.id})

        assert first.status_code == 201
        assert first.get_json()['data']['id'] == second.get_json()['data']['id']
        assert first.get_json()['data']['valid_date'] == today.isoformat()

    def test_not_birthday(self, client, staff_headers, customer):
        response = client.post(f'{API}/birthday-passes', headers=staff_headers, json={'customer_id': customer.id})
        assert response.status_code == 422
        assert response.get_json()['error']['code'] == 'not_birthday_today'


class TestNotificationsAndAdmin:
    """Tests for the outbox listing, scheduler trigger and analytics."""

    def test_pending_notifications(self, client, staff_headers, customer, punch_type):
        make_card(customer.holder, punch_type, classes_remaining=3)
        client.post(f'{API}/check-ins', headers=staff_headers, json={'customer_id': customer.id})

        data = client.get(f'{API}/notifications/pending', headers=staff_headers).get_json()['data']
        assert [n['kind'] for n in data] == ['low_balance']
        assert data[0]['recipient_email'] == 'maria@test.com'

    def test_run_scheduler_job(self, client, admin_headers):
        response = client.post(f'{API}/admin/scheduler/run', headers=admin_headers, json={'job': 'balance_check'})
        assert response.status_code == 200
        assert response.get_json()['data']['job'] == 'balance_check'

    def test_run_unknown_job(self, client, admin_headers):
        response = client.post(f'{API}/admin/scheduler/run', headers=admin_headers, json={'job': 'nope'})
        assert response.status_code == 422
        assert 'daily_sweep' in response.get_json()['error']['details']['jobs']

    def test_dashboard(self, client, admin_headers, customer, punch_card):
        data = client.get(f'{API}/analytics/dashboard', headers=admin_headers).get_json()['data']
        assert data['active_cards'] == 1
        assert data['new_cards_today'] == 1
        assert data['total_revenue_today'] == '150.00'

    def test_revenue_by_card_type(self, client, admin_headers, customer, dependent, punch_type, punch_card):
        make_card(dependent.holder, punch_type)
        data = client.get(f'{API}/analytics/revenue-by-card-type', headers=admin_headers).get_json()['data']
        assert data == [{'card_type_name': '8 Classes Card', 'total_sold': 2, 'total_revenue': '300.00'}]

    def test_attendance_trends(self, client, admin_headers, staff_headers, customer, punch_card, today):
        client.post(f'{API}/check-ins', headers=staff_headers, json={'customer_id': customer.id})

        data = client.get(f'{API}/analytics/attendance?days=7', headers=admin_headers).get_json()['data']
        assert len(data) == 8
        assert data[-1] == {'date': today.isoformat(), 'checkins': 1}

    def test_monthly_analytics(self, client, admin_headers, customer, punch_card):
        data = client.get(f'{API}/analytics/monthly?months=3', headers=admin_headers).get_json()['data']
        assert len(data) == 3
        assert data[-1]['new_cards'] == 1
        assert data[-1]['revenue'] == '150.00'
        assert data[-1]['new_customers'] == 1
