"""
Tests for the FastAPI layer: routing, auth, the response envelope and
error-to-status mapping.
"""

from types import SimpleNamespace

import pytest
from fastapi.testclient import TestClient

from payloom_escrow.api_server import create_app

from tests.test_verification import stk_callback

ADMIN = {'X-Admin-Key': 'admin-secret', 'X-Admin-Id': 'admin-7'}
CRON = {'X-Cron-Secret': 'cron-secret'}


@pytest.fixture
def api_config():
    return SimpleNamespace(admin_api_key='admin-secret', cron_secret='cron-secret')


@pytest.fixture
def client(escrow, gateway, automation, api_config):
    app = create_app(escrow, gateway, automation, api_config)
    with TestClient(app) as test_client:
        yield test_client


def submit_and_approve(client, order_id="ORD-1001", code="QHX12ABC34"):
    response = client.post("/payments/submit", json={
        'order_id': order_id, 'transaction_code': code, 'amount_paid': "1000",
    })
    assert response.json()['data']['verification_status'] == 'pending_approval'
    response = client.post(f"/admin/payments/{order_id}/approve", headers=ADMIN, json={'notes': 'ok'})
    assert response.json()['success']
    return response


class TestInfo:
    """Root and health endpoints"""

    def test_root(self, client):
        body = client.get("/").json()
        assert body['success']
        assert body['data']['service'] == 'PayLoom Escrow API'

    def test_health(self, client):
        response = client.get("/health")
        assert response.status_code == 200
        data = response.json()['data']
        assert data['database'] == 'connected'
        assert data['scheduler']['is_running'] is False

    def test_health_degraded(self, client, db):
        db.healthy = False
        response = client.get("/health")
        assert response.status_code == 503
        assert response.json()['success'] is False

    def test_unknown_route_uses_envelope(self, client):
        response = client.get("/nope")
        assert response.status_code == 404
        assert response.json() == {'success': False, 'error': 'Not Found', 'code': 'NOT_FOUND'}


class TestWebhooks:
    """M-Pesa always gets the acknowledgement"""

    def test_stk_callback_locks_escrow(self, client, db):
        db.seed_order("ORD-1001", "1000")
        db.state.mpesa_transactions.append({
            'id': 99, 'order_id': "ORD-1001", 'transaction_type': 'stk_push',
            'merchant_request_id': 'mr-1', 'checkout_request_id': 'ws_CO_0001',
            'conversation_id': None, 'mpesa_receipt_number': None,
            'phone_number': '254722000002', 'amount': None, 'status': 'pending',
            'result_code': None, 'result_desc': None, 'raw_response': None, 'callback_data': None,
        })

        response = client.post("/mpesa/callback", json=stk_callback())

        assert response.status_code == 200
        assert response.json() == {'ResultCode': 0, 'ResultDesc': 'Accepted'}
        assert db.order("ORD-1001")['status'] == 'paid'

    @pytest.mark.parametrize("path", ["/mpesa/callback", "/mpesa/b2c-result", "/mpesa/timeout"])
    def test_unparseable_body_acknowledged(self, client, path):
        response = client.post(path, content=b"{not json", headers={'Content-Type': 'application/json'})
        assert response.status_code == 200
        assert response.json()['ResultCode'] == 0

    def test_unknown_b2c_result_acknowledged(self, client):
        response = client.post("/mpesa/b2c-result", json={"Result": {
            "ResultCode": 0, "ResultDesc": "ok", "ConversationID": "AG_UNKNOWN",
        }})
        assert response.json()['ResultCode'] == 0


class TestPayments:
    """Manual submission and admin review over HTTP"""

    def test_submit_and_approve(self, client, db):
        db.seed_order("ORD-1001", "1000")

        response = submit_and_approve(client)

        data = response.json()['data']
        assert data['verification_status'] == 'approved'
        assert data['wallet']['gross_amount'] == 1000.0
        assert db.order("ORD-1001")['approved_by'] == 'admin-7'

    def test_confirm_is_an_alias_of_approve(self, client, db):
        db.seed_order("ORD-1001", "1000")
        client.post("/payments/submit", json={'order_id': "ORD-1001", 'transaction_code': "QHX12ABC34"})

        response = client.post("/admin/payments/ORD-1001/confirm", headers=ADMIN)

        assert response.json()['data']['verification_status'] == 'approved'

    def test_missing_field_is_a_validation_error(self, client):
        response = client.post("/payments/submit", json={'order_id': "ORD-1001"})
        assert response.status_code == 400
        body = response.json()
        assert body['code'] == 'VALIDATION_ERROR'
        assert 'transaction_code' in body['error']

    @pytest.mark.parametrize("field,value", [
        ('transaction_code', "Q" * 51),
        ('payment_method', "M" * 31),
        ('payer_phone', "0722000002" * 3),
    ])
    def test_oversized_submission_fields(self, client, db, field, value):
        db.seed_order("ORD-1001", "1000")
        submission = {'order_id': "ORD-1001", 'transaction_code': "QHX12ABC34", field: value}

        response = client.post("/payments/submit", json=submission)

        assert response.status_code == 400
        assert response.json()['code'] == 'VALIDATION_ERROR'
        assert db.order("ORD-1001")['status'] == 'pending'

    def test_invalid_payer_phone(self, client, db):
        db.seed_order("ORD-1001", "1000")
        response = client.post("/payments/submit", json={
            'order_id': "ORD-1001", 'transaction_code': "QHX12ABC34", 'payer_phone': "12345",
        })
        assert response.status_code == 400

    def test_blank_rejection_reason(self, client, db):
        db.seed_order("ORD-1001", "1000")
        response = client.post("/admin/payments/ORD-1001/reject", headers=ADMIN, json={'reason': '  '})
        assert response.status_code == 400

    def test_state_conflict_is_not_an_http_error(self, client, db):
        db.seed_order("ORD-1001", "1000", status="paid")
        response = client.post("/payments/submit", json={
            'order_id': "ORD-1001", 'transaction_code': "QHX12ABC34",
        })
        assert response.status_code == 200
        body = response.json()
        assert body['success'] is False
        assert body['code'] == 'INVALID_STATE'

    def test_unknown_order(self, client):
        response = client.post("/payments/submit", json={
            'order_id': "ORD-404", 'transaction_code': "QHX12ABC34",
        })
        assert response.status_code == 404
        assert response.json()['code'] == 'ORDER_NOT_FOUND'

    def test_stk_not_configured(self, client, db):
        db.seed_order("ORD-1001", "1000")
        response = client.post("/payments/initiate", json={'order_id': "ORD-1001", 'phone': "0722000002"})
        assert response.status_code == 502
        assert response.json()['code'] == 'UPSTREAM_ERROR'


class TestAdminAuth:
    """Shared-secret admin and cron auth"""

    def test_missing_admin_key(self, client):
        response = client.post("/admin/escrow/ORD-1001/release")
        assert response.status_code == 401
        assert response.json()['code'] == 'UNAUTHORIZED'

    def test_wrong_admin_key(self, client):
        response = client.post("/admin/escrow/ORD-1001/release", headers={'X-Admin-Key': 'guess'})
        assert response.status_code == 403

    def test_admin_key_not_configured(self, escrow, gateway, automation):
        app = create_app(escrow, gateway, automation, SimpleNamespace(admin_api_key=None, cron_secret=None))
        with TestClient(app) as unconfigured:
            response = unconfigured.get("/admin/platform-summary", headers={'X-Admin-Key': ''})
            assert response.status_code == 403
            response = unconfigured.post("/cron/auto-release", headers=CRON)
            assert response.status_code == 403

    def test_cron_requires_secret(self, client):
        assert client.post("/cron/auto-release").status_code == 401
        assert client.post("/cron/auto-release", headers={'X-Cron-Secret': 'nope'}).status_code == 403


class TestEscrowEndpoints:
    """Release, refund, queries and disputes"""

    def test_release_then_release_again(self, client, db):
        db.seed_order("ORD-1001", "1000")
        submit_and_approve(client)

        first = client.post("/admin/escrow/ORD-1001/release", headers=ADMIN)
        second = client.post("/admin/escrow/ORD-1001/release", headers=ADMIN)

        assert first.json()['data']['status'] == 'released'
        assert second.status_code == 200
        assert second.json()['code'] == 'ALREADY_RELEASED'

    def test_refund_requires_reason(self, client, db):
        db.seed_order("ORD-1001", "1000")
        submit_and_approve(client)

        assert client.post("/admin/escrow/ORD-1001/refund", headers=ADMIN, json={}).status_code == 400
        response = client.post("/admin/escrow/ORD-1001/refund", headers=ADMIN, json={'reason': 'Out of stock'})
        assert response.json()['data']['status'] == 'refunded'
        assert response.json()['data']['released_by'] == 'admin'

    def test_disputed_order_must_go_through_resolution(self, client, db):
        db.seed_order("ORD-1001", "1000")
        submit_and_approve(client)
        dispute_id = client.post("/disputes", json={
            'order_id': "ORD-1001", 'opened_by': 'buyer-1', 'reason': 'Wrong item',
            'description': 'Received a blue dress instead of the red one',
        }).json()['data']['id']

        release = client.post("/admin/escrow/ORD-1001/release", headers=ADMIN)
        refund = client.post("/admin/escrow/ORD-1001/refund", headers=ADMIN, json={'reason': 'Out of stock'})

        for response in (release, refund):
            assert response.status_code == 200
            assert response.json()['code'] == 'INVALID_STATE'
        assert db.wallets_for("ORD-1001")[0]['status'] == 'locked'

        resolved = client.post(
            f"/admin/disputes/{dispute_id}/resolve", headers=ADMIN, json={'decision': 'release_seller'}
        )
        assert resolved.json()['data']['dispute']['status'] == 'resolved'
        assert resolved.json()['data']['wallet']['status'] == 'released'

    def test_escrow_status_for_parties_only(self, client, db):
        db.seed_order("ORD-1001", "1000")
        submit_and_approve(client)

        response = client.get("/escrow/ORD-1001", params={'user_id': 'buyer-1'})
        assert response.json()['data']['escrow_status'] == 'held'
        assert client.get("/escrow/ORD-1001", params={'user_id': 'stranger'}).status_code == 403

    def test_list_wallets_filters_and_limits(self, client, db):
        db.seed_order("ORD-1001", "1000")
        submit_and_approve(client)

        response = client.get("/admin/escrow", headers=ADMIN, params={'status': 'locked'})
        assert len(response.json()['data']) == 1
        assert client.get("/admin/escrow", headers=ADMIN, params={'status': 'lost'}).status_code == 400
        assert client.get("/admin/escrow", headers=ADMIN, params={'limit': 0}).status_code == 400

    def test_platform_summary(self, client, db):
        db.seed_order("ORD-1001", "1000")
        submit_and_approve(client)

        data = client.get("/admin/platform-summary", headers=ADMIN).json()['data']
        assert data['reconciled'] is True
        assert data['accounts']['escrow_pool'] == 1000.0

    def test_fulfilment_confirm_flow(self, client, db):
        db.seed_order("ORD-1001", "1000")
        submit_and_approve(client)

        shipped = client.post("/orders/ORD-1001/fulfillment", json={'stage': 'shipped', 'seller_id': 'seller-1'})
        assert shipped.json()['data']['status'] == 'shipped'

        confirmed = client.post("/escrow/ORD-1001/confirm", json={'buyer_id': 'buyer-1'})
        assert confirmed.json()['data']['released_by'] == 'buyer_confirmation'

    def test_bad_fulfilment_stage(self, client):
        response = client.post("/orders/ORD-1001/fulfillment", json={'stage': 'lost'})
        assert response.status_code == 400

    def test_duplicate_dispute_returns_existing_id(self, client, db):
        db.seed_order("ORD-1001", "1000")
        submit_and_approve(client)
        dispute = {
            'order_id': "ORD-1001", 'opened_by': 'buyer-1', 'reason': 'Wrong item',
            'description': 'Received a blue dress instead of the red one',
        }

        first = client.post("/disputes", json=dispute)
        second = client.post("/disputes", json=dispute)

        assert first.status_code == 201
        dispute_id = first.json()['data']['id']
        assert second.status_code == 200
        assert second.json()['code'] == 'DISPUTE_EXISTS'
        assert second.json()['dispute_id'] == dispute_id

    def test_resolve_dispute_refunds_buyer(self, client, db):
        db.seed_order("ORD-1001", "1000")
        submit_and_approve(client)
        dispute_id = client.post("/disputes", json={
            'order_id': "ORD-1001", 'opened_by': 'buyer-1', 'reason': 'Wrong item',
            'description': 'Received a blue dress instead of the red one',
        }).json()['data']['id']

        response = client.post(
            f"/admin/disputes/{dispute_id}/resolve", headers=ADMIN, json={'decision': 'refund_buyer'}
        )

        assert response.json()['data']['wallet']['status'] == 'refunded'
        assert db.order("ORD-1001")['status'] == 'refunded'

    def test_payout_not_configured(self, client, db):
        db.seed_order("ORD-1001", "1000")
        submit_and_approve(client)
        client.post("/admin/escrow/ORD-1001/release", headers=ADMIN)

        response = client.post("/admin/escrow/ORD-1001/payout", headers=ADMIN)
        assert response.status_code == 502


class TestCron:
    """Cron-triggered auto-release"""

    def test_cron_runs_sweep(self, client, db, past_due):
        db.seed_order("ORD-1001", "1000")
        submit_and_approve(client)
        client.post("/orders/ORD-1001/fulfillment", json={'stage': 'delivered'})
        past_due()

        response = client.post("/cron/auto-release", headers=CRON)

        data = response.json()['data']
        assert data['released'] == 1
        assert data['stats']['auto_releases'] == 1
        assert db.wallets_for("ORD-1001")[0]['released_by'] == 'auto_release'


class TestUnhandledErrors:
    """Unexpected exceptions become a generic 500 envelope"""

    def test_internal_error(self, escrow, gateway, automation, api_config, db, monkeypatch):
        async def broken_ping():
            raise RuntimeError("pool closed")
        monkeypatch.setattr(db, 'ping', broken_ping)

        app = create_app(escrow, gateway, automation, api_config)
        with TestClient(app, raise_server_exceptions=False) as test_client:
            response = test_client.get("/health")

        assert response.status_code == 500
        assert response.json() == {
            'success': False, 'error': 'Internal server error', 'code': 'INTERNAL_ERROR',
        }
