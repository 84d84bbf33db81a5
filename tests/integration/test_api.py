"""Integration tests for API endpoints"""

from fastapi.testclient import TestClient
from payment_engine.domain.exceptions import ProviderDeclinedError
from payment_engine.infrastructure.database.repositories import AccountRepository, TransactionRepository

ACCOUNT = "254700000001"


def _submit(client: TestClient, amount: float = 500.0, **extra):
    body = {"account_key": ACCOUNT, "amount": amount, "kind": "p2p", "destination": "254711111111"}
    body.update(extra)
    return client.post("/v1/transactions", json=body)


def test_health_endpoint(client: TestClient):
    """Test health check endpoint"""
    response = client.get("/health")
    assert response.status_code == 200
    assert response.json()["status"] == "ok"


def test_metrics_endpoint(client: TestClient):
    """Test Prometheus metrics endpoint"""
    response = client.get("/metrics")
    assert response.status_code == 200
    assert "payment_transactions_total" in response.text


def test_request_id_is_echoed(client: TestClient):
    response = client.get("/health", headers={"X-Request-ID": "trace-123"})
    assert response.headers["X-Request-ID"] == "trace-123"


def test_submit_transaction_success(client: TestClient, db):
    """Test POST /v1/transactions persists the outcome and the account"""
    response = _submit(client, 500.0)

    assert response.status_code == 200
    data = response.json()
    assert data["success"] is True
    assert data["status"] == "succeeded"
    assert data["fee"] == 5.0
    assert data["gateway_name"] == "primary"

    record = TransactionRepository(db).get(data["transaction_id"])
    assert record.status == "succeeded"
    snapshot = AccountRepository(db).load_snapshot(ACCOUNT)
    assert [e.amount for e in snapshot.transactions] == [500.0]


def test_submit_transaction_limit_exceeded(client: TestClient):
    response = _submit(client, 200_000.0)

    assert response.status_code == 200
    data = response.json()
    assert data["success"] is False
    assert data["status"] == "failed"
    assert data["error_kind"] == "limit_exceeded"


def test_submit_transaction_declined(client: TestClient, primary_client):
    primary_client.script = [ProviderDeclinedError("insufficient funds")]

    data = _submit(client, 500.0).json()

    assert data["error_kind"] == "provider_declined"
    assert data["attempt_count"] == 1


def test_submit_transaction_invalid_payload(client: TestClient):
    """Schema violations are rejected before reaching the engine"""
    assert _submit(client, -1.0).status_code == 422
    assert client.post("/v1/transactions", json={"account_key": ACCOUNT, "amount": 10, "kind": "lottery"}).status_code == 422


def test_session_flow(client: TestClient):
    """A session works once; the second use is refused"""
    response = client.post("/v1/sessions", json={"account_key": ACCOUNT})
    assert response.status_code == 200
    session = response.json()
    assert session["account_key"] == ACCOUNT
    assert "token" not in session

    first = _submit(client, 100.0, session_id=session["session_id"]).json()
    replay = _submit(client, 100.0, session_id=session["session_id"]).json()

    assert first["success"] is True
    assert replay["error_kind"] == "session_expired_or_reused"


def test_get_transaction(client: TestClient):
    transaction_id = _submit(client, 250.0).json()["transaction_id"]

    response = client.get(f"/v1/transactions/{transaction_id}")

    assert response.status_code == 200
    data = response.json()
    assert data["status"] == "succeeded"
    assert data["amount"] == 250.0
    assert data["account_key"] == ACCOUNT
    assert data["completed_at"] is not None


def test_get_unknown_transaction(client: TestClient):
    response = client.get("/v1/transactions/does-not-exist")
    assert response.status_code == 404


def test_get_account(client: TestClient):
    _submit(client, 300.0)

    response = client.get(f"/v1/accounts/{ACCOUNT}")

    assert response.status_code == 200
    data = response.json()
    assert data["daily_total"] == 300.0
    assert data["daily_count"] == 1
    assert data["blocked"] is False
    assert data["limits"]["min_amount"] == 10.0


def test_set_verification_raises_limits(client: TestClient, db):
    before = client.get(f"/v1/accounts/{ACCOUNT}").json()["limits"]["max_amount"]

    response = client.put(f"/v1/accounts/{ACCOUNT}/verification", json={"is_verified": True})

    assert response.status_code == 200
    data = response.json()
    assert data["is_verified"] is True
    assert data["limits"]["max_amount"] == before * 2
    assert AccountRepository(db).load_snapshot(ACCOUNT).is_verified is True


def test_account_transaction_history(client: TestClient):
    """Every persisted transaction for the account is listed"""
    first = _submit(client, 100.0).json()["transaction_id"]
    second = _submit(client, 200.0).json()["transaction_id"]

    response = client.get(f"/v1/accounts/{ACCOUNT}/transactions", params={"limit": 10})

    assert response.status_code == 200
    assert {t["transaction_id"] for t in response.json()} == {first, second}
    assert all(t["status"] == "succeeded" for t in response.json())
