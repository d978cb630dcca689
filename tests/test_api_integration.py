"""
Integration tests for the Loan Servicing API
Tests end-to-end workflows using FastAPI TestClient
"""

import pytest
from fastapi.testclient import TestClient

from loan_servicing.api import app
from loan_servicing.api.dependencies import get_servicing_system


@pytest.fixture
def client(system):
    """Test client bound to an in-memory servicing system"""
    app.dependency_overrides[get_servicing_system] = lambda: system
    yield TestClient(app)
    app.dependency_overrides.clear()


@pytest.fixture
def loan_id(client):
    """Loan created and disbursed through the API"""
    r = client.post("/loans", json={
        "customer_id": "CUST001",
        "principal": "1000.00",
        "annual_rate": "0.52",
        "term_periods": 10,
        "start_date": "2024-01-01",
        "loan_id": "LOAN001"
    }, headers={"X-Actor": "officer1"})
    assert r.status_code == 201
    r = client.post("/loans/LOAN001/disburse", json={"disbursed_on": "2024-01-01"})
    assert r.status_code == 200
    return "LOAN001"


class TestHealthEndpoints:
    """Test basic health and root endpoints"""

    def test_health(self, client):
        r = client.get("/health")
        assert r.status_code == 200
        assert r.json()["status"] == "healthy"

    def test_root(self, client):
        r = client.get("/")
        assert r.status_code == 200
        assert "payments" in r.json()["endpoints"]


class TestLoanFlow:
    """Loan endpoints"""

    def test_schedule_preview(self, client):
        r = client.post("/loans/schedule", json={
            "principal": "1000.00",
            "annual_rate": "0.52",
            "term_periods": 10,
            "start_date": "2024-01-01"
        })
        assert r.status_code == 200
        first = r.json()["schedule"][0]
        assert first["payment"]["amount"] == "105.58"
        assert first["interest_portion"]["amount"] == "10.00"
        assert first["ending_balance"]["amount"] == "904.42"
        assert first["due_date"] == "2024-01-08"

    def test_schedule_invalid_input(self, client):
        r = client.post("/loans/schedule", json={
            "principal": "1000.00", "annual_rate": "0.52", "term_periods": 0})
        assert r.status_code == 400

    def test_get_loan(self, client, loan_id):
        r = client.get(f"/loans/{loan_id}")
        assert r.status_code == 200
        data = r.json()
        assert data["status"] == "delivered"
        assert data["principal"]["amount"] == "1000.00"
        assert data["delivered_date"] == "2024-01-01"

    def test_get_missing_loan(self, client):
        assert client.get("/loans/NOPE").status_code == 404

    def test_installments(self, client, loan_id):
        r = client.get(f"/loans/{loan_id}/installments")
        assert r.status_code == 200
        installments = r.json()["installments"]
        assert len(installments) == 10
        assert installments[0]["status"] == "pending"

    def test_status_change_conflict(self, client, loan_id):
        r = client.post(f"/loans/{loan_id}/status", json={"status": "approved"})
        assert r.status_code == 409


class TestPaymentFlow:
    """Payment endpoints"""

    def test_allocate_payment(self, client, loan_id):
        r = client.post("/payments", json={
            "loan_id": loan_id,
            "amount": "105.58",
            "payment_date": "2024-01-05",
            "payment_id": "PAY001"
        })
        assert r.status_code == 201
        data = r.json()
        assert data["loan_status"] == "active"
        assert not data["replayed"]
        assert [(a["period_index"], a["component"], a["amount"]["amount"])
                for a in data["allocations"]] == [(1, "interest", "10.00"), (1, "capital", "95.58")]

    def test_replayed_payment(self, client, loan_id):
        body = {"loan_id": loan_id, "amount": "105.58", "payment_date": "2024-01-05",
                "payment_id": "PAY001"}
        client.post("/payments", json=body)
        r = client.post("/payments", json=body)
        assert r.status_code == 201
        assert r.json()["replayed"]

    def test_zero_payment(self, client, loan_id):
        r = client.post("/payments", json={
            "loan_id": loan_id, "amount": "0", "payment_date": "2024-01-05"})
        assert r.status_code == 400

    def test_sub_cent_payment(self, client, loan_id):
        r = client.post("/payments", json={
            "loan_id": loan_id, "amount": "100.005", "payment_date": "2024-01-05"})
        assert r.status_code == 400
        assert "decimal places" in r.json()["detail"]

    def test_sub_cent_reclassification(self, client, loan_id):
        client.post("/payments", json={"loan_id": loan_id, "amount": "105.58",
                                       "payment_date": "2024-01-05", "payment_id": "PAY001"})
        r = client.post("/payments/PAY001/reclassify", json={
            "allocations": [
                {"period_index": 1, "component": "interest", "amount": "10.005"},
                {"period_index": 1, "component": "capital", "amount": "95.575"}
            ],
            "note": "Split by hand"
        })
        assert r.status_code == 400

    def test_payment_on_unknown_loan(self, client):
        r = client.post("/payments", json={
            "loan_id": "NOPE", "amount": "10.00", "payment_date": "2024-01-05"})
        assert r.status_code == 404

    def test_payment_on_closed_loan(self, client, loan_id):
        r = client.post(f"/loans/{loan_id}/write-off", json={"resolved_on": "2024-02-01"})
        assert r.status_code == 200
        r = client.post("/payments", json={
            "loan_id": loan_id, "amount": "10.00", "payment_date": "2024-02-02"})
        assert r.status_code == 409

    def test_reclassify(self, client, loan_id):
        client.post("/payments", json={"loan_id": loan_id, "amount": "105.58",
                                       "payment_date": "2024-01-05", "payment_id": "PAY001"})

        r = client.post("/payments/PAY001/reclassify", json={
            "allocations": [
                {"period_index": 2, "component": "interest", "amount": "9.04"},
                {"period_index": 2, "component": "capital", "amount": "96.54"}
            ],
            "note": "Customer paid week 2"
        }, headers={"X-Actor": "supervisor1"})
        assert r.status_code == 200
        assert r.json()["allocation_version"] == 2

        r = client.get("/payments/PAY001", params={"include_superseded": True})
        assert len(r.json()["allocations"]) == 4

        r = client.get("/payments/PAY001/reclassifications")
        notes = r.json()["notes"]
        assert len(notes) == 1
        assert notes[0]["actor"] == "supervisor1"

    def test_reclassify_mismatch(self, client, loan_id):
        client.post("/payments", json={"loan_id": loan_id, "amount": "105.58",
                                       "payment_date": "2024-01-05", "payment_id": "PAY001"})
        r = client.post("/payments/PAY001/reclassify", json={
            "allocations": [{"period_index": 1, "component": "capital", "amount": "1.00"}],
            "note": "Wrong"
        })
        assert r.status_code == 400

    def test_missing_payment(self, client):
        assert client.get("/payments/NOPE").status_code == 404


class TestReports:
    """Reporting endpoints"""

    def test_overdue_report(self, client, loan_id):
        r = client.get("/reports/overdue", params={"as_of": "2024-01-16"})
        assert r.status_code == 200
        data = r.json()
        assert data["summary"]["total_items"] == 2
        assert data["items"][0]["priority"] == "medium"
        assert data["items"][0]["recommended_action"] == "phone_call"

    def test_reconciliation(self, client, loan_id):
        client.post("/payments", json={"loan_id": loan_id, "amount": "105.58",
                                       "payment_date": "2024-01-05"})
        r = client.get("/reports/reconciliation")
        assert r.status_code == 200
        data = r.json()
        assert data["income_statement"]["buckets"]["interest_income"]["amount"] == "10.00"
        assert "control" in data

    def test_audit_verify(self, client, loan_id):
        r = client.get("/reports/audit/verify")
        assert r.status_code == 200
        assert r.json()["valid"]


class TestResolutionEndpoints:

    def test_resolution_options_and_settlement(self, client, loan_id):
        r = client.get(f"/loans/{loan_id}/resolution-options")
        assert r.status_code == 200
        assert r.json()["settlement"]["maximum_amount"]["amount"] == "1055.82"

        r = client.post(f"/loans/{loan_id}/settle", json={"amount": "900.00",
                                                          "resolved_on": "2024-02-01"})
        assert r.status_code == 200
        assert r.json()["write_off_amount"]["amount"] == "100.00"
        assert client.get(f"/loans/{loan_id}").json()["status"] == "settled"

    def test_repossession(self, client, loan_id):
        r = client.post(f"/loans/{loan_id}/repossess", json={
            "recovery_value": "700.00", "recovery_costs": "100.00", "resolved_on": "2024-03-01"})
        assert r.status_code == 200
        assert r.json()["amount"]["amount"] == "600.00"

    def test_collection_action(self, client, loan_id):
        r = client.post(f"/loans/{loan_id}/collection-actions", json={
            "action_type": "payment_reminder", "contact_method": "whatsapp"})
        assert r.status_code == 201
        assert "action_id" in r.json()
