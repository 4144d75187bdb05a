"""API tests for the x402guard server."""

from types import SimpleNamespace
from unittest.mock import patch

from fastapi.testclient import TestClient

from x402guard.config import Settings
from x402guard.errors import ConfirmationTimeoutError, PaymentRejectedError, StorageError
from x402guard.ledger import SQLiteLedgerStore
from x402guard.payment import PaymentService
from x402guard.policy import PolicyService
from x402guard.risk import RiskAssessmentService
from x402guard.server import app, get_container, status_for
from x402guard.signature import SignatureService

from conftest import AGENT_KEY, RECIPIENT, USER, ZERO_ADDRESS, FakeChainGateway, RecordingExecutor, make_dispatcher


def build_container():
    settings = Settings(signer_private_key=AGENT_KEY)
    ledger = SQLiteLedgerStore()
    gateway = FakeChainGateway()
    dispatcher = make_dispatcher(gateway)
    policy_service = PolicyService(ledger, gateway, settings=settings)
    signature_service = SignatureService(settings=settings)
    return SimpleNamespace(
        ledger=ledger,
        gateway=gateway,
        dispatcher=dispatcher,
        policy_service=policy_service,
        signature_service=signature_service,
        risk_service=RiskAssessmentService(ledger, gateway, policy_service=policy_service, settings=settings),
        payment_service=PaymentService(
            policy_service, signature_service, gateway, dispatcher, ledger, settings=settings,
        ),
    )


class TestServer:
    """Routes, envelope and error mapping."""

    def setup_method(self):
        self.container = build_container()
        app.dependency_overrides[get_container] = lambda: self.container
        self.client = TestClient(app)

    def teardown_method(self):
        app.dependency_overrides.clear()
        self.container.payment_service.shutdown()

    def prepare(self, amount="0.05"):
        response = self.client.post("/x402/prepare", json={"user_id": USER, "amount": amount, "recipient": RECIPIENT})
        assert response.status_code == 200
        return response.json()["data"]["payment"]

    def sign(self, payment):
        response = self.client.post("/x402/signature/generate", json={"payment_details": payment})
        assert response.status_code == 200
        return response.json()["data"]["signature"]

    def test_health(self):
        response = self.client.get("/health")
        assert response.json()["status"] == "online"

    def test_session_lifecycle(self):
        created = self.client.post("/x402/session/init", json={"user_id": USER, "action": "transfer"})
        session_id = created.json()["data"]["session_id"]

        assert created.json()["success"] is True
        assert "timestamp" in created.json()
        assert self.client.get(f"/x402/session/{session_id}").status_code == 200
        assert self.client.delete(f"/x402/session/{session_id}").json()["data"] == {"ended": True}
        assert self.client.get(f"/x402/session/{session_id}").status_code == 404

    def test_prepare_policy_violation_is_403(self):
        response = self.client.post("/x402/prepare", json={"user_id": USER, "amount": "0.5", "recipient": RECIPIENT})

        body = response.json()
        assert response.status_code == 403
        assert body["success"] is False
        assert body["violations"] == ["Amount exceeds single transaction limit of 0.1 BNB"]

    def test_prepare_bad_recipient_is_400(self):
        response = self.client.post("/x402/prepare", json={"user_id": USER, "amount": "0.05", "recipient": "0x12"})

        assert response.status_code == 400
        assert response.json()["error"] == "Invalid address: 0x12"

    def test_verify_policy(self):
        response = self.client.post("/x402/verify-policy", json={
            "user_id": USER, "amount": "0.05", "recipient": RECIPIENT,
        })

        assert response.json()["data"]["compliant"] is True

    def test_prepare_sign_execute(self):
        payment = self.prepare()
        signature = self.sign(payment)

        verified = self.client.post("/x402/verify", json={"signature": signature, "payment_details": payment})
        executed = self.client.post("/x402/execute", json={"signature": signature, "payment_details": payment})
        duplicate = self.client.post("/x402/execute", json={"signature": signature, "payment_details": payment})

        assert verified.status_code == 200
        assert verified.json()["data"]["verified"] is True
        assert executed.status_code == 200
        assert executed.json()["data"]["state"] == "executed"
        assert duplicate.status_code == 409

        history = self.client.get(f"/x402/history/{USER}").json()["data"]
        assert len(history) == 1

    def test_verify_bad_signature_is_400(self):
        payment = self.prepare()

        response = self.client.post("/x402/verify", json={"signature": "0x" + "22" * 65, "payment_details": payment})

        assert response.status_code == 400
        assert response.json()["data"]["error"] == "Signature verification failed"

    def test_unknown_outcome_is_202(self):
        self.container.dispatcher.register(
            "transfer", RecordingExecutor(self.container.gateway, error=ConfirmationTimeoutError("0xabc")),
        )
        payment = self.prepare()

        response = self.client.post("/x402/execute", json={"signature": self.sign(payment), "payment_details": payment})

        assert response.status_code == 202
        assert response.json()["data"]["state"] == "unknown"

    def test_history_storage_failure_is_503(self):
        with patch.object(self.container.ledger, "query", side_effect=StorageError("down")):
            response = self.client.get(f"/x402/history/{USER}")

        assert response.status_code == 503

    def test_policy_routes(self):
        limit = self.client.post("/x402/policy/set-limit", json={"user_id": USER, "limit": "2"})
        allowed = self.client.post("/x402/policy/allow-address", json={"user_id": USER, "address": RECIPIENT})
        denied = self.client.post("/x402/policy/deny-address", json={"user_id": USER, "address": ZERO_ADDRESS})
        summary = self.client.get(f"/x402/policy/summary/{USER}")

        assert limit.json()["data"]["max_daily_spend"] == str(2 * 10**18)
        assert allowed.json()["data"]["allowed_addresses"] == [RECIPIENT.lower()]
        assert denied.json()["data"]["denied_addresses"] == [ZERO_ADDRESS]
        assert summary.json()["data"]["limits"]["max_daily_spend"] == "2"
        assert summary.json()["data"]["allowed_address_count"] == 1

        removed = self.client.post("/x402/policy/remove-allowed-address", json={"user_id": USER, "address": RECIPIENT})
        assert removed.json()["data"]["allowed_addresses"] == []

    def test_create_and_get_policy(self):
        self.client.post("/x402/policy/create", json={"user_id": USER, "rules": {"daily_tx_limit": 5}})

        policy = self.client.get(f"/x402/policy/{USER}").json()["data"]

        assert policy["daily_tx_limit"] == 5

    def test_signature_routes(self):
        multi = self.client.post("/x402/signature/multi-action", json={
            "actions": [{"type": "transfer", "target": RECIPIENT}],
        })
        call = self.client.post("/x402/signature/contract-call", json={
            "contract_address": RECIPIENT, "method": "approve", "params": [USER, 1],
        })

        assert multi.json()["data"]["signature"].startswith("0x")
        assert call.json()["data"]["payload"]["method"] == "approve"

    def test_risk_routes(self):
        assessed = self.client.post("/risk/assess", json={"user_id": USER, "amount": "0.05", "recipient": ZERO_ADDRESS})

        assert assessed.json()["data"]["risk_level"] == "CRITICAL"
        assert assessed.json()["data"]["can_execute"] is False

        self.client.post("/risk/bad-address", json={"address": RECIPIENT})
        assert self.container.risk_service.is_bad_address(RECIPIENT)
        self.client.delete(f"/risk/bad-address/{RECIPIENT}")
        assert not self.container.risk_service.is_bad_address(RECIPIENT)

    def test_status_mapping(self):
        assert status_for(PaymentRejectedError("expired")) == 400
        assert status_for(PaymentRejectedError("again", duplicate=True)) == 409
        assert status_for(StorageError("down")) == 503
