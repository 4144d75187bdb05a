"""Tests for the Risk Assessment Service."""

from decimal import Decimal
from unittest.mock import MagicMock

from x402guard.chain.models import GasEstimate
from x402guard.errors import StorageError
from x402guard.ledger import PAYMENTS_COLLECTION, SQLiteLedgerStore
from x402guard.policy import PolicyService
from x402guard.risk import RiskAssessmentService, RiskLevel, Severity, TransactionRiskRequest
from x402guard.risk.models import RiskFinding
from x402guard.schema import PaymentRequest

from conftest import FakeChainGateway, OTHER_RECIPIENT, RECIPIENT, USER, ZERO_ADDRESS


def gas(gwei: int, limit: int = 21000) -> GasEstimate:
    price = gwei * 10**9
    return GasEstimate(
        gas_limit=limit,
        gas_price_wei=price,
        gas_price_gwei=str(gwei),
        estimated_cost_wei=price * limit,
        estimated_cost_native=str(Decimal(price * limit) / 10**18),
    )


def types(assessment):
    return [r.type for r in assessment.risks]


class TestRiskLevels:
    """Risk level bucketing."""

    def test_empty_is_low(self):
        assert RiskAssessmentService.calculate_risk_level([]) == RiskLevel.LOW

    def test_single_finding_sets_bucket(self):
        medium = RiskFinding(type="x", severity=Severity.MEDIUM, message="m")
        critical = RiskFinding(type="y", severity=Severity.CRITICAL, message="c")

        assert RiskAssessmentService.calculate_risk_level([medium]) == RiskLevel.MEDIUM
        assert RiskAssessmentService.calculate_risk_level([medium, critical]) == RiskLevel.CRITICAL

    def test_many_low_findings_stay_low(self):
        lows = [RiskFinding(type=f"l{i}", severity=Severity.LOW, message="l") for i in range(5)]
        assert RiskAssessmentService.calculate_risk_level(lows) == RiskLevel.LOW


class TestRiskAssessment:
    """Individual heuristics."""

    def setup_method(self):
        self.ledger = SQLiteLedgerStore()
        self.gateway = FakeChainGateway()
        self.policy_service = PolicyService(self.ledger, self.gateway)
        self.service = RiskAssessmentService(self.ledger, self.gateway, policy_service=self.policy_service)

    def record_history(self, amount="0.05", recipient=RECIPIENT, count=1):
        for _ in range(count):
            self.ledger.store(PAYMENTS_COLLECTION, {
                "user_id": USER,
                "amount": amount,
                "recipient": recipient,
                "status": "success",
            })

    def test_blocked_zero_address_is_critical(self):
        assessment = self.service.assess_transaction(
            TransactionRiskRequest(user_id=USER, amount="0.05", recipient=ZERO_ADDRESS)
        )

        assert assessment.risk_level == RiskLevel.CRITICAL
        assert assessment.can_execute is False
        assert "blocked_address" in types(assessment)
        assert any(r.priority == "critical" for r in assessment.recommendations)

    def test_added_bad_address_is_blocked(self):
        self.service.add_bad_address(RECIPIENT)

        assert self.service.is_bad_address(RECIPIENT.lower())

        self.service.remove_bad_address(RECIPIENT)
        assert not self.service.is_bad_address(RECIPIENT)

    def test_first_transaction_and_new_recipient(self):
        assessment = self.service.assess_transaction(
            TransactionRiskRequest(user_id=USER, amount="0.05", recipient=RECIPIENT)
        )

        assert types(assessment) == ["first_transaction", "new_recipient"]
        assert assessment.risk_level == RiskLevel.LOW
        assert assessment.can_execute is True

    def test_known_recipient_is_not_new(self):
        self.record_history(recipient=RECIPIENT.lower())

        assessment = self.service.assess_transaction(
            TransactionRiskRequest(user_id=USER, amount="0.05", recipient=RECIPIENT)
        )

        assert "new_recipient" not in types(assessment)
        assert "first_transaction" not in types(assessment)

    def test_unusual_amount(self):
        self.record_history(amount="0.05", count=3)

        assessment = self.service.assess_transaction(
            TransactionRiskRequest(user_id=USER, amount="0.5", recipient=RECIPIENT)
        )

        assert "unusual_amount" in types(assessment)
        assert assessment.risk_level == RiskLevel.MEDIUM

    def test_large_multiple_below_floor_is_not_unusual(self):
        self.record_history(amount="0.01", count=3)

        assessment = self.service.assess_transaction(
            TransactionRiskRequest(user_id=USER, amount="0.05", recipient=RECIPIENT)
        )

        assert "unusual_amount" not in types(assessment)

    def test_gas_spike_against_fallback_average(self):
        assessment = self.service.assess_transaction(TransactionRiskRequest(gas_estimate=gas(10)))

        finding = assessment.risks[0]
        assert finding.type == "high_gas_price"
        assert finding.severity == Severity.MEDIUM

    def test_gas_price_history(self):
        assert self.service.get_average_gas_price() == Decimal("5")

        self.service.record_gas_price(Decimal("4"))
        self.service.record_gas_price(Decimal("6"))

        assert self.service.get_average_gas_price() == Decimal("5")

    def test_assessment_feeds_gas_history(self):
        self.service.assess_transaction(TransactionRiskRequest(gas_estimate=gas(3)))
        assert self.service.get_average_gas_price() == Decimal("3")

    def test_gas_history_is_bounded(self):
        for _ in range(150):
            self.service.record_gas_price(Decimal("100"))
        for _ in range(100):
            self.service.record_gas_price(Decimal("1"))

        assert self.service.get_average_gas_price() == Decimal("1")

    def test_insufficient_balance_is_critical(self):
        self.gateway.balance_wei = 10**17

        assessment = self.service.assess_transaction(TransactionRiskRequest(
            **{"from": USER}, amount="0.1", gas_estimate=gas(5),
        ))

        assert "insufficient_balance" in types(assessment)
        assert assessment.can_execute is False

    def test_low_remaining_balance(self):
        self.gateway.balance_wei = 105 * 10**15

        assessment = self.service.assess_transaction(TransactionRiskRequest(from_address=USER, amount="0.1"))

        assert types(assessment) == ["low_remaining_balance"]

    def test_balance_unavailable_is_reported(self):
        self.gateway.unavailable = True

        assessment = self.service.assess_transaction(TransactionRiskRequest(from_address=USER, amount="0.1"))

        assert "balance_unavailable" in types(assessment)
        assert assessment.risk_level == RiskLevel.MEDIUM

    def test_high_frequency(self):
        for _ in range(51):
            self.policy_service.record_payment(USER, PaymentRequest(amount="0.001", recipient=RECIPIENT))

        assessment = self.service.assess_transaction(TransactionRiskRequest(user_id=USER))

        assert types(assessment) == ["high_frequency"]

    def test_round_number_and_dust(self):
        round_assessment = self.service.assess_transaction(TransactionRiskRequest(amount="20"))
        dust_assessment = self.service.assess_transaction(TransactionRiskRequest(amount="0.00001"))

        assert types(round_assessment) == ["round_number"]
        assert types(dust_assessment) == ["dust_amount"]

    def test_no_risks_gets_general_recommendation(self):
        assessment = self.service.assess_transaction(TransactionRiskRequest(amount="1.5"))

        assert assessment.risks == []
        assert assessment.recommendations[0].type == "general"

    def test_history_outage_skips_history_checks(self):
        ledger = MagicMock()
        ledger.query.side_effect = StorageError("down")
        service = RiskAssessmentService(ledger, self.gateway)

        assessment = service.assess_transaction(
            TransactionRiskRequest(user_id=USER, amount="0.05", recipient=OTHER_RECIPIENT)
        )

        assert assessment.risks == []

    def test_request_accepts_from_alias(self):
        request = TransactionRiskRequest.model_validate({"from": USER, "amount": "1"})
        assert request.from_address == USER
