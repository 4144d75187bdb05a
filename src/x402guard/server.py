"""
x402guard API Server

Thin REST layer over the payment policy engine. Each route maps 1:1 to a
service operation; responses use the {success, data, timestamp} envelope.
"""

import logging
from datetime import datetime, UTC
from functools import lru_cache
from typing import Any, Dict, List, Optional

from dotenv import load_dotenv
from eth_account import Account
from fastapi import Depends, FastAPI, HTTPException, Request
from fastapi.encoders import jsonable_encoder
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

# Load environment variables before settings are read
load_dotenv()

from x402guard.chain import ChainActionDispatcher, Web3ChainGateway
from x402guard.config import Settings, settings
from x402guard.errors import (
    ChainExecutionError,
    PaymentRejectedError,
    PolicyViolationError,
    StorageError,
    UpstreamUnavailableError,
    ValidationError,
    X402Error,
)
from x402guard.ledger import create_ledger_store
from x402guard.payment import PaymentService, PaymentState
from x402guard.policy import PolicyService
from x402guard.risk import RiskAssessmentService, TransactionRiskRequest
from x402guard.schema import PaymentRequest
from x402guard.signature import SignatureService


logging.basicConfig(level=settings.log_level)
logger = logging.getLogger(__name__)

app = FastAPI(title="x402guard API", version="0.4.0")

origins = [
    "http://localhost:3000",  # Next.js dev server
    "http://127.0.0.1:3000",
]

app.add_middleware(
    CORSMiddleware,
    allow_origins=origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# Request models
class SessionInitRequest(BaseModel):
    user_id: str
    action: str = "transfer"


class PrepareRequest(BaseModel):
    user_id: str
    amount: str
    recipient: str
    action: str = "transfer"
    token: Optional[str] = None
    agent_address: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)


class PolicyCheckRequest(PaymentRequest):
    user_id: str


class SignedPaymentRequest(BaseModel):
    signature: str
    payment_details: Dict[str, Any]


class PaymentDetailsRequest(BaseModel):
    payment_details: Dict[str, Any]


class CreatePolicyRequest(BaseModel):
    user_id: str
    rules: Dict[str, Any] = Field(default_factory=dict)


class SpendingLimitRequest(BaseModel):
    user_id: str
    limit: str = Field(description="Daily cap in native unit")


class AddressRequest(BaseModel):
    user_id: str
    address: str


class MultiActionRequest(BaseModel):
    actions: List[Dict[str, Any]]


class ContractCallRequest(BaseModel):
    contract_address: str
    method: str
    params: List[Any] = Field(default_factory=list)


class BadAddressRequest(BaseModel):
    address: str


# Service container
class X402Container:
    def __init__(self, settings: Settings):
        signer_key = settings.signer_private_key
        if not signer_key:
            ephemeral = Account.create()
            signer_key = ephemeral.key.hex()
            logger.warning(
                f"No signer key configured; using ephemeral signer {ephemeral.address}. "
                "Signatures will not survive a restart."
            )

        self.ledger = create_ledger_store(settings)
        self.gateway = Web3ChainGateway(private_key=signer_key)
        self.dispatcher = ChainActionDispatcher.from_gateway(self.gateway, settings)

        self.policy_service = PolicyService(self.ledger, self.gateway, settings=settings)
        self.signature_service = SignatureService(private_key=signer_key, settings=settings)
        self.risk_service = RiskAssessmentService(
            self.ledger, self.gateway, policy_service=self.policy_service, settings=settings,
        )
        self.payment_service = PaymentService(
            self.policy_service,
            self.signature_service,
            self.gateway,
            self.dispatcher,
            self.ledger,
            settings=settings,
        )

        logger.info("x402guard services initialized")


@lru_cache(maxsize=1)
def get_container() -> X402Container:
    return X402Container(settings)


def envelope(data: Any, success: bool = True, status_code: int = 200) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content={
            "success": success,
            "data": jsonable_encoder(data),
            "timestamp": datetime.now(UTC).isoformat(),
        },
    )


def status_for(error: X402Error) -> int:
    """HTTP status for a core error."""
    if isinstance(error, PolicyViolationError):
        return 403
    if isinstance(error, PaymentRejectedError):
        return 409 if error.duplicate else 400
    if isinstance(error, ValidationError):
        return 400
    if isinstance(error, (StorageError, UpstreamUnavailableError)):
        return 503
    if isinstance(error, ChainExecutionError):
        return 502
    return 500


@app.exception_handler(X402Error)
async def handle_x402_error(request: Request, exc: X402Error) -> JSONResponse:
    status_code = status_for(exc)
    logger.warning(f"{request.method} {request.url.path} -> {status_code}: {exc.message}")

    body: Dict[str, Any] = {
        "success": False,
        "error": exc.message,
        "timestamp": datetime.now(UTC).isoformat(),
    }
    if exc.errors:
        body["errors"] = exc.errors
    if isinstance(exc, PolicyViolationError):
        body["violations"] = exc.violations
    return JSONResponse(status_code=status_code, content=jsonable_encoder(body))


# Routes
@app.get("/health")
def health():
    return {"status": "online", "system": "x402guard"}


@app.post("/x402/session/init")
def init_session(req: SessionInitRequest, c: X402Container = Depends(get_container)):
    return envelope(c.payment_service.initialize_payment_session(req.user_id, req.action))


@app.get("/x402/session/{session_id}")
def get_session(session_id: str, c: X402Container = Depends(get_container)):
    session = c.payment_service.get_session(session_id)
    if session is None:
        raise HTTPException(status_code=404, detail="Session not found or expired")
    return envelope(session)


@app.delete("/x402/session/{session_id}")
def end_session(session_id: str, c: X402Container = Depends(get_container)):
    return envelope({"ended": c.payment_service.end_session(session_id)})


@app.post("/x402/prepare")
def prepare_payment(req: PrepareRequest, c: X402Container = Depends(get_container)):
    metadata = {
        **req.metadata,
        "user_id": req.user_id,
        "action": req.action,
        "token": req.token,
        "agent_address": req.agent_address,
    }
    return envelope(c.payment_service.prepare_payment(req.amount, req.recipient, metadata))


@app.post("/x402/preview")
def preview_payment(req: PaymentDetailsRequest, c: X402Container = Depends(get_container)):
    return envelope(c.payment_service.get_payment_preview(req.payment_details))


@app.post("/x402/verify-policy")
def verify_policy(req: PolicyCheckRequest, c: X402Container = Depends(get_container)):
    result = c.policy_service.check_policy_compliance(req, req.user_id)
    return envelope(result)


@app.post("/x402/verify")
def verify_payment(req: SignedPaymentRequest, c: X402Container = Depends(get_container)):
    result = c.payment_service.verify_payment(req.signature, req.payment_details)
    return envelope(result, success=result.verified, status_code=200 if result.verified else 400)


@app.post("/x402/execute")
def execute_payment(req: SignedPaymentRequest, c: X402Container = Depends(get_container)):
    result = c.payment_service.execute_payment(req.signature, req.payment_details)
    status_code = 202 if result.state == PaymentState.UNKNOWN else 200
    return envelope(result, status_code=status_code)


@app.get("/x402/history/{user_id}")
def payment_history(user_id: str, limit: int = 50, c: X402Container = Depends(get_container)):
    return envelope(c.payment_service.get_payment_history(user_id, limit))


@app.get("/x402/policy/{user_id}")
def get_policy(user_id: str, c: X402Container = Depends(get_container)):
    return envelope(c.policy_service.get_policy(user_id))


@app.post("/x402/policy/create")
def create_policy(req: CreatePolicyRequest, c: X402Container = Depends(get_container)):
    return envelope(c.payment_service.create_payment_policy(req.user_id, req.rules))


@app.post("/x402/policy/set-limit")
def set_limit(req: SpendingLimitRequest, c: X402Container = Depends(get_container)):
    return envelope(c.policy_service.set_spending_limit(req.user_id, req.limit))


@app.post("/x402/policy/allow-address")
def allow_address(req: AddressRequest, c: X402Container = Depends(get_container)):
    return envelope(c.policy_service.add_allowed_address(req.user_id, req.address))


@app.post("/x402/policy/remove-allowed-address")
def remove_allowed_address(req: AddressRequest, c: X402Container = Depends(get_container)):
    return envelope(c.policy_service.remove_allowed_address(req.user_id, req.address))


@app.post("/x402/policy/deny-address")
def deny_address(req: AddressRequest, c: X402Container = Depends(get_container)):
    return envelope(c.policy_service.add_denied_address(req.user_id, req.address))


@app.get("/x402/policy/summary/{user_id}")
def policy_summary(user_id: str, c: X402Container = Depends(get_container)):
    return envelope(c.policy_service.get_policy_summary(user_id))


@app.post("/x402/signature/generate")
def generate_signature(req: PaymentDetailsRequest, c: X402Container = Depends(get_container)):
    return envelope(c.signature_service.generate_payment_signature(req.payment_details))


@app.post("/x402/signature/verify")
def verify_signature(req: SignedPaymentRequest, c: X402Container = Depends(get_container)):
    details = req.payment_details
    return envelope({
        "valid": c.signature_service.verify_signature(req.signature, details),
        "expired": not c.signature_service.verify_expiration(details),
    })


@app.post("/x402/signature/multi-action")
def multi_action_signature(req: MultiActionRequest, c: X402Container = Depends(get_container)):
    return envelope(c.signature_service.create_single_tx_signature(req.actions))


@app.post("/x402/signature/contract-call")
def contract_call_signature(req: ContractCallRequest, c: X402Container = Depends(get_container)):
    return envelope(c.signature_service.sign_contract_call(req.contract_address, req.method, req.params))


@app.post("/risk/assess")
def assess_risk(req: TransactionRiskRequest, c: X402Container = Depends(get_container)):
    return envelope(c.risk_service.assess_transaction(req))


@app.post("/risk/bad-address")
def add_bad_address(req: BadAddressRequest, c: X402Container = Depends(get_container)):
    c.risk_service.add_bad_address(req.address)
    return envelope({"address": req.address.lower(), "blocked": True})


@app.delete("/risk/bad-address/{address}")
def remove_bad_address(address: str, c: X402Container = Depends(get_container)):
    c.risk_service.remove_bad_address(address)
    return envelope({"address": address.lower(), "blocked": False})


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host=settings.host, port=settings.port)
