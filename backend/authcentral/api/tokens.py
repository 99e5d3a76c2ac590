"""
AuthCentral - Token Verification API
Stateless verification for client applications that never hold the signing key
"""
from typing import Optional

from fastapi import APIRouter, Request

from ..auth import extract_token
from ..errors import MalformedTokenError
from ..schemas import PublicKeyResponse, TokenVerificationRequest, TokenVerificationResponse

router = APIRouter(prefix="/api/auth", tags=["tokens"])


@router.post("/verify", response_model=TokenVerificationResponse)
async def verify_token(request: Request, payload: Optional[TokenVerificationRequest] = None):
    """Validate a token from the body, the bearer header or the session cookie"""
    token = payload.token if payload and payload.token else None
    if token and token.lower().startswith("bearer "):
        token = token[7:].strip()
    if not token:
        token = extract_token(request, request.app.state.cookie_manager.name)
    if not token:
        raise MalformedTokenError("No token supplied")

    claims = request.app.state.token_verifier.verify(token)
    return TokenVerificationResponse(valid=True, claims=claims)


@router.get("/public-key", response_model=PublicKeyResponse)
async def public_key(request: Request):
    verifier = request.app.state.token_verifier
    return PublicKeyResponse(algorithm=verifier.algorithm, public_key=verifier.public_key_pem.decode("utf-8"))
