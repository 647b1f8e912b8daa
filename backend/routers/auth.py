from fastapi import APIRouter, Depends, Header, Request
from pydantic import BaseModel

from backend.errors import ValidationError
from backend.security import (
    client_ip,
    generate_csrf_token,
    hash_password,
    reject_blocked_ip,
    require_csrf,
    require_role,
    require_session,
    user_agent,
)
from backend.services import auth
from backend.services.device import DeviceTraits, compute_fingerprint

router = APIRouter()


class LoginRequest(BaseModel):
    login: str
    password: str
    csrf_token: str | None = None
    fingerprint: str | None = None
    device: DeviceTraits | None = None


class RefreshRequest(BaseModel):
    refresh_token: str | None = None


class TokenRequest(BaseModel):
    token: str | None = None


class HashPasswordRequest(BaseModel):
    password: str


@router.get("/auth/csrf", dependencies=[Depends(reject_blocked_ip)])
def issue_csrf_token():
    return {"success": True, "csrf_token": generate_csrf_token()}


@router.post("/auth/login")
def login(
    payload: LoginRequest,
    request: Request,
    x_xsrf_token: str | None = Header(default=None),
):
    fingerprint = payload.fingerprint
    if not fingerprint and payload.device is not None:
        fingerprint = compute_fingerprint(payload.device)

    return auth.login(
        login=payload.login,
        password=payload.password,
        fingerprint=fingerprint,
        csrf_body=payload.csrf_token,
        csrf_header=x_xsrf_token,
        ip_address=client_ip(request),
        user_agent=user_agent(request),
    )


@router.post("/auth/refresh", dependencies=[Depends(reject_blocked_ip)])
def refresh(payload: RefreshRequest):
    return auth.refresh(payload.refresh_token)


@router.post("/auth/validate", dependencies=[Depends(reject_blocked_ip)])
def validate(payload: TokenRequest):
    return auth.validate(payload.token)


@router.post("/auth/logout", dependencies=[Depends(reject_blocked_ip)])
def logout(payload: TokenRequest, request: Request, authorization: str | None = Header(default=None)):
    token = payload.token
    if not token and authorization:
        scheme, _, value = authorization.partition(" ")
        if scheme.lower() == "bearer":
            token = value.strip()
    return auth.logout(token, ip_address=client_ip(request), user_agent=user_agent(request))


@router.get("/auth/me", dependencies=[Depends(reject_blocked_ip)])
def auth_me(context: dict = Depends(require_session)):
    return {
        "success": True,
        "user": context["user"],
        "expires_at": context["session"]["expires_at"],
    }


@router.post(
    "/auth/hash-password",
    dependencies=[Depends(reject_blocked_ip), Depends(require_role("admin")), Depends(require_csrf)],
)
def hash_password_endpoint(payload: HashPasswordRequest):
    if not payload.password:
        raise ValidationError("Password is required.")
    return {"success": True, "hash": hash_password(payload.password)}
