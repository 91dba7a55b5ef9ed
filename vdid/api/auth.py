"""Password authentication and session endpoints.

Access tokens are returned in the body; the refresh token travels in an
HttpOnly ``refreshToken`` cookie.
"""

import logging
from typing import Optional

from fastapi import APIRouter, Cookie, Depends, Request, Response, status

from vdid.api.deps import (
    clear_refresh_cookie,
    client_ip,
    get_auth_context,
    get_services,
    set_refresh_cookie,
    user_agent,
)
from vdid.api.models import (
    ChangePasswordRequest,
    ForgotPasswordRequest,
    LoginRequest,
    RefreshRequest,
    RegisterRequest,
    ResetPasswordRequest,
)
from vdid.audit.logger import get_request_id
from vdid.config import REFRESH_COOKIE_NAME
from vdid.identity.vid import validate_vid
from vdid.models import AuthContext
from vdid.services import Services

log = logging.getLogger(__name__)

router = APIRouter(prefix="/auth", tags=["auth"])


@router.post("/register", status_code=status.HTTP_201_CREATED)
def register(body: RegisterRequest, services: Services = Depends(get_services)) -> dict:
    """Create an account with email and password."""
    principal = services.passwords.register(body.email, body.password, body.display_name)
    return {"success": True, "user": principal.to_public_dict()}


@router.post("/login")
def login(
    body: LoginRequest,
    request: Request,
    response: Response,
    services: Services = Depends(get_services),
) -> dict:
    principal, tokens = services.passwords.login(
        body.email,
        body.password,
        ip_address=client_ip(request),
        user_agent=user_agent(request),
        request_id=get_request_id(request),
    )
    set_refresh_cookie(response, tokens.refresh_token)
    return {
        "success": True,
        "user": principal.to_public_dict(),
        "accessToken": tokens.access_token,
        "expiresAt": tokens.access_expires_at.isoformat(),
    }


@router.post("/refresh")
def refresh(
    request: Request,
    response: Response,
    body: Optional[RefreshRequest] = None,
    refresh_cookie: Optional[str] = Cookie(None, alias=REFRESH_COOKIE_NAME),
    services: Services = Depends(get_services),
) -> dict:
    """Rotate the session; the body token wins over the cookie."""
    token = (body.refresh_token if body else None) or refresh_cookie
    principal, tokens = services.tokens.refresh(token, ip_address=client_ip(request))
    set_refresh_cookie(response, tokens.refresh_token)
    return {
        "success": True,
        "accessToken": tokens.access_token,
        "expiresAt": tokens.access_expires_at.isoformat(),
    }


@router.post("/logout")
def logout(
    response: Response,
    ctx: AuthContext = Depends(get_auth_context),
    services: Services = Depends(get_services),
) -> dict:
    services.tokens.logout(ctx.session_id)
    services.audit.log_access("auth.logout", ctx.principal_id)
    clear_refresh_cookie(response)
    return {"success": True, "message": "Logged out"}


@router.post("/logout-all")
def logout_all(
    response: Response,
    ctx: AuthContext = Depends(get_auth_context),
    services: Services = Depends(get_services),
) -> dict:
    count = services.tokens.logout_all(ctx.principal_id)
    log.info(f"Revoked {count} session(s) for {ctx.principal.vid}")
    services.audit.log_access("auth.logout_all", ctx.principal_id, details={"sessions": count})
    clear_refresh_cookie(response)
    return {"success": True, "sessionsRevoked": count}


@router.get("/me")
def me(ctx: AuthContext = Depends(get_auth_context)) -> dict:
    return {"success": True, "user": ctx.principal.to_public_dict()}


@router.get("/sessions")
def sessions(
    ctx: AuthContext = Depends(get_auth_context),
    services: Services = Depends(get_services),
) -> dict:
    return {
        "success": True,
        "sessions": [
            {
                "sessionId": s.session_id[:8],
                "deviceType": s.device_type,
                "ipAddress": s.ip_address,
                "userAgent": s.user_agent,
                "createdAt": s.created_at.isoformat() if s.created_at else None,
                "lastActivityAt": s.last_activity_at.isoformat() if s.last_activity_at else None,
                "current": s.session_id == ctx.session_id,
            }
            for s in services.tokens.list_sessions(ctx.principal_id)
        ],
    }


@router.post("/change-password")
def change_password(
    body: ChangePasswordRequest,
    ctx: AuthContext = Depends(get_auth_context),
    services: Services = Depends(get_services),
) -> dict:
    revoked = services.passwords.change_password(ctx, body.current_password, body.new_password)
    return {"success": True, "sessionsRevoked": revoked}


@router.get("/check-vid/{vid}")
def check_vid(vid: str, services: Services = Depends(get_services)) -> dict:
    """Report whether a V-ID is well-formed and in use."""
    return {
        "success": True,
        "valid": validate_vid(vid),
        "exists": services.passwords.check_vid(vid),
    }


@router.get("/verify-email/{token}")
def verify_email(token: str, services: Services = Depends(get_services)) -> dict:
    principal = services.passwords.verify_email(token)
    return {"success": True, "user": principal.to_public_dict()}


@router.post("/verify-email/resend")
def resend_verification(
    ctx: AuthContext = Depends(get_auth_context),
    services: Services = Depends(get_services),
) -> dict:
    services.passwords.resend_email_verification(ctx)
    return {"success": True, "message": "Verification email sent"}


@router.post("/forgot-password")
def forgot_password(
    body: ForgotPasswordRequest,
    request: Request,
    services: Services = Depends(get_services),
) -> dict:
    """Start a password reset; the answer is the same whether or not the account exists."""
    services.passwords.request_password_reset(body.email, request_id=get_request_id(request))
    return {
        "success": True,
        "message": "If an account with that email exists, a password reset link has been sent.",
    }


@router.post("/reset-password")
def reset_password(
    body: ResetPasswordRequest,
    response: Response,
    services: Services = Depends(get_services),
) -> dict:
    revoked = services.passwords.reset_password(body.token, body.new_password)
    clear_refresh_cookie(response)
    return {"success": True, "sessionsRevoked": revoked}
