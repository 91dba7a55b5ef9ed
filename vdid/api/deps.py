"""FastAPI dependencies shared by the routers."""

from fastapi import Depends, Request, Response
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from vdid.config import COOKIE_SECURE, REFRESH_COOKIE_NAME, REFRESH_TOKEN_TTL_SECONDS
from vdid.models import AuthContext
from vdid.services import Services

bearer_scheme = HTTPBearer(auto_error=False)


def get_services(request: Request) -> Services:
    return request.app.state.services


def get_auth_context(
    credentials: HTTPAuthorizationCredentials | None = Depends(bearer_scheme),
    services: Services = Depends(get_services),
) -> AuthContext:
    """Resolve the bearer access token into an AuthContext (401 otherwise)."""
    token = credentials.credentials if credentials else None
    return services.tokens.authenticate(token)


def client_ip(request: Request) -> str | None:
    forwarded = request.headers.get("X-Forwarded-For")
    if forwarded:
        return forwarded.split(",")[0].strip()
    return request.client.host if request.client else None


def user_agent(request: Request) -> str | None:
    return request.headers.get("User-Agent")


def set_refresh_cookie(response: Response, refresh_token: str) -> None:
    response.set_cookie(
        key=REFRESH_COOKIE_NAME,
        value=refresh_token,
        httponly=True,
        samesite="lax",
        secure=COOKIE_SECURE,
        path="/",
        max_age=REFRESH_TOKEN_TTL_SECONDS,
    )


def clear_refresh_cookie(response: Response) -> None:
    response.delete_cookie(key=REFRESH_COOKIE_NAME, path="/")
