"""Passkey (WebAuthn) endpoints."""

import logging

from fastapi import APIRouter, Depends, Request, Response

from vdid.api.deps import client_ip, get_auth_context, get_services, set_refresh_cookie, user_agent
from vdid.api.models import (
    PasskeyAuthOptionsRequest,
    PasskeyAuthVerifyRequest,
    PasskeyRegisterVerifyRequest,
    PasskeyRenameRequest,
)
from vdid.audit.logger import get_request_id
from vdid.models import AuthContext
from vdid.services import Services

log = logging.getLogger(__name__)

router = APIRouter(prefix="/passkeys", tags=["passkeys"])


@router.post("/register/options")
def registration_options(
    ctx: AuthContext = Depends(get_auth_context),
    services: Services = Depends(get_services),
) -> dict:
    return {"success": True, "options": services.passkeys.registration_options(ctx.principal_id)}


@router.post("/register/verify")
def registration_verify(
    body: PasskeyRegisterVerifyRequest,
    ctx: AuthContext = Depends(get_auth_context),
    services: Services = Depends(get_services),
) -> dict:
    passkey = services.passkeys.verify_registration(ctx.principal_id, body.credential, body.device_name)
    return {"success": True, "passkey": passkey.to_public_dict()}


@router.post("/authenticate/options")
def authentication_options(
    body: PasskeyAuthOptionsRequest,
    services: Services = Depends(get_services),
) -> dict:
    return {"success": True, "options": services.passkeys.authentication_options(email=body.email)}


@router.post("/authenticate/verify")
def authentication_verify(
    body: PasskeyAuthVerifyRequest,
    request: Request,
    response: Response,
    services: Services = Depends(get_services),
) -> dict:
    result = services.passkeys.verify_authentication(
        body.credential,
        ip_address=client_ip(request),
        user_agent=user_agent(request),
        request_id=get_request_id(request),
    )
    set_refresh_cookie(response, result.tokens.refresh_token)
    return {
        "success": True,
        "user": result.principal.to_public_dict(),
        "accessToken": result.tokens.access_token,
    }


@router.get("")
def list_passkeys(
    ctx: AuthContext = Depends(get_auth_context),
    services: Services = Depends(get_services),
) -> dict:
    passkeys = services.passkeys.list_passkeys(ctx.principal_id)
    return {"success": True, "passkeys": [p.to_public_dict() for p in passkeys]}


@router.patch("/{passkey_id}")
def rename_passkey(
    passkey_id: str,
    body: PasskeyRenameRequest,
    ctx: AuthContext = Depends(get_auth_context),
    services: Services = Depends(get_services),
) -> dict:
    passkey = services.passkeys.rename_passkey(ctx.principal_id, passkey_id, body.device_name)
    return {"success": True, "passkey": passkey.to_public_dict()}


@router.delete("/{passkey_id}")
def delete_passkey(
    passkey_id: str,
    ctx: AuthContext = Depends(get_auth_context),
    services: Services = Depends(get_services),
) -> dict:
    services.passkeys.delete_passkey(ctx.principal_id, passkey_id)
    log.info(f"Deleted passkey {passkey_id} for {ctx.principal.vid}")
    return {"success": True, "message": "Passkey deleted"}
