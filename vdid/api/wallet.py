"""Wallet (SIWE) sign-in and wallet management endpoints."""

import logging

from fastapi import APIRouter, Depends, Request, Response

from vdid.api.deps import client_ip, get_auth_context, get_services, set_refresh_cookie, user_agent
from vdid.api.models import (
    NonceRequest,
    WalletBindRequest,
    WalletLabelRequest,
    WalletUnbindRequest,
    WalletVerifyRequest,
)
from vdid.audit.logger import get_request_id
from vdid.auth.wallet import SUPPORTED_CHAINS
from vdid.models import AuthContext
from vdid.services import Services

log = logging.getLogger(__name__)

router = APIRouter(prefix="/wallet", tags=["wallet"])


@router.post("/nonce")
def nonce(body: NonceRequest, services: Services = Depends(get_services)) -> dict:
    """Issue a sign-in nonce and the message to sign."""
    result = services.wallets.get_or_create_nonce(body.address, body.chain_id)
    return {
        "success": True,
        "nonce": result["nonce"],
        "message": result["message"],
        "expiresAt": result["expiresAt"].isoformat(),
    }


@router.post("/verify")
def verify(
    body: WalletVerifyRequest,
    request: Request,
    response: Response,
    services: Services = Depends(get_services),
) -> dict:
    """Verify a signed message and sign in (creating the account on first use)."""
    result = services.wallets.wallet_auth(
        address=body.address,
        signature=body.signature,
        message=body.message,
        chain_id=body.chain_id,
        ens_name=body.ens_name,
        ip_address=client_ip(request),
        user_agent=user_agent(request),
        request_id=get_request_id(request),
    )
    set_refresh_cookie(response, result.tokens.refresh_token)
    return {
        "success": True,
        "user": result.principal.to_public_dict(),
        "accessToken": result.tokens.access_token,
        "isNewUser": result.is_new_user,
    }


@router.post("/bind")
def bind(
    body: WalletBindRequest,
    ctx: AuthContext = Depends(get_auth_context),
    services: Services = Depends(get_services),
) -> dict:
    wallet = services.wallets.bind_wallet(
        ctx.principal_id,
        address=body.address,
        signature=body.signature,
        message=body.message,
        chain_id=body.chain_id,
        ens_name=body.ens_name,
        label=body.label,
    )
    return {"success": True, "wallet": wallet.to_public_dict()}


@router.delete("/unbind")
def unbind(
    body: WalletUnbindRequest,
    ctx: AuthContext = Depends(get_auth_context),
    services: Services = Depends(get_services),
) -> dict:
    removed = services.wallets.unbind_wallet(ctx.principal_id, body.address)
    log.info(f"Unbound wallet {removed.address} from {ctx.principal.vid}")
    return {"success": True, "removed": removed.address}


@router.get("/identities")
def identities(
    ctx: AuthContext = Depends(get_auth_context),
    services: Services = Depends(get_services),
) -> dict:
    wallets = services.wallets.list_wallets(ctx.principal_id)
    return {"success": True, "wallets": [w.to_public_dict() for w in wallets]}


@router.post("/{wallet_id}/primary")
def set_primary(
    wallet_id: int,
    ctx: AuthContext = Depends(get_auth_context),
    services: Services = Depends(get_services),
) -> dict:
    wallet = services.wallets.set_primary_wallet(ctx.principal_id, wallet_id)
    return {"success": True, "wallet": wallet.to_public_dict()}


@router.patch("/{wallet_id}/label")
def update_label(
    wallet_id: int,
    body: WalletLabelRequest,
    ctx: AuthContext = Depends(get_auth_context),
    services: Services = Depends(get_services),
) -> dict:
    wallet = services.wallets.update_wallet_label(ctx.principal_id, wallet_id, body.label)
    return {"success": True, "wallet": wallet.to_public_dict()}


@router.get("/chains")
def chains() -> dict:
    return {
        "success": True,
        "chains": [
            {"chainId": chain_id, "name": info["name"], "symbol": info["symbol"]}
            for chain_id, info in SUPPORTED_CHAINS.items()
        ],
    }
