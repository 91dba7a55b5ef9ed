"""V-Score endpoints."""

import logging

from fastapi import APIRouter, Depends, Query

from vdid.api.deps import get_auth_context, get_services
from vdid.models import AuthContext
from vdid.services import Services
from vdid.vscore.engine import ACTIONS, LEVELS, WEIGHTS

log = logging.getLogger(__name__)

router = APIRouter(prefix="/vscore", tags=["vscore"])


@router.get("")
def get_vscore(
    ctx: AuthContext = Depends(get_auth_context),
    services: Services = Depends(get_services),
) -> dict:
    return {"success": True, "vscore": services.scores.get_score(ctx.principal_id).to_dict()}


@router.get("/history")
def history(
    limit: int = Query(20, ge=1, le=100),
    offset: int = Query(0, ge=0),
    ctx: AuthContext = Depends(get_auth_context),
    services: Services = Depends(get_services),
) -> dict:
    entries = services.scores.get_history(ctx.principal_id, limit=limit, offset=offset)
    return {"success": True, "history": [e.to_public_dict() for e in entries]}


@router.get("/levels")
def levels() -> dict:
    return {
        "success": True,
        "levels": [{"name": lvl.name, "min": lvl.min, "max": lvl.max} for lvl in LEVELS],
    }


@router.get("/weights")
def weights() -> dict:
    return {"success": True, "weights": WEIGHTS}


@router.get("/actions")
def actions() -> dict:
    return {
        "success": True,
        "actions": [
            {
                "key": key,
                "category": action.category.value,
                "points": action.points,
                "reason": action.reason,
                "systemOnly": action.system_only,
            }
            for key, action in ACTIONS.items()
        ],
    }


@router.post("/claim/{action}")
def claim(
    action: str,
    ctx: AuthContext = Depends(get_auth_context),
    services: Services = Depends(get_services),
) -> dict:
    """Claim a user-triggerable action; system-only actions are refused."""
    info = services.scores.claim_action(ctx.principal_id, action)
    log.info(f"{ctx.principal.vid} claimed V-Score action {action}")
    services.audit.log_access("vscore.claim", ctx.principal_id, details={"action": action})
    return {"success": True, "vscore": info.to_dict()}


@router.get("/summary")
def summary(
    ctx: AuthContext = Depends(get_auth_context),
    services: Services = Depends(get_services),
) -> dict:
    result = services.scores.get_summary(ctx.principal_id)
    return {
        "success": True,
        "summary": {
            "current": result.current.to_dict(),
            "weeklyChange": result.weekly_change,
            "recentHistory": [e.to_public_dict() for e in result.recent_history],
            "tips": result.tips,
        },
    }
