"""
MODULE OVERVIEW:
The emulator's authentication surface: device flow, local-app login and health probe.

WHAT IS HAPPENING HERE:
The device flow is a little state machine held in `ServiceState`. A client asks for a
device code, the user opens the verification URL (here: `/login/device/verify`, which
approves on GET so a browser click is enough), and the client's token polls move from
400 "pending" to 200 with a key. Polling too fast earns a 429.
"""
from typing import Optional

from fastapi import APIRouter, Header, HTTPException, Query, Request
from fastapi.responses import JSONResponse
from loguru import logger
from pydantic import BaseModel

from npc_stream.server.route_utils import require_key
from npc_stream.server.service_state import service
from npc_stream.shared.models import TokenRequest

router = APIRouter(prefix="/v1")

POLL_ERRORS = {
    400: "authorization_pending",
    404: "expired_token",
    429: "slow_down",
}


class DeviceCodeRequest(BaseModel):
    client_id: Optional[str] = None


@router.get("/health")
async def health(authorization: Optional[str] = Header(None)):
    require_key(authorization)
    return {"status": "ok"}


@router.post("/login/device/new")
async def new_device_code(request: Request, body: DeviceCodeRequest):
    if not body.client_id:
        raise HTTPException(status_code=400, detail="client_id is required")
    grant = service.create_device_grant(body.client_id)
    verify_url = str(request.url_for("verify_device"))
    return {
        "device_code": grant.device_code,
        "user_code": grant.user_code,
        "verification_uri": verify_url,
        "verification_uri_complete": f"{verify_url}?user_code={grant.user_code}",
        "interval": grant.interval,
        "expires_in": service.config.EMULATOR_DEVICE_EXPIRES_S,
    }


@router.get("/login/device/verify", name="verify_device")
async def verify_device(user_code: str = Query(...)):
    if not service.approve(user_code):
        raise HTTPException(status_code=404, detail="Unknown or expired user code")
    return {"status": "approved", "user_code": user_code}


@router.post("/login/device/token")
async def poll_token(body: TokenRequest):
    status, key = service.poll_token(body.client_id, body.device_code)
    if key is None:
        return JSONResponse(status_code=status, content={"error": POLL_ERRORS.get(status, "invalid_request")})
    return {"p2Key": key}


@router.post("/login/web/{client_id}")
async def local_login(client_id: str):
    if not service.config.EMULATOR_LOCAL_LOGIN:
        raise HTTPException(status_code=404, detail="Local app login is not available")
    logger.info(f"protocol=local_login event=token_issued client_id={client_id}")
    return {"p2Key": service.issue_key()}
