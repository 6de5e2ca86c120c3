from __future__ import annotations

import hmac
from datetime import datetime, timezone
from typing import Optional

from fastapi import APIRouter, Depends, Header, Request

from authguard.api.routes import _http_error, client_ip
from authguard.api.schemas import (
    AdminResponse,
    AdminUnlockRequest,
    KeyListData,
    KeySummary,
    RevokeKeyRequest,
    RotateKeyRequest,
)
from authguard.logging import get_logger
from authguard.service.runtime import get_runtime
from authguard.storage.models import KeyStatus

logger = get_logger(__name__)

router = APIRouter(prefix="/admin", tags=["admin"])


async def require_admin_token(
    request: Request,
    x_admin_token: Optional[str] = Header(None, alias="X-Admin-Token"),
) -> str:
    """Gate on ``X-Admin-Token`` matching ``ADMIN_API_TOKEN``; unset token disables the routes."""
    expected = get_runtime().settings.admin_api_token
    if not expected or not x_admin_token or not hmac.compare_digest(
        x_admin_token.encode(), expected.encode()
    ):
        logger.warning("admin_access_denied", ip=client_ip(request), path=request.url.path)
        raise _http_error("unauthorized", "Unauthorized - admin access required", status_code=401)
    return client_ip(request)


@router.get("/jwt/keys", response_model=AdminResponse)
async def list_keys(admin_ip: str = Depends(require_admin_token)):
    """List every stored key with a secret preview, never the secret itself."""
    registry = get_runtime().keys
    keys = await registry.get_all_keys()
    summaries = [
        KeySummary(
            id=key.id,
            algorithm=key.algorithm,
            createdAt=key.created_at,
            expiresAt=key.expires_at,
            status=key.status,
            secretPreview=key.secret_preview,
        )
        for key in keys
    ]
    data = KeyListData(
        keys=summaries,
        currentSigningKeyId=await registry.get_current_signing_key_id(),
        totalKeys=len(summaries),
        activeKeys=sum(1 for key in keys if key.status in KeyStatus.VERIFYING),
    )
    return AdminResponse(data=data.model_dump(mode="json"))


@router.post("/jwt/keys/revoke", response_model=AdminResponse)
async def revoke_key(body: RevokeKeyRequest, admin_ip: str = Depends(require_admin_token)):
    key = await get_runtime().keys.revoke_key(body.keyId)
    logger.info("jwt_key_revoked_by_admin", key_id=key.id, admin_ip=admin_ip)
    return AdminResponse(message="JWT key revoked successfully", data={"keyId": key.id})


@router.post("/jwt/keys/rotate", response_model=AdminResponse)
async def rotate_keys(
    body: Optional[RotateKeyRequest] = None, admin_ip: str = Depends(require_admin_token)
):
    registry = get_runtime().keys
    force = body.force if body else False
    result = await registry.rotate_keys(force=force)
    if result.rotated and result.key is not None:
        logger.info(
            "jwt_keys_rotated_by_admin", new_key_id=result.key.id, forced=force, admin_ip=admin_ip
        )
        return AdminResponse(
            message="JWT keys rotated successfully",
            data={
                "rotated": True,
                "newKeyId": result.key.id,
                "expiresAt": result.key.expires_at.isoformat(),
                "revokedKeyIds": result.revoked_key_ids,
            },
        )

    data: dict = {"rotated": False, "reason": result.reason}
    current_id = await registry.get_current_signing_key_id()
    current = await registry.get_key_by_id(current_id) if current_id else None
    if current is not None:
        data["currentKeyId"] = current.id
        data["currentKeyAge"] = current.age_days(datetime.now(timezone.utc))
    return AdminResponse(message="Key rotation check completed", data=data)


@router.post("/accounts/unlock", response_model=AdminResponse)
async def admin_unlock(body: AdminUnlockRequest, admin_ip: str = Depends(require_admin_token)):
    await get_runtime().lockout.admin_unlock_account(body.email, admin_id=f"admin-token@{admin_ip}")
    return AdminResponse(message="Account unlocked", data={"email": body.email})
