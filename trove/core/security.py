import hashlib
import hmac

from fastapi import Depends, Header, HTTPException, status

from trove.core.config import Settings, get_settings

SIGNATURE_HEADERS = {
    "strava": "X-Strava-Signature",
    "bluesky": "X-Bluesky-Signature",
    "instagram": "X-Hub-Signature-256",
}


def compute_signature(secret: str, body: bytes) -> str:
    return hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()


def verify_webhook_signature(*, secret: str | None, body: bytes, signature: str | None) -> bool:
    if not secret or not signature:
        return False
    provided = signature.strip()
    if provided.startswith("sha256="):
        provided = provided[len("sha256="):]
    return hmac.compare_digest(compute_signature(secret, body), provided.lower())


async def require_admin(
    settings: Settings = Depends(get_settings),
    x_api_key: str | None = Header(default=None, alias="X-API-Key"),
) -> None:
    if not settings.admin_api_key_hash:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="admin access is not configured")
    if not x_api_key:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="admin access requires X-API-Key")

    key_hash = hashlib.sha256(x_api_key.encode("utf-8")).hexdigest()
    if not hmac.compare_digest(settings.admin_api_key_hash, key_hash):
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="invalid admin credentials")
