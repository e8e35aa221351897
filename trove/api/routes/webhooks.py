import json
import logging

from fastapi import APIRouter, Depends, HTTPException, Query, Request, status

from trove.core.config import Settings, get_settings
from trove.core.errors import MalformedPayloadError
from trove.core.security import SIGNATURE_HEADERS, verify_webhook_signature
from trove.platforms.registry import get_handler
from trove.schemas.webhooks import PlatformName, WebhookAccepted
from trove.services.repository import RepositoryUnavailableError, get_repository

logger = logging.getLogger(__name__)
router = APIRouter()


@router.get("/strava")
async def strava_subscription_challenge(
    settings: Settings = Depends(get_settings),
    hub_mode: str | None = Query(default=None, alias="hub.mode"),
    hub_verify_token: str | None = Query(default=None, alias="hub.verify_token"),
    hub_challenge: str = Query(alias="hub.challenge", min_length=1),
) -> dict[str, str]:
    if hub_mode not in {None, "subscribe"}:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="unsupported hub.mode")
    if not settings.strava_verify_token or hub_verify_token != settings.strava_verify_token:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="verify token mismatch")
    return {"hub.challenge": hub_challenge}


@router.post("/{platform}", response_model=WebhookAccepted)
async def receive_webhook(
    platform: PlatformName,
    request: Request,
    settings: Settings = Depends(get_settings),
    repository=Depends(get_repository),
) -> WebhookAccepted:
    body = await request.body()
    secret = settings.webhook_secret(platform)
    if not secret:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=f"{platform} webhooks are not configured")
    signature = request.headers.get(SIGNATURE_HEADERS[platform])
    if not verify_webhook_signature(secret=secret, body=body, signature=signature):
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="invalid webhook signature")

    try:
        payload = json.loads(body)
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="webhook body is not JSON") from exc
    if not isinstance(payload, dict):
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="webhook body must be an object")

    try:
        envelope = get_handler(platform).parse_webhook(payload)
    except MalformedPayloadError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc

    try:
        account = None
        if envelope.owner_id is not None:
            account = await repository.find_account(platform=platform, platform_user_id=envelope.owner_id)
        if account is None:
            logger.info("ignoring %s webhook for unknown owner %s", platform, envelope.owner_id)
            return WebhookAccepted(status="ignored", detail="no connected account for owner")

        raw_item_id = await repository.enqueue_raw_item(
            source="webhook",
            platform=platform,
            event_type=envelope.event_type,
            payload=payload,
            account_id=account.id,
            user_id=account.user_id,
            external_id=envelope.external_id,
        )
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc

    logger.info("accepted %s webhook event=%s raw_item=%s", platform, envelope.event_type, raw_item_id)
    return WebhookAccepted(status="accepted", raw_item_id=raw_item_id)
