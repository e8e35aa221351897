from trove.core.errors import MalformedPayloadError
from trove.platforms import bluesky, instagram, strava
from trove.platforms.base import PlatformHandler

PLATFORM_HANDLERS: dict[str, PlatformHandler] = {
    handler.platform: handler for handler in (strava.HANDLER, bluesky.HANDLER, instagram.HANDLER)
}


def get_handler(platform: str) -> PlatformHandler:
    handler = PLATFORM_HANDLERS.get(platform)
    if handler is None:
        raise MalformedPayloadError(f"no handler for platform {platform!r}")
    return handler
