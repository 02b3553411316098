import logging
from datetime import timedelta, timezone

import httpx

from backend.core import config
from backend.models.booking import Booking

logger = logging.getLogger(__name__)

ROOM_GRACE = timedelta(hours=1)


def create_meeting_room(booking: Booking) -> str | None:
    """Create a Daily.co room for the session; returns its URL, or None when unavailable."""
    if not config.DAILY_API_KEY:
        logger.warning('DAILY_API_KEY missing, booking %s has no video room', booking.id)
        return None

    expires = (booking.end_time + ROOM_GRACE).replace(tzinfo=timezone.utc)
    try:
        with httpx.Client(timeout=config.HTTP_TIMEOUT_SECONDS) as client:
            response = client.post(
                f'{config.DAILY_API_BASE}/rooms',
                headers={'Authorization': f'Bearer {config.DAILY_API_KEY}'},
                json={
                    'name': f'booking-{booking.id}',
                    'privacy': 'public',
                    'properties': {
                        'enable_screenshare': True,
                        'enable_chat': True,
                        'enable_knocking': False,
                        'start_video_off': False,
                        'start_audio_off': False,
                        'exp': int(expires.timestamp()),
                    },
                },
            )
            response.raise_for_status()
            room_url = response.json().get('url')
    except (httpx.HTTPError, ValueError):
        logger.warning('Daily room creation failed for booking %s', booking.id, exc_info=True)
        return None

    logger.info('Daily room %s created for booking %s', room_url, booking.id)
    return room_url
