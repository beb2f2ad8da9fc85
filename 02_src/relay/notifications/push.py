"""Web Push delivery to registered browser subscriptions."""

import asyncio
import json
from typing import Protocol

import requests
from pywebpush import WebPushException, webpush

from ..errors import PushDeliveryError
from ..logging_config import get_logger
from ..models import Subscription

logger = get_logger(__name__)

# Endpoint is gone for good; the subscription must be dropped
PERMANENT_STATUS_CODES = {404, 410}

PUSH_TTL_SECONDS = 86400


class IPushSender(Protocol):
    """Sends a payload to one subscription endpoint."""

    async def send(self, subscription: Subscription, payload: dict) -> None:
        """Deliver payload. Raises PushDeliveryError(permanent=...)."""
        ...


class WebPushSender:
    """
    Encrypts payloads with the subscription keys and signs with VAPID.

    pywebpush is blocking, so each delivery runs in a worker thread.
    """

    def __init__(self, vapid_private_key: str, vapid_subject: str, timeout: float = 10.0):
        self._vapid_private_key = vapid_private_key
        self._vapid_subject = vapid_subject
        self._timeout = timeout

    async def send(self, subscription: Subscription, payload: dict) -> None:
        if not subscription.keys:
            raise PushDeliveryError(
                f"Subscription {subscription.id} has no encryption keys", permanent=True
            )

        try:
            await asyncio.to_thread(
                webpush,
                subscription_info={
                    "endpoint": subscription.endpoint,
                    "keys": subscription.keys,
                },
                data=json.dumps(payload, ensure_ascii=False),
                vapid_private_key=self._vapid_private_key,
                # webpush adds aud/exp to the claims dict in place
                vapid_claims={"sub": self._vapid_subject},
                ttl=PUSH_TTL_SECONDS,
                timeout=self._timeout,
            )
        except WebPushException as e:
            status = e.response.status_code if e.response is not None else None
            if status in PERMANENT_STATUS_CODES:
                raise PushDeliveryError(f"Endpoint gone ({status})", permanent=True) from e
            raise PushDeliveryError(f"Push endpoint error {status}: {e.message}") from e
        except requests.RequestException as e:
            raise PushDeliveryError(f"Push request failed: {e}") from e
        except (ValueError, TypeError) as e:
            # malformed p256dh/auth keys can never be encrypted to
            raise PushDeliveryError(f"Unusable subscription keys: {e}", permanent=True) from e


class NullPushSender:
    """Used when no VAPID key is configured."""

    async def send(self, subscription: Subscription, payload: dict) -> None:
        logger.debug("Push disabled, dropping payload for %s", subscription.endpoint)
        raise PushDeliveryError("Push delivery is not configured")
