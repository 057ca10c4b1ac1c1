"""
Kiwify API client.
Used by the cancel intent so the provider stops charging before the local
subscription is flagged cancel_at_period_end.
"""
import os
import logging
import httpx
from typing import Optional

logger = logging.getLogger(__name__)

KIWIFY_API_BASE_DEFAULT = "https://public-api.kiwify.com/v1"


class KiwifyClient:
    """Minimal Kiwify public API client."""

    def __init__(self):
        self.timeout = 10.0

    @property
    def base_url(self) -> str:
        return (os.getenv("KIWIFY_API_BASE") or KIWIFY_API_BASE_DEFAULT).rstrip("/")

    @property
    def api_key(self) -> Optional[str]:
        return (os.getenv("KIWIFY_API_KEY") or "").strip() or None

    @property
    def account_id(self) -> Optional[str]:
        return (os.getenv("KIWIFY_ACCOUNT_ID") or "").strip() or None

    def is_configured(self) -> bool:
        return self.api_key is not None

    def _headers(self) -> dict:
        headers = {
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json",
        }
        if self.account_id:
            headers["x-kiwify-account-id"] = self.account_id
        return headers

    async def cancel_subscription(self, order_id: str) -> tuple[bool, Optional[str]]:
        """
        Cancel the recurring charge attached to an order.

        Returns: (success: bool, error_message: Optional[str])
        """
        url = f"{self.base_url}/subscriptions/{order_id}/cancel"
        try:
            async with httpx.AsyncClient() as client:
                response = await client.post(url, headers=self._headers(), timeout=self.timeout)
        except httpx.TimeoutException:
            error_msg = "Kiwify API timeout"
            logger.error(f"{error_msg} order_id={order_id}")
            return False, error_msg
        except httpx.HTTPError as e:
            error_msg = f"Kiwify API error: {str(e)}"
            logger.error(error_msg)
            return False, error_msg

        if response.status_code in (200, 201, 204):
            logger.info(f"Kiwify: subscription canceled for order {order_id}")
            return True, None
        if response.status_code == 409:
            # Already canceled on the provider side
            logger.info(f"Kiwify: order {order_id} already canceled")
            return True, None

        error_msg = f"Kiwify API error {response.status_code}: {response.text}"
        logger.error(error_msg)
        return False, error_msg


# Singleton instance
kiwify_client = KiwifyClient()
