"""
Plan catalog - plan id validation and Kiwify checkout link lookup.

Plan ids are open-ended catalog keys (lowercase, [a-z0-9_-], max 64 chars).
Checkout links are configured per environment:
- KIWIFY_CHECKOUT_URLS        JSON object {"starter": "https://pay.kiwify.com.br/..."}
- KIWIFY_CHECKOUT_URL_<PLAN>  single link, e.g. KIWIFY_CHECKOUT_URL_PRO

A plan without a configured link is changed directly in the store.
"""
import json
import logging
import os
import re
from typing import Dict, Optional

from services.billing_errors import InvalidPlan

logger = logging.getLogger(__name__)

PLAN_ID_PATTERN = re.compile(r"^[a-z0-9_-]{1,64}$")


def validate_plan_id(plan_id) -> str:
    """Return the normalized plan id or raise InvalidPlan."""
    if not isinstance(plan_id, str):
        raise InvalidPlan("plan_id must be a string")
    normalized = plan_id.strip().lower()
    if not normalized:
        raise InvalidPlan("plan_id is required")
    if not PLAN_ID_PATTERN.match(normalized):
        raise InvalidPlan(f"Invalid plan_id: {plan_id!r}")
    return normalized


def _configured_checkout_urls() -> Dict[str, str]:
    raw = (os.getenv("KIWIFY_CHECKOUT_URLS") or "").strip()
    if not raw:
        return {}
    try:
        urls = json.loads(raw)
    except ValueError:
        logger.warning("KIWIFY_CHECKOUT_URLS is not valid JSON - ignoring")
        return {}
    if not isinstance(urls, dict):
        logger.warning("KIWIFY_CHECKOUT_URLS must be a JSON object - ignoring")
        return {}
    return {str(k).lower(): str(v).strip() for k, v in urls.items() if v}


def get_checkout_url(plan_id: str) -> Optional[str]:
    """Checkout link for a plan, or None when the environment has none."""
    env_key = "KIWIFY_CHECKOUT_URL_" + re.sub(r"[^A-Z0-9]", "_", plan_id.upper())
    single = (os.getenv(env_key) or "").strip()
    if single:
        return single
    return _configured_checkout_urls().get(plan_id) or None
