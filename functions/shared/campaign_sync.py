"""
Campaign sync: mirror paying customers into the lemlist campaign of their tier.

Best-effort side channel. Every failure is caught and logged; nothing here
can change the webhook response or the account update.
"""

import asyncio
import base64
import json
import logging
import os
import time
from typing import Mapping, Optional
from urllib.parse import quote

import httpx

from .aws_clients import get_secret_string
from .constants import LEMLIST_API, EntitlementTier
from .http_client import get_http_client_with_headers
from .logging_utils import log_external_call, mask_email
from .retry import CAMPAIGN_RETRY_CONFIG, RetryConfig, raise_for_retryable_status, retry_async

logger = logging.getLogger(__name__)

LEMLIST_API_URL = os.environ.get("LEMLIST_API_URL") or LEMLIST_API
LEMLIST_API_KEY_ARN = os.environ.get("LEMLIST_API_KEY_ARN")

# Campaign id per tier; a tier without a campaign is not enrolled anywhere
CAMPAIGN_BY_TIER: dict[EntitlementTier, Optional[str]] = {
    EntitlementTier.MEMBER: os.environ.get("LEMLIST_CAMPAIGN_MEMBER") or None,
    EntitlementTier.COMMUNITY: os.environ.get("LEMLIST_CAMPAIGN_COMMUNITY") or None,
    EntitlementTier.BUSINESS: os.environ.get("LEMLIST_CAMPAIGN_BUSINESS") or None,
}

SERVICE_NAME = "lemlist"

# Wall-clock cap on one sync, well inside the API Gateway 29s integration timeout
CAMPAIGN_SYNC_BUDGET_SECONDS = float(os.environ.get("CAMPAIGN_SYNC_BUDGET_SECONDS", "8"))

_api_key_cache: Optional[str] = None
_api_key_cache_time = 0.0
API_KEY_CACHE_TTL = 300  # 5 minutes


def get_lemlist_api_key() -> Optional[str]:
    """Retrieve the lemlist API key from Secrets Manager (cached with TTL)."""
    global _api_key_cache, _api_key_cache_time

    if _api_key_cache and (time.time() - _api_key_cache_time) < API_KEY_CACHE_TTL:
        return _api_key_cache

    if not LEMLIST_API_KEY_ARN:
        return None

    try:
        secret_value = get_secret_string(LEMLIST_API_KEY_ARN)
    except Exception as e:
        logger.error(f"Failed to retrieve lemlist API key: {e}")
        return None

    try:
        secret_json = json.loads(secret_value)
        api_key = secret_json.get("key") if isinstance(secret_json, dict) else None
    except json.JSONDecodeError:
        api_key = None

    _api_key_cache = api_key or secret_value
    _api_key_cache_time = time.time()
    return _api_key_cache


def split_display_name(name: Optional[str]) -> tuple[str, str]:
    """
    Best-effort first/last name split.

    "Jean Dupont Martin" -> ("Jean", "Dupont Martin"); a single word is a
    first name; blank input gives two empty strings.
    """
    parts = (name or "").split()
    if not parts:
        return "", ""
    return parts[0], " ".join(parts[1:])


class CampaignSync:
    """Ensure a lemlist contact exists and enroll it in its tier's campaign."""

    def __init__(
        self,
        api_key: Optional[str] = None,
        campaigns: Optional[Mapping[EntitlementTier, Optional[str]]] = None,
        base_url: str = LEMLIST_API_URL,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        retry_config: RetryConfig = CAMPAIGN_RETRY_CONFIG,
        time_budget: float = CAMPAIGN_SYNC_BUDGET_SECONDS,
    ):
        self._api_key = api_key
        self.campaigns = CAMPAIGN_BY_TIER if campaigns is None else campaigns
        self.base_url = base_url.rstrip("/")
        self.transport = transport
        self.retry_config = retry_config
        self.time_budget = time_budget

    def _auth_headers(self, api_key: str) -> dict:
        token = base64.b64encode(f":{api_key}".encode()).decode()
        return {"Authorization": f"Basic {token}", "Content-Type": "application/json"}

    def run(self, email: str, tier: EntitlementTier, display_name: Optional[str] = None) -> bool:
        """
        Blocking entry point for the Lambda handler. Never raises.

        The whole sync, retries included, is cancelled once `time_budget`
        seconds have passed.
        """
        try:
            return asyncio.run(self._sync_within_budget(email, tier, display_name))
        except asyncio.TimeoutError:
            logger.warning(f"Campaign sync for {mask_email(email)} abandoned after {self.time_budget}s")
            return False
        except Exception as e:
            logger.error(f"Campaign sync failed for {mask_email(email)}: {e}")
            return False

    async def _sync_within_budget(self, email: str, tier: EntitlementTier, display_name: Optional[str]) -> bool:
        return await asyncio.wait_for(self.sync(email, tier, display_name), timeout=self.time_budget)

    async def sync(self, email: str, tier: EntitlementTier, display_name: Optional[str] = None) -> bool:
        """
        Ensure the contact exists, then enroll it in the tier's campaign.

        Returns:
            True if the email ended up enrolled
        """
        api_key = self._api_key or get_lemlist_api_key()
        if not api_key:
            logger.info("lemlist not configured, skipping campaign sync")
            return False

        first_name, last_name = split_display_name(display_name)

        async with get_http_client_with_headers(
            self._auth_headers(api_key),
            base_url=self.base_url,
            transport=self.transport,
        ) as client:
            contact = await self._call("find_contact", self._find_contact, client, email)
            if contact is None:
                await self._call("create_contact", self._create_contact, client, email, first_name, last_name)

            campaign_id = self.campaigns.get(tier)
            if not campaign_id:
                logger.info(f"No campaign configured for tier {tier.value}")
                return False

            await self._call("enroll", self._enroll, client, campaign_id, email, first_name, last_name)

        logger.info(f"{mask_email(email)} enrolled in {tier.value} campaign {campaign_id}")
        return True

    async def _call(self, operation: str, func, *args):
        start = time.monotonic()
        try:
            result = await retry_async(func, *args, config=self.retry_config)
        except Exception as e:
            log_external_call(logger, SERVICE_NAME, operation, False, (time.monotonic() - start) * 1000, str(e))
            raise
        log_external_call(logger, SERVICE_NAME, operation, True, (time.monotonic() - start) * 1000)
        return result

    async def _find_contact(self, client: httpx.AsyncClient, email: str) -> Optional[dict]:
        response = raise_for_retryable_status(await client.get(f"/contacts/{quote(email)}"))
        if response.status_code == 404:
            return None
        response.raise_for_status()
        return response.json()

    async def _create_contact(self, client: httpx.AsyncClient, email: str, first_name: str, last_name: str) -> dict:
        response = raise_for_retryable_status(
            await client.post(
                "/contacts",
                json={"email": email, "firstName": first_name, "lastName": last_name},
            )
        )
        response.raise_for_status()
        return response.json() if response.content else {}

    async def _enroll(
        self,
        client: httpx.AsyncClient,
        campaign_id: str,
        email: str,
        first_name: str,
        last_name: str,
    ) -> None:
        response = raise_for_retryable_status(
            await client.post(
                f"/campaigns/{campaign_id}/leads/{quote(email)}",
                params={"deduplicate": "true"},
                json={"firstName": first_name, "lastName": last_name},
            )
        )
        if response.status_code == 409:
            # Deduplicated: already in this or another campaign
            logger.info(f"{mask_email(email)} already enrolled, deduplicated by lemlist")
            return
        response.raise_for_status()
