"""Calendly API lookups and webhook signature checks."""

import asyncio
import hashlib
import hmac
from typing import Any, Dict, List, Optional

import aiohttp
from loguru import logger

from clinicflow.constants import DEFAULT_VISIT_TYPE

CALENDLY_API = "https://api.calendly.com"
CALENDLY_TIMEOUT = 10


def extract_answers(questions_and_answers: Optional[List[Dict[str, Any]]]) -> Dict[str, str]:
    """Map free-form booking questions onto the fields we track."""
    extracted: Dict[str, str] = {}
    for qa in questions_and_answers or []:
        question = str(qa.get("question", "")).lower()
        answer = str(qa.get("answer", "")).strip()
        if not answer:
            continue
        if "phone" in question or "number" in question:
            extracted["phone"] = answer
        elif "reason" in question or "visit" in question:
            extracted["reason_for_visit"] = answer
        elif "insurance" in question:
            extracted["insurance_provider"] = answer
        elif "medication" in question:
            extracted["current_medications"] = answer
        elif "allerg" in question:
            extracted["allergies"] = answer
    return extracted


class CalendlyClient:
    def __init__(
        self,
        session: Optional[aiohttp.ClientSession],
        api_token: Optional[str] = None,
        webhook_secret: Optional[str] = None,
        base_url: str = CALENDLY_API,
    ):
        self.session = session
        self.api_token = api_token
        self.webhook_secret = webhook_secret
        self.base_url = base_url.rstrip("/")

    def _event_url(self, event_uri: str) -> str:
        if event_uri.startswith("http"):
            return event_uri
        return f"{self.base_url}/scheduled_events/{event_uri}"

    async def get_event_details(self, event_uri: Optional[str]) -> Dict[str, Any]:
        """Scheduled-event resource; falls back to the default visit type on any failure."""
        fallback = {"name": DEFAULT_VISIT_TYPE}
        if not event_uri:
            return fallback
        if not self.api_token or self.session is None:
            logger.debug("Calendly API token not configured, using default visit type")
            return fallback

        try:
            async with asyncio.timeout(CALENDLY_TIMEOUT):
                async with self.session.get(
                    self._event_url(event_uri),
                    headers={
                        "Authorization": f"Bearer {self.api_token}",
                        "Content-Type": "application/json",
                    },
                ) as response:
                    if response.status != 200:
                        error_text = await response.text()
                        logger.warning(f"Calendly event lookup failed ({response.status}): {error_text[:200]}")
                        return fallback
                    data = await response.json()
        except asyncio.TimeoutError:
            logger.warning(f"Calendly event lookup timed out after {CALENDLY_TIMEOUT}s")
            return fallback
        except aiohttp.ClientError as e:
            logger.warning(f"Calendly event lookup failed: {e}")
            return fallback

        resource = data.get("resource") or {}
        if not resource.get("name"):
            resource = {**resource, "name": DEFAULT_VISIT_TYPE}
        return resource

    def verify_signature(self, body: bytes, signature: Optional[str]) -> bool:
        """
        Check an HMAC-SHA256 hex signature over the raw body.

        Accepts either a bare hex digest or the provider's "t=<ts>,v1=<hex>"
        header, where the signed payload is "<ts>." followed by the body.
        Always true when no secret is configured.
        """
        if not self.webhook_secret:
            return True
        if not signature:
            return False

        signature = signature.strip()
        signed = body
        if "v1=" in signature:
            parts = dict(p.strip().split("=", 1) for p in signature.split(",") if "=" in p)
            signature = parts.get("v1", "")
            if "t" in parts:
                signed = parts["t"].encode() + b"." + body

        expected = hmac.new(self.webhook_secret.encode(), signed, hashlib.sha256).hexdigest()
        return hmac.compare_digest(expected, signature)
