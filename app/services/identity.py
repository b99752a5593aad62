"""
Identity verification against the external identity provider.

The provider issues the bearer tokens; we only exchange a token for the
user it belongs to (``GET {IDENTITY_URL}/auth/v1/user``).
"""
import logging
from dataclasses import dataclass
from typing import Optional

import httpx

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Identity:
    id: str
    email: str
    name: Optional[str] = None


class IdentityClient:
    def __init__(self, base_url: str | None, api_key: str | None = None, timeout: float = 5.0):
        self.base_url = (base_url or "").rstrip("/")
        self.api_key = api_key
        self.timeout = timeout

    def verify(self, token: str) -> Optional[Identity]:
        """Return the Identity behind `token`, or None when it is missing/invalid/unverifiable."""
        if not self.base_url:
            logger.error("identity.verify.not_configured")
            return None

        headers = {"Authorization": f"Bearer {token}"}
        if self.api_key:
            headers["apikey"] = self.api_key

        try:
            resp = httpx.get(f"{self.base_url}/auth/v1/user", headers=headers, timeout=self.timeout)
        except httpx.HTTPError as exc:
            logger.warning("identity.verify.request_failed", extra={"error": str(exc)})
            return None

        if resp.status_code != 200:
            logger.info("identity.verify.rejected", extra={"status": resp.status_code})
            return None

        try:
            data = resp.json()
        except ValueError:
            logger.warning("identity.verify.bad_payload")
            return None

        user_id = data.get("id")
        email = data.get("email")
        if not user_id or not email:
            return None
        meta = data.get("user_metadata") or {}
        return Identity(id=str(user_id), email=email, name=meta.get("name") or meta.get("full_name"))
