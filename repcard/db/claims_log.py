"""
Off-chain record of resolved outcomes.

Each confirmed issue or claim is written as one row of the Supabase
`claims_log` table through the PostgREST HTTP API.
"""

from abc import ABC, abstractmethod
from typing import Any, Dict, Optional

import httpx

from repcard.config import settings


class ClaimsLogError(Exception):
    """Base exception for claims log errors."""
    pass


class ClaimsLogAuthError(ClaimsLogError):
    """Supabase rejected the API key."""
    pass


class OutcomeStore(ABC):
    """Somewhere to record which identifier a flow produced."""

    @abstractmethod
    async def record_outcome(
        self,
        subject: Optional[int],
        intent_kind: str,
        outcome_id: int,
        *,
        template_id: Optional[int] = None,
        transaction_hash: Optional[str] = None,
    ) -> None:
        ...


class ClaimsLogClient(OutcomeStore):
    """
    Async client writing outcome rows to Supabase.

    Example usage:
        store = ClaimsLogClient(url="https://xyz.supabase.co", api_key="...")
        await store.record_outcome(7, "claim", 42, template_id=3)
    """

    def __init__(
        self,
        url: Optional[str] = None,
        api_key: Optional[str] = None,
        table: Optional[str] = None,
        timeout: float = 10.0,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.url = url or settings.supabase_url
        self.api_key = api_key or settings.supabase_key
        self.table = table or settings.claims_log_table
        self.timeout = timeout

        if not self.url:
            raise ClaimsLogError("SUPABASE_URL is required")
        if not self.api_key:
            raise ClaimsLogError("SUPABASE_KEY is required")

        self.url = self.url.rstrip("/")
        self._client = client

    @property
    def headers(self) -> Dict[str, str]:
        return {
            "Content-Type": "application/json",
            "apikey": self.api_key,
            "Authorization": f"Bearer {self.api_key}",
            "Prefer": "return=minimal",
        }

    @property
    def endpoint(self) -> str:
        return f"{self.url}/rest/v1/{self.table}"

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(timeout=self.timeout)
        return self._client

    async def close(self):
        """Close the HTTP client."""
        if self._client and not self._client.is_closed:
            await self._client.aclose()
            self._client = None

    @staticmethod
    def build_row(
        subject: Optional[int],
        intent_kind: str,
        outcome_id: int,
        template_id: Optional[int] = None,
        transaction_hash: Optional[str] = None,
    ) -> Dict[str, Any]:
        return {
            "profile_id": str(subject) if subject is not None else None,
            "template_id": str(template_id) if template_id is not None else None,
            "card_id": str(outcome_id),
            "claim_type": intent_kind,
            "tx_hash": transaction_hash,
        }

    async def record_outcome(
        self,
        subject: Optional[int],
        intent_kind: str,
        outcome_id: int,
        *,
        template_id: Optional[int] = None,
        transaction_hash: Optional[str] = None,
    ) -> None:
        """
        Insert one claims_log row.

        Raises:
            ClaimsLogError: If the insert fails
        """
        row = self.build_row(subject, intent_kind, outcome_id, template_id, transaction_hash)
        client = await self._get_client()

        try:
            response = await client.post(self.endpoint, json=row, headers=self.headers)

            if response.status_code in (401, 403):
                raise ClaimsLogAuthError("Invalid or missing Supabase key")

            response.raise_for_status()

        except httpx.HTTPStatusError as e:
            raise ClaimsLogError(f"Insert failed: {e.response.text}") from e
        except httpx.RequestError as e:
            raise ClaimsLogError(f"Request failed: {str(e)}") from e


# Singleton instance
_claims_log: Optional[ClaimsLogClient] = None


def get_claims_log() -> ClaimsLogClient:
    """Get the singleton claims log client instance."""
    global _claims_log
    if _claims_log is None:
        _claims_log = ClaimsLogClient()
    return _claims_log
