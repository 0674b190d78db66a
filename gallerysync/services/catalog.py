"""Gallery catalog API client."""

import asyncio
import logging
from typing import Any, Optional
import httpx

from gallerysync.services.errors import RemoteFetchError

logger = logging.getLogger(__name__)

SIDEBAR_ENDPOINT = "/api/plugin/combine/sidebar"
CASES_ENDPOINT = "/api/plugin/combine/cases"


def _valid_ids(ids: list[Any]) -> list[int]:
    """Drop empty and zero ids, keeping order."""
    valid = []
    for value in ids or []:
        try:
            number = int(value)
        except (TypeError, ValueError):
            continue
        if number != 0:
            valid.append(number)
    return valid


class CatalogClient:
    """Async client for the remote gallery catalog."""

    def __init__(
        self,
        base_url: str,
        api_tokens: list[str],
        website_property_ids: Optional[list[int]] = None,
        timeout: float = 30.0,
        page_delay_seconds: float = 0.1,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.base_url = base_url.rstrip('/')
        self.api_tokens = [token for token in api_tokens if token]
        self.website_property_ids = _valid_ids(website_property_ids or [])
        self.timeout = timeout
        self.page_delay_seconds = page_delay_seconds
        self.transport = transport
        self.client: Optional[httpx.AsyncClient] = None

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create async HTTP client."""
        if self.client is None:
            self.client = httpx.AsyncClient(
                headers={"Accept": "application/json"},
                timeout=self.timeout,
                transport=self.transport,
            )
        return self.client

    async def close(self):
        """Close the HTTP client."""
        if self.client:
            await self.client.aclose()
            self.client = None

    async def _post(self, endpoint: str, body: dict[str, Any]) -> dict[str, Any]:
        """POST a JSON body and return the decoded payload, raising RemoteFetchError on any failure."""
        if not self.api_tokens:
            raise RemoteFetchError("No API tokens configured")

        client = await self._get_client()
        url = f"{self.base_url}{endpoint}"
        try:
            response = await client.post(url, json=body)
            response.raise_for_status()
        except httpx.HTTPStatusError as e:
            logger.error(f"{endpoint} returned HTTP {e.response.status_code}: {e.response.text[:200]}")
            raise RemoteFetchError(f"API returned error status: {e.response.status_code}") from e
        except httpx.HTTPError as e:
            logger.error(f"{endpoint} request failed: {e}")
            raise RemoteFetchError(f"API request failed: {e}") from e

        try:
            data = response.json()
        except ValueError as e:
            logger.error(f"{endpoint}: Failed to parse JSON: {e}, body: {response.text[:200]}")
            raise RemoteFetchError(f"Invalid JSON response: {e}") from e

        if not isinstance(data, dict):
            raise RemoteFetchError("Unexpected response shape")
        return data

    async def fetch_sidebar(self) -> dict[str, Any]:
        """Fetch the procedure tree (categories with child procedures)."""
        data = await self._post(SIDEBAR_ENDPOINT, {"apiTokens": self.api_tokens})
        if not data.get("success"):
            raise RemoteFetchError("API returned unsuccessful response")

        logger.info(f"Fetched sidebar with {len(data.get('data') or [])} categories")
        return data

    async def fetch_case_ids_page(self, procedure_id: int, count: int) -> list[int]:
        """Fetch one page of case ids for a procedure. ``count`` is the 1-based page number."""
        data = await self._post(CASES_ENDPOINT, {
            "apiTokens": self.api_tokens,
            "websitePropertyIds": self.website_property_ids,
            "procedureIds": [procedure_id],
            "count": count,
        })
        if not data.get("success") or not data.get("data"):
            return []

        rows = data["data"]
        if isinstance(rows, dict):
            rows = list(rows.values())

        case_ids = []
        for row in rows:
            if isinstance(row, dict) and row.get("id") is not None:
                try:
                    case_ids.append(int(row["id"]))
                except (TypeError, ValueError):
                    logger.warning(f"Procedure {procedure_id} page {count}: skipping case with bad id {row['id']!r}")
            elif isinstance(row, (int, str)) and str(row).isdigit():
                case_ids.append(int(row))
        return case_ids

    async def fetch_all_case_ids(self, procedure_id: int, max_pages: int = 100) -> list[int]:
        """
        Fetch every case id for a procedure, paging until an empty page.

        Ids repeated within the procedure are dropped; the first occurrence wins.
        """
        all_ids: list[int] = []
        seen: set[int] = set()

        for count in range(1, max_pages + 1):
            page = await self.fetch_case_ids_page(procedure_id, count)
            if not page:
                break

            for case_id in page:
                if case_id not in seen:
                    seen.add(case_id)
                    all_ids.append(case_id)

            logger.debug(f"Procedure {procedure_id} page {count} returned {len(page)} case ids")
            if self.page_delay_seconds:
                await asyncio.sleep(self.page_delay_seconds)
        else:
            logger.warning(f"Procedure {procedure_id} hit the page limit ({max_pages})")

        logger.info(f"Total of {len(all_ids)} unique case ids for procedure {procedure_id}")
        return all_ids

    async def fetch_case_detail(self, case_id: int, procedure_id: Optional[int] = None) -> dict[str, Any]:
        """Fetch full detail for one case."""
        body = {
            "apiTokens": self.api_tokens,
            "websitePropertyIds": self.website_property_ids,
            # The API requires procedureIds even for a single case
            "procedureIds": [procedure_id] if procedure_id is not None else [],
        }
        data = await self._post(f"{CASES_ENDPOINT}/{case_id}", body)
        if not data.get("success") or not data.get("data"):
            raise RemoteFetchError(f"API returned unsuccessful response for case {case_id}")

        detail = data["data"]
        if isinstance(detail, list):
            detail = detail[0]
        if not isinstance(detail, dict):
            raise RemoteFetchError(f"Unexpected detail shape for case {case_id}")
        return detail
