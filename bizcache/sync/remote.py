"""HTTP client for the authoritative remote data store.

Handles network access with retry logic. Only two reads are needed by the
sync engine: a lightweight version descriptor and the full dataset.
"""

import asyncio
import logging
from typing import Any

import httpx

from ..errors import DecodeError, RemoteUnavailableError
from ..models import VersionDescriptor, decode_collection

logger = logging.getLogger(__name__)


class RemoteDataSource:
    """Client for the remote business directory API.

    Uses exponential backoff for retries on connection errors, timeouts
    and server errors. Client errors fail immediately.
    """

    def __init__(
        self,
        base_url: str | None = None,
        max_retries: int = 3,
        timeout: float = 10.0,
        version_path: str = "/data_version",
        categories_path: str = "/categories",
        businesses_path: str = "/businesses",
        headers: dict[str, str] | None = None,
    ):
        """Initialize the remote data source.

        Args:
            base_url: Base URL of the remote API (e.g., "https://api.example.com/rest/v1").
            max_retries: Maximum attempts per request.
            timeout: Request timeout in seconds.
            version_path: Path of the version descriptor endpoint.
            categories_path: Path of the categories collection.
            businesses_path: Path of the businesses collection.
            headers: Extra headers sent with every request (API keys).
        """
        self.base_url = base_url.rstrip("/") if base_url else None
        self.max_retries = max_retries
        self.timeout = timeout
        self.version_path = version_path
        self.categories_path = categories_path
        self.businesses_path = businesses_path
        self.headers = headers or {}
        self._consecutive_failures = 0

    async def _request_with_retry(self, path: str) -> tuple[Any, str | None]:
        """GET a path with exponential backoff retry.

        Args:
            path: URL path to append to base_url.

        Returns:
            Tuple of (response_data, error_message).
        """
        if not self.base_url:
            return None, "No remote URL configured"

        url = f"{self.base_url}{path}"
        backoff = 1.0

        async with httpx.AsyncClient(timeout=self.timeout, headers=self.headers) as client:
            for attempt in range(self.max_retries):
                try:
                    response = await client.get(url)

                    if response.status_code == 200:
                        self._consecutive_failures = 0
                        return response.json(), None

                    elif response.status_code >= 500:
                        # Server error, retry
                        logger.warning(
                            f"Server error {response.status_code} from {path}, "
                            f"attempt {attempt + 1}/{self.max_retries}"
                        )
                    else:
                        # Client error, don't retry
                        self._consecutive_failures += 1
                        return None, f"HTTP {response.status_code}: {response.text}"

                except httpx.ConnectError:
                    logger.warning(
                        f"Connection failed, attempt {attempt + 1}/{self.max_retries}"
                    )
                except httpx.TimeoutException:
                    logger.warning(
                        f"Request timeout, attempt {attempt + 1}/{self.max_retries}"
                    )
                except (httpx.HTTPError, ValueError) as e:
                    logger.error(f"Request error for {path}: {e}")
                    self._consecutive_failures += 1
                    return None, str(e)

                # Exponential backoff
                if attempt < self.max_retries - 1:
                    await asyncio.sleep(backoff)
                    backoff *= 2

        self._consecutive_failures += 1
        return None, f"Max retries ({self.max_retries}) exceeded"

    async def fetch_remote_version(self) -> VersionDescriptor:
        """Fetch the current remote version descriptor.

        Raises:
            RemoteUnavailableError: If the request fails or the response is malformed.
        """
        data, error = await self._request_with_retry(self.version_path)
        if error:
            raise RemoteUnavailableError(f"Version check failed: {error}")

        # PostgREST returns single rows as one-element arrays
        if isinstance(data, list):
            data = data[0] if data else None

        try:
            return VersionDescriptor.from_dict(data)
        except DecodeError as e:
            raise RemoteUnavailableError(f"Malformed version descriptor: {e}") from e

    async def _fetch_collection(self, collection: str, path: str) -> list:
        data, error = await self._request_with_retry(path)
        if error:
            raise RemoteUnavailableError(f"Fetching {collection} failed: {error}")

        try:
            return decode_collection(collection, data)
        except DecodeError as e:
            raise RemoteUnavailableError(f"Malformed {collection} payload: {e}") from e

    async def fetch_full_dataset(self) -> dict[str, list]:
        """Fetch a full snapshot of every collection.

        Returns:
            Dict with "categories" and "businesses" entity lists.

        Raises:
            RemoteUnavailableError: If any collection cannot be fetched.
        """
        categories, businesses = await asyncio.gather(
            self._fetch_collection("categories", self.categories_path),
            self._fetch_collection("businesses", self.businesses_path),
        )
        logger.info(
            f"Fetched full dataset: {len(categories)} categories, "
            f"{len(businesses)} businesses"
        )
        return {"categories": categories, "businesses": businesses}

    async def check_connection(self) -> bool:
        """Check if the remote API is reachable."""
        try:
            await self.fetch_remote_version()
            return True
        except RemoteUnavailableError:
            return False

    def get_status(self) -> dict[str, Any]:
        return {
            "base_url": self.base_url,
            "consecutive_failures": self._consecutive_failures,
        }
