"""
Base API client and remote catalog contract for the Site Compare Service.
"""

from typing import Optional, Dict, Any, List, Protocol
from dataclasses import dataclass
import requests
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry

from sitecompare.compare.models import CatalogItem, Library, SiteComparisonResult


@dataclass
class APIError(Exception):
    """Custom exception for API errors."""
    message: str
    status_code: Optional[int] = None
    response_data: Optional[Dict[str, Any]] = None

    def __str__(self) -> str:
        if self.status_code:
            return f"API Error {self.status_code}: {self.message}"
        return f"API Error: {self.message}"


class RemoteError(APIError):
    """A remote catalog call failed for a reason other than those below."""


class ThrottledError(RemoteError):
    """The remote side asked us to back off (HTTP 429/503)."""

    def __init__(
        self,
        message: str,
        status_code: Optional[int] = 429,
        response_data: Optional[Dict[str, Any]] = None,
        retry_after: Optional[float] = None,
    ):
        super().__init__(message, status_code, response_data)
        self.retry_after = retry_after


class AuthExpiredError(RemoteError):
    """Stored credentials were rejected by the remote side."""

    tenant_id: Optional[str] = None
    # Items compared before the rejection, attached by the comparer
    partial_result: Optional[SiteComparisonResult] = None


class NotFoundError(RemoteError):
    """The requested site or library does not exist."""


class RemoteCatalogClient(Protocol):
    """Minimal contract the comparison engine needs from a tenant."""

    def list_libraries(self, site_url: str) -> List[Library]:
        ...

    def list_items(self, site_url: str, library: Library) -> List[CatalogItem]:
        ...

    def list_lists(self, site_url: str) -> List[Library]:
        ...


class BaseClient:
    """
    Base class for API clients with common functionality.

    Throttling statuses (429/503) are deliberately left out of the transport
    retry so that they reach ThrottleRetryPolicy and get counted.
    """

    def __init__(
        self,
        base_url: str,
        timeout: int = 30,
        max_retries: int = 3,
        retry_backoff_factor: float = 0.5,
    ):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout

        # Create session with retry strategy
        self.session = requests.Session()

        retry_strategy = Retry(
            total=max_retries,
            backoff_factor=retry_backoff_factor,
            status_forcelist=[500, 502, 504],
            allowed_methods=["GET"],
            raise_on_status=False,
        )

        adapter = HTTPAdapter(max_retries=retry_strategy)
        self.session.mount("http://", adapter)
        self.session.mount("https://", adapter)

    def _build_url(self, endpoint: str) -> str:
        """Build full URL from endpoint."""
        if endpoint.startswith("http://") or endpoint.startswith("https://"):
            return endpoint
        return f"{self.base_url}{endpoint}"

    def _raise_for_status(self, response: requests.Response) -> None:
        """
        Translate an HTTP error response into the RemoteError family.

        Args:
            response: Response with status code >= 400

        Raises:
            ThrottledError, AuthExpiredError, NotFoundError or RemoteError
        """
        try:
            error_data = response.json()
        except ValueError:
            error_data = {"error": response.text}

        message = _error_message(error_data) or response.reason or "Request failed"
        status = response.status_code

        if status in (429, 503):
            raise ThrottledError(
                message,
                status_code=status,
                response_data=error_data,
                retry_after=parse_retry_after(response.headers.get("Retry-After")),
            )
        if status in (401, 403):
            raise AuthExpiredError(message, status, error_data)
        if status == 404:
            raise NotFoundError(message, status, error_data)
        raise RemoteError(message, status, error_data)

    def _request(
        self,
        method: str,
        endpoint: str,
        **kwargs
    ) -> Dict[str, Any]:
        """
        Make an HTTP request.

        Args:
            method: HTTP method (GET, POST, etc.)
            endpoint: API endpoint or absolute URL
            **kwargs: Additional arguments for requests

        Returns:
            Response JSON data

        Raises:
            RemoteError: If the request fails
        """
        url = self._build_url(endpoint)

        # Set default timeout
        kwargs.setdefault("timeout", self.timeout)

        try:
            response = self.session.request(method, url, **kwargs)
        except requests.exceptions.ConnectionError as e:
            raise RemoteError(f"Connection error: {str(e)}")
        except requests.exceptions.Timeout as e:
            raise RemoteError(f"Request timeout: {str(e)}")
        except requests.exceptions.RequestException as e:
            raise RemoteError(f"Request failed: {str(e)}")

        # Check for HTTP errors
        if response.status_code >= 400:
            self._raise_for_status(response)

        # Return JSON if possible
        try:
            return response.json()
        except ValueError:
            return {"data": response.text}

    def get(self, endpoint: str, **kwargs) -> Dict[str, Any]:
        """Make a GET request."""
        return self._request("GET", endpoint, **kwargs)

    def close(self) -> None:
        """Close the session."""
        self.session.close()


def parse_retry_after(value: Optional[str]) -> Optional[float]:
    """Parse a Retry-After header given in whole seconds."""
    if not value:
        return None
    try:
        return max(1.0, float(value.strip()))
    except ValueError:
        return None


def _error_message(error_data: Dict[str, Any]) -> Optional[str]:
    """Pull a readable message out of an OData or plain error payload."""
    error = error_data.get("error") or error_data.get("odata.error")
    if isinstance(error, dict):
        message = error.get("message")
        if isinstance(message, dict):
            return message.get("value")
        return message
    return error
