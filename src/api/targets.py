"""
Target Store API Client

Reads target matrices and writes batched target changes.

Endpoints:
- GET  /targets/matrix?department=<slug>&period=<YYYY-MM-01>
- POST /targets/bulk-upsert
- GET  /targets/overview?period=<YYYY-MM-01>
- GET  /targets/<department>?period=<YYYY-MM-01>  (raw department payloads)
"""

import logging
from typing import Any, Dict, List, Optional

import requests

from config.settings import settings
from .auth import TargetStoreAuth, AuthRequired

logger = logging.getLogger(__name__)


class TargetStoreClient:
    """
    Client for the Target Store API.

    Every call is a single request; nothing is retried automatically.
    """

    def __init__(
        self,
        auth: Optional[TargetStoreAuth] = None,
        api_url: Optional[str] = None,
        session: Optional[requests.Session] = None
    ):
        """
        Initialize the client.

        Args:
            auth: TargetStoreAuth instance (creates new one if not provided)
            api_url: Base API URL (defaults to settings)
            session: requests session to reuse connections
        """
        self.auth = auth or TargetStoreAuth()
        self.api_url = (api_url or settings.target_api_url).rstrip("/")
        self.endpoint = f"{self.api_url}/targets"
        self.session = session or requests.Session()

    @staticmethod
    def _error_detail(response: requests.Response) -> str:
        """Extract the server's error message ("detail" string or list of {msg})."""
        try:
            data = response.json()
        except ValueError:
            return f"API Error: {response.status_code}"

        detail = data.get("detail") if isinstance(data, dict) else None
        if isinstance(detail, str) and detail:
            return detail
        if isinstance(detail, list) and detail:
            messages = [d.get("msg", str(d)) if isinstance(d, dict) else str(d) for d in detail]
            return ", ".join(messages)
        return f"API Error: {response.status_code}"

    def _request(self, method: str, url: str, **kwargs) -> Dict[str, Any]:
        """
        Send one request and decode the JSON body.

        Raises:
            AuthRequired: On 401/403 or a missing token
            NetworkFailure: On connection errors, timeouts, 429 and 5xx
            TargetStoreAPIError: On any other non-2xx response
        """
        headers = self.auth.get_headers()

        try:
            response = self.session.request(
                method,
                url,
                headers=headers,
                timeout=settings.api_timeout,
                **kwargs
            )
        except requests.Timeout as e:
            raise NetworkFailure(f"Request timed out: {method} {url}: {e}")
        except requests.RequestException as e:
            raise NetworkFailure(f"Failed to reach Target Store: {method} {url}: {e}")

        status = response.status_code
        if status in (401, 403):
            self.auth.invalidate_token()
            raise AuthRequired(f"Authentication required ({status}); sign in again")
        if status == 429:
            raise NetworkFailure("Too many requests; wait before retrying")
        if status >= 500:
            raise NetworkFailure(f"Target Store unavailable ({status}): {self._error_detail(response)}")
        if status >= 400:
            raise TargetStoreAPIError(self._error_detail(response), status_code=status)

        try:
            return response.json()
        except ValueError as e:
            raise TargetStoreAPIError(f"Invalid JSON from {url}: {e}", status_code=status)

    def get_matrix(self, department: str, period: str) -> Dict[str, Any]:
        """
        Fetch the target matrix of a department for one month.

        Args:
            department: Department slug (e.g. "store")
            period: Period key "YYYY-MM-01"

        Returns:
            {"kpis": [...], "rows": [...]}
        """
        logger.info(f"Fetching {department} target matrix for {period}")
        return self._request(
            "GET",
            f"{self.endpoint}/matrix",
            params={"department": department, "period": period}
        )

    def bulk_upsert(self, period: str, changes: List[Dict[str, Any]]) -> Dict[str, Any]:
        """
        Create or update many targets in one request.

        Args:
            period: Period key "YYYY-MM-01"
            changes: [{"entityId", "kpiId", "persistedId", "value"}, ...]

        Returns:
            {"createdCount", "updatedCount", "errors": [{"entityId", "kpiId", "message"}]}
        """
        logger.info(f"Sending {len(changes)} target changes for {period}")
        return self._request(
            "POST",
            f"{self.endpoint}/bulk-upsert",
            json={"period": period, "changes": changes}
        )

    def get_overview(self, period: str) -> Dict[str, Any]:
        """Fetch per-department target-setting status for one month."""
        return self._request("GET", f"{self.endpoint}/overview", params={"period": period})

    def get_department_targets(self, department: str, period: str) -> Dict[str, Any]:
        """Fetch a department's own target payload (financial, ecommerce)."""
        return self._request("GET", f"{self.endpoint}/{department}", params={"period": period})


class TargetStoreAPIError(Exception):
    """Raised when the Target Store API rejects a request."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class NetworkFailure(TargetStoreAPIError):
    """Raised on transport-level failures; the whole request may be retried."""
    pass
