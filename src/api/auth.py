"""
Target Store API Authentication Module

Builds request headers from the bearer token issued by the dashboard's
auth layer. Acquiring or refreshing tokens happens outside this package.
"""

from typing import Optional

from config.settings import settings


class TargetStoreAuth:
    """
    Supplies the bearer token for Target Store requests.

    A missing or rejected token surfaces as AuthRequired so the caller can
    re-authenticate and retry.
    """

    def __init__(self, token: Optional[str] = None):
        """
        Initialize the auth helper.

        Args:
            token: Access token (defaults to settings)
        """
        self._token = token if token is not None else settings.target_api_token

    def get_token(self) -> str:
        """
        Get the current access token.

        Raises:
            AuthRequired: If no token is available
        """
        if not self._token:
            raise AuthRequired("No access token available; sign in again")
        return self._token

    def get_headers(self) -> dict:
        """
        Get headers with the authentication token for API requests.

        Returns:
            Dict with Content-Type and Authorization headers
        """
        return {
            "Content-Type": "application/json",
            "Authorization": f"Bearer {self.get_token()}"
        }

    def set_token(self, token: str) -> None:
        """Install a token obtained by re-authentication."""
        self._token = token

    def invalidate_token(self) -> None:
        """Drop the token after the server rejected it."""
        self._token = ""


class AuthRequired(Exception):
    """Raised when the Target Store API needs (re-)authentication."""
    pass
