"""Flume API client module.

This module handles:
- OAuth password-grant authentication with the Flume API
- Session management and bearer token handling
- Fetching devices from the device directory
- Running minute-bucketed usage queries against a device
"""

import base64
import json
import logging
import time
from typing import Any, Dict, List, Optional

import requests

from flume_exporter.models import Device, UsageBucket, parse_query_results

# Configure module logger
logger = logging.getLogger(__name__)


class FlumeError(Exception):
    """Base exception for Flume API errors."""
    pass


class FlumeAuthError(FlumeError):
    """Exception raised when authentication fails."""
    pass


class FlumeRequestError(FlumeError):
    """Exception raised when an API request fails."""
    pass


class FlumeClient:
    """Minimal client for the Flume water-usage API.

    Only the calls needed to resolve one device and query its usage are
    implemented. The access token is requested lazily on first use and again
    once it has expired.

    Attributes:
        client_id: API client ID
        client_secret: API client secret
        username: Flume account username (email)
        password: Flume account password
        timeout: Per-request timeout in seconds
    """

    BASE_URL = "https://api.flumewater.com"
    TOKEN_URL = f"{BASE_URL}/oauth/token"

    # Renew slightly before the token actually expires
    TOKEN_EXPIRY_MARGIN = 60  # seconds

    def __init__(
        self,
        client_id: str,
        client_secret: str,
        username: str,
        password: str,
        timeout: float = 5.0,
    ):
        """Initialize the client with credentials.

        Args:
            client_id: API client ID
            client_secret: API client secret
            username: Flume account username (email)
            password: Flume account password
            timeout: Per-request timeout in seconds
        """
        self.client_id = client_id
        self.client_secret = client_secret
        self.username = username
        self.password = password
        self.timeout = timeout
        self.session = requests.Session()

        self._access_token: Optional[str] = None
        self._token_expires_at = 0.0
        self.user_id: Optional[str] = None

        self.session.headers.update({
            "Accept": "application/json",
            "Content-Type": "application/json",
        })

    @staticmethod
    def _decode_user_id(access_token: str) -> str:
        """Extract the user_id claim from a JWT access token.

        Raises:
            FlumeAuthError: If the token payload cannot be decoded
        """
        try:
            payload = access_token.split(".")[1]
            payload += "=" * (-len(payload) % 4)
            claims = json.loads(base64.urlsafe_b64decode(payload))
            return str(claims["user_id"])
        except (IndexError, KeyError, ValueError) as e:
            raise FlumeAuthError(f"Could not read user_id from access token: {e}")

    @staticmethod
    def _unwrap(response: requests.Response) -> List[Any]:
        """Return the data array of a Flume response envelope.

        Raises:
            FlumeRequestError: If the body is not JSON or reports failure
        """
        try:
            body = response.json()
        except ValueError as e:
            raise FlumeRequestError(f"Invalid JSON response from {response.url}: {e}")

        if not isinstance(body, dict):
            raise FlumeRequestError(f"Unexpected response type: {type(body)}")

        if not body.get("success", False):
            message = body.get("message") or "Unknown error"
            detailed = body.get("detailed")
            if detailed:
                message = f"{message}: {detailed}"
            raise FlumeRequestError(f"Flume API error: {message}")

        return body.get("data") or []

    @property
    def authenticated(self) -> bool:
        """Whether a non-expired access token is held."""
        return self._access_token is not None and time.time() < self._token_expires_at

    def login(self) -> bool:
        """Request an access token with the password grant.

        Returns:
            True if authentication succeeded

        Raises:
            FlumeAuthError: If authentication fails
        """
        logger.info(f"Authenticating with Flume as {self.username}")

        payload = {
            "grant_type": "password",
            "client_id": self.client_id,
            "client_secret": self.client_secret,
            "username": self.username,
            "password": self.password,
        }

        try:
            response = self.session.request("POST", self.TOKEN_URL, json=payload, timeout=self.timeout)
            response.raise_for_status()
            data = self._unwrap(response)
        except (requests.RequestException, FlumeRequestError) as e:
            logger.error(f"Login failed: {e}")
            raise FlumeAuthError(f"Login failed: {e}")

        if not data or "access_token" not in data[0]:
            raise FlumeAuthError("Login failed - no access token in response")

        token = data[0]
        self._access_token = token["access_token"]
        self._token_expires_at = time.time() + float(token.get("expires_in", 3600)) - self.TOKEN_EXPIRY_MARGIN
        self.user_id = self._decode_user_id(self._access_token)
        self.session.headers["Authorization"] = f"Bearer {self._access_token}"

        logger.info(f"Authentication successful (user_id={self.user_id})")
        return True

    def _request(self, method: str, path: str, **kwargs) -> List[Any]:
        """Execute an authenticated API request.

        Args:
            method: HTTP method (GET, POST)
            path: Path below /users/{user_id}
            **kwargs: Additional arguments passed to requests

        Returns:
            The response's data array

        Raises:
            FlumeAuthError: If (re-)authentication fails
            FlumeRequestError: If the request fails
        """
        if not self.authenticated:
            self.login()

        url = f"{self.BASE_URL}/users/{self.user_id}{path}"
        logger.debug(f"{method} {url}")

        try:
            response = self.session.request(method, url, timeout=self.timeout, **kwargs)
            response.raise_for_status()
        except requests.RequestException as e:
            raise FlumeRequestError(f"{method} {path} failed: {e}")

        return self._unwrap(response)

    @staticmethod
    def _device_params(include_user: bool, include_location: bool) -> Dict[str, str]:
        return {
            "user": "true" if include_user else "false",
            "location": "true" if include_location else "false",
        }

    def fetch_user_device(
        self,
        device_id: str,
        include_user: bool = True,
        include_location: bool = True,
    ) -> Device:
        """Fetch a single device from the device directory.

        Raises:
            FlumeRequestError: If the request fails or the device is not returned
        """
        data = self._request(
            "GET",
            f"/devices/{device_id}",
            params=self._device_params(include_user, include_location),
        )
        if not data:
            raise FlumeRequestError(f"Device {device_id} not found")
        return Device.from_api(data[0])

    def fetch_user_devices(
        self,
        include_user: bool = True,
        include_location: bool = True,
    ) -> List[Device]:
        """Fetch every device on the account, in directory order."""
        data = self._request(
            "GET",
            "/devices",
            params=self._device_params(include_user, include_location),
        )
        devices = [Device.from_api(d) for d in data]
        logger.debug(f"Fetched {len(devices)} devices")
        return devices

    def query_user_device(
        self,
        device_id: str,
        queries: List[Dict[str, Any]],
    ) -> List[Dict[str, List[UsageBucket]]]:
        """Run usage queries against a device.

        Args:
            device_id: Device to query
            queries: JSON query objects (see QueryWindow.to_query)

        Returns:
            One mapping per query group from request_id to its buckets

        Raises:
            FlumeRequestError: If the request fails or the buckets are malformed
        """
        data = self._request(
            "POST",
            f"/devices/{device_id}/query",
            json={"queries": queries},
        )
        try:
            return parse_query_results(data)
        except (TypeError, ValueError, AttributeError) as e:
            raise FlumeRequestError(f"Malformed query response: {e}")

    def close(self) -> None:
        """Release the HTTP session."""
        self.session.close()
        self._access_token = None
        self._token_expires_at = 0.0
        logger.debug("Flume session closed")
