"""
REST Effector

Forwards approved mutations to the platform's HTTP API.

Endpoints:
- POST {base_url}/mutations         body: payload, response: rollback snapshot
- POST {base_url}/mutations/revert  body: {"snapshot": snapshot}

Timeouts, connection errors, 408, 429 and 5xx responses are retryable; any other
4xx means the platform refused the mutation.
"""

import requests
import logging
from typing import Any, Dict, Optional

from changegate.effectors.base import Effector
from changegate.errors import FatalEffectorError, RetryableEffectorError


RETRYABLE_STATUS = frozenset({408, 429})


class RESTEffector(Effector):
    """
    HTTP client for the platform mutation API.
    """

    def __init__(
        self,
        base_url: str,
        timeout: float = 30.0,
        api_token: Optional[str] = None,
        session: Optional[requests.Session] = None
    ):
        """
        Initialize REST effector.

        Args:
            base_url: Platform API root, e.g. "https://platform.example.com/api"
            timeout: Request timeout in seconds
            api_token: Optional bearer token
            session: Session to reuse (a new pooled session if omitted)
        """
        self.base_url = base_url.rstrip('/')
        self.timeout = timeout
        self.logger = logging.getLogger(__name__)

        # Session for connection pooling
        self.session = session or requests.Session()
        self.session.headers.update({
            'Content-Type': 'application/json',
            'User-Agent': 'changegate-effector/1.0'
        })
        if api_token:
            self.session.headers['Authorization'] = f"Bearer {api_token}"

    def apply(self, payload: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        data = self._post("/mutations", payload)
        return data.get('snapshot', data) if isinstance(data, dict) else None

    def revert(self, snapshot: Dict[str, Any]) -> None:
        self._post("/mutations/revert", {'snapshot': snapshot})

    def _post(self, path: str, body: Dict[str, Any]) -> Any:
        url = f"{self.base_url}{path}"
        self.logger.debug(f"HTTP POST {url}")

        try:
            response = self.session.post(url, json=body, timeout=self.timeout)
        except requests.exceptions.Timeout:
            self.logger.warning(f"Request to {url} timed out after {self.timeout}s")
            raise RetryableEffectorError(f"Timed out after {self.timeout}s")
        except requests.exceptions.ConnectionError as e:
            self.logger.warning(f"Connection error to {url}: {e}")
            raise RetryableEffectorError(f"Connection error: {e}")

        status = response.status_code
        if status >= 500 or status in RETRYABLE_STATUS:
            raise RetryableEffectorError(f"Platform returned {status}: {response.text}")
        if status >= 400:
            self.logger.error(f"Platform refused mutation: {status} - {response.text}")
            raise FatalEffectorError(f"Platform returned {status}: {response.text}")

        if not response.content:
            return None

        try:
            return response.json()
        except ValueError:
            raise FatalEffectorError(f"Platform returned a non-JSON body from {path}")
