#!/usr/bin/env python3
# SPDX-License-Identifier: Apache-2.0
# SPDX-FileCopyrightText: 2025 The Linux Foundation

"""
HTTP client for the availability group permission service.

Some estates delegate AG-level grants to a central permission service
instead of letting automation run ``GRANT`` statements directly.  This
module provides a :class:`gateway.PermissionGrantor` for that service.
It handles:

- Bearer token authentication
- Retries on transient 5xx responses
- Treating "already granted" (HTTP 409) as success
- Mapping error responses onto :class:`errors.PermissionServiceError`

Usage:
    from permission_api import PermissionServiceClient

    client = PermissionServiceClient("https://perms.example.org", token="…")
    client.grant_permission(replica, "ag1", "CREATE ANY DATABASE")
"""

from __future__ import annotations

import logging
from typing import Any
from urllib.parse import quote

import requests
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry

from errors import PermissionServiceAuthError, PermissionServiceError
from models import Replica

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 30


def _parse_response(response: requests.Response) -> Any:
    """Return the decoded JSON body, raising on error statuses.

    409 (already granted) is not an error.
    """
    if response.status_code in (401, 403):
        raise PermissionServiceAuthError(
            f"Permission service refused the request: HTTP {response.status_code}",
            status_code=response.status_code,
            response_text=response.text,
        )
    if response.status_code == 409:
        logger.debug("Permission already granted: %s", response.text)
        return None
    if not response.ok:
        raise PermissionServiceError(
            f"Permission service request failed (HTTP {response.status_code}): "
            f"{response.text}",
            status_code=response.status_code,
            response_text=response.text,
        )
    if not response.content or not response.text.strip():
        return None
    try:
        return response.json()
    except ValueError:
        return response.text


class PermissionServiceClient:
    """
    Grant availability group permissions through the permission service.

    Args:
        base_url: Base URL of the service (e.g., "https://perms.example.org")
        token: Bearer token sent with every request
        verify_ssl: Whether to verify SSL certificates (default: True)
        timeout: Request timeout in seconds (default: 30)
    """

    def __init__(
        self,
        base_url: str,
        token: str = "",
        verify_ssl: bool = True,
        timeout: int = DEFAULT_TIMEOUT,
    ):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.verify_ssl = verify_ssl

        self.session = requests.Session()
        self.session.headers["Accept"] = "application/json"
        if token:
            self.session.headers["Authorization"] = f"Bearer {token}"
        retry_strategy = Retry(
            total=3,
            backoff_factor=0.5,
            status_forcelist=[500, 502, 503, 504],
            allowed_methods=["GET", "POST"],
        )
        adapter = HTTPAdapter(max_retries=retry_strategy)
        self.session.mount("http://", adapter)
        self.session.mount("https://", adapter)

    def _make_url(self, replica: str, ag_name: str) -> str:
        return (
            f"{self.base_url}/replicas/{quote(replica, safe='')}"
            f"/availability-groups/{quote(ag_name, safe='')}/permissions"
        )

    def grant_permission(self, replica: Replica, ag_name: str, permission: str) -> None:
        """Grant *permission* on *ag_name* to *replica*.

        Raises:
            PermissionServiceAuthError: If the service rejects our token
            PermissionServiceError: On any other failure
        """
        url = self._make_url(replica.name, ag_name)
        logger.info("Requesting %s on %s for %s", permission, ag_name, replica.name)
        try:
            response = self.session.post(
                url,
                json={"permission": permission},
                timeout=self.timeout,
                verify=self.verify_ssl,
            )
        except requests.RequestException as exc:
            raise PermissionServiceError(
                f"Permission service unreachable at {self.base_url}: {exc}"
            ) from exc
        _parse_response(response)
