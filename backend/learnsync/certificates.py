"""Client for the certificate issuance collaborator."""

from __future__ import annotations

import logging
from typing import Optional, Protocol

import httpx

from .errors import CertificateIssueError

logger = logging.getLogger(__name__)


class CertificateIssuer(Protocol):
    def issue(self, user_id: str, course_id: str) -> None:
        """Issue (or re-confirm) the certificate for ``(user_id, course_id)``.

        Implementations upsert on that pair, so repeated calls are harmless.
        """
        ...


class HttpCertificateIssuer:
    """Posts ``{"user_id", "course_id"}`` to the hosted issue-certificate function."""

    def __init__(
        self,
        endpoint: str,
        api_key: Optional[str] = None,
        *,
        timeout: float = 10.0,
        transport: Optional[httpx.BaseTransport] = None,
    ) -> None:
        headers = {"Content-Type": "application/json"}
        if api_key:
            headers["Authorization"] = f"Bearer {api_key}"
        self._endpoint = endpoint
        self._client = httpx.Client(headers=headers, timeout=timeout, transport=transport)

    def close(self) -> None:
        self._client.close()

    def issue(self, user_id: str, course_id: str) -> None:
        try:
            response = self._client.post(self._endpoint, json={"user_id": user_id, "course_id": course_id})
        except httpx.HTTPError as exc:
            raise CertificateIssueError(f"Certificate service unreachable: {exc}") from exc
        if response.is_error:
            raise CertificateIssueError(
                f"Certificate service rejected {user_id}/{course_id} ({response.status_code}): {response.text}"
            )
        logger.debug("Certificate issued for user=%s course=%s", user_id, course_id)


class UnconfiguredCertificateIssuer:
    """Stand-in used when no certificate endpoint is configured.

    Every issuance fails, which leaves completion records pending until a
    configured deployment runs the reconciliation sweep.
    """

    def issue(self, user_id: str, course_id: str) -> None:
        raise CertificateIssueError("LEARNSYNC_CERTIFICATE_ENDPOINT is not configured.")


__all__ = ["CertificateIssuer", "HttpCertificateIssuer", "UnconfiguredCertificateIssuer"]
