from __future__ import annotations

import json

import httpx
import pytest

from learnsync.certificates import HttpCertificateIssuer, UnconfiguredCertificateIssuer
from learnsync.errors import CertificateIssueError


def test_issue_posts_user_and_course() -> None:
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["url"] = str(request.url)
        seen["auth"] = request.headers.get("authorization")
        seen["body"] = json.loads(request.content)
        return httpx.Response(200, json={"certificate_id": "cert-1"})

    issuer = HttpCertificateIssuer(
        "https://functions.example/issue-certificate",
        "service-key",
        transport=httpx.MockTransport(handler),
    )
    issuer.issue("user-1", "course-1")

    assert seen == {
        "url": "https://functions.example/issue-certificate",
        "auth": "Bearer service-key",
        "body": {"user_id": "user-1", "course_id": "course-1"},
    }


@pytest.mark.parametrize("status_code", [400, 500])
def test_error_status_raises(status_code: int) -> None:
    issuer = HttpCertificateIssuer(
        "https://functions.example/issue-certificate",
        transport=httpx.MockTransport(lambda request: httpx.Response(status_code, text="nope")),
    )

    with pytest.raises(CertificateIssueError):
        issuer.issue("user-1", "course-1")


def test_transport_error_raises() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ReadTimeout("timed out", request=request)

    issuer = HttpCertificateIssuer("https://functions.example/issue-certificate", transport=httpx.MockTransport(handler))

    with pytest.raises(CertificateIssueError):
        issuer.issue("user-1", "course-1")


def test_unconfigured_issuer_always_fails() -> None:
    with pytest.raises(CertificateIssueError):
        UnconfiguredCertificateIssuer().issue("user-1", "course-1")
