"""Retry certificate issuance for completion records still marked pending.

Intended for a cron job next to the session service; exits non-zero when
some records remain pending so the scheduler can alert.
"""

from __future__ import annotations

import argparse
import logging
import sys
from typing import Optional

from learnsync.certificates import HttpCertificateIssuer, UnconfiguredCertificateIssuer
from learnsync.config import get_settings
from learnsync.connectivity import ConnectivityProbe
from learnsync.ledger import EnrollmentLedger
from learnsync.local_snapshot import LocalSnapshotStore
from learnsync.logging_config import configure_logging
from learnsync.models import BackendMode
from learnsync.stores import UserStores

logger = logging.getLogger("learnsync.reconcile")


def parse_args(argv: Optional[list[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Issue certificates for pending course completions.")
    parser.add_argument("--user-id", default=None, help="Only reconcile this user's completions.")
    parser.add_argument(
        "--mode",
        choices=("auto", "remote", "local"),
        default=None,
        help="Backend to sweep (default: LEARNSYNC_BACKEND_MODE).",
    )
    return parser.parse_args(argv)


def build_ledger(stores: UserStores) -> EnrollmentLedger:
    settings = get_settings()
    if settings.certificate_endpoint:
        issuer = HttpCertificateIssuer(
            settings.certificate_endpoint,
            settings.identity_api_key,
            timeout=settings.http_timeout,
        )
    else:
        issuer = UnconfiguredCertificateIssuer()
    return EnrollmentLedger(stores, issuer)


def reconcile(mode: BackendMode, stores: UserStores, *, user_id: Optional[str] = None) -> tuple[int, int]:
    """Returns ``(issued, still_pending)``."""
    ledger = build_ledger(stores)
    issued = ledger.reconcile_certificates(mode, user_id)
    remaining = len(stores.for_mode(mode).pending_certificates(user_id))
    return issued, remaining


def main(argv: Optional[list[str]] = None) -> int:
    configure_logging()
    args = parse_args(argv)
    settings = get_settings()
    stores = UserStores.from_snapshot(LocalSnapshotStore(settings.snapshot_path))
    mode = ConnectivityProbe(configured_mode=args.mode or settings.backend_mode).check_connectivity()
    try:
        issued, remaining = reconcile(mode, stores, user_id=args.user_id)
    except Exception as exc:  # noqa: BLE001
        logger.exception("Certificate reconciliation failed: %s", exc)
        return 1
    logger.info("Issued %d certificate(s) in %s mode; %d still pending", issued, mode.value, remaining)
    return 0 if remaining == 0 else 2


if __name__ == "__main__":
    sys.exit(main())
