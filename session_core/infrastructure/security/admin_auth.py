"""
Shared admin secret check for the admin routes.
"""

from typing import Optional
import hmac
import structlog

logger = structlog.get_logger(__name__)


class AdminAuthError(Exception):
    """Raised when the admin secret is missing or wrong"""


def verify_admin_secret(provided: Optional[str], expected: Optional[str]) -> None:
    """
    Compare the caller's secret with the configured one

    Args:
        provided: Secret sent by the caller
        expected: Configured admin secret; admin routes are closed when unset

    Raises:
        AdminAuthError: If the secret is missing, unconfigured or wrong
    """

    if not expected:
        raise AdminAuthError("Admin access is not configured")

    if not provided:
        raise AdminAuthError("No admin secret provided")

    if not hmac.compare_digest(provided.encode("utf-8"), expected.encode("utf-8")):
        logger.warning("Rejected admin secret", secret_prefix=provided[:2])
        raise AdminAuthError("Invalid admin secret")
