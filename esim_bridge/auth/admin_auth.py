"""
HTTP Basic authentication for the admin dashboard.
"""

import logging
import secrets

from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPBasic, HTTPBasicCredentials

from esim_bridge.config import settings
from esim_bridge.core.errors import BridgeError

logger = logging.getLogger(__name__)

REALM = "Secured Admin Dashboard"

security = HTTPBasic(realm=REALM)


def require_admin(credentials: HTTPBasicCredentials = Depends(security)) -> str:
    """Return the admin username, or raise 401 (500 if no password is configured)."""
    expected_password = settings.admin_password
    if not expected_password:
        raise BridgeError("ESB-CFG-001", detail="ESIM_BRIDGE_ADMIN_PASSWORD not set")

    # Compare both fields before deciding, constant time each
    user_ok = secrets.compare_digest(
        credentials.username.encode("utf-8"), settings.admin_username.encode("utf-8"),
    )
    pass_ok = secrets.compare_digest(
        credentials.password.encode("utf-8"), expected_password.encode("utf-8"),
    )
    if not (user_ok and pass_ok):
        logger.warning("Admin login failed for user %r", credentials.username)
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid credentials",
            headers={"WWW-Authenticate": f'Basic realm="{REALM}"'},
        )
    return credentials.username
