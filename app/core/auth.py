import secrets
from typing import Optional
from fastapi import HTTPException, Query, Security, status
from fastapi.security import HTTPBasic, HTTPBasicCredentials
from app.config import settings


security = HTTPBasic(auto_error=False)


def verify_credentials(credentials: Optional[HTTPBasicCredentials] = Security(security)) -> str:
    """Verify HTTP Basic authentication credentials for the admin API."""
    if not settings.auth_enabled:
        return "authenticated"

    if credentials is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Not authenticated",
            headers={"WWW-Authenticate": "Basic"},
        )

    correct_username = secrets.compare_digest(
        credentials.username.encode("utf8"),
        settings.auth_username.encode("utf8")
    )
    correct_password = secrets.compare_digest(
        credentials.password.encode("utf8"),
        settings.auth_password.encode("utf8")
    )

    if not (correct_username and correct_password):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Incorrect username or password",
            headers={"WWW-Authenticate": "Basic"},
        )

    return credentials.username


def verify_local_webhook_secret(secret: Optional[str] = Query(None)) -> None:
    """Check the shared secret on local tracker events. An empty setting disables the check."""
    expected = settings.local_webhook_secret
    if not expected:
        return
    if not secret or not secrets.compare_digest(secret.encode("utf8"), expected.encode("utf8")):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid secret",
        )
