import hmac
from typing import Optional

from fastapi import Depends, HTTPException, Request, Security
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from .config import Config

bearer_scheme = HTTPBearer(auto_error=False)


def get_config(request: Request) -> Config:
    return request.app.state.config


def require_cron_secret(
    credentials: Optional[HTTPAuthorizationCredentials] = Security(bearer_scheme),
    config: Config = Depends(get_config),
) -> None:
    """Validate `Authorization: Bearer <CRON_SECRET>`.

    A server without CRON_SECRET refuses every protected call with 500.
    """
    expected = config.cron_secret
    if not expected:
        raise HTTPException(status_code=500, detail="CRON_SECRET not configured")
    token = credentials.credentials if credentials else ""
    if not hmac.compare_digest(token.encode("utf-8"), expected.encode("utf-8")):
        raise HTTPException(status_code=401, detail="Unauthorized")
