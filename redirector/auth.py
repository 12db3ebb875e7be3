import secrets

from fastapi import Depends, HTTPException, Request
from fastapi.security import HTTPBasic, HTTPBasicCredentials

basic = HTTPBasic(auto_error=False)


def require_admin(
    request: Request,
    credentials: HTTPBasicCredentials | None = Depends(basic),
) -> None:
    """
    Gate the admin surface with HTTP Basic when ADMIN_USERNAME and
    ADMIN_PASSWORD are configured. Otherwise the surface is open and
    access control is left to the deployment.
    """
    settings = request.app.state.settings
    if not (settings.admin_username and settings.admin_password):
        return

    ok = credentials is not None and (
        secrets.compare_digest(credentials.username.encode(), settings.admin_username.encode())
        & secrets.compare_digest(credentials.password.encode(), settings.admin_password.encode())
    )
    if not ok:
        raise HTTPException(
            status_code=401,
            detail="Unauthorized",
            headers={"WWW-Authenticate": 'Basic realm="Admin Area"'},
        )
