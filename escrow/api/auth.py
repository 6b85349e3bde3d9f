import hmac

from fastapi import Depends, Header, HTTPException
from escrow.wiring import Components, get_components


def require_caller(x_user_id: str = Header(default="", alias="x-user-id")) -> str:
    """
    Identity comes from the upstream auth layer as x-user-id.
    Missing identity is a 401; what the caller may do is decided by the services.
    """
    caller = (x_user_id or "").strip()
    if not caller:
        raise HTTPException(status_code=401, detail="Authentication required")
    return caller


def require_cron_secret(
    authorization: str = Header(default="", alias="authorization"),
    comps: Components = Depends(get_components),
):
    secret = comps.http.cron_secret
    # Fail closed: an unset secret means the endpoint is misconfigured, not open.
    if not secret:
        raise HTTPException(status_code=500, detail="CRON_SECRET not configured")
    expected = f"Bearer {secret}"
    if not hmac.compare_digest((authorization or "").encode("utf-8"), expected.encode("utf-8")):
        raise HTTPException(status_code=401, detail="Unauthorized")


def require_admin(
    x_admin_key: str = Header(default="", alias="x-admin-key"),
    x_user_id: str = Header(default="", alias="x-user-id"),
    comps: Components = Depends(get_components),
) -> str:
    key = comps.http.admin_api_key
    # Secure default: if no key configured, reject all.
    if not key:
        raise HTTPException(status_code=403, detail="Admin access disabled (no key configured)")
    if not hmac.compare_digest((x_admin_key or "").encode("utf-8"), key.encode("utf-8")):
        raise HTTPException(status_code=403, detail="Invalid admin key")
    return (x_user_id or "").strip() or "admin"
