"""Bearer-token validation dependency for FastAPI."""

import hmac

from fastapi import Header, HTTPException
from supabase import create_client
from repose_worker.config import settings

SERVICE_PRINCIPAL = {"id": "service_role", "role": "service_role"}


async def verify_jwt(authorization: str = Header(None)):
    """Validate the Authorization header.

    The service role key is accepted as-is (self-invocation and other
    backend callers). Anything else must be a valid Supabase user JWT.
    Returns the authenticated principal.
    """
    if not authorization or not authorization.startswith("Bearer "):
        raise HTTPException(status_code=401, detail="Missing or invalid token")

    token = authorization.replace("Bearer ", "", 1)
    service_key = settings.supabase_service_role_key
    if service_key and hmac.compare_digest(token, service_key):
        return SERVICE_PRINCIPAL

    try:
        client = create_client(settings.supabase_url, settings.supabase_anon_key)
        user_response = client.auth.get_user(token)
    except Exception:
        raise HTTPException(status_code=401, detail="Invalid token")
    if user_response is None or user_response.user is None:
        raise HTTPException(status_code=401, detail="Invalid token")
    return user_response.user
