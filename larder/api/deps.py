"""Request-scoped dependencies: the acting user's gateway and entitlement."""
from typing import AsyncIterator

from fastapi import Depends

from larder.core.auth import AuthContext, get_auth_context
from larder.core.config import settings
from larder.core.errors import AuthenticationError
from larder.features.entitlements.service import EntitlementResolver
from larder.features.remote.sql_gateway import SqlGateway
from larder.features.remote.supabase_gateway import SupabaseGateway
from larder.models.entitlement import Entitlement


def build_gateway(auth: AuthContext):
    if settings.BACKEND_MODE == "local":
        return SqlGateway(auth.user_id)
    if not auth.access_token:
        raise AuthenticationError("Bearer token required")
    return SupabaseGateway(auth.user_id, auth.access_token)


async def get_gateway(auth: AuthContext = Depends(get_auth_context)) -> AsyncIterator:
    gateway = build_gateway(auth)
    try:
        yield gateway
    finally:
        await gateway.aclose()


async def get_entitlement(gateway=Depends(get_gateway)) -> Entitlement:
    return await EntitlementResolver(gateway).resolve()
