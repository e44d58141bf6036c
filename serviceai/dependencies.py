"""
FastAPI dependencies: the service container and dashboard authentication.
"""
from typing import Optional

from fastapi import Depends, Header, Request

from serviceai.container import Services
from serviceai.utils.errors import AuthenticationError, AuthorizationError


def get_services(request: Request) -> Services:
    return request.app.state.services


async def get_current_user(
    authorization: Optional[str] = Header(default=None),
    services: Services = Depends(get_services)
) -> str:
    """Resolve `Authorization: Bearer <token>` to a user id"""
    if not authorization or not authorization.lower().startswith("bearer "):
        raise AuthenticationError("Missing bearer token")
    token = authorization[7:].strip()
    user_id = await services.persistence.resolve_user(token) if token else None
    if not user_id:
        raise AuthenticationError("Invalid or expired token")
    return user_id


async def require_member(services: Services, organization_id: str, user_id: str) -> None:
    """Membership check that runs before any organization data is touched"""
    if not organization_id or not await services.persistence.is_member(organization_id, user_id):
        raise AuthorizationError()
