from collections.abc import Callable
from typing import Annotated

from fastapi import Depends
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlalchemy.ext.asyncio import AsyncSession

from flashpush.config import AppConfig, Settings, get_config, get_settings
from flashpush.core.database import get_db
from flashpush.core.errors import ErrorCode, FlashPushError
from flashpush.core.security import AuthenticationError, Caller, verify_access_token
from flashpush.services.monitoring import MonitoringService, get_monitoring
from flashpush.services.push_gateway import PushGateway, get_push_gateway

# Missing credentials are reported as UNAUTHORIZED by the service, not a bare 403
bearer_scheme = HTTPBearer(auto_error=False)

# Type aliases for dependency injection
DBSession = Annotated[AsyncSession, Depends(get_db)]
AppSettings = Annotated[Settings, Depends(get_settings)]
Config = Annotated[AppConfig, Depends(get_config)]
Monitoring = Annotated[MonitoringService, Depends(get_monitoring)]


def get_bearer_token(
    credentials: Annotated[HTTPAuthorizationCredentials | None, Depends(bearer_scheme)],
) -> str | None:
    """Raw bearer token from the Authorization header, if any."""
    return credentials.credentials if credentials else None


def get_gateway_factory() -> Callable[[], PushGateway]:
    """Factory for the push gateway. Overridden in tests."""
    return get_push_gateway


async def get_caller(token: Annotated[str | None, Depends(get_bearer_token)]) -> Caller:
    """Verified caller, or UNAUTHORIZED."""
    try:
        return verify_access_token(token)
    except AuthenticationError as e:
        raise FlashPushError(ErrorCode.UNAUTHORIZED, str(e)) from e


BearerToken = Annotated[str | None, Depends(get_bearer_token)]
GatewayFactory = Annotated[Callable[[], PushGateway], Depends(get_gateway_factory)]
CurrentCaller = Annotated[Caller, Depends(get_caller)]
