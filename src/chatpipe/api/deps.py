"""Centralized FastAPI dependency type aliases.

Import these ``*Dep`` aliases in route modules instead of manually
writing ``Annotated[T, Depends(get_xxx)]`` everywhere.  Each alias
corresponds to a single ``get_*`` factory and can be overridden in
tests via ``app.dependency_overrides[get_xxx] = ...``.
"""

from typing import Annotated, Optional

from fastapi import Depends, Header, HTTPException, status

from chatpipe.configs.config import AppConfig, get_app_config
from chatpipe.core.container import ServiceContainer, get_container
from chatpipe.core.pipeline.context import ChatUser
from chatpipe.infra.rate_limit import UserRateLimiter, get_rate_limiter


def get_current_user(
    x_user_id: Annotated[Optional[str], Header()] = None,
    x_user_email: Annotated[Optional[str], Header()] = None,
    x_user_name: Annotated[Optional[str], Header()] = None,
    x_user_department: Annotated[Optional[str], Header()] = None,
) -> ChatUser:
    """The principal forwarded by the authenticating proxy.

    The proxy is trusted to strip these headers from client traffic.
    """
    if not x_user_id:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Authentication required",
        )
    return ChatUser(
        id=x_user_id,
        email=x_user_email,
        name=x_user_name,
        department=x_user_department,
    )


AppConfigDep = Annotated[AppConfig, Depends(get_app_config)]
ContainerDep = Annotated[ServiceContainer, Depends(get_container)]
RateLimiterDep = Annotated[UserRateLimiter, Depends(get_rate_limiter)]
CurrentUserDep = Annotated[ChatUser, Depends(get_current_user)]
