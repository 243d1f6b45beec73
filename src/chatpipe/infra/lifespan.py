"""Generic FastAPI glue with nothing chatpipe-specific in it.

``inject`` resolves the ``Depends()`` parameters of a lifespan with
FastAPI's own resolver, honouring ``app.dependency_overrides``.  It is
the upstream recipe unchanged apart from layout.

Based on https://github.com/fastapi/fastapi/discussions/11742
"""

from contextlib import AsyncExitStack, asynccontextmanager
from functools import partial
from typing import Any, Callable

from fastapi import FastAPI, Request
from fastapi.dependencies.utils import get_dependant, solve_dependencies


def get_app(request: Request) -> FastAPI:
    """Lifespan dependency: the ``FastAPI`` application itself."""
    return request.app


def _lifespan_request(app: FastAPI) -> Request:
    """A synthetic request so FastAPI's resolver can run outside HTTP."""
    return Request(
        scope={
            "type": "http",
            "http_version": "1.1",
            "method": "GET",
            "scheme": "http",
            "path": "/",
            "raw_path": b"/",
            "query_string": b"",
            "root_path": "",
            "headers": ((b"x-request-scope", b"lifespan"),),
            "client": ("localhost", 80),
            "server": ("localhost", 80),
            "state": app.state,
            "app": app,
        }
    )


def inject(
    lifespan: Callable[..., Any],
) -> Callable[[FastAPI], Any]:
    """Resolve the ``Depends()`` parameters of *lifespan* at startup."""

    @asynccontextmanager
    async def wrapper(app: FastAPI):  # type: ignore[misc]
        dependant = get_dependant(path="/", call=partial(lifespan, app))

        async with AsyncExitStack() as stack:
            solved = await solve_dependencies(
                request=_lifespan_request(app),
                dependant=dependant,
                async_exit_stack=stack,
                embed_body_fields=False,
                dependency_overrides_provider=app,
            )
            async with asynccontextmanager(lifespan)(app, **solved.values):
                yield

    return wrapper
