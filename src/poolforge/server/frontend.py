"""HTTP front end: accepts connections and hands them to the Dispatcher."""

from __future__ import annotations

import math
from typing import TYPE_CHECKING

from aiohttp import web

from poolforge._internal.errors import BindFailure, NoCapacity, RequestFailed, WorkerCrash
from poolforge._internal.logging import get_logger

if TYPE_CHECKING:
    from poolforge.engine.supervisor import Supervisor

logger = get_logger("server.frontend")

SUPERVISOR_KEY: web.AppKey[Supervisor] = web.AppKey("supervisor")


async def _forward(request: web.Request) -> web.Response:
    """Forward the request body to a worker and relay its response."""
    supervisor = request.app[SUPERVISOR_KEY]
    body = await request.read()
    try:
        payload = await supervisor.dispatch(body)
    except NoCapacity as exc:
        return web.Response(
            status=503,
            text=f"{exc}\n",
            headers={"Retry-After": str(max(1, math.ceil(exc.retry_after)))},
        )
    except WorkerCrash as exc:
        return web.Response(status=502, text=f"{exc}\n")
    except RequestFailed as exc:
        return web.Response(status=500, text=f"{exc}\n")
    except TimeoutError:
        return web.Response(status=504, text="worker did not respond in time\n")
    return web.Response(body=payload)


def create_frontend_app(supervisor: Supervisor) -> web.Application:
    """Build the aiohttp app that routes every path to the worker pool."""
    app = web.Application(client_max_size=16 * 1024 * 1024)
    app[SUPERVISOR_KEY] = supervisor
    app.router.add_route("*", "/{path:.*}", _forward)
    return app


class FrontendServer:
    """Owns the listening endpoint shared by every worker.

    Only the supervisor process binds the socket; workers receive work
    through the Dispatcher, so a worker restart never drops the listener.
    """

    def __init__(self, supervisor: Supervisor, host: str, port: int) -> None:
        self.host = host
        self.port = port
        self._app = create_frontend_app(supervisor)
        self._runner: web.AppRunner | None = None

    @property
    def url(self) -> str:
        return f"http://{self.host}:{self.port}"

    async def start(self) -> None:
        """Bind the endpoint and start accepting connections.

        Raises:
            BindFailure: If the address cannot be bound.
        """
        self._runner = web.AppRunner(self._app, access_log=None)
        await self._runner.setup()
        site = web.TCPSite(self._runner, self.host, self.port)
        try:
            await site.start()
        except OSError as exc:
            await self._runner.cleanup()
            self._runner = None
            msg = f"Cannot bind {self.host}:{self.port}: {exc.strerror or exc}"
            raise BindFailure(msg) from exc
        logger.info("Listening on %s", self.url)

    async def close(self) -> None:
        if self._runner is not None:
            await self._runner.cleanup()
            self._runner = None
            logger.info("Front end closed")
