"""Control endpoint (server side) and the client the CLI uses to reach it."""

from __future__ import annotations

import json
from typing import TYPE_CHECKING, Any

import aiohttp
from aiohttp import web

from poolforge._internal.errors import BindFailure, ControlError
from poolforge._internal.logging import get_logger
from poolforge.engine.commands import Restart, Scale, Start

if TYPE_CHECKING:
    from poolforge.engine.commands import CommandResult
    from poolforge.engine.supervisor import Supervisor

logger = get_logger("server.control")

SUPERVISOR_KEY: web.AppKey[Supervisor] = web.AppKey("control_supervisor")


def _result_response(result: CommandResult, **extra: Any) -> web.Response:
    status = 200 if result.ok else 400
    return web.json_response({**result.to_dict(), **extra}, status=status)


async def _status(request: web.Request) -> web.Response:
    supervisor = request.app[SUPERVISOR_KEY]
    return web.json_response(supervisor.status().to_dict())


async def _start(request: web.Request) -> web.Response:
    result = await request.app[SUPERVISOR_KEY].submit(Start())
    return _result_response(result)


async def _restart(request: web.Request) -> web.Response:
    result = await request.app[SUPERVISOR_KEY].submit(Restart())
    return _result_response(result)


async def _stop(request: web.Request) -> web.Response:
    supervisor = request.app[SUPERVISOR_KEY]
    logger.info("Stop received on control endpoint")
    exit_code = await supervisor.stop()
    return web.json_response(
        {"ok": True, "message": "stopped", "deferred": False, "errors": [], "exit_code": exit_code}
    )


async def _scale(request: web.Request) -> web.Response:
    try:
        body = await request.json()
    except json.JSONDecodeError:
        return web.json_response({"ok": False, "message": "body must be JSON"}, status=400)

    workers = body.get("workers") if isinstance(body, dict) else None
    if not isinstance(workers, int) or isinstance(workers, bool):
        return web.json_response(
            {"ok": False, "message": "'workers' must be an integer"}, status=400
        )
    result = await request.app[SUPERVISOR_KEY].submit(Scale(workers))
    return _result_response(result)


def create_control_app(supervisor: Supervisor) -> web.Application:
    """Build the aiohttp app serving the operator commands."""
    app = web.Application()
    app[SUPERVISOR_KEY] = supervisor
    app.router.add_get("/status", _status)
    app.router.add_post("/start", _start)
    app.router.add_post("/stop", _stop)
    app.router.add_post("/restart", _restart)
    app.router.add_post("/scale", _scale)
    return app


class ControlServer:
    """Serves the control endpoint next to the front end."""

    def __init__(self, supervisor: Supervisor, host: str, port: int) -> None:
        self.host = host
        self.port = port
        self._app = create_control_app(supervisor)
        self._runner: web.AppRunner | None = None

    @property
    def url(self) -> str:
        return f"http://{self.host}:{self.port}"

    async def start(self) -> None:
        """Bind the control endpoint.

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
            msg = f"Cannot bind control endpoint {self.host}:{self.port}: {exc.strerror or exc}"
            raise BindFailure(msg) from exc
        logger.info("Control endpoint on %s", self.url)

    async def close(self) -> None:
        if self._runner is not None:
            await self._runner.cleanup()
            self._runner = None


class ControlClient:
    """Talks to a running supervisor's control endpoint.

    Usage::

        async with ControlClient("http://127.0.0.1:9101") as client:
            status = await client.status()
    """

    def __init__(self, base_url: str, timeout: float = 60.0) -> None:
        self.base_url = base_url.rstrip("/")
        self._timeout = aiohttp.ClientTimeout(total=timeout)
        self._session: aiohttp.ClientSession | None = None

    async def __aenter__(self) -> ControlClient:
        self._session = aiohttp.ClientSession(timeout=self._timeout)
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        if self._session is not None:
            await self._session.close()
            self._session = None

    async def status(self) -> dict[str, Any]:
        return await self._request("GET", "/status")

    async def start(self) -> dict[str, Any]:
        return await self._request("POST", "/start")

    async def stop(self) -> dict[str, Any]:
        return await self._request("POST", "/stop")

    async def restart(self) -> dict[str, Any]:
        return await self._request("POST", "/restart")

    async def scale(self, workers: int) -> dict[str, Any]:
        return await self._request("POST", "/scale", {"workers": workers})

    async def _request(
        self, method: str, path: str, body: dict[str, Any] | None = None
    ) -> dict[str, Any]:
        """Send one command and decode its JSON reply.

        Raises:
            ControlError: If the endpoint is unreachable, replies with
                something other than JSON, or rejects the command.
        """
        if self._session is None:
            msg = "ControlClient used outside 'async with'"
            raise ControlError(msg)

        url = f"{self.base_url}{path}"
        try:
            async with self._session.request(method, url, json=body) as response:
                try:
                    data = await response.json()
                except (aiohttp.ContentTypeError, json.JSONDecodeError) as exc:
                    msg = f"{method} {url} returned a non-JSON reply (HTTP {response.status})"
                    raise ControlError(msg) from exc
                if response.status >= 400:
                    msg = data.get("message") if isinstance(data, dict) else None
                    raise ControlError(msg or f"{method} {url} failed with HTTP {response.status}")
                return data  # type: ignore[no-any-return]
        except (aiohttp.ClientError, TimeoutError) as exc:
            msg = f"Cannot reach control endpoint at {self.base_url}: {exc}"
            raise ControlError(msg) from exc
