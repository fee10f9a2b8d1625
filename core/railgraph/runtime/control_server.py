"""
Control Server - HTTP surface for starting and steering runs.

Uses aiohttp so it shares the orchestrator's asyncio loop. Every handler is
a thin translation from HTTP to an orchestrator call; the orchestrator stays
the single owner of run state.

Routes:
    POST /runs                                   start a run
    GET  /runs                                   list known run ids
    GET  /runs/{run_id}                          status view
    POST /runs/{run_id}/{pause|resume|cancel}    lifecycle control
    GET  /runs/{run_id}/human                    pending provider turn
    POST /runs/{run_id}/human                    submit or reject it
    POST /runs/{run_id}/approvals/{request_id}   approval decision
"""

import hmac
import json
import logging
import os
from dataclasses import dataclass, field

from aiohttp import web
from pydantic import ValidationError

from railgraph.errors import GraphValidationError, RunNotFoundError, RunStateError
from railgraph.runtime.orchestrator import RunOrchestrator

logger = logging.getLogger(__name__)

TOKEN_HEADER = "X-Railgraph-Token"


@dataclass
class ControlServerConfig:
    host: str = "127.0.0.1"
    port: int = 8765
    token: str | None = field(default_factory=lambda: os.environ.get("RAILGRAPH_CONTROL_TOKEN"))


def _error(message: str, status: int, **extra) -> web.Response:
    return web.json_response({"error": message, **extra}, status=status)


class ControlServer:
    """
    Embedded HTTP server in front of a RunOrchestrator.

    Lifecycle:
        server = ControlServer(orchestrator, ControlServerConfig(port=0))
        await server.start()
        # ... server running ...
        await server.stop()
    """

    def __init__(self, orchestrator: RunOrchestrator, config: ControlServerConfig | None = None):
        self._orchestrator = orchestrator
        self._config = config or ControlServerConfig()
        self._app: web.Application | None = None
        self._runner: web.AppRunner | None = None
        self._site: web.TCPSite | None = None

    def build_app(self) -> web.Application:
        app = web.Application(middlewares=[self._auth_middleware])
        app.router.add_post("/runs", self._start_run)
        app.router.add_get("/runs", self._list_runs)
        app.router.add_get("/runs/{run_id}", self._get_run)
        app.router.add_post("/runs/{run_id}/pause", self._pause)
        app.router.add_post("/runs/{run_id}/resume", self._resume)
        app.router.add_post("/runs/{run_id}/cancel", self._cancel)
        app.router.add_get("/runs/{run_id}/human", self._get_human)
        app.router.add_post("/runs/{run_id}/human", self._post_human)
        app.router.add_post("/runs/{run_id}/approvals/{request_id}", self._decide_approval)
        return app

    async def start(self) -> None:
        self._app = self.build_app()
        self._runner = web.AppRunner(self._app)
        await self._runner.setup()
        self._site = web.TCPSite(self._runner, self._config.host, self._config.port)
        await self._site.start()
        logger.info(f"Control server listening on {self._config.host}:{self.port}")

    async def stop(self) -> None:
        if self._runner:
            await self._runner.cleanup()
            self._runner = None
            self._app = None
            self._site = None
            logger.info("Control server stopped")

    @property
    def is_running(self) -> bool:
        return self._site is not None

    @property
    def port(self) -> int | None:
        """Actual listening port (useful when configured with port=0)."""
        if self._site and self._site._server and self._site._server.sockets:
            return self._site._server.sockets[0].getsockname()[1]
        return None

    # === HANDLERS ===

    @web.middleware
    async def _auth_middleware(self, request: web.Request, handler):
        expected = self._config.token
        if expected:
            supplied = request.headers.get(TOKEN_HEADER, "")
            if not hmac.compare_digest(supplied.encode("utf-8"), expected.encode("utf-8")):
                return _error("Invalid token", 401)
        try:
            return await handler(request)
        except RunNotFoundError as e:
            return _error(str(e), 404)
        except RunStateError as e:
            return _error(str(e), 409)

    async def _read_json(self, request: web.Request) -> dict:
        body = await request.read()
        if not body:
            return {}
        try:
            payload = json.loads(body)
        except (json.JSONDecodeError, ValueError) as e:
            raise web.HTTPBadRequest(
                text=json.dumps({"error": f"invalid JSON body: {e}"}),
                content_type="application/json",
            ) from e
        if not isinstance(payload, dict):
            raise web.HTTPBadRequest(
                text=json.dumps({"error": "body must be a JSON object"}),
                content_type="application/json",
            )
        return payload

    async def _start_run(self, request: web.Request) -> web.Response:
        payload = await self._read_json(request)
        question = str(payload.get("question") or "").strip()
        if not question:
            return _error("question is required", 400)
        try:
            run_id = await self._orchestrator.start(
                payload.get("graph") or {}, question, run_id=payload.get("run_id")
            )
        except GraphValidationError as e:
            return _error("invalid graph", 400, errors=e.errors)
        except ValidationError as e:
            return _error("invalid graph", 400, errors=[err["msg"] for err in e.errors()])
        return web.json_response({"run_id": run_id}, status=202)

    async def _list_runs(self, request: web.Request) -> web.Response:
        active = self._orchestrator.list_runs()
        stored = await self._orchestrator.store.list_runs() if self._orchestrator.store else []
        return web.json_response({"active": active, "stored": stored})

    async def _get_run(self, request: web.Request) -> web.Response:
        run_id = request.match_info["run_id"]
        if run_id in self._orchestrator.list_runs():
            view = self._orchestrator.status(run_id)
            return web.json_response(view.model_dump(mode="json"))
        record = await self._orchestrator.get_record(run_id)
        return web.json_response(record.model_dump(mode="json"))

    async def _pause(self, request: web.Request) -> web.Response:
        run_id = request.match_info["run_id"]
        await self._orchestrator.pause(run_id)
        return web.json_response({"status": "paused"})

    async def _resume(self, request: web.Request) -> web.Response:
        run_id = request.match_info["run_id"]
        await self._orchestrator.resume(run_id)
        return web.json_response({"status": "running"})

    async def _cancel(self, request: web.Request) -> web.Response:
        run_id = request.match_info["run_id"]
        await self._orchestrator.cancel(run_id)
        return web.json_response({"status": "cancelling"}, status=202)

    async def _get_human(self, request: web.Request) -> web.Response:
        queue = self._orchestrator.get_human_queue(request.match_info["run_id"])
        pending = queue.pending
        if pending is None:
            return web.Response(status=204)
        return web.json_response(pending.to_dict())

    async def _post_human(self, request: web.Request) -> web.Response:
        run_id = request.match_info["run_id"]
        payload = await self._read_json(request)
        ticket_id = payload.get("ticket_id")

        if payload.get("error"):
            resolved = self._orchestrator.reject_human_response(
                run_id, str(payload["error"]), ticket_id
            )
            if not resolved:
                return _error("no pending human request", 409)
            return web.json_response({"status": "rejected"})

        text = payload.get("text")
        if text is None:
            return _error("text or error is required", 400)
        result = self._orchestrator.submit_human_response(run_id, str(text), ticket_id)
        if not result.ok:
            return _error(result.error or "submission rejected", 409)
        return web.json_response({"status": "submitted"})

    async def _decide_approval(self, request: web.Request) -> web.Response:
        run_id = request.match_info["run_id"]
        request_id = request.match_info["request_id"]
        payload = await self._read_json(request)
        decision = payload.get("decision")
        if not decision:
            return _error("decision is required", 400)
        try:
            updated = self._orchestrator.decide_approval(run_id, request_id, decision)
        except KeyError:
            return _error(f"approval request not found: {request_id}", 404)
        except ValueError as e:
            return _error(str(e), 400)
        return web.json_response(updated.model_dump(mode="json"))
