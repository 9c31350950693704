"""
REST Server

FastAPI surface over the change controller.

Identity is taken from the X-Actor-Id / X-Actor-Role headers set by the
upstream authentication layer; the engine only checks roles.
"""

from fastapi import Depends, FastAPI, Header, HTTPException, Query, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field
from contextlib import asynccontextmanager
import uvicorn
from typing import Any, Dict, List, Optional
from datetime import datetime, timezone
import asyncio
import threading
import time

from changegate import __version__
from changegate.controllers.change_controller import ChangeController
from changegate.errors import (
    ChangeGateError, ConflictError, EffectorError, NotFoundError,
    PermissionError, RollbackUnavailableError, ValidationError
)
from changegate.logging.logger import get_logger
from changegate.monitoring.metrics import (
    start_metrics_server,
    track_rest_error,
    track_rest_latency,
    track_rest_request
)


ERROR_STATUS = [
    (ValidationError, 422),
    (PermissionError, 403),
    (NotFoundError, 404),
    (ConflictError, 409),
    (RollbackUnavailableError, 409),
    (EffectorError, 502),
]


class Actor(BaseModel):
    actor_id: str
    role: Optional[str] = None


class ChangeRequest(BaseModel):
    kind: str
    payload: Dict[str, Any]
    scope_id: str
    environment_type: Optional[str] = None
    draft: bool = False


class VoteRequest(BaseModel):
    decision: str
    comments: Optional[str] = None
    step_index: Optional[int] = None


class ApplyRequest(BaseModel):
    executor_id: Optional[str] = None


class RollbackRequest(BaseModel):
    reason: str = Field(min_length=1)


class EnvironmentRequest(BaseModel):
    name: str
    env_type: str
    environment_id: Optional[str] = None


class PipelineRequest(BaseModel):
    name: str
    environments: List[str]
    auto_promote: bool = False
    requires_approval: bool = True
    gated_environments: Optional[List[str]] = None
    pipeline_id: Optional[str] = None


class RunRequest(BaseModel):
    payload: Dict[str, Any]


def get_actor(
    x_actor_id: Optional[str] = Header(None),
    x_actor_role: Optional[str] = Header(None)
) -> Actor:
    """Identity forwarded by the authentication layer"""
    if not x_actor_id:
        raise HTTPException(status_code=401, detail="X-Actor-Id header required")
    return Actor(actor_id=x_actor_id, role=x_actor_role)


class ChangeRESTServer:
    """
    FastAPI server exposing the change controller.
    """

    def __init__(
        self,
        controller: ChangeController,
        host: str = "127.0.0.1",
        port: int = 8080,
        enable_metrics: bool = False,
        metrics_port: int = 9090
    ):
        """
        Initialize REST server.

        Args:
            controller: Change controller serving the requests
            host: Host to bind to (default: localhost)
            port: Port to bind to
            enable_metrics: Start the Prometheus exporter
            metrics_port: Prometheus exporter port
        """
        self.controller = controller
        self.host = host
        self.port = port
        self.logger = get_logger(
            f"{__name__}.{controller.controller_id}", component_id=controller.controller_id
        )

        @asynccontextmanager
        async def lifespan(app: FastAPI):
            # Startup
            self.logger.info(f"REST server starting on {host}:{port}")
            yield
            # Shutdown
            self.logger.info("REST server shutting down")

        self.app = FastAPI(
            title="changegate API",
            description="Change approval and rollback engine",
            version=__version__,
            lifespan=lifespan
        )

        if enable_metrics:
            start_metrics_server(metrics_port)

        self._register_middlewares()
        self._register_error_handlers()
        self._register_core_routes()
        self._register_change_routes()
        self._register_audit_routes()
        self._register_pipeline_routes()

    def _register_middlewares(self):
        """Register HTTP middleware for metrics."""

        @self.app.middleware("http")
        async def metrics_middleware(request: Request, call_next):
            start_time = time.monotonic()
            method = request.method

            try:
                response = await call_next(request)
                track_rest_request(method, _route_path(request), str(response.status_code))
                return response
            except Exception as exc:
                track_rest_error(method, _route_path(request), type(exc).__name__)
                raise
            finally:
                duration = time.monotonic() - start_time
                track_rest_latency(method, _route_path(request), duration)

    def _register_error_handlers(self):
        """Map engine errors to HTTP status codes."""

        @self.app.exception_handler(ChangeGateError)
        async def change_gate_error_handler(request: Request, exc: ChangeGateError):
            status = 500
            for error_type, code in ERROR_STATUS:
                if isinstance(exc, error_type):
                    status = code
                    break

            content: Dict[str, Any] = {"error": type(exc).__name__, "detail": str(exc)}
            if isinstance(exc, ValidationError):
                content["errors"] = exc.errors

            if status >= 500:
                self.logger.error(f"{request.method} {request.url.path} failed: {exc}")
            else:
                self.logger.info(f"{request.method} {request.url.path} rejected ({status}): {exc}")

            return JSONResponse(status_code=status, content=content)

    def _register_core_routes(self):
        """Register core routes"""

        @self.app.get("/health")
        def health_check():
            """Health check endpoint"""
            return {
                "status": "healthy",
                "controller_id": self.controller.controller_id,
                "version": __version__,
                "timestamp": datetime.now(timezone.utc).isoformat()
            }

    def _register_change_routes(self):
        """Register change lifecycle routes"""
        controller = self.controller

        @self.app.post("/changes", status_code=201)
        def submit_change(body: ChangeRequest, actor: Actor = Depends(get_actor)):
            change = controller.submit_change(
                body.kind, body.payload, body.scope_id, actor.actor_id,
                environment_type=body.environment_type, draft=body.draft
            )
            return change.to_dict()

        @self.app.get("/changes/{change_id}")
        def get_change(change_id: str):
            change = controller.get_change(change_id)
            data = change.to_dict()
            data["current_step"] = controller.engine.current_step(change)
            return data

        @self.app.post("/changes/{change_id}/submit")
        def submit_draft(change_id: str, actor: Actor = Depends(get_actor)):
            return controller.submit_draft(change_id, actor.actor_id).to_dict()

        @self.app.post("/changes/{change_id}/votes")
        def cast_vote(change_id: str, body: VoteRequest, actor: Actor = Depends(get_actor)):
            if not actor.role:
                raise HTTPException(status_code=403, detail="X-Actor-Role header required to vote")
            change = controller.cast_vote(
                change_id, actor.actor_id, actor.role, body.decision,
                comments=body.comments, step_index=body.step_index
            )
            return change.to_dict()

        @self.app.get("/approvals/pending")
        def pending_approvals(
            scope_id: Optional[str] = None,
            role: Optional[str] = None,
            x_actor_role: Optional[str] = Header(None)
        ):
            # Without an explicit role, the caller's own queue
            changes = controller.pending_approvals(scope_id=scope_id, role=role or x_actor_role)
            return {
                "count": len(changes),
                "changes": [
                    dict(change.to_dict(), current_step=controller.engine.current_step(change))
                    for change in changes
                ]
            }

        @self.app.get("/changes/{change_id}/approvals")
        def list_approvals(change_id: str, history: bool = False):
            records = controller.list_approval_records(change_id, history=history)
            return {"change_id": change_id, "records": [r.to_dict() for r in records]}

        @self.app.get("/changes/{change_id}/history")
        def change_history(change_id: str):
            events = controller.get_change_history(change_id)
            return {"change_id": change_id, "events": [e.to_dict() for e in events]}

        @self.app.post("/changes/{change_id}/apply")
        def apply_change(
            change_id: str,
            body: Optional[ApplyRequest] = None,
            actor: Actor = Depends(get_actor)
        ):
            executor_id = (body.executor_id if body else None) or actor.actor_id
            result = controller.apply_change(change_id, executor_id)
            status = 200 if result.applied else 502
            return JSONResponse(status_code=status, content=result.to_dict())

        @self.app.post("/changes/{change_id}/withdraw")
        def withdraw_change(change_id: str, actor: Actor = Depends(get_actor)):
            return controller.withdraw_change(change_id, actor.actor_id).to_dict()

        @self.app.post("/changes/{change_id}/rollback")
        def rollback_change(change_id: str, body: RollbackRequest, actor: Actor = Depends(get_actor)):
            result = controller.rollback(change_id, actor.actor_id, body.reason)
            # A different change back means a rollback request awaiting approval
            status = 200 if result.change_id == change_id else 202
            return JSONResponse(status_code=status, content=result.to_dict())

    def _register_audit_routes(self):
        """Register audit log routes"""
        controller = self.controller

        @self.app.get("/audit")
        def list_audit_log(
            scope_id: Optional[str] = None,
            status: Optional[str] = None,
            kind: Optional[str] = None,
            author_id: Optional[str] = None,
            change_id: Optional[str] = None,
            event_type: Optional[str] = None,
            from_: Optional[datetime] = Query(None, alias="from"),
            to: Optional[datetime] = None,
            page: int = 1,
            page_size: int = 50
        ):
            filters = {
                'scope_id': scope_id,
                'status': status,
                'kind': kind,
                'author_id': author_id,
                'change_id': change_id,
                'event_type': event_type,
                'from': _aware(from_),
                'to': _aware(to)
            }
            return controller.list_audit_log(filters, page, page_size).to_dict()

        @self.app.get("/audit/report")
        def audit_report(
            from_: Optional[datetime] = Query(None, alias="from"),
            to: Optional[datetime] = None
        ):
            return controller.audit_report(_aware(from_), _aware(to))

    def _register_pipeline_routes(self):
        """Register environment, pipeline and run routes"""
        controller = self.controller

        @self.app.post("/environments", status_code=201)
        def create_environment(body: EnvironmentRequest, actor: Actor = Depends(get_actor)):
            environment = controller.create_environment(
                body.name, body.env_type, environment_id=body.environment_id
            )
            return environment.to_dict()

        @self.app.get("/environments")
        def list_environments():
            return {"environments": [e.to_dict() for e in controller.list_environments()]}

        @self.app.get("/environments/{environment_id}")
        def get_environment(environment_id: str):
            return controller.get_environment(environment_id).to_dict()

        @self.app.post("/pipelines", status_code=201)
        def create_pipeline(body: PipelineRequest, actor: Actor = Depends(get_actor)):
            pipeline = controller.create_pipeline(
                body.name, body.environments,
                auto_promote=body.auto_promote,
                requires_approval=body.requires_approval,
                gated_environments=body.gated_environments,
                pipeline_id=body.pipeline_id
            )
            return pipeline.to_dict()

        @self.app.get("/pipelines")
        def list_pipelines():
            return {"pipelines": [p.to_dict() for p in controller.list_pipelines()]}

        @self.app.get("/pipelines/{pipeline_id}")
        def get_pipeline(pipeline_id: str):
            return controller.get_pipeline(pipeline_id).to_dict()

        @self.app.post("/pipelines/{pipeline_id}/runs", status_code=201)
        def start_run(pipeline_id: str, body: RunRequest, actor: Actor = Depends(get_actor)):
            return controller.promote_pipeline(pipeline_id, body.payload, actor.actor_id).to_dict()

        @self.app.get("/runs/{run_id}")
        def get_run(run_id: str):
            return controller.get_pipeline_run(run_id).to_dict()

        @self.app.post("/runs/{run_id}/promote-next")
        def promote_next(run_id: str, actor: Actor = Depends(get_actor)):
            return controller.promote_next(run_id, actor.actor_id).to_dict()

    async def start(self):
        """Start the FastAPI server (async)"""
        config = uvicorn.Config(
            self.app,
            host=self.host,
            port=self.port,
            log_level="info",
            access_log=True
        )
        server = uvicorn.Server(config)

        self.logger.info(f"Starting REST server on http://{self.host}:{self.port}")
        await server.serve()

    def start_background(self):
        """Start the server in a background thread"""
        def run_server():
            asyncio.run(self.start())

        thread = threading.Thread(target=run_server, daemon=True)
        thread.start()

        self.logger.info(f"REST server started in background on port {self.port}")

        # Give server time to start
        time.sleep(1)

    def get_base_url(self) -> str:
        """Get the base URL for this server's API"""
        return f"http://{self.host}:{self.port}"


def _aware(value: Optional[datetime]) -> Optional[datetime]:
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def _route_path(request: Request) -> str:
    # Route template keeps metric label cardinality bounded
    route = request.scope.get("route")
    return getattr(route, "path", request.url.path)
