"""
AIGate - API Server

FastAPI surface for the AI request gating pipeline.

Supports three modes:
- MODE=prod: PostgreSQL-backed stores, Bearer session identity only
- MODE=local: in-memory stores seeded with demo accounts, X-User-Id accepted
- MODE=test: in-memory stores, X-User-Id accepted

Endpoints:
- POST /v1/ai/{operation}       run one gated AI operation
- GET  /v1/usage/me             caller's usage statistics
- GET  /v1/admin/audit/export   compliance export
- GET  /v1/admin/usage          system usage statistics
- GET  /health, /health/tokens, /metrics
"""

import dataclasses
import hmac
import os
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, Optional

from fastapi import Depends, FastAPI, Header, HTTPException, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field

from . import __version__
from .context.provider import ContextProvider, new_request_id
from .core.config import (
    get_admin_token,
    get_gate_mode,
    get_secret_store_kind,
    is_local_mode,
    is_prod_mode,
    is_test_mode,
    validate_runtime_config,
)
from .core.errors import (
    ErrorCode,
    GateException,
    InvalidSessionError,
    RateLimitExceededError,
)
from .core.models import Identity, RequestContext, RequestMeta, utcnow
from .db.base import AccountStore, AuditSink, SecretStore
from .db.connection import DatabasePool, apply_schema, close_db, init_db
from .db.memory import InMemoryAccountStore, InMemoryAuditSink
from .db.models import AccountRecord
from .db.services import PostgresAccountStore, PostgresAuditSink, PostgresSecretStore
from .observability.logging import LogContext, get_logger
from .observability.metrics import MetricsCollector, get_metrics, metrics_endpoint
from .observability.tracing import setup_tracing
from .providers.registry import create_provider_client
from .security.assessor import SecurityAssessor
from .services.factory import ServiceFactory
from .subscription.manager import SubscriptionManager
from .tokens.manager import ClientFactory, TokenManager
from .tokens.secrets import EnvSecretStore
from .usage.tracker import UsageTracker

logger = get_logger(__name__)

# HTTP status for each failed ServiceResult error code
ERROR_STATUS: Dict[str, int] = {
    ErrorCode.ACCESS_DENIED.value: 403,
    ErrorCode.PLAN_LIMIT_EXCEEDED.value: 403,
    ErrorCode.CREDIT_DEDUCTION_FAILED.value: 402,
    ErrorCode.DUPLICATE_REQUEST.value: 409,
    ErrorCode.INVALID_INPUT.value: 400,
    ErrorCode.NO_PROVIDER_FOR_MODEL.value: 503,
    ErrorCode.INVALID_TOKEN_FORMAT.value: 503,
    ErrorCode.OPERATION_FAILED.value: 502,
}

LOCAL_DEMO_ACCOUNTS = (
    AccountRecord(user_id="demo-free", plan="FREE", credits_limit=5),
    AccountRecord(user_id="demo-basic", plan="BASIC", credits_limit=50),
    AccountRecord(user_id="demo-premium", plan="PREMIUM", credits_limit=200),
    AccountRecord(user_id="demo-enterprise", plan="ENTERPRISE", credits_limit=500),
)


# ============================================================
# Pipeline wiring
# ============================================================

@dataclass
class Pipeline:
    """Every collaborator one application instance owns."""
    account_store: AccountStore
    audit_sink: AuditSink
    secret_store: SecretStore
    subscription_manager: SubscriptionManager
    security_assessor: SecurityAssessor
    context_provider: ContextProvider
    token_manager: TokenManager
    usage_tracker: UsageTracker
    service_factory: ServiceFactory
    metrics: MetricsCollector
    db: Optional[DatabasePool] = None


def build_pipeline(
    account_store: AccountStore,
    audit_sink: AuditSink,
    secret_store: SecretStore,
    metrics: Optional[MetricsCollector] = None,
    client_factory: ClientFactory = create_provider_client,
    security_assessor: Optional[SecurityAssessor] = None,
    db: Optional[DatabasePool] = None,
) -> Pipeline:
    """Wire the pipeline components around the given stores."""
    metrics = metrics or get_metrics()
    subscription_manager = SubscriptionManager(account_store, metrics=metrics)
    security_assessor = security_assessor or SecurityAssessor()
    token_manager = TokenManager(secret_store, client_factory=client_factory, metrics=metrics)
    usage_tracker = UsageTracker(audit_sink, metrics=metrics)

    return Pipeline(
        account_store=account_store,
        audit_sink=audit_sink,
        secret_store=secret_store,
        subscription_manager=subscription_manager,
        security_assessor=security_assessor,
        context_provider=ContextProvider(
            subscription_manager, security_assessor, account_store, metrics=metrics
        ),
        token_manager=token_manager,
        usage_tracker=usage_tracker,
        service_factory=ServiceFactory(
            subscription_manager, token_manager, usage_tracker, metrics=metrics
        ),
        metrics=metrics,
        db=db,
    )


async def build_pipeline_from_env() -> Pipeline:
    """PostgreSQL stores when DATABASE_URL is set (always in prod), in-memory otherwise."""
    if is_prod_mode() or os.getenv("DATABASE_URL"):
        db = await init_db(os.getenv("DATABASE_URL"))
        await apply_schema(db)
        secret_store: SecretStore = (
            PostgresSecretStore(db) if get_secret_store_kind() == "database" else EnvSecretStore()
        )
        logger.info("Database connected")
        return build_pipeline(
            PostgresAccountStore(db),
            PostgresAuditSink(db),
            secret_store,
            db=db,
        )

    account_store = InMemoryAccountStore()
    if is_local_mode():
        for account in LOCAL_DEMO_ACCOUNTS:
            account_store.add_account(dataclasses.replace(account, feature_overrides={}))
        logger.info(
            "Seeded local demo accounts",
            users=[a.user_id for a in LOCAL_DEMO_ACCOUNTS],
        )
    return build_pipeline(account_store, InMemoryAuditSink(), EnvSecretStore())


# ============================================================
# Request models
# ============================================================

class OperationParams(BaseModel):
    """Body of POST /v1/ai/{operation}. Which fields apply depends on the operation."""
    model_config = ConfigDict(extra="forbid")

    topic: Optional[str] = None
    transcript: Optional[str] = None
    text: Optional[str] = None
    count: Optional[int] = None
    difficulty: Optional[str] = None
    language: Optional[str] = None
    timeout: Optional[float] = Field(default=None, gt=0, le=300)


# ============================================================
# Dependencies
# ============================================================

def get_pipeline(request: Request) -> Pipeline:
    return request.app.state.pipeline


def request_meta_from(request: Request) -> RequestMeta:
    headers = dict(request.headers)
    return RequestMeta(
        ip=request.client.host if request.client else None,
        user_agent=headers.get("user-agent"),
        method=request.method,
        headers=headers,
        source="api",
        correlation_id=headers.get("x-correlation-id"),
        request_id=getattr(request.state, "request_id", None),
    )


async def resolve_identity(
    pipeline: Pipeline = Depends(get_pipeline),
    authorization: Optional[str] = Header(default=None),
    x_user_id: Optional[str] = Header(default=None),
) -> Optional[Identity]:
    """
    Identity of the caller, or None for anonymous requests.

    Bearer session tokens are resolved through the account store. The
    X-User-Id header is trusted only in local and test mode.
    """
    if authorization:
        scheme, _, token = authorization.partition(" ")
        if scheme.lower() != "bearer" or not token.strip():
            raise InvalidSessionError("Malformed Authorization header. Use: Bearer <session>")
        identity = await pipeline.account_store.resolve_session(token.strip())
        if identity is None:
            raise InvalidSessionError()
        return identity

    if x_user_id and (is_local_mode() or is_test_mode()):
        return Identity(user_id=x_user_id.strip(), session_id="header")
    return None


async def require_identity(identity: Optional[Identity] = Depends(resolve_identity)) -> Identity:
    if identity is None:
        raise InvalidSessionError("Authentication required")
    return identity


async def require_admin(x_admin_token: Optional[str] = Header(default=None)) -> None:
    if not is_prod_mode():
        return
    expected = get_admin_token()
    if not expected or not x_admin_token or not hmac.compare_digest(expected, x_admin_token):
        raise HTTPException(status_code=403, detail="Admin token required")


async def build_context(
    request: Request,
    pipeline: Pipeline,
    identity: Optional[Identity],
) -> RequestContext:
    meta = request_meta_from(request)
    if identity is None:
        return await pipeline.context_provider.create_anonymous_context(meta)
    return await pipeline.context_provider.create_context(identity, meta)


# ============================================================
# Application
# ============================================================

def create_app(pipeline: Optional[Pipeline] = None) -> FastAPI:
    """
    Build the FastAPI application.

    A prebuilt pipeline (tests) is used as-is; otherwise one is built from
    the environment at startup.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        validate_runtime_config()
        tracing = setup_tracing(service_version=__version__)

        active = pipeline or await build_pipeline_from_env()
        app.state.pipeline = active
        active.usage_tracker.start()
        active.token_manager.start_rotation_sweep()
        logger.info("AIGate server ready", mode=get_gate_mode().value)

        yield

        await active.token_manager.stop_rotation_sweep()
        await active.usage_tracker.stop(flush=True)
        logger.info("Audit queue flushed and stopped")
        if active.db is not None:
            await close_db()
        tracing.shutdown()
        logger.info("AIGate server stopped")

    app = FastAPI(
        title="AIGate",
        description="Gated access to AI content generation",
        version=__version__,
        lifespan=lifespan,
    )
    if pipeline is not None:
        app.state.pipeline = pipeline

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.middleware("http")
    async def request_context_middleware(request: Request, call_next):
        request_id = request.headers.get("x-request-id") or new_request_id()
        request.state.request_id = request_id
        LogContext.set_current(LogContext(
            request_id=request_id,
            correlation_id=request.headers.get("x-correlation-id") or request_id,
        ))
        try:
            response = await call_next(request)
        finally:
            LogContext.clear()
        response.headers["X-Request-Id"] = request_id
        return response

    _register_routes(app)
    _register_error_handlers(app)
    return app


def _register_routes(app: FastAPI) -> None:

    @app.post("/v1/ai/{operation}")
    async def run_operation(
        operation: str,
        body: OperationParams,
        request: Request,
        pipeline: Pipeline = Depends(get_pipeline),
        identity: Optional[Identity] = Depends(resolve_identity),
    ):
        """Run one AI operation through the gate-and-debit protocol."""
        context = await build_context(request, pipeline, identity)
        current = LogContext.get_current()
        if current is not None:
            current.update(user_id=context.user_id, operation=operation)

        if context.is_authenticated:
            limit = await pipeline.subscription_manager.check_rate_limit(
                context.user_id, operation, context.permissions
            )
            if not limit.allowed:
                retry_after = max(1, int((limit.reset_time - utcnow()).total_seconds()))
                raise RateLimitExceededError(limit.remaining, retry_after, context.request.id)

        service = pipeline.service_factory.create_service(context)
        result = await service.execute(operation, body.model_dump(exclude_none=True))

        status = 200 if result.success else ERROR_STATUS.get(result.error_code, 400)
        return JSONResponse(status_code=status, content=result.to_dict())

    @app.get("/v1/usage/me")
    async def my_usage(
        request: Request,
        timeframe: str = Query(default="month"),
        pipeline: Pipeline = Depends(get_pipeline),
        identity: Identity = Depends(require_identity),
    ):
        """Usage statistics and current credit balance for the caller."""
        subscription = await pipeline.subscription_manager.load_subscription(
            identity.user_id, getattr(request.state, "request_id", "")
        )
        try:
            stats = await pipeline.usage_tracker.get_user_usage_stats(identity.user_id, timeframe)
        except ValueError as e:
            raise HTTPException(status_code=400, detail=str(e))

        stats["subscription"] = {
            "plan": subscription.plan.value,
            "is_active": subscription.is_active,
            "credits": {
                "available": subscription.credits.available,
                "used": subscription.credits.used,
                "limit": subscription.credits.limit,
            },
        }
        return stats

    @app.get("/v1/admin/audit/export", dependencies=[Depends(require_admin)])
    async def export_audit(
        start: datetime,
        end: datetime,
        user_id: Optional[str] = None,
        operation: Optional[str] = None,
        success: Optional[bool] = None,
        pipeline: Pipeline = Depends(get_pipeline),
    ):
        """Audit entries in [start, end] for compliance export."""
        filters: Dict[str, Any] = {
            key: value
            for key, value in (("user_id", user_id), ("operation", operation), ("success", success))
            if value is not None
        }
        try:
            entries = await pipeline.usage_tracker.export_audit_data(start, end, filters)
        except ValueError as e:
            raise HTTPException(status_code=400, detail=str(e))
        return {"object": "list", "count": len(entries), "data": entries}

    @app.get("/v1/admin/usage", dependencies=[Depends(require_admin)])
    async def system_usage(
        timeframe: str = Query(default="day"),
        pipeline: Pipeline = Depends(get_pipeline),
    ):
        try:
            return await pipeline.usage_tracker.get_system_usage_stats(timeframe)
        except ValueError as e:
            raise HTTPException(status_code=400, detail=str(e))

    @app.get("/health")
    async def health_check(pipeline: Pipeline = Depends(get_pipeline)):
        """Health check endpoint."""
        return {
            "status": "healthy",
            "version": __version__,
            "mode": get_gate_mode().value,
            "audit": {
                "worker_running": pipeline.usage_tracker.is_running,
                "queue_depth": pipeline.usage_tracker.queue_depth,
                "dropped": pipeline.usage_tracker.dropped,
            },
        }

    @app.get("/health/tokens")
    async def token_health(pipeline: Pipeline = Depends(get_pipeline)):
        """Per-provider credential status."""
        providers = await pipeline.token_manager.get_token_health()
        statuses = {entry["status"] for entry in providers.values()}
        if statuses == {"error"}:
            overall = "unhealthy"
        elif statuses <= {"healthy"}:
            overall = "healthy"
        else:
            overall = "degraded"
        return {"status": overall, "providers": providers}

    @app.get("/metrics")
    async def prometheus_metrics(pipeline: Pipeline = Depends(get_pipeline)):
        """Prometheus metrics endpoint."""
        return metrics_endpoint(pipeline.metrics)


def _register_error_handlers(app: FastAPI) -> None:

    @app.exception_handler(GateException)
    async def gate_exception_handler(request: Request, exc: GateException):
        """Handle all canonical AIGate errors."""
        request_id = exc.error.request_id or getattr(request.state, "request_id", "")
        exc.error.request_id = request_id
        headers = {
            "X-Request-Id": request_id,
            "X-Error-Type": exc.error.type.value,
            "X-Error-Code": exc.error.code,
        }
        if exc.error.retry_after:
            headers["Retry-After"] = str(exc.error.retry_after)
        if exc.error.provider:
            headers["X-Provider"] = exc.error.provider

        return JSONResponse(
            status_code=exc.status_code,
            content=exc.error.to_dict(),
            headers=headers,
        )

    @app.exception_handler(HTTPException)
    async def http_exception_handler(request: Request, exc: HTTPException):
        """Handle standard HTTP exceptions."""
        request_id = getattr(request.state, "request_id", "") or new_request_id()
        return JSONResponse(
            status_code=exc.status_code,
            content={
                "error": {
                    "code": "http_error",
                    "message": str(exc.detail),
                    "type": "semantic_error" if exc.status_code < 500 else "infra_error",
                    "request_id": request_id,
                    "retryable": exc.status_code >= 500,
                }
            },
            headers={"X-Request-Id": request_id},
        )

    @app.exception_handler(Exception)
    async def general_exception_handler(request: Request, exc: Exception):
        """Handle unexpected exceptions."""
        request_id = getattr(request.state, "request_id", "") or new_request_id()
        logger.exception("Unhandled error", request_id=request_id, path=request.url.path)
        return JSONResponse(
            status_code=500,
            content={
                "error": {
                    "code": "internal_error",
                    "message": "An unexpected error occurred",
                    "type": "infra_error",
                    "request_id": request_id,
                    "retryable": True,
                }
            },
            headers={"X-Request-Id": request_id},
        )


app = create_app()


# ============================================================
# Run server
# ============================================================

if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "aigate.server:app",
        host="0.0.0.0",
        port=8000,
        reload=True,
    )
