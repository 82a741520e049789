from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse, Response

from orderflow.config import settings
from orderflow.db import PostgresOrderStore, close_pool, get_pool, init_schema
from orderflow.errors import OrderFlowError
from orderflow.metrics import get_metrics_bytes, get_metrics_content_type
from orderflow.provider_client import HttpProviderClient
from orderflow.queue import push_reconcile_request
from orderflow.redis_client import close_redis, get_redis
from orderflow.routes import admin, orders, payments
from orderflow.services import Services, build_services


@asynccontextmanager
async def lifespan(app: FastAPI):
    if getattr(app.state, "services", None) is not None:
        # pre-wired (tests)
        yield
        return
    pool = await get_pool()
    await init_schema(pool)
    await get_redis()
    provider = HttpProviderClient()
    app.state.services = build_services(
        PostgresOrderStore(pool),
        provider,
        push_reconcile_request,
        settings.provider_timeout_seconds,
    )
    yield
    await provider.aclose()
    await close_redis()
    await close_pool()


async def orderflow_error_handler(request: Request, exc: OrderFlowError) -> JSONResponse:
    return JSONResponse(
        status_code=exc.status_code,
        content={"detail": exc.code, "message": str(exc)},
    )


def create_app(services: Services | None = None) -> FastAPI:
    app = FastAPI(title="Order Lifecycle Service", lifespan=lifespan)
    app.state.services = services
    app.add_exception_handler(OrderFlowError, orderflow_error_handler)
    app.include_router(orders.router)
    app.include_router(payments.router)
    app.include_router(admin.router)

    @app.get("/health")
    async def health() -> dict:
        return {"status": "ok"}

    @app.get("/metrics")
    async def metrics() -> Response:
        """Prometheus scrape endpoint: transitions, reconciliations, webhook intake."""
        return Response(
            content=get_metrics_bytes(),
            media_type=get_metrics_content_type(),
        )

    return app


app = create_app()
