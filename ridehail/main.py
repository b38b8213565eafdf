import time

from fastapi import FastAPI, Response
from fastapi.middleware.cors import CORSMiddleware
from prometheus_client import Counter, Histogram, generate_latest, CONTENT_TYPE_LATEST
from sqlalchemy import text

from .config import settings
from .database import engine
from .errors import install_error_handlers
from .middleware_request_id import RequestIDMiddleware, setup_logging
from .models import Base
from .routers import driver as driver_router
from .routers import rides as rides_router


REQ = Counter("http_requests_total", "HTTP requests", ["method", "path", "status"])
REQ_DURATION = Histogram(
    "http_request_duration_seconds",
    "HTTP request duration in seconds",
    ["method", "path"],
    buckets=(0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1, 2.5, 5, 10),
)


def create_app() -> FastAPI:
    setup_logging(settings.LOG_LEVEL)
    app = FastAPI(title="Ride Lifecycle API", version="0.1.0")

    allowed_origins = settings.ALLOWED_ORIGINS or ["*"]
    app.add_middleware(
        CORSMiddleware,
        allow_origins=allowed_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # Request ID + JSON logs
    app.add_middleware(RequestIDMiddleware)

    install_error_handlers(app)

    if settings.AUTO_CREATE_SCHEMA:
        Base.metadata.create_all(bind=engine)

    @app.get("/health")
    def health():
        with engine.connect() as conn:
            conn.execute(text("select 1"))
        return {"status": "ok", "env": settings.ENV}

    @app.middleware("http")
    async def _metrics_mw(request, call_next):
        start = time.perf_counter()
        response = await call_next(request)
        duration = time.perf_counter() - start
        route = getattr(request.scope.get("route"), "path", None) or request.url.path
        REQ.labels(request.method, route, str(response.status_code)).inc()
        REQ_DURATION.labels(request.method, route).observe(duration)
        return response

    @app.get("/metrics")
    def metrics():
        return Response(generate_latest(), media_type=CONTENT_TYPE_LATEST)

    app.include_router(driver_router.router)
    app.include_router(rides_router.router)
    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run("ridehail.main:app", host=settings.APP_HOST, port=settings.APP_PORT)
