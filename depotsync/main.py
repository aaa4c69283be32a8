import logging
import threading
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.gzip import GZipMiddleware
from fastapi.responses import Response
from sqlalchemy.exc import OperationalError

from .core.config import CORS_ORIGINS, DEPOT_SCHEDULER_ENABLED, LOG_LEVEL
from .db import Base, SessionLocal, engine
from .migrations import ensure_schema
from .routes import depots
from .services.container import build_services
from .websocket import depot_progress_socket

logging.basicConfig(
    level=LOG_LEVEL,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)

app = FastAPI(title="Depot Sync API", version="0.1.0")

_BASE_SCHEMA_LOCK = threading.Lock()
_BASE_SCHEMA_READY = False


def _ensure_base_schema() -> None:
    global _BASE_SCHEMA_READY
    if _BASE_SCHEMA_READY:
        return
    with _BASE_SCHEMA_LOCK:
        if _BASE_SCHEMA_READY:
            return
        try:
            Base.metadata.create_all(bind=engine)
        except OperationalError as exc:
            # The ingestion process may create the shared tables at the same time.
            if "already exists" not in str(exc).lower():
                raise
        _BASE_SCHEMA_READY = True


app.add_middleware(
    CORSMiddleware,
    allow_origins=CORS_ORIGINS,
    allow_origin_regex=r"^https?://(localhost|127\.0\.0\.1)(:\d+)?$",
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)
app.add_middleware(GZipMiddleware, minimum_size=1000)


@app.on_event("startup")
def on_startup() -> None:
    _ensure_base_schema()
    ensure_schema(engine)
    services = build_services(SessionLocal)
    app.state.depot_services = services
    if DEPOT_SCHEDULER_ENABLED:
        services.scheduler.start()
    logger.info(
        "Depot sync ready (%s mappings, last change number %s)",
        services.store.count(),
        services.store.get_last_change_number(),
    )


@app.on_event("shutdown")
def on_shutdown() -> None:
    services = getattr(app.state, "depot_services", None)
    if services is None:
        return
    services.scheduler.stop()
    if services.controller.cancel():
        services.controller.wait_idle(timeout=10.0)


@app.get("/health")
def health_check():
    return {"status": "ok"}


@app.head("/health")
def health_check_head():
    return Response(status_code=200)


app.include_router(depots.router, prefix="/api/depots", tags=["depots"])
app.add_api_websocket_route("/ws/depots", depot_progress_socket)
