import logging

from fastapi import FastAPI
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from careflow.auth import router as auth_router
from careflow.config import configure_logging, settings
from careflow.cors import apply_cors
from careflow.database import AsyncSessionLocal, create_tables
from careflow.realtime import build_hub
from careflow.routers import assignments, conversations, patient_tasks, patients, protocols, providers, tenants
from careflow.scheduled_tasks import create_scheduler
from careflow.scheduling import TaskMaterializer
from careflow.web_socket import create_socket_app
from careflow.web_socket import router as websocket_router

configure_logging()
logger = logging.getLogger(__name__)

app = FastAPI(title="CareFlow Recovery API")

app.state.hub = None
app.state.scheduler = None
app.state.materializer = TaskMaterializer()

sio, socket_app, socket_gateway = create_socket_app(lambda: app.state.hub)
app.mount("/socket.io", socket_app, name="socketio")

apply_cors(app)
app.include_router(auth_router)
app.include_router(tenants.router)
app.include_router(providers.router)
app.include_router(patients.router)
app.include_router(protocols.router)
app.include_router(assignments.router)
app.include_router(patient_tasks.router)
app.include_router(conversations.router)
app.include_router(websocket_router)


@app.on_event("startup")
async def startup():
    logger.info("Starting up CareFlow Recovery API...")

    await create_tables()

    hub = build_hub(AsyncSessionLocal, typing_idle_seconds=settings.TYPING_IDLE_SECONDS)
    await hub.open()
    app.state.hub = hub

    if settings.SCHEDULER_ENABLED:
        scheduler = create_scheduler()
        scheduler.start()
        app.state.scheduler = scheduler
        logger.info("Recovery day scheduler started")

    logger.info("CareFlow Recovery API is ready")


@app.on_event("shutdown")
async def shutdown():
    if app.state.scheduler is not None:
        app.state.scheduler.shutdown(wait=False)
        app.state.scheduler = None
        logger.info("Scheduler stopped")

    if app.state.hub is not None:
        await app.state.hub.close()
        app.state.hub = None


@app.get("/health")
async def health():
    hub = app.state.hub
    return {
        "status": "ok",
        "realtime": bool(hub and hub.is_open),
        "subscriptions": len(hub.subscriptions()) if hub else 0,
    }


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request, exc):
    logger.info(f"Validation error on {request.url.path}: {exc.errors()}")
    return JSONResponse(
        status_code=422,
        content={
            "detail": "Request validation error",
            "errors": jsonable_encoder(exc.errors()),
        },
    )


@app.exception_handler(StarletteHTTPException)
async def http_exception_handler(request, exc):
    if exc.status_code >= 500:
        logger.error(f"HTTP exception: {exc.detail} (status_code={exc.status_code})")
    return JSONResponse(
        status_code=exc.status_code,
        content={"detail": exc.detail},
        headers=getattr(exc, "headers", None),
    )
