from contextlib import asynccontextmanager, suppress
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
import asyncio
import logging

from config.config import settings
from config.logging_config import setup_logging
from app.clients.redis_client import RedisClient
from app.clients.remote_store import RemoteStore, S3RemoteStore
from app.controllers.upload_controller import UploadController
from app.models.messages import UnsuccessfulResponse
from app.routes.upload_file_route import route as upload_route
from app.utils.exceptions import CustomHTTPException
from app.utils.session_store import UploadSessionStore
from middleware.middleware import MaxContentLengthMiddleware


info_log = logging.getLogger("info_logger")


async def sweep_stale_sessions(store: UploadSessionStore, interval: int):
    while True:
        try:
            await store.sweep_expired()
        except Exception as e:
            # one bad pass must not stop later sweeps
            info_log.error(f"Staging sweep failed: {e}")
        await asyncio.sleep(interval)


def create_app(
    store: UploadSessionStore | None = None,
    remote_store: RemoteStore | None = None,
    enable_gc: bool = settings.GC_ENABLED,
) -> FastAPI:
    setup_logging()

    if store is None:
        store = UploadSessionStore(RedisClient().client)
    if remote_store is None:
        remote_store = S3RemoteStore()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        sweeper = asyncio.create_task(sweep_stale_sessions(store, settings.GC_INTERVAL)) if enable_gc else None
        yield
        if sweeper is not None:
            sweeper.cancel()
            with suppress(asyncio.CancelledError):
                await sweeper

    app = FastAPI(
        title="film zone upload backend",
        description="Resumable chunked uploads of large video files to remote storage",
        version="1.0.0",
        lifespan=lifespan,
    )
    app.state.upload_controller = UploadController(store, remote_store)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.ALLOW_ORIGINS,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.add_middleware(MaxContentLengthMiddleware, exempt_paths=("/api/upload/stream",))

    @app.exception_handler(CustomHTTPException)
    async def custom_http_exception_handler(request: Request, exc: CustomHTTPException):
        body = UnsuccessfulResponse(status_code=exc.status_code, detail=exc.detail, payload=exc.payload)
        return JSONResponse(status_code=exc.status_code, content=body.model_dump(mode="json"))

    @app.get("/")
    def home():
        return {"message": "welcome to film zone upload backend"}

    @app.get("/health")
    async def get_health():
        try:
            redis_ok = await store.ping()
        except Exception:
            redis_ok = False
        return {
            "message": "backend running",
            "redis": "running" if redis_ok else "not running",
        }

    app.include_router(upload_route)

    return app


app = create_app()
