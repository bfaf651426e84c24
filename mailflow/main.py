import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from fastapi.middleware.cors import CORSMiddleware

from mailflow.config import settings
from mailflow.database import AsyncSessionLocal, create_all
from mailflow.routers.auth import router as auth_router
from mailflow.routers.emails import router as emails_router
from mailflow.routers.templates import router as templates_router
from mailflow.services.email_worker import EmailDispatcher
from mailflow.services.errors import EmailError
from mailflow.utils.email import get_transport

logging.basicConfig(
    level=settings.LOG_LEVEL,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    await create_all()

    # Every process may run a pool: claims are compare-and-set on the outbox rows,
    # so several gunicorn workers never send the same email twice.
    dispatcher = None
    if settings.DISPATCHER_ENABLED:
        dispatcher = EmailDispatcher(AsyncSessionLocal, get_transport())
        dispatcher.start()
        logger.info("[DISPATCHER] Started %s email workers.", dispatcher.workers)
    app.state.dispatcher = dispatcher

    yield

    if dispatcher:
        await dispatcher.stop()
        logger.info("[DISPATCHER] Email workers shut down.")


app = FastAPI(
    lifespan=lifespan,
    title="Mailflow API",
    description="Templated email outbox with retry, cancellation and delivery history",
    version="1.0.0",
)

# Enable CORS for the frontend
app.add_middleware(
    CORSMiddleware,
    allow_origin_regex="https?://.*",
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(EmailError)
async def email_error_handler(request: Request, exc: EmailError):
    return JSONResponse(
        status_code=exc.status_code,
        content={"success": False, "message": exc.message, "code": exc.code},
    )


# Global exception handler to ensure CORS headers on failure
@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    logger.exception("CRITICAL ERROR on %s %s", request.method, request.url.path)
    return JSONResponse(
        status_code=500,
        content={"success": False, "message": "Internal Server Error"},
        headers={
            "Access-Control-Allow-Origin": "*",
            "Access-Control-Allow-Credentials": "true"
        }
    )

app.include_router(auth_router)
app.include_router(templates_router)
app.include_router(emails_router)

@app.get("/")
def root():
    return {"message": "Mailflow API running"}
