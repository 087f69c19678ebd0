from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from contextlib import asynccontextmanager
from slowapi import _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded
import logging

from api.dependencies import limiter
from api.routes import identity
from core.config import settings
from services.identity import IdentityServiceError, create_identity_service
from services.redis import close_redis

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
    datefmt='%Y-%m-%d %H:%M:%S'
)

# Set specific log levels
logging.getLogger("uvicorn.access").setLevel(logging.WARNING)  # Reduce noise from access logs
logging.getLogger("httpx").setLevel(logging.WARNING)  # One line per request otherwise

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    service = create_identity_service()
    await service.start()

    # Configured server only applies when nothing was persisted
    if settings.IDENTITY_SERVER_URL and service.get_current_identity_server() is None:
        try:
            await service.set_new_identity_server(settings.IDENTITY_SERVER_URL)
        except IdentityServiceError as e:
            logger.warning(f"Could not use identity server {settings.IDENTITY_SERVER_URL}: {e}")

    app.state.identity_service = service
    yield
    await service.aclose()
    if settings.IDENTITY_STORE == "redis":
        await close_redis()


app = FastAPI(
    title="Identity Bridge API",
    description="Bind and look up email addresses and phone numbers through a Matrix identity server",
    version="1.0.0",
    lifespan=lifespan
)

app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)

# Configure based on environment (development vs production)
allowed_origins = settings.ALLOWED_ORIGINS.split(",") if settings.ALLOWED_ORIGINS else ["*"]

app.add_middleware(
    CORSMiddleware,
    allow_origins=allowed_origins,
    allow_credentials=True,
    allow_methods=["GET", "POST", "PUT", "DELETE", "OPTIONS"],
    allow_headers=["*"],
)

# Include routers
app.include_router(identity.router)


@app.get("/")
async def root():
    return {"message": "Identity Bridge API", "status": "running"}


@app.get("/health")
async def health():
    return {"status": "healthy"}
