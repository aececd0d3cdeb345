from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from greg.api.routes import chat
from greg.config import settings
from greg.models.schemas import HealthResponse
from greg.services import logger as log_service
from greg.tools.image_search import PROBE_CACHE, PROVIDER_CACHE


@asynccontextmanager
async def lifespan(app: FastAPI):
    # Startup
    log_service.log_event(event_type="startup", message="Greg API started", model=settings.default_model)
    yield
    # Shutdown
    PROBE_CACHE.clear()
    PROVIDER_CACHE.clear()


app = FastAPI(
    title="Greg",
    description="Streaming chat orchestration with web search, URL extraction and image probing",
    version="0.1.0",
    lifespan=lifespan,
)

# CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origin_list,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Routes
app.include_router(chat.router)


@app.get("/api/health", response_model=HealthResponse)
async def health():
    return HealthResponse(status="ok", service="greg")
