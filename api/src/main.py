import logging
import sys

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from contextlib import asynccontextmanager

from api.src.db.database import init_db
from api.src.routes import health_router, pipelines_router, webhooks_router
from api.src.services.pipelines import get_pipelines

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    handlers=[logging.StreamHandler(sys.stdout)]
)

logger = logging.getLogger(__name__)

@asynccontextmanager
async def lifespan(app: FastAPI):
    # Startup: reject a misconfigured pipelines file before serving triggers
    pipelines = get_pipelines()
    logger.info(f"Starting Pipewright API with {len(pipelines)} pipelines")
    await init_db()
    yield
    logger.info("Shutting down Pipewright API")

app = FastAPI(
    title="Pipewright",
    description="Staged CI/CD pipeline engine",
    version="0.1.0",
    lifespan=lifespan
)

# CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Include routers
app.include_router(health_router)
app.include_router(pipelines_router, prefix="/api")
app.include_router(webhooks_router, prefix="/api")

@app.get("/")
async def root():
    return {
        "name": "Pipewright",
        "version": "0.1.0",
        "docs": "/docs"
    }
