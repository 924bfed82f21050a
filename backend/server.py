from contextlib import asynccontextmanager
from fastapi import FastAPI
from dotenv import load_dotenv
from starlette.middleware.cors import CORSMiddleware
from motor.motor_asyncio import AsyncIOMotorClient
import os
import logging
from pathlib import Path
from typing import Optional

ROOT_DIR = Path(__file__).parent
load_dotenv(ROOT_DIR / '.env')

from project_service import ProjectLifecycleService
from repository import InMemoryProjectRepository, MongoProjectRepository
from routes import projects_router, register_error_handlers
from tracking_engine.cache import DerivedMetricsCache

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)

# Settings
mongo_url = os.environ.get('MONGO_URL', 'mongodb://localhost:27017/?replicaSet=rs0')
db_name = os.environ.get('DB_NAME', 'project_tracking')
transaction_timeout = float(os.environ.get('TRANSACTION_TIMEOUT_SECONDS', '10'))
transaction_max_retries = int(os.environ.get('TRANSACTION_MAX_RETRIES', '3'))
metrics_cache_ttl = float(os.environ.get('METRICS_CACHE_TTL_SECONDS', '60'))
use_in_memory_store = os.environ.get('USE_IN_MEMORY_STORE', 'false').lower() in ('1', 'true', 'yes')


def build_service() -> ProjectLifecycleService:
    """Wire repository, cache and coordinator from the environment."""
    if use_in_memory_store:
        logger.warning("[SERVER] USE_IN_MEMORY_STORE is set; project data is not persisted")
        repository = InMemoryProjectRepository()
    else:
        client = AsyncIOMotorClient(mongo_url)
        repository = MongoProjectRepository(client, client[db_name])

    return ProjectLifecycleService(
        repository,
        cache=DerivedMetricsCache(ttl_seconds=metrics_cache_ttl),
        timeout_seconds=transaction_timeout,
        max_retries=transaction_max_retries
    )


def create_app(service: Optional[ProjectLifecycleService] = None) -> FastAPI:
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        repository = app.state.project_service.repository
        if isinstance(repository, MongoProjectRepository):
            await repository.ensure_indexes()
        yield
        if isinstance(repository, MongoProjectRepository):
            repository.client.close()
            logger.info("[SERVER] MongoDB client closed")

    app = FastAPI(
        lifespan=lifespan,
        title="Project Lifecycle & Progress Tracking",
        version="1.0.0",
        description="Role-gated project approval workflow with physical and financial progress ledgers"
    )
    app.state.project_service = service or build_service()

    app.include_router(projects_router)
    register_error_handlers(app)

    # CORS middleware
    app.add_middleware(
        CORSMiddleware,
        allow_credentials=True,
        allow_origins=["*"],
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.get("/api/health")
    async def health():
        return {"status": "ok"}

    return app


app = create_app()
