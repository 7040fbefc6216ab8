import argparse
import asyncio
from contextlib import asynccontextmanager
from datetime import datetime
from enum import Enum
import logging
from typing import AsyncContextManager, AsyncIterator, Callable, List, Optional
import uuid
import uvicorn

from fastapi import BackgroundTasks, Depends, FastAPI, File, Form, HTTPException, UploadFile
from fastapi.middleware.cors import CORSMiddleware
from prometheus_client import make_asgi_app
from redis.asyncio import Redis

from activity_ingestion.config import get_settings
from activity_ingestion.db.activities import ActivityRepository
from activity_ingestion.db.database import get_session_maker, init_models
from activity_ingestion.models import (
    ImportPhase,
    ImportProgress,
    ImportReport,
    ImportStatus,
    ImportStatusResponse,
    UploadedFile,
)
from activity_ingestion.orchestrator import ActivityStore, BatchImportOrchestrator

# Configure logging
logging.basicConfig(
    level=get_settings().LOG_LEVEL,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)

ARCHIVE_SUFFIX = ".zip"

RepositoryFactory = Callable[[Optional[str]], AsyncContextManager[ActivityStore]]

def clean_none_values(d: dict) -> dict:
    """Remove None values from a dictionary and convert datetime to ISO format."""
    cleaned = {}
    for k, v in d.items():
        if v is not None:
            if isinstance(v, datetime):
                cleaned[k] = v.isoformat()
            elif isinstance(v, Enum):
                cleaned[k] = v.value
            else:
                cleaned[k] = v
    return cleaned

def status_key(batch_id: str) -> str:
    return f"import:{batch_id}"

def get_repository_factory() -> RepositoryFactory:
    """Dependency returning a factory that opens a repository on its own session.

    The import runs as a background task after the response is sent, so it
    cannot share the request's session.
    """
    session_maker = get_session_maker()

    @asynccontextmanager
    async def open_repository(user_id: Optional[str]) -> AsyncIterator[ActivityStore]:
        async with session_maker() as session:
            yield ActivityRepository(session, user_id)

    return open_repository

class ImportStatusTracker:
    """Mirrors the progress of one import batch into a Redis hash."""

    def __init__(self, redis_client: Redis, batch_id: str, total_files: int) -> None:
        self.redis_client = redis_client
        self.status = ImportStatusResponse(
            batch_id=batch_id,
            status=ImportStatus.PENDING,
            total_files=total_files,
            last_updated=datetime.now(),
        )
        self._finished = 0
        self._expected = 0

    async def publish(self, **changes) -> None:
        self.status = self.status.model_copy(update={**changes, "last_updated": datetime.now()})
        key = status_key(self.status.batch_id)
        await self.redis_client.hset(key, mapping=clean_none_values(self.status.model_dump()))
        await self.redis_client.expire(key, get_settings().STATUS_TTL_SECONDS)

    def begin_source(self, expected_files: int) -> None:
        self._expected = expected_files

    async def on_progress(self, progress: ImportProgress) -> None:
        if progress.phase == ImportPhase.EXTRACTING:
            # an archive was counted as one file until its contents are known
            total_files = self.status.total_files - self._expected + progress.total
            self._expected = progress.total
            await self.publish(total_files=total_files)
            return
        await self.publish(
            processed_files=self._finished + progress.current,
            current_file=progress.file_name,
        )

    async def end_source(self, report: ImportReport) -> None:
        counts = report.counts()
        self._finished += report.total
        await self.publish(
            total_files=self.status.total_files - self._expected + report.total,
            processed_files=self._finished,
            imported_files=self.status.imported_files + counts["success"],
            skipped_files=self.status.skipped_files + counts["skipped"],
            failed_files=self.status.failed_files + counts["failed"],
        )

async def run_import(
    tracker: ImportStatusTracker,
    user_id: str,
    uploads: List[UploadedFile],
    archives: List[UploadedFile],
    repository_factory: RepositoryFactory,
) -> None:
    """Background task importing one batch of uploaded files and archives."""
    batch_id = tracker.status.batch_id
    try:
        await tracker.publish(status=ImportStatus.IN_PROGRESS)
        async with repository_factory(user_id) as store:
            orchestrator = BatchImportOrchestrator(store=store, user_id=user_id)

            if uploads:
                tracker.begin_source(len(uploads))
                if len(uploads) == 1:
                    report = await orchestrator.import_file(
                        uploads[0].file_name, uploads[0].content, progress=tracker.on_progress
                    )
                else:
                    report = await orchestrator.import_files(uploads, progress=tracker.on_progress)
                await tracker.end_source(report)

            for archive in archives:
                tracker.begin_source(1)
                report = await orchestrator.import_archive(
                    archive.content, archive_name=archive.file_name, progress=tracker.on_progress
                )
                await tracker.end_source(report)

        await tracker.publish(status=ImportStatus.COMPLETED, current_file=None)
        logger.info(f"Completed import batch {batch_id}")
    except Exception as e:
        logger.error(f"Import batch {batch_id} failed: {str(e)}")
        try:
            await tracker.publish(status=ImportStatus.FAILED, error_message=str(e))
        except Exception as redis_err:
            # Log Redis error but don't mask the original error
            logger.error(f"Failed to update error status for batch {batch_id}: {str(redis_err)}")

@asynccontextmanager
async def lifespan(app: FastAPI):
    """Lifespan context manager for FastAPI application."""
    # Startup
    try:
        if not hasattr(app.state, "redis_client"):
            app.state.redis_client = Redis.from_url(get_settings().REDIS_URL, decode_responses=True)
        # Test Redis connection
        await app.state.redis_client.ping()
        logger.info("Successfully connected to Redis")
    except Exception as e:
        logger.error(f"Failed to connect to Redis: {str(e)}")
        raise

    yield  # Application runs here

    # Shutdown
    try:
        if hasattr(app.state, "redis_client"):
            await app.state.redis_client.close()
            logger.info("Successfully closed Redis connection")
    except Exception as e:
        logger.error(f"Error closing Redis connection: {str(e)}")

def create_app(redis_client: Optional[Redis] = None) -> FastAPI:
    settings = get_settings()

    # Initialize FastAPI app
    app = FastAPI(title="Activity Ingestion Service", lifespan=lifespan)

    # Add CORS middleware
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.CORS_ORIGINS,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # Add Prometheus metrics endpoint
    metrics_app = make_asgi_app()
    app.mount("/metrics", metrics_app)

    # Initialize Redis client if not provided
    if redis_client is None:
        logging.info(f"Connecting to Redis at: {settings.REDIS_URL}")
        redis_client = Redis.from_url(settings.REDIS_URL, decode_responses=True)
    app.state.redis_client = redis_client

    @app.post("/imports", response_model=ImportStatusResponse)
    async def start_import(
        user_id: str = Form(...),
        files: list[UploadFile] = File(...),
        background_tasks: BackgroundTasks = BackgroundTasks(),
        repository_factory: RepositoryFactory = Depends(get_repository_factory),
    ) -> ImportStatusResponse:
        if not files:
            raise HTTPException(status_code=422, detail="At least one file is required")

        uploads = []
        archives = []
        for file in files:
            upload = UploadedFile(file_name=file.filename or "upload", content=await file.read())
            if upload.file_name.lower().endswith(ARCHIVE_SUFFIX):
                archives.append(upload)
            else:
                uploads.append(upload)

        batch_id = str(uuid.uuid4())
        tracker = ImportStatusTracker(app.state.redis_client, batch_id, len(files))

        # Initialize batch status in Redis
        try:
            await tracker.publish()
        except Exception as e:
            logger.error(f"Failed to initialize import status: {str(e)}")
            raise HTTPException(
                status_code=500,
                detail="Failed to initialize import status"
            ) from e

        logger.info(
            f"Queued import batch {batch_id} for user {user_id}: "
            f"{len(uploads)} files, {len(archives)} archives"
        )
        background_tasks.add_task(run_import, tracker, user_id, uploads, archives, repository_factory)
        return tracker.status

    @app.get("/imports/{batch_id}/status", response_model=ImportStatusResponse)
    async def get_import_status(batch_id: str):
        try:
            status = await app.state.redis_client.hgetall(status_key(batch_id))
            if not status:
                raise HTTPException(status_code=404, detail="Import not found")

            return ImportStatusResponse(
                batch_id=batch_id,
                status=ImportStatus(status["status"]),
                total_files=int(status.get("total_files", 0)),
                processed_files=int(status.get("processed_files", 0)),
                imported_files=int(status.get("imported_files", 0)),
                skipped_files=int(status.get("skipped_files", 0)),
                failed_files=int(status.get("failed_files", 0)),
                current_file=status.get("current_file"),
                error_message=status.get("error_message"),
                last_updated=datetime.fromisoformat(status["last_updated"]),
            )
        except HTTPException:
            raise
        except Exception as e:
            logger.error(f"Failed to get status for import {batch_id}: {str(e)}")
            raise HTTPException(
                status_code=500,
                detail=f"Redis connection error: {str(e)}"
            )

    return app

# Create the app at module level
app = create_app()

def main():
    """Main entry point for the CLI."""
    parser = argparse.ArgumentParser()
    parser.add_argument("--host", type=str, default="0.0.0.0", help="Host to run the server on")
    parser.add_argument("--port", type=int, default=8000, help="Port to run the server on")
    parser.add_argument("--reload", action="store_true", help="Enable auto-reload")
    parser.add_argument("--log-level", type=str, default="info", help="Logging level")
    parser.add_argument("--create-tables", action="store_true", help="Create database tables before starting")

    args = parser.parse_args()

    if args.create_tables:
        asyncio.run(init_models())

    uvicorn.run(
        "activity_ingestion.main:app",
        host=args.host,
        port=args.port,
        reload=args.reload,
        log_level=args.log_level,
    )

if __name__ == "__main__":
    main()
