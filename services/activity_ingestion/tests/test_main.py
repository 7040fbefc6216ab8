import pytest
from unittest.mock import AsyncMock, Mock, patch
from contextlib import asynccontextmanager
from datetime import datetime, timedelta
import gzip
import io
import zipfile
from fastapi.testclient import TestClient

from activity_ingestion.main import clean_none_values, create_app, get_repository_factory
from activity_ingestion.models import ImportStatus

from conftest import START, build_fit_activity, build_gpx

@pytest.fixture
def mock_redis():
    """Create a mock Redis client."""
    redis = AsyncMock()
    redis.hgetall = AsyncMock(return_value={})
    redis.hset = AsyncMock(return_value=True)
    redis.expire = AsyncMock(return_value=True)
    return redis

@pytest.fixture
def mock_store():
    """Create a mock activity store."""
    store = Mock()
    store.find_in_window = AsyncMock(return_value=[])
    store.save = AsyncMock()
    return store

@pytest.fixture
def app(mock_redis, mock_store):
    """Create a test app instance with the repository replaced."""
    app = create_app(redis_client=mock_redis)

    @asynccontextmanager
    async def open_repository(user_id):
        yield mock_store

    app.dependency_overrides[get_repository_factory] = lambda: open_repository
    yield app
    app.dependency_overrides.clear()

@pytest.fixture
def test_client(app):
    """Create a test client for the FastAPI app."""
    return TestClient(app)

def published_statuses(mock_redis):
    return [call.kwargs["mapping"] for call in mock_redis.hset.call_args_list]

def test_clean_none_values():
    cleaned = clean_none_values({
        "status": ImportStatus.COMPLETED,
        "last_updated": datetime(2024, 6, 3, 8, 0),
        "current_file": None,
        "total_files": 2,
    })
    assert cleaned == {
        "status": "completed",
        "last_updated": "2024-06-03T08:00:00",
        "total_files": 2,
    }

def test_start_import(test_client, mock_redis, mock_store):
    response = test_client.post(
        "/imports",
        data={"user_id": "user123"},
        files=[
            ("files", ("morning.gpx", build_gpx().encode(), "application/gpx+xml")),
            ("files", ("evening.gpx", build_gpx(start=START + timedelta(hours=10)).encode(), "application/gpx+xml")),
        ],
    )

    assert response.status_code == 200
    response_data = response.json()
    assert response_data["status"] == ImportStatus.PENDING.value
    assert response_data["total_files"] == 2
    assert response_data["processed_files"] == 0

    # the background task ran after the response
    statuses = published_statuses(mock_redis)
    assert statuses[0]["status"] == "pending"
    assert statuses[1]["status"] == "in_progress"
    final = statuses[-1]
    assert final["status"] == "completed"
    assert final["batch_id"] == response_data["batch_id"]
    assert final["imported_files"] == 2
    assert final["processed_files"] == 2
    assert mock_store.save.await_count == 2
    mock_redis.expire.assert_awaited_with(f"import:{response_data['batch_id']}", 86400)

def test_start_import_with_archive(test_client, mock_redis, mock_store):
    buffer = io.BytesIO()
    with zipfile.ZipFile(buffer, "w") as archive:
        archive.writestr("activities.csv", "Activity ID,Activity Date,Activity Name\n1001,x,Galibier\n")
        archive.writestr("activities/1001.fit.gz", gzip.compress(build_fit_activity()))
        archive.writestr("activities/1002.fit.gz", gzip.compress(build_fit_activity(points=3, step_deg=0.00001,
                                                                                    with_session=False,
                                                                                    start=START + timedelta(days=1))))
        archive.writestr("media/1.jpg", b"\xff\xd8")

    response = test_client.post(
        "/imports",
        data={"user_id": "user123"},
        files=[("files", ("export.zip", buffer.getvalue(), "application/zip"))],
    )

    assert response.status_code == 200
    assert response.json()["total_files"] == 1

    final = published_statuses(mock_redis)[-1]
    assert final["status"] == "completed"
    assert final["total_files"] == 2
    assert final["imported_files"] == 1
    assert final["skipped_files"] == 1
    assert final["failed_files"] == 0
    saved = mock_store.save.await_args.args[0]
    assert saved["name"] == "Galibier"
    assert saved["user_id"] == "user123"

def test_start_import_counts_failures(test_client, mock_redis):
    response = test_client.post(
        "/imports",
        data={"user_id": "user123"},
        files=[("files", ("broken.fit", build_fit_activity()[:100], "application/octet-stream"))],
    )

    assert response.status_code == 200
    final = published_statuses(mock_redis)[-1]
    assert final["status"] == "completed"
    assert final["failed_files"] == 1

def test_start_import_requires_files(test_client):
    response = test_client.post("/imports", data={"user_id": "user123"}, files=[])
    assert response.status_code == 422

def test_start_import_redis_failure(test_client, mock_redis):
    mock_redis.hset.side_effect = Exception("Redis connection error")

    response = test_client.post(
        "/imports",
        data={"user_id": "user123"},
        files=[("files", ("morning.gpx", build_gpx().encode(), "application/gpx+xml"))],
    )

    assert response.status_code == 500
    assert "Failed to initialize import status" in response.json()["detail"]

def test_background_failure_marks_batch_failed(app, test_client, mock_redis):
    @asynccontextmanager
    async def broken_repository(user_id):
        raise RuntimeError("database unavailable")
        yield

    app.dependency_overrides[get_repository_factory] = lambda: broken_repository

    response = test_client.post(
        "/imports",
        data={"user_id": "user123"},
        files=[("files", ("morning.gpx", build_gpx().encode(), "application/gpx+xml"))],
    )

    assert response.status_code == 200
    final = published_statuses(mock_redis)[-1]
    assert final["status"] == "failed"
    assert final["error_message"] == "database unavailable"

def test_get_import_status(test_client, mock_redis):
    batch_id = "test-batch-123"
    mock_redis.hgetall.return_value = {
        "batch_id": batch_id,
        "status": "in_progress",
        "total_files": "10",
        "processed_files": "4",
        "imported_files": "3",
        "skipped_files": "1",
        "failed_files": "0",
        "current_file": "1004.fit.gz",
        "last_updated": datetime.now().isoformat(),
    }

    response = test_client.get(f"/imports/{batch_id}/status")

    assert response.status_code == 200
    response_data = response.json()
    assert response_data["status"] == ImportStatus.IN_PROGRESS.value
    assert response_data["total_files"] == 10
    assert response_data["processed_files"] == 4
    assert response_data["current_file"] == "1004.fit.gz"
    assert response_data["error_message"] is None
    mock_redis.hgetall.assert_called_once_with(f"import:{batch_id}")

def test_get_import_status_not_found(test_client, mock_redis):
    response = test_client.get("/imports/unknown/status")

    assert response.status_code == 404
    assert response.json()["detail"] == "Import not found"

def test_get_import_status_redis_error(test_client, mock_redis):
    mock_redis.hgetall.side_effect = Exception("connection refused")

    response = test_client.get("/imports/some-batch/status")

    assert response.status_code == 500
    assert "Redis connection error" in response.json()["detail"]

def test_metrics_endpoint(test_client):
    response = test_client.get("/metrics/")
    assert response.status_code == 200
    assert "import_files_total" in response.text

def test_main_cli_runs_uvicorn():
    with patch("sys.argv", ["activity-ingestion", "--port", "9000"]), \
            patch("activity_ingestion.main.uvicorn.run") as mock_run:
        from activity_ingestion.main import main
        main()

    mock_run.assert_called_once()
    assert mock_run.call_args.args[0] == "activity_ingestion.main:app"
    assert mock_run.call_args.kwargs["port"] == 9000
