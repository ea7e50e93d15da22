"""Pytest configuration and shared fixtures"""

import asyncio
import os
from typing import Any, Dict, Generator, List, Optional, Tuple
from unittest.mock import Mock
from urllib.parse import urlparse

import pytest

from tusupload.config import Settings
from tusupload.database import DatabaseService
from tusupload.models.tus_upload import TusUpload, encode_metadata_json
from tusupload.protocol import TusRequest
from tusupload.services.file_storage_service import FileStorageService
from tusupload.services.http_transport import TransportResponse

TUS_ENDPOINT = "http://tus.example.com/files/"


@pytest.fixture(autouse=True)
def reset_env_vars() -> Generator[None, None, None]:
    """Reset environment variables before each test"""
    original_env = os.environ.copy()

    tus_vars = [
        "TUS_UPLOAD_URL",
        "TUS_CHUNK_SIZE",
        "TUS_CUSTOM_HEADERS",
        "TUS_TIMEOUT",
        "TUS_RETRY_ATTEMPTS",
        "TUS_RETRY_BASE_DELAY",
        "TUS_RETRY_MAX_DELAY",
        "TUS_FILE_STORE_PATH",
        "DATABASE_URL",
        "LOG_LEVEL",
        "ENVIRONMENT",
    ]

    for var in tus_vars:
        os.environ.pop(var, None)

    yield

    os.environ.clear()
    os.environ.update(original_env)


class FakeTusServer:
    """
    In-memory tus endpoint answering TusRequest descriptors.

    Use fail() to inject a status or transport error for the nth call of a
    method, and gate to hold every request until the event is set.
    """

    def __init__(self, base_url: str = TUS_ENDPOINT):
        self.base_url = base_url
        self.requests: List[TusRequest] = []
        self.resources: Dict[str, Dict[str, Any]] = {}
        self.failures: Dict[Tuple[str, int], Any] = {}
        self.gate: Optional[asyncio.Event] = None

    def fail(
        self,
        method: str,
        call_index: int,
        status: Optional[int] = None,
        error: Optional[BaseException] = None,
        keep: int = 0,
    ):
        """Fail the nth call of method; a failed PATCH still stores its first keep bytes"""
        self.failures[(method, call_index)] = (error if error is not None else status, keep)

    def calls(self, method: str) -> List[TusRequest]:
        return [request for request in self.requests if request.method == method]

    def add_resource(self, path: str, length: int, data: bytes = b"") -> str:
        self.resources[path] = {"length": length, "data": bytearray(data), "metadata": ""}
        return f"http://tus.example.com{path}"

    async def execute(self, request: TusRequest) -> TransportResponse:
        self.requests.append(request)
        index = len(self.calls(request.method)) - 1
        if self.gate is not None:
            await self.gate.wait()

        injected = self.failures.get((request.method, index))
        if injected is not None:
            outcome, keep = injected
            resource = self._resource(request.url)
            if keep and request.method == "PATCH" and resource is not None:
                resource["data"].extend(request.body[:keep])
            if isinstance(outcome, BaseException):
                return TransportResponse(error=outcome)
            return TransportResponse(status=outcome)

        handlers = {"POST": self._create, "PATCH": self._patch, "HEAD": self._head}
        return handlers[request.method](request)

    def _resource(self, url: str) -> Optional[Dict[str, Any]]:
        return self.resources.get(urlparse(url).path)

    def _create(self, request: TusRequest) -> TransportResponse:
        path = f"/files/{len(self.resources) + 1}"
        self.resources[path] = {
            "length": int(request.headers["Upload-Length"]),
            "data": bytearray(),
            "metadata": request.headers.get("Upload-Metadata", ""),
        }
        return TransportResponse(status=201, headers={"Location": path})

    def _patch(self, request: TusRequest) -> TransportResponse:
        resource = self._resource(request.url)
        if resource is None:
            return TransportResponse(status=404)
        if int(request.headers["Upload-Offset"]) != len(resource["data"]):
            return TransportResponse(status=409)
        resource["data"].extend(request.body)
        return TransportResponse(status=204, headers={"Upload-Offset": str(len(resource["data"]))})

    def _head(self, request: TusRequest) -> TransportResponse:
        resource = self._resource(request.url)
        if resource is None:
            return TransportResponse(status=404)
        return TransportResponse(
            status=200,
            headers={
                "Upload-Offset": str(len(resource["data"])),
                "Upload-Length": str(resource["length"]),
            },
        )


@pytest.fixture
def tus_server() -> FakeTusServer:
    return FakeTusServer()


@pytest.fixture
def test_settings(tmp_path) -> Settings:
    """Settings pointing at the fake endpoint, with instant retries"""
    return Settings(
        tus_upload_url=TUS_ENDPOINT,
        tus_chunk_size=4,
        tus_retry_attempts=3,
        tus_retry_base_delay=0,
        tus_retry_max_delay=0,
        tus_file_store_path=str(tmp_path / "files"),
        database_url="sqlite:///:memory:",
    )


@pytest.fixture
def database() -> Generator[DatabaseService, None, None]:
    """In-memory SQLite persistence"""
    service = DatabaseService("sqlite:///:memory:")
    service.initialize()
    yield service
    service.close()


@pytest.fixture
def storage(tmp_path) -> FileStorageService:
    service = FileStorageService(tmp_path / "files", report_failure=Mock())
    service.ensure_directory()
    return service


@pytest.fixture
def make_upload(storage, database):
    """Store data in the file store and return a saved idle TusUpload for it"""
    counter = {"n": 0}

    def factory(data: bytes, metadata: Optional[Dict[str, str]] = None, **fields) -> TusUpload:
        counter["n"] += 1
        upload_id = fields.pop("id", f"upload-{counter['n']}")
        file_name = f"{upload_id}.bin"
        storage.write(file_name, data)
        upload = TusUpload(
            id=upload_id,
            file_name=file_name,
            content_length=len(data),
            upload_metadata=encode_metadata_json(metadata or {"filename": file_name}),
            **fields,
        )
        database.save_upload(upload)
        return upload

    return factory
