"""tus client: wires storage, persistence, transport and the upload queue together"""

from pathlib import Path
from typing import Any, Dict, List, Optional, Union
from uuid import uuid4

from tusupload.config import Settings, settings
from tusupload.database import DatabaseService
from tusupload.exceptions import StorageError
from tusupload.models.tus_upload import TusUpload, UploadStatus, encode_metadata_json
from tusupload.models.upload_failure import UploadFailure
from tusupload.protocol import validate_metadata
from tusupload.services.file_storage_service import FileStorageService
from tusupload.services.http_transport import AiohttpTransport
from tusupload.services.transfer_service import Execute, TransferService
from tusupload.services.upload_queue_service import UploadQueueService
from tusupload.utils.logger import get_logger, log_tus_config
from tusupload.utils.retry import RetryPolicy

logger = get_logger(__name__)


class UploadDelegate:
    """
    Receives terminal outcomes. Subclass and override; the defaults only log.

    on_success and on_failure are each called exactly once per upload that
    completes or fails. on_failure gets upload=None for problems not tied to an
    upload (e.g. the file store directory cannot be created).
    """

    def on_success(self, upload: TusUpload) -> None:
        logger.info(f"Upload {upload.id} succeeded: {upload.upload_location_url}")

    def on_failure(self, upload: Optional[TusUpload], failure: UploadFailure) -> None:
        logger.warning(f"Upload {upload.id if upload else '-'} failed: {failure}")


class TusClient:
    """Resumable uploads to a single tus endpoint, one file at a time"""

    def __init__(
        self,
        config: Settings = settings,
        delegate: Optional[UploadDelegate] = None,
        execute: Optional[Execute] = None,
        storage: Optional[FileStorageService] = None,
        database: Optional[DatabaseService] = None,
    ):
        self.config = config
        self.delegate = delegate or UploadDelegate()
        self._transport: Optional[AiohttpTransport] = None
        if execute is None:
            self._transport = AiohttpTransport(timeout=config.tus_timeout)
            execute = self._transport.execute

        self.storage = storage or FileStorageService(config.tus_file_store_path, self._report_failure)
        self.database = database or DatabaseService(config.database_url)
        self.transfer_service = TransferService(
            execute=execute,
            storage=self.storage,
            persistence=self.database,
            endpoint=config.tus_upload_url,
            chunk_size=config.tus_chunk_size,
            custom_headers=config.tus_custom_headers,
            retry_policy=RetryPolicy.from_settings(config),
            on_success=self.delegate.on_success,
            on_failure=self.delegate.on_failure,
        )
        self.queue = UploadQueueService(self.transfer_service, self.storage, self.database)
        self._started = False

    def _report_failure(self, upload: Optional[TusUpload], failure: UploadFailure):
        self.delegate.on_failure(upload, failure)

    def _report_setup_failure(self, error: StorageError):
        """Storage errors raised to the caller are also reported with upload=None"""
        self._report_failure(None, UploadFailure(message=str(error), error=error))

    @property
    def status(self) -> str:
        """'uploading' while the queue worker runs, 'ready' otherwise"""
        return "uploading" if self.queue.is_busy else "ready"

    @property
    def current_uploads(self) -> List[TusUpload]:
        return self.queue.uploads()

    async def start(self) -> List[TusUpload]:
        """
        Prepare storage and persistence, then resume unfinished uploads.

        Returns:
            Uploads restored into the queue
        """
        if self._started:
            return []

        log_tus_config(logger, self.config)
        if self.database.engine is None:
            self.database.initialize()
        self.storage.ensure_directory()
        self._started = True
        return await self.restore()

    async def restore(self) -> List[TusUpload]:
        """Queue every persisted upload that is not in a terminal status"""
        restored = []
        for upload in self.database.restore_uploads():
            if await self.queue.enqueue(upload):
                restored.append(upload)
        if restored:
            logger.info(f"Restored {len(restored)} unfinished upload(s)")
        return restored

    async def upload_file(self, path: Union[str, Path], metadata: Optional[Dict[str, str]] = None) -> TusUpload:
        """
        Copy a local file into the file store and queue it.

        Raises:
            StorageError: If the file cannot be read or copied (also reported
                to the delegate with upload=None)
            ValueError: If a metadata key cannot be sent
        """
        path = Path(path)
        metadata = {"filename": path.name, **(metadata or {})}
        validate_metadata(metadata)

        upload_id = str(uuid4())
        file_name = f"{upload_id}{path.suffix}"
        try:
            content_length = self.storage.size_of(path)
            self.storage.copy_in(path, file_name)
        except StorageError as e:
            self._report_setup_failure(e)
            raise
        return await self._queue_new(upload_id, file_name, content_length, metadata)

    async def upload_data(
        self,
        data: bytes,
        file_name: str,
        metadata: Optional[Dict[str, str]] = None,
    ) -> TusUpload:
        """
        Store raw bytes and queue them.

        Raises:
            StorageError: If the bytes cannot be stored (also reported to the
                delegate with upload=None)
            ValueError: If a metadata key cannot be sent
        """
        metadata = {"filename": file_name, **(metadata or {})}
        validate_metadata(metadata)

        upload_id = str(uuid4())
        stored_name = f"{upload_id}{Path(file_name).suffix}"
        try:
            self.storage.write(stored_name, data)
        except StorageError as e:
            self._report_setup_failure(e)
            raise
        return await self._queue_new(upload_id, stored_name, len(data), metadata)

    async def _queue_new(
        self,
        upload_id: str,
        file_name: str,
        content_length: int,
        metadata: Dict[str, str],
    ) -> TusUpload:
        upload = TusUpload(
            id=upload_id,
            file_name=file_name,
            status=UploadStatus.IDLE.value,
            content_length=content_length,
            upload_offset=0,
            upload_metadata=encode_metadata_json(metadata),
        )
        self.database.save_upload(upload)
        await self.queue.enqueue(upload)
        return upload

    def get_upload(self, upload_id: str) -> Optional[TusUpload]:
        """Queued instance if present, otherwise the persisted record"""
        for upload in self.queue.uploads():
            if upload.id == upload_id:
                return upload
        return self.database.get_upload(upload_id)

    async def cancel(self, upload_id: str) -> bool:
        return await self.queue.cancel(upload_id)

    async def retry(self, upload_id: str) -> bool:
        """
        Re-queue a failed upload. It resumes from the server's offset when it
        already owns a location, otherwise it starts over with a create.
        """
        upload = self.get_upload(upload_id)
        if upload is None or upload.status != UploadStatus.FAILED.value:
            return False
        if not self.storage.exists(upload.file_name):
            logger.warning(f"Cannot retry {upload_id}: local file {upload.file_name} is gone")
            return False

        upload.status = (
            UploadStatus.CREATED.value if upload.upload_location_url else UploadStatus.IDLE.value
        )
        upload.retry_count = 0
        upload.error_message = None
        self.database.save_upload(upload)
        logger.info(f"Retrying failed upload: {upload_id}")
        return await self.queue.enqueue(upload)

    async def wait_until_idle(self):
        await self.queue.wait_until_idle()

    def get_status(self) -> Dict[str, Any]:
        return {"status": self.status, **self.queue.get_queue_status()}

    async def close(self):
        """Stop the queue and release the HTTP session; progress stays persisted"""
        await self.queue.stop()
        if self._transport:
            await self._transport.close()
        self._started = False
