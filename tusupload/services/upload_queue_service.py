"""Upload Queue Service: hands queued uploads to the transfer service one at a time"""

import asyncio
from collections import deque
from itertools import islice
from typing import Any, Deque, Dict, List, Optional

from tusupload.models.tus_upload import TusUpload, UploadStatus
from tusupload.models.upload_failure import UploadFailure
from tusupload.services.transfer_service import TransferService
from tusupload.utils.logger import get_logger

logger = get_logger(__name__)

CLEANUP_STATUSES = {UploadStatus.COMPLETED.value, UploadStatus.CANCELED.value}


class UploadQueueService:
    """
    FIFO of uploads. The head is the only upload being transferred; when it
    reaches a terminal status it is removed and the next head starts.
    """

    def __init__(self, transfer_service: TransferService, storage: Any, persistence: Any):
        self._transfer = transfer_service
        self._storage = storage
        self._persistence = persistence
        self._queue: Deque[TusUpload] = deque()
        self._worker_task: Optional[asyncio.Task] = None

    @property
    def is_busy(self) -> bool:
        return self._worker_task is not None and not self._worker_task.done()

    def current(self) -> Optional[TusUpload]:
        """Upload at the head of the queue"""
        return self._queue[0] if self._queue else None

    def pending(self) -> List[TusUpload]:
        """Uploads waiting behind the head"""
        return list(islice(self._queue, 1, None))

    def uploads(self) -> List[TusUpload]:
        return list(self._queue)

    def __len__(self) -> int:
        return len(self._queue)

    async def enqueue(self, upload: TusUpload) -> bool:
        """
        Add an upload to the queue, starting the worker if idle

        Returns:
            False if the upload is already queued or terminal
        """
        if upload.is_terminal:
            logger.warning(f"Refusing to queue upload {upload.id} with status {upload.status}")
            return False
        if any(queued.id == upload.id for queued in self._queue):
            logger.warning(f"Upload {upload.id} is already queued")
            return False

        self._queue.append(upload)
        logger.info(f"Added upload to queue: {upload.id} - {upload.file_name} (position {len(self._queue)})")

        if not self.is_busy:
            self._worker_task = asyncio.create_task(self._process_queue())
        return True

    async def _process_queue(self):
        """Run the transfer service on each head in turn"""
        while self._queue:
            upload = self._queue[0]
            try:
                state = await self._transfer.run(upload)
                logger.debug(f"Transfer of {upload.id} finished in state {state.value}")
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error(f"Error processing upload {upload.id}: {e}", exc_info=True)
                self._transfer.fail_upload(upload, UploadFailure(message="Transfer aborted", error=e))

            self._queue.popleft()
            self._cleanup(upload)

    def _cleanup(self, upload: TusUpload):
        """Delete the local copy once it is no longer needed"""
        if upload.status not in CLEANUP_STATUSES:
            return
        if self._storage.exists(upload.file_name):
            self._storage.delete(upload.file_name)

    async def cancel(self, upload_id: str) -> bool:
        """
        Cancel a queued or running upload

        Returns:
            True if an upload was canceled
        """
        head = self.current()
        if head is not None and head.id == upload_id:
            if self._transfer.cancel(upload_id):
                return True
            if head.is_terminal:
                return False
            # Queued at the head but the worker has not picked it up yet
            self._mark_canceled(head)
            return True

        for upload in self.pending():
            if upload.id == upload_id:
                self._queue.remove(upload)
                self._mark_canceled(upload)
                self._cleanup(upload)
                return True

        return False

    def _mark_canceled(self, upload: TusUpload):
        upload.status = UploadStatus.CANCELED.value
        try:
            self._persistence.save_upload(upload)
        except Exception as e:
            logger.warning(f"Failed to update upload record: {e}")
        logger.info(f"Cancelled upload: {upload.id}")

    async def wait_until_idle(self):
        """Wait until the queue has drained"""
        while self.is_busy:
            await asyncio.shield(self._worker_task)

    async def stop(self):
        """Stop the worker; queued uploads stay persisted for a later resume"""
        if not self.is_busy:
            return

        self._worker_task.cancel()
        try:
            await self._worker_task
        except asyncio.CancelledError:
            pass
        logger.info("Upload queue service stopped")

    def get_queue_status(self) -> Dict[str, Any]:
        """Current queue statistics"""
        head = self.current()
        return {
            "queue_size": len(self._queue),
            "running": self.is_busy,
            "current_upload": head.id if head else None,
            "uploads": [
                {
                    "id": upload.id,
                    "file_name": upload.file_name,
                    "status": upload.status,
                    "upload_offset": upload.upload_offset,
                    "content_length": upload.content_length,
                }
                for upload in self._queue
            ],
        }
