"""
Transfer Service: drives one upload through the tus exchanges.

A transfer moves through explicit states:

    IDLE -> CREATING -> UPLOADING(position) -> COMPLETED | FAILED | CANCELED
    IDLE -> RESUMING -> UPLOADING(position) -> ...   (upload already has a location)
    UPLOADING(position) -> RESUMING                  (PATCH retried after a 5xx or transport error)

run() is the only driver. It sends one exchange at a time and hands every
completion to handle_completion(), which checks that the completion belongs to
the exchange the transfer is waiting for and returns the next exchange (or None
once the transfer has reached a terminal state). No HTTP completion raises out
of handle_completion(); each one maps to a transition.
"""

import asyncio
from dataclasses import dataclass, field, replace
from datetime import datetime
from enum import Enum
from typing import Any, Awaitable, Callable, List, Mapping, Optional

from tusupload.exceptions import StorageError, TransferError
from tusupload.models.tus_upload import TusUpload, UploadStatus
from tusupload.models.upload_failure import UploadFailure
from tusupload.protocol import (
    HEADER_LOCATION,
    HEADER_UPLOAD_LENGTH,
    HEADER_UPLOAD_OFFSET,
    TusRequest,
    build_create_request,
    build_head_request,
    build_patch_request,
    resolve_location,
)
from tusupload.services.http_transport import TransportResponse
from tusupload.utils.chunking import split_into_chunks
from tusupload.utils.logger import get_logger
from tusupload.utils.retry import RetryPolicy, is_retryable_status

logger = get_logger(__name__)

Execute = Callable[[TusRequest], Awaitable[TransportResponse]]
SuccessCallback = Callable[[TusUpload], None]
FailureCallback = Callable[[Optional[TusUpload], UploadFailure], None]


class TransferState(str, Enum):
    IDLE = "idle"
    CREATING = "creating"
    RESUMING = "resuming"
    UPLOADING = "uploading"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELED = "canceled"


@dataclass
class Exchange:
    """One request the transfer is waiting on, tagged with what it expects"""

    upload_id: str
    state: TransferState
    position: int
    offset: int
    request: TusRequest
    delay: float = 0.0


@dataclass
class Transfer:
    """In-flight state of one upload"""

    upload: TusUpload
    state: TransferState = TransferState.IDLE
    chunks: List[bytes] = field(default_factory=list)
    position: int = 0
    canceled: asyncio.Event = field(default_factory=asyncio.Event)


class TransferService:
    """Runs the tus state machine for one upload at a time"""

    def __init__(
        self,
        execute: Execute,
        storage: Any,
        persistence: Any,
        endpoint: str,
        chunk_size: int,
        custom_headers: Optional[Mapping[str, str]] = None,
        retry_policy: Optional[RetryPolicy] = None,
        on_success: Optional[SuccessCallback] = None,
        on_failure: Optional[FailureCallback] = None,
    ):
        if chunk_size <= 0:
            raise ValueError(f"chunk_size must be positive, got: {chunk_size}")
        self._execute = execute
        self._storage = storage
        self._persistence = persistence
        self.endpoint = endpoint
        self.chunk_size = chunk_size
        self.custom_headers = dict(custom_headers or {})
        self.retry_policy = retry_policy or RetryPolicy()
        self._on_success = on_success
        self._on_failure = on_failure
        self._active: Optional[Transfer] = None

    @property
    def active_upload(self) -> Optional[TusUpload]:
        return self._active.upload if self._active else None

    # Driver

    async def run(self, upload: TusUpload) -> TransferState:
        """
        Drive an upload until it completes, fails or is canceled.

        Raises:
            TransferError: If another transfer is already running
        """
        if self._active is not None:
            raise TransferError(
                f"Cannot start {upload.id}: transfer of {self._active.upload.id} is still running"
            )

        transfer = Transfer(upload=upload)
        self._active = transfer
        try:
            exchange = self._begin(transfer)
            while exchange is not None:
                response = await self._send(transfer, exchange)
                if response is None:
                    break
                exchange = self.handle_completion(transfer, exchange, response)
        finally:
            self._active = None
        return transfer.state

    async def _send(self, transfer: Transfer, exchange: Exchange) -> Optional[TransportResponse]:
        """Wait out any backoff, then execute; None means the transfer was canceled first"""
        if exchange.delay:
            try:
                await asyncio.wait_for(transfer.canceled.wait(), timeout=exchange.delay)
                return None
            except asyncio.TimeoutError:
                pass
        if transfer.canceled.is_set():
            return None

        request_task = asyncio.ensure_future(self._execute(exchange.request))
        cancel_task = asyncio.ensure_future(transfer.canceled.wait())
        try:
            done, _ = await asyncio.wait(
                {request_task, cancel_task},
                return_when=asyncio.FIRST_COMPLETED,
            )
        finally:
            cancel_task.cancel()
            if not request_task.done():
                request_task.cancel()

        if request_task not in done:
            logger.info(f"Abandoned in-flight {exchange.request.method} for upload {exchange.upload_id}")
            return None
        try:
            return request_task.result()
        except Exception as e:
            return TransportResponse(error=e)

    def _begin(self, transfer: Transfer) -> Optional[Exchange]:
        upload = transfer.upload
        if upload.is_terminal:
            logger.warning(f"Upload {upload.id} is already {upload.status}, nothing to transfer")
            transfer.state = TransferState(upload.status)
            return None

        if upload.upload_location_url:
            transfer.state = TransferState.RESUMING
            logger.info(f"Resuming upload {upload.id} from {upload.upload_location_url}")
            return self._exchange(transfer, build_head_request(upload, self.custom_headers))

        transfer.state = TransferState.CREATING
        logger.info(f"Creating upload {upload.id} ({upload.content_length} bytes)")
        return self._exchange(transfer, build_create_request(upload, self.endpoint, self.custom_headers))

    def _exchange(self, transfer: Transfer, request: TusRequest) -> Exchange:
        return Exchange(
            upload_id=transfer.upload.id,
            state=transfer.state,
            position=transfer.position,
            offset=transfer.upload.upload_offset,
            request=request,
        )

    # Completion handling

    def is_current(self, transfer: Transfer, exchange: Exchange) -> bool:
        """Whether a completion for exchange may still change transfer"""
        upload = transfer.upload
        return (
            not upload.is_terminal
            and upload.id == exchange.upload_id
            and transfer.state == exchange.state
            and transfer.position == exchange.position
            and upload.upload_offset == exchange.offset
        )

    def handle_completion(
        self,
        transfer: Transfer,
        exchange: Exchange,
        response: TransportResponse,
    ) -> Optional[Exchange]:
        """Apply one completion and return the next exchange to send"""
        if not self.is_current(transfer, exchange):
            logger.warning(
                f"Discarding stale {exchange.request.method} completion for upload {exchange.upload_id} "
                f"(status: {transfer.upload.status})"
            )
            return None

        if exchange.state == TransferState.CREATING:
            return self._on_create_response(transfer, response)
        if exchange.state == TransferState.RESUMING:
            return self._on_head_response(transfer, exchange, response)
        if exchange.state == TransferState.UPLOADING:
            return self._on_patch_response(transfer, exchange, response)

        return self._fail(transfer, f"No completion expected in state {exchange.state.value}", response)

    def _on_create_response(self, transfer: Transfer, response: TransportResponse) -> Optional[Exchange]:
        upload = transfer.upload
        if response.error is not None or response.status != 201:
            return self._fail(transfer, "Create request failed", response)

        location = response.headers.get(HEADER_LOCATION)
        if not location:
            return self._fail(transfer, "Create response carried no Location header", response)

        upload.upload_location_url = resolve_location(self.endpoint, location)
        upload.status = UploadStatus.CREATED.value
        self._save(upload)
        logger.info(f"File {upload.id} created at {upload.upload_location_url}")
        return self._start_chunks(transfer)

    def _on_head_response(
        self,
        transfer: Transfer,
        exchange: Exchange,
        response: TransportResponse,
    ) -> Optional[Exchange]:
        upload = transfer.upload
        if is_retryable_status(response.status) or response.error is not None:
            return self._retry_or_fail(transfer, exchange, response)
        if not response.ok:
            return self._fail(transfer, "Upload resource is no longer available for resume", response)

        try:
            server_length = self._read_length(response)
            if server_length is not None and server_length != upload.content_length:
                raise ValueError(
                    f"server expects {server_length} bytes, local file has {upload.content_length}"
                )
            server_offset = self._read_offset(response)
            upload.advance_offset(server_offset)
        except ValueError as e:
            return self._fail(transfer, f"Cannot resume: {e}", response)

        # retry_count resets only when a chunk is acknowledged
        self._save(upload)
        logger.info(f"Server holds {server_offset}/{upload.content_length} bytes of {upload.id}")
        return self._start_chunks(transfer)

    def _on_patch_response(
        self,
        transfer: Transfer,
        exchange: Exchange,
        response: TransportResponse,
    ) -> Optional[Exchange]:
        upload = transfer.upload
        if is_retryable_status(response.status) or response.error is not None:
            return self._retry_or_fail(transfer, exchange, response)
        if 400 <= response.status < 500:
            return self._fail(transfer, "Chunk rejected by server", response)
        if not response.ok:
            return self._fail(transfer, "Unexpected PATCH response", response)

        chunk = transfer.chunks[transfer.position]
        expected = exchange.offset + len(chunk)
        is_last = transfer.position + 1 == len(transfer.chunks)
        try:
            new_offset = self._read_offset(response, default=expected if is_last else None)
            if new_offset != expected:
                raise ValueError(f"server acknowledged offset {new_offset}, expected {expected}")
            upload.advance_offset(new_offset)
        except ValueError as e:
            return self._fail(transfer, f"Bad Upload-Offset: {e}", response)

        upload.retry_count = 0
        logger.info(f"Chunk {transfer.position + 1} / {len(transfer.chunks)} complete for {upload.id}")
        if is_last:
            return self._complete(transfer)

        self._save(upload)
        transfer.position += 1
        return self._patch_exchange(transfer)

    # Transitions

    def _start_chunks(self, transfer: Transfer) -> Optional[Exchange]:
        """Read the file once and split what the server does not have yet"""
        upload = transfer.upload
        logger.info(f"Preparing upload data for file {upload.id}")
        try:
            data = self._storage.read(upload.file_name)
        except StorageError as e:
            return self._fail(transfer, e.message, error=e)

        if len(data) != upload.content_length:
            return self._fail(
                transfer,
                f"Local file {upload.file_name} is {len(data)} bytes, expected {upload.content_length}",
            )

        transfer.chunks = split_into_chunks(data[upload.upload_offset:], self.chunk_size)
        transfer.position = 0
        if not transfer.chunks:
            return self._complete(transfer)

        transfer.state = TransferState.UPLOADING
        upload.status = UploadStatus.UPLOADING.value
        self._save(upload)
        return self._patch_exchange(transfer)

    def _patch_exchange(self, transfer: Transfer) -> Exchange:
        chunk = transfer.chunks[transfer.position]
        logger.info(
            f"Upload starting for file {transfer.upload.id} - "
            f"Chunk {transfer.position + 1} / {len(transfer.chunks)}"
        )
        return self._exchange(transfer, build_patch_request(transfer.upload, chunk, self.custom_headers))

    def _retry_or_fail(
        self,
        transfer: Transfer,
        exchange: Exchange,
        response: TransportResponse,
    ) -> Optional[Exchange]:
        upload = transfer.upload
        delay = self.retry_policy.next_delay(upload.retry_count)
        if delay is None:
            return self._fail(
                transfer,
                f"{exchange.request.method} failed after {self.retry_policy.max_attempts} retries",
                response,
            )

        upload.retry_count += 1
        self._save(upload)
        logger.warning(
            f"{exchange.request.method} for {upload.id} failed "
            f"({response.status or response.error}), retry {upload.retry_count}/"
            f"{self.retry_policy.max_attempts} in {delay}s"
        )
        if exchange.state != TransferState.UPLOADING:
            return replace(exchange, delay=delay)

        # The server may have kept part of the chunk: ask for its offset and re-split from there
        transfer.state = TransferState.RESUMING
        head = self._exchange(transfer, build_head_request(upload, self.custom_headers))
        return replace(head, delay=delay)

    def _complete(self, transfer: Transfer) -> None:
        upload = transfer.upload
        transfer.state = TransferState.COMPLETED
        upload.status = UploadStatus.COMPLETED.value
        upload.completed_at = datetime.utcnow()
        upload.error_message = None
        upload.retry_count = 0
        self._save(upload)
        logger.info(f"File {upload.id} uploaded at {upload.upload_location_url}")
        self._notify_success(upload)
        return None

    def _fail(
        self,
        transfer: Transfer,
        message: str,
        response: Optional[TransportResponse] = None,
        error: Optional[BaseException] = None,
    ) -> None:
        failure = UploadFailure(
            message=message,
            status_code=response.status if response else None,
            error=error or (response.error if response else None),
        )
        transfer.state = TransferState.FAILED
        self.fail_upload(transfer.upload, failure)
        return None

    def fail_upload(self, upload: TusUpload, failure: UploadFailure) -> bool:
        """Mark a non-terminal upload failed and report it once"""
        if upload.is_terminal:
            return False
        upload.status = UploadStatus.FAILED.value
        upload.error_message = str(failure)
        self._save(upload)
        logger.error(f"Upload failed: {upload.id} - {failure}")
        self._notify_failure(upload, failure)
        return True

    def cancel(self, upload_id: str) -> bool:
        """Cancel the running transfer if it belongs to upload_id"""
        transfer = self._active
        if transfer is None or transfer.upload.id != upload_id or transfer.upload.is_terminal:
            return False

        transfer.state = TransferState.CANCELED
        transfer.upload.status = UploadStatus.CANCELED.value
        self._save(transfer.upload)
        transfer.canceled.set()
        logger.info(f"Cancelled upload: {upload_id}")
        return True

    # Collaborators

    @staticmethod
    def _read_offset(response: TransportResponse, default: Optional[int] = None) -> int:
        raw = response.headers.get(HEADER_UPLOAD_OFFSET)
        if raw is None:
            if default is None:
                raise ValueError("response carried no Upload-Offset header")
            return default
        try:
            offset = int(str(raw).strip())
        except ValueError:
            raise ValueError(f"Upload-Offset is not an integer: {raw!r}")
        if offset < 0:
            raise ValueError(f"Upload-Offset is negative: {offset}")
        return offset

    @staticmethod
    def _read_length(response: TransportResponse) -> Optional[int]:
        raw = response.headers.get(HEADER_UPLOAD_LENGTH)
        if raw is None:
            return None
        try:
            return int(str(raw).strip())
        except ValueError:
            raise ValueError(f"Upload-Length is not an integer: {raw!r}")

    def _save(self, upload: TusUpload):
        try:
            self._persistence.save_upload(upload)
        except Exception as e:
            logger.error(f"Failed to persist upload {upload.id}: {e}", exc_info=True)

    def _notify_success(self, upload: TusUpload):
        if not self._on_success:
            return
        try:
            self._on_success(upload)
        except Exception as e:
            logger.error(f"Success callback raised for {upload.id}: {e}", exc_info=True)

    def _notify_failure(self, upload: Optional[TusUpload], failure: UploadFailure):
        if not self._on_failure:
            return
        try:
            self._on_failure(upload, failure)
        except Exception as e:
            logger.error(f"Failure callback raised: {e}", exc_info=True)
