"""End-to-end tests for TusClient against the in-memory tus server"""

import asyncio
import shutil
from unittest.mock import Mock

import pytest

from tusupload import TusClient, UploadDelegate, UploadStatus
from tusupload.exceptions import StorageError
from tusupload.protocol import decode_metadata


@pytest.fixture
def delegate():
    return Mock(spec=UploadDelegate)


@pytest.fixture
def client(test_settings, delegate, tus_server, database):
    return TusClient(
        config=test_settings,
        delegate=delegate,
        execute=tus_server.execute,
        database=database,
    )


class TestUpload:
    @pytest.mark.asyncio
    async def test_start_without_pending_uploads(self, client):
        assert await client.start() == []
        assert client.status == "ready"
        assert client.current_uploads == []

    @pytest.mark.asyncio
    async def test_upload_data(self, client, tus_server, delegate, database):
        await client.start()

        upload = await client.upload_data(b"hello tus world", "greeting.txt", {"type": "text/plain"})
        assert client.current_uploads == [upload]
        await client.wait_until_idle()

        assert upload.status == UploadStatus.COMPLETED.value
        assert upload.upload_location_url == "http://tus.example.com/files/1"
        assert upload.file_name.endswith(".txt")
        resource = tus_server.resources["/files/1"]
        assert bytes(resource["data"]) == b"hello tus world"
        assert decode_metadata(resource["metadata"]) == {"filename": "greeting.txt", "type": "text/plain"}
        assert len(tus_server.calls("PATCH")) == 4
        delegate.on_success.assert_called_once_with(upload)
        assert database.get_upload(upload.id).status == UploadStatus.COMPLETED.value
        assert not client.storage.exists(upload.file_name)
        assert client.status == "ready"

    @pytest.mark.asyncio
    async def test_upload_file_copies_into_store(self, client, tus_server, tmp_path):
        source = tmp_path / "report.pdf"
        source.write_bytes(b"%PDF-1.4 data")
        await client.start()

        upload = await client.upload_file(source)
        await client.wait_until_idle()

        assert upload.get_metadata() == {"filename": "report.pdf"}
        assert upload.content_length == len(b"%PDF-1.4 data")
        assert bytes(tus_server.resources["/files/1"]["data"]) == b"%PDF-1.4 data"
        assert source.exists()

    @pytest.mark.asyncio
    async def test_upload_missing_file(self, client, delegate, tmp_path):
        await client.start()

        with pytest.raises(StorageError):
            await client.upload_file(tmp_path / "nope.bin")

        upload, failure = delegate.on_failure.call_args[0]
        assert upload is None
        assert "nope.bin" in failure.message
        assert client.current_uploads == []

    @pytest.mark.asyncio
    async def test_upload_uncopyable_path(self, client, delegate, tmp_path):
        await client.start()
        folder = tmp_path / "folder"
        folder.mkdir()

        with pytest.raises(StorageError):
            await client.upload_file(folder)

        delegate.on_failure.assert_called_once()
        upload, failure = delegate.on_failure.call_args[0]
        assert upload is None
        assert isinstance(failure.error, StorageError)
        assert client.current_uploads == []

    @pytest.mark.asyncio
    async def test_upload_data_store_unavailable(self, client, delegate):
        await client.start()
        shutil.rmtree(client.storage.base_path)

        with pytest.raises(StorageError):
            await client.upload_data(b"abc", "a.txt")

        delegate.on_failure.assert_called_once()
        assert delegate.on_failure.call_args[0][0] is None
        assert client.current_uploads == []

    @pytest.mark.asyncio
    async def test_invalid_metadata_key(self, client, tus_server):
        await client.start()

        with pytest.raises(ValueError):
            await client.upload_data(b"abc", "a.txt", {"bad key": "x"})

        assert tus_server.requests == []

    @pytest.mark.asyncio
    async def test_uploads_are_sequential(self, client, tus_server, delegate):
        await client.start()

        first = await client.upload_data(b"11111111", "one.bin")
        second = await client.upload_data(b"2222", "two.bin")
        await client.wait_until_idle()

        methods = [(r.method, r.url) for r in tus_server.requests]
        assert methods == [
            ("POST", "http://tus.example.com/files/"),
            ("PATCH", "http://tus.example.com/files/1"),
            ("PATCH", "http://tus.example.com/files/1"),
            ("POST", "http://tus.example.com/files/"),
            ("PATCH", "http://tus.example.com/files/2"),
        ]
        assert [c.args[0] for c in delegate.on_success.call_args_list] == [first, second]


class TestRestore:
    @pytest.mark.asyncio
    async def test_start_resumes_persisted_upload(self, client, tus_server, make_upload, delegate):
        data = b"abcdefghijkl"
        location = tus_server.add_resource("/files/9", len(data), data[:4])
        upload = make_upload(
            data,
            status=UploadStatus.UPLOADING.value,
            upload_location_url=location,
            upload_offset=4,
        )
        make_upload(b"done", status=UploadStatus.COMPLETED.value)

        restored = await client.start()
        await client.wait_until_idle()

        assert [u.id for u in restored] == [upload.id]
        assert [r.method for r in tus_server.requests] == ["HEAD", "PATCH", "PATCH"]
        assert bytes(tus_server.resources["/files/9"]["data"]) == data
        assert delegate.on_success.call_args[0][0].id == upload.id

    @pytest.mark.asyncio
    async def test_start_is_idempotent(self, client, make_upload):
        make_upload(b"abcd")

        first = await client.start()
        second = await client.start()
        await client.wait_until_idle()

        assert len(first) == 1
        assert second == []


class TestCancelAndRetry:
    @pytest.mark.asyncio
    async def test_retry_failed_upload_from_scratch(self, client, tus_server, delegate):
        tus_server.fail("POST", 0, status=500)
        await client.start()

        upload = await client.upload_data(b"abcdef", "a.bin")
        await client.wait_until_idle()
        assert upload.status == UploadStatus.FAILED.value
        assert "HTTP 500" in upload.error_message
        assert client.storage.exists(upload.file_name)

        assert await client.retry(upload.id) is True
        await client.wait_until_idle()

        stored = client.get_upload(upload.id)
        assert stored.status == UploadStatus.COMPLETED.value
        assert stored.error_message is None
        assert len(tus_server.calls("POST")) == 2
        delegate.on_failure.assert_called_once()
        delegate.on_success.assert_called_once()

    @pytest.mark.asyncio
    async def test_retry_resumes_from_server_offset(self, client, tus_server):
        tus_server.fail("PATCH", 1, status=404)
        await client.start()

        upload = await client.upload_data(b"abcdefgh", "a.bin")
        await client.wait_until_idle()
        assert upload.status == UploadStatus.FAILED.value
        assert upload.upload_offset == 4

        assert await client.retry(upload.id) is True
        await client.wait_until_idle()

        assert [r.method for r in tus_server.requests] == ["POST", "PATCH", "PATCH", "HEAD", "PATCH"]
        assert bytes(tus_server.resources["/files/1"]["data"]) == b"abcdefgh"
        assert client.get_upload(upload.id).status == UploadStatus.COMPLETED.value

    @pytest.mark.asyncio
    async def test_retry_rejects_non_failed_upload(self, client):
        await client.start()

        upload = await client.upload_data(b"abcd", "a.bin")
        await client.wait_until_idle()

        assert await client.retry(upload.id) is False
        assert await client.retry("missing") is False

    @pytest.mark.asyncio
    async def test_retry_requires_local_file(self, client, tus_server):
        tus_server.fail("POST", 0, status=400)
        await client.start()

        upload = await client.upload_data(b"abcd", "a.bin")
        await client.wait_until_idle()
        client.storage.delete(upload.file_name)

        assert await client.retry(upload.id) is False

    @pytest.mark.asyncio
    async def test_cancel_pending_upload(self, client, tus_server, delegate):
        tus_server.gate = asyncio.Event()
        await client.start()

        first = await client.upload_data(b"abcd", "a.bin")
        second = await client.upload_data(b"efgh", "b.bin")
        assert client.status == "uploading"

        assert await client.cancel(second.id) is True
        tus_server.gate.set()
        await client.wait_until_idle()

        assert first.status == UploadStatus.COMPLETED.value
        assert client.get_upload(second.id).status == UploadStatus.CANCELED.value
        delegate.on_success.assert_called_once_with(first)

    @pytest.mark.asyncio
    async def test_close_keeps_progress(self, client, tus_server, database):
        tus_server.gate = asyncio.Event()
        await client.start()

        upload = await client.upload_data(b"abcd", "a.bin")
        await client.close()

        assert [u.id for u in database.restore_uploads()] == [upload.id]
        assert client.get_status()["running"] is False


class TestDelegate:
    def test_default_delegate_only_logs(self):
        delegate = UploadDelegate()
        upload = Mock(id="u1", upload_location_url="http://tus.example.com/files/1")

        delegate.on_success(upload)
        delegate.on_failure(None, Mock())
