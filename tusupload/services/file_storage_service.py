"""File store holding local copies of files waiting for upload"""

import shutil
from pathlib import Path
from typing import Callable, Optional, Union

from tusupload.exceptions import StorageError
from tusupload.models.tus_upload import TusUpload
from tusupload.models.upload_failure import UploadFailure
from tusupload.utils.logger import get_logger

logger = get_logger(__name__)

FailureReporter = Callable[[Optional[TusUpload], UploadFailure], None]


class FileStorageService:
    """
    Local directory keyed by file name.

    Directory setup and cleanup failures are reported through the
    injected report_failure capability with upload=None. Calls made on behalf
    of a caller raise StorageError instead.
    """

    def __init__(self, base_path: Union[str, Path], report_failure: Optional[FailureReporter] = None):
        self.base_path = Path(base_path)
        self._report_failure = report_failure

    def _report(self, message: str, error: Optional[BaseException] = None):
        logger.error(f"{message}: {error}" if error else message)
        if self._report_failure:
            self._report_failure(None, UploadFailure(message=message, error=error))

    def path_for(self, name: str) -> Path:
        return self.base_path / name

    def ensure_directory(self) -> bool:
        """Create the store directory; an existing directory is fine"""
        try:
            self.base_path.mkdir(parents=True, exist_ok=True)
            return True
        except OSError as e:
            self._report(f"Failed creating file store directory {self.base_path}", e)
            return False

    def exists(self, name: str) -> bool:
        return self.path_for(name).is_file()

    def read(self, name: str) -> bytes:
        """
        Read a stored file.

        Raises:
            StorageError: If the file cannot be read
        """
        try:
            return self.path_for(name).read_bytes()
        except OSError as e:
            raise StorageError(f"Failed reading {name} from file store: {e}") from e

    def write(self, name: str, data: bytes) -> Path:
        """
        Store bytes under name.

        Raises:
            StorageError: If the file cannot be written
        """
        target = self.path_for(name)
        try:
            target.write_bytes(data)
        except OSError as e:
            raise StorageError(f"Failed writing {name} to file store: {e}") from e
        logger.debug(f"Stored {len(data)} bytes as {name}")
        return target

    def copy_in(self, source: Union[str, Path], name: str) -> Path:
        """
        Copy a local file into the store under name.

        Raises:
            StorageError: If the source cannot be copied
        """
        target = self.path_for(name)
        try:
            shutil.copyfile(source, target)
        except OSError as e:
            raise StorageError(f"Failed copying {source} into file store: {e}") from e
        logger.debug(f"Copied {source} into file store as {name}")
        return target

    def delete(self, name: str) -> bool:
        """Remove a stored file; failures are reported and return False"""
        try:
            self.path_for(name).unlink()
            logger.debug(f"Deleted {name} from file store")
            return True
        except OSError as e:
            self._report(f"Failed deleting file {name} from file store", e)
            return False

    def size_of(self, path: Union[str, Path]) -> int:
        """
        Size in bytes of a local file.

        Raises:
            StorageError: If the file cannot be inspected
        """
        try:
            return Path(path).stat().st_size
        except OSError as e:
            raise StorageError(f"Failed to get a size attribute from path: {path}: {e}") from e
