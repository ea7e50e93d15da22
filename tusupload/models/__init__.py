"""Models module"""

from tusupload.models.tus_upload import TusUpload, UploadStatus
from tusupload.models.upload_failure import UploadFailure

__all__ = ["TusUpload", "UploadStatus", "UploadFailure"]
