"""Resumable uploads over the tus protocol"""

from tusupload.client import TusClient, UploadDelegate
from tusupload.models import TusUpload, UploadFailure, UploadStatus

__all__ = ["TusClient", "UploadDelegate", "TusUpload", "UploadFailure", "UploadStatus"]
