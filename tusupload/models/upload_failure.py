"""Failure details handed to the application"""

from dataclasses import dataclass
from typing import Optional


@dataclass
class UploadFailure:
    """What went wrong with an upload (or with client setup)"""

    message: str
    status_code: Optional[int] = None
    error: Optional[BaseException] = None

    def __str__(self) -> str:
        parts = [self.message]
        if self.status_code is not None:
            parts.append(f"HTTP {self.status_code}")
        if self.error is not None:
            parts.append(f"{type(self.error).__name__}: {self.error}")
        return " - ".join(parts)
