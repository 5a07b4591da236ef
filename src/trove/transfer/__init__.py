"""Chunked, encrypted upload and download orchestration."""

from .download import DownloadOrchestrator
from .events import TransferEvents
from .upload import UploadOrchestrator

__all__ = ["DownloadOrchestrator", "TransferEvents", "UploadOrchestrator"]
