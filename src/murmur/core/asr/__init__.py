from .backends import SegmentResult, SherpaOnnxBackend, create_backend
from .downloader import DownloadJob, DownloadManager
from .model_manager import ModelHandle, ModelManager, SlotState
from .models import ModelDescriptor
from .transcription_worker import CancellationToken, TranscriptionWorker, WorkerOutcome

__all__ = [
    "CancellationToken",
    "DownloadJob",
    "DownloadManager",
    "ModelDescriptor",
    "ModelHandle",
    "ModelManager",
    "SegmentResult",
    "SherpaOnnxBackend",
    "SlotState",
    "TranscriptionWorker",
    "WorkerOutcome",
    "create_backend",
]
