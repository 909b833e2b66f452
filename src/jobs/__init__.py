from .stream_jobs import JobStatus, StreamJobProcessor

__all__ = [
    "JobStatus",
    "StreamJobProcessor",
]
