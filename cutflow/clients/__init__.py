"""External collaborators of the pipeline (analysis, narration, speech, downloads)."""

from cutflow.clients.downloader import HttpDownloader
from cutflow.clients.protocols import (
    AnalysisClient,
    AnalysisRequest,
    NarrationClient,
    NarrationRequest,
    SpeechClient,
)

__all__ = [
    "AnalysisClient",
    "AnalysisRequest",
    "HttpDownloader",
    "NarrationClient",
    "NarrationRequest",
    "SpeechClient",
]
