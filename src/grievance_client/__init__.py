"""
Grievance client library

Files complaints against the intake API and keeps the ones that could not be
sent in a local retry queue.

Usage:
    from grievance_client import ComplaintAPI, ComplaintSubmission, OfflineSubmissionQueue

    api = ComplaintAPI("https://api.example.org/api/v1", token=token)
    queue = OfflineSubmissionQueue(api, "pending_submissions.json")
    await queue.save_to_queue(ComplaintSubmission(summary="Pothole on Station Road"))
    queue.start_auto_retry()
"""

from .api import ComplaintAPI
from .errors import ApiError, is_retryable, map_api_error
from .models import ComplaintReceipt, ComplaintSubmission, Location
from .offline import OfflineSubmissionQueue, SubmissionDispatcher

__version__ = "0.1.0"
__all__ = [
    "ComplaintAPI",
    "ApiError",
    "is_retryable",
    "map_api_error",
    "ComplaintReceipt",
    "ComplaintSubmission",
    "Location",
    "OfflineSubmissionQueue",
    "SubmissionDispatcher",
]
