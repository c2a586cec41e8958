import logging
from datetime import datetime, timezone

from ..errors import BlobNotFoundError, DeleteFailure, NotRegisteredError, StepFailed
from .auth import AccountRegistry
from .blobs import BlobStore
from .jobs import Step
from .sync_api import DocumentAPI

logger = logging.getLogger(__name__)

UPLOAD_WORKFLOW = "upload"


class UploadWorkflow:
    """Deliver one staged file to reMarkable, then delete it after a grace period.

    Params: ``auth_id``, ``file_id``, ``file_name`` and optionally ``email``.
    Nothing is kept on the instance between steps; a resumed job only sees
    what the step log recorded.
    """

    def __init__(self, blobs: BlobStore, accounts: AccountRegistry, documents: DocumentAPI, cleanup_delay: float):
        self._blobs = blobs
        self._accounts = accounts
        self._documents = documents
        self._cleanup_delay = cleanup_delay

    def __call__(self, params, step: Step):
        logger.info(
            "[JOB %s] Starting upload of %s for %s", step.job_id, params["file_name"], params["auth_id"]
        )
        file_info = step.do("retrieve file info", lambda: self.retrieve_file_info(params))
        step.do("get authentication", lambda: self.authenticate(params))
        upload = step.do("upload to reMarkable API", lambda: self.upload(file_info))

        logger.info("[JOB %s] Upload successful, waiting before cleanup of %s", step.job_id, file_info["file_name"])
        step.sleep("wait before cleanup", self._cleanup_delay)

        cleanup = "done"
        try:
            step.do("cleanup and delete file", lambda: self.cleanup(file_info))
        except StepFailed as e:
            # Delivery already happened; the orphaned blob needs manual removal
            logger.error("[JOB %s] Cleanup failed, staged file left behind: %s", step.job_id, e.message)
            cleanup = "failed"

        return {
            "file_id": file_info["file_id"],
            "uploaded": upload["uploaded"],
            "remarkable_response": upload["remarkable_response"],
            "cleanup": cleanup,
        }

    def retrieve_file_info(self, params):
        blob = self._blobs.get(params["file_id"])
        if blob is None:
            raise BlobNotFoundError(params["file_id"])
        logger.info("Retrieved file info: %s, size: %s bytes", params["file_name"], blob.size)
        return {
            "email": params.get("email"),
            "file_id": params["file_id"],
            "file_name": params["file_name"],
            "file_size": blob.size,
            "last_modified": blob.uploaded_at,
            "auth_id": params["auth_id"],
        }

    def authenticate(self, params):
        token = self._accounts.get(params["auth_id"]).get_access_token()
        if not token:
            raise NotRegisteredError("No valid access token available. Device may not be registered.")
        logger.info("Retrieved access token for %s (length: %d)", params["auth_id"], len(token))
        # The step log is plaintext; only record that a token exists
        return {"token_obtained": True}

    def upload(self, file_info):
        # Fetched here so a replayed or delayed step never sends a stale token
        access_token = self._accounts.get(file_info["auth_id"]).get_access_token()
        if not access_token:
            raise NotRegisteredError("No valid access token available. Device may not be registered.")
        blob = self._blobs.get(file_info["file_id"])
        if blob is None:
            raise BlobNotFoundError(file_info["file_id"])
        content_type = blob.http_metadata.get("content_type") or "application/octet-stream"
        response = self._documents.upload(access_token, file_info["file_name"], content_type, blob.read())
        if file_info.get("email"):
            logger.info("Uploaded %s to reMarkable for %s", file_info["file_name"], file_info["email"])
        else:
            logger.info("Uploaded %s to reMarkable", file_info["file_name"])
        return {
            "success": True,
            "uploaded": datetime.now(timezone.utc).isoformat(),
            "remarkable_response": response,
        }

    def cleanup(self, file_info):
        try:
            self._blobs.delete(file_info["file_id"])
        except OSError as e:
            raise DeleteFailure(f"Failed to delete file {file_info['file_name']} ({file_info['file_id']}): {e}") from e
        logger.info("Deleted staged file %s (ID: %s)", file_info["file_name"], file_info["file_id"])
        return {"deleted": file_info["file_id"]}
