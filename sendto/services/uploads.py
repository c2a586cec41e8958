import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from ..errors import NotRegisteredError
from .workflow import UPLOAD_WORKFLOW

logger = logging.getLogger(__name__)


@dataclass
class UploadResult:
    success: bool
    file_id: str
    file_name: str
    job_id: str
    job_status: Optional[Dict[str, Any]]
    email: Optional[str] = None


def upload_document(ctx, auth_id, stream, file_name, content_type=None, requester_email=None) -> UploadResult:
    """Stage a document and queue its delivery job.

    Raises NotRegisteredError before anything is stored when the account
    has no registered device.
    """
    logger.info(
        "Starting file upload: %s, auth_id: %s%s",
        file_name, auth_id, f", email: {requester_email}" if requester_email else "",
    )
    if not ctx.accounts.get(auth_id).is_registered():
        logger.warning("Authentication check failed for auth_id: %s", auth_id)
        raise NotRegisteredError("Device not registered or authentication expired")

    file_id = str(uuid.uuid4())
    safe_name = file_name.replace('"', "'")
    blob = ctx.blobs.put(
        file_id,
        stream,
        content_type=content_type or "application/octet-stream",
        content_disposition=f'attachment; filename="{safe_name}"',
        metadata={
            "original_file_name": file_name,
            "uploaded_by": requester_email or "web-upload",
            "uploaded_at": datetime.now(timezone.utc).isoformat(),
            "auth_id": auth_id,
        },
    )
    logger.info("Stored %s as %s (%s bytes)", file_name, file_id, blob.size)

    params = {"file_id": file_id, "file_name": file_name, "auth_id": auth_id}
    if requester_email:
        params["email"] = requester_email
    handle = ctx.jobs.create(UPLOAD_WORKFLOW, params)
    job_status = handle.status()
    logger.info("Job created with ID: %s, status: %s", handle.id, job_status["status"] if job_status else None)

    return UploadResult(
        success=True,
        file_id=file_id,
        file_name=file_name,
        job_id=handle.id,
        job_status=job_status,
        email=requester_email,
    )
