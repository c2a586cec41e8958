import logging
from email import policy
from email.parser import BytesParser
from email.utils import getaddresses, parseaddr
from typing import List

from ..errors import EmailRejected, NotRegisteredError
from .uploads import UploadResult, upload_document

logger = logging.getLogger(__name__)

DEFAULT_FILE_NAME = "send to remarkable upload"


def _recipient_auth_id(message, email_domain=""):
    # Raw values: the structured header turns a malformed address into "<>"
    raw_to = [str(value) for name, value in message.raw_items() if name.lower() == "to"]
    addresses = [addr for _, addr in getaddresses(raw_to) if addr]
    if not addresses:
        raise EmailRejected("Email must have a 'to' address")
    if email_domain:
        addresses = [a for a in addresses if a.rsplit("@", 1)[-1].lower() == email_domain.lower()]
        if not addresses:
            raise EmailRejected(f"Email must be addressed to @{email_domain}")
    local_part = addresses[0].split("@", 1)[0].strip()
    if not local_part:
        raise EmailRejected("Failed to extract authentication ID from email address")
    return local_part


def _attachments(message):
    return [
        part for part in message.walk()
        if not part.is_multipart() and (part.is_attachment() or part.get_filename())
    ]


def ingest_email(ctx, raw: bytes, email_domain: str = "") -> List[UploadResult]:
    """Queue every attachment of an inbound email for delivery.

    The local part of the ``To`` address is the auth id. Raises
    EmailRejected with a reason suitable for bouncing the message.
    """
    message = BytesParser(policy=policy.default).parsebytes(raw)
    sender = parseaddr(str(message.get("From", "")))[1] or None
    subject = str(message.get("Subject", "") or "").strip()
    logger.info("Received email from: %s, subject: %s", sender, subject)

    attachments = _attachments(message)
    if not attachments:
        raise EmailRejected("Email must contain at least one attachment")
    auth_id = _recipient_auth_id(message, email_domain)

    results = []
    for part in attachments:
        file_name = subject or part.get_filename() or DEFAULT_FILE_NAME
        content = part.get_payload(decode=True) or b""
        logger.info("Processing attachment: %s", part.get_filename())
        try:
            result = upload_document(
                ctx,
                auth_id,
                content,
                file_name,
                content_type=part.get_content_type() or "application/octet-stream",
                requester_email=sender,
            )
        except NotRegisteredError as e:
            raise EmailRejected(str(e)) from e
        results.append(result)
    return results
