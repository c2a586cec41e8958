import base64
import json
import logging

import httpx

from ..errors import UpstreamAPIError

logger = logging.getLogger(__name__)


def build_meta_header(file_name: str) -> str:
    """``rM-Meta`` header: base64 JSON naming the document, placed at the root."""
    meta = {"parent": "", "file_name": file_name}
    return base64.b64encode(json.dumps(meta).encode("utf-8")).decode("ascii")


class DocumentAPI:
    def __init__(self, http: httpx.Client, upload_url: str):
        self._http = http
        self._upload_url = upload_url

    def upload(self, access_token: str, file_name: str, content_type: str, body: bytes) -> dict:
        headers = {
            "Authorization": f"Bearer {access_token}",
            "Content-Type": content_type or "application/octet-stream",
            "rM-Meta": build_meta_header(file_name),
        }
        logger.info("Uploading %s to reMarkable (%s, %d bytes)", file_name, headers["Content-Type"], len(body))
        response = self._http.post(self._upload_url, headers=headers, content=body)
        if not response.is_success:
            logger.error("reMarkable API error (%s): %s", response.status_code, response.text)
            raise UpstreamAPIError(response.status_code, response.text)
        try:
            return response.json()
        except ValueError:
            return {"raw": response.text}
