import os
import time
from dataclasses import dataclass
from typing import Callable, Optional

import httpx
from flask import current_app

from .services.auth import AccountRegistry
from .services.blobs import BlobStore
from .services.jobs import JobRunner, JobStore, JobWorker
from .services.store import CredentialStore
from .services.sync_api import DocumentAPI
from .services.workflow import UPLOAD_WORKFLOW, UploadWorkflow
from .utils.keys import build_fernet

EXTENSION_KEY = "sendto"


@dataclass
class AppContext:
    """Service handles shared by routes, CLI commands and the job worker."""

    config: dict
    http: httpx.Client
    credentials: CredentialStore
    accounts: AccountRegistry
    blobs: BlobStore
    jobs: JobRunner
    worker: Optional[JobWorker] = None

    def start_worker(self) -> JobWorker:
        if self.worker is None or not self.worker.is_alive():
            self.worker = JobWorker(self.jobs, poll_interval=self.config["JOB_POLL_INTERVAL"])
            self.worker.start()
        return self.worker

    def close(self) -> None:
        if self.worker is not None:
            self.worker.stop()
        self.http.close()


def build_context(
    config,
    http: Optional[httpx.Client] = None,
    clock: Callable[[], float] = time.time,
) -> AppContext:
    data_dir = config["DATA_DIR"]
    db_path = config.get("DATABASE_PATH") or os.path.join(data_dir, "sendto.db")
    blob_dir = config.get("BLOB_DIR") or os.path.join(data_dir, "blobs")
    key_path = config.get("SERVER_ENC_KEY_PATH") or os.path.join(data_dir, "server_secret.key")

    if http is None:
        http = httpx.Client(timeout=config["HTTP_TIMEOUT"])

    credentials = CredentialStore(db_path, build_fernet(key_path, config.get("SERVER_ENC_KEY", "")))
    accounts = AccountRegistry(
        credentials,
        http,
        config["DISCOVERY_URL"],
        clock=clock,
        leeway=config["TOKEN_EXPIRY_LEEWAY"],
        max_size=config["ACCOUNT_CACHE_SIZE"],
    )
    blobs = BlobStore(blob_dir)
    jobs = JobRunner(
        JobStore(db_path),
        retries=config["JOB_STEP_RETRIES"],
        retry_delay=config["JOB_STEP_RETRY_DELAY"],
        clock=clock,
    )
    jobs.register(
        UPLOAD_WORKFLOW,
        UploadWorkflow(
            blobs,
            accounts,
            DocumentAPI(http, config["DOCUMENT_API_URL"]),
            cleanup_delay=config["JOB_CLEANUP_DELAY"],
        ),
    )
    return AppContext(
        config=config,
        http=http,
        credentials=credentials,
        accounts=accounts,
        blobs=blobs,
        jobs=jobs,
    )


def get_context() -> AppContext:
    return current_app.extensions[EXTENSION_KEY]
