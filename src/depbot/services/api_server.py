"""Local job API the updater containers call back to.

Endpoints, all under ``/update_jobs/{id}``:
  - GET   /details            (job token)
  - GET   /credentials        (credentials token)
  - POST  /{record_type}      (job token)
  - PATCH /mark_as_processed  (job token)
"""

import logging
import re
import socket
import threading
import time
from typing import Any, Optional

import uvicorn
from fastapi import FastAPI, Header, HTTPException, Response
from pydantic import BaseModel

from depbot.errors import DepbotError, ProvisioningError
from depbot.models import OutputRecord
from depbot.services.job_store import CREDENTIALS_TOKEN, JOB_TOKEN, JobStore

RECORD_TYPE_PATTERN = re.compile(r"^[a-z][a-z0-9_]{0,63}$")
CONTAINER_HOST = "host.docker.internal"

logger = logging.getLogger("depbot")


class RecordPayload(BaseModel):
    """Body of a record posted by an updater."""

    data: Any = None


def create_app(store: JobStore) -> FastAPI:
    """Creates the job API bound to one store."""

    app = FastAPI()
    app.state.store = store

    def _authenticate(job_id: int, authorization: Optional[str], token_kind: str):
        entry = store.authenticate(job_id, authorization, token_kind)
        if entry is None:
            logger.warning("Rejected unauthenticated request for job %s", job_id)
            raise HTTPException(status_code=401, detail="Unauthorized")
        return entry

    def _record(job_id: int, record_type: str, payload: Optional[RecordPayload], authorization: Optional[str]):
        _authenticate(job_id, authorization, JOB_TOKEN)
        if not RECORD_TYPE_PATTERN.match(record_type):
            raise HTTPException(status_code=404, detail="Unknown record type")
        data = payload.data if payload and payload.data is not None else {}
        store.append_record(job_id, OutputRecord(type=record_type, data=data))
        logger.debug("Job %s recorded '%s'", job_id, record_type)
        return Response(status_code=204)

    @app.get("/health")
    async def health() -> dict:
        return {"status": "ok"}

    @app.get("/update_jobs/{job_id}/details")
    async def details(job_id: int, authorization: Optional[str] = Header(default=None)) -> dict:
        _authenticate(job_id, authorization, JOB_TOKEN)
        return store.details(job_id)

    @app.get("/update_jobs/{job_id}/credentials")
    async def credentials(job_id: int, authorization: Optional[str] = Header(default=None)) -> list:
        entry = _authenticate(job_id, authorization, CREDENTIALS_TOKEN)
        try:
            resolved = entry.resolve_credentials()
        except ProvisioningError as exc:
            logger.error("Job %s: %s", job_id, exc)
            entry.provisioning_error = str(exc)
            raise HTTPException(status_code=500, detail="Unable to resolve job credentials.") from exc
        return resolved

    @app.patch("/update_jobs/{job_id}/mark_as_processed")
    async def mark_as_processed(
        job_id: int,
        payload: Optional[RecordPayload] = None,
        authorization: Optional[str] = Header(default=None),
    ):
        return _record(job_id, "mark_as_processed", payload, authorization)

    @app.post("/update_jobs/{job_id}/{record_type}")
    async def record(
        job_id: int,
        record_type: str,
        payload: Optional[RecordPayload] = None,
        authorization: Optional[str] = Header(default=None),
    ):
        return _record(job_id, record_type, payload, authorization)

    return app


class ApiServer:
    """Runs the job API with uvicorn on a background thread."""

    def __init__(self, store: JobStore, host: str = "0.0.0.0", port: int = 0, startup_timeout: float = 10.0):
        self.store = store
        self.host = host
        self.port = port
        self.startup_timeout = startup_timeout
        self.app = create_app(store)
        self.server: Optional[uvicorn.Server] = None
        self._thread: Optional[threading.Thread] = None
        self._socket: Optional[socket.socket] = None

    @property
    def container_api_url(self) -> str:
        return f"http://{CONTAINER_HOST}:{self.port}/update_jobs"

    @property
    def local_api_url(self) -> str:
        return f"http://127.0.0.1:{self.port}/update_jobs"

    def start(self) -> "ApiServer":
        sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        try:
            sock.bind((self.host, self.port))
        except OSError as exc:
            sock.close()
            raise DepbotError(f"Could not bind the job API to {self.host}:{self.port}. {exc}") from exc
        self._socket = sock
        self.port = sock.getsockname()[1]

        config = uvicorn.Config(self.app, log_level="warning", access_log=False)
        self.server = uvicorn.Server(config)
        self._thread = threading.Thread(
            target=self.server.run,
            kwargs={"sockets": [sock]},
            name="depbot-job-api",
            daemon=True,
        )
        self._thread.start()

        deadline = time.monotonic() + self.startup_timeout
        while not self.server.started:
            if not self._thread.is_alive() or time.monotonic() > deadline:
                self.stop()
                raise DepbotError("The job API server failed to start.")
            time.sleep(0.05)

        logger.info("Job API listening on port %s", self.port)
        return self

    def stop(self):
        if self.server is not None:
            self.server.should_exit = True
        if self._thread is not None:
            self._thread.join(timeout=self.startup_timeout)
            self._thread = None
        if self._socket is not None:
            self._socket.close()
            self._socket = None

    def __enter__(self):
        return self.start()

    def __exit__(self, exc_type, exc, tb):
        self.stop()
