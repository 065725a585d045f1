"""
FastAPI notification hub for local development.

Stands in for the audit backend: accepts start requests, then broadcasts
a scripted progression for each job to the websocket clients subscribed
to it.
"""

import asyncio
import logging
import uuid
from contextlib import asynccontextmanager
from typing import Optional, Sequence

from fastapi import BackgroundTasks, FastAPI, HTTPException, WebSocket, WebSocketDisconnect
from pydantic import ValidationError

from audit_pulse.api import StartAuditRequest
from audit_pulse.config import HubConfig
from audit_pulse.events import (
    ErrorData,
    InboundMessage,
    MessageType,
    message_from_event,
    parse_message,
)
from audit_pulse.reducer import simulated_events
from audit_pulse.stages import AUDIT_STAGES, StageDescriptor

logger = logging.getLogger(__name__)


class NotificationHub:
    """
    Manages the FastAPI app and websocket subscriptions.

    Usage:
        hub = NotificationHub(HubConfig(port=3001))
        await hub.start()   # Serves in background
        ...
        await hub.stop()
    """

    def __init__(
        self,
        config: Optional[HubConfig] = None,
        descriptors: Sequence[StageDescriptor] = AUDIT_STAGES,
    ):
        self.config = config or HubConfig()
        self.descriptors = tuple(descriptors)
        # In-memory job table (job id -> running | completed | cancelled). Finished
        # entries beyond config.max_finished_jobs are evicted oldest first.
        self.jobs: dict[str, str] = {}

        self._subscriptions: dict[WebSocket, set[str]] = {}
        self.app = self._create_app()
        self._server = None
        self._serve_task: Optional[asyncio.Task] = None

    @property
    def client_count(self) -> int:
        return len(self._subscriptions)

    def _create_app(self) -> FastAPI:
        """Create the FastAPI application."""
        app = FastAPI(title="audit-pulse notification hub")

        @app.get("/health")
        async def health() -> dict[str, str]:
            return {"status": "healthy"}

        @app.post("/api/audit")
        async def start_audit(audit: StartAuditRequest, background_tasks: BackgroundTasks) -> dict[str, str]:
            job_id = uuid.uuid4().hex[:12]
            self.jobs[job_id] = "running"
            background_tasks.add_task(self.run_scripted_audit, job_id, audit)
            logger.info(f"[hub] Started audit {job_id} for {audit.url}")
            return {"jobId": job_id}

        @app.get("/api/audit/{job_id}/status")
        async def audit_status(job_id: str) -> dict[str, str]:
            if job_id not in self.jobs:
                raise HTTPException(status_code=404, detail="Audit not found")
            return {"jobId": job_id, "status": self.jobs[job_id]}

        @app.post("/api/audit/{job_id}/cancel")
        async def cancel_audit(job_id: str) -> dict[str, str]:
            if job_id not in self.jobs:
                raise HTTPException(status_code=404, detail="Audit not found")
            status = self.jobs[job_id]
            if status == "running":
                status = "cancelled"
                self._finish_job(job_id, status)
                error = ErrorData(error="Audit cancelled").model_dump(by_alias=True, exclude_none=True)
                await self.broadcast(
                    job_id,
                    InboundMessage(type=MessageType.AUDIT_ERROR.value, job_id=job_id, data=error),
                )
            return {"jobId": job_id, "status": status}

        @app.websocket("/ws")
        async def websocket_endpoint(websocket: WebSocket):
            await websocket.accept()
            self._subscriptions[websocket] = set()
            logger.info("[hub] Client connected")

            try:
                while True:
                    text = await websocket.receive_text()
                    await self._handle_client_message(websocket, text)
            except WebSocketDisconnect:
                logger.info("[hub] Client disconnected")
            finally:
                self._subscriptions.pop(websocket, None)

        return app

    async def _handle_client_message(self, websocket: WebSocket, text: str) -> None:
        try:
            message = parse_message(text)
        except ValidationError as e:
            logger.error(f"[hub] Error parsing message: {e}")
            return

        if message.type == MessageType.SUBSCRIBE_AUDIT.value and message.job_id:
            self._subscriptions.setdefault(websocket, set()).add(message.job_id)
            reply = InboundMessage(type=MessageType.SUBSCRIBED.value, job_id=message.job_id)
            await websocket.send_json(reply.to_wire())
        elif message.type == MessageType.PING.value:
            await websocket.send_json(InboundMessage(type=MessageType.PONG.value).to_wire())
        elif message.type == MessageType.HEARTBEAT.value:
            pass
        else:
            logger.info(f"[hub] Unknown message type: {message.type}")

    async def broadcast(self, job_id: str, message: InboundMessage) -> int:
        """
        Send a message to every client subscribed to job_id.

        Clients whose send fails are dropped.

        Returns:
            Number of clients the message reached.
        """
        payload = message.to_wire()
        targets = [ws for ws, jobs in list(self._subscriptions.items()) if job_id in jobs]

        sent = 0
        disconnected = []
        for ws in targets:
            try:
                await ws.send_json(payload)
                sent += 1
            except Exception:
                disconnected.append(ws)

        for ws in disconnected:
            self._subscriptions.pop(ws, None)
        return sent

    async def run_scripted_audit(self, job_id: str, request: StartAuditRequest) -> None:
        """Broadcast the scripted progression for one job, unless it is cancelled."""
        await asyncio.sleep(self.config.start_delay)
        result = {"jobId": job_id, "url": request.url}

        for event in simulated_events(self.descriptors, result=result):
            if self.jobs.get(job_id) != "running":
                return
            await self.broadcast(job_id, message_from_event(job_id, event))
            await asyncio.sleep(self.config.tick_interval)

        self._finish_job(job_id, "completed")
        logger.info(f"[hub] Audit {job_id} completed")

    def _finish_job(self, job_id: str, status: str) -> None:
        self.jobs[job_id] = status
        finished = [jid for jid, s in self.jobs.items() if s != "running"]
        for jid in finished[: max(0, len(finished) - self.config.max_finished_jobs)]:
            del self.jobs[jid]

    async def start(self) -> None:
        """
        Serve in the background; returns once uvicorn has bound the socket.

        Raises:
            RuntimeError: If uvicorn stopped before it started serving
                (for example, the port is already in use).
        """
        import uvicorn

        server_config = uvicorn.Config(
            self.app,
            host=self.config.host,
            port=self.config.port,
            log_level="warning",
        )
        self._server = uvicorn.Server(server_config)
        self._serve_task = asyncio.create_task(self._server.serve(), name="notification-hub")

        while not self._server.started and not self._serve_task.done():
            await asyncio.sleep(0.05)

        if self._serve_task.done():
            task, self._serve_task = self._serve_task, None
            self._server = None
            error = None if task.cancelled() else task.exception()
            raise RuntimeError(
                f"Notification hub failed to start on {self.config.host}:{self.config.port}"
            ) from error
        logger.info(f"[hub] Listening on {self.config.host}:{self.config.port}")

    async def stop(self, timeout: float = 2.0) -> None:
        """Ask uvicorn to exit; the serve task is cancelled if it overruns timeout."""
        server, self._server = self._server, None
        task, self._serve_task = self._serve_task, None
        if server is not None:
            server.should_exit = True
        if task is None:
            return
        try:
            await asyncio.wait_for(task, timeout=timeout)
        except asyncio.TimeoutError:
            logger.warning("[hub] Shutdown timed out, serve task cancelled")

    def serve(self) -> None:
        """Serve in the foreground until interrupted."""
        import uvicorn

        uvicorn.run(self.app, host=self.config.host, port=self.config.port)


@asynccontextmanager
async def notification_hub(config: Optional[HubConfig] = None):
    """
    Context manager for running the hub in the background.

    Usage:
        async with notification_hub(HubConfig(port=3001)) as hub:
            ...
        # Server stops when context exits
    """
    hub = NotificationHub(config)
    await hub.start()
    try:
        yield hub
    finally:
        await hub.stop()
