"""
Write-behind snapshot persistence.

The StateStore hands full coordination snapshots to a SnapshotWriter,
which queues them and drains the queue in the background into a sink.
Sink failures are logged and counted, never raised into the dispatcher.

Sinks:
- FileSnapshotSink: one JSON file per request, written .tmp -> fsync -> replace
- HttpSnapshotSink: POSTs each snapshot to an external record service
"""

import asyncio
import json
import os
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Optional

import httpx

from shared.logging import get_logger

log = get_logger("orchestrator", "persistence")


class SnapshotSink(ABC):
    """Destination for coordination snapshots."""

    name: str = "sink"

    @abstractmethod
    async def write(self, snapshot: dict):
        """Persist one snapshot. May raise; the writer logs and continues."""

    async def close(self):
        pass


class FileSnapshotSink(SnapshotSink):
    """Stores the latest snapshot of each request under ``<data_dir>/requests``."""

    name = "file"

    def __init__(self, data_dir: str | Path):
        self.data_dir = Path(data_dir)
        self.requests_dir = self.data_dir / "requests"
        self.requests_dir.mkdir(parents=True, exist_ok=True)

    def path_for(self, request_id: str) -> Path:
        return self.requests_dir / f"{request_id}.json"

    async def write(self, snapshot: dict):
        await asyncio.to_thread(self._write_atomic, snapshot)

    def _write_atomic(self, snapshot: dict):
        path = self.path_for(snapshot["request_id"])
        temp_path = path.with_suffix(".tmp")
        try:
            with open(temp_path, "w", encoding="utf-8") as f:
                json.dump(snapshot, f, indent=2, default=str)
                f.flush()
                os.fsync(f.fileno())

            # Atomic rename
            os.replace(temp_path, path)
        except Exception:
            if temp_path.exists():
                temp_path.unlink()
            raise

    def load(self, request_id: str) -> Optional[dict]:
        """Read back the last snapshot written for a request."""
        path = self.path_for(request_id)
        if not path.exists():
            return None
        with open(path, "r", encoding="utf-8") as f:
            return json.load(f)


class HttpSnapshotSink(SnapshotSink):
    """POSTs snapshots to ``<base_url>/requests/<request_id>/snapshots``."""

    name = "http"

    def __init__(
        self,
        base_url: str,
        timeout: float = 10.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self._client = httpx.AsyncClient(
            base_url=self.base_url,
            timeout=timeout,
            transport=transport,
        )

    async def write(self, snapshot: dict):
        response = await self._client.post(
            f"/requests/{snapshot['request_id']}/snapshots",
            content=json.dumps(snapshot, default=str),
            headers={"Content-Type": "application/json"},
        )
        response.raise_for_status()

    async def close(self):
        await self._client.aclose()


class SnapshotWriter:
    """
    Background queue between the state store and a sink.

    ``persist`` never blocks and never raises; when the queue is full the
    snapshot is dropped (the next one for the same request supersedes it).
    """

    def __init__(self, sink: SnapshotSink, max_queue: int = 1000):
        self.sink = sink
        self._queue: asyncio.Queue = asyncio.Queue(maxsize=max_queue)
        self._task: Optional[asyncio.Task] = None
        self.written = 0
        self.failed = 0
        self.dropped = 0

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    @property
    def pending(self) -> int:
        return self._queue.qsize()

    async def start(self):
        if self.running:
            return
        self._task = asyncio.create_task(self._drain_loop())
        log.info("orchestrator.persistence.started", sink=self.sink.name)

    async def stop(self, timeout: float = 5.0):
        """Flush what is queued (bounded by timeout), then stop the drain task."""
        if self._task is not None:
            try:
                await asyncio.wait_for(self._queue.join(), timeout=timeout)
            except asyncio.TimeoutError:
                log.warning("orchestrator.persistence.flush_timeout", pending=self.pending)

            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None

        await self.sink.close()
        log.info("orchestrator.persistence.stopped",
                 written=self.written, failed=self.failed, dropped=self.dropped)

    def persist(self, snapshot: dict):
        try:
            self._queue.put_nowait(snapshot)
        except asyncio.QueueFull:
            self.dropped += 1
            log.warning("orchestrator.persistence.snapshot_dropped",
                        request_id=snapshot.get("request_id"),
                        version=snapshot.get("version"))

    async def _drain_loop(self):
        while True:
            snapshot = await self._queue.get()
            try:
                await self.sink.write(snapshot)
                self.written += 1
            except asyncio.CancelledError:
                raise
            except Exception as e:
                self.failed += 1
                log.exception(e, "orchestrator.persistence.write_failed", {
                    "sink": self.sink.name,
                    "request_id": snapshot.get("request_id"),
                    "version": snapshot.get("version"),
                })
            finally:
                self._queue.task_done()

    def get_stats(self) -> dict:
        return {
            "sink": self.sink.name,
            "running": self.running,
            "pending": self.pending,
            "written": self.written,
            "failed": self.failed,
            "dropped": self.dropped,
        }
