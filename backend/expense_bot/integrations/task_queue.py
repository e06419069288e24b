from __future__ import annotations

import asyncio
import logging

import httpx

from ..pipeline.ports import AsyncTaskQueue
from ..schemas import RECEIPT_PROCESSING_TASK, ReceiptJob

logger = logging.getLogger(__name__)

TASK_PATH = "/tasks/receipt-processing"


class HttpTaskQueue(AsyncTaskQueue):
    """Posts escalated receipt jobs back to this service's task endpoint.

    Delivery happens in the background after ``delay`` seconds; the caller
    never waits for it.
    """

    def __init__(
        self,
        service_url: str,
        delay: float = 2.0,
        timeout: float = 60.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.endpoint = f"{service_url.rstrip('/')}{TASK_PATH}"
        self.delay = delay
        self.timeout = timeout
        self.transport = transport
        self._inflight: set[asyncio.Task[None]] = set()

    def enqueue_receipt_job(self, job: ReceiptJob) -> None:
        task = asyncio.get_running_loop().create_task(self._deliver(job))
        self._inflight.add(task)
        task.add_done_callback(self._inflight.discard)

    async def _deliver(self, job: ReceiptJob) -> None:
        if self.delay > 0:
            await asyncio.sleep(self.delay)
        payload = {"type": RECEIPT_PROCESSING_TASK, "data": job.model_dump(mode="json")}
        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self.transport) as client:
                response = await client.post(self.endpoint, json=payload)
                response.raise_for_status()
        except httpx.HTTPError as exc:
            logger.error("Receipt job for message %s failed: %s", job.image.message_id, exc)
            return
        logger.info("Receipt job for message %s delivered", job.image.message_id)

    async def drain(self) -> None:
        """Wait for every job handed off so far."""
        if self._inflight:
            await asyncio.gather(*list(self._inflight))
