import logging

from fastapi import APIRouter, Depends, HTTPException, Request, status
from pydantic import ValidationError

from ..errors import ExpenseBotError
from ..pipeline.service import ReceiptPipeline
from ..schemas import RECEIPT_PROCESSING_TASK, ReceiptJob, TaskEnvelope, TaskResult

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/tasks", tags=["tasks"])


def get_pipeline(request: Request) -> ReceiptPipeline:
    """FastAPI dependency returning the process-wide receipt pipeline."""
    pipeline = getattr(request.app.state, "pipeline", None)
    if pipeline is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="Receipt pipeline is not running."
        )
    return pipeline


@router.post("/receipt-processing", response_model=TaskResult)
async def process_receipt_task(
    envelope: TaskEnvelope,
    pipeline: ReceiptPipeline = Depends(get_pipeline),
) -> TaskResult:
    if envelope.type != RECEIPT_PROCESSING_TASK:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST, detail=f"Unsupported task type {envelope.type!r}."
        )
    try:
        job = ReceiptJob.model_validate(envelope.data)
    except ValidationError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Malformed receipt job.") from exc

    try:
        report = await pipeline.process_queued_receipt(job)
    except ExpenseBotError as exc:
        logger.error("Queued receipt job %s failed: %s", job.image.message_id, exc)
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail="Receipt processing failed."
        ) from exc
    return TaskResult(status=report.status.value)
