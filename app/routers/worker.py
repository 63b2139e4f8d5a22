"""
Worker router — progress callbacks from the Automation Worker.

  POST /worker/operations/{id}/progress

Authenticated with `Authorization: Bearer <WORKER_SECRET>`. The worker
reports each status it reaches together with the artifacts the member
needs next (package list, captcha challenge). Undocumented transitions
are rejected with 409 and change nothing.
"""

import uuid

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from app.database import get_db
from app.dependencies import verify_worker_secret
from app.schemas.operation import OperationResponse, WorkerProgressRequest
from app.services import operation_service

router = APIRouter(dependencies=[Depends(verify_worker_secret)])


@router.post(
    "/operations/{operation_id}/progress",
    response_model=OperationResponse,
    summary="Report operation progress",
)
async def report_progress(
    operation_id: uuid.UUID,
    request: WorkerProgressRequest,
    db: AsyncSession = Depends(get_db),
):
    """
    Apply one status transition reported by the worker.

    FAILED refunds the operation unless it was already refunded.
    """
    packages = (
        [p.model_dump() for p in request.packages]
        if request.packages is not None
        else None
    )
    return await operation_service.advance_operation(
        db=db,
        operation_id=operation_id,
        status=request.status,
        packages=packages,
        captcha_image=request.captcha_image,
        captcha_expiry=request.captcha_expiry,
        message=request.message,
        provider_account_id=request.provider_account_id,
    )
