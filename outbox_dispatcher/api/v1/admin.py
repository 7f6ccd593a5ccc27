import logging
from fastapi import APIRouter, Depends, HTTPException, Request, status
from typing import Optional

from outbox_dispatcher.core.errors import DispatcherError
from outbox_dispatcher.schemas.admin import (
    ConsumerLagResponse,
    CursorResponse,
    DeadLetterQuery,
    DeadLetterResponse,
    InstanceResponse,
    PartitionStatusResponse,
    PurgeRequest,
    RebalanceResponse,
    ReplayRequest,
    ReplayResponse,
)
from outbox_dispatcher.schemas.response import SuccessResponse
from outbox_dispatcher.services.admin import AdminService
from outbox_dispatcher.stores.base import DeadLetterFilter

router = APIRouter()
log = logging.getLogger("uvicorn")


def get_admin_service(request: Request) -> AdminService:
    """The AdminService is built in the app lifespan and kept on app.state."""
    admin = getattr(request.app.state, "admin", None)
    if admin is None:
        raise HTTPException(status_code=503, detail="Dispatcher stores are not initialised.")
    return admin


def _filter(query: DeadLetterQuery) -> DeadLetterFilter:
    return DeadLetterFilter(
        partition_id=query.partition_id,
        consumer_id=query.consumer_id,
        partition_key=query.partition_key,
        include_drained=query.include_drained,
        limit=query.limit,
    )


@router.get("/status", response_model=SuccessResponse)
async def status_endpoint(
    partition_id: Optional[int] = None,
    consumer_id: Optional[str] = None,
    admin: AdminService = Depends(get_admin_service),
):
    """Lag (head id - cursor id) per partition and consumer, with current owners."""
    try:
        statuses = await admin.status(partition_id=partition_id, consumer_id=consumer_id)
        data = [
            PartitionStatusResponse(
                partition_id=s.partition_id,
                head_id=s.head_id,
                owner=s.owner,
                fencing_token=s.fencing_token,
                lease_expires_at=s.lease_expires_at,
                dead_letters=s.dead_letters,
                consumers=[ConsumerLagResponse(**vars(c)) for c in s.consumers],
            ).model_dump()
            for s in statuses
        ]
        return SuccessResponse(data=data)
    except DispatcherError:
        raise
    except Exception as e:
        log.error(f"Error building status report: {e}")
        raise HTTPException(status_code=500, detail="Server failed to build status report.")


@router.post("/rebalance", status_code=status.HTTP_202_ACCEPTED, response_model=SuccessResponse)
async def rebalance_endpoint(admin: AdminService = Depends(get_admin_service)):
    """Revokes leases held by non-desired owners. Instances converge on their next tick."""
    try:
        assignment = await admin.rebalance()
        data = RebalanceResponse(
            assignment=assignment,
            message="Rebalance triggered; instances converge on their next heartbeat.",
        ).model_dump()
        return SuccessResponse(data=data)
    except DispatcherError:
        raise
    except Exception as e:
        log.error(f"Error forcing rebalance: {e}")
        raise HTTPException(status_code=500, detail="Server failed to force a rebalance.")


@router.post("/replay", response_model=SuccessResponse)
async def replay_endpoint(request_data: ReplayRequest, admin: AdminService = Depends(get_admin_service)):
    """Resets a consumer's cursor for one or all partitions."""
    try:
        result = await admin.replay(
            request_data.consumer_id,
            partition_id=request_data.partition_id,
            all_partitions=request_data.all_partitions,
            to_id=request_data.to_id,
            to_beginning=request_data.to_beginning,
        )
        log.info(f"Replay for {result.consumer_id} reset {len(result.reset)} partition(s).")
        data = ReplayResponse(
            consumer_id=result.consumer_id,
            reset=[CursorResponse(**vars(p)) for p in result.reset],
            skipped=result.skipped,
            message="Cursor reset; records are redelivered on the next poll cycle.",
        ).model_dump()
        return SuccessResponse(data=data)
    except DispatcherError:
        raise
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except Exception as e:
        log.error(f"Error replaying for {request_data.consumer_id}: {e}")
        raise HTTPException(status_code=500, detail="Server failed to reset the cursor.")


@router.get("/dead-letters", response_model=SuccessResponse)
async def list_dead_letters_endpoint(
    query: DeadLetterQuery = Depends(),
    admin: AdminService = Depends(get_admin_service),
):
    try:
        entries = await admin.list_dead_letters(_filter(query))
        return SuccessResponse(data=[DeadLetterResponse.from_entry(e).model_dump() for e in entries])
    except DispatcherError:
        raise
    except Exception as e:
        log.error(f"Error listing dead letters: {e}")
        raise HTTPException(status_code=500, detail="Server failed to list dead letters.")


@router.post("/dead-letters/drain", response_model=SuccessResponse)
async def drain_dead_letters_endpoint(query: DeadLetterQuery, admin: AdminService = Depends(get_admin_service)):
    """Returns matching dead letters and stamps them as drained."""
    try:
        entries = await admin.drain_dead_letters(_filter(query))
        return SuccessResponse(data=[DeadLetterResponse.from_entry(e).model_dump() for e in entries])
    except DispatcherError:
        raise
    except Exception as e:
        log.error(f"Error draining dead letters: {e}")
        raise HTTPException(status_code=500, detail="Server failed to drain dead letters.")


@router.post("/dead-letters/purge", response_model=SuccessResponse)
async def purge_dead_letters_endpoint(
    request_data: Optional[PurgeRequest] = None,
    admin: AdminService = Depends(get_admin_service),
):
    try:
        retention_days = request_data.retention_days if request_data else None
        purged = await admin.purge_dead_letters(retention_days)
        return SuccessResponse(data={"purged": purged})
    except DispatcherError:
        raise
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except Exception as e:
        log.error(f"Error purging dead letters: {e}")
        raise HTTPException(status_code=500, detail="Server failed to purge dead letters.")


@router.get("/instances", response_model=SuccessResponse)
async def instances_endpoint(admin: AdminService = Depends(get_admin_service)):
    """Registered dispatcher instances with liveness and owned partitions."""
    try:
        instances = await admin.instances()
        return SuccessResponse(data=[InstanceResponse(**vars(i)).model_dump() for i in instances])
    except DispatcherError:
        raise
    except Exception as e:
        log.error(f"Error listing instances: {e}")
        raise HTTPException(status_code=500, detail="Server failed to list dispatcher instances.")
