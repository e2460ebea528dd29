from typing import Any

from fastapi import APIRouter, Body, Depends, HTTPException, status

from intake_ledger.core.keys import Stage, parse_key
from intake_ledger.schemas.intake import ApprovalOut, LedgerEntryOut, OrderEntryOut, SubmitAccepted
from intake_ledger.services.kv import StoreUnavailableError
from intake_ledger.services.ledger import (
    IntakeLedger,
    LedgerConflictError,
    LedgerInternalError,
    LedgerNotFoundError,
    LedgerUpstreamError,
    LedgerValidationError,
    get_ledger,
)

router = APIRouter()


@router.post("/additem", response_model=SubmitAccepted)
async def add_item(
    payload: Any = Body(...),
    ledger: IntakeLedger = Depends(get_ledger),
) -> SubmitAccepted:
    try:
        result = await ledger.submit(payload)
    except LedgerValidationError as exc:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_CONTENT, detail=str(exc)) from exc
    except LedgerConflictError as exc:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc)) from exc
    except StoreUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
    return SubmitAccepted(key=result.key, order_id=result.order_id)


@router.post("/approve/{order_id}", response_model=ApprovalOut)
async def approve_item(order_id: str, ledger: IntakeLedger = Depends(get_ledger)) -> ApprovalOut:
    try:
        result = await ledger.approve(order_id)
    except LedgerNotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Item not found") from exc
    except LedgerConflictError as exc:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc)) from exc
    except LedgerUpstreamError as exc:
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail=f"geocoding failed: {exc}",
        ) from exc
    except LedgerInternalError as exc:
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail="Internal Server Error") from exc
    except StoreUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc

    return ApprovalOut(
        order_id=result.order_id,
        key=result.key,
        mapbox_data=result.coordinates,
        already_approved=result.already_approved,
    )


@router.get("/pending", response_model=list[LedgerEntryOut])
async def list_pending(ledger: IntakeLedger = Depends(get_ledger)) -> list[LedgerEntryOut]:
    return await _list_stage(ledger, Stage.PENDING)


@router.get("/approved", response_model=list[LedgerEntryOut])
async def list_approved(ledger: IntakeLedger = Depends(get_ledger)) -> list[LedgerEntryOut]:
    return await _list_stage(ledger, Stage.APPROVED)


@router.get("/approvedpickup", response_model=list[LedgerEntryOut])
async def list_approved_pickup(ledger: IntakeLedger = Depends(get_ledger)) -> list[LedgerEntryOut]:
    return await _list_stage(ledger, Stage.APPROVED_PICKUP)


@router.get("/list/{order_id}", response_model=list[OrderEntryOut])
async def list_order(order_id: str, ledger: IntakeLedger = Depends(get_ledger)) -> list[OrderEntryOut]:
    try:
        entries = await ledger.find_order(order_id)
    except LedgerNotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    except StoreUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc

    rows: list[OrderEntryOut] = []
    for entry in entries:
        parsed = parse_key(entry.key)
        if parsed is None:
            continue
        rows.append(OrderEntryOut(key=entry.key, order_id=entry.order_id, value=entry.value, stage=parsed[0]))
    return rows


async def _list_stage(ledger: IntakeLedger, stage: Stage) -> list[LedgerEntryOut]:
    try:
        return [
            LedgerEntryOut(key=entry.key, order_id=entry.order_id, value=entry.value)
            async for entry in ledger.list_stage(stage)
        ]
    except StoreUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
