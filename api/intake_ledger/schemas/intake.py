from typing import Any

from pydantic import BaseModel

from intake_ledger.core.keys import Stage


class SubmitAccepted(BaseModel):
    key: str
    order_id: str
    status: str = "pending"


class LedgerEntryOut(BaseModel):
    key: str
    order_id: str
    value: Any = None


class OrderEntryOut(LedgerEntryOut):
    stage: Stage


class ApprovalOut(BaseModel):
    order_id: str
    key: str
    mapbox_data: Any = None
    already_approved: bool = False
