from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import AsyncIterator
from dataclasses import dataclass, field
from typing import Any, Protocol

from fastapi import Depends

from intake_ledger.core.config import get_settings
from intake_ledger.core.keys import Stage, is_valid_order_id, parse_legacy_pending_key, stage_key
from intake_ledger.core.telemetry import ledger_span, record_ledger_outcome
from intake_ledger.services.geocoding import GeocodeResult, GeocodingError, get_geocoder
from intake_ledger.services.kv import KeyValueStore, MoveOutcome, StoreUnavailableError, get_store

logger = logging.getLogger(__name__)


class LedgerError(Exception):
    """Base ledger error."""

    outcome = "error"


class LedgerNotFoundError(LedgerError):
    """Raised when no record exists at the expected key."""

    outcome = "not_found"


class LedgerUpstreamError(LedgerError):
    """Raised when the geocoding collaborator fails."""

    outcome = "geocoding_failed"


class LedgerInternalError(LedgerError):
    """Raised for malformed stored records and unexpected store failures."""

    outcome = "internal_error"


class LedgerValidationError(LedgerError):
    """Raised when a submission lacks the fields its key is built from."""

    outcome = "invalid"


class LedgerConflictError(LedgerError):
    """Raised when an operation would break the one-live-key-per-order rule."""

    outcome = "conflict"


class Geocoder(Protocol):
    async def geocode(self, address: str) -> GeocodeResult: ...


@dataclass(slots=True)
class LedgerEntry:
    key: str
    order_id: str
    value: Any


@dataclass(slots=True)
class LedgerPage:
    entries: list[LedgerEntry] = field(default_factory=list)
    next_cursor: str | None = None


@dataclass(slots=True)
class SubmitResult:
    key: str
    order_id: str


@dataclass(slots=True)
class ApprovalResult:
    order_id: str
    key: str
    coordinates: Any
    record: Any
    already_approved: bool = False


@dataclass(slots=True)
class ReconcileReport:
    dry_run: bool
    rekeyed: list[str] = field(default_factory=list)
    removed_duplicates: list[str] = field(default_factory=list)
    skipped: list[str] = field(default_factory=list)


class IntakeLedger:
    """Stage transitions for intake records kept in a flat key-value store.

    Every record lives at ``<stage>:<orderId>``. Approval geocodes the client
    address, attaches the coordinates and re-keys the record from ``pending``
    to ``approved`` with a single compare-and-swap move on the store, so an
    order is never left under both prefixes.
    """

    def __init__(self, store: KeyValueStore, geocoder: Geocoder, *, page_size: int = 100) -> None:
        self.store = store
        self.geocoder = geocoder
        self.page_size = max(1, page_size)

    async def submit(self, record: Any) -> SubmitResult:
        order_id = _submission_order_id(record)
        key = stage_key(Stage.PENDING, order_id)
        later_stages = [stage_key(stage, order_id) for stage in Stage if stage is not Stage.PENDING]

        with ledger_span("submit", order_id):
            if not await self.store.put_unless_exists(key, _dumps(record), guards=later_stages):
                record_ledger_outcome(LedgerConflictError.outcome)
                raise LedgerConflictError(f"order {order_id} is already approved")
            record_ledger_outcome("submitted")

        logger.info("intake submitted key=%s intake_method=%s", key, record[0].get("intakeMethods"))
        return SubmitResult(key=key, order_id=order_id)

    async def list_stage_page(
        self,
        stage: Stage,
        *,
        cursor: str | None = None,
        limit: int | None = None,
    ) -> LedgerPage:
        page = await self.store.list_keys(stage.prefix, cursor=cursor, limit=limit or self.page_size)
        owned = [key for key in page.keys if stage.owns(key)]
        raw_values = await asyncio.gather(*(self.store.get(key) for key in owned))
        entries = [
            LedgerEntry(key=key, order_id=key[len(stage.prefix) :], value=_loads_entry(key, raw))
            for key, raw in zip(owned, raw_values)
        ]
        return LedgerPage(entries=entries, next_cursor=page.next_cursor)

    async def list_stage(self, stage: Stage, *, cursor: str | None = None) -> AsyncIterator[LedgerEntry]:
        """Yield every entry of ``stage``, one store page at a time.

        Keys are visited in store order and a cursor means "keys after this
        one", so passing the key of the last entry seen resumes the listing.
        Values of keys deleted between listing and fetching come back as None.
        """
        while True:
            page = await self.list_stage_page(stage, cursor=cursor)
            for entry in page.entries:
                yield entry
            if page.next_cursor is None:
                return
            cursor = page.next_cursor

    async def find_order(self, order_id: str) -> list[LedgerEntry]:
        if not is_valid_order_id(order_id):
            raise LedgerNotFoundError(f"order {order_id} not found")

        keys = [stage_key(stage, order_id) for stage in Stage]
        raw_values = await asyncio.gather(*(self.store.get(key) for key in keys))
        entries = [
            LedgerEntry(key=key, order_id=order_id, value=_loads_entry(key, raw))
            for key, raw in zip(keys, raw_values)
            if raw is not None
        ]
        if not entries:
            raise LedgerNotFoundError(f"order {order_id} not found")
        return entries

    async def approve(self, order_id: str) -> ApprovalResult:
        with ledger_span("approve", order_id):
            try:
                result = await self._approve(order_id)
            except LedgerError as exc:
                record_ledger_outcome(exc.outcome)
                raise
            except StoreUnavailableError:
                record_ledger_outcome("store_unavailable")
                raise
            except Exception as exc:
                record_ledger_outcome(LedgerInternalError.outcome)
                logger.exception("approval failed order_id=%s", order_id)
                raise LedgerInternalError(f"approval of order {order_id} failed") from exc

            record_ledger_outcome("already_approved" if result.already_approved else "approved", key=result.key)
            return result

    async def _approve(self, order_id: str) -> ApprovalResult:
        if not is_valid_order_id(order_id):
            raise LedgerNotFoundError(f"order {order_id} not found")

        pending_key = stage_key(Stage.PENDING, order_id)
        approved_key = stage_key(Stage.APPROVED, order_id)

        stored = await self.store.get(pending_key)
        if stored is None:
            raise LedgerNotFoundError(f"order {order_id} not found")

        try:
            record = json.loads(stored)
        except ValueError as exc:
            logger.warning("pending record is not valid JSON key=%s", pending_key)
            raise LedgerInternalError(f"record at {pending_key} is not valid JSON") from exc
        address = _client_address(record, pending_key)

        try:
            match = await self.geocoder.geocode(address)
        except GeocodingError as exc:
            logger.warning("geocoding failed order_id=%s: %s", order_id, exc)
            raise LedgerUpstreamError(str(exc)) from exc

        record[0]["mapboxData"] = match.coordinates
        outcome = await self.store.move(pending_key, approved_key, _dumps(record), expected=stored)

        if outcome is MoveOutcome.SOURCE_CHANGED:
            raise LedgerConflictError(f"order {order_id} was resubmitted during approval")
        if outcome is MoveOutcome.SOURCE_MISSING:
            # Lost the race to a concurrent approval of the same order.
            approved = await self.store.get(approved_key)
            if approved is None:
                raise LedgerNotFoundError(f"order {order_id} not found")
            existing = json.loads(approved)
            logger.info("order already approved by a concurrent request order_id=%s", order_id)
            return ApprovalResult(
                order_id=order_id,
                key=approved_key,
                coordinates=existing[0].get("mapboxData"),
                record=existing,
                already_approved=True,
            )

        logger.info("order approved order_id=%s coordinates=%s", order_id, match.coordinates)
        return ApprovalResult(order_id=order_id, key=approved_key, coordinates=match.coordinates, record=record)

    async def reconcile(self, *, dry_run: bool = False) -> ReconcileReport:
        """Repair pending keys left behind by non-atomic writers.

        Legacy ``pending:<intakeMethod>:<orderId>`` keys move to the canonical
        ``pending:<orderId>``. Pending keys whose order is already approved are
        deleted.
        """
        report = ReconcileReport(dry_run=dry_run)
        cursor: str | None = None
        with ledger_span("reconcile"):
            while True:
                page = await self.store.list_keys(Stage.PENDING.prefix, cursor=cursor, limit=self.page_size)
                for key in page.keys:
                    await self._reconcile_key(key, report)
                if page.next_cursor is None:
                    break
                cursor = page.next_cursor
            record_ledger_outcome(
                "reconciled",
                dry_run=dry_run,
                rekeyed=len(report.rekeyed),
                removed_duplicates=len(report.removed_duplicates),
                skipped=len(report.skipped),
            )

        logger.info(
            "reconcile finished dry_run=%s rekeyed=%s removed_duplicates=%s skipped=%s",
            dry_run,
            len(report.rekeyed),
            len(report.removed_duplicates),
            len(report.skipped),
        )
        return report

    async def _reconcile_key(self, key: str, report: ReconcileReport) -> None:
        if Stage.PENDING.owns(key):
            order_id = key[len(Stage.PENDING.prefix) :]
            if await self.store.get(stage_key(Stage.APPROVED, order_id)) is not None:
                await self._remove_duplicate(key, report)
            return

        legacy = parse_legacy_pending_key(key)
        if legacy is None:
            report.skipped.append(key)
            return

        _, order_id = legacy
        canonical = stage_key(Stage.PENDING, order_id)
        approved = stage_key(Stage.APPROVED, order_id)
        if await self.store.get(approved) is not None or await self.store.get(canonical) is not None:
            await self._remove_duplicate(key, report)
            return

        value = await self.store.get(key)
        if value is None:
            return
        if not report.dry_run:
            outcome = await self.store.move(key, canonical, value, expected=value)
            if outcome is not MoveOutcome.MOVED:
                report.skipped.append(key)
                return
        report.rekeyed.append(key)

    async def _remove_duplicate(self, key: str, report: ReconcileReport) -> None:
        if not report.dry_run:
            await self.store.delete(key)
        report.removed_duplicates.append(key)


def _submission_order_id(record: Any) -> str:
    if not isinstance(record, list) or not record or not isinstance(record[0], dict):
        raise LedgerValidationError("submission must be a non-empty array of objects")

    head = record[0]
    intake_method = head.get("intakeMethods")
    if intake_method is None or intake_method == "" or intake_method == []:
        raise LedgerValidationError("intakeMethods is required")

    raw_order_id = head.get("orderId")
    if isinstance(raw_order_id, bool) or not isinstance(raw_order_id, (str, int)):
        raise LedgerValidationError("orderId is required")
    order_id = str(raw_order_id)
    if not is_valid_order_id(order_id):
        raise LedgerValidationError("orderId must be non-empty and must not contain ':'")
    return order_id


def _client_address(record: Any, key: str) -> str:
    try:
        address = record[0]["clientInfo"]["address"]
    except (KeyError, IndexError, TypeError) as exc:
        logger.warning("pending record has no clientInfo.address key=%s", key)
        raise LedgerInternalError(f"record at {key} has no clientInfo.address") from exc
    if not isinstance(address, str) or not address.strip():
        raise LedgerInternalError(f"record at {key} has an empty clientInfo.address")
    return address


def _dumps(record: Any) -> str:
    return json.dumps(record, separators=(",", ":"), ensure_ascii=False)


def _loads_entry(key: str, raw: str | None) -> Any:
    if raw is None:
        return None
    try:
        return json.loads(raw)
    except ValueError:
        logger.warning("stored value is not valid JSON key=%s", key)
        return raw


def get_ledger(
    store: KeyValueStore = Depends(get_store),
    geocoder: Geocoder = Depends(get_geocoder),
) -> IntakeLedger:
    return IntakeLedger(store, geocoder, page_size=get_settings().list_page_size)
