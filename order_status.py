"""
Admin order status workflow with a server-enforced undo window.

Every admin status change is written to ``order_status_history`` together
with the status it replaced. The most recent change can be reverted for
UNDO_WINDOW_SECONDS after it was made, and only while the order still holds
the status that change set. The window is checked here on every undo
request rather than trusted from the client.
"""
import logging
import math
from datetime import datetime, timedelta
from typing import Callable, Optional, Tuple

from pymongo import DESCENDING
from pymongo.database import Database
from pymongo.errors import PyMongoError

from database import as_utc, new_id, utcnow
from errors import StorageError, UndoNotAvailableError
from order_service import OrderService
from order_validator import (
    get_allowed_order_status_transitions,
    normalize_order_status,
    validate_order_status_transition,
)
from schemas import Order, StatusChangeResult, UndoStatus

logger = logging.getLogger(__name__)

UNDO_WINDOW_SECONDS = 300
UNDO_NOTE = "Status reverted via undo operation"


class OrderStatusWorkflow:
    def __init__(self, db: Database, clock: Callable[[], datetime] = utcnow):
        self.db = db
        self.clock = clock
        self.order_service = OrderService(db)
        self.history = db["order_status_history"]

    def get_status_overview(self, order_id: str) -> dict:
        order = self.order_service.get_order_by_id(order_id)
        return {
            "order": order,
            "current_status": normalize_order_status(order.status),
            "allowed_transitions": get_allowed_order_status_transitions(order.status),
            "undo": self.get_undo_status(order_id),
        }

    def update_status(
        self,
        order_id: str,
        status: str,
        actor: Optional[str] = None,
        notes: Optional[str] = None,
    ) -> StatusChangeResult:
        order = self.order_service.get_order_by_id(order_id)
        validate_order_status_transition(order.status, status)

        if normalize_order_status(order.status) == status:
            logger.debug("Order %s already %s, nothing to change", order.order_number, status)
            return StatusChangeResult(order=order, undo=self.get_undo_status(order_id))

        updated = self._write_status(order_id, status, order.status, actor, notes, is_undo=False)
        logger.info("Order %s status %s -> %s by %s", order.order_number, order.status, status, actor or "system")
        return StatusChangeResult(order=updated, undo=self.get_undo_status(order_id))

    def get_undo_status(self, order_id: str) -> UndoStatus:
        _, status, _ = self._undo_candidate(order_id)
        return status

    def undo_last_change(self, order_id: str, actor: Optional[str] = None) -> Order:
        entry, status, reason = self._undo_candidate(order_id)
        if not status.can_undo:
            raise UndoNotAvailableError(order_id, reason)

        try:
            self.history.update_one({"id": entry["id"]}, {"$set": {"undone": True}})
        except PyMongoError as e:
            raise StorageError("undo_last_change", e) from e
        order = self._write_status(
            order_id, entry["previous_status"], entry["status"], actor, UNDO_NOTE, is_undo=True
        )
        logger.info("Order %s reverted from %s to %s", order.order_number, entry["status"], entry["previous_status"])
        return order

    def _undo_candidate(self, order_id: str) -> Tuple[Optional[dict], UndoStatus, str]:
        try:
            order_doc = self.db["orders"].find_one({"id": order_id})
            entry = self.history.find_one(
                {"order_id": order_id}, sort=[("created_at", DESCENDING), ("_id", DESCENDING)]
            )
        except PyMongoError as e:
            raise StorageError("get_undo_status", e) from e

        if not order_doc or not entry or entry.get("is_undo") or entry.get("undone"):
            return entry, UndoStatus(can_undo=False), "no status change to undo"
        if order_doc.get("status") != entry.get("status"):
            return entry, UndoStatus(can_undo=False), "order status changed since"

        expires_at = as_utc(entry["created_at"]) + timedelta(seconds=UNDO_WINDOW_SECONDS)
        remaining = (expires_at - as_utc(self.clock())).total_seconds()
        if remaining <= 0:
            status = UndoStatus(can_undo=False, previous_status=entry.get("previous_status"), expires_at=expires_at)
            return entry, status, "undo window has expired"
        status = UndoStatus(
            can_undo=True,
            previous_status=entry.get("previous_status"),
            time_remaining=min(UNDO_WINDOW_SECONDS, math.ceil(remaining)),
            expires_at=expires_at,
        )
        return entry, status, ""

    def _write_status(
        self,
        order_id: str,
        status: str,
        previous_status: str,
        actor: Optional[str],
        notes: Optional[str],
        is_undo: bool,
    ) -> Order:
        now = self.clock()
        try:
            self.db["orders"].update_one({"id": order_id}, {"$set": {"status": status, "updated_at": now}})
            self.history.insert_one(
                {
                    "id": new_id(),
                    "order_id": order_id,
                    "status": status,
                    "previous_status": previous_status,
                    "notes": notes,
                    "created_by": actor,
                    "is_undo": is_undo,
                    "undone": False,
                    "created_at": now,
                }
            )
        except PyMongoError as e:
            raise StorageError("update_order_status", e) from e
        return self.order_service.get_order_by_id(order_id)
