"""
Reconciliation Checker
======================

Compares locally recorded orders with the broker's view and records every
disagreement. Mismatches are reported, never auto-corrected.

Per order (excluding pending_approval, newest first):
- no broker_order_id           -> missing_broker_order
- id not in the broker's list  -> mismatched ("Broker order not found")
- normalized status differs    -> mismatched ("Status mismatch")
- otherwise                    -> matched (no event)
"""
from datetime import datetime, timezone
from typing import Any, Dict, List, Mapping, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from broker_client import BrokerClient
from exceptions import ExternalSystemError
from logging_config import get_logger
from models import ReconciliationEvent, TradingOrder, TradingProject

logger = get_logger(__name__)

BROKER_STATUS_MAP = {
    "filled": "executed",
    "partially_filled": "executed",
    "canceled": "cancelled",
    "cancelled": "cancelled",
    "expired": "cancelled",
    "replaced": "cancelled",
    "rejected": "failed",
    "new": "approved",
    "accepted": "approved",
    "pending_new": "approved",
    "pending_cancel": "approved",
    "pending_replace": "approved",
}


def normalize_broker_status(status: Optional[str]) -> str:
    """Map a broker order status onto the internal order vocabulary."""
    return BROKER_STATUS_MAP.get(str(status or "").lower(), "unknown")


class ReconciliationChecker:

    def __init__(self, brokers: Mapping[str, BrokerClient], order_limit: int = 500):
        self._brokers = dict(brokers)
        self.order_limit = order_limit

    def broker_for(self, exchange: str) -> Optional[BrokerClient]:
        return self._brokers.get(exchange)

    def _event(
        self,
        project: TradingProject,
        run_id,
        result: str,
        notes: str,
        order: Optional[TradingOrder] = None,
        broker_order_id: Optional[str] = None,
        broker_status: Optional[str] = None,
        payload: Optional[Dict[str, Any]] = None,
    ) -> ReconciliationEvent:
        return ReconciliationEvent(
            run_id=run_id,
            project_id=project.id,
            user_id=project.user_id,
            order_id=order.id if order is not None else None,
            broker_order_id=broker_order_id,
            db_status=order.status if order is not None else None,
            broker_status=broker_status,
            result=result,
            notes=notes,
            payload=payload or {},
        )

    async def check(self, session: AsyncSession, project: TradingProject, run_id=None) -> Dict[str, Any]:
        broker = self.broker_for(project.exchange)
        if broker is None:
            logger.info("reconciliation_skipped", project_id=str(project.id), exchange=project.exchange)
            return {"checked": 0, "matched": 0, "mismatched": 0, "skipped": "exchange_not_supported"}

        try:
            broker_orders = await broker.get_orders(status="all", limit=self.order_limit)
        except ExternalSystemError as e:
            logger.warning(
                "reconciliation_broker_unavailable",
                project_id=str(project.id),
                broker=broker.name,
                error=e.message,
            )
            session.add(self._event(project, run_id, "error", e.message, payload={"broker": broker.name}))
            await session.flush()
            return {
                "checked": 0,
                "matched": 0,
                "mismatched": 0,
                "errors": 1,
                "error": e.message,
                "brokerOrderCount": 0,
            }

        broker_by_id = {
            str(order["id"]): order
            for order in broker_orders
            if isinstance(order, dict) and order.get("id")
        }

        stmt = (
            select(TradingOrder)
            .where(
                TradingOrder.project_id == project.id,
                TradingOrder.user_id == project.user_id,
                TradingOrder.status != "pending_approval",
            )
            .order_by(TradingOrder.created_at.desc())
            .limit(self.order_limit)
        )
        orders: List[TradingOrder] = list((await session.execute(stmt)).scalars().all())

        now = datetime.now(timezone.utc)
        matched = 0
        mismatched = 0

        for order in orders:
            order.reconciled_at = now
            broker_order_id = str(order.broker_order_id) if order.broker_order_id else None

            if broker_order_id is None:
                mismatched += 1
                order.reconciliation_status = "missing_broker_order"
                order.reconciliation_notes = "Missing broker_order_id"
                session.add(self._event(
                    project, run_id, "missing_broker_order", "DB order missing broker_order_id", order=order,
                ))
                continue

            broker_order = broker_by_id.get(broker_order_id)
            if broker_order is None:
                mismatched += 1
                order.reconciliation_status = "mismatched"
                order.reconciliation_notes = "Broker order not found"
                session.add(self._event(
                    project, run_id, "mismatched", "Broker order missing",
                    order=order, broker_order_id=broker_order_id,
                ))
                continue

            normalized = normalize_broker_status(broker_order.get("status"))
            if normalized == order.status:
                matched += 1
                order.reconciliation_status = "matched"
                order.reconciliation_notes = "Reconciled with broker order status"
            else:
                mismatched += 1
                order.reconciliation_status = "mismatched"
                order.reconciliation_notes = f"DB={order.status} broker={normalized}"
                session.add(self._event(
                    project, run_id, "mismatched", "Status mismatch",
                    order=order,
                    broker_order_id=broker_order_id,
                    broker_status=normalized,
                    payload={"broker_order": broker_order},
                ))

        await session.flush()

        logger.info(
            "reconciliation_completed",
            project_id=str(project.id),
            checked=len(orders),
            matched=matched,
            mismatched=mismatched,
        )
        return {
            "checked": len(orders),
            "matched": matched,
            "mismatched": mismatched,
            "errors": 0,
            "brokerOrderCount": len(broker_orders),
        }
