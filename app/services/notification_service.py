"""
Distribution Notification Service

Fire-and-forget notifications sent after a distribution request is
settled or rejected:
- Partner: distribution completed / distribution rejected
- Investors: capital and profit credited to wallet

This is a placeholder implementation that logs notifications.
In production, integrate with the platform's notification provider.
A delivery failure is logged and never propagates: the settlement it
reports on has already committed.
"""
import logging
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, List, Optional
from uuid import UUID, uuid4

from app.config import settings

logger = logging.getLogger(__name__)


class NotificationType(str, Enum):
    """Types of distribution notifications."""
    DISTRIBUTION_COMPLETED = "distribution_completed"
    DISTRIBUTION_REJECTED = "distribution_rejected"
    PROFIT_RECEIVED = "profit_received"
    CAPITAL_RECOVERED = "capital_recovered"


MESSAGE_TEMPLATES = {
    NotificationType.DISTRIBUTION_COMPLETED: (
        "Your {distribution_type} distribution request {request_number} has been approved "
        "and {total_amount} was distributed to {investor_count} investors."
    ),
    NotificationType.DISTRIBUTION_REJECTED: (
        "Your {distribution_type} distribution request {request_number} was rejected. "
        "Reason: {reason}"
    ),
    NotificationType.PROFIT_RECEIVED: (
        "{total} has been added to your wallet from deal distribution {request_number} "
        "(capital {capital}, profit {profit})."
    ),
    NotificationType.CAPITAL_RECOVERED: (
        "{capital} of capital has been returned to your wallet from deal distribution "
        "{request_number}. This deal closed at a loss; no commission was charged."
    ),
}


class DistributionNotifier:
    """Dispatches distribution events to partners and investors."""

    def __init__(self, enabled: Optional[bool] = None):
        self.enabled = settings.NOTIFICATIONS_ENABLED if enabled is None else enabled

    async def send_notification(
        self,
        recipient_id: UUID,
        notification_type: NotificationType,
        template_data: Dict[str, Any],
    ) -> Dict[str, Any]:
        """
        Send a notification to a platform user.

        Returns:
            Dict with send status and message ID
        """
        notification_id = str(uuid4())

        template = MESSAGE_TEMPLATES.get(notification_type, "")
        try:
            message = template.format(**template_data)
        except KeyError as e:
            logger.warning(f"Missing template variable: {e}")
            message = template

        logger.info(f"[NOTIFICATION] {notification_type.value} to {recipient_id}: {message[:100]}")
        await self._deliver(recipient_id, notification_type.value, message)

        return {
            "success": True,
            "notification_id": notification_id,
            "type": notification_type.value,
            "message": message,
            "sent_at": datetime.now(timezone.utc).isoformat(),
        }

    async def notify_settled(self, request, plan) -> List[Dict[str, Any]]:
        """Notify the partner and every paid investor about a settled request."""
        if not self.enabled:
            return []

        results = []
        paid = [a for a in plan.allocations if a.total_amount > Decimal("0")]
        results.append(await self._safe_send(
            request.requested_by,
            NotificationType.DISTRIBUTION_COMPLETED,
            {
                "distribution_type": request.distribution_type,
                "request_number": request.request_number,
                "total_amount": plan.total_amount,
                "investor_count": len(paid),
            },
        ))
        for allocation in paid:
            notification_type = (
                NotificationType.CAPITAL_RECOVERED if plan.is_loss else NotificationType.PROFIT_RECEIVED
            )
            results.append(await self._safe_send(
                allocation.investor_id,
                notification_type,
                {
                    "request_number": request.request_number,
                    "total": allocation.total_amount,
                    "capital": allocation.capital_amount,
                    "profit": allocation.profit_amount,
                },
            ))
        return results

    async def notify_rejected(self, request) -> List[Dict[str, Any]]:
        if not self.enabled:
            return []
        return [await self._safe_send(
            request.requested_by,
            NotificationType.DISTRIBUTION_REJECTED,
            {
                "distribution_type": request.distribution_type,
                "request_number": request.request_number,
                "reason": request.rejection_reason or "not specified",
            },
        )]

    async def _safe_send(
        self,
        recipient_id: UUID,
        notification_type: NotificationType,
        template_data: Dict[str, Any],
    ) -> Dict[str, Any]:
        try:
            return await self.send_notification(recipient_id, notification_type, template_data)
        except Exception as e:
            logger.warning(
                f"Notification {notification_type.value} to {recipient_id} failed: {type(e).__name__}: {e}"
            )
            return {"success": False, "type": notification_type.value, "error": str(e)}

    # ==================== Provider Integration Stub ====================

    async def _deliver(self, recipient_id: UUID, subject: str, body: str) -> bool:
        """
        Deliver an in-app notification.

        In production, write to the notification store or push provider.
        """
        logger.debug(f"[IN-APP] {recipient_id} {subject}: {body[:50]}...")
        return True
