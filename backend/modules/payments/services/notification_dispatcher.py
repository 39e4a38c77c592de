# backend/modules/payments/services/notification_dispatcher.py

import logging
from abc import ABC, abstractmethod
from typing import Awaitable, Optional

from ..models.split_payment_models import SplitPaymentStatus, IndividualPaymentStatus
from ..models.refund_models import RefundRequestStatus, DisputeStatus
from ..realtime.split_payment_feed import (
    SplitPaymentFeed,
    FeedEventType,
    split_payment_feed,
)

logger = logging.getLogger(__name__)


class NotificationDispatcher(ABC):
    """
    Outbound signals from the payment services. Delivery (email, push) and
    its retry policy belong to the implementation; callers never wait on
    delivery succeeding.
    """

    @abstractmethod
    async def send_reminder(self, individual_payment_id: str) -> None:
        pass

    @abstractmethod
    async def notify_status_change(
        self, split_payment_id: str, new_status: SplitPaymentStatus
    ) -> None:
        pass

    async def notify_payment_status_change(
        self,
        split_payment_id: str,
        individual_payment_id: str,
        new_status: IndividualPaymentStatus,
    ) -> None:
        pass

    async def notify_refund_status_change(
        self,
        split_payment_id: str,
        refund_request_id: str,
        new_status: RefundRequestStatus,
    ) -> None:
        pass

    async def notify_dispute_status_change(
        self,
        split_payment_id: Optional[str],
        dispute_id: str,
        new_status: DisputeStatus,
    ) -> None:
        pass


class LoggingNotificationDispatcher(NotificationDispatcher):
    """Writes every signal to the log"""

    async def send_reminder(self, individual_payment_id: str) -> None:
        logger.info(f"Reminder requested for individual payment {individual_payment_id}")

    async def notify_status_change(
        self, split_payment_id: str, new_status: SplitPaymentStatus
    ) -> None:
        logger.info(f"Split payment {split_payment_id} is now {new_status.value}")

    async def notify_payment_status_change(
        self,
        split_payment_id: str,
        individual_payment_id: str,
        new_status: IndividualPaymentStatus,
    ) -> None:
        logger.info(
            f"Individual payment {individual_payment_id} of split "
            f"{split_payment_id} is now {new_status.value}"
        )

    async def notify_refund_status_change(
        self,
        split_payment_id: str,
        refund_request_id: str,
        new_status: RefundRequestStatus,
    ) -> None:
        logger.info(
            f"Refund request {refund_request_id} of split "
            f"{split_payment_id} is now {new_status.value}"
        )

    async def notify_dispute_status_change(
        self,
        split_payment_id: Optional[str],
        dispute_id: str,
        new_status: DisputeStatus,
    ) -> None:
        logger.warning(
            f"Dispute {dispute_id} of split {split_payment_id or '(none)'} "
            f"is now {new_status.value}"
        )


class RealtimeNotificationDispatcher(LoggingNotificationDispatcher):
    """Logs signals and pushes status changes to WebSocket subscribers"""

    def __init__(self, feed: SplitPaymentFeed):
        self.feed = feed

    async def notify_status_change(
        self, split_payment_id: str, new_status: SplitPaymentStatus
    ) -> None:
        await super().notify_status_change(split_payment_id, new_status)
        await self.feed.broadcast(
            split_payment_id, FeedEventType.SPLIT_STATUS, {"status": new_status.value}
        )

    async def notify_payment_status_change(
        self,
        split_payment_id: str,
        individual_payment_id: str,
        new_status: IndividualPaymentStatus,
    ) -> None:
        await super().notify_payment_status_change(
            split_payment_id, individual_payment_id, new_status
        )
        await self.feed.broadcast(
            split_payment_id,
            FeedEventType.PAYMENT_STATUS,
            {"individual_payment_id": individual_payment_id, "status": new_status.value},
        )

    async def notify_refund_status_change(
        self,
        split_payment_id: str,
        refund_request_id: str,
        new_status: RefundRequestStatus,
    ) -> None:
        await super().notify_refund_status_change(
            split_payment_id, refund_request_id, new_status
        )
        await self.feed.broadcast(
            split_payment_id,
            FeedEventType.REFUND_STATUS,
            {"refund_request_id": refund_request_id, "status": new_status.value},
        )

    async def notify_dispute_status_change(
        self,
        split_payment_id: Optional[str],
        dispute_id: str,
        new_status: DisputeStatus,
    ) -> None:
        await super().notify_dispute_status_change(
            split_payment_id, dispute_id, new_status
        )
        if split_payment_id:
            await self.feed.broadcast(
                split_payment_id,
                FeedEventType.DISPUTE_STATUS,
                {"dispute_id": dispute_id, "status": new_status.value},
            )


async def dispatch_safely(notification: Awaitable[None], description: str) -> None:
    """Await a dispatcher call; failures are logged, never raised"""
    try:
        await notification
    except Exception as e:
        logger.error(f"Failed to dispatch {description}: {e}")


notification_dispatcher = RealtimeNotificationDispatcher(split_payment_feed)
