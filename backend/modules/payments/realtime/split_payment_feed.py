"""
WebSocket change feed for split payments.

Clients subscribe by split payment id and receive a message whenever the
split or one of its individual payments changes status. Messages are
hints to refetch; the database stays the source of truth.
"""

from typing import Dict, Set, Any, Optional
from fastapi import WebSocket
from datetime import datetime
from enum import Enum
import logging

logger = logging.getLogger(__name__)


class FeedEventType(str, Enum):
    """Types of split payment updates"""
    SPLIT_STATUS = "split_status"
    PAYMENT_STATUS = "payment_status"
    REFUND_STATUS = "refund_status"
    DISPUTE_STATUS = "dispute_status"


class SplitPaymentFeed:
    """Connection manager keyed by split payment id"""

    def __init__(self):
        self.connections: Dict[str, Set[WebSocket]] = {}
        self.connection_metadata: Dict[WebSocket, Dict[str, Any]] = {}

    async def connect(
        self,
        websocket: WebSocket,
        split_payment_id: str,
        user_id: Optional[str] = None,
    ):
        """Accept and register new WebSocket connection"""
        await websocket.accept()

        self.connections.setdefault(split_payment_id, set()).add(websocket)
        self.connection_metadata[websocket] = {
            "split_payment_id": split_payment_id,
            "user_id": user_id,
            "connected_at": datetime.utcnow(),
        }

        logger.info(
            f"WebSocket connected: split_payment={split_payment_id}, user={user_id}"
        )

    def disconnect(self, websocket: WebSocket):
        """Remove WebSocket connection"""
        metadata = self.connection_metadata.pop(websocket, None)
        if not metadata:
            return

        split_payment_id = metadata["split_payment_id"]
        sockets = self.connections.get(split_payment_id)
        if sockets is not None:
            sockets.discard(websocket)
            if not sockets:
                del self.connections[split_payment_id]

        logger.info(f"WebSocket disconnected: split_payment={split_payment_id}")

    def subscriber_count(self, split_payment_id: str) -> int:
        return len(self.connections.get(split_payment_id, ()))

    async def broadcast(
        self,
        split_payment_id: str,
        event_type: FeedEventType,
        data: Dict[str, Any],
    ) -> int:
        """Send an update to every subscriber of a split. Returns deliveries."""
        sockets = self.connections.get(split_payment_id)
        if not sockets:
            return 0

        message = {
            "type": event_type.value,
            "split_payment_id": split_payment_id,
            "data": data,
            "timestamp": datetime.utcnow().isoformat(),
        }

        delivered = 0
        disconnected = set()
        for websocket in list(sockets):
            try:
                await websocket.send_json(message)
                delivered += 1
            except Exception as e:
                logger.error(f"Error sending to websocket: {e}")
                disconnected.add(websocket)

        # Clean up disconnected sockets
        for websocket in disconnected:
            self.disconnect(websocket)

        return delivered


split_payment_feed = SplitPaymentFeed()
