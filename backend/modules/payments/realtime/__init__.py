# backend/modules/payments/realtime/__init__.py

from .split_payment_feed import SplitPaymentFeed, FeedEventType, split_payment_feed

__all__ = ["SplitPaymentFeed", "FeedEventType", "split_payment_feed"]
