# backend/modules/payments/repositories/__init__.py

from .split_payment_repository import SplitPaymentRepository, split_payment_repository

__all__ = ["SplitPaymentRepository", "split_payment_repository"]
