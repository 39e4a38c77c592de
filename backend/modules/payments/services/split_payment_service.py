# backend/modules/payments/services/split_payment_service.py

import logging
from typing import Dict, Optional, List, Sequence, Tuple
from decimal import Decimal
from datetime import datetime, timezone
from sqlalchemy.ext.asyncio import AsyncSession

from core.memory_cache import TTLCache
from core.exceptions import APIError, PermissionError, ValidationError
from ..config.payment_config import SplitPaymentConfig, split_payment_config
from ..exceptions import (
    InvalidAmountError,
    InvalidParticipantsError,
    PaymentStateConflictError,
    ReminderLimitError,
    UnsupportedCurrencyError,
)
from ..models.split_payment_models import (
    SplitPayment,
    IndividualPayment,
    SplitType,
    FeeHandling,
    SplitPaymentStatus,
    IndividualPaymentStatus,
    TERMINAL_SPLIT_STATUSES,
)
from ..monitoring.split_payment_metrics import SplitPaymentMetrics
from ..repositories.split_payment_repository import (
    SplitPaymentRepository,
    split_payment_repository,
)
from ..schemas.split_payment_schemas import (
    SplitPaymentRecord,
    IndividualPaymentRecord,
    IndividualPaymentResponse,
    SplitPaymentCreate,
    SplitPaymentDetails,
    PaymentStats,
    CompletionDecision,
    ReminderResponse,
    ConvertedShare,
    ConvertedSplitAmounts,
)
from ..utils.currency import (
    ExchangeRateService,
    apply_rate,
    calculate_processing_fee,
    format_amount,
    is_supported_currency,
)
from .notification_dispatcher import (
    NotificationDispatcher,
    dispatch_safely,
    notification_dispatcher,
)
from .refund_service import RefundService, refund_service

logger = logging.getLogger(__name__)

exchange_rate_service = ExchangeRateService(
    TTLCache(ttl_seconds=split_payment_config.EXCHANGE_RATE_TTL_SECONDS),
    split_payment_config.EXCHANGE_RATE_URL,
    timeout=split_payment_config.EXCHANGE_RATE_TIMEOUT_SECONDS,
)


def compute_shares(
    total_amount: int,
    participants: Sequence[str],
    strategy: SplitType = SplitType.EQUAL,
    custom_amounts: Optional[Dict[str, int]] = None,
    max_group_size: int = 20,
) -> List[int]:
    """
    Divide a total in minor units among participants

    Equal splits give everyone ``total // n`` and hand the remainder out
    one unit at a time to the first participants in the order given.
    Custom splits take ``custom_amounts`` keyed by participant and must
    add up to the total exactly.

    Args:
        total_amount: Total in minor units
        participants: Participant ids, organizer first
        strategy: Equal or custom split
        custom_amounts: Per-participant amounts for custom splits
        max_group_size: Largest allowed group

    Returns:
        One amount per participant, in participant order
    """
    if isinstance(total_amount, bool) or not isinstance(total_amount, int):
        raise InvalidAmountError("Total amount must be an integer in minor units")
    if total_amount <= 0:
        raise InvalidAmountError("Total amount must be positive")

    if not participants:
        raise InvalidParticipantsError("At least one participant is required")
    if len(set(participants)) != len(participants):
        raise InvalidParticipantsError("Participants must be unique")
    if len(participants) > max_group_size:
        raise InvalidParticipantsError(
            f"Group size {len(participants)} exceeds the maximum of {max_group_size}"
        )

    if strategy == SplitType.CUSTOM:
        if not custom_amounts:
            raise InvalidAmountError("Custom splits require an amount per participant")
        if set(custom_amounts) != set(participants):
            raise InvalidParticipantsError(
                "Custom amounts must name exactly the split's participants"
            )

        shares = [custom_amounts[p] for p in participants]
        for share in shares:
            if isinstance(share, bool) or not isinstance(share, int) or share <= 0:
                raise InvalidAmountError("Custom amounts must be positive integers")
        if sum(shares) != total_amount:
            raise InvalidAmountError(
                f"Custom amounts sum to {sum(shares)}, expected {total_amount}"
            )
        return shares

    count = len(participants)
    base, remainder = divmod(total_amount, count)
    return [base + 1 if i < remainder else base for i in range(count)]


def calculate_payment_stats(
    split: SplitPaymentRecord,
    payments: Sequence[IndividualPaymentRecord],
    threshold: float = 0.8,
) -> PaymentStats:
    """Aggregate paid/pending counts and sums for a split"""
    counts = {status: 0 for status in IndividualPaymentStatus}
    for payment in payments:
        counts[payment.status] += 1

    # Money still held: paid shares plus what a partial refund left behind
    total_paid = sum(
        p.amount_paid - p.amount_refunded
        for p in payments
        if p.status in (IndividualPaymentStatus.PAID, IndividualPaymentStatus.REFUNDED)
    )
    total_due = split.total_amount
    completion = (
        float(Decimal(total_paid) * 100 / Decimal(total_due)) if total_due else 0.0
    )

    return PaymentStats(
        total_due=total_due,
        total_paid=total_paid,
        total_refunded=sum(p.amount_refunded for p in payments),
        paid_count=counts[IndividualPaymentStatus.PAID],
        pending_count=counts[IndividualPaymentStatus.PENDING],
        processing_count=counts[IndividualPaymentStatus.PROCESSING],
        failed_count=counts[IndividualPaymentStatus.FAILED],
        refunded_count=counts[IndividualPaymentStatus.REFUNDED],
        completion_percentage=round(completion, 2),
        meets_minimum_threshold=Decimal(total_paid)
        >= Decimal(str(threshold)) * Decimal(total_due),
    )


def decide_completion(
    split: SplitPaymentRecord,
    payments: Sequence[IndividualPaymentRecord],
    now: datetime,
    threshold: float = 0.8,
) -> Tuple[SplitPaymentStatus, PaymentStats]:
    """
    Aggregate status a split should be in at ``now``. Terminal splits keep
    their status.
    """
    stats = calculate_payment_stats(split, payments, threshold)

    if split.status in TERMINAL_SPLIT_STATUSES:
        return split.status, stats

    if payments and stats.paid_count == len(payments):
        return SplitPaymentStatus.COMPLETED, stats

    if now >= split.payment_deadline:
        if stats.meets_minimum_threshold:
            return SplitPaymentStatus.COMPLETED_PARTIAL, stats
        return SplitPaymentStatus.CANCELLED_INSUFFICIENT, stats

    if stats.paid_count > 0:
        return SplitPaymentStatus.PARTIALLY_PAID, stats
    return SplitPaymentStatus.PENDING, stats


def _as_naive_utc(value: datetime) -> datetime:
    if value.tzinfo is not None:
        return value.astimezone(timezone.utc).replace(tzinfo=None)
    return value


class SplitPaymentService:
    """
    Coordinates a group of participants paying their shares of one booking
    """

    def __init__(
        self,
        refunds: RefundService = refund_service,
        repository: SplitPaymentRepository = split_payment_repository,
        dispatcher: NotificationDispatcher = notification_dispatcher,
        config: SplitPaymentConfig = split_payment_config,
        exchange_rates: ExchangeRateService = exchange_rate_service,
    ):
        self.refunds = refunds
        self.repository = repository
        self.dispatcher = dispatcher
        self.config = config
        self.exchange_rates = exchange_rates

    async def create_split_payment(
        self,
        db: AsyncSession,
        organizer_id: str,
        data: SplitPaymentCreate,
        now: Optional[datetime] = None,
    ) -> SplitPaymentDetails:
        """
        Create a split payment with one individual payment per participant

        Args:
            db: Database session
            organizer_id: User starting the split; always the first participant
            data: Split details
            now: Reference time for the deadline window

        Returns:
            The new split with its payments and stats
        """
        now = now or datetime.utcnow()
        try:
            currency = data.currency.lower()
            if not is_supported_currency(currency):
                raise UnsupportedCurrencyError(data.currency)

            deadline = _as_naive_utc(data.payment_deadline)
            self._validate_deadline(deadline, now)

            if len(set(data.participant_ids)) != len(data.participant_ids):
                raise InvalidParticipantsError("Participants must be unique")
            participants = [organizer_id] + [
                p for p in data.participant_ids if p != organizer_id
            ]

            fee_handling = data.fee_handling or FeeHandling(
                self.config.DEFAULT_FEE_HANDLING
            )
            shares = compute_shares(
                data.total_amount,
                participants,
                data.split_type,
                data.custom_amounts,
                self.config.MAX_GROUP_SIZE,
            )
            platform_fee = calculate_processing_fee(
                data.total_amount,
                self.config.PROCESSING_FEE_PERCENT,
                self.config.PROCESSING_FEE_FIXED,
            )

            total_amount = data.total_amount
            if fee_handling == FeeHandling.PARTICIPANTS and platform_fee > 0:
                # Participants carry the fee, so the amount collected grows by it
                fee_shares = compute_shares(
                    platform_fee, participants, max_group_size=self.config.MAX_GROUP_SIZE
                )
                shares = [share + fee for share, fee in zip(shares, fee_shares)]
                total_amount += platform_fee

            split = SplitPayment(
                booking_id=data.booking_id,
                organizer_id=organizer_id,
                vendor_account_id=data.vendor_account_id,
                total_amount=total_amount,
                currency=currency,
                split_type=data.split_type,
                participant_count=len(participants),
                fee_handling=fee_handling,
                platform_fee=platform_fee,
                payment_deadline=deadline,
                description=data.description,
                status=SplitPaymentStatus.PENDING,
                extra_data=data.metadata or {},
            )
            payments = [
                IndividualPayment(
                    user_id=user_id,
                    position=position,
                    amount_due=share,
                    status=IndividualPaymentStatus.PENDING,
                    payment_deadline=deadline,
                )
                for position, (user_id, share) in enumerate(zip(participants, shares))
            ]
            await self.repository.add_split_payment(db, split, payments)
            split_payment_id = split.id

            await db.commit()

        except Exception as e:
            await db.rollback()
            logger.error(f"Failed to create split payment: {e}")
            raise

        logger.info(
            f"Created split payment {split_payment_id} for booking {data.booking_id}: "
            f"{total_amount} {currency} across {len(participants)} participants"
        )
        SplitPaymentMetrics.record_split_created(
            data.split_type.value, currency, total_amount, len(participants)
        )
        await dispatch_safely(
            self.dispatcher.notify_status_change(
                split_payment_id, SplitPaymentStatus.PENDING
            ),
            f"split payment {split_payment_id} status",
        )

        return await self._build_details(db, split_payment_id)

    def _validate_deadline(self, deadline: datetime, now: datetime):
        hours_ahead = (deadline - now).total_seconds() / 3600
        if hours_ahead < self.config.MIN_DEADLINE_HOURS:
            raise ValidationError(
                f"Payment deadline must be at least "
                f"{self.config.MIN_DEADLINE_HOURS} hours away",
                error_code="INVALID_DEADLINE",
            )
        if hours_ahead > self.config.MAX_DEADLINE_HOURS:
            raise ValidationError(
                f"Payment deadline must be within "
                f"{self.config.MAX_DEADLINE_HOURS} hours",
                error_code="INVALID_DEADLINE",
            )

    async def evaluate_completion(
        self,
        db: AsyncSession,
        split_payment_id: str,
        now: Optional[datetime] = None,
    ) -> CompletionDecision:
        """
        Re-evaluate a split's aggregate status and persist any change

        The status write only lands if the split still has the status read
        here, so concurrent evaluations make one transition between them.
        Only the evaluation whose write lands queues refunds for a
        cancelled split, and it does so in the same transaction.
        """
        now = now or datetime.utcnow()
        refund_request_ids: List[str] = []
        try:
            split = await self.repository.get_split_payment(db, split_payment_id)
            payments = await self.repository.list_payments(db, split_payment_id)
            new_status, stats = decide_completion(
                split, payments, now, self.config.MINIMUM_THRESHOLD
            )

            if new_status == split.status:
                return CompletionDecision(
                    split_payment_id=split_payment_id,
                    status=split.status,
                    previous_status=split.status,
                    stats=stats,
                )

            won = await self.repository.transition_split_status(
                db,
                split_payment_id,
                split.status,
                new_status,
                completed_at=now if new_status in TERMINAL_SPLIT_STATUSES else None,
            )
            if not won:
                await db.rollback()
                current = await self.repository.get_split_payment(db, split_payment_id)
                logger.info(
                    f"Split payment {split_payment_id} moved to "
                    f"{current.status.value} concurrently"
                )
                return CompletionDecision(
                    split_payment_id=split_payment_id,
                    status=current.status,
                    previous_status=split.status,
                    stats=stats,
                )

            if new_status == SplitPaymentStatus.CANCELLED_INSUFFICIENT:
                for payment in payments:
                    if payment.status != IndividualPaymentStatus.PAID:
                        continue
                    refund_request_id = await self.refunds.ensure_system_refund(
                        db, split, payment
                    )
                    if refund_request_id:
                        refund_request_ids.append(refund_request_id)

            await db.commit()

        except Exception as e:
            await db.rollback()
            logger.error(f"Failed to evaluate split payment {split_payment_id}: {e}")
            raise

        logger.info(
            f"Split payment {split_payment_id}: {split.status.value} -> "
            f"{new_status.value} ({stats.total_paid}/{stats.total_due} paid)"
        )
        SplitPaymentMetrics.record_completion(new_status.value)
        await dispatch_safely(
            self.dispatcher.notify_status_change(split_payment_id, new_status),
            f"split payment {split_payment_id} status",
        )

        if refund_request_ids:
            await self.refunds.process_queued_refunds(db, refund_request_ids)

        return CompletionDecision(
            split_payment_id=split_payment_id,
            status=new_status,
            previous_status=split.status,
            transitioned=True,
            stats=stats,
            refund_request_ids=refund_request_ids,
        )

    async def get_split_payment_details(
        self,
        db: AsyncSession,
        split_payment_id: str,
        now: Optional[datetime] = None,
        viewer_id: Optional[str] = None,
    ) -> SplitPaymentDetails:
        """Current state of a split, re-evaluated before it is returned"""
        if viewer_id is not None:
            await self.check_member(db, split_payment_id, viewer_id)

        await self.evaluate_completion(db, split_payment_id, now)
        return await self._build_details(db, split_payment_id)

    async def check_member(
        self, db: AsyncSession, split_payment_id: str, user_id: str
    ) -> SplitPaymentRecord:
        """The split, if the user organizes it or owes a share of it"""
        split = await self.repository.get_split_payment(db, split_payment_id)
        if split.organizer_id == user_id:
            return split
        payments = await self.repository.list_payments(db, split_payment_id)
        if all(p.user_id != user_id for p in payments):
            raise PermissionError("Not a member of this split payment")
        return split

    async def _build_details(
        self, db: AsyncSession, split_payment_id: str
    ) -> SplitPaymentDetails:
        split = await self.repository.get_split_payment(db, split_payment_id)
        payments = await self.repository.list_payments(db, split_payment_id)
        return SplitPaymentDetails(
            split_payment=split,
            payments=[
                IndividualPaymentResponse(
                    **payment.model_dump(),
                    amount_due_display=format_amount(payment.amount_due, split.currency),
                )
                for payment in payments
            ],
            stats=calculate_payment_stats(
                split, payments, self.config.MINIMUM_THRESHOLD
            ),
            total_display=format_amount(split.total_amount, split.currency),
        )

    async def convert_split_amounts(
        self,
        db: AsyncSession,
        split_payment_id: str,
        currency: str,
        viewer_id: Optional[str] = None,
    ) -> ConvertedSplitAmounts:
        """
        Quote a split's total and shares in another currency for display.
        Raises ExchangeRateUnavailableError when no current rate is known.
        """
        if viewer_id is not None:
            await self.check_member(db, split_payment_id, viewer_id)

        split = await self.repository.get_split_payment(db, split_payment_id)
        payments = await self.repository.list_payments(db, split_payment_id)
        target = currency.lower()
        rate = await self.exchange_rates.get_rate(split.currency, target)

        def convert(minor: int) -> int:
            return apply_rate(minor, split.currency, target, rate)

        shares = []
        for payment in payments:
            amount_due = convert(payment.amount_due)
            shares.append(
                ConvertedShare(
                    individual_payment_id=payment.id,
                    user_id=payment.user_id,
                    amount_due=amount_due,
                    amount_paid=convert(payment.amount_paid),
                    amount_due_display=format_amount(amount_due, target),
                )
            )

        total = convert(split.total_amount)
        return ConvertedSplitAmounts(
            split_payment_id=split.id,
            from_currency=split.currency,
            currency=target,
            rate=rate,
            total_amount=total,
            total_display=format_amount(total, target),
            shares=shares,
        )

    async def list_split_payments_for_user(
        self, db: AsyncSession, user_id: str
    ) -> List[SplitPaymentRecord]:
        """Splits the user organizes or participates in, newest first"""
        return await self.repository.list_split_payments_for_user(db, user_id)

    def _check_remindable(self, payment: IndividualPaymentRecord):
        if payment.status != IndividualPaymentStatus.PENDING:
            raise PaymentStateConflictError(
                f"Payment {payment.id} is {payment.status.value}; "
                "reminders are only sent for pending payments"
            )
        if payment.reminder_count >= self.config.MAX_REMINDERS:
            raise ReminderLimitError(payment.id, self.config.MAX_REMINDERS)

    async def request_reminder(
        self,
        db: AsyncSession,
        individual_payment_id: str,
        requested_by: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> ReminderResponse:
        """
        Count a reminder for a pending payment and signal the dispatcher
        """
        now = now or datetime.utcnow()
        try:
            payment = await self.repository.get_payment(db, individual_payment_id)
            split = await self.repository.get_split_payment(db, payment.split_payment_id)

            if requested_by is not None and requested_by != split.organizer_id:
                raise PermissionError("Only the organizer can send reminders")
            if split.status == SplitPaymentStatus.CANCELLED_INSUFFICIENT:
                raise PaymentStateConflictError(
                    f"Split payment {split.id} has been cancelled"
                )
            self._check_remindable(payment)

            won = await self.repository.record_reminder(
                db, individual_payment_id, now, self.config.MAX_REMINDERS
            )
            if not won:
                await db.rollback()
                self._check_remindable(
                    await self.repository.get_payment(db, individual_payment_id)
                )
                raise PaymentStateConflictError(
                    f"Payment {individual_payment_id} changed while sending a reminder"
                )

            await db.commit()

        except Exception as e:
            await db.rollback()
            logger.error(f"Failed to send reminder for payment {individual_payment_id}: {e}")
            raise

        SplitPaymentMetrics.record_reminder("manual")
        await dispatch_safely(
            self.dispatcher.send_reminder(individual_payment_id),
            f"reminder for payment {individual_payment_id}",
        )

        payment = await self.repository.get_payment(db, individual_payment_id)
        return ReminderResponse(
            individual_payment_id=payment.id,
            reminder_count=payment.reminder_count,
            last_reminder_at=payment.last_reminder_at,
        )

    def _reminder_window(self, hours_left: float) -> Optional[int]:
        """Smallest scheduled window the deadline falls inside"""
        for window in sorted(self.config.REMINDER_SCHEDULE_HOURS):
            if hours_left <= window:
                return window
        return None

    async def send_due_reminders(
        self, db: AsyncSession, now: Optional[datetime] = None
    ) -> int:
        """
        Send scheduled reminders to pending participants

        A payment is reminded once per schedule window. Returns the number
        of reminders sent.
        """
        now = now or datetime.utcnow()
        sent = 0

        for split in await self.repository.list_open_split_payments(db):
            hours_left = (split.payment_deadline - now).total_seconds() / 3600
            if hours_left <= 0:
                continue
            window = self._reminder_window(hours_left)
            if window is None:
                continue

            try:
                payments = await self.repository.list_payments(db, split.id)
                for payment in payments:
                    if payment.status != IndividualPaymentStatus.PENDING:
                        continue
                    if payment.reminder_count >= self.config.MAX_REMINDERS:
                        continue
                    if (
                        payment.last_reminder_window is not None
                        and payment.last_reminder_window <= window
                    ):
                        continue

                    won = await self.repository.record_reminder(
                        db,
                        payment.id,
                        now,
                        self.config.MAX_REMINDERS,
                        window_hours=window,
                    )
                    await db.commit()
                    if not won:
                        continue

                    sent += 1
                    SplitPaymentMetrics.record_reminder("scheduled")
                    await dispatch_safely(
                        self.dispatcher.send_reminder(payment.id),
                        f"reminder for payment {payment.id}",
                    )
            except APIError as e:
                await db.rollback()
                logger.error(f"Failed to send reminders for split payment {split.id}: {e}")

        if sent:
            logger.info(f"Sent {sent} scheduled payment reminders")
        return sent

    async def sweep_expired_split_payments(
        self, db: AsyncSession, now: Optional[datetime] = None
    ) -> List[CompletionDecision]:
        """
        Evaluate every open split whose deadline has passed. Intended to be
        called periodically; reads already evaluate lazily.
        """
        now = now or datetime.utcnow()
        decisions = []

        for split in await self.repository.list_open_split_payments(
            db, deadline_before=now
        ):
            try:
                decisions.append(await self.evaluate_completion(db, split.id, now))
            except APIError as e:
                logger.error(f"Failed to settle expired split payment {split.id}: {e}")

        open_splits = await self.repository.list_open_split_payments(db)
        SplitPaymentMetrics.set_open_splits(len(open_splits))

        return decisions


split_payment_service = SplitPaymentService()
