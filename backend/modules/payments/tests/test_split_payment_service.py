# backend/modules/payments/tests/test_split_payment_service.py

import pytest
from datetime import timedelta, timezone
from decimal import Decimal

from core.exceptions import PermissionError, ValidationError
from modules.payments.exceptions import (
    InvalidParticipantsError,
    ExchangeRateUnavailableError,
    PaymentStateConflictError,
    ReminderLimitError,
    UnsupportedCurrencyError,
)
from modules.payments.models.split_payment_models import (
    FeeHandling,
    IndividualPaymentStatus,
    SplitPaymentStatus,
    SplitType,
)
from modules.payments.models.refund_models import (
    RefundReasonCategory,
    RefundRequestStatus,
)


async def create_custom_split(split_svc, db, make_split_request, now, amounts):
    return await split_svc.create_split_payment(
        db,
        "alice",
        make_split_request(
            total_amount=sum(amounts.values()),
            participant_ids=list(amounts),
            split_type=SplitType.CUSTOM,
            custom_amounts=amounts,
        ),
        now=now,
    )


def payment_of(details, user_id):
    return next(p for p in details.payments if p.user_id == user_id)


class TestCreateSplitPayment:
    """Creating a split and its individual payments"""

    @pytest.mark.asyncio
    async def test_equal_split_assigns_remainder_to_organizer(self, split_details, dispatcher):
        split = split_details.split_payment

        assert split.status == SplitPaymentStatus.PENDING
        assert split.total_amount == 1000
        assert split.participant_count == 3
        assert [(p.user_id, p.amount_due) for p in split_details.payments] == [
            ("alice", 334),
            ("bob", 333),
            ("carol", 333),
        ]
        assert split_details.total_display == "$10.00"
        assert split_details.stats.pending_count == 3
        dispatcher.notify_status_change.assert_awaited_once_with(
            split.id, SplitPaymentStatus.PENDING
        )

    @pytest.mark.asyncio
    async def test_organizer_is_added_first_when_not_listed(
        self, async_session, split_svc, make_split_request, now
    ):
        details = await split_svc.create_split_payment(
            async_session, "alice", make_split_request(participant_ids=["bob", "carol"]), now=now
        )

        assert [p.user_id for p in details.payments] == ["alice", "bob", "carol"]
        assert [p.position for p in details.payments] == [0, 1, 2]

    @pytest.mark.asyncio
    async def test_duplicate_participants_create_nothing(
        self, async_session, split_svc, make_split_request, now
    ):
        with pytest.raises(InvalidParticipantsError):
            await split_svc.create_split_payment(
                async_session,
                "alice",
                make_split_request(participant_ids=["bob", "bob"]),
                now=now,
            )

        assert await split_svc.list_split_payments_for_user(async_session, "alice") == []

    @pytest.mark.asyncio
    @pytest.mark.parametrize("hours", [2, 200])
    async def test_deadline_outside_window(
        self, async_session, split_svc, make_split_request, now, hours
    ):
        with pytest.raises(ValidationError) as exc_info:
            await split_svc.create_split_payment(
                async_session,
                "alice",
                make_split_request(payment_deadline=now + timedelta(hours=hours)),
                now=now,
            )
        assert exc_info.value.error_code == "INVALID_DEADLINE"

    @pytest.mark.asyncio
    async def test_timezone_aware_deadline_is_stored_as_utc(
        self, async_session, split_svc, make_split_request, now
    ):
        deadline = (now + timedelta(hours=48)).replace(tzinfo=timezone.utc)
        details = await split_svc.create_split_payment(
            async_session, "alice", make_split_request(payment_deadline=deadline), now=now
        )
        assert details.split_payment.payment_deadline == now + timedelta(hours=48)

    @pytest.mark.asyncio
    async def test_unsupported_currency(
        self, async_session, split_svc, make_split_request, now
    ):
        with pytest.raises(UnsupportedCurrencyError):
            await split_svc.create_split_payment(
                async_session, "alice", make_split_request(currency="xyz"), now=now
            )

    @pytest.mark.asyncio
    async def test_organizer_absorbs_fee_by_default(self, split_details):
        split = split_details.split_payment
        assert split.fee_handling == FeeHandling.ORGANIZER
        assert split.platform_fee == 59
        assert sum(p.amount_due for p in split_details.payments) == split.total_amount

    @pytest.mark.asyncio
    async def test_participants_fee_is_added_to_each_share(
        self, async_session, split_svc, make_split_request, now
    ):
        details = await split_svc.create_split_payment(
            async_session,
            "alice",
            make_split_request(fee_handling=FeeHandling.PARTICIPANTS),
            now=now,
        )

        assert details.split_payment.platform_fee == 59
        assert details.split_payment.total_amount == 1059
        assert [p.amount_due for p in details.payments] == [354, 353, 352]

    @pytest.mark.asyncio
    async def test_custom_split_with_participant_fees_still_sums(
        self, async_session, split_svc, make_split_request, now
    ):
        details = await split_svc.create_split_payment(
            async_session,
            "alice",
            make_split_request(
                participant_ids=["alice", "bob", "carol"],
                split_type=SplitType.CUSTOM,
                custom_amounts={"alice": 500, "bob": 300, "carol": 200},
                fee_handling=FeeHandling.PARTICIPANTS,
            ),
            now=now,
        )

        amounts = [p.amount_due for p in details.payments]
        assert amounts == [520, 320, 219]
        assert sum(amounts) == details.split_payment.total_amount


class TestEvaluateCompletion:
    """Aggregate status decisions"""

    @pytest.mark.asyncio
    async def test_partially_paid_before_deadline(
        self, async_session, split_svc, split_details, pay, now
    ):
        split_id = split_details.split_payment.id
        await pay(async_session, payment_of(split_details, "bob").id, "bob")

        decision = await split_svc.evaluate_completion(async_session, split_id, now)

        assert decision.status == SplitPaymentStatus.PARTIALLY_PAID
        assert decision.stats.paid_count == 1
        assert decision.stats.total_paid == 333

    @pytest.mark.asyncio
    async def test_all_paid_completes(
        self, async_session, split_svc, split_details, pay, dispatcher, now
    ):
        split_id = split_details.split_payment.id
        for user_id in ("alice", "bob", "carol"):
            await pay(async_session, payment_of(split_details, user_id).id, user_id)

        details = await split_svc.get_split_payment_details(async_session, split_id, now)

        assert details.split_payment.status == SplitPaymentStatus.COMPLETED
        assert details.split_payment.completed_at == now
        assert details.stats.completion_percentage == 100.0
        dispatcher.notify_status_change.assert_any_await(
            split_id, SplitPaymentStatus.COMPLETED
        )

    @pytest.mark.asyncio
    async def test_deadline_passed_above_threshold_completes_partially(
        self, async_session, split_svc, make_split_request, pay, gateway, now
    ):
        details = await create_custom_split(
            split_svc, async_session, make_split_request, now,
            {"alice": 450, "bob": 400, "carol": 150},
        )
        split_id = details.split_payment.id
        await pay(async_session, payment_of(details, "alice").id, "alice")
        await pay(async_session, payment_of(details, "bob").id, "bob")

        decision = await split_svc.evaluate_completion(
            async_session, split_id, now + timedelta(hours=49)
        )

        assert decision.status == SplitPaymentStatus.COMPLETED_PARTIAL
        assert decision.stats.meets_minimum_threshold
        assert decision.refund_request_ids == []
        assert gateway.refund_requests == []

        carol = await split_svc.repository.get_payment(
            async_session, payment_of(details, "carol").id
        )
        assert carol.status == IndividualPaymentStatus.PENDING

    @pytest.mark.asyncio
    async def test_deadline_passed_below_threshold_cancels_and_refunds(
        self, async_session, split_svc, refund_svc, make_split_request, pay, gateway, now
    ):
        details = await create_custom_split(
            split_svc, async_session, make_split_request, now,
            {"alice": 500, "bob": 250, "carol": 250},
        )
        split_id = details.split_payment.id
        alice_payment_id = payment_of(details, "alice").id
        await pay(async_session, alice_payment_id, "alice")

        decision = await split_svc.evaluate_completion(
            async_session, split_id, now + timedelta(hours=49)
        )

        assert decision.status == SplitPaymentStatus.CANCELLED_INSUFFICIENT
        assert decision.transitioned
        assert len(decision.refund_request_ids) == 1

        refund_requests = await refund_svc.list_refund_requests(async_session, split_id)
        assert len(refund_requests) == 1
        assert refund_requests[0].is_system
        assert refund_requests[0].individual_payment_id == alice_payment_id
        assert refund_requests[0].reason_category == RefundReasonCategory.INSUFFICIENT_GROUP_PAYMENTS
        assert refund_requests[0].status == RefundRequestStatus.APPROVED_PROCESSED

        assert len(gateway.refund_requests) == 1
        assert gateway.refund_requests[0].amount == 500
        alice = await split_svc.repository.get_payment(async_session, alice_payment_id)
        assert alice.status == IndividualPaymentStatus.REFUNDED
        assert alice.amount_refunded == 500

    @pytest.mark.asyncio
    async def test_evaluation_is_idempotent(
        self, async_session, split_svc, refund_svc, make_split_request, pay, gateway, now
    ):
        details = await create_custom_split(
            split_svc, async_session, make_split_request, now,
            {"alice": 500, "bob": 250, "carol": 250},
        )
        split_id = details.split_payment.id
        await pay(async_session, payment_of(details, "alice").id, "alice")
        later = now + timedelta(hours=49)

        first = await split_svc.evaluate_completion(async_session, split_id, later)
        second = await split_svc.evaluate_completion(async_session, split_id, later)

        assert first.status == second.status == SplitPaymentStatus.CANCELLED_INSUFFICIENT
        assert not second.transitioned
        assert second.refund_request_ids == []
        assert len(await refund_svc.list_refund_requests(async_session, split_id)) == 1
        assert len(gateway.refund_requests) == 1

    @pytest.mark.asyncio
    async def test_terminal_status_never_changes(
        self, async_session, split_svc, split_details, pay, now
    ):
        split_id = split_details.split_payment.id
        for user_id in ("alice", "bob", "carol"):
            await pay(async_session, payment_of(split_details, user_id).id, user_id)

        await split_svc.evaluate_completion(async_session, split_id, now)
        later = await split_svc.evaluate_completion(
            async_session, split_id, now + timedelta(days=30)
        )

        assert later.status == SplitPaymentStatus.COMPLETED
        assert not later.transitioned

    @pytest.mark.asyncio
    async def test_lost_status_write_queues_no_refunds(
        self, async_session, split_svc, refund_svc, make_split_request, pay, dispatcher, now
    ):
        details = await create_custom_split(
            split_svc, async_session, make_split_request, now,
            {"alice": 500, "bob": 250, "carol": 250},
        )
        split_id = details.split_payment.id
        await pay(async_session, payment_of(details, "alice").id, "alice")
        dispatcher.reset_mock()

        async def concurrent_writer_wins(*args, **kwargs):
            return False

        split_svc.repository.transition_split_status = concurrent_writer_wins

        decision = await split_svc.evaluate_completion(
            async_session, split_id, now + timedelta(hours=49)
        )

        assert not decision.transitioned
        assert decision.refund_request_ids == []
        assert await refund_svc.list_refund_requests(async_session, split_id) == []
        dispatcher.notify_status_change.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_details_evaluate_lazily(
        self, async_session, split_svc, split_details, now
    ):
        split_id = split_details.split_payment.id

        details = await split_svc.get_split_payment_details(
            async_session, split_id, now + timedelta(hours=49), viewer_id="bob"
        )

        assert details.split_payment.status == SplitPaymentStatus.CANCELLED_INSUFFICIENT

    @pytest.mark.asyncio
    async def test_details_hidden_from_outsiders(
        self, async_session, split_svc, split_details, now
    ):
        with pytest.raises(PermissionError):
            await split_svc.get_split_payment_details(
                async_session, split_details.split_payment.id, now, viewer_id="mallory"
            )


class TestCurrencyConversion:
    """Quoting a split in another currency"""

    @pytest.mark.asyncio
    async def test_quotes_total_and_shares(
        self, async_session, split_svc, split_details, pay
    ):
        alice = payment_of(split_details, "alice")
        await pay(async_session, alice.id, "alice")

        quote = await split_svc.convert_split_amounts(
            async_session, split_details.split_payment.id, "EUR", viewer_id="bob"
        )

        assert quote.from_currency == "usd"
        assert quote.currency == "eur"
        assert quote.rate == Decimal("0.9")
        assert quote.total_amount == 900
        assert quote.total_display == "€9.00"
        assert [(s.user_id, s.amount_due, s.amount_paid) for s in quote.shares] == [
            ("alice", 301, 301),
            ("bob", 300, 0),
            ("carol", 300, 0),
        ]

    @pytest.mark.asyncio
    async def test_shares_are_rounded_one_by_one(
        self, async_session, split_svc, split_details
    ):
        quote = await split_svc.convert_split_amounts(
            async_session, split_details.split_payment.id, "jpy"
        )

        assert quote.total_amount == 1500
        assert [s.amount_due for s in quote.shares] == [501, 500, 500]
        assert quote.shares[0].amount_due_display == "¥501"

    @pytest.mark.asyncio
    async def test_same_currency_needs_no_rate(
        self, async_session, split_svc, split_details, rate_quotes
    ):
        rate_quotes.clear()

        quote = await split_svc.convert_split_amounts(
            async_session, split_details.split_payment.id, "usd"
        )

        assert quote.rate == Decimal(1)
        assert [s.amount_due for s in quote.shares] == [334, 333, 333]

    @pytest.mark.asyncio
    async def test_unavailable_rate_is_an_error(
        self, async_session, split_svc, split_details, rate_quotes
    ):
        rate_quotes.clear()

        with pytest.raises(ExchangeRateUnavailableError):
            await split_svc.convert_split_amounts(
                async_session, split_details.split_payment.id, "eur"
            )

    @pytest.mark.asyncio
    async def test_unsupported_target_currency(
        self, async_session, split_svc, split_details
    ):
        with pytest.raises(UnsupportedCurrencyError):
            await split_svc.convert_split_amounts(
                async_session, split_details.split_payment.id, "xyz"
            )

    @pytest.mark.asyncio
    async def test_hidden_from_outsiders(self, async_session, split_svc, split_details):
        with pytest.raises(PermissionError):
            await split_svc.convert_split_amounts(
                async_session,
                split_details.split_payment.id,
                "eur",
                viewer_id="mallory",
            )


class TestReminders:
    """Manual and scheduled reminders"""

    @pytest.mark.asyncio
    async def test_organizer_reminds_pending_participant(
        self, async_session, split_svc, split_details, dispatcher, now
    ):
        bob_payment_id = payment_of(split_details, "bob").id

        response = await split_svc.request_reminder(
            async_session, bob_payment_id, requested_by="alice", now=now
        )

        assert response.reminder_count == 1
        assert response.last_reminder_at == now
        dispatcher.send_reminder.assert_awaited_once_with(bob_payment_id)

    @pytest.mark.asyncio
    async def test_only_organizer_can_remind(self, async_session, split_svc, split_details):
        with pytest.raises(PermissionError):
            await split_svc.request_reminder(
                async_session, payment_of(split_details, "carol").id, requested_by="bob"
            )

    @pytest.mark.asyncio
    async def test_paid_payment_cannot_be_reminded(
        self, async_session, split_svc, split_details, pay
    ):
        bob_payment_id = payment_of(split_details, "bob").id
        await pay(async_session, bob_payment_id, "bob")

        with pytest.raises(PaymentStateConflictError):
            await split_svc.request_reminder(async_session, bob_payment_id)

    @pytest.mark.asyncio
    async def test_reminders_are_capped(
        self, async_session, split_svc, split_details, payment_config
    ):
        bob_payment_id = payment_of(split_details, "bob").id
        for _ in range(payment_config.MAX_REMINDERS):
            await split_svc.request_reminder(async_session, bob_payment_id)

        with pytest.raises(ReminderLimitError) as exc_info:
            await split_svc.request_reminder(async_session, bob_payment_id)
        assert exc_info.value.status_code == 409

    @pytest.mark.asyncio
    async def test_scheduled_reminders_once_per_window(
        self, async_session, split_svc, split_details, pay, dispatcher, now
    ):
        deadline = split_details.split_payment.payment_deadline
        await pay(async_session, payment_of(split_details, "carol").id, "carol")

        # 47 hours left falls in the 72 hour window
        assert await split_svc.send_due_reminders(async_session, now + timedelta(hours=1)) == 2
        assert await split_svc.send_due_reminders(async_session, now + timedelta(hours=2)) == 0

        # 20 hours left moves into the 24 hour window
        assert await split_svc.send_due_reminders(async_session, deadline - timedelta(hours=20)) == 2
        assert dispatcher.send_reminder.await_count == 4

        bob = await split_svc.repository.get_payment(
            async_session, payment_of(split_details, "bob").id
        )
        assert bob.reminder_count == 2
        assert bob.last_reminder_window == 24

    @pytest.mark.asyncio
    async def test_no_reminders_after_deadline(
        self, async_session, split_svc, split_details, now
    ):
        assert await split_svc.send_due_reminders(async_session, now + timedelta(hours=49)) == 0


class TestSweepAndListing:
    @pytest.mark.asyncio
    async def test_sweep_settles_only_expired_splits(
        self, async_session, split_svc, make_split_request, now
    ):
        short = await split_svc.create_split_payment(
            async_session, "alice", make_split_request(), now=now
        )
        long = await split_svc.create_split_payment(
            async_session,
            "alice",
            make_split_request(payment_deadline=now + timedelta(hours=120)),
            now=now,
        )

        decisions = await split_svc.sweep_expired_split_payments(
            async_session, now + timedelta(hours=49)
        )

        assert [d.split_payment_id for d in decisions] == [short.split_payment.id]
        assert decisions[0].status == SplitPaymentStatus.CANCELLED_INSUFFICIENT
        still_open = await split_svc.repository.get_split_payment(
            async_session, long.split_payment.id
        )
        assert still_open.status == SplitPaymentStatus.PENDING

    @pytest.mark.asyncio
    async def test_list_for_organizer_and_participants(
        self, async_session, split_svc, split_details
    ):
        split_id = split_details.split_payment.id

        assert [s.id for s in await split_svc.list_split_payments_for_user(async_session, "alice")] == [split_id]
        assert [s.id for s in await split_svc.list_split_payments_for_user(async_session, "carol")] == [split_id]
        assert await split_svc.list_split_payments_for_user(async_session, "dave") == []
