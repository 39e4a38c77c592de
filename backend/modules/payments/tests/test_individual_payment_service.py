# backend/modules/payments/tests/test_individual_payment_service.py

import pytest
from datetime import timedelta

from core.exceptions import NotFoundError
from modules.payments.exceptions import (
    AlreadyPaidError,
    AlreadyRefundedError,
    PaymentStateConflictError,
    ProcessorError,
    UnauthorizedPayerError,
)
from modules.payments.gateways.base import GatewayPaymentStatus
from modules.payments.models.split_payment_models import (
    IndividualPaymentStatus,
    SplitPaymentStatus,
)


def payment_of(details, user_id):
    return next(p for p in details.payments if p.user_id == user_id)


class TestInitiateCharge:
    """Starting a charge for one share"""

    @pytest.mark.asyncio
    async def test_creates_intent_and_claims_payment(
        self, async_session, payment_svc, split_details, gateway, repository
    ):
        bob_payment_id = payment_of(split_details, "bob").id

        handle = await payment_svc.initiate_charge(async_session, bob_payment_id, "bob")

        assert handle.status == IndividualPaymentStatus.PROCESSING
        assert handle.intent_id == "pi_1"
        assert handle.client_secret == "pi_1_secret"
        assert handle.amount == 333
        assert handle.currency == "usd"

        request = gateway.payment_requests[0]
        assert request.amount == 333
        assert request.idempotency_key == f"charge-{bob_payment_id}-1"
        assert request.metadata["split_payment_id"] == split_details.split_payment.id

        stored = await repository.get_payment(async_session, bob_payment_id)
        assert stored.status == IndividualPaymentStatus.PROCESSING
        assert stored.processor_intent_id == "pi_1"
        assert stored.charge_attempts == 1

    @pytest.mark.asyncio
    async def test_only_the_payer_can_pay(
        self, async_session, payment_svc, split_details, gateway
    ):
        with pytest.raises(UnauthorizedPayerError) as exc_info:
            await payment_svc.initiate_charge(
                async_session, payment_of(split_details, "bob").id, "alice"
            )

        assert exc_info.value.status_code == 403
        assert gateway.payment_requests == []

    @pytest.mark.asyncio
    async def test_paid_share_cannot_be_charged_again(
        self, async_session, payment_svc, split_details, pay, gateway
    ):
        bob_payment_id = payment_of(split_details, "bob").id
        await pay(async_session, bob_payment_id, "bob")

        with pytest.raises(AlreadyPaidError):
            await payment_svc.initiate_charge(async_session, bob_payment_id, "bob")
        assert len(gateway.payment_requests) == 1

    @pytest.mark.asyncio
    async def test_refunded_share_cannot_be_charged(
        self, async_session, payment_svc, split_svc, split_details, pay, now
    ):
        bob_payment_id = payment_of(split_details, "bob").id
        await pay(async_session, bob_payment_id, "bob")
        await split_svc.evaluate_completion(
            async_session, split_details.split_payment.id, now + timedelta(hours=49)
        )

        with pytest.raises(AlreadyRefundedError):
            await payment_svc.initiate_charge(async_session, bob_payment_id, "bob")

    @pytest.mark.asyncio
    async def test_charge_in_progress_conflicts(
        self, async_session, payment_svc, split_details, gateway
    ):
        bob_payment_id = payment_of(split_details, "bob").id
        await payment_svc.initiate_charge(async_session, bob_payment_id, "bob")

        with pytest.raises(PaymentStateConflictError):
            await payment_svc.initiate_charge(async_session, bob_payment_id, "bob")
        assert len(gateway.payment_requests) == 1

    @pytest.mark.asyncio
    async def test_concurrent_charges_reach_the_gateway_once(
        self, async_session, session_factory, payment_svc, split_details, gateway
    ):
        bob_payment_id = payment_of(split_details, "bob").id
        second_attempt = []

        async def charge_again_while_first_is_in_flight(request):
            async with session_factory() as other_session:
                try:
                    await payment_svc.initiate_charge(other_session, bob_payment_id, "bob")
                except PaymentStateConflictError as e:
                    second_attempt.append(e)

        gateway.on_create_payment = charge_again_while_first_is_in_flight

        handle = await payment_svc.initiate_charge(async_session, bob_payment_id, "bob")

        assert handle.status == IndividualPaymentStatus.PROCESSING
        assert len(second_attempt) == 1
        assert len(gateway.payment_requests) == 1

    @pytest.mark.asyncio
    async def test_gateway_decline_marks_payment_failed(
        self, async_session, payment_svc, split_details, gateway, repository, dispatcher
    ):
        bob_payment_id = payment_of(split_details, "bob").id
        gateway.fail_payments = True

        with pytest.raises(ProcessorError) as exc_info:
            await payment_svc.initiate_charge(async_session, bob_payment_id, "bob")

        assert exc_info.value.status_code == 502
        assert exc_info.value.processor_code == "card_declined"
        assert "Your card was declined." in exc_info.value.detail

        stored = await repository.get_payment(async_session, bob_payment_id)
        assert stored.status == IndividualPaymentStatus.FAILED
        assert stored.failure_reason == "Your card was declined."
        dispatcher.notify_payment_status_change.assert_any_await(
            split_details.split_payment.id, bob_payment_id, IndividualPaymentStatus.FAILED
        )

    @pytest.mark.asyncio
    async def test_gateway_exception_is_a_processor_error(
        self, async_session, payment_svc, split_details, gateway, repository
    ):
        bob_payment_id = payment_of(split_details, "bob").id

        async def explode(request):
            raise ConnectionError("processor unreachable")

        gateway.on_create_payment = explode

        with pytest.raises(ProcessorError):
            await payment_svc.initiate_charge(async_session, bob_payment_id, "bob")

        stored = await repository.get_payment(async_session, bob_payment_id)
        assert stored.status == IndividualPaymentStatus.FAILED
        assert stored.failure_reason == "processor unreachable"

    @pytest.mark.asyncio
    async def test_cancelled_split_accepts_no_new_charges(
        self, async_session, payment_svc, split_svc, split_details, gateway, now
    ):
        await split_svc.evaluate_completion(
            async_session, split_details.split_payment.id, now + timedelta(hours=49)
        )

        with pytest.raises(PaymentStateConflictError):
            await payment_svc.initiate_charge(
                async_session, payment_of(split_details, "bob").id, "bob"
            )
        assert gateway.payment_requests == []

    @pytest.mark.asyncio
    async def test_without_gateway(self, async_session, payment_svc, split_details, repository):
        payment_svc.gateway = None
        bob_payment_id = payment_of(split_details, "bob").id

        with pytest.raises(ProcessorError):
            await payment_svc.initiate_charge(async_session, bob_payment_id, "bob")

        stored = await repository.get_payment(async_session, bob_payment_id)
        assert stored.status == IndividualPaymentStatus.PENDING

    @pytest.mark.asyncio
    async def test_synchronous_settlement_pays_immediately(
        self, async_session, payment_svc, live_split, gateway, repository
    ):
        gateway.settle_immediately = True
        bob_payment_id = payment_of(live_split, "bob").id

        handle = await payment_svc.initiate_charge(async_session, bob_payment_id, "bob")

        assert handle.status == IndividualPaymentStatus.PAID
        split = await repository.get_split_payment(
            async_session, live_split.split_payment.id
        )
        assert split.status == SplitPaymentStatus.PARTIALLY_PAID


class TestRecordChargeOutcome:
    """Processor callbacks"""

    @pytest.mark.asyncio
    async def test_success_marks_paid(
        self, async_session, payment_svc, split_details, repository, now
    ):
        bob_payment_id = payment_of(split_details, "bob").id
        handle = await payment_svc.initiate_charge(async_session, bob_payment_id, "bob")

        status = await payment_svc.record_charge_outcome(
            async_session, handle.intent_id, succeeded=True, now=now
        )

        assert status == IndividualPaymentStatus.PAID
        stored = await repository.get_payment(async_session, bob_payment_id)
        assert stored.amount_paid == 333
        assert stored.paid_at == now

    @pytest.mark.asyncio
    async def test_repeated_callback_changes_nothing(
        self, async_session, payment_svc, split_details, dispatcher, now
    ):
        bob_payment_id = payment_of(split_details, "bob").id
        handle = await payment_svc.initiate_charge(async_session, bob_payment_id, "bob")
        await payment_svc.record_charge_outcome(
            async_session, handle.intent_id, succeeded=True, now=now
        )
        notifications = dispatcher.notify_payment_status_change.await_count

        again = await payment_svc.record_charge_outcome(
            async_session, handle.intent_id, succeeded=False, now=now
        )

        assert again == IndividualPaymentStatus.PAID
        assert dispatcher.notify_payment_status_change.await_count == notifications

    @pytest.mark.asyncio
    async def test_failure_records_reason(
        self, async_session, payment_svc, split_details, repository, now
    ):
        bob_payment_id = payment_of(split_details, "bob").id
        handle = await payment_svc.initiate_charge(async_session, bob_payment_id, "bob")

        status = await payment_svc.record_charge_outcome(
            async_session,
            handle.intent_id,
            succeeded=False,
            failure_reason="Insufficient funds",
            now=now,
        )

        assert status == IndividualPaymentStatus.FAILED
        stored = await repository.get_payment(async_session, bob_payment_id)
        assert stored.failure_reason == "Insufficient funds"
        assert stored.amount_paid == 0

    @pytest.mark.asyncio
    async def test_unknown_intent(self, async_session, payment_svc):
        with pytest.raises(NotFoundError):
            await payment_svc.record_charge_outcome(
                async_session, "pi_unknown", succeeded=True
            )

    @pytest.mark.asyncio
    async def test_late_payment_on_cancelled_split_is_refunded(
        self, async_session, payment_svc, split_svc, split_details, gateway, repository, now
    ):
        bob_payment_id = payment_of(split_details, "bob").id
        handle = await payment_svc.initiate_charge(async_session, bob_payment_id, "bob")
        await split_svc.evaluate_completion(
            async_session, split_details.split_payment.id, now + timedelta(hours=49)
        )

        status = await payment_svc.record_charge_outcome(
            async_session, handle.intent_id, succeeded=True, now=now + timedelta(hours=50)
        )

        assert status == IndividualPaymentStatus.REFUNDED
        assert len(gateway.refund_requests) == 1
        assert gateway.refund_requests[0].payment_id == handle.intent_id
        assert gateway.refund_requests[0].amount == 333
        stored = await repository.get_payment(async_session, bob_payment_id)
        assert stored.amount_refunded == 333


class TestConfirmCharge:
    """Polling the processor when the webhook has not arrived"""

    @pytest.mark.asyncio
    async def test_succeeded_intent_marks_paid(
        self, async_session, payment_svc, live_split, gateway, repository
    ):
        bob_payment_id = payment_of(live_split, "bob").id
        handle = await payment_svc.initiate_charge(async_session, bob_payment_id, "bob")

        status = await payment_svc.confirm_charge(async_session, bob_payment_id, "bob")

        assert status == IndividualPaymentStatus.PAID
        assert gateway.confirmed_intents == [handle.intent_id]
        stored = await repository.get_payment(async_session, bob_payment_id)
        assert stored.amount_paid == 333

    @pytest.mark.asyncio
    async def test_cancelled_intent_marks_failed(
        self, async_session, payment_svc, split_details, gateway, repository
    ):
        bob_payment_id = payment_of(split_details, "bob").id
        await payment_svc.initiate_charge(async_session, bob_payment_id, "bob")
        gateway.intent_status = GatewayPaymentStatus.CANCELLED

        status = await payment_svc.confirm_charge(async_session, bob_payment_id, "bob")

        assert status == IndividualPaymentStatus.FAILED
        stored = await repository.get_payment(async_session, bob_payment_id)
        assert stored.failure_reason == "Payment cancelled at processor"

    @pytest.mark.asyncio
    async def test_unsettled_intent_stays_processing(
        self, async_session, payment_svc, split_details, gateway
    ):
        bob_payment_id = payment_of(split_details, "bob").id
        await payment_svc.initiate_charge(async_session, bob_payment_id, "bob")
        gateway.intent_status = GatewayPaymentStatus.REQUIRES_ACTION

        status = await payment_svc.confirm_charge(async_session, bob_payment_id, "bob")

        assert status == IndividualPaymentStatus.PROCESSING

    @pytest.mark.asyncio
    async def test_pending_payment_is_not_sent_to_processor(
        self, async_session, payment_svc, split_details, gateway
    ):
        bob_payment_id = payment_of(split_details, "bob").id

        status = await payment_svc.confirm_charge(async_session, bob_payment_id, "bob")

        assert status == IndividualPaymentStatus.PENDING
        assert gateway.confirmed_intents == []

    @pytest.mark.asyncio
    async def test_only_the_payer_confirms(
        self, async_session, payment_svc, split_details
    ):
        with pytest.raises(UnauthorizedPayerError):
            await payment_svc.confirm_charge(
                async_session, payment_of(split_details, "bob").id, "carol"
            )

    @pytest.mark.asyncio
    async def test_processor_unreachable(
        self, async_session, payment_svc, split_details, gateway, repository
    ):
        bob_payment_id = payment_of(split_details, "bob").id
        await payment_svc.initiate_charge(async_session, bob_payment_id, "bob")
        gateway.fail_confirmations = True

        with pytest.raises(ProcessorError) as exc_info:
            await payment_svc.confirm_charge(async_session, bob_payment_id, "bob")

        assert "Could not reach the processor" in exc_info.value.detail
        stored = await repository.get_payment(async_session, bob_payment_id)
        assert stored.status == IndividualPaymentStatus.PROCESSING


class TestPaymentVisibility:
    @pytest.mark.asyncio
    async def test_payer_and_organizer_can_view(
        self, async_session, payment_svc, split_details
    ):
        bob_payment_id = payment_of(split_details, "bob").id

        assert (await payment_svc.get_payment_for_user(async_session, bob_payment_id, "bob")).id == bob_payment_id
        assert (await payment_svc.get_payment_for_user(async_session, bob_payment_id, "alice")).id == bob_payment_id

    @pytest.mark.asyncio
    async def test_other_participants_cannot_view(
        self, async_session, payment_svc, split_details
    ):
        with pytest.raises(UnauthorizedPayerError):
            await payment_svc.get_payment_for_user(
                async_session, payment_of(split_details, "bob").id, "carol"
            )
