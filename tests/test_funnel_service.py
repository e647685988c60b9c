import asyncio

import pytest

from conftest import HeldSleep, InstantSleep, SlowWorkflowEngine, WorkflowEngine, settle
from funnel.models import Conversation, Lead, Message, ScheduledEvent

PHONE = "5511987654321"


def _conversation(session_factory, order_code="ORD-1"):
    with session_factory() as db:
        conversation = db.query(Conversation).filter(Conversation.order_code == order_code).one()
        db.expunge(conversation)
        return conversation


def _timeout_rows(session_factory, order_code="ORD-1"):
    with session_factory() as db:
        rows = (
            db.query(ScheduledEvent)
            .filter(ScheduledEvent.order_code == order_code, ScheduledEvent.kind == "payment_timeout")
            .order_by(ScheduledEvent.id)
            .all()
        )
        for row in rows:
            db.expunge(row)
        return rows


class TestPaymentPending:
    @pytest.mark.asyncio
    async def test_creates_conversation_and_arms_timeout(self, make_runtime, payment_event, session_factory):
        sleep = HeldSleep()
        runtime = make_runtime(sleep_func=sleep)

        result = await runtime.funnel.handle_payment_pending(payment_event())

        assert result.ok is True
        assert result.value["channel"] == "GABY01"
        conversation = _conversation(session_factory)
        assert conversation.status == "pending_payment"
        assert conversation.phone == PHONE
        assert conversation.payment_link_ref == "https://pay.test/pix/abc"
        [row] = _timeout_rows(session_factory)
        assert row.processed is False
        assert runtime.scheduler.has_timer(row.id)
        with session_factory() as db:
            assert db.get(Lead, PHONE).channel == "GABY01"
        await runtime.stop()

    @pytest.mark.asyncio
    async def test_repeated_pending_rearms_single_timer(self, make_runtime, payment_event, session_factory):
        runtime = make_runtime(sleep_func=HeldSleep())

        await runtime.funnel.handle_payment_pending(payment_event(amount=50))
        result = await runtime.funnel.handle_payment_pending(payment_event(amount=60))

        assert result.value["created"] is False
        assert float(_conversation(session_factory).amount) == 60
        first, second = _timeout_rows(session_factory)
        assert first.processed is True
        assert second.processed is False
        assert runtime.scheduler.active_timers == 1
        await runtime.stop()

    @pytest.mark.asyncio
    async def test_pending_after_approval_is_ignored(self, make_runtime, payment_event, workflow):
        runtime = make_runtime(sleep_func=HeldSleep())
        await runtime.funnel.handle_payment_approved(payment_event(status="approved"))
        await settle(runtime.scheduler)

        result = await runtime.funnel.handle_payment_pending(payment_event())

        assert result.ok is False
        assert result.error_code == "ignored"
        assert runtime.scheduler.active_timers == 0
        assert workflow.event_types == ["sale_approved"]


class TestPaymentApproved:
    @pytest.mark.asyncio
    async def test_emits_sale_approved(self, make_runtime, payment_event, workflow, session_factory):
        runtime = make_runtime()

        result = await runtime.funnel.handle_payment_approved(payment_event(status="approved"))

        assert result.ok is True
        assert result.value["queued_event_id"] is not None
        await settle(runtime.scheduler)
        assert workflow.event_types == ["sale_approved"]
        event = workflow.received[0]
        assert event["origin"] == "approved"
        assert event["customer"] == {"name": "Maria", "fullName": "Maria Silva", "phone": PHONE}
        assert event["order"]["code"] == "ORD-1"
        assert event["channel"] == "GABY01"
        assert _conversation(session_factory).status == "approved"

    @pytest.mark.asyncio
    async def test_approval_cancels_pending_timeout(self, make_runtime, payment_event, workflow, session_factory):
        sleep = HeldSleep()
        runtime = make_runtime(sleep_func=sleep)
        await runtime.funnel.handle_payment_pending(payment_event())

        await runtime.funnel.handle_payment_approved(payment_event(status="approved"))
        sleep.release_all()
        await settle(runtime.scheduler)

        assert workflow.event_types == ["sale_approved"]
        assert _conversation(session_factory).status == "approved"
        assert all(row.processed for row in _timeout_rows(session_factory))
        assert all(row.attempts == 0 for row in _timeout_rows(session_factory))

    @pytest.mark.asyncio
    async def test_duplicate_approval_is_ignored(self, make_runtime, payment_event, workflow):
        runtime = make_runtime()

        await runtime.funnel.handle_payment_approved(payment_event(status="approved"))
        result = await runtime.funnel.handle_payment_approved(payment_event(status="approved"))
        await settle(runtime.scheduler)

        assert result.error_code == "ignored"
        assert workflow.event_types == ["sale_approved"]

    @pytest.mark.asyncio
    async def test_late_approval_after_timeout(self, make_runtime, payment_event, workflow, session_factory):
        runtime = make_runtime()
        await runtime.funnel.handle_payment_pending(payment_event())
        await settle(runtime.scheduler)

        result = await runtime.funnel.handle_payment_approved(payment_event(status="approved"))
        await settle(runtime.scheduler)

        assert result.ok is True
        assert workflow.event_types == ["payment_timeout", "sale_approved"]
        assert _conversation(session_factory).status == "approved"


class TestPaymentTimeout:
    @pytest.mark.asyncio
    async def test_unpaid_order_times_out(self, make_runtime, payment_event, workflow, session_factory):
        sleep = InstantSleep()
        runtime = make_runtime(sleep_func=sleep)

        await runtime.funnel.handle_payment_pending(payment_event())
        await settle(runtime.scheduler)

        assert sleep.delays == [420]
        assert workflow.event_types == ["payment_timeout"]
        assert workflow.received[0]["timeoutMinutes"] == 7.0
        assert workflow.received[0]["origin"] == "pending"
        assert _conversation(session_factory).status == "timed_out"
        [row] = _timeout_rows(session_factory)
        assert row.processed is True

    @pytest.mark.asyncio
    async def test_timeout_rechecks_payment(self, make_runtime, payment_event, workflow, session_factory):
        runtime = make_runtime()
        runtime.funnel.payment_checker = lambda order_code: True

        await runtime.funnel.handle_payment_pending(payment_event())
        await settle(runtime.scheduler)

        assert workflow.event_types == []
        assert _conversation(session_factory).status == "pending_payment"

    @pytest.mark.asyncio
    async def test_recovered_timeout_fires_within_remaining_window(
        self, make_runtime, payment_event, workflow, session_factory, clock
    ):
        crashed = make_runtime(sleep_func=HeldSleep())
        await crashed.funnel.handle_payment_pending(payment_event())
        await crashed.stop()

        clock.advance(300)
        sleep = InstantSleep()
        restarted = make_runtime(sleep_func=sleep)
        await restarted.scheduler.recover_on_startup()
        await settle(restarted.scheduler)

        assert sleep.delays == [pytest.approx(120)]
        assert workflow.event_types == ["payment_timeout"]
        assert _conversation(session_factory).status == "timed_out"


class TestReplies:
    @pytest.mark.asyncio
    async def test_steps_are_emitted_in_order_and_once(self, make_runtime, payment_event, workflow, session_factory):
        runtime = make_runtime()
        await runtime.funnel.handle_payment_approved(payment_event(status="approved"))
        await settle(runtime.scheduler)

        results = []
        for index in range(1, 5):
            results.append(await runtime.funnel.handle_reply(PHONE, f"reply {index}"))
            await settle(runtime.scheduler)

        assert workflow.event_types == ["sale_approved", "step1", "step2", "step3"]
        assert [result.value["action"] for result in results] == ["step1", "step2", "step3", "ignored"]
        assert results[3].value["reason"] == "steps_exhausted"
        assert [event["reply"]["number"] for event in workflow.received[1:]] == [1, 2, 3]
        assert workflow.received[3]["reply"]["content"] == "reply 3"
        conversation = _conversation(session_factory)
        assert conversation.status == "completed"
        assert conversation.steps_completed == 3

    @pytest.mark.asyncio
    async def test_steps_while_payment_pending(self, make_runtime, payment_event, workflow, session_factory):
        runtime = make_runtime(sleep_func=HeldSleep())
        await runtime.funnel.handle_payment_pending(payment_event())

        await runtime.funnel.handle_reply(PHONE, "oi")
        await settle(runtime.scheduler, kind="delivery_retry")
        await runtime.funnel.handle_reply(PHONE, "tudo bem?")
        await settle(runtime.scheduler, kind="delivery_retry")

        assert workflow.event_types == ["step1", "step2"]
        conversation = _conversation(session_factory)
        assert conversation.status == "pending_payment"
        assert conversation.steps_completed == 2
        await runtime.stop()

    @pytest.mark.asyncio
    async def test_step_in_flight_is_not_re_emitted(self, make_runtime, payment_event, session_factory):
        engine = SlowWorkflowEngine()
        runtime = make_runtime(workflow_engine=engine)
        await runtime.funnel.handle_payment_approved(payment_event(status="approved"))
        engine.release()
        await settle(runtime.scheduler)
        engine.hold()

        first = await runtime.funnel.handle_reply(PHONE, "oi")
        await asyncio.wait_for(engine.started.wait(), timeout=1)
        second = await runtime.funnel.handle_reply(PHONE, "oi de novo")
        engine.release()
        await settle(runtime.scheduler)
        third = await runtime.funnel.handle_reply(PHONE, "e agora?")
        await settle(runtime.scheduler)

        assert first.value["action"] == "step1"
        assert second.value["reason"] == "step_in_flight"
        assert third.value["action"] == "step2"
        assert engine.event_types == ["sale_approved", "step1", "step2"]

    @pytest.mark.asyncio
    async def test_undelivered_step_is_not_re_emitted(
        self, make_runtime, payment_event, session_factory, settings
    ):
        settings.max_delivery_attempts = 1
        engine = WorkflowEngine(statuses=[200, 500])
        runtime = make_runtime(workflow_engine=engine)
        await runtime.funnel.handle_payment_approved(payment_event(status="approved"))
        await settle(runtime.scheduler)

        first = await runtime.funnel.handle_reply(PHONE, "oi")
        await settle(runtime.scheduler)
        second = await runtime.funnel.handle_reply(PHONE, "oi de novo")

        assert first.value["queued_event_id"] is not None
        assert second.value == {"action": "ignored", "reason": "step_in_flight", "conversation_id": first.value["conversation_id"]}
        assert engine.event_types == ["sale_approved", "step1"]
        assert [letter["id"] for letter in runtime.scheduler.dead_letters()] == [first.value["queued_event_id"]]

    @pytest.mark.asyncio
    async def test_conversion_race_emits_converted_only(self, make_runtime, payment_event, workflow, session_factory):
        runtime = make_runtime(sleep_func=HeldSleep())
        await runtime.funnel.handle_payment_pending(payment_event())

        def approve_elsewhere(order_code):
            with session_factory() as db:
                db.query(Conversation).filter(Conversation.order_code == order_code).update({"status": "approved"})
                db.commit()
            return runtime.funnel.is_paid(order_code)

        runtime.funnel.payment_checker = approve_elsewhere
        result = await runtime.funnel.handle_reply(PHONE, "paguei")
        await settle(runtime.scheduler, kind="delivery_retry")

        assert result.value["action"] == "converted"
        assert workflow.event_types == ["converted"]
        assert workflow.received[0]["reply"] == {"number": 1, "content": "paguei"}
        assert _conversation(session_factory).status == "converted"
        assert all(row.processed for row in _timeout_rows(session_factory))
        assert runtime.scheduler.active_timers == 0

    @pytest.mark.asyncio
    async def test_reply_for_closed_conversation_is_recorded(self, make_runtime, payment_event, workflow, session_factory):
        runtime = make_runtime()
        await runtime.funnel.handle_payment_pending(payment_event())
        await settle(runtime.scheduler)

        result = await runtime.funnel.handle_reply(PHONE, "ainda posso pagar?")

        assert result.value["action"] == "ignored"
        assert result.value["status"] == "timed_out"
        assert workflow.event_types == ["payment_timeout"]
        with session_factory() as db:
            inbound = db.query(Message).filter(Message.direction == "inbound").one()
            assert inbound.status == "ignored"

    @pytest.mark.asyncio
    async def test_reply_from_unknown_phone(self, make_runtime):
        runtime = make_runtime()

        result = await runtime.funnel.handle_reply("5521900000000", "oi")

        assert result.ok is False
        assert result.error_code == "not_found"

    @pytest.mark.asyncio
    async def test_newest_active_conversation_wins(self, make_runtime, payment_event, workflow, clock):
        runtime = make_runtime()
        await runtime.funnel.handle_payment_approved(payment_event(order_code="ORD-1", status="approved"))
        clock.advance(60)
        await runtime.funnel.handle_payment_approved(payment_event(order_code="ORD-2", status="approved"))

        await runtime.funnel.handle_reply(PHONE, "oi")
        await settle(runtime.scheduler)

        assert workflow.received[-1]["eventType"] == "step1"
        assert workflow.received[-1]["order"]["code"] == "ORD-2"


class TestDeliveryDoesNotBlock:
    @pytest.mark.asyncio
    async def test_approval_returns_before_workflow_responds(self, make_runtime, payment_event, session_factory):
        engine = SlowWorkflowEngine()
        runtime = make_runtime(workflow_engine=engine)

        result = await asyncio.wait_for(
            runtime.funnel.handle_payment_approved(payment_event(status="approved")), timeout=1
        )
        await asyncio.wait_for(engine.started.wait(), timeout=1)

        assert result.ok is True
        assert engine.received == []
        assert _conversation(session_factory).status == "approved"

        engine.release()
        await settle(runtime.scheduler)
        assert engine.event_types == ["sale_approved"]
        with session_factory() as db:
            assert db.query(ScheduledEvent).filter(ScheduledEvent.kind == "delivery_retry").one().processed is True

    @pytest.mark.asyncio
    async def test_timeout_handler_returns_before_workflow_responds(
        self, make_runtime, payment_event, session_factory
    ):
        engine = SlowWorkflowEngine()
        runtime = make_runtime(workflow_engine=engine)
        await runtime.funnel.handle_payment_pending(payment_event())

        [timer] = list(runtime.scheduler._timers.values())
        await asyncio.wait_for(timer, timeout=1)

        assert _timeout_rows(session_factory)[0].processed is True
        assert _conversation(session_factory).status == "timed_out"
        assert engine.received == []

        engine.release()
        await settle(runtime.scheduler)
        assert engine.event_types == ["payment_timeout"]


class TestOutboundAndOperations:
    @pytest.mark.asyncio
    async def test_record_outbound_is_not_a_step(self, make_runtime, payment_event, workflow):
        runtime = make_runtime()
        await runtime.funnel.handle_payment_approved(payment_event(status="approved"))

        assert runtime.funnel.record_outbound(PHONE, "mensagem do atendente").ok is True
        await runtime.funnel.handle_reply(PHONE, "oi")
        await settle(runtime.scheduler)

        assert workflow.event_types == ["sale_approved", "step1"]

    def test_record_outbound_without_conversation(self, make_runtime):
        result = make_runtime().funnel.record_outbound(PHONE, "oi")
        assert result.error_code == "not_found"

    @pytest.mark.asyncio
    async def test_check_payment(self, make_runtime, payment_event):
        runtime = make_runtime(sleep_func=HeldSleep())
        await runtime.funnel.handle_payment_pending(payment_event(order_code="ORD-1"))
        await runtime.funnel.handle_payment_approved(payment_event(order_code="ORD-2", status="approved"))

        assert runtime.funnel.check_payment("ORD-1").value["payment"] == "pending"
        assert runtime.funnel.check_payment("ORD-2").value["payment"] == "paid"
        assert runtime.funnel.check_payment("ORD-3").error_code == "not_found"
        await runtime.stop()

    @pytest.mark.asyncio
    async def test_mark_complete_cancels_timers(self, make_runtime, payment_event, workflow, session_factory):
        sleep = HeldSleep()
        runtime = make_runtime(sleep_func=sleep)
        await runtime.funnel.handle_payment_pending(payment_event())

        result = await runtime.funnel.mark_complete("ORD-1")
        sleep.release_all()
        await settle(runtime.scheduler)

        assert result.value["previous_status"] == "pending_payment"
        assert _conversation(session_factory).status == "completed"
        assert workflow.event_types == []
        assert (await runtime.funnel.mark_complete("ORD-1")).ok is True
        assert (await runtime.funnel.mark_complete("ORD-404")).error_code == "not_found"
