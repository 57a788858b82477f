# tests/test_quote_wizard_engine.py
"""
Tests du moteur de l'assistant de devis (navigation, validation, soumission)
"""

import asyncio
from dataclasses import replace
from datetime import datetime, timedelta
from decimal import Decimal

import pytest
from pydantic import ValidationError

from services.quote_models import CustomerInfo, LineItem, QuoteDraft, WizardStep
from services.quote_wizard_engine import QuoteWizardEngine, WizardSessionStore
from services.wizard_steps import WIZARD_STEPS, step_ids, validate_all


@pytest.fixture
def engine():
    return QuoteWizardEngine()


@pytest.fixture
def session(engine):
    return engine.start()


@pytest.fixture
def valid_customer_session(engine):
    draft = QuoteDraft(customer=CustomerInfo(name="Acme", email="buyer@acme.example"))
    return engine.start(initial_data=draft)


class TestNavigation:
    """Tests de navigation entre étapes"""

    def test_starts_on_first_step(self, engine, session):
        assert session.current_step == WizardStep.CUSTOMER_INFO
        assert session.completed_steps == frozenset()
        assert engine.progress(session) == pytest.approx(0.2)
        assert not engine.can_go_back(session)

    def test_next_blocked_by_empty_email(self, engine):
        session = engine.start(initial_data=QuoteDraft(customer=CustomerInfo(name="Acme", email="")))

        result = engine.next_step(session)

        assert result.current_step == WizardStep.CUSTOMER_INFO
        assert "email" in result.validation_errors
        assert "name" not in result.validation_errors
        assert result.completed_steps == frozenset()

    def test_invalid_email_format(self, engine):
        session = engine.start(initial_data=QuoteDraft(customer=CustomerInfo(name="Acme", email="not-an-email")))

        result = engine.next_step(session)

        assert result.validation_errors["email"] == ("Format d'email invalide",)

    def test_next_advances_and_marks_completed(self, engine, valid_customer_session):
        result = engine.next_step(valid_customer_session)

        assert result.current_step == WizardStep.PRODUCT_SELECTION
        assert WizardStep.CUSTOMER_INFO in result.completed_steps
        assert result.validation_errors == {}
        assert engine.progress(result) == pytest.approx(0.4)

    def test_line_items_step_requires_items(self, engine, valid_customer_session):
        session = engine.next_step(engine.next_step(valid_customer_session))
        assert session.current_step == WizardStep.LINE_ITEMS

        blocked = engine.next_step(session)

        assert blocked.current_step == WizardStep.LINE_ITEMS
        assert "line_items" in blocked.validation_errors

    def test_line_item_field_errors(self, engine, valid_customer_session):
        session = engine.add_line_item(valid_customer_session, name="", quantity=0, unit_price=Decimal("-1"))
        session = replace(session, current_step=WizardStep.LINE_ITEMS)

        blocked = engine.next_step(session)

        assert set(blocked.validation_errors) == {
            "line_items[0].name",
            "line_items[0].quantity",
            "line_items[0].unit_price",
        }

    def test_previous_is_noop_on_first_step(self, engine, session):
        assert engine.previous_step(session) == session

    def test_previous_moves_back(self, engine, valid_customer_session):
        session = engine.next_step(valid_customer_session)

        result = engine.previous_step(session)

        assert result.current_step == WizardStep.CUSTOMER_INFO
        assert WizardStep.CUSTOMER_INFO in result.completed_steps

    def test_next_on_last_step_stays(self, engine, sample_draft):
        session = engine.start(initial_data=sample_draft)
        for _ in range(10):
            session = engine.next_step(session)

        assert session.current_step == WizardStep.REVIEW_SEND
        assert engine.progress(session) == pytest.approx(1.0)

    def test_current_step_always_in_step_list(self, engine, sample_draft):
        session = engine.start(initial_data=sample_draft)
        moves = [engine.next_step, engine.previous_step, engine.next_step, engine.next_step,
                 engine.previous_step, engine.previous_step, engine.previous_step, engine.next_step]

        for move in moves * 3:
            session = move(session)
            assert session.current_step in step_ids()


class TestGoToStep:
    """Tests des sauts directs"""

    def test_cannot_jump_forward_to_unvalidated_step(self, engine, session):
        result = engine.go_to_step(session, WizardStep.REVIEW_SEND)

        assert result == session

    def test_jump_back_to_completed_step(self, engine, sample_draft):
        session = engine.start(initial_data=sample_draft)
        session = engine.next_step(engine.next_step(engine.next_step(session)))
        assert session.current_step == WizardStep.TERMS_NOTES

        result = engine.go_to_step(session, WizardStep.PRODUCT_SELECTION)

        assert result.current_step == WizardStep.PRODUCT_SELECTION

    def test_jump_forward_to_completed_step(self, engine, sample_draft):
        session = engine.start(initial_data=sample_draft)
        session = engine.next_step(engine.next_step(engine.next_step(session)))
        session = engine.go_to_step(session, WizardStep.CUSTOMER_INFO)

        result = engine.go_to_step(session, "line-items")

        assert result.current_step == WizardStep.LINE_ITEMS

    def test_current_step_and_unknown_step_are_noops(self, engine, session):
        assert engine.go_to_step(session, WizardStep.CUSTOMER_INFO) == session
        assert engine.go_to_step(session, "payment") == session

    @pytest.mark.parametrize("target", list(WizardStep))
    def test_only_completed_or_current_targets_move(self, engine, valid_customer_session, target):
        session = engine.next_step(valid_customer_session)

        result = engine.go_to_step(session, target)

        if target in session.completed_steps or target == session.current_step:
            assert result.current_step == target
        else:
            assert result == session


class TestFormUpdates:
    """Tests de modification du brouillon et d'effacement ciblé des erreurs"""

    def test_update_customer_clears_only_touched_errors(self, engine, session):
        session = engine.next_step(session)
        assert {"name", "email"} <= set(session.validation_errors)

        result = engine.update_customer(session, email="buyer@acme.example")

        assert "email" not in result.validation_errors
        assert "name" in result.validation_errors
        assert result.form_data.customer.email == "buyer@acme.example"

    def test_update_form_data_clears_field_errors(self, engine, session):
        errors = {"discount_total": ("x",), "name": ("y",)}
        session = replace(session, validation_errors=errors)

        result = engine.update_form_data(session, discount_total=Decimal("5"))

        assert result.validation_errors == {"name": ("y",)}
        assert result.form_data.discount_total == Decimal("5")

    def test_update_form_data_customer_replaces_customer_errors(self, engine, session):
        session = engine.next_step(session)

        result = engine.update_form_data(session, customer={"name": "Acme", "email": "a@b.co"})

        assert result.validation_errors == {}
        assert result.form_data.customer.name == "Acme"

    def test_update_form_data_rejects_bad_shape(self, engine, session):
        with pytest.raises(ValidationError):
            engine.update_form_data(session, tax_rate="not-a-number")

    def test_update_form_data_rejects_unknown_field(self, engine, session):
        with pytest.raises(ValidationError):
            engine.update_form_data(session, bogus=1)

    def test_update_customer_rejects_unknown_field(self, engine, session):
        with pytest.raises(ValidationError):
            engine.update_customer(session, nickname="Acme")

    def test_add_line_item_clears_list_error(self, engine, session):
        session = replace(session, validation_errors={"line_items": ("Au moins une ligne est requise",)})

        result = engine.add_line_item(session, name="Widget", quantity=2, unit_price=Decimal("10"))

        assert result.validation_errors == {}
        assert result.form_data.line_items[0].name == "Widget"
        assert engine.calculations(result).subtotal == Decimal("20")

    def test_update_line_item_clears_touched_fields(self, engine, session):
        session = engine.add_line_item(session, LineItem(name="", quantity=0))
        session = replace(session, validation_errors={
            "line_items[0].name": ("a",),
            "line_items[0].quantity": ("b",),
        })

        result = engine.update_line_item(session, 0, quantity=3)

        assert result.validation_errors == {"line_items[0].name": ("a",)}
        assert result.form_data.line_items[0].quantity == 3

    def test_update_line_item_out_of_range_is_noop(self, engine, session):
        assert engine.update_line_item(session, 4, quantity=3) == session

    def test_remove_line_item_renumbers_errors(self, engine, session):
        for name in ("A", "B", "C"):
            session = engine.add_line_item(session, name=name)
        session = replace(session, validation_errors={
            "line_items[0].quantity": ("a",),
            "line_items[1].name": ("b",),
            "line_items[2].unit_price": ("c",),
            "email": ("d",),
        })

        result = engine.remove_line_item(session, 1)

        assert [item.name for item in result.form_data.line_items] == ["A", "C"]
        assert result.validation_errors == {
            "line_items[0].quantity": ("a",),
            "line_items[1].unit_price": ("c",),
            "email": ("d",),
        }

    def test_operations_do_not_mutate_input(self, engine, session):
        before = session
        engine.add_line_item(session, name="X")
        engine.update_customer(session, name="Y")

        assert session is before
        assert session.form_data.line_items == ()
        assert session.form_data.customer.name == ""


class TestResetAndBinding:
    """Tests de réinitialisation et de changement de devis édité"""

    def test_reset_restores_initial_data(self, engine, sample_draft):
        session = engine.start(initial_data=sample_draft)
        session = engine.next_step(engine.update_form_data(session, title="Autre"))

        result = engine.reset(session)

        assert result.current_step == WizardStep.CUSTOMER_INFO
        assert result.completed_steps == frozenset()
        assert result.form_data == sample_draft
        assert result.validation_errors == {}

    def test_bind_other_quote_resets(self, engine, sample_draft):
        session = engine.next_step(engine.start(initial_data=sample_draft, quote_id="q1"))

        result = engine.bind_quote(session, "q2", QuoteDraft(title="Q2"))

        assert result.quote_id == "q2"
        assert result.form_data.title == "Q2"
        assert result.current_step == WizardStep.CUSTOMER_INFO

    def test_bind_same_quote_keeps_session(self, engine, sample_draft):
        session = engine.next_step(engine.start(initial_data=sample_draft, quote_id="q1"))

        assert engine.bind_quote(session, "q1") is session


class TestSubmit:
    """Tests de soumission asynchrone"""

    @pytest.mark.asyncio
    async def test_submit_success_calls_callback(self, engine, sample_draft):
        session = engine.start(initial_data=sample_draft)
        received = []
        states = []

        async def on_complete(draft):
            received.append(draft)

        result = await engine.submit_quote(session, on_complete, on_state=states.append)

        assert received == [sample_draft]
        assert states[0].is_submitting is True
        assert result.is_submitting is False
        assert result.error is None
        assert result.completed_steps == frozenset(step_ids())

    @pytest.mark.asyncio
    async def test_submit_failure_keeps_draft(self, engine, sample_draft):
        session = engine.start(initial_data=sample_draft)

        async def on_complete(draft):
            raise RuntimeError("Serveur indisponible")

        result = await engine.submit_quote(session, on_complete)

        assert result.error == "Serveur indisponible"
        assert result.is_submitting is False
        assert result.form_data == sample_draft

    @pytest.mark.asyncio
    async def test_submit_failure_without_message_uses_default(self, engine, sample_draft):
        async def on_complete(draft):
            raise RuntimeError()

        result = await engine.submit_quote(engine.start(initial_data=sample_draft), on_complete)

        assert result.error == "Échec de la soumission du devis"

    @pytest.mark.asyncio
    async def test_submit_revalidates_before_callback(self, engine, session):
        called = []

        async def on_complete(draft):
            called.append(draft)

        result = await engine.submit_quote(session, on_complete)

        assert called == []
        assert result.validation_errors == validate_all(session.form_data)
        assert result.is_submitting is False

    def test_navigation_ignored_while_submitting(self, engine, sample_draft):
        session = replace(engine.next_step(engine.start(initial_data=sample_draft)), is_submitting=True)

        assert engine.next_step(session) == session
        assert engine.previous_step(session) == session
        assert engine.go_to_step(session, WizardStep.CUSTOMER_INFO) == session
        assert not engine.can_proceed(session)

    @pytest.mark.asyncio
    async def test_cancellation_propagates(self, engine, sample_draft):
        async def on_complete(draft):
            raise asyncio.CancelledError()

        with pytest.raises(asyncio.CancelledError):
            await engine.submit_quote(engine.start(initial_data=sample_draft), on_complete)

    def test_clear_error(self, engine, session):
        session = replace(session, error="boom")

        assert engine.clear_error(session).error is None


class TestSessionStore:
    """Tests du stockage des sessions parallèles"""

    @pytest.mark.asyncio
    async def test_sessions_are_independent(self, engine):
        store = WizardSessionStore()
        first = await store.put(engine.start(initial_data=QuoteDraft(title="A")))
        second = await store.put(engine.start(initial_data=QuoteDraft(title="B")))

        await store.put(engine.update_form_data(first, title="A2"))

        assert store.get(first.session_id).form_data.title == "A2"
        assert store.get(second.session_id).form_data.title == "B"
        assert len(store) == 2

    @pytest.mark.asyncio
    async def test_discard(self, engine):
        store = WizardSessionStore()
        session = await store.put(engine.start())

        assert await store.discard(session.session_id) is True
        assert await store.discard(session.session_id) is False
        assert store.get(session.session_id) is None

    @pytest.mark.asyncio
    async def test_cleanup_old_sessions(self, engine):
        store = WizardSessionStore()
        now = datetime(2026, 5, 10, 12, 0)
        idle = await store.put(engine.start(), now=now - timedelta(hours=30))
        active = await store.put(engine.start(), now=now - timedelta(hours=30))
        await store.put(engine.next_step(active), now=now - timedelta(hours=1))

        purged = await store.cleanup_old_sessions(max_age_hours=24, now=now)

        assert purged == 1
        assert store.get(idle.session_id) is None
        assert store.updated_at(idle.session_id) is None
        assert store.get(active.session_id) is not None
        assert store.updated_at(active.session_id) == now - timedelta(hours=1)
        assert len(store) == 1

    def test_step_table_is_linear(self):
        assert [d.step for d in WIZARD_STEPS] == list(WizardStep)

    def test_snapshot_is_serializable(self, engine, sample_draft):
        snapshot = engine.snapshot(engine.start(initial_data=sample_draft))

        assert snapshot["current_step"] == "customer-info"
        assert snapshot["calculations"]["total"] == "220"
        assert snapshot["can_proceed"] is True
