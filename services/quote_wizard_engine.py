"""
services/quote_wizard_engine.py
Moteur de l'assistant de création de devis - Machine à états linéaire

Règles :
- Avancer uniquement si l'étape courante est valide
- Revenir en arrière librement
- Sauter uniquement vers une étape déjà validée (ou rester sur place)
- Chaque opération retourne une nouvelle session (copie), jamais de mutation
"""

import asyncio
import logging
import re
import uuid
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta
from typing import Any, Awaitable, Callable, Dict, FrozenSet, Iterable, Optional, Tuple

from services.quote_calculator import calculate_draft
from services.quote_models import CustomerInfo, LineItem, QuoteCalculations, QuoteDraft, WizardStep
from services.wizard_steps import (
    StepDefinition,
    ValidationErrors,
    WIZARD_STEPS,
    step_index,
    validate_all,
)


logger = logging.getLogger(__name__)

CompletionCallback = Callable[[QuoteDraft], Awaitable[None]]
StateHook = Callable[["WizardSession"], None]

CUSTOMER_FIELDS = frozenset(CustomerInfo.model_fields)
LINE_ITEM_KEY = re.compile(r"^line_items\[(\d+)\](.*)$")


@dataclass(frozen=True)
class WizardSession:
    """État d'une session de l'assistant (une par onglet / édition)"""
    session_id: str
    current_step: WizardStep
    form_data: QuoteDraft
    initial_data: QuoteDraft
    completed_steps: FrozenSet[WizardStep] = frozenset()
    validation_errors: ValidationErrors = field(default_factory=dict)
    is_submitting: bool = False
    error: Optional[str] = None
    quote_id: Optional[str] = None


def _without_keys(errors: ValidationErrors, keys: Iterable[str]) -> ValidationErrors:
    keys = set(keys)
    return {k: v for k, v in errors.items() if k not in keys}


def _without_prefixes(errors: ValidationErrors, prefixes: Iterable[str]) -> ValidationErrors:
    prefixes = tuple(prefixes)
    return {
        k: v for k, v in errors.items()
        if not any(k == p or k.startswith(p + ".") or k.startswith(p + "[") for p in prefixes)
    }


class QuoteWizardEngine:
    """
    Machine à états de l'assistant de devis

    La séquence d'étapes et les règles de validation viennent de la table
    déclarative `WIZARD_STEPS` ; le moteur ne teste jamais l'identité d'une
    étape en dur.
    """

    def __init__(self, steps: Tuple[StepDefinition, ...] = WIZARD_STEPS):
        if not steps:
            raise ValueError("Au moins une étape est requise")
        self.steps = steps

    # ------------------------------------------------------------------
    # Création / réinitialisation
    # ------------------------------------------------------------------

    def start(
        self,
        initial_data: Optional[QuoteDraft] = None,
        quote_id: Optional[str] = None,
        session_id: Optional[str] = None
    ) -> WizardSession:
        """Ouvre une session sur la première étape"""
        initial = initial_data or QuoteDraft()
        return WizardSession(
            session_id=session_id or str(uuid.uuid4()),
            current_step=self.steps[0].step,
            form_data=initial,
            initial_data=initial,
            quote_id=quote_id,
        )

    def reset(self, session: WizardSession) -> WizardSession:
        """Retour à l'étape initiale avec les données d'origine"""
        return replace(
            session,
            current_step=self.steps[0].step,
            completed_steps=frozenset(),
            validation_errors={},
            is_submitting=False,
            error=None,
            form_data=session.initial_data,
        )

    def bind_quote(
        self,
        session: WizardSession,
        quote_id: Optional[str],
        initial_data: Optional[QuoteDraft] = None
    ) -> WizardSession:
        """Changement d'identité du devis édité : session remise à zéro"""
        if quote_id == session.quote_id and initial_data is None:
            return session
        initial = initial_data or QuoteDraft()
        return self.reset(replace(session, quote_id=quote_id, initial_data=initial))

    # ------------------------------------------------------------------
    # Lecture
    # ------------------------------------------------------------------

    def _index(self, step: WizardStep) -> Optional[int]:
        return step_index(step, self.steps)

    def step_definition(self, session: WizardSession) -> StepDefinition:
        return self.steps[self._index(session.current_step)]

    def validate_current_step(self, session: WizardSession) -> ValidationErrors:
        return self.step_definition(session).validator(session.form_data)

    def is_step_valid(self, session: WizardSession) -> bool:
        return not self.validate_current_step(session)

    def can_proceed(self, session: WizardSession) -> bool:
        return self.is_step_valid(session) and not session.is_submitting

    def can_go_back(self, session: WizardSession) -> bool:
        return self._index(session.current_step) > 0 and not session.is_submitting

    def progress(self, session: WizardSession) -> float:
        """Fraction dans (0, 1] pour l'affichage"""
        return (self._index(session.current_step) + 1) / len(self.steps)

    def calculations(self, session: WizardSession) -> QuoteCalculations:
        return calculate_draft(session.form_data)

    # ------------------------------------------------------------------
    # Navigation
    # ------------------------------------------------------------------

    def next_step(self, session: WizardSession) -> WizardSession:
        """Valide l'étape courante puis avance d'un cran si elle est valide"""
        if session.is_submitting:
            return session

        errors = self.validate_current_step(session)
        if errors:
            logger.debug(f"Étape {session.current_step.value} invalide : {sorted(errors)}")
            return replace(session, validation_errors=errors)

        index = self._index(session.current_step)
        completed = session.completed_steps | {session.current_step}
        next_index = min(index + 1, len(self.steps) - 1)

        return replace(
            session,
            completed_steps=completed,
            current_step=self.steps[next_index].step,
            validation_errors={},
        )

    def previous_step(self, session: WizardSession) -> WizardSession:
        if session.is_submitting:
            return session

        index = self._index(session.current_step)
        if index == 0:
            return session

        return replace(session, current_step=self.steps[index - 1].step, validation_errors={})

    def go_to_step(self, session: WizardSession, target: Any) -> WizardSession:
        """Saut direct autorisé seulement vers une étape validée ou l'étape courante"""
        if session.is_submitting:
            return session

        try:
            target = WizardStep(target)
        except ValueError:
            return session

        if target == session.current_step:
            return session
        if target not in session.completed_steps or self._index(target) is None:
            return session

        return replace(session, current_step=target, validation_errors={})

    # ------------------------------------------------------------------
    # Modification du brouillon
    # ------------------------------------------------------------------

    def update_form_data(self, session: WizardSession, **changes: Any) -> WizardSession:
        """Met à jour des champs du brouillon ; efface seulement leurs erreurs"""
        if not changes:
            return session

        form_data = QuoteDraft.model_validate({**session.form_data.model_dump(), **changes})

        errors = _without_prefixes(session.validation_errors, changes.keys())
        if "customer" in changes:
            errors = _without_keys(errors, CUSTOMER_FIELDS)

        return replace(session, form_data=form_data, validation_errors=errors)

    def update_customer(self, session: WizardSession, **changes: Any) -> WizardSession:
        if not changes:
            return session

        customer = CustomerInfo.model_validate(
            {**session.form_data.customer.model_dump(), **changes}
        )
        form_data = session.form_data.model_copy(update={"customer": customer})

        return replace(
            session,
            form_data=form_data,
            validation_errors=_without_keys(session.validation_errors, changes.keys()),
        )

    def add_line_item(self, session: WizardSession, item: Optional[LineItem] = None, **fields: Any) -> WizardSession:
        if item is None:
            item = LineItem.model_validate(fields)

        form_data = session.form_data.model_copy(
            update={"line_items": session.form_data.line_items + (item,)}
        )
        return replace(
            session,
            form_data=form_data,
            validation_errors=_without_keys(session.validation_errors, ["line_items"]),
        )

    def update_line_item(self, session: WizardSession, index: int, **changes: Any) -> WizardSession:
        items = session.form_data.line_items
        if not 0 <= index < len(items) or not changes:
            return session

        updated = LineItem.model_validate({**items[index].model_dump(), **changes})
        new_items = items[:index] + (updated,) + items[index + 1:]
        form_data = session.form_data.model_copy(update={"line_items": new_items})

        touched = [f"line_items[{index}].{name}" for name in changes]
        return replace(
            session,
            form_data=form_data,
            validation_errors=_without_keys(session.validation_errors, touched),
        )

    def remove_line_item(self, session: WizardSession, index: int) -> WizardSession:
        """Supprime une ligne ; les erreurs des lignes suivantes sont renumérotées"""
        items = session.form_data.line_items
        if not 0 <= index < len(items):
            return session

        new_items = items[:index] + items[index + 1:]
        form_data = session.form_data.model_copy(update={"line_items": new_items})

        errors: Dict[str, Tuple[str, ...]] = {}
        for key, messages in session.validation_errors.items():
            match = LINE_ITEM_KEY.match(key)
            if not match:
                errors[key] = messages
                continue
            position = int(match.group(1))
            if position < index:
                errors[key] = messages
            elif position > index:
                errors[f"line_items[{position - 1}]{match.group(2)}"] = messages

        return replace(session, form_data=form_data, validation_errors=errors)

    def clear_error(self, session: WizardSession) -> WizardSession:
        return replace(session, error=None)

    # ------------------------------------------------------------------
    # Soumission
    # ------------------------------------------------------------------

    async def submit_quote(
        self,
        session: WizardSession,
        on_complete: Optional[CompletionCallback] = None,
        on_state: Optional[StateHook] = None
    ) -> WizardSession:
        """
        Soumet le brouillon au callback externe.

        Toutes les règles sont revérifiées avant l'appel. En cas d'échec du
        callback, le message est conservé dans `error`, `is_submitting`
        repasse à False et le brouillon reste intact.
        """
        if session.is_submitting:
            return session

        errors = validate_all(session.form_data, self.steps)
        if errors:
            logger.info(f"Soumission refusée : {len(errors)} champ(s) invalide(s)")
            return replace(session, validation_errors=errors)

        submitting = replace(session, is_submitting=True, error=None, validation_errors={})
        if on_state:
            on_state(submitting)

        try:
            if on_complete:
                await on_complete(submitting.form_data)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            message = str(e) or "Échec de la soumission du devis"
            logger.warning(f"Échec soumission session {session.session_id} : {message}")
            return replace(submitting, is_submitting=False, error=message)

        logger.info(f"Devis soumis depuis la session {session.session_id}")
        return replace(
            submitting,
            is_submitting=False,
            completed_steps=frozenset(definition.step for definition in self.steps),
        )

    # ------------------------------------------------------------------
    # Sérialisation
    # ------------------------------------------------------------------

    def snapshot(self, session: WizardSession) -> Dict[str, Any]:
        """Vue sérialisable de la session (API)"""
        return {
            "session_id": session.session_id,
            "quote_id": session.quote_id,
            "current_step": session.current_step.value,
            "completed_steps": [d.step.value for d in self.steps if d.step in session.completed_steps],
            "validation_errors": {k: list(v) for k, v in session.validation_errors.items()},
            "is_submitting": session.is_submitting,
            "error": session.error,
            "progress": self.progress(session),
            "can_proceed": self.can_proceed(session),
            "can_go_back": self.can_go_back(session),
            "form_data": session.form_data.model_dump(mode="json"),
            "calculations": self.calculations(session).model_dump(mode="json"),
        }


class WizardSessionStore:
    """
    Sessions indépendantes indexées par ID (plusieurs onglets en parallèle).

    Chaque écriture rafraîchit la date de dernière activité de la session ;
    les sessions inactives sont purgées par cleanup_old_sessions.
    """

    def __init__(self):
        self._sessions: Dict[str, WizardSession] = {}
        self._updated_at: Dict[str, datetime] = {}
        self._lock = asyncio.Lock()

    def get(self, session_id: str) -> Optional[WizardSession]:
        return self._sessions.get(session_id)

    def updated_at(self, session_id: str) -> Optional[datetime]:
        return self._updated_at.get(session_id)

    async def put(self, session: WizardSession, now: Optional[datetime] = None) -> WizardSession:
        async with self._lock:
            self._sessions[session.session_id] = session
            self._updated_at[session.session_id] = now or datetime.utcnow()
        return session

    async def discard(self, session_id: str) -> bool:
        async with self._lock:
            self._updated_at.pop(session_id, None)
            return self._sessions.pop(session_id, None) is not None

    async def cleanup_old_sessions(self, max_age_hours: int = 24, now: Optional[datetime] = None) -> int:
        """Supprime les sessions sans activité depuis max_age_hours ; retourne le nombre purgé"""
        cutoff = (now or datetime.utcnow()) - timedelta(hours=max_age_hours)

        async with self._lock:
            stale = [sid for sid, touched in self._updated_at.items() if touched < cutoff]
            for session_id in stale:
                del self._sessions[session_id]
                del self._updated_at[session_id]

        if stale:
            logger.info(f"{len(stale)} sessions d'assistant inactives purgées")
        return len(stale)

    def __len__(self) -> int:
        return len(self._sessions)
