"""
Service d'orchestration du cycle de vie des devis.

Chargement -> machine à états -> repository, avec journalisation structurée
de chaque événement. Les règles de transition restent dans
services.quote_status_machine ; ce module ne fait que les appliquer.
"""

import logging
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from core.config import QuoteEngineSettings, get_settings
from core.logging import log_quote_event
from services.quote_models import (
    Quote,
    QuoteDraft,
    QuoteStatus,
    StatusChangeRecord,
    TransitionResult,
)
from services.quote_repository import QuoteRepository
from services.quote_status_machine import (
    activity_type_for,
    apply_quote_edit,
    transition,
)

logger = logging.getLogger(__name__)


class QuoteLifecycleService:
    """Création, changement de statut et édition des devis persistés"""

    def __init__(self, repository: QuoteRepository, settings: Optional[QuoteEngineSettings] = None):
        self.repository = repository
        self.settings = settings or get_settings()

    def _not_found(self, quote_id: str) -> TransitionResult:
        return TransitionResult(
            success=False,
            error_code="QUOTE_NOT_FOUND",
            error=f"Quote {quote_id} not found",
        )

    def _conflict(self, quote: Quote) -> TransitionResult:
        return TransitionResult(
            success=False,
            error_code="CONCURRENT_MODIFICATION",
            error=f"Quote {quote.id} was modified concurrently",
            quote=quote,
        )

    # ------------------------------------------------------------------
    # Création
    # ------------------------------------------------------------------

    def create_from_draft(
        self,
        draft: QuoteDraft,
        actor: str = "system",
        actor_name: str = "System",
        now: Optional[datetime] = None
    ) -> Quote:
        """Persiste un brouillon soumis ; l'expiration par défaut suit QUOTE_VALIDITY_DAYS"""
        expires_at = (now or datetime.utcnow()) + timedelta(days=self.settings.quote_validity_days)
        quote = self.repository.create_quote(
            draft,
            expires_at=expires_at,
            actor=actor,
            actor_name=actor_name,
        )
        log_quote_event("quote_created", quote_id=quote.id, to_status=quote.status.value, actor=actor)
        return quote

    async def complete_wizard(self, draft: QuoteDraft) -> Quote:
        """Callback de fin d'assistant (QuoteWizardEngine.submit_quote)"""
        return self.create_from_draft(draft)

    # ------------------------------------------------------------------
    # Lecture
    # ------------------------------------------------------------------

    def get_quote(self, quote_id: str) -> Optional[Quote]:
        return self.repository.get_quote(quote_id)

    def get_history(self, quote_id: str) -> List[StatusChangeRecord]:
        return self.repository.get_history(quote_id)

    # ------------------------------------------------------------------
    # Statut
    # ------------------------------------------------------------------

    def change_status(
        self,
        quote_id: str,
        to_status: QuoteStatus,
        actor: str = "system",
        actor_name: str = "System",
        comment: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
        expected_version: Optional[int] = None,
        now: Optional[datetime] = None
    ) -> TransitionResult:
        """
        Applique une transition et la persiste avec son historique.

        Args:
            expected_version: version vue par l'appelant ; si elle ne
                correspond plus, la transition est refusée sans écriture

        Returns:
            TransitionResult ; error_code parmi QUOTE_NOT_FOUND, INVALID_STATUS,
            INVALID_TRANSITION, TERMINAL_STATUS, CONCURRENT_MODIFICATION
        """
        quote = self.repository.get_quote(quote_id)
        if quote is None:
            log_quote_event("status_changed", quote_id=quote_id, result="failure",
                            actor=actor, error_code="QUOTE_NOT_FOUND")
            return self._not_found(quote_id)

        if expected_version is not None and expected_version != quote.version:
            log_quote_event("status_changed", quote_id=quote_id, result="conflict",
                            from_status=quote.status.value, actor=actor,
                            error_code="CONCURRENT_MODIFICATION")
            return self._conflict(quote)

        result = transition(quote, to_status, actor, actor_name, comment, metadata, now)
        if not result.success:
            log_quote_event("status_changed", quote_id=quote_id, result="failure",
                            from_status=quote.status.value, to_status=str(getattr(to_status, "value", to_status)),
                            actor=actor, error_code=result.error_code)
            return result

        saved = self.repository.save_transition(
            result.quote,
            result.record,
            expected_version=quote.version,
            activity_type=activity_type_for(result.quote.status).value,
        )
        if not saved:
            log_quote_event("status_changed", quote_id=quote_id, result="conflict",
                            from_status=quote.status.value, to_status=result.quote.status.value,
                            actor=actor, error_code="CONCURRENT_MODIFICATION")
            return self._conflict(quote)

        log_quote_event("status_changed", quote_id=quote_id,
                        from_status=quote.status.value, to_status=result.quote.status.value,
                        actor=actor)
        return result

    # ------------------------------------------------------------------
    # Édition
    # ------------------------------------------------------------------

    def edit_quote(
        self,
        quote_id: str,
        changes: Dict[str, Any],
        actor: str = "system",
        expected_version: Optional[int] = None
    ) -> TransitionResult:
        """Modifie un devis en draft/pending ; QUOTE_NOT_EDITABLE sinon"""
        quote = self.repository.get_quote(quote_id)
        if quote is None:
            return self._not_found(quote_id)

        result = apply_quote_edit(quote, **changes)
        if not result.success:
            log_quote_event("quote_edited", quote_id=quote_id, result="failure",
                            from_status=quote.status.value, actor=actor, error_code=result.error_code)
            return result

        if expected_version is not None and expected_version != quote.version:
            return self._conflict(quote)

        if not self.repository.update_quote(result.quote, expected_version=quote.version):
            log_quote_event("quote_edited", quote_id=quote_id, result="conflict",
                            actor=actor, error_code="CONCURRENT_MODIFICATION")
            return self._conflict(quote)

        log_quote_event("quote_edited", quote_id=quote_id, actor=actor,
                        extra_data={"fields": sorted(changes)})
        return result
