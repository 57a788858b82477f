"""
services/quote_status_machine.py
Machine à états du statut des devis - graphe de transitions explicite

Règles strictes :
- Une transition n'est légale que si elle figure dans STATUS_FLOW
- accepted et converted sont terminaux (aucune transition sortante)
- Un devis n'est modifiable qu'en draft ou pending
- Chaque transition réussie produit une entrée d'historique ; l'historique
  n'est jamais réécrit
"""

import logging
import random
import string
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, FrozenSet, List, Mapping, Optional, Set, Tuple

from services.quote_calculator import calculate_draft, round_money
from services.quote_models import (
    ActivityType,
    Quote,
    QuoteDraft,
    QuoteStatus,
    StatusAction,
    StatusChangeRecord,
    TransitionResult,
)
from services.wizard_steps import validate_all


logger = logging.getLogger(__name__)

S = QuoteStatus

STATUS_FLOW: Mapping[QuoteStatus, FrozenSet[QuoteStatus]] = {
    S.DRAFT: frozenset({S.SENT, S.PENDING}),
    S.PENDING: frozenset({S.SENT, S.DRAFT}),
    S.SENT: frozenset({S.VIEWED, S.ACCEPTED, S.REJECTED, S.EXPIRED, S.SENT}),
    S.VIEWED: frozenset({S.ACCEPTED, S.REJECTED, S.EXPIRED}),
    S.ACCEPTED: frozenset(),
    S.REJECTED: frozenset({S.DRAFT}),
    S.EXPIRED: frozenset({S.SENT, S.DRAFT}),
    S.CONVERTED: frozenset(),
}


@dataclass(frozen=True)
class StatusMetadata:
    label: str
    description: str
    can_edit: bool

    # Dérivé du graphe, jamais saisi à la main
    is_terminal: bool = False


_METADATA_BASE = {
    S.DRAFT: ("Draft", "Quote is being prepared", True),
    S.PENDING: ("Pending", "Quote is ready to be sent", True),
    S.SENT: ("Sent", "Quote has been sent to customer", False),
    S.VIEWED: ("Viewed", "Customer has viewed the quote", False),
    S.ACCEPTED: ("Accepted", "Quote has been accepted by customer", False),
    S.REJECTED: ("Declined", "Quote has been declined", False),
    S.EXPIRED: ("Expired", "Quote has expired", False),
    S.CONVERTED: ("Converted", "Quote converted to order", False),
}

STATUS_METADATA: Mapping[QuoteStatus, StatusMetadata] = {
    status: StatusMetadata(label, description, can_edit, is_terminal=not STATUS_FLOW[status])
    for status, (label, description, can_edit) in _METADATA_BASE.items()
}


@dataclass(frozen=True)
class TransitionAction:
    """Libellé d'action associé à une arête du graphe"""
    label: str
    requires_confirmation: bool = False
    confirmation_message: Optional[str] = None


_IRREVERSIBLE = "Are you sure you want to mark this quote as {}? This action cannot be undone."

TRANSITION_ACTIONS: Mapping[Tuple[QuoteStatus, QuoteStatus], TransitionAction] = {
    (S.DRAFT, S.SENT): TransitionAction("Send Quote"),
    (S.DRAFT, S.PENDING): TransitionAction("Save as Pending"),
    (S.PENDING, S.SENT): TransitionAction("Send Quote"),
    (S.PENDING, S.DRAFT): TransitionAction("Move to Draft"),
    (S.SENT, S.VIEWED): TransitionAction("Mark as Viewed"),
    (S.SENT, S.ACCEPTED): TransitionAction("Mark as Accepted", True, _IRREVERSIBLE.format("accepted")),
    (S.SENT, S.REJECTED): TransitionAction("Mark as Declined", True, _IRREVERSIBLE.format("declined")),
    (S.SENT, S.EXPIRED): TransitionAction("Mark as Expired"),
    (S.SENT, S.SENT): TransitionAction("Resend Quote"),
    (S.VIEWED, S.ACCEPTED): TransitionAction("Mark as Accepted", True, _IRREVERSIBLE.format("accepted")),
    (S.VIEWED, S.REJECTED): TransitionAction("Mark as Declined", True, _IRREVERSIBLE.format("declined")),
    (S.VIEWED, S.EXPIRED): TransitionAction("Mark as Expired"),
    (S.EXPIRED, S.SENT): TransitionAction("Resend Quote"),
    (S.EXPIRED, S.DRAFT): TransitionAction("Move to Draft"),
    (S.REJECTED, S.DRAFT): TransitionAction("Reopen as Draft"),
}

ACTIVITY_BY_STATUS: Mapping[QuoteStatus, ActivityType] = {
    S.DRAFT: ActivityType.QUOTE_CREATED,
    S.PENDING: ActivityType.STATUS_CHANGED,
    S.SENT: ActivityType.QUOTE_SENT,
    S.VIEWED: ActivityType.QUOTE_VIEWED,
    S.ACCEPTED: ActivityType.QUOTE_ACCEPTED,
    S.REJECTED: ActivityType.QUOTE_REJECTED,
    S.EXPIRED: ActivityType.QUOTE_EXPIRED,
    S.CONVERTED: ActivityType.QUOTE_CONVERTED,
}

# Horodatage renseigné sur le devis à l'entrée dans un statut
STATUS_TIMESTAMP_FIELD: Mapping[QuoteStatus, str] = {
    S.SENT: "sent_at",
    S.VIEWED: "viewed_at",
    S.ACCEPTED: "accepted_at",
    S.REJECTED: "rejected_at",
    S.CONVERTED: "converted_at",
}

# Champs d'un devis modifiables tant que le statut le permet
EDITABLE_FIELDS = frozenset({
    "customer", "title", "description", "notes", "terms",
    "line_items", "discount_total", "tax_rate", "expires_at",
})


# ----------------------------------------------------------------------
# Interrogation du graphe
# ----------------------------------------------------------------------

def can_transition(from_status: QuoteStatus, to_status: QuoteStatus) -> bool:
    try:
        return QuoteStatus(to_status) in STATUS_FLOW.get(QuoteStatus(from_status), frozenset())
    except ValueError:
        return False


def next_statuses(status: QuoteStatus) -> Tuple[QuoteStatus, ...]:
    """Statuts atteignables en une transition, dans l'ordre de déclaration de l'enum"""
    targets = STATUS_FLOW[QuoteStatus(status)]
    return tuple(s for s in QuoteStatus if s in targets)


def is_terminal(status: QuoteStatus) -> bool:
    return STATUS_METADATA[QuoteStatus(status)].is_terminal


def can_edit(status: QuoteStatus) -> bool:
    return STATUS_METADATA[QuoteStatus(status)].can_edit


def activity_type_for(status: QuoteStatus) -> ActivityType:
    return ACTIVITY_BY_STATUS.get(QuoteStatus(status), ActivityType.STATUS_CHANGED)


def available_actions(status: QuoteStatus) -> List[StatusAction]:
    """Actions proposées pour un statut (neutre vis-à-vis de l'UI)"""
    actions = []
    for target in next_statuses(status):
        action = TRANSITION_ACTIONS.get((QuoteStatus(status), target), TransitionAction(f"Move to {target.value}"))
        if target == S.ACCEPTED:
            variant = "primary"
        elif target == S.REJECTED:
            variant = "danger"
        else:
            variant = "secondary"
        actions.append(StatusAction(
            label=action.label,
            status=target,
            variant=variant,
            requires_confirmation=action.requires_confirmation,
            confirmation_message=action.confirmation_message,
        ))
    return actions


def reachable_from(status: QuoteStatus) -> Set[QuoteStatus]:
    """Statuts atteignables depuis `status` (lui-même inclus)"""
    seen = {QuoteStatus(status)}
    stack = [QuoteStatus(status)]
    while stack:
        current = stack.pop()
        for target in STATUS_FLOW[current]:
            if target not in seen:
                seen.add(target)
                stack.append(target)
    return seen


def unreachable_states(start: QuoteStatus = S.DRAFT) -> Set[QuoteStatus]:
    return set(QuoteStatus) - reachable_from(start)


def dead_states() -> Set[QuoteStatus]:
    """Statuts non terminaux depuis lesquels aucun statut terminal n'est atteignable"""
    terminals = {s for s in QuoteStatus if is_terminal(s)}
    return {
        s for s in QuoteStatus
        if not is_terminal(s) and not (reachable_from(s) & terminals)
    }


# ----------------------------------------------------------------------
# Transitions
# ----------------------------------------------------------------------

def validate_transition(from_status: QuoteStatus, to_status: QuoteStatus) -> TransitionResult:
    try:
        from_status = QuoteStatus(from_status)
        to_status = QuoteStatus(to_status)
    except ValueError as e:
        return TransitionResult(success=False, error_code="INVALID_STATUS", error=str(e))

    if is_terminal(from_status):
        return TransitionResult(
            success=False,
            error_code="TERMINAL_STATUS",
            error=f'Cannot transition from final status "{from_status.value}"',
        )

    if not can_transition(from_status, to_status):
        return TransitionResult(
            success=False,
            error_code="INVALID_TRANSITION",
            error=f'Invalid transition from "{from_status.value}" to "{to_status.value}"',
        )

    return TransitionResult(success=True)


def generate_history_id(now: Optional[datetime] = None) -> str:
    now = now or datetime.utcnow()
    suffix = "".join(random.choices(string.ascii_lowercase + string.digits, k=7))
    return f"hist_{int(now.replace(tzinfo=timezone.utc).timestamp() * 1000)}_{suffix}"


def create_status_change_record(
    quote_id: str,
    from_status: QuoteStatus,
    to_status: QuoteStatus,
    changed_by: str,
    changed_by_name: str,
    comment: Optional[str] = None,
    metadata: Optional[Dict[str, Any]] = None,
    now: Optional[datetime] = None
) -> StatusChangeRecord:
    now = now or datetime.utcnow()
    return StatusChangeRecord(
        id=generate_history_id(now),
        quote_id=quote_id,
        from_status=from_status,
        to_status=to_status,
        changed_by=changed_by,
        changed_by_name=changed_by_name,
        changed_at=now,
        comment=comment,
        metadata=metadata or {},
    )


def transition(
    quote: Quote,
    to_status: QuoteStatus,
    actor: str = "system",
    actor_name: str = "System",
    comment: Optional[str] = None,
    metadata: Optional[Dict[str, Any]] = None,
    now: Optional[datetime] = None
) -> TransitionResult:
    """
    Applique une transition sur une copie du devis.

    En cas d'échec le devis d'origine est retourné tel quel dans le résultat
    et aucune entrée d'historique n'est produite.
    """
    validation = validate_transition(quote.status, to_status)
    if not validation.success:
        logger.info(f"Transition refusée pour {quote.id} : {validation.error}")
        return validation.model_copy(update={"quote": quote})

    to_status = QuoteStatus(to_status)
    now = now or datetime.utcnow()

    record = create_status_change_record(
        quote.id, quote.status, to_status, actor, actor_name, comment, metadata, now
    )

    updates: Dict[str, Any] = {
        "status": to_status,
        "updated_at": now,
        "version": quote.version + 1,
    }
    timestamp_field = STATUS_TIMESTAMP_FIELD.get(to_status)
    if timestamp_field:
        updates[timestamp_field] = now
    if to_status == S.REJECTED and comment:
        updates["rejection_reason"] = comment

    logger.info(f"Devis {quote.id} : {quote.status.value} -> {to_status.value} par {actor}")
    return TransitionResult(success=True, quote=quote.model_copy(update=updates), record=record)


# ----------------------------------------------------------------------
# Édition
# ----------------------------------------------------------------------

def ensure_editable(quote: Quote) -> TransitionResult:
    if not can_edit(quote.status):
        return TransitionResult(
            success=False,
            error_code="QUOTE_NOT_EDITABLE",
            error=f'Quote cannot be edited in status "{quote.status.value}"',
            quote=quote,
        )
    return TransitionResult(success=True, quote=quote)


def apply_quote_edit(quote: Quote, now: Optional[datetime] = None, **changes: Any) -> TransitionResult:
    """
    Modifie un devis encore éditable.

    Le contrôle d'éditabilité précède toute autre vérification. Le devis
    modifié repasse par les validateurs de l'assistant avant que les totaux
    stockés soient recalculés.
    """
    editable = ensure_editable(quote)
    if not editable.success:
        return editable

    unknown = set(changes) - EDITABLE_FIELDS
    if unknown:
        return TransitionResult(
            success=False,
            error_code="FIELD_NOT_EDITABLE",
            error=f"Champs non modifiables : {', '.join(sorted(unknown))}",
            quote=quote,
        )

    data = {**quote.model_dump(), **changes}
    data["updated_at"] = now or datetime.utcnow()
    data["version"] = quote.version + 1
    edited = Quote.model_validate(data)
    draft = quote_as_draft(edited)

    errors = validate_all(draft)
    if errors:
        return TransitionResult(
            success=False,
            error_code="VALIDATION_ERROR",
            error=f"Modification invalide : {', '.join(sorted(errors))}",
            quote=quote,
            validation_errors={field: list(messages) for field, messages in errors.items()},
        )

    totals = calculate_draft(draft)
    edited = edited.model_copy(update={
        "subtotal": round_money(totals.subtotal),
        "tax_total": round_money(totals.tax_total),
        "total": round_money(totals.total),
    })

    return TransitionResult(success=True, quote=edited)


def quote_as_draft(quote: Quote) -> QuoteDraft:
    """Brouillon équivalent à un devis (flux d'édition dans l'assistant)"""
    return QuoteDraft(
        customer=quote.customer,
        line_items=quote.line_items,
        title=quote.title,
        description=quote.description,
        notes=quote.notes,
        terms=quote.terms,
        valid_until=quote.expires_at,
        discount_total=quote.discount_total,
        tax_rate=quote.tax_rate,
    )


# ----------------------------------------------------------------------
# Workflow avec historique
# ----------------------------------------------------------------------

class QuoteWorkflow:
    """Devis et son historique de statuts (ajout seul)"""

    def __init__(self, quote: Quote, history: Optional[List[StatusChangeRecord]] = None):
        self._quote = quote
        self._history: List[StatusChangeRecord] = list(history or [])

    @property
    def quote(self) -> Quote:
        return self._quote

    @property
    def status(self) -> QuoteStatus:
        return self._quote.status

    @property
    def history(self) -> List[StatusChangeRecord]:
        return list(self._history)

    def available_actions(self) -> List[StatusAction]:
        return available_actions(self.status)

    def can_transition_to(self, to_status: QuoteStatus) -> bool:
        return can_transition(self.status, to_status)

    def transition(self, to_status: QuoteStatus, actor: str = "system", actor_name: str = "System",
                   comment: Optional[str] = None, metadata: Optional[Dict[str, Any]] = None,
                   now: Optional[datetime] = None) -> TransitionResult:
        result = transition(self._quote, to_status, actor, actor_name, comment, metadata, now)
        if result.success:
            self._history.append(result.record)
            self._quote = result.quote
        return result

    def last_change(self) -> Optional[StatusChangeRecord]:
        return self._history[-1] if self._history else None

    def time_in_current_status(self, now: Optional[datetime] = None) -> float:
        """Secondes passées dans le statut courant (0 sans historique)"""
        last = self.last_change()
        if not last:
            return 0.0
        return ((now or datetime.utcnow()) - last.changed_at).total_seconds()

    def is_in_status_longer_than(self, seconds: float, now: Optional[datetime] = None) -> bool:
        return self.time_in_current_status(now) > seconds
