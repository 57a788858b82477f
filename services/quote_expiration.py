"""
Expiration automatique des devis et relances avant échéance.

- Les devis sent/viewed dont expires_at est passé passent à expired
  (acteur "system") via la machine à états.
- Une relance est due quand expires_at tombe le jour calendaire now + d,
  pour chaque d de QUOTE_REMINDER_DAYS ; chaque seuil n'est relancé qu'une fois.

L'envoi effectif est délégué à un `notifier` fourni par l'appelant.
"""

import logging
from datetime import datetime, timedelta
from typing import Callable, Iterable, List, Optional, Sequence, Tuple

from core.logging import log_quote_event
from services.quote_lifecycle_service import QuoteLifecycleService
from services.quote_models import ExpirationResult, Quote, QuoteStatus
from services.quote_repository import QuoteRepository

logger = logging.getLogger(__name__)

EXPIRABLE_STATUSES = (QuoteStatus.SENT, QuoteStatus.VIEWED)

Notifier = Callable[[Quote, int], None]


def find_expired(quotes: Iterable[Quote], now: Optional[datetime] = None) -> List[Quote]:
    now = now or datetime.utcnow()
    return [
        q for q in quotes
        if q.status in EXPIRABLE_STATUSES and q.expires_at is not None and q.expires_at < now
    ]


def due_reminders(
    quotes: Iterable[Quote],
    now: Optional[datetime] = None,
    reminder_days: Sequence[int] = (7, 3, 1),
    repository: Optional[QuoteRepository] = None
) -> List[Tuple[Quote, int]]:
    """
    Paires (devis, jours) dont la relance est due.

    Les relances déjà enregistrées dans le repository sont exclues.
    """
    now = now or datetime.utcnow()
    due: List[Tuple[Quote, int]] = []

    candidates = [
        q for q in quotes
        if q.status in EXPIRABLE_STATUSES and q.expires_at is not None and q.expires_at >= now
    ]
    for days in reminder_days:
        target_day = (now + timedelta(days=days)).date()
        for quote in candidates:
            if quote.expires_at.date() != target_day:
                continue
            if repository is not None and repository.has_reminder(quote.id, days):
                logger.debug(f"Relance J-{days} déjà envoyée pour {quote.quote_number}")
                continue
            due.append((quote, days))

    return due


def expire_quotes(service: QuoteLifecycleService, now: Optional[datetime] = None) -> ExpirationResult:
    """Passe à expired les devis échus"""
    now = now or datetime.utcnow()
    result = ExpirationResult()

    candidates = service.repository.list_quotes(list(EXPIRABLE_STATUSES))
    for quote in find_expired(candidates, now):
        outcome = service.change_status(
            quote.id,
            QuoteStatus.EXPIRED,
            actor="system",
            actor_name="System",
            comment="Quote expired automatically",
            metadata={"expired_at": now.isoformat()},
            expected_version=quote.version,
            now=now,
        )
        if outcome.success:
            result.expired += 1
            log_quote_event("quote_expired", quote_id=quote.id, from_status=quote.status.value,
                            to_status=QuoteStatus.EXPIRED.value, actor="system")
        else:
            result.errors.append(f"{quote.quote_number}: {outcome.error}")

    logger.info(f"Expiration : {result.expired} devis expiré(s)")
    return result


def send_reminders(
    service: QuoteLifecycleService,
    notifier: Optional[Notifier] = None,
    now: Optional[datetime] = None,
    reminder_days: Optional[Sequence[int]] = None
) -> ExpirationResult:
    """Envoie les relances dues et les enregistre"""
    now = now or datetime.utcnow()
    reminder_days = reminder_days or service.settings.reminder_days
    result = ExpirationResult()

    repository = service.repository
    quotes = repository.list_quotes(list(EXPIRABLE_STATUSES))
    due = due_reminders(quotes, now, reminder_days, repository)
    result.expiring_soon = len({quote.id for quote, _ in due})

    for quote, days in due:
        try:
            if notifier:
                notifier(quote, days)
            repository.record_reminder(quote.id, days)
            result.reminders_sent += 1
        except Exception as e:
            logger.error(f"Relance J-{days} échouée pour {quote.quote_number}: {e}")
            result.errors.append(f"Reminder error ({quote.quote_number}, {days} days): {e}")

    logger.info(f"Relances : {result.reminders_sent} envoyée(s)")
    return result


def process_quote_expirations(
    service: QuoteLifecycleService,
    notifier: Optional[Notifier] = None,
    now: Optional[datetime] = None,
    reminder_days: Optional[Sequence[int]] = None
) -> ExpirationResult:
    """Expiration puis relances, bilan combiné"""
    now = now or datetime.utcnow()
    expired = expire_quotes(service, now)
    reminders = send_reminders(service, notifier, now, reminder_days)

    return ExpirationResult(
        expired=expired.expired,
        expiring_soon=reminders.expiring_soon,
        reminders_sent=reminders.reminders_sent,
        errors=expired.errors + reminders.errors,
    )
