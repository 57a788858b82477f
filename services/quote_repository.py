"""
Repository pour la persistance des devis et de leur historique de statuts.

Tables :
- quotes : devis + instantané des totaux + version (contrôle optimiste)
- quote_status_history : journal des changements de statut, jamais modifié
- quote_reminders : relances d'expiration déjà envoyées (une par seuil)
- activities : fil d'activité

IMPORTANT: AUCUNE règle de transition dans ce module - uniquement CRUD.
La légalité des transitions est vérifiée par services.quote_status_machine.
"""

import logging
import uuid
from datetime import datetime
from decimal import Decimal
from typing import List, Optional

from sqlalchemy import func, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from db.models import Activity, QuoteRecord, QuoteReminder, QuoteStatusHistory
from services.quote_calculator import calculate_draft, round_money
from services.quote_models import (
    CustomerInfo,
    LineItem,
    Quote,
    QuoteDraft,
    QuoteStatus,
    StatusChangeRecord,
)

logger = logging.getLogger(__name__)


def _to_quote(row: QuoteRecord) -> Quote:
    return Quote(
        id=row.id,
        quote_number=row.quote_number,
        status=QuoteStatus(row.status),
        customer=CustomerInfo.model_validate(row.customer or {}),
        title=row.title,
        description=row.description or "",
        notes=row.notes or "",
        terms=row.terms or "",
        line_items=tuple(LineItem.model_validate(item) for item in row.line_items or []),
        discount_total=Decimal(row.discount_total or 0),
        tax_rate=Decimal(row.tax_rate or 0),
        subtotal=Decimal(row.subtotal or 0),
        tax_total=Decimal(row.tax_total or 0),
        total=Decimal(row.total or 0),
        expires_at=row.expires_at,
        sent_at=row.sent_at,
        viewed_at=row.viewed_at,
        accepted_at=row.accepted_at,
        rejected_at=row.rejected_at,
        converted_at=row.converted_at,
        rejection_reason=row.rejection_reason,
        version=row.version,
        created_at=row.created_at or datetime.utcnow(),
        updated_at=row.updated_at or datetime.utcnow(),
    )


def _quote_values(quote: Quote) -> dict:
    """Colonnes modifiables d'un devis"""
    return {
        "status": quote.status.value,
        "customer": quote.customer.model_dump(mode="json"),
        "customer_email": quote.customer.email,
        "customer_name": quote.customer.name,
        "title": quote.title,
        "description": quote.description,
        "notes": quote.notes,
        "terms": quote.terms,
        "line_items": [item.model_dump(mode="json") for item in quote.line_items],
        "discount_total": quote.discount_total,
        "tax_rate": quote.tax_rate,
        "subtotal": quote.subtotal,
        "tax_total": quote.tax_total,
        "total": quote.total,
        "expires_at": quote.expires_at,
        "sent_at": quote.sent_at,
        "viewed_at": quote.viewed_at,
        "accepted_at": quote.accepted_at,
        "rejected_at": quote.rejected_at,
        "converted_at": quote.converted_at,
        "rejection_reason": quote.rejection_reason,
        "version": quote.version,
        "updated_at": quote.updated_at,
    }


def _to_record(row: QuoteStatusHistory) -> StatusChangeRecord:
    return StatusChangeRecord(
        id=row.id,
        quote_id=row.quote_id,
        from_status=QuoteStatus(row.from_status),
        to_status=QuoteStatus(row.to_status),
        changed_by=row.changed_by,
        changed_by_name=row.changed_by_name,
        changed_at=row.changed_at,
        comment=row.comment,
        metadata=row.meta or {},
    )


class QuoteRepository:
    """
    Repository pour accès base de données des devis.

    Responsabilités:
    - Créer/lire les devis
    - Enregistrer une transition (statut + historique + activité) en une transaction
    - Refuser une écriture si la version lue n'est plus la version en base
    """

    def __init__(self, db: Session, number_prefix: str = "Q"):
        self.db = db
        self.number_prefix = number_prefix

    def _next_quote_number(self) -> str:
        count = self.db.scalar(select(func.count()).select_from(QuoteRecord)) or 0
        return f"{self.number_prefix}-{datetime.utcnow():%Y%m}-{count + 1:04d}"

    def create_quote(
        self,
        draft: QuoteDraft,
        quote_number: Optional[str] = None,
        expires_at: Optional[datetime] = None,
        actor: str = "system",
        actor_name: str = "System"
    ) -> Quote:
        """
        Crée un devis au statut draft à partir d'un brouillon soumis.
        Les totaux sont calculés ici, une seule fois, depuis le brouillon.
        """
        totals = calculate_draft(draft)
        now = datetime.utcnow()

        quote = Quote(
            id=str(uuid.uuid4()),
            quote_number=quote_number or self._next_quote_number(),
            status=QuoteStatus.DRAFT,
            customer=draft.customer,
            title=draft.title,
            description=draft.description,
            notes=draft.notes,
            terms=draft.terms,
            line_items=draft.line_items,
            discount_total=draft.discount_total,
            tax_rate=draft.tax_rate,
            subtotal=round_money(totals.subtotal),
            tax_total=round_money(totals.tax_total),
            total=round_money(totals.total),
            expires_at=draft.valid_until or expires_at,
            created_at=now,
            updated_at=now,
        )

        row = QuoteRecord(id=quote.id, quote_number=quote.quote_number, created_at=now, **_quote_values(quote))
        self.db.add(row)
        self.db.add(Activity(
            type="quote_created",
            quote_id=quote.id,
            quote_number=quote.quote_number,
            user_id=actor,
            user_name=actor_name,
            description=f"Quote {quote.quote_number} created",
        ))
        self.db.commit()

        logger.info(f"Devis {quote.quote_number} créé ({quote.id})")
        return quote

    def get_quote(self, quote_id: str) -> Optional[Quote]:
        row = self.db.get(QuoteRecord, quote_id)
        return _to_quote(row) if row else None

    def list_quotes(self, statuses: Optional[List[QuoteStatus]] = None) -> List[Quote]:
        query = select(QuoteRecord).order_by(QuoteRecord.created_at)
        if statuses:
            query = query.where(QuoteRecord.status.in_([QuoteStatus(s).value for s in statuses]))
        return [_to_quote(row) for row in self.db.scalars(query)]

    def _compare_and_set(self, quote: Quote, expected_version: int) -> bool:
        result = self.db.execute(
            update(QuoteRecord)
            .where(QuoteRecord.id == quote.id, QuoteRecord.version == expected_version)
            .values(**_quote_values(quote))
        )
        return result.rowcount == 1

    def update_quote(self, quote: Quote, expected_version: int) -> bool:
        """Enregistre une édition ; False si le devis a changé entre-temps"""
        if not self._compare_and_set(quote, expected_version):
            self.db.rollback()
            logger.warning(f"Conflit de version sur {quote.id} (attendu v{expected_version})")
            return False
        self.db.commit()
        return True

    def save_transition(
        self,
        quote: Quote,
        record: StatusChangeRecord,
        expected_version: int,
        activity_type: str = "status_changed"
    ) -> bool:
        """
        Enregistre une transition : statut, historique et activité ensemble.

        Returns:
            False si la version en base ne correspond plus (rien n'est écrit)
        """
        if not self._compare_and_set(quote, expected_version):
            self.db.rollback()
            logger.warning(f"Conflit de version sur {quote.id} (attendu v{expected_version})")
            return False

        self.db.add(QuoteStatusHistory(
            id=record.id,
            quote_id=record.quote_id,
            from_status=record.from_status.value,
            to_status=record.to_status.value,
            changed_by=record.changed_by,
            changed_by_name=record.changed_by_name,
            changed_at=record.changed_at,
            quote_version=quote.version,
            comment=record.comment,
            meta=record.metadata,
        ))
        self.db.add(Activity(
            type=activity_type,
            quote_id=quote.id,
            quote_number=quote.quote_number,
            user_id=record.changed_by,
            user_name=record.changed_by_name,
            description=record.comment or f"Status changed to {record.to_status.value}",
        ))
        self.db.commit()
        return True

    def get_history(self, quote_id: str) -> List[StatusChangeRecord]:
        rows = self.db.scalars(
            select(QuoteStatusHistory)
            .where(QuoteStatusHistory.quote_id == quote_id)
            .order_by(QuoteStatusHistory.quote_version)
        )
        return [_to_record(row) for row in rows]

    def list_activities(self, quote_id: str) -> List[Activity]:
        return list(self.db.scalars(
            select(Activity).where(Activity.quote_id == quote_id).order_by(Activity.id)
        ))

    def has_reminder(self, quote_id: str, days_before_expiry: int) -> bool:
        return self.db.scalar(
            select(QuoteReminder.id).where(
                QuoteReminder.quote_id == quote_id,
                QuoteReminder.days_before_expiry == days_before_expiry,
            )
        ) is not None

    def record_reminder(self, quote_id: str, days_before_expiry: int) -> None:
        """
        Raises:
            IntegrityError: si la relance est déjà enregistrée (session remise en état)
        """
        self.db.add(QuoteReminder(
            quote_id=quote_id,
            days_before_expiry=days_before_expiry,
            sent_at=datetime.utcnow(),
        ))
        try:
            self.db.commit()
        except SQLAlchemyError:
            self.db.rollback()
            logger.warning(f"Relance J-{days_before_expiry} non enregistrée pour {quote_id}")
            raise
