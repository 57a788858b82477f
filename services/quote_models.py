"""
services/quote_models.py
Modèles de données du moteur de cycle de vie des devis
(lignes, brouillon, calculs, statuts, historique)
"""

from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field


ZERO = Decimal("0")


class QuoteStatus(str, Enum):
    """Statuts du cycle de vie d'un devis persisté"""
    DRAFT = "draft"
    PENDING = "pending"
    SENT = "sent"
    VIEWED = "viewed"
    ACCEPTED = "accepted"
    REJECTED = "rejected"
    EXPIRED = "expired"
    CONVERTED = "converted"


class ActivityType(str, Enum):
    """Types d'activité enregistrés lors d'un changement de statut"""
    QUOTE_CREATED = "quote_created"
    QUOTE_SENT = "quote_sent"
    QUOTE_VIEWED = "quote_viewed"
    QUOTE_ACCEPTED = "quote_accepted"
    QUOTE_REJECTED = "quote_rejected"
    QUOTE_EXPIRED = "quote_expired"
    QUOTE_CONVERTED = "quote_converted"
    STATUS_CHANGED = "status_changed"


class WizardStep(str, Enum):
    """Étapes de l'assistant de création de devis"""
    CUSTOMER_INFO = "customer-info"
    PRODUCT_SELECTION = "product-selection"
    LINE_ITEMS = "line-items"
    TERMS_NOTES = "terms-notes"
    REVIEW_SEND = "review-send"


class LineItem(BaseModel):
    """
    Ligne de devis saisie dans l'assistant.

    Le modèle ne borne pas les valeurs numériques : les quantités nulles,
    prix négatifs ou pourcentages hors [0,100] sont signalés par la couche
    de validation de l'assistant, pas rejetés ici.
    """
    model_config = ConfigDict(
        frozen=True,
        json_schema_extra={
            "example": {
                "name": "Widget Pro",
                "quantity": 2,
                "unit_price": "100.00",
                "discount_percent": "10",
                "tax_rate": "0"
            }
        },
    )

    name: str = Field(default="", description="Désignation")
    description: str = Field(default="", description="Description libre")
    quantity: int = Field(default=1, description="Quantité (entier)")
    unit_price: Decimal = Field(default=ZERO, description="Prix unitaire")
    discount_percent: Decimal = Field(default=ZERO, description="Remise ligne (%)")
    tax_rate: Decimal = Field(default=ZERO, description="Taux de taxe ligne (%)")
    product_id: Optional[str] = Field(None, description="Référence produit catalogue")
    sku: Optional[str] = None


class Address(BaseModel):
    """Adresse client"""
    model_config = ConfigDict(frozen=True)

    street: str = ""
    city: str = ""
    state: str = ""
    zip: str = ""
    country: str = ""


class CustomerInfo(BaseModel):
    """Informations client saisies à l'étape customer-info"""
    model_config = ConfigDict(frozen=True, extra="forbid")

    customer_id: Optional[str] = Field(None, description="ID client existant (lookup)")
    name: str = ""
    email: str = ""
    phone: str = ""
    company: str = ""
    address: Address = Field(default_factory=Address)


class QuoteDraft(BaseModel):
    """Brouillon de devis construit par l'assistant"""
    model_config = ConfigDict(frozen=True, extra="forbid")

    customer: CustomerInfo = Field(default_factory=CustomerInfo)
    line_items: Tuple[LineItem, ...] = ()
    title: str = "New Quote"
    description: str = ""
    notes: str = ""
    terms: str = ""
    valid_until: Optional[datetime] = None
    discount_total: Decimal = Field(default=ZERO, description="Remise globale (montant)")
    tax_rate: Decimal = Field(default=ZERO, description="Taux de taxe global (%)")


class LineItemValuation(BaseModel):
    """Décomposition monétaire d'une ligne"""
    model_config = ConfigDict(frozen=True)

    subtotal: Decimal
    discount: Decimal
    taxable_base: Decimal
    tax: Decimal
    total: Decimal


class QuoteCalculations(BaseModel):
    """Totaux dérivés d'un devis (jamais stockés sur le brouillon)"""
    model_config = ConfigDict(frozen=True)

    subtotal: Decimal = ZERO
    discount_total: Decimal = ZERO
    taxable_amount: Decimal = ZERO
    tax_total: Decimal = ZERO
    total: Decimal = ZERO


class StatusChangeRecord(BaseModel):
    """Entrée du journal des changements de statut (ajout seul)"""
    model_config = ConfigDict(frozen=True)

    id: str
    quote_id: str
    from_status: QuoteStatus
    to_status: QuoteStatus
    changed_by: str
    changed_by_name: str
    changed_at: datetime
    comment: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)


class Quote(BaseModel):
    """Devis persisté issu d'un brouillon soumis"""
    model_config = ConfigDict(frozen=True)

    id: str
    quote_number: str
    status: QuoteStatus = QuoteStatus.DRAFT
    customer: CustomerInfo = Field(default_factory=CustomerInfo)
    title: str = "New Quote"
    description: str = ""
    notes: str = ""
    terms: str = ""
    line_items: Tuple[LineItem, ...] = ()
    discount_total: Decimal = ZERO
    tax_rate: Decimal = ZERO

    # Instantané des totaux calculé à la soumission / à l'édition
    subtotal: Decimal = ZERO
    tax_total: Decimal = ZERO
    total: Decimal = ZERO

    expires_at: Optional[datetime] = None
    sent_at: Optional[datetime] = None
    viewed_at: Optional[datetime] = None
    accepted_at: Optional[datetime] = None
    rejected_at: Optional[datetime] = None
    converted_at: Optional[datetime] = None
    rejection_reason: Optional[str] = None

    version: int = Field(default=1, description="Version pour contrôle optimiste")
    created_at: datetime = Field(default_factory=datetime.utcnow)
    updated_at: datetime = Field(default_factory=datetime.utcnow)


class TransitionResult(BaseModel):
    """Résultat d'une transition de statut ou d'une édition de devis"""
    success: bool
    error_code: Optional[str] = None
    error: Optional[str] = None
    quote: Optional[Quote] = None
    record: Optional[StatusChangeRecord] = None
    validation_errors: Dict[str, List[str]] = Field(default_factory=dict, description="Erreurs par champ (édition refusée)")


class StatusAction(BaseModel):
    """Action disponible pour un statut donné"""
    label: str
    status: QuoteStatus
    variant: str = "secondary"
    requires_confirmation: bool = False
    confirmation_message: Optional[str] = None


class ExpirationResult(BaseModel):
    """Bilan d'un passage d'expiration"""
    expired: int = 0
    expiring_soon: int = 0
    reminders_sent: int = 0
    errors: List[str] = Field(default_factory=list)
