"""
routes/routes_quotes.py
Routes API pour le calcul, la création et le cycle de vie des devis
"""

import logging
from decimal import Decimal
from typing import Any, Dict, List, Optional, Tuple

from fastapi import APIRouter, Body, Depends, Header, HTTPException, Query
from pydantic import BaseModel, Field, ValidationError
from sqlalchemy.orm import Session

from core.config import get_settings
from db.session import get_db
from services.quote_calculator import aggregate, rounded, valuate_lines
from services.quote_expiration import process_quote_expirations
from services.quote_lifecycle_service import QuoteLifecycleService
from services.quote_models import LineItem, Quote, QuoteDraft, QuoteStatus
from services.quote_repository import QuoteRepository
from services.quote_status_machine import STATUS_METADATA, available_actions
from services.wizard_steps import validate_all

logger = logging.getLogger(__name__)
router = APIRouter()

# Codes d'erreur métier -> statut HTTP
ERROR_STATUS_CODES = {
    "QUOTE_NOT_FOUND": 404,
    "INVALID_STATUS": 400,
    "INVALID_TRANSITION": 400,
    "TERMINAL_STATUS": 400,
    "FIELD_NOT_EDITABLE": 400,
    "VALIDATION_ERROR": 422,
    "QUOTE_NOT_EDITABLE": 409,
    "CONCURRENT_MODIFICATION": 409,
}


class CalculationRequest(BaseModel):
    """Lignes et paramètres globaux à valoriser"""
    line_items: Tuple[LineItem, ...] = ()
    discount_total: Decimal = Field(default=Decimal("0"), description="Remise globale (montant)")
    tax_rate: Decimal = Field(default=Decimal("0"), description="Taux de taxe global (%)")


class StatusChangeRequest(BaseModel):
    """Demande de changement de statut"""
    status: str = Field(..., description="Statut cible")
    comment: Optional[str] = Field(None, description="Commentaire (motif de refus pour rejected)")
    metadata: Dict[str, Any] = Field(default_factory=dict)
    expected_version: Optional[int] = Field(None, description="Version lue par le client")


def get_lifecycle_service(db: Session = Depends(get_db)) -> QuoteLifecycleService:
    settings = get_settings()
    return QuoteLifecycleService(QuoteRepository(db, settings.quote_number_prefix), settings)


def _raise_for_result(result) -> None:
    status_code = ERROR_STATUS_CODES.get(result.error_code, 400)
    detail = {"error_code": result.error_code, "error": result.error}
    if result.validation_errors:
        detail["errors"] = result.validation_errors
    raise HTTPException(status_code=status_code, detail=detail)


def _quote_payload(quote: Quote) -> Dict[str, Any]:
    metadata = STATUS_METADATA[quote.status]
    payload = quote.model_dump(mode="json")
    payload["status_label"] = metadata.label
    payload["can_edit"] = metadata.can_edit
    payload["is_terminal"] = metadata.is_terminal
    return payload


def _reminder_notifier(quote: Quote, days: int) -> None:
    logger.info(f"Relance J-{days} pour le devis {quote.quote_number} ({quote.customer.email})")


@router.post("/calculate")
async def calculate_quote(request: CalculationRequest):
    """
    Valorise les lignes et calcule les totaux (valeurs exactes + arrondies)
    """
    calculations = aggregate(request.line_items, request.discount_total, request.tax_rate)
    return {
        "calculations": calculations.model_dump(mode="json"),
        "rounded": rounded(calculations).model_dump(mode="json"),
        "line_items": [v.model_dump(mode="json") for v in valuate_lines(request.line_items)],
        "currency": get_settings().currency,
    }


@router.post("/expire")
async def expire_quotes_endpoint(
    x_api_key: Optional[str] = Header(None),
    service: QuoteLifecycleService = Depends(get_lifecycle_service)
):
    """
    Lance l'expiration automatique et les relances (tâche planifiée)
    """
    expected_key = service.settings.expiration_api_key
    if expected_key and x_api_key != expected_key:
        raise HTTPException(status_code=401, detail="Clé API invalide")

    try:
        result = process_quote_expirations(service, notifier=_reminder_notifier)
        return {"success": True, **result.model_dump()}
    except Exception as e:
        logger.error(f"Erreur traitement expirations: {e}")
        raise HTTPException(status_code=500, detail=str(e))


@router.post("/", status_code=201)
async def create_quote(
    draft: QuoteDraft,
    x_user_id: Optional[str] = Header(None),
    x_user_name: Optional[str] = Header(None),
    service: QuoteLifecycleService = Depends(get_lifecycle_service)
):
    """
    Crée un devis (statut draft) à partir d'un brouillon complet
    """
    errors = validate_all(draft)
    if errors:
        raise HTTPException(
            status_code=422,
            detail={"error_code": "VALIDATION_ERROR", "errors": {k: list(v) for k, v in errors.items()}},
        )

    try:
        quote = service.create_from_draft(draft, actor=x_user_id or "system", actor_name=x_user_name or "System")
        return _quote_payload(quote)
    except Exception as e:
        logger.error(f"Erreur création devis: {e}")
        raise HTTPException(status_code=500, detail=str(e))


@router.get("/")
async def list_quotes(
    status: Optional[List[QuoteStatus]] = Query(None, description="Filtrer par statut"),
    service: QuoteLifecycleService = Depends(get_lifecycle_service)
):
    """
    Liste les devis, éventuellement filtrés par statut
    """
    quotes = service.repository.list_quotes(status)
    return [_quote_payload(q) for q in quotes]


@router.get("/{quote_id}")
async def get_quote(quote_id: str, service: QuoteLifecycleService = Depends(get_lifecycle_service)):
    """
    Devis, historique des statuts et actions disponibles
    """
    quote = service.get_quote(quote_id)
    if not quote:
        raise HTTPException(status_code=404, detail=f"Devis non trouvé: {quote_id}")

    return {
        "quote": _quote_payload(quote),
        "history": [record.model_dump(mode="json") for record in service.get_history(quote_id)],
        "available_actions": [action.model_dump(mode="json") for action in available_actions(quote.status)],
    }


@router.patch("/{quote_id}")
async def edit_quote(
    quote_id: str,
    changes: Dict[str, Any] = Body(...),
    expected_version: Optional[int] = Query(None, description="Version lue par le client"),
    x_user_id: Optional[str] = Header(None),
    service: QuoteLifecycleService = Depends(get_lifecycle_service)
):
    """
    Modifie un devis éditable (draft, pending)
    """
    try:
        result = service.edit_quote(quote_id, changes, actor=x_user_id or "system", expected_version=expected_version)
    except ValidationError as e:
        raise HTTPException(status_code=422, detail=e.errors(include_url=False, include_context=False, include_input=False))

    if not result.success:
        _raise_for_result(result)
    return _quote_payload(result.quote)


@router.patch("/{quote_id}/status")
async def change_quote_status(
    quote_id: str,
    request: StatusChangeRequest,
    x_user_id: Optional[str] = Header(None),
    x_user_name: Optional[str] = Header(None),
    service: QuoteLifecycleService = Depends(get_lifecycle_service)
):
    """
    Change le statut d'un devis selon le graphe de transitions
    """
    try:
        result = service.change_status(
            quote_id,
            request.status,
            actor=x_user_id or "system",
            actor_name=x_user_name or "System",
            comment=request.comment,
            metadata=request.metadata,
            expected_version=request.expected_version,
        )
    except Exception as e:
        logger.error(f"Erreur changement de statut {quote_id}: {e}")
        raise HTTPException(status_code=500, detail=str(e))

    if not result.success:
        _raise_for_result(result)

    return {
        "success": True,
        "quote": _quote_payload(result.quote),
        "status_change": result.record.model_dump(mode="json"),
    }


@router.get("/{quote_id}/actions")
async def get_quote_actions(quote_id: str, service: QuoteLifecycleService = Depends(get_lifecycle_service)):
    """
    Actions de statut disponibles pour un devis
    """
    quote = service.get_quote(quote_id)
    if not quote:
        raise HTTPException(status_code=404, detail=f"Devis non trouvé: {quote_id}")

    return {
        "status": quote.status.value,
        "actions": [action.model_dump(mode="json") for action in available_actions(quote.status)],
    }
