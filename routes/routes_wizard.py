"""
routes/routes_wizard.py
Routes API de l'assistant de création / édition de devis (sessions)
"""

import logging
from dataclasses import replace
from typing import Any, Dict, Optional

from fastapi import APIRouter, Body, Depends, HTTPException
from pydantic import BaseModel, Field, ValidationError

from core.config import get_settings
from routes.routes_quotes import get_lifecycle_service
from services.quote_lifecycle_service import QuoteLifecycleService
from services.quote_models import QuoteDraft
from services.quote_status_machine import can_edit, quote_as_draft
from services.quote_wizard_engine import QuoteWizardEngine, WizardSession, WizardSessionStore

logger = logging.getLogger(__name__)
router = APIRouter()

_engine_instance: Optional[QuoteWizardEngine] = None
_store_instance: Optional[WizardSessionStore] = None


def get_wizard_engine() -> QuoteWizardEngine:
    """Retourne l'instance singleton du moteur d'assistant"""
    global _engine_instance
    if _engine_instance is None:
        _engine_instance = QuoteWizardEngine()
    return _engine_instance


def get_session_store() -> WizardSessionStore:
    """Retourne le stockage singleton des sessions"""
    global _store_instance
    if _store_instance is None:
        _store_instance = WizardSessionStore()
    return _store_instance


class StartSessionRequest(BaseModel):
    """Ouverture d'une session : brouillon initial ou devis existant à éditer"""
    initial_data: Optional[QuoteDraft] = Field(None, description="Valeurs initiales du brouillon")
    quote_id: Optional[str] = Field(None, description="Devis existant à éditer")


def _load_session(session_id: str) -> WizardSession:
    session = get_session_store().get(session_id)
    if session is None:
        raise HTTPException(status_code=404, detail=f"Session non trouvée: {session_id}")
    return session


async def _save(session: WizardSession) -> Dict[str, Any]:
    await get_session_store().put(session)
    return get_wizard_engine().snapshot(session)


def _invalid_payload(e: ValidationError) -> HTTPException:
    return HTTPException(status_code=422, detail=e.errors(include_url=False, include_context=False, include_input=False))


@router.post("/sessions", status_code=201)
async def start_session(
    request: Optional[StartSessionRequest] = None,
    service: QuoteLifecycleService = Depends(get_lifecycle_service)
):
    """
    Ouvre une session d'assistant (création, ou édition d'un devis draft/pending)
    """
    await get_session_store().cleanup_old_sessions(get_settings().wizard_session_max_age_hours)

    engine = get_wizard_engine()
    request = request or StartSessionRequest()
    initial = request.initial_data

    if request.quote_id:
        quote = service.get_quote(request.quote_id)
        if not quote:
            raise HTTPException(status_code=404, detail=f"Devis non trouvé: {request.quote_id}")
        if not can_edit(quote.status):
            raise HTTPException(
                status_code=409,
                detail={"error_code": "QUOTE_NOT_EDITABLE", "error": f'Quote cannot be edited in status "{quote.status.value}"'},
            )
        initial = quote_as_draft(quote)

    session = engine.start(initial_data=initial, quote_id=request.quote_id)
    logger.info(f"Session assistant ouverte: {session.session_id}")
    return await _save(session)


@router.get("/sessions/{session_id}")
async def get_session(session_id: str):
    """
    État courant d'une session
    """
    return get_wizard_engine().snapshot(_load_session(session_id))


@router.delete("/sessions/{session_id}")
async def discard_session(session_id: str):
    """
    Abandonne une session
    """
    if not await get_session_store().discard(session_id):
        raise HTTPException(status_code=404, detail=f"Session non trouvée: {session_id}")
    return {"success": True}


@router.post("/sessions/{session_id}/next")
async def next_step(session_id: str):
    return await _save(get_wizard_engine().next_step(_load_session(session_id)))


@router.post("/sessions/{session_id}/previous")
async def previous_step(session_id: str):
    return await _save(get_wizard_engine().previous_step(_load_session(session_id)))


@router.post("/sessions/{session_id}/goto/{step}")
async def go_to_step(session_id: str, step: str):
    """
    Saut direct vers une étape déjà validée (sinon sans effet)
    """
    return await _save(get_wizard_engine().go_to_step(_load_session(session_id), step))


@router.post("/sessions/{session_id}/customer")
async def update_customer(session_id: str, changes: Dict[str, Any] = Body(...)):
    session = _load_session(session_id)
    try:
        session = get_wizard_engine().update_customer(session, **changes)
    except ValidationError as e:
        raise _invalid_payload(e)
    return await _save(session)


@router.post("/sessions/{session_id}/items")
async def add_line_item(session_id: str, item: Optional[Dict[str, Any]] = Body(None)):
    session = _load_session(session_id)
    try:
        session = get_wizard_engine().add_line_item(session, **(item or {}))
    except ValidationError as e:
        raise _invalid_payload(e)
    return await _save(session)


@router.patch("/sessions/{session_id}/items/{index}")
async def update_line_item(session_id: str, index: int, changes: Dict[str, Any] = Body(...)):
    session = _load_session(session_id)
    try:
        session = get_wizard_engine().update_line_item(session, index, **changes)
    except ValidationError as e:
        raise _invalid_payload(e)
    return await _save(session)


@router.delete("/sessions/{session_id}/items/{index}")
async def remove_line_item(session_id: str, index: int):
    return await _save(get_wizard_engine().remove_line_item(_load_session(session_id), index))


@router.post("/sessions/{session_id}/form")
async def update_form_data(session_id: str, changes: Dict[str, Any] = Body(...)):
    """
    Mise à jour de champs du brouillon (titre, notes, conditions, remise, taxe...)
    """
    session = _load_session(session_id)
    try:
        session = get_wizard_engine().update_form_data(session, **changes)
    except ValidationError as e:
        raise _invalid_payload(e)
    return await _save(session)


@router.post("/sessions/{session_id}/reset")
async def reset_session(session_id: str):
    return await _save(get_wizard_engine().reset(_load_session(session_id)))


@router.post("/sessions/{session_id}/submit")
async def submit_session(
    session_id: str,
    service: QuoteLifecycleService = Depends(get_lifecycle_service)
):
    """
    Soumet le brouillon : création du devis, ou mise à jour en mode édition.

    Un échec est conservé dans `error` ; le brouillon reste intact.
    """
    engine = get_wizard_engine()
    store = get_session_store()
    session = _load_session(session_id)
    saved: Dict[str, Any] = {}

    async def on_complete(draft: QuoteDraft) -> None:
        if session.quote_id:
            changes = draft.model_dump(exclude={"valid_until"})
            if draft.valid_until is not None:
                changes["expires_at"] = draft.valid_until
            result = service.edit_quote(session.quote_id, changes)
            if not result.success:
                raise RuntimeError(result.error)
            saved["quote"] = result.quote
        else:
            saved["quote"] = await service.complete_wizard(draft)

    submitted = await engine.submit_quote(session, on_complete=on_complete)
    if "quote" in saved and submitted.quote_id is None:
        # Une nouvelle soumission met à jour ce devis au lieu d'en créer un autre
        submitted = replace(submitted, quote_id=saved["quote"].id)

    await store.put(submitted)
    snapshot = engine.snapshot(submitted)
    snapshot["quote"] = saved["quote"].model_dump(mode="json") if "quote" in saved else None
    return snapshot
