# core/logging.py - Logging structuré JSON pour les événements du cycle de vie des devis

import logging
import json
import sys
from datetime import datetime
from typing import Any, Dict, Optional
from pathlib import Path


EVENT_FIELDS = (
    "quote_id",
    "session_id",
    "quote_event",
    "from_status",
    "to_status",
    "actor",
    "result",
    "error_code",
)


class JSONFormatter(logging.Formatter):
    """
    Formatter pour logs structurés au format JSON.
    Facilite l'indexation dans des systèmes comme ELK, Datadog, etc.
    """

    def format(self, record: logging.LogRecord) -> str:
        log_data: Dict[str, Any] = {
            "timestamp": datetime.utcnow().isoformat() + "Z",
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "module": record.module,
            "function": record.funcName,
            "line": record.lineno,
        }

        # Champs personnalisés (via extra={})
        for key in EVENT_FIELDS:
            if hasattr(record, key):
                log_data[key] = getattr(record, key)

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        return json.dumps(log_data, ensure_ascii=False, default=str)


def setup_quote_logger(
    name: str = "quotes.lifecycle",
    log_file: Optional[str] = None,
    level: str = "INFO"
) -> logging.Logger:
    """
    Configure un logger structuré pour les événements de devis.

    Args:
        name: Nom du logger (hiérarchie: quotes.lifecycle, quotes.wizard, ...)
        log_file: Chemin optionnel vers un fichier de logs JSON dédié
        level: Niveau minimal

    Returns:
        Logger configuré avec JSON formatter

    Usage:
        logger = setup_quote_logger("quotes.lifecycle")
        logger.info(
            "Status change",
            extra={"quote_id": quote.id, "from_status": "sent", "to_status": "viewed"}
        )
    """
    logger = logging.getLogger(name)

    # Éviter duplication si déjà configuré
    if logger.handlers:
        return logger

    logger.setLevel(getattr(logging, level.upper(), logging.INFO))
    logger.propagate = False

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setFormatter(JSONFormatter())
    logger.addHandler(console_handler)

    if log_file:
        log_path = Path(log_file)
        log_path.parent.mkdir(parents=True, exist_ok=True)

        file_handler = logging.FileHandler(log_file, encoding="utf-8")
        file_handler.setFormatter(JSONFormatter())
        logger.addHandler(file_handler)

    return logger


def get_quote_logger() -> logging.Logger:
    """Logger d'événements, configuré à la première utilisation"""
    from core.config import get_settings

    settings = get_settings()
    return setup_quote_logger("quotes.lifecycle", log_file=settings.log_file, level=settings.log_level)


def log_quote_event(
    event: str,
    quote_id: Optional[str] = None,
    result: str = "success",
    from_status: Optional[str] = None,
    to_status: Optional[str] = None,
    actor: Optional[str] = None,
    error_code: Optional[str] = None,
    session_id: Optional[str] = None,
    extra_data: Optional[Dict[str, Any]] = None,
) -> None:
    """
    Helper pour logger les événements de devis de manière standardisée.

    Args:
        event: Type d'événement (quote_created, status_changed, quote_edited, quote_expired, ...)
        quote_id: ID du devis
        result: success, failure, conflict, error
        from_status / to_status: statuts de la transition
        actor: utilisateur à l'origine de l'action
        error_code: code d'erreur typé en cas d'échec
        session_id: session de l'assistant
        extra_data: Données supplémentaires

    Exemples:
        log_quote_event("status_changed", quote_id="q1", from_status="sent", to_status="viewed")
        log_quote_event("status_changed", quote_id="q1", result="failure", error_code="INVALID_TRANSITION")
    """
    log_context = {
        "quote_id": quote_id,
        "session_id": session_id,
        "quote_event": event,
        "from_status": from_status,
        "to_status": to_status,
        "actor": actor,
        "result": result,
        "error_code": error_code,
    }

    if extra_data:
        log_context.update(extra_data)

    # Filtrer les None
    log_context = {k: v for k, v in log_context.items() if v is not None}

    level = logging.INFO
    if result in ("failure", "conflict"):
        level = logging.WARNING
    elif result == "error":
        level = logging.ERROR

    get_quote_logger().log(level, f"Quote event: {event}", extra=log_context)
