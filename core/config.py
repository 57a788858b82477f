# core/config.py - Configuration du service devis (variables d'environnement)

import os
from typing import Optional, Tuple

from dotenv import load_dotenv
from pydantic import BaseModel, Field, field_validator


load_dotenv()


class QuoteEngineSettings(BaseModel):
    """Paramètres du moteur de devis"""
    database_url: str = Field(default="sqlite:///./quotes.db", description="URL SQLAlchemy")
    log_level: str = Field(default="INFO")
    log_file: Optional[str] = Field(None, description="Fichier de logs JSON (optionnel)")
    quote_validity_days: int = Field(default=30, ge=1, description="Durée de validité par défaut")
    reminder_days: Tuple[int, ...] = Field(default=(7, 3, 1), description="Relances avant expiration (jours)")
    quote_number_prefix: str = Field(default="Q")
    expiration_api_key: Optional[str] = Field(None, description="Clé exigée sur /expire si définie")
    currency: str = Field(default="USD")
    wizard_session_max_age_hours: int = Field(default=24, ge=1, description="Durée de vie d'une session d'assistant inactive")

    @field_validator("reminder_days", mode="before")
    @classmethod
    def parse_reminder_days(cls, v):
        """Accepte "7,3,1" depuis l'environnement"""
        if isinstance(v, str):
            v = [part.strip() for part in v.split(",") if part.strip()]
        days = sorted({int(d) for d in v}, reverse=True)
        if any(d <= 0 for d in days):
            raise ValueError("Les jours de relance doivent être positifs")
        return tuple(days)

    @classmethod
    def from_env(cls) -> "QuoteEngineSettings":
        """Charge la configuration depuis les variables d'environnement"""
        values = {
            "database_url": os.getenv("DATABASE_URL"),
            "log_level": os.getenv("LOG_LEVEL"),
            "log_file": os.getenv("LOG_FILE"),
            "quote_validity_days": os.getenv("QUOTE_VALIDITY_DAYS"),
            "reminder_days": os.getenv("QUOTE_REMINDER_DAYS"),
            "quote_number_prefix": os.getenv("QUOTE_NUMBER_PREFIX"),
            "expiration_api_key": os.getenv("EXPIRATION_API_KEY"),
            "currency": os.getenv("CURRENCY"),
            "wizard_session_max_age_hours": os.getenv("WIZARD_SESSION_MAX_AGE_HOURS"),
        }
        return cls(**{k: v for k, v in values.items() if v})


_settings: Optional[QuoteEngineSettings] = None


def get_settings() -> QuoteEngineSettings:
    """Retourne l'instance singleton de la configuration"""
    global _settings
    if _settings is None:
        _settings = QuoteEngineSettings.from_env()
    return _settings


def reset_settings() -> None:
    """Force le rechargement (tests)"""
    global _settings
    _settings = None
