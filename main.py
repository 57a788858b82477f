# main.py - Serveur du moteur de cycle de vie des devis
import logging
import sys
from contextlib import asynccontextmanager
from datetime import datetime

import uvicorn
from fastapi import Depends, FastAPI
from sqlalchemy import text
from sqlalchemy.orm import Session

from core.config import get_settings
from db.session import get_db, init_db
from routes.routes_quotes import router as quotes_router
from routes.routes_wizard import router as wizard_router
from services.quote_status_machine import dead_states, unreachable_states

settings = get_settings()

logging.basicConfig(
    level=getattr(logging, settings.log_level.upper(), logging.INFO),
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
    handlers=[logging.StreamHandler(sys.stdout)]
)

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Gestionnaire de cycle de vie de l'application"""
    try:
        logger.info("=" * 50)
        logger.info("DEMARRAGE DU MOTEUR DE DEVIS")
        logger.info("=" * 50)

        init_db()
        logger.info("Tables de la base vérifiées")

        unreachable = unreachable_states()
        if unreachable:
            logger.warning(f"Statuts inatteignables depuis draft : {sorted(s.value for s in unreachable)}")

        logger.info("   Sante: http://localhost:8200/health")
        logger.info("   Documentation: http://localhost:8200/docs")
        yield
    except Exception as e:
        logger.error(f"Erreur critique au démarrage: {e}")
        raise
    finally:
        logger.info("Arrêt du moteur de devis")


app = FastAPI(
    title="Quote Lifecycle Engine",
    description="Assistant de création de devis, calcul des totaux et cycle de vie des statuts",
    version="1.0.0",
    lifespan=lifespan
)

app.include_router(quotes_router, prefix="/api/quotes", tags=["Devis"])
app.include_router(wizard_router, prefix="/api/wizard", tags=["Assistant"])


@app.get("/health")
async def health_check(db: Session = Depends(get_db)):
    """Endpoint de contrôle de santé"""
    health = {
        "service": "Quote Lifecycle Engine",
        "status": "active",
        "timestamp": datetime.utcnow().isoformat(),
        "status_machine": {
            "unreachable_states": sorted(s.value for s in unreachable_states()),
            "dead_states": sorted(s.value for s in dead_states()),
        },
    }

    try:
        db.execute(text("SELECT 1"))
        health["database"] = "connected"
    except Exception as e:
        logger.error(f"Base de données indisponible: {e}")
        health["database"] = "unavailable"
        health["status"] = "degraded"

    return health


if __name__ == "__main__":
    uvicorn.run(app, host="0.0.0.0", port=8200, log_config=None, loop="asyncio")
