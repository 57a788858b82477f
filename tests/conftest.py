# tests/conftest.py
"""
Configuration globale pour les tests pytest
Base SQLite en mémoire partagée (StaticPool) et client API de test
"""

import os
import sys
from decimal import Decimal

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

# Ajouter le répertoire racine au path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from core.config import get_settings
from db.models import Base
from db.session import get_db
from services.quote_lifecycle_service import QuoteLifecycleService
from services.quote_models import CustomerInfo, LineItem, QuoteDraft
from services.quote_repository import QuoteRepository


TEST_DATABASE_URL = "sqlite:///:memory:"
engine = create_engine(
    TEST_DATABASE_URL,
    connect_args={"check_same_thread": False},
    poolclass=StaticPool,
)
TestingSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)


@pytest.fixture(scope="function")
def test_db():
    """DB test propre à chaque test"""
    Base.metadata.create_all(bind=engine)
    db = TestingSessionLocal()
    yield db
    db.close()
    Base.metadata.drop_all(bind=engine)


@pytest.fixture
def repository(test_db):
    return QuoteRepository(test_db, number_prefix="Q")


@pytest.fixture
def service(repository):
    return QuoteLifecycleService(repository, get_settings())


@pytest.fixture
def client(test_db):
    """Client API avec override de la dépendance get_db"""
    from main import app

    def override_get_db():
        db = TestingSessionLocal()
        try:
            yield db
        finally:
            db.close()

    app.dependency_overrides[get_db] = override_get_db
    yield TestClient(app)
    app.dependency_overrides.clear()


@pytest.fixture
def sample_customer():
    """Client de test"""
    return CustomerInfo(
        name="Acme Corporation",
        email="buyer@acme.example",
        phone="+33 1 23 45 67 89",
        company="Acme",
    )


@pytest.fixture
def sample_draft(sample_customer):
    """Brouillon complet : 2 lignes, remise globale 30, taxe 10 %"""
    return QuoteDraft(
        customer=sample_customer,
        line_items=(
            LineItem(name="Widget Pro", quantity=2, unit_price=Decimal("100"), discount_percent=Decimal("10")),
            LineItem(name="Support", quantity=1, unit_price=Decimal("50")),
        ),
        title="Widgets Q3",
        discount_total=Decimal("30"),
        tax_rate=Decimal("10"),
    )


@pytest.fixture
def sample_draft_payload():
    """Même brouillon au format JSON de l'API"""
    return {
        "customer": {"name": "Acme Corporation", "email": "buyer@acme.example"},
        "line_items": [
            {"name": "Widget Pro", "quantity": 2, "unit_price": "100", "discount_percent": "10"},
            {"name": "Support", "quantity": 1, "unit_price": "50"},
        ],
        "title": "Widgets Q3",
        "discount_total": "30",
        "tax_rate": "10",
    }
