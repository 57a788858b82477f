# db/models.py

from sqlalchemy.orm import declarative_base
from sqlalchemy import Column, Integer, String, DateTime, Text, Numeric, ForeignKey, JSON, UniqueConstraint, CheckConstraint, Index
from sqlalchemy.sql import func
from sqlalchemy.orm import relationship

Base = declarative_base()

STATUS_VALUES = "('draft','pending','sent','viewed','accepted','rejected','expired','converted')"


# Table Devis
class QuoteRecord(Base):
    __tablename__ = "quotes"

    id = Column(String, primary_key=True)
    quote_number = Column(String, nullable=False, unique=True)
    status = Column(String, nullable=False, default="draft")
    customer = Column(JSON, nullable=False, default=dict)
    customer_email = Column(String)
    customer_name = Column(String)
    title = Column(String, nullable=False, default="New Quote")
    description = Column(Text, default="")
    notes = Column(Text, default="")
    terms = Column(Text, default="")
    line_items = Column(JSON, nullable=False, default=list)
    discount_total = Column(Numeric(14, 2), default=0)
    tax_rate = Column(Numeric(7, 4), default=0)
    subtotal = Column(Numeric(14, 2), default=0)
    tax_total = Column(Numeric(14, 2), default=0)
    total = Column(Numeric(14, 2), default=0)

    expires_at = Column(DateTime)
    sent_at = Column(DateTime)
    viewed_at = Column(DateTime)
    accepted_at = Column(DateTime)
    rejected_at = Column(DateTime)
    converted_at = Column(DateTime)
    rejection_reason = Column(Text)

    # Contrôle optimiste des écritures concurrentes
    version = Column(Integer, nullable=False, default=1)
    created_at = Column(DateTime, server_default=func.now())
    updated_at = Column(DateTime, server_default=func.now())

    history = relationship("QuoteStatusHistory", back_populates="quote", order_by="QuoteStatusHistory.quote_version")

    __table_args__ = (
        CheckConstraint(f"status IN {STATUS_VALUES}", name="valid_status"),
        Index("idx_quotes_status_expires", "status", "expires_at"),
    )


# Table Historique des statuts (ajout seul)
class QuoteStatusHistory(Base):
    __tablename__ = "quote_status_history"

    id = Column(String, primary_key=True)
    quote_id = Column(String, ForeignKey("quotes.id", ondelete="CASCADE"), nullable=False, index=True)
    from_status = Column(String, nullable=False)
    to_status = Column(String, nullable=False)
    changed_by = Column(String, nullable=False)
    changed_by_name = Column(String, nullable=False)
    changed_at = Column(DateTime, nullable=False)
    # Version du devis produite par la transition ; ordre d'insertion de l'historique
    quote_version = Column(Integer, nullable=False)
    comment = Column(Text)
    meta = Column("metadata", JSON, default=dict)

    quote = relationship("QuoteRecord", back_populates="history")

    __table_args__ = (
        CheckConstraint(f"from_status IN {STATUS_VALUES}", name="valid_from_status"),
        CheckConstraint(f"to_status IN {STATUS_VALUES}", name="valid_to_status"),
        UniqueConstraint("quote_id", "quote_version", name="unique_history_version"),
    )


# Table Relances d'expiration
class QuoteReminder(Base):
    __tablename__ = "quote_reminders"

    id = Column(Integer, primary_key=True)
    quote_id = Column(String, ForeignKey("quotes.id", ondelete="CASCADE"), nullable=False, index=True)
    days_before_expiry = Column(Integer, nullable=False)
    sent_at = Column(DateTime, server_default=func.now())

    __table_args__ = (
        UniqueConstraint("quote_id", "days_before_expiry", name="unique_quote_reminder"),
        CheckConstraint("days_before_expiry > 0", name="positive_days"),
    )


# Table Activités
class Activity(Base):
    __tablename__ = "activities"

    id = Column(Integer, primary_key=True)
    type = Column(String, nullable=False, index=True)
    quote_id = Column(String, ForeignKey("quotes.id", ondelete="SET NULL"), index=True)
    quote_number = Column(String)
    user_id = Column(String)
    user_name = Column(String)
    description = Column(Text, nullable=False)
    created_at = Column(DateTime, server_default=func.now())
