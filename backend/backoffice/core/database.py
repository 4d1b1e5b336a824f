"""
Database Configuration
"""
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker, Session, declarative_base
from typing import Generator
import logging

from backoffice.core.config import settings

logger = logging.getLogger(__name__)

# Get the properly formatted database URL
db_url = settings.database_url

# Create engine
engine = create_engine(
    db_url,
    connect_args={"check_same_thread": False} if "sqlite" in db_url else {},
    echo=settings.DEBUG
)

# Session factory
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

# Base model
Base = declarative_base()


def get_db() -> Generator[Session, None, None]:
    """
    Dependency that provides a database session.
    Uncommitted work is rolled back when the session is closed.
    """
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def init_db(bind=None):
    """Initialize database tables"""
    # Import all models to register them with Base
    from backoffice.models import (  # noqa: F401
        Agency, User, Card, CardHistory, CardDistribution, CardDistributionItem,
        CountryLimit, CashAccount, CashTransaction, Expense, CashExcessEntry,
        ExchangeTill, ExchangeOperation, Notification, AuditLog
    )
    Base.metadata.create_all(bind=bind or engine)


def seed_defaults(db: Session):
    """Create reference rows required by the business rules (idempotent)"""
    from backoffice.services.card_service import CountryLimitService
    from backoffice.services.cash_service import CashAccountService
    from backoffice.services.exchange_service import ExchangeTillService

    CountryLimitService(db).ensure_defaults()
    CashAccountService(db).get_vault()
    ExchangeTillService(db).ensure_tills(None)
    logger.info("Reference data seeded")
