"""
Agency Service - Branch offices and their exchange tills
"""
from typing import Optional, List
from sqlalchemy.orm import Session
from backoffice.models import Agency
from backoffice.schemas import AgencyCreate


class AgencyService:
    def __init__(self, db: Session):
        self.db = db

    def get_by_id(self, agency_id: int) -> Optional[Agency]:
        return self.db.query(Agency).filter(Agency.id == agency_id).first()

    def get_by_name(self, name: str) -> Optional[Agency]:
        return self.db.query(Agency).filter(Agency.name == name).first()

    def get_active(self) -> List[Agency]:
        return self.db.query(Agency).filter(
            Agency.status == "active"
        ).order_by(Agency.name).all()

    def get_all(self) -> List[Agency]:
        return self.db.query(Agency).order_by(Agency.name).all()

    def create(self, agency_data: AgencyCreate, created_by: str = "system") -> Agency:
        """Create an agency together with its exchange tills"""
        from backoffice.services.exchange_service import ExchangeTillService

        if self.get_by_name(agency_data.name):
            raise ValueError(f"Agency '{agency_data.name}' already exists")

        agency = Agency(
            name=agency_data.name,
            code=agency_data.code,
            city=agency_data.city,
            status="active"
        )
        self.db.add(agency)
        self.db.flush()

        ExchangeTillService(self.db).ensure_tills(agency.id, created_by=created_by)
        return agency

    def set_status(self, agency_id: int, status: str) -> Optional[Agency]:
        agency = self.get_by_id(agency_id)
        if not agency:
            return None
        agency.status = status
        self.db.flush()
        return agency
