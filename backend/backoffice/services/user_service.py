"""
User Service - Business Logic for User Operations
"""
from datetime import datetime
from typing import Optional, List
from sqlalchemy.orm import Session, joinedload
from backoffice.models import User
from backoffice.schemas import UserCreate
from backoffice.core.security import get_password_hash, verify_password


class UserService:
    def __init__(self, db: Session):
        self.db = db

    def get_by_id(self, user_id: int) -> Optional[User]:
        return self.db.query(User).filter(User.id == user_id).first()

    def get_by_username(self, username: str) -> Optional[User]:
        return self.db.query(User).filter(User.username == username).first()

    def get_user_with_relations(self, username: str) -> Optional[User]:
        return self.db.query(User)\
            .options(joinedload(User.agency))\
            .filter(User.username == username)\
            .first()

    def get_all(self, role: str = None, agency_id: int = None) -> List[User]:
        query = self.db.query(User).options(joinedload(User.agency))
        if role:
            query = query.filter(User.role == role)
        if agency_id:
            query = query.filter(User.agency_id == agency_id)
        return query.order_by(User.username).all()

    def create(self, user_data: UserCreate) -> User:
        if self.get_by_username(user_data.username):
            raise ValueError("Username already registered")

        user = User(
            username=user_data.username,
            email=user_data.email,
            full_name=user_data.full_name,
            hashed_password=get_password_hash(user_data.password),
            role=user_data.role,
            agency_id=user_data.agency_id,
            is_active=True
        )
        self.db.add(user)
        self.db.flush()
        return user

    def verify_password(self, user: User, password: str) -> bool:
        return verify_password(password, user.hashed_password)

    def authenticate(self, username: str, password: str) -> Optional[User]:
        """Return the user when credentials match, otherwise None"""
        user = self.get_by_username(username)
        if not user or not self.verify_password(user, password):
            return None
        return user

    def record_login(self, user: User):
        user.last_login = datetime.utcnow()
        self.db.flush()
