"""Domain Entities - Auth"""
from pydantic import BaseModel, Field
from uuid import UUID, uuid4
from typing import Optional

from domain.enums import Role


class User(BaseModel):
    """User Entity"""
    user_id: UUID = Field(default_factory=uuid4)
    username: str
    email: Optional[str] = None
    full_name: Optional[str] = None
    role: Role = Role.STUDENT
    disabled: bool = False

    class Config:
        from_attributes = True

    @property
    def is_staff(self) -> bool:
        """Reception desk or administration"""
        return self.role in (Role.RECEPTIONIST, Role.ADMIN)

    @property
    def is_admin(self) -> bool:
        return self.role == Role.ADMIN

    @property
    def display_name(self) -> str:
        return self.full_name or self.username


class UserInDB(User):
    """User with hashed password for DB storage"""
    hashed_password: str
