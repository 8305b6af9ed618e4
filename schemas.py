"""
Database Schemas for Community Era

Each Pydantic model represents a MongoDB collection.
Collection name = lowercase of class name (User -> "user", Report -> "report").

Server-managed report fields (reportedBy, votes, voters, parentReport,
createdAt, updatedAt) are not part of the Report model; clients cannot set them.
"""

from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, EmailStr, Field


class Category(str, Enum):
    road = "road"
    water = "water"
    electricity = "electricity"
    sanitation = "sanitation"
    other = "other"


class Status(str, Enum):
    open = "open"
    in_progress = "in-progress"
    resolved = "resolved"
    closed = "closed"


class Severity(str, Enum):
    low = "low"
    medium = "medium"
    high = "high"
    critical = "critical"


class Role(str, Enum):
    user = "user"
    admin = "admin"


SEVERITY_RANK = {
    Severity.low.value: 1,
    Severity.medium.value: 2,
    Severity.high.value: 3,
    Severity.critical.value: 4,
}


class User(BaseModel):
    username: str = Field(..., min_length=3, description="Public display name")
    email: EmailStr = Field(..., description="Email address")
    role: Role = Field(Role.user, description="Role of the account")
    password_hash: str = Field(..., description="Hashed password")
    is_active: bool = Field(True, description="Whether user is active")


class Coordinates(BaseModel):
    lat: float = Field(..., ge=-90, le=90, allow_inf_nan=False)
    lng: float = Field(..., ge=-180, le=180, allow_inf_nan=False)


class Location(BaseModel):
    address: Optional[str] = Field('', description="Nearest address or landmark")
    city: Optional[str] = Field(None)
    area: Optional[str] = Field(None)
    coordinates: Coordinates


class Report(BaseModel):
    title: str = Field(..., min_length=5, description="Short summary of the problem")
    description: str = Field(..., min_length=10, description="Issue description")
    category: Category = Field(..., description="Infrastructure category")
    severity: Severity = Field(Severity.medium)
    status: Status = Field(Status.open)
    location: Location
    images: List[str] = Field(default_factory=list, description="Image URLs")
