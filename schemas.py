"""
Database Schemas for The Life Journal

Collections: "lessons", "users", "comments", "lessonReports".
Lessons and users are stored as the caller sends them, so the models
below describe the documents and validate the request bodies that have
a fixed shape.
"""

from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field


class Lesson(BaseModel):
    """
    Lessons collection schema
    Collection name: "lessons"
    """
    model_config = ConfigDict(extra="allow")

    email: Optional[str] = Field(None, description="Author email")
    title: Optional[str] = Field(None, description="Lesson title")
    description: Optional[str] = Field(None, description="Lesson text")
    category: Optional[str] = Field(None, description="Lesson category")
    emotionalTone: Optional[str] = Field(None, description="Emotional tone of the lesson")
    privacy: Optional[str] = Field(None, description="public or private")
    likes: List[str] = Field(default_factory=list, description="Identities who liked the lesson")
    likesCount: int = Field(0, ge=0)
    favorites: List[str] = Field(default_factory=list, description="Identities who saved the lesson")
    favoritesCount: int = Field(0, ge=0)
    createdAt: Optional[datetime] = None
    updatedAt: Optional[datetime] = None


class User(BaseModel):
    """
    Users collection schema
    Collection name: "users"
    """
    model_config = ConfigDict(extra="allow")

    email: str = Field(..., min_length=1, description="Email address, unique")
    name: Optional[str] = Field(None, description="Display name")
    photoURL: Optional[str] = Field(None, description="Avatar URL")


class Comment(BaseModel):
    """
    Comments collection schema
    Collection name: "comments"
    """
    lessonId: str = Field(..., description="Lesson ObjectId as string")
    userId: str = Field(..., description="Commenter identity")
    text: str = Field(..., min_length=1)
    userName: Optional[str] = None
    userPhoto: Optional[str] = None


class LessonReport(BaseModel):
    """
    Reports collection schema
    Collection name: "lessonReports"
    """
    reporterUserId: str = ""
    reason: str = ""
    reporterEmail: Optional[str] = None


class ToggleRequest(BaseModel):
    userId: str = ""


class ToggleResult(BaseModel):
    userId: str
    active: bool
    delta: int
    count: int


class RoleStatus(BaseModel):
    role: str = "freeUser"
    paymentStatus: str = "Unpaid"


class CartItem(BaseModel):
    name: str = Field(..., min_length=1)
    price: float = Field(..., ge=0, description="Unit price in USD")
    quantity: int = Field(1, ge=1)
    email: str = Field(..., min_length=1, description="Buyer email")


class Contributor(BaseModel):
    email: str
    count: int
    name: Optional[str] = None


class AdminAnalytics(BaseModel):
    totalUsers: int
    premiumUsers: int
    totalLessons: int
    publicLessons: int
    privateLessons: int
    lessonsToday: int
    totalComments: int
    totalReports: int
    topContributor: Optional[Contributor] = None
