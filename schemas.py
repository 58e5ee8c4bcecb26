"""
Database Schemas

MongoDB collection schemas for the driving-school backend, as Pydantic models.
Handlers build documents through these before inserting them.

Model name is converted to snake case for the collection name:
- User -> "user" collection
- Registration -> "registration" collection
- SupportTicket -> "support_ticket" collection
"""

from pydantic import BaseModel, Field, EmailStr
from typing import Dict, Optional, List
from datetime import datetime


class User(BaseModel):
    """
    Users collection schema
    Collection name: "user"
    """
    nom: str = Field(..., description="Full name")
    email: EmailStr = Field(..., description="Email address")
    password_hash: str = Field(..., description="BCrypt password hash")
    role: str = Field("eleve", description="admin | instructeur | eleve")
    statut: str = Field("actif", description="en attente | actif | en formation | terminé | suspendu")
    isFirstLogin: bool = Field(False, description="Set for accounts created by an admin, cleared on first login")
    firstLoginAt: Optional[datetime] = None
    telephone: Optional[str] = None
    adresse: Optional[str] = None
    dateNaissance: Optional[str] = Field(None, description="ISO 8601 date")
    licenseType: str = Field("B", description="A | B | C | D | BE | CE | DE")
    theoreticalHours: float = Field(0, ge=0, description="Theory hours completed")
    practicalHours: float = Field(0, ge=0, description="Driving hours completed")
    theoreticalHoursMin: float = Field(40, ge=0, description="Theory hours required")
    practicalHoursMin: float = Field(20, ge=0, description="Driving hours required")
    nextExam: Optional[str] = Field(None, description="ISO 8601 date")
    monitorComments: str = ""
    profileImageUrl: Optional[str] = None
    twoFactorEnabled: bool = False
    notifications: Dict[str, bool] = Field(
        default_factory=lambda: {"sessionReminders": True, "newsUpdates": False}
    )
    passwordLastModified: Optional[datetime] = None
    reset_code: Optional[str] = Field(None, description="One-time 6-digit code for password reset")
    reset_expires: Optional[datetime] = Field(None, description="Expiry timestamp for the reset code")


class AuthToken(BaseModel):
    """
    Bearer tokens handed out at login
    Collection name: "auth_token"
    """
    token: str = Field(..., description="Opaque random token")
    user_id: str = Field(..., description="Owner user id")
    expires_at: datetime = Field(..., description="Expiry timestamp")


class Registration(BaseModel):
    """
    Training applications; the slot is (dateDebut, heurePreferee)
    Collection name: "registration"
    """
    nomComplet: str
    email: EmailStr
    telephone: str
    adresse: str
    dateNaissance: str = Field(..., description="ISO 8601 date")
    dateDebut: str = Field(..., description="ISO 8601 date of the wished start")
    heurePreferee: str = Field(..., description="Slot label such as 14:00, compared verbatim")
    formation: str = Field(..., description="Training type, e.g. Permis B")
    status: str = Field("pending", description="pending | confirmed | cancelled")


class Session(BaseModel):
    """
    A lesson slot between a student and an instructor
    Collection name: "session"
    """
    studentId: str
    instructorId: str
    courseType: str = Field(..., description="code | conduite | autoroute | examen_blanc")
    courseTitle: str
    scheduledDate: str = Field(..., description="ISO 8601 date")
    scheduledTime: str = Field(..., description="HH:MM")
    duration: float = Field(..., description="Hours")
    location: Optional[str] = None
    notes: Optional[str] = None
    status: str = Field("présent", description="présent | absent | en_retard | annulé")
    actualStartTime: Optional[str] = None
    actualEndTime: Optional[str] = None


class Course(BaseModel):
    """
    Collection name: "course"
    """
    title: str
    instructorId: str
    schedule: str = Field(..., description="ISO 8601 datetime")
    studentId: Optional[str] = None
    instructorName: Optional[str] = None
    type: str = "conduite"
    status: str = Field("scheduled", description="scheduled | completed | cancelled")
    duration: float = Field(1, gt=0, description="Hours")


class News(BaseModel):
    """
    News articles published by staff
    Collection name: "news"
    """
    title: str
    excerpt: str = ""
    content: str
    category: str
    status: str = Field("draft", description="draft | published | scheduled")
    tags: List[str] = Field(default_factory=list)
    allowComments: bool = True
    pinToTop: bool = False
    sendNotification: bool = False
    authorId: str
    authorName: Optional[str] = None
    views: int = 0
    imageUrl: Optional[str] = None
    publishedAt: Optional[datetime] = None
    scheduledAt: Optional[datetime] = None


class Comment(BaseModel):
    """
    Collection name: "comment"
    """
    uid: str
    name: str
    comment: str
    likes: int = 0
    dislikes: int = 0


class CommentVote(BaseModel):
    """
    One vote per (comment_id, uid)
    Collection name: "comment_vote"
    """
    comment_id: str
    uid: str
    type: str = Field(..., description="like | dislike")


class SupportTicket(BaseModel):
    """
    Contact form tickets, keyed by their TICKET_ id
    Collection name: "support_ticket"
    """
    nomComplet: str
    email: EmailStr
    telephone: Optional[str] = None
    sujet: str
    priorite: str = "Normale"
    message: str
    status: str = "nouveau"


class ExamResult(BaseModel):
    """
    Mock exam results recorded by instructors
    Collection name: "exam_result"
    """
    studentId: str
    type: str = Field("code", description="code | conduite")
    result: str = Field(..., description="passed | failed")
    score: Optional[float] = None
