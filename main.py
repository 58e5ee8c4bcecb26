import logging
import math
import os
import random
import secrets
import string
import time
from datetime import date, datetime, timedelta, timezone
from typing import List, Literal, Optional

from fastapi import Depends, FastAPI, Header, HTTPException, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from passlib.context import CryptContext
from pydantic import BaseModel, EmailStr, Field, StrictBool, TypeAdapter, ValidationError
from pymongo.errors import PyMongoError

import policy
from availability import (
    DEFAULT_STANDARD_SLOTS,
    AvailabilityResult,
    MissingSlotField,
    SlotConflict,
    SlotStatus,
    check_availability,
    create_registration_if_available,
    list_available_slots,
)
from database import (
    DatabaseUnavailable,
    as_utc,
    create_document,
    db,
    get_collection,
    get_document,
    get_documents,
    now_utc,
    serialize,
    update_document,
)
from schemas import (
    AuthToken,
    Comment,
    CommentVote,
    Course,
    ExamResult,
    News,
    Registration,
    Session,
    SupportTicket,
    User,
)

logging.basicConfig(
    level=os.getenv("LOG_LEVEL", "INFO"),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)

# -------------------- Settings --------------------
CORS_ORIGINS = [o.strip() for o in os.getenv("CORS_ORIGINS", "*").split(",") if o.strip()]
STANDARD_SLOTS = [s.strip() for s in os.getenv("STANDARD_SLOTS", "").split(",") if s.strip()] or DEFAULT_STANDARD_SLOTS

TOKEN_TTL = timedelta(days=1)
TOKEN_TTL_REMEMBER = timedelta(days=7)
RESET_CODE_TTL = timedelta(minutes=10)

app = FastAPI(title="Driving School API")

app.add_middleware(
    CORSMiddleware,
    allow_origins=CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["GET", "POST", "PUT", "PATCH", "DELETE"],
    allow_headers=["Content-Type", "Authorization"],
)

pwd_context = CryptContext(schemes=["bcrypt"], deprecated="auto")

email_adapter = TypeAdapter(EmailStr)


# -------------------- Error handlers --------------------
@app.exception_handler(MissingSlotField)
async def missing_slot_field_handler(request: Request, exc: MissingSlotField):
    return JSONResponse(status_code=400, content={"detail": str(exc), "field": exc.field})


@app.exception_handler(SlotConflict)
async def slot_conflict_handler(request: Request, exc: SlotConflict):
    return JSONResponse(
        status_code=409,
        content={
            "detail": "Slot already booked",
            "available": False,
            "conflictCount": exc.conflict_count,
            "suggestion": exc.suggestion,
            "date": exc.date,
            "time": exc.time,
        },
    )


@app.exception_handler(PyMongoError)
async def store_error_handler(request: Request, exc: PyMongoError):
    logger.error(f"Database error on {request.method} {request.url.path}: {exc}")
    return JSONResponse(status_code=503, content={"detail": "Database unavailable, please try again later"})


@app.exception_handler(DatabaseUnavailable)
async def database_unconfigured_handler(request: Request, exc: DatabaseUnavailable):
    logger.error(f"{request.method} {request.url.path}: {exc}")
    return JSONResponse(status_code=503, content={"detail": "Database not configured"})


# -------------------- Root & Health --------------------
@app.get("/")
def read_root():
    return {"message": "Driving School API is running"}


@app.get("/test")
def test_database():
    """Report whether the database is configured and reachable"""
    response = {
        "backend": "Running",
        "database": "Not Available",
        "database_url": None,
        "database_name": None,
        "connection_status": "Not Connected",
        "collections": [],
    }
    if db is not None:
        response["database"] = "Available"
        response["database_name"] = db.name
        response["connection_status"] = "Connected"
        try:
            response["collections"] = db.list_collection_names()[:10]
            response["database"] = "Connected & Working"
        except PyMongoError as e:
            response["database"] = f"Connected but Error: {str(e)[:50]}"

    response["database_url"] = "Set" if os.getenv("DATABASE_URL") else "Not Set"
    response["database_name"] = "Set" if os.getenv("DATABASE_NAME") else "Not Set"
    return response


# -------------------- Auth Schemas --------------------
class SignupRequest(BaseModel):
    nom: str = Field(..., min_length=2, max_length=100)
    email: EmailStr
    password: str = Field(..., min_length=6, max_length=128)


class LoginRequest(BaseModel):
    email: str
    password: str
    rememberMe: bool = False


class ForgotPasswordRequest(BaseModel):
    email: EmailStr


class ResetPasswordRequest(BaseModel):
    email: EmailStr
    code: str = Field(..., min_length=6, max_length=6)
    new_password: str = Field(..., min_length=6, max_length=128)


class CreateUserRequest(BaseModel):
    email: EmailStr
    password: str = Field(..., min_length=6, max_length=128)
    nom: str = Field(..., min_length=2, max_length=50)
    role: Literal["admin", "instructeur", "eleve"]


class AuthResponse(BaseModel):
    message: str
    token: Optional[str] = None
    name: Optional[str] = None
    email: Optional[str] = None


# -------------------- Auth Helpers --------------------
def hash_password(password: str) -> str:
    return pwd_context.hash(password)


def verify_password(password: str, hashed: str) -> bool:
    return pwd_context.verify(password, hashed)


def public_user(user: dict) -> dict:
    data = serialize(user)
    for secret in ("password_hash", "reset_code", "reset_expires"):
        data.pop(secret, None)
    return data


def user_summary(user: dict) -> dict:
    return {
        "uid": str(user["_id"]),
        "email": user.get("email"),
        "nom": user.get("nom") or user.get("nomComplet") or "",
        "role": user.get("role"),
        "statut": user.get("statut"),
        "isFirstLogin": user.get("isFirstLogin", False),
        "profileImageUrl": user.get("profileImageUrl"),
    }


def check_account_status(user: dict) -> None:
    if user.get("statut") == "suspendu":
        raise HTTPException(status_code=403, detail="Account suspended, contact the administration")
    if user.get("statut") == "en attente":
        raise HTTPException(status_code=403, detail="Account awaiting validation")


def issue_token(user_id: str, remember: bool = False) -> dict:
    expires_at = now_utc() + (TOKEN_TTL_REMEMBER if remember else TOKEN_TTL)
    token = secrets.token_urlsafe(32)
    create_document("auth_token", AuthToken(token=token, user_id=user_id, expires_at=expires_at))
    return {"token": token, "expires_at": expires_at}


def bearer_token(authorization: Optional[str] = Header(None)) -> str:
    if not authorization:
        raise HTTPException(status_code=401, detail="Missing authentication token")
    if not authorization.startswith("Bearer "):
        raise HTTPException(status_code=401, detail="Authorization header must start with 'Bearer '")
    token = authorization[len("Bearer "):].strip()
    if not token:
        raise HTTPException(status_code=401, detail="No token after 'Bearer '")
    return token


def get_current_user(token: str = Depends(bearer_token)) -> dict:
    record = get_collection("auth_token").find_one({"token": token})
    if not record:
        raise HTTPException(status_code=401, detail="Invalid token")
    if as_utc(record["expires_at"]) <= now_utc():
        raise HTTPException(status_code=401, detail="Token expired")

    user = get_document("user", record["user_id"])
    if not user:
        raise HTTPException(status_code=401, detail="User not found")
    check_account_status(user)
    return user


def require(action: str):
    """Dependency granting access when the current user's role holds `action`."""
    def dependency(user: dict = Depends(get_current_user)) -> dict:
        if not policy.can(user.get("role"), action):
            logger.info(f"Denied {action} to {user.get('email')} ({user.get('role')})")
            raise HTTPException(status_code=403, detail="Not allowed")
        return user
    return dependency


# -------------------- Auth Endpoints --------------------
@app.post("/auth/signup", response_model=AuthResponse)
def signup(payload: SignupRequest):
    users = get_collection("user")
    if users.find_one({"email": payload.email}):
        raise HTTPException(status_code=409, detail="Email already registered")

    create_document("user", User(
        nom=payload.nom,
        email=payload.email,
        password_hash=hash_password(payload.password),
    ))
    return AuthResponse(message="Signup successful", name=payload.nom, email=payload.email)


@app.post("/auth/login")
def login(payload: LoginRequest):
    if not payload.email or not payload.password:
        raise HTTPException(status_code=400, detail="Email and password are required")
    try:
        email = email_adapter.validate_python(payload.email)
    except ValidationError:
        raise HTTPException(status_code=400, detail="Invalid email format")
    if len(payload.password) < 6:
        raise HTTPException(status_code=400, detail="Password must be at least 6 characters")

    user = get_collection("user").find_one({"email": email})
    if not user or not verify_password(payload.password, user.get("password_hash", "")):
        logger.info(f"Failed login for {email}")
        raise HTTPException(status_code=401, detail="Invalid email or password")
    check_account_status(user)

    issued = issue_token(str(user["_id"]), remember=payload.rememberMe)
    return {
        "message": "Login successful",
        "user": user_summary(user),
        "token": issued["token"],
        "expiresIn": "7d" if payload.rememberMe else "1d",
    }


@app.get("/auth/verify-token")
def verify_token(user: dict = Depends(get_current_user)):
    return {"valid": True, "user": user_summary(user)}


@app.post("/auth/refresh-token")
def refresh_token(token: str = Depends(bearer_token), user: dict = Depends(get_current_user)):
    get_collection("auth_token").delete_one({"token": token})
    issued = issue_token(str(user["_id"]))
    return {"message": "Token refreshed", "token": issued["token"], "expiresAt": issued["expires_at"]}


@app.post("/auth/logout", response_model=AuthResponse)
def logout(token: str = Depends(bearer_token)):
    get_collection("auth_token").delete_one({"token": token})
    return AuthResponse(message="Logout successful")


@app.post("/auth/forgot-password", response_model=AuthResponse)
def forgot_password(payload: ForgotPasswordRequest):
    users = get_collection("user")
    user = users.find_one({"email": payload.email})
    if not user:
        # Do not reveal existence; respond success generically
        return AuthResponse(message="If the email exists, a reset code has been generated.")

    code = f"{random.randint(0, 999999):06d}"
    expires = now_utc() + RESET_CODE_TTL
    users.update_one({"_id": user["_id"]}, {"$set": {"reset_code": code, "reset_expires": expires}})
    # Mail delivery lives outside this service; the code is returned instead.
    return AuthResponse(message="Reset code generated", token=code)


@app.post("/auth/reset-password", response_model=AuthResponse)
def reset_password(payload: ResetPasswordRequest):
    users = get_collection("user")
    user = users.find_one({"email": payload.email})
    if not user or user.get("reset_code") != payload.code:
        raise HTTPException(status_code=400, detail="Invalid code or email")

    expires = as_utc(user.get("reset_expires"))
    if not expires or now_utc() > expires:
        raise HTTPException(status_code=400, detail="Reset code expired")

    users.update_one(
        {"_id": user["_id"]},
        {"$set": {"password_hash": hash_password(payload.new_password), "updatedAt": now_utc()},
         "$unset": {"reset_code": "", "reset_expires": ""}}
    )
    get_collection("auth_token").delete_many({"user_id": str(user["_id"])})
    return AuthResponse(message="Password reset successful")


@app.post("/auth/create-user")
def create_user(payload: CreateUserRequest, admin: dict = Depends(require("user:create"))):
    if get_collection("user").find_one({"email": payload.email}):
        raise HTTPException(status_code=409, detail="Email already registered")

    user_id = create_document("user", User(
        nom=payload.nom,
        email=payload.email,
        password_hash=hash_password(payload.password),
        role=payload.role,
        statut="en attente",
        isFirstLogin=True,
    ))
    logger.info(f"User {user_id} ({payload.role}) created by {admin.get('email')}")
    return {"message": "User created", "userId": user_id}


# -------------------- Users --------------------
class UserStatusRequest(BaseModel):
    statut: Literal["en attente", "actif", "en formation", "terminé", "suspendu"]


@app.get("/api/users/me")
def read_me(user: dict = Depends(get_current_user)):
    return public_user(user)


@app.get("/api/users/dashboard")
def student_dashboard(user: dict = Depends(require("dashboard:student"))):
    return {"message": "Welcome to the student dashboard", "user": public_user(user)}


@app.patch("/api/users/{user_id}/status")
def update_user_status(user_id: str, payload: UserStatusRequest, admin: dict = Depends(require("user:update_status"))):
    if not update_document("user", user_id, {"statut": payload.statut}):
        raise HTTPException(status_code=404, detail="User not found")
    logger.info(f"User {user_id} set to '{payload.statut}' by {admin.get('email')}")
    return {"message": "Status updated", "statut": payload.statut}


# -------------------- Registrations --------------------
REGISTRATION_FIELDS = [
    "nomComplet", "email", "telephone", "adresse",
    "dateNaissance", "dateDebut", "heurePreferee", "formation",
]


class RegistrationRequest(BaseModel):
    nomComplet: Optional[str] = None
    email: Optional[str] = None
    telephone: Optional[str] = None
    adresse: Optional[str] = None
    dateNaissance: Optional[str] = None
    dateDebut: Optional[str] = None
    heurePreferee: Optional[str] = None
    formation: Optional[str] = None


class RegistrationStatusRequest(BaseModel):
    status: Literal["pending", "confirmed", "cancelled"]


def _is_iso_date(value: str) -> bool:
    try:
        date.fromisoformat(value)
    except ValueError:
        return False
    return True


@app.get("/api/registration/availability", response_model=AvailabilityResult)
def registration_availability(date: Optional[str] = None, time: Optional[str] = None):
    return check_availability(get_collection("registration"), date, time)


@app.get("/api/registration/slots", response_model=List[SlotStatus])
def registration_slots(date: Optional[str] = None):
    return list_available_slots(get_collection("registration"), date, STANDARD_SLOTS)


@app.post("/api/registration", status_code=201)
def create_registration(payload: RegistrationRequest):
    data = payload.model_dump()
    missing = [field for field in REGISTRATION_FIELDS if not data.get(field)]
    if missing:
        raise HTTPException(
            status_code=400,
            detail={
                "error": "Invalid registration data",
                "details": [f"Field '{field}' is required" for field in missing],
            },
        )
    bad_dates = [field for field in ("dateNaissance", "dateDebut") if not _is_iso_date(data[field])]
    if bad_dates:
        raise HTTPException(status_code=400, detail=f"Expected an ISO 8601 date for: {', '.join(bad_dates)}")

    try:
        registration = Registration(**data)
    except ValidationError as e:
        raise HTTPException(status_code=400, detail=f"Invalid registration data: {e.errors()[0]['msg']}")

    registrations = get_collection("registration")
    registration_id = create_registration_if_available(registrations, registration.model_dump(), STANDARD_SLOTS)
    created = registrations.find_one({"_id": registration_id})
    return {
        "success": True,
        "message": "Registration saved",
        "registrationId": registration_id,
        "registration": {
            "id": registration_id,
            "nomComplet": created["nomComplet"],
            "email": created["email"],
            "dateDebut": created["dateDebut"],
            "heurePreferee": created["heurePreferee"],
            "formation": created["formation"],
            "status": created["status"],
            "createdAt": created["createdAt"],
        },
    }


@app.get("/api/registration")
def list_registrations(user: dict = Depends(require("registration:read"))):
    docs = get_collection("registration").find(
        {}, {"adresse": 0, "dateNaissance": 0}
    ).sort("createdAt", -1)
    registrations = [serialize(doc) for doc in docs]
    return {"success": True, "registrations": registrations, "total": len(registrations)}


@app.get("/api/registration/{registration_id}")
def get_registration(registration_id: str, user: dict = Depends(require("registration:read"))):
    doc = get_collection("registration").find_one({"_id": registration_id})
    if not doc:
        raise HTTPException(status_code=404, detail="Registration not found")
    return {"success": True, "registration": serialize(doc)}


@app.patch("/api/registration/{registration_id}/status")
def update_registration_status(
    registration_id: str,
    payload: RegistrationStatusRequest,
    admin: dict = Depends(require("registration:update_status")),
):
    if not update_document("registration", registration_id, {"status": payload.status}):
        raise HTTPException(status_code=404, detail="Registration not found")
    logger.info(f"Registration {registration_id} set to '{payload.status}' by {admin.get('email')}")
    return {"success": True, "registrationId": registration_id, "status": payload.status}


# -------------------- Sessions --------------------
TIME_PATTERN = r"^([0-1]?[0-9]|2[0-3]):[0-5][0-9]$"


class CreateSessionRequest(BaseModel):
    studentId: str
    instructorId: str
    courseType: Literal["code", "conduite", "autoroute", "examen_blanc"]
    courseTitle: str = Field(..., min_length=3, max_length=100)
    scheduledDate: date
    scheduledTime: str = Field(..., pattern=TIME_PATTERN)
    duration: float = Field(..., ge=0.5, le=8)
    location: Optional[str] = Field(None, max_length=100)
    notes: Optional[str] = Field(None, max_length=500)


class SessionStatusRequest(BaseModel):
    status: Literal["présent", "absent", "en_retard", "annulé"]
    notes: Optional[str] = Field(None, max_length=500)
    actualStartTime: Optional[str] = Field(None, pattern=TIME_PATTERN)
    actualEndTime: Optional[str] = Field(None, pattern=TIME_PATTERN)


def _initials(name: Optional[str], default: str = "E") -> str:
    if not name:
        return default
    return "".join(part[0] for part in name.split() if part).upper()


def _progression(student: Optional[dict]) -> int:
    student = student or {}
    done = (student.get("theoreticalHours") or 0) + (student.get("practicalHours") or 0)
    required = (student.get("theoreticalHoursMin") or 40) + (student.get("practicalHoursMin") or 20)
    return round(min(done / required * 100, 100))


@app.get("/api/sessions/stats")
def session_stats(date: Optional[str] = None, user: dict = Depends(require("session:read"))):
    target = date or datetime.now(timezone.utc).date().isoformat()
    sessions = get_documents("session", {"scheduledDate": target})
    return {
        "totalEleves": len(sessions),
        "presents": sum(1 for s in sessions if s.get("status") == "présent"),
        "absents": sum(1 for s in sessions if s.get("status") == "absent"),
        "enRetard": sum(1 for s in sessions if s.get("status") == "en_retard"),
        "annules": sum(1 for s in sessions if s.get("status") == "annulé"),
    }


@app.get("/api/sessions")
def list_sessions(
    date: Optional[str] = None,
    startDate: Optional[str] = None,
    endDate: Optional[str] = None,
    instructorId: Optional[str] = None,
    status: Optional[str] = None,
    studentId: Optional[str] = None,
    user: dict = Depends(require("session:read")),
):
    query = {}
    if date:
        query["scheduledDate"] = date
    elif startDate and endDate:
        query["scheduledDate"] = {"$gte": startDate, "$lte": endDate}
    if instructorId:
        query["instructorId"] = instructorId
    if status:
        query["status"] = status
    if studentId:
        query["studentId"] = studentId

    sessions = []
    for doc in get_documents("session", query, sort=[("scheduledTime", 1)]):
        student = get_document("user", doc["studentId"])
        instructor = get_document("user", doc["instructorId"])
        sessions.append({
            "id": str(doc["_id"]),
            "student": {
                "id": doc["studentId"],
                "nom": (student or {}).get("nom", "Unknown student"),
                "email": (student or {}).get("email", ""),
                "initials": _initials((student or {}).get("nom")),
            },
            "instructor": {
                "id": doc["instructorId"],
                "nom": (instructor or {}).get("nom", "Unknown instructor"),
            },
            "course": {"type": doc.get("courseType"), "title": doc.get("courseTitle")},
            "schedule": {"date": doc.get("scheduledDate"), "time": doc.get("scheduledTime")},
            "status": doc.get("status"),
            "progression": _progression(student),
        })
    return {"sessions": sessions}


@app.post("/api/sessions")
def create_session(payload: CreateSessionRequest, user: dict = Depends(require("session:write"))):
    data = payload.model_dump()
    data["scheduledDate"] = payload.scheduledDate.isoformat()
    session_id = create_document("session", Session(**data))
    logger.info(f"Session {session_id} created by {user.get('email')}")
    return {"message": "Session created", "sessionId": session_id}


@app.patch("/api/sessions/{session_id}/status")
def update_session_status(session_id: str, payload: SessionStatusRequest, user: dict = Depends(require("session:write"))):
    updated = update_document("session", session_id, {
        "status": payload.status,
        "notes": payload.notes,
        "actualStartTime": payload.actualStartTime,
        "actualEndTime": payload.actualEndTime,
    })
    if not updated:
        raise HTTPException(status_code=404, detail="Session not found")
    return {"message": "Status updated", "newStatus": payload.status}


@app.get("/api/sessions/{session_id}")
def get_session(session_id: str, user: dict = Depends(require("session:read"))):
    doc = get_document("session", session_id)
    if not doc:
        raise HTTPException(status_code=404, detail="Session not found")
    student = get_document("user", doc["studentId"])
    instructor = get_document("user", doc["instructorId"])
    details = serialize(doc)
    details.pop("studentId", None)
    details.pop("instructorId", None)
    details["student"] = public_user(student) if student else None
    details["instructor"] = public_user(instructor) if instructor else None
    return details


# -------------------- Courses --------------------
class CourseRequest(BaseModel):
    title: str = Field(..., min_length=3, max_length=100)
    instructorId: str
    schedule: str
    studentId: Optional[str] = None
    instructorName: Optional[str] = None
    type: Literal["code", "conduite", "autoroute"] = "conduite"
    status: Literal["scheduled", "completed", "cancelled"] = "scheduled"
    duration: float = Field(1, gt=0, le=8)


def _time_until(schedule: str, now: datetime) -> str:
    try:
        when = as_utc(datetime.fromisoformat(schedule))
    except ValueError:
        return schedule
    if when.date() == now.date():
        return f"Today {when:%H:%M}"
    if when.date() == (now + timedelta(days=1)).date():
        return f"Tomorrow {when:%H:%M}"
    return f"{when:%d/%m %H:%M}"


@app.post("/api/courses")
def create_course(payload: CourseRequest, user: dict = Depends(require("course:write"))):
    course_id = create_document("course", Course(**payload.model_dump()))
    return {"id": course_id}


@app.get("/api/courses")
def list_courses():
    return [serialize(doc) for doc in get_documents("course")]


@app.get("/api/courses/upcoming")
def upcoming_courses(user: dict = Depends(require("course:upcoming"))):
    now = now_utc()
    docs = get_documents(
        "course",
        {"studentId": str(user["_id"]), "schedule": {"$gte": now.isoformat()}},
        sort=[("schedule", 1)],
        limit=5,
    )
    return {
        "upcomingCourses": [
            {
                "id": str(doc["_id"]),
                "title": doc.get("title"),
                "type": doc.get("type") or "conduite",
                "schedule": doc.get("schedule"),
                "instructorName": doc.get("instructorName") or "Instructor",
                "status": doc.get("status") or "scheduled",
                "timeUntil": _time_until(doc.get("schedule", ""), now),
            }
            for doc in docs
        ]
    }


@app.get("/api/courses/student/{student_id}")
def student_courses(student_id: str, user: dict = Depends(get_current_user)):
    if not policy.can(user.get("role"), "course:read_any_student") and str(user["_id"]) != student_id:
        raise HTTPException(status_code=403, detail="Not allowed")
    docs = get_documents("course", {"studentId": student_id}, sort=[("schedule", -1)])
    return {"courses": [serialize(doc) for doc in docs]}


# -------------------- News --------------------
NewsStatus = Literal["draft", "published", "scheduled"]


class NewsRequest(BaseModel):
    title: Optional[str] = None
    excerpt: Optional[str] = None
    content: Optional[str] = None
    category: Optional[str] = None
    status: NewsStatus = "draft"
    tags: List[str] = Field(default_factory=list)
    allowComments: bool = True
    pinToTop: bool = False
    sendNotification: bool = False
    scheduledAt: Optional[datetime] = None


class NewsUpdateRequest(BaseModel):
    title: Optional[str] = None
    excerpt: Optional[str] = None
    content: Optional[str] = None
    category: Optional[str] = None
    status: Optional[NewsStatus] = None
    tags: Optional[List[str]] = None
    allowComments: Optional[bool] = None
    pinToTop: Optional[bool] = None
    scheduledAt: Optional[datetime] = None


def _load_article(news_id: str) -> dict:
    doc = get_document("news", news_id)
    if not doc:
        raise HTTPException(status_code=404, detail="Article not found")
    return doc


def _check_article_owner(article: dict, user: dict, verb: str) -> None:
    if article.get("authorId") != str(user["_id"]) and not policy.can(user.get("role"), "news:edit_any"):
        raise HTTPException(status_code=403, detail=f"You can only {verb} your own articles")


@app.get("/api/news/stats")
def news_stats(user: dict = Depends(require("news:stats"))):
    now = now_utc()
    start_of_month = datetime(now.year, now.month, 1, tzinfo=timezone.utc)
    stats = {"totalArticles": 0, "publishedArticles": 0, "draftArticles": 0, "scheduledArticles": 0, "totalViews": 0}
    for doc in get_documents("news"):
        created = as_utc(doc.get("createdAt"))
        if created and created >= start_of_month:
            stats["totalArticles"] += 1
        status_key = {"published": "publishedArticles", "draft": "draftArticles", "scheduled": "scheduledArticles"}.get(doc.get("status"))
        if status_key:
            stats[status_key] += 1
        stats["totalViews"] += doc.get("views") or 0
    return stats


@app.get("/api/news")
def list_news(
    status: Optional[str] = None,
    category: Optional[str] = None,
    author: Optional[str] = None,
    search: Optional[str] = None,
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=100),
    user: dict = Depends(require("news:read")),
):
    query = {}
    if status and status != "all":
        query["status"] = status
    if category and category != "all":
        query["category"] = category
    if author and author != "all":
        query["authorId"] = author

    articles = [serialize(doc) for doc in get_documents("news", query, sort=[("createdAt", -1)])]
    if search:
        needle = search.lower()
        articles = [a for a in articles if needle in (a.get("title") or "").lower()]

    total = len(articles)
    start = (page - 1) * limit
    return {
        "articles": articles[start:start + limit],
        "pagination": {"page": page, "limit": limit, "total": total, "totalPages": math.ceil(total / limit)},
    }


@app.post("/api/news", status_code=201)
def create_news(payload: NewsRequest, user: dict = Depends(require("news:write"))):
    if not payload.title or not payload.content or not payload.category:
        raise HTTPException(status_code=400, detail="Title, content and category are required")

    article = News(
        title=payload.title,
        excerpt=payload.excerpt or "",
        content=payload.content,
        category=payload.category,
        status=payload.status,
        tags=[t.strip() for t in payload.tags if t.strip()],
        allowComments=payload.allowComments,
        pinToTop=payload.pinToTop,
        sendNotification=payload.sendNotification,
        authorId=str(user["_id"]),
        authorName=user.get("nom"),
    )
    if payload.status == "scheduled" and payload.scheduledAt:
        article.scheduledAt = payload.scheduledAt
    elif payload.status == "published":
        article.publishedAt = now_utc()

    news_id = create_document("news", article)
    return {"message": "Article created", "article": serialize(get_document("news", news_id))}


@app.get("/api/news/{news_id}")
def get_news(news_id: str, user: dict = Depends(require("news:read"))):
    return serialize(_load_article(news_id))


@app.put("/api/news/{news_id}")
def update_news(news_id: str, payload: NewsUpdateRequest, user: dict = Depends(require("news:write"))):
    article = _load_article(news_id)
    _check_article_owner(article, user, "edit")

    changes = payload.model_dump(exclude_unset=True, exclude_none=True)
    if "tags" in changes:
        changes["tags"] = [t.strip() for t in changes["tags"] if t.strip()]
    if changes.get("status") == "published" and article.get("status") != "published":
        changes["publishedAt"] = now_utc()
    if "scheduledAt" in changes and changes.get("status") != "scheduled":
        changes.pop("scheduledAt")

    update_document("news", news_id, changes)
    return {"message": "Article updated", "article": serialize(get_document("news", news_id))}


@app.delete("/api/news/{news_id}")
def delete_news(news_id: str, user: dict = Depends(require("news:write"))):
    article = _load_article(news_id)
    _check_article_owner(article, user, "delete")
    get_collection("news").delete_one({"_id": article["_id"]})
    return {"message": "Article deleted"}


@app.post("/api/news/{news_id}/view")
def count_news_view(news_id: str):
    article = _load_article(news_id)
    get_collection("news").update_one({"_id": article["_id"]}, {"$inc": {"views": 1}})
    return {"message": "View counted", "views": get_document("news", news_id).get("views", 0)}


# -------------------- Comments --------------------
class CommentRequest(BaseModel):
    comment: str = Field(..., min_length=1, max_length=500)


class VoteRequest(BaseModel):
    type: Literal["like", "dislike"]


@app.post("/api/comments")
def create_comment(payload: CommentRequest, user: dict = Depends(get_current_user)):
    comment_id = create_document("comment", Comment(
        uid=str(user["_id"]),
        name=user.get("nom") or "User",
        comment=payload.comment,
    ))
    return {"id": comment_id, "message": "Comment saved"}


@app.get("/api/comments")
def list_comments():
    return [serialize(doc) for doc in get_documents("comment", sort=[("createdAt", -1)])]


@app.patch("/api/comments/{comment_id}")
def vote_comment(comment_id: str, payload: VoteRequest, user: dict = Depends(get_current_user)):
    comment = get_document("comment", comment_id)
    if not comment:
        raise HTTPException(status_code=404, detail="Comment not found")

    uid = str(user["_id"])
    votes = get_collection("comment_vote")
    if votes.find_one({"comment_id": comment_id, "uid": uid}):
        raise HTTPException(status_code=403, detail="You already voted on this comment")

    field = "likes" if payload.type == "like" else "dislikes"
    get_collection("comment").update_one({"_id": comment["_id"]}, {"$inc": {field: 1}})
    create_document("comment_vote", CommentVote(comment_id=comment_id, uid=uid, type=payload.type))
    return {"message": f"{payload.type} saved"}


# -------------------- Support --------------------
class ContactRequest(BaseModel):
    nomComplet: Optional[str] = None
    email: Optional[str] = None
    telephone: Optional[str] = None
    sujet: Optional[str] = None
    priorite: str = "Normale"
    message: Optional[str] = None


FAQ = [
    {
        "id": "faq_001",
        "question": "Comment s'inscrire à un cours de conduite ?",
        "reponse": "Remplissez le formulaire d'inscription en ligne ou contactez-nous au 01 23 45 67 89.",
        "category": "inscription",
        "order": 1,
    },
    {
        "id": "faq_002",
        "question": "Quels sont les documents nécessaires pour l'inscription ?",
        "reponse": "Une pièce d'identité, une photo d'identité, un justificatif de domicile et, pour les mineurs, une autorisation parentale.",
        "category": "inscription",
        "order": 2,
    },
    {
        "id": "faq_003",
        "question": "Comment réserver une leçon de conduite ?",
        "reponse": "Depuis votre espace élève ou par téléphone. Les créneaux sont ouverts du lundi au samedi.",
        "category": "cours",
        "order": 3,
    },
    {
        "id": "faq_004",
        "question": "Quels sont les modes de paiement acceptés ?",
        "reponse": "Carte bancaire, virement, chèque et espèces. Le paiement en plusieurs fois est possible.",
        "category": "paiement",
        "order": 4,
    },
    {
        "id": "faq_005",
        "question": "Que faire si j'ai un problème technique sur le site ?",
        "reponse": "Écrivez à support@auto-ecole.fr ou appelez-nous.",
        "category": "technique",
        "order": 5,
    },
]

CONTACT_INFO = {
    "contact": {
        "telephone": {"number": "01 23 45 67 89", "hours": "Lundi - Vendredi : 8h00 - 18h00"},
        "email": {"address": "support@auto-ecole.fr", "responseTime": "Réponse sous 24h"},
        "address": {"location": "123 Rue de la Paix, 75001 Paris", "hours": "Lun-Ven: 8h-18h, Sam: 9h-16h"},
    }
}


def new_ticket_id() -> str:
    suffix = "".join(random.choices(string.ascii_uppercase + string.digits, k=6))
    return f"TICKET_{int(time.time() * 1000)}_{suffix}"


@app.post("/api/support/contact")
def contact_support(payload: ContactRequest):
    data = payload.model_dump()
    missing = [field for field in ("nomComplet", "email", "sujet", "message") if not data.get(field)]
    if missing:
        raise HTTPException(
            status_code=400,
            detail={"error": "Invalid data", "details": [f"Field '{field}' is required" for field in missing]},
        )
    try:
        ticket = SupportTicket(**data)
    except ValidationError as e:
        raise HTTPException(status_code=400, detail=f"Invalid data: {e.errors()[0]['msg']}")

    ticket_id = new_ticket_id()
    create_document("support_ticket", {"_id": ticket_id, **ticket.model_dump()})
    logger.info(f"Support ticket {ticket_id} [{ticket.priorite}] from {ticket.email}")
    return {"message": "Message sent", "ticketId": ticket_id, "responseTime": "Reply within 24h"}


@app.get("/api/support/tickets")
def list_tickets(
    status: str = "tous",
    limit: int = Query(20, ge=1, le=100),
    user: dict = Depends(get_current_user),
):
    query = {"email": user.get("email")}
    if status != "tous":
        query["status"] = status
    tickets = [
        {
            "id": str(doc["_id"]),
            "sujet": doc.get("sujet"),
            "priorite": doc.get("priorite"),
            "status": doc.get("status"),
            "createdAt": doc.get("createdAt"),
            "updatedAt": doc.get("updatedAt"),
        }
        for doc in get_documents("support_ticket", query, sort=[("createdAt", -1)], limit=limit)
    ]
    return {"tickets": tickets, "totalCount": len(tickets)}


@app.get("/api/support/faq")
def support_faq(category: str = "tous"):
    items = FAQ if category == "tous" else [item for item in FAQ if item["category"] == category]
    return {"faq": items}


@app.get("/api/support/info")
def support_info():
    return CONTACT_INFO


# -------------------- Student profile --------------------
LicenseType = Literal["A", "B", "C", "D", "BE", "CE", "DE"]
UserStatut = Literal["en attente", "actif", "en formation", "terminé", "suspendu"]

PHONE_PATTERN = r"^[0-9+\s\-\(\)]{8,15}$"
TRAINING_FIELDS = {
    "statut", "theoreticalHours", "practicalHours", "theoreticalHoursMin",
    "practicalHoursMin", "nextExam", "monitorComments",
}


class StudentProfileUpdate(BaseModel):
    nom: Optional[str] = Field(None, min_length=2, max_length=100)
    telephone: Optional[str] = Field(None, pattern=PHONE_PATTERN)
    adresse: Optional[str] = Field(None, max_length=300)
    dateNaissance: Optional[date] = None
    licenseType: Optional[LicenseType] = None
    profileImageUrl: Optional[str] = None
    statut: Optional[UserStatut] = None
    theoreticalHours: Optional[float] = Field(None, ge=0)
    practicalHours: Optional[float] = Field(None, ge=0)
    theoreticalHoursMin: Optional[float] = Field(None, ge=0)
    practicalHoursMin: Optional[float] = Field(None, ge=0)
    nextExam: Optional[date] = None
    monitorComments: Optional[str] = Field(None, max_length=2000)


def _check_profile_access(user: dict, uid: str) -> None:
    if str(user["_id"]) != uid and not policy.can(user.get("role"), "student_profile:read_any"):
        raise HTTPException(status_code=403, detail="Not allowed")


def _load_student(uid: str) -> dict:
    student = get_document("user", uid)
    if not student:
        raise HTTPException(status_code=404, detail="Student not found")
    if student.get("role") != policy.ROLE_STUDENT:
        raise HTTPException(status_code=400, detail="This user is not a student")
    return student


@app.post("/api/student-profile/first-login/{uid}")
def first_login(uid: str, user: dict = Depends(get_current_user)):
    if str(user["_id"]) != uid:
        raise HTTPException(status_code=403, detail="Not allowed")
    if not user.get("isFirstLogin"):
        return {"message": "Not a first login", "statusChanged": False, "currentStatus": user.get("statut")}

    update_document("user", uid, {"statut": "actif", "isFirstLogin": False, "firstLoginAt": now_utc()})
    logger.info(f"First login completed for {user.get('email')}")
    return {"message": "First login recorded", "statusChanged": True, "newStatus": "actif"}


@app.get("/api/student-profile/{uid}")
def read_student_profile(uid: str, user: dict = Depends(get_current_user)):
    _check_profile_access(user, uid)
    student = _load_student(uid)
    return {
        "uid": uid,
        "nom": student.get("nom"),
        "email": student.get("email"),
        "statut": student.get("statut"),
        "dateInscription": student.get("createdAt"),
        "idEleve": uid[:8],
        "progressionGlobale": _progression(student),
        "coursTheoriques": {
            "completed": student.get("theoreticalHours") or 0,
            "total": student.get("theoreticalHoursMin") or 40,
        },
        "exercicesPratiques": {
            "completed": student.get("practicalHours") or 0,
            "total": student.get("practicalHoursMin") or 20,
        },
        "evaluations": {
            "completed": get_collection("exam_result").count_documents({"studentId": uid}),
            "total": 4,
        },
        "isFirstLogin": student.get("isFirstLogin", False),
        "profileImageUrl": student.get("profileImageUrl"),
        "licenseType": student.get("licenseType") or "B",
        "nextExam": student.get("nextExam"),
        "monitorComments": student.get("monitorComments") or "",
    }


@app.put("/api/student-profile/{uid}")
def update_student_profile(uid: str, payload: StudentProfileUpdate, user: dict = Depends(get_current_user)):
    _check_profile_access(user, uid)
    _load_student(uid)

    changes = payload.model_dump(exclude_unset=True, exclude_none=True)
    if changes.keys() & TRAINING_FIELDS and not policy.can(user.get("role"), "student_profile:edit_training"):
        raise HTTPException(status_code=403, detail="Only staff can change training progress")
    for field in ("dateNaissance", "nextExam"):
        if field in changes:
            changes[field] = changes[field].isoformat()

    update_document("user", uid, changes)
    return {"message": "Profile updated", "updatedFields": sorted(changes)}


# -------------------- Settings --------------------
class NotificationSettings(BaseModel):
    sessionReminders: StrictBool
    newsUpdates: StrictBool


class ChangePasswordRequest(BaseModel):
    currentPassword: str = Field(..., min_length=1)
    newPassword: str = Field(..., min_length=6, max_length=128)


class TwoFactorRequest(BaseModel):
    enabled: StrictBool


class DeleteAccountRequest(BaseModel):
    confirmation: str


DELETE_CONFIRMATION = "SUPPRIMER"


@app.get("/api/settings")
def read_settings(user: dict = Depends(get_current_user)):
    notifications = user.get("notifications") or {}
    return {
        "security": {
            "passwordLastModified": user.get("passwordLastModified") or user.get("createdAt"),
            "twoFactorEnabled": user.get("twoFactorEnabled", False),
        },
        "notifications": {
            "sessionReminders": notifications.get("sessionReminders", True),
            "newsUpdates": notifications.get("newsUpdates", False),
        },
        "profile": {
            "email": user.get("email"),
            "phone": user.get("telephone") or "",
            "address": user.get("adresse") or "",
        },
    }


@app.patch("/api/settings/notifications")
def update_notifications(payload: NotificationSettings, user: dict = Depends(get_current_user)):
    update_document("user", str(user["_id"]), {"notifications": payload.model_dump()})
    return {"message": "Notification preferences updated", "updatedSettings": payload.model_dump()}


@app.patch("/api/settings/password")
def change_password(
    payload: ChangePasswordRequest,
    token: str = Depends(bearer_token),
    user: dict = Depends(get_current_user),
):
    if not verify_password(payload.currentPassword, user.get("password_hash", "")):
        raise HTTPException(status_code=400, detail="Current password is incorrect")

    user_id = str(user["_id"])
    update_document("user", user_id, {
        "password_hash": hash_password(payload.newPassword),
        "passwordLastModified": now_utc(),
    })
    get_collection("auth_token").delete_many({"user_id": user_id, "token": {"$ne": token}})
    return {"message": "Password changed"}


@app.patch("/api/settings/two-factor")
def update_two_factor(payload: TwoFactorRequest, user: dict = Depends(get_current_user)):
    update_document("user", str(user["_id"]), {"twoFactorEnabled": payload.enabled})
    return {
        "message": "Two-factor authentication enabled" if payload.enabled else "Two-factor authentication disabled",
        "twoFactorEnabled": payload.enabled,
    }


@app.delete("/api/settings/delete-account")
def delete_account(payload: DeleteAccountRequest, user: dict = Depends(get_current_user)):
    if payload.confirmation != DELETE_CONFIRMATION:
        raise HTTPException(status_code=400, detail=f"Type exactly '{DELETE_CONFIRMATION}' to confirm")

    user_id = str(user["_id"])
    get_collection("user").delete_one({"_id": user["_id"]})
    get_collection("auth_token").delete_many({"user_id": user_id})
    removed = get_collection("session").delete_many({"studentId": user_id}).deleted_count
    logger.info(f"Account {user.get('email')} deleted with {removed} session(s)")
    return {"message": "Account deleted"}


# -------------------- Admin dashboard --------------------
def _time_ago(when: Optional[datetime], now: datetime) -> str:
    seconds = int((now - as_utc(when)).total_seconds()) if when else 0
    days, hours, minutes = seconds // 86400, seconds // 3600, seconds // 60
    if days > 0:
        return f"Il y a {days} jour{'s' if days > 1 else ''}"
    if hours > 0:
        return f"Il y a {hours} heure{'s' if hours > 1 else ''}"
    if minutes > 0:
        return f"Il y a {minutes} minute{'s' if minutes > 1 else ''}"
    return "À l'instant"


def _month_start(now: datetime, months_back: int = 0) -> datetime:
    year, month = now.year, now.month - months_back
    while month < 1:
        year, month = year - 1, month + 12
    return datetime(year, month, 1, tzinfo=timezone.utc)


def _account_label(user: dict) -> str:
    return {"en attente": "En attente", "suspendu": "Suspendu"}.get(user.get("statut"), "Actif")


def _account_stats(users: List[dict], now: datetime) -> dict:
    this_month = _month_start(now)
    last_month = _month_start(now, 1)

    def created(user):
        return as_utc(user.get("createdAt"))

    def new_this_month(group):
        return [u for u in group if created(u) and created(u) >= this_month]

    instructors = [u for u in users if u.get("role") == policy.ROLE_INSTRUCTOR]
    students = [u for u in users if u.get("role") == policy.ROLE_STUDENT]
    active = [u for u in users if u.get("statut") in ("actif", "en formation")]
    pending = [u for u in users if u.get("statut") == "en attente"]
    created_last_month = [u for u in users if created(u) and last_month <= created(u) < this_month]

    new_instructors = len(new_this_month(instructors))
    new_students = len(new_this_month(students))
    if created_last_month:
        growth = f"{round((len(active) / len(created_last_month) - 1) * 100):+d}% vs last month"
    else:
        growth = "+0% vs last month"

    return {
        "moniteursActifs": {
            "total": len(instructors),
            "evolution": f"+{new_instructors} this month" if new_instructors else "None new this month",
            "trend": "up" if new_instructors else "stable",
        },
        "elevesInscrits": {
            "total": len(students),
            "evolution": f"+{new_students} this month" if new_students else "None new this month",
            "trend": "up" if new_students else "stable",
        },
        "comptesActifs": {
            "total": len(active),
            "evolution": growth,
            "trend": "up" if len(active) > len(created_last_month) else "stable",
        },
        "enAttente": {
            "total": len(pending),
            "status": "Needs attention" if pending else "No pending request",
            "priority": "high" if len(pending) > 3 else "medium" if pending else "low",
        },
    }


def _recent_accounts(limit: int, now: datetime) -> List[dict]:
    return [
        {
            "id": str(doc["_id"]),
            "nom": doc.get("nom") or "Utilisateur",
            "email": doc.get("email") or "",
            "role": doc.get("role") or policy.ROLE_STUDENT,
            "status": _account_label(doc),
            "createdAt": doc.get("createdAt"),
            "timeAgo": _time_ago(doc.get("createdAt"), now),
            "initials": _initials(doc.get("nom"), default="U"),
            "profileImageUrl": doc.get("profileImageUrl"),
        }
        for doc in get_documents("user", sort=[("createdAt", -1)], limit=limit)
    ]


@app.get("/api/dashboard/stats")
def dashboard_stats(user: dict = Depends(require("dashboard:admin"))):
    return _account_stats(get_documents("user"), now_utc())


@app.get("/api/dashboard/recent-accounts")
def dashboard_recent_accounts(
    limit: int = Query(10, ge=1, le=50),
    user: dict = Depends(require("dashboard:admin")),
):
    return {"accounts": _recent_accounts(limit, now_utc())}


@app.get("/api/dashboard/summary")
def dashboard_summary(user: dict = Depends(require("dashboard:admin"))):
    now = now_utc()
    return {
        "stats": _account_stats(get_documents("user"), now),
        "recentAccounts": _recent_accounts(5, now),
        "lastUpdated": now,
    }


# -------------------- Student progress --------------------
PROGRESS_TRACKS = [
    ("code", "Code théorique", 40, "green"),
    ("conduite", "Conduite pratique", 50, "blue"),
    ("autoroute", "Conduite autoroute", 20, "orange"),
]


class ExamResultRequest(BaseModel):
    studentId: str
    type: Literal["code", "conduite"] = "code"
    result: Literal["passed", "failed"]
    score: Optional[float] = Field(None, ge=0)


def _course_time(course: dict) -> Optional[datetime]:
    try:
        return as_utc(datetime.fromisoformat(course.get("schedule") or ""))
    except ValueError:
        return None


@app.post("/api/exam-results", status_code=201)
def record_exam_result(payload: ExamResultRequest, user: dict = Depends(require("exam_result:write"))):
    _load_student(payload.studentId)
    result_id = create_document("exam_result", ExamResult(**payload.model_dump()))
    return {"id": result_id}


@app.get("/api/student/progress")
def student_progress(user: dict = Depends(require("student:self"))):
    hours = {track: 0.0 for track, _, _, _ in PROGRESS_TRACKS}
    for course in get_documents("course", {"studentId": str(user["_id"]), "status": "completed"}):
        kind = course.get("type") or "conduite"
        if kind in hours:
            hours[kind] += course.get("duration") or 1
    return {
        "progress": [
            {
                "category": label,
                "type": track,
                "percentage": min(round(hours[track] / total * 100), 100),
                "completedHours": hours[track],
                "totalHours": total,
                "color": color,
            }
            for track, label, total, color in PROGRESS_TRACKS
        ]
    }


@app.get("/api/student/statistics")
def student_statistics(user: dict = Depends(require("student:self"))):
    uid = str(user["_id"])
    courses = get_documents("course", {"studentId": uid})
    results = get_documents("exam_result", {"studentId": uid})

    total_hours = sum(c.get("duration") or 1 for c in courses)
    driving_hours = sum(c.get("duration") or 1 for c in courses if c.get("type") in ("conduite", "autoroute"))
    passed = sum(1 for r in results if r.get("result") == "passed")
    return {
        "statistics": {
            "totalHours": {"value": total_hours, "label": "Heures totales"},
            "codeTests": {"value": sum(1 for r in results if r.get("type") == "code"), "label": "Tests code"},
            "drivingHours": {"value": driving_hours, "label": "H. conduite"},
            "successRate": {
                "value": round(passed / len(results) * 100) if results else 0,
                "label": "Réussite",
                "unit": "%",
            },
        }
    }


@app.get("/api/student/activity")
def student_activity(
    limit: int = Query(5, ge=1, le=20),
    user: dict = Depends(require("student:self")),
):
    uid = str(user["_id"])
    now = now_utc()
    activities = []

    for course in get_documents("course", {"studentId": uid}, sort=[("schedule", -1)], limit=limit):
        when = _course_time(course) or now
        done = course.get("status") == "completed"
        activities.append({
            "id": str(course["_id"]),
            "type": "lesson_completed" if done else "lesson_scheduled",
            "title": "Cours de conduite terminé" if done else "Cours programmé",
            "timestamp": when,
            "timeAgo": _time_ago(when, now),
            "icon": "minus" if done else "dot",
            "color": "blue" if done else "orange",
        })

    for result in get_documents("exam_result", {"studentId": uid}, sort=[("createdAt", -1)], limit=limit):
        when = as_utc(result.get("createdAt")) or now
        passed = result.get("result") == "passed"
        activities.append({
            "id": str(result["_id"]),
            "type": "test_passed" if passed else "test_failed",
            "title": "Test code réussi" if passed else "Test code échoué",
            "timestamp": when,
            "timeAgo": _time_ago(when, now),
            "icon": "check",
            "color": "green" if passed else "red",
        })

    activities.sort(key=lambda a: a["timestamp"], reverse=True)
    return {"activities": activities[:limit]}


if __name__ == "__main__":
    import uvicorn
    port = int(os.getenv("PORT", 8000))
    uvicorn.run(app, host="0.0.0.0", port=port)
