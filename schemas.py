"""
Database Schemas for the Learning Portal

Each top-level Pydantic model corresponds to a MongoDB collection. The collection name is the
lowercase of the class name (e.g., Enrollment -> "enrollment"). Embedded models (modules, notes,
questions, results) live inside their parent document.

Validation here doubles as the save hook: every write goes through ``database.validate_document``,
so derived fields are recomputed by the ``model_validator``s below.
"""
import re
from datetime import datetime, timezone
from typing import Optional, Literal, List

from bson import ObjectId
from pydantic import BaseModel, ConfigDict, EmailStr, Field, field_validator, model_validator

Role = Literal["student", "admin"]
Category = Literal["Programming", "Data Science", "Mathematics", "Business", "Design", "Other"]
Level = Literal["Beginner", "Intermediate", "Advanced"]
Grade = Literal["A+", "A", "B+", "B", "C+", "C", "D", "F"]

YOUTUBE_URL = re.compile(r"^(https?://)?(www\.)?(youtube\.com|youtu\.be)/.+")
HTTP_URL = re.compile(r"^https?://.+")


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _new_id() -> str:
    return str(ObjectId())


class User(BaseModel):
    model_config = ConfigDict(extra="allow")

    username: str = Field(..., min_length=1, description="Login name")
    email: EmailStr = Field(..., description="Email address")
    password_hash: str = Field(..., description="Password hash")
    first_name: str = Field("", description="Given name")
    last_name: str = Field("", description="Family name")
    role: Role = Field("student", description="User role")
    approved: bool = Field(False, description="Whether an admin approved the account")
    active: bool = Field(True, description="Inactive users are left out of analytics")
    enrolled_courses: List[str] = Field(default_factory=list, description="Course ids granted at approval time")
    approved_by: Optional[str] = None
    approved_at: Optional[datetime] = None
    avatar_url: Optional[str] = Field(None, description="Profile avatar URL")

    @field_validator("enrolled_courses")
    @classmethod
    def check_course_ids(cls, v: List[str]) -> List[str]:
        bad = [c for c in v if not ObjectId.is_valid(c)]
        if bad:
            raise ValueError(f"Invalid course id: {', '.join(bad)}")
        return v


class Completion(BaseModel):
    user_id: str
    completed_at: datetime = Field(default_factory=_utcnow)


class Module(BaseModel):
    id: str = Field(default_factory=_new_id)
    title: str = Field(..., min_length=1)
    description: Optional[str] = None
    youtube_url: str
    duration: int = Field(..., ge=1, description="Minutes")
    order_index: int = Field(0, ge=0)
    completed_by: List[Completion] = Field(default_factory=list, description="Completion audit log")

    @field_validator("youtube_url")
    @classmethod
    def check_youtube_url(cls, v: str) -> str:
        if not YOUTUBE_URL.match(v):
            raise ValueError("Please provide a valid YouTube URL")
        return v


class Note(BaseModel):
    id: str = Field(default_factory=_new_id)
    title: str = Field(..., min_length=1)
    pdf_url: str
    file_size: str = "Unknown"

    @field_validator("pdf_url")
    @classmethod
    def check_pdf_url(cls, v: str) -> str:
        if not HTTP_URL.match(v):
            raise ValueError("Please provide a valid PDF URL")
        return v


class Course(BaseModel):
    model_config = ConfigDict(extra="allow")

    title: str = Field(..., min_length=1)
    description: Optional[str] = None
    category: Category = "Other"
    thumbnail: Optional[str] = None
    instructor_id: Optional[str] = Field(None, description="Admin user id")
    modules: List[Module] = Field(default_factory=list)
    notes: List[Note] = Field(default_factory=list)
    duration: int = Field(0, description="Sum of module durations")
    is_active: bool = True
    price: float = Field(0, ge=0)
    level: Level = "Beginner"

    @field_validator("thumbnail")
    @classmethod
    def check_thumbnail(cls, v: Optional[str]) -> Optional[str]:
        if v is not None and not HTTP_URL.match(v):
            raise ValueError("Please provide a valid image URL")
        return v

    @model_validator(mode="after")
    def total_duration(self):
        self.duration = sum(m.duration for m in self.modules)
        return self


class Enrollment(BaseModel):
    model_config = ConfigDict(extra="allow")

    student_id: str
    course_id: str
    progress: int = Field(0, ge=0, le=100)
    completed_modules: List[str] = Field(default_factory=list)
    enrollment_date: datetime = Field(default_factory=_utcnow)
    completion_date: Optional[datetime] = None
    is_completed: bool = False

    @model_validator(mode="after")
    def completion_state(self):
        if self.progress >= 100:
            if not self.is_completed or self.completion_date is None:
                self.is_completed = True
                self.completion_date = _utcnow()
        else:
            self.is_completed = False
            self.completion_date = None
        return self


class Question(BaseModel):
    question: str = Field(..., min_length=1)
    options: List[str] = Field(default_factory=list)
    correct_answer: int = Field(..., ge=0)
    explanation: Optional[str] = None
    points: int = Field(1, ge=0)


class Answer(BaseModel):
    question_index: int
    selected_answer: Optional[str] = None
    is_correct: Optional[bool] = None


class TestResult(BaseModel):
    student_id: str
    score: float = Field(..., ge=0)
    max_score: float = Field(..., ge=1)
    grade: Grade
    answers: List[Answer] = Field(default_factory=list)
    completed_at: datetime = Field(default_factory=_utcnow)


class Test(BaseModel):
    model_config = ConfigDict(extra="allow")

    title: str = Field(..., min_length=1)
    description: Optional[str] = None
    course_id: str
    questions: List[Question] = Field(default_factory=list)
    time_limit: int = Field(60, ge=1, description="Minutes")
    max_score: float = 100
    passing_score: float = Field(60, ge=0, le=100)
    attempts: int = Field(3, ge=1)
    is_active: bool = True
    results: List[TestResult] = Field(default_factory=list)

    @model_validator(mode="after")
    def total_points(self):
        if self.questions:
            self.max_score = sum(q.points for q in self.questions)
        return self
