import logging
import os
from datetime import datetime, timedelta, timezone
from typing import Optional, List, Any, Dict

import jwt
from fastapi import FastAPI, HTTPException, Depends, Header, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, EmailStr
from passlib.hash import bcrypt
from bson import ObjectId

import enrollments
import grading
import progress
import schemas
import stats
from database import db, create_document, ensure_indexes, new_id, oid, save_document
from errors import Forbidden, InvalidState, NotFound, field_errors

logging.basicConfig(
    level=os.getenv("LOG_LEVEL", "INFO"),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)

app = FastAPI(title="Learning Portal API")

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(RequestValidationError)
async def request_validation_error(request: Request, exc: RequestValidationError):
    return JSONResponse(
        status_code=400,
        content={"detail": {"message": "Invalid request", "errors": field_errors(exc.errors())}},
    )


# ----------------------
# Utils
# ----------------------
SECRET_KEY = os.getenv("SECRET_KEY", "dev-secret-key-change-me")
JWT_EXP_MIN = int(os.getenv("JWT_EXP_MIN", "1440"))


def require_db():
    if db is None:
        raise HTTPException(status_code=500, detail="Database unavailable")
    return db


def serialize_doc(doc: Any) -> Any:
    if isinstance(doc, dict):
        d = {}
        for k, v in doc.items():
            if k == "_id":
                d["id"] = str(v)
            elif k == "password_hash":
                continue
            else:
                d[k] = serialize_doc(v)
        return d
    if isinstance(doc, list):
        return [serialize_doc(v) for v in doc]
    if isinstance(doc, ObjectId):
        return str(doc)
    if isinstance(doc, datetime):
        if doc.tzinfo is None:
            doc = doc.replace(tzinfo=timezone.utc)
        return doc.astimezone(timezone.utc).isoformat()
    return doc


# ----------------------
# Request models
# ----------------------
class RegisterRequest(BaseModel):
    username: str
    email: EmailStr
    password: str
    first_name: str = ""
    last_name: str = ""


class LoginRequest(BaseModel):
    username: str
    password: str


class TokenResponse(BaseModel):
    access_token: str
    token_type: str = "bearer"


class ModuleIn(BaseModel):
    title: str
    description: Optional[str] = None
    youtube_url: str
    duration: int
    order_index: Optional[int] = None


class NoteIn(BaseModel):
    title: str
    pdf_url: str
    file_size: str = "Unknown"


class CourseIn(BaseModel):
    title: str
    description: Optional[str] = None
    category: str = "Other"
    thumbnail: Optional[str] = None
    level: str = "Beginner"
    price: float = 0
    modules: List[ModuleIn] = []
    notes: List[NoteIn] = []


class CourseUpdate(BaseModel):
    title: Optional[str] = None
    description: Optional[str] = None
    category: Optional[str] = None
    thumbnail: Optional[str] = None
    level: Optional[str] = None
    price: Optional[float] = None
    is_active: Optional[bool] = None
    modules: Optional[List[Dict[str, Any]]] = None
    notes: Optional[List[Dict[str, Any]]] = None


class QuestionIn(BaseModel):
    question: str
    options: List[str] = []
    correct_answer: int
    explanation: Optional[str] = None
    points: int = 1


class TestIn(BaseModel):
    title: str
    description: Optional[str] = None
    course_id: str
    questions: List[QuestionIn] = []
    time_limit: int = 60
    passing_score: float = 60
    attempts: int = 3
    max_score: float = 100


class GradeIn(BaseModel):
    student_id: Optional[str] = None
    score: Optional[float] = None
    max_score: Optional[float] = None
    grade: Optional[str] = None
    answers: Optional[List[Dict[str, Any]]] = None


class EnrollmentIn(BaseModel):
    student_id: str
    course_id: str


class ApproveUserRequest(BaseModel):
    course_ids: List[str] = []


class ApprovalUpdate(BaseModel):
    approved: bool
    enrolled_courses: List[str] = []


class SuspendRequest(BaseModel):
    courses_to_remove: List[str]


class CoursesUpdate(BaseModel):
    enrolled_courses: List[str]


# ----------------------
# Auth helpers
# ----------------------

def create_token(user: dict) -> str:
    payload = {
        "sub": str(user["_id"]),
        "username": user.get("username"),
        "role": user.get("role", "student"),
        "exp": datetime.now(timezone.utc) + timedelta(minutes=JWT_EXP_MIN),
    }
    return jwt.encode(payload, SECRET_KEY, algorithm="HS256")


def get_current_user(authorization: Optional[str] = Header(None)) -> dict:
    if not authorization:
        raise HTTPException(status_code=401, detail="Missing Authorization header")
    try:
        scheme, token = authorization.split(" ")
        if scheme.lower() != "bearer":
            raise ValueError("Invalid scheme")
        payload = jwt.decode(token, SECRET_KEY, algorithms=["HS256"])
        user_id = payload.get("sub")
        if not user_id:
            raise ValueError("No sub in token")
        if db is None:
            raise ValueError("Database unavailable")
        user = db["user"].find_one({"_id": ObjectId(user_id)})
        if not user:
            raise ValueError("User not found")
        return user
    except jwt.ExpiredSignatureError:
        raise HTTPException(status_code=401, detail="Token expired")
    except Exception as e:
        logger.warning("Rejected token: %s", e)
        raise HTTPException(status_code=401, detail="Invalid token")


def require_role(user: dict, roles: List[str]):
    if user.get("role") not in roles:
        raise Forbidden("Admin access required" if roles == ["admin"] else "Forbidden")


def require_approved(user: dict):
    if user.get("role") != "admin" and not user.get("approved", False):
        raise Forbidden("Access denied. Your account is pending approval.")


def public_test(test: dict, user: dict) -> dict:
    if user.get("role") == "admin":
        return test
    t = {**test}
    t["questions"] = [{k: v for k, v in q.items() if k != "correct_answer"} for q in test.get("questions") or []]
    t["results"] = [
        {k: v for k, v in r.items() if k != "answers"}
        for r in test.get("results") or []
        if r.get("student_id") == str(user["_id"])
    ]
    return t


# ----------------------
# Startup: indexes and admin seed
# ----------------------
@app.on_event("startup")
def seed_admin():
    # If DB is not configured, skip seeding so the app can start
    if db is None:
        logger.warning("DATABASE_URL/DATABASE_NAME not set; running without a database")
        return
    try:
        ensure_indexes(db)
        admin_username = os.getenv("ADMIN_USERNAME", "admin")
        existing = db["user"].find_one({"role": "admin"})
        if not existing:
            create_document(db, "user", schemas.User, {
                "username": admin_username,
                "email": os.getenv("ADMIN_EMAIL", "admin@portal.com"),
                "password_hash": bcrypt.hash(os.getenv("ADMIN_PASSWORD", "admin123")),
                "first_name": "Admin",
                "last_name": "User",
                "role": "admin",
                "approved": True,
            })
            logger.info("Default admin %s created", admin_username)
    except Exception:
        # don't crash startup on seeding error
        logger.exception("Startup seeding failed")


# ----------------------
# Basic routes
# ----------------------
@app.get("/")
def root():
    return {"message": "Learning Portal API running"}


# ----------------------
# Auth endpoints
# ----------------------
@app.post("/auth/register", status_code=201)
def register(payload: RegisterRequest):
    database = require_db()
    existing = database["user"].find_one({"$or": [{"email": payload.email}, {"username": payload.username}]})
    if existing:
        raise InvalidState("User already exists with this email or username")
    user = create_document(database, "user", schemas.User, {
        "username": payload.username,
        "email": payload.email,
        "password_hash": bcrypt.hash(payload.password),
        "first_name": payload.first_name,
        "last_name": payload.last_name,
        "role": "student",
        "approved": False,
    })
    logger.info("Registered %s, pending approval", payload.username)
    return {"message": "Registration successful! Your account is pending approval.", "user": serialize_doc(user)}


@app.post("/auth/login", response_model=TokenResponse)
def login(payload: LoginRequest):
    database = require_db()
    user = database["user"].find_one({"username": payload.username})
    if not user or not bcrypt.verify(payload.password, user.get("password_hash", "")):
        raise HTTPException(status_code=401, detail="Invalid credentials")
    return TokenResponse(access_token=create_token(user))


@app.get("/me")
def me(current=Depends(get_current_user)):
    return serialize_doc(current)


# ----------------------
# Course catalog
# ----------------------
@app.get("/courses")
def list_courses(category: Optional[str] = None, current=Depends(get_current_user)):
    database = require_db()
    require_approved(current)
    q: Dict[str, Any] = {"is_active": True}
    if category and category != "all":
        q["category"] = category
    if current.get("role") == "student":
        q["_id"] = {"$in": [
            ObjectId(c) for c in enrollments.accessible_course_ids(database, current) if ObjectId.is_valid(c)
        ]}
    return [serialize_doc(c) for c in database["course"].find(q).sort("created_at", -1)]


@app.get("/courses/{course_id}")
def get_course(course_id: str, current=Depends(get_current_user)):
    database = require_db()
    require_approved(current)
    course = database["course"].find_one({"_id": oid(course_id)})
    if not course:
        raise NotFound("Course not found")
    if current.get("role") == "student" and course_id not in enrollments.accessible_course_ids(database, current):
        raise Forbidden("Access denied. You are not enrolled in this course.")
    return serialize_doc(course)


@app.post("/courses", status_code=201)
def create_course(body: CourseIn, current=Depends(get_current_user)):
    database = require_db()
    require_role(current, ["admin"])
    data = body.model_dump()
    for i, m in enumerate(data["modules"]):
        if m.get("order_index") is None:
            m["order_index"] = i
    course = create_document(database, "course", schemas.Course, {**data, "instructor_id": str(current["_id"])})
    logger.info("Course %s created", course["_id"])
    return serialize_doc(course)


@app.put("/courses/{course_id}")
def update_course(course_id: str, body: CourseUpdate, current=Depends(get_current_user)):
    database = require_db()
    require_role(current, ["admin"])
    course = database["course"].find_one({"_id": oid(course_id)})
    if not course:
        raise NotFound("Course not found")
    course.update({k: v for k, v in body.model_dump().items() if v is not None})
    course = save_document(database, "course", schemas.Course, course)
    if body.modules is not None:
        progress.refresh_course_enrollments(database, course)
    return serialize_doc(course)


@app.delete("/courses/{course_id}")
def delete_course(course_id: str, current=Depends(get_current_user)):
    database = require_db()
    require_role(current, ["admin"])
    course = database["course"].find_one({"_id": oid(course_id)})
    if not course:
        raise NotFound("Course not found")
    # soft delete: enrollments and tests keep referencing the course
    database["course"].update_one(
        {"_id": course["_id"]},
        {"$set": {"is_active": False, "updated_at": datetime.now(timezone.utc)}},
    )
    return {"message": "Course deleted successfully"}


@app.post("/courses/{course_id}/modules")
def add_module(course_id: str, body: ModuleIn, current=Depends(get_current_user)):
    database = require_db()
    require_role(current, ["admin"])
    course = database["course"].find_one({"_id": oid(course_id)})
    if not course:
        raise NotFound("Course not found")
    module = body.model_dump()
    module["id"] = new_id()
    if module.get("order_index") is None:
        module["order_index"] = len(course.get("modules") or [])
    course.setdefault("modules", []).append(module)
    course = save_document(database, "course", schemas.Course, course)
    progress.refresh_course_enrollments(database, course)
    return serialize_doc(course)


@app.post("/courses/{course_id}/notes")
def add_note(course_id: str, body: NoteIn, current=Depends(get_current_user)):
    database = require_db()
    require_role(current, ["admin"])
    course = database["course"].find_one({"_id": oid(course_id)})
    if not course:
        raise NotFound("Course not found")
    course.setdefault("notes", []).append({**body.model_dump(), "id": new_id()})
    return serialize_doc(save_document(database, "course", schemas.Course, course))


@app.get("/courses/{course_id}/modules")
def list_modules(course_id: str, current=Depends(get_current_user)):
    database = require_db()
    course = database["course"].find_one({"_id": oid(course_id)})
    if not course:
        raise NotFound("Course not found")
    modules = sorted(course.get("modules") or [], key=lambda m: m.get("order_index", 0))
    return serialize_doc(modules)


@app.get("/courses/{course_id}/notes")
def list_notes(course_id: str, current=Depends(get_current_user)):
    database = require_db()
    course = database["course"].find_one({"_id": oid(course_id)})
    if not course:
        raise NotFound("Course not found")
    return serialize_doc(course.get("notes") or [])


# ----------------------
# Module completion
# ----------------------
def _completion_response(res: Dict[str, Any]) -> Dict[str, Any]:
    return serialize_doc({k: v for k, v in res.items() if k != "enrollment"})


@app.post("/courses/{course_id}/modules/{module_id}/complete")
def complete_module(course_id: str, module_id: str, current=Depends(get_current_user)):
    database = require_db()
    return _completion_response(progress.complete_module(database, course_id, module_id, current))


@app.delete("/courses/{course_id}/modules/{module_id}/complete")
def uncomplete_module(course_id: str, module_id: str, current=Depends(get_current_user)):
    database = require_db()
    return _completion_response(progress.uncomplete_module(database, course_id, module_id, current))


@app.get("/courses/{course_id}/modules/{module_id}/completion")
def module_completion(course_id: str, module_id: str, current=Depends(get_current_user)):
    database = require_db()
    return serialize_doc(progress.module_completion(database, course_id, module_id, current))


# ----------------------
# Enrollment endpoints
# ----------------------
@app.get("/student/enrollments")
def student_enrollments(current=Depends(get_current_user)):
    database = require_db()
    require_role(current, ["student"])
    return [serialize_doc(e) for e in database["enrollment"].find({"student_id": str(current["_id"])})]


@app.post("/student/enroll/{course_id}")
def student_enroll(course_id: str, current=Depends(get_current_user)):
    database = require_db()
    require_role(current, ["student"])
    return serialize_doc(enrollments.enroll(database, current, course_id))


@app.post("/student/sync-enrollments")
def sync_enrollments(current=Depends(get_current_user)):
    database = require_db()
    require_role(current, ["student"])
    return serialize_doc(enrollments.sync_enrollments(database, current))


@app.post("/admin/users/{user_id}/sync-enrollments")
def admin_sync_enrollments(user_id: str, current=Depends(get_current_user)):
    database = require_db()
    require_role(current, ["admin"])
    student = database["user"].find_one({"_id": oid(user_id)})
    if not student:
        raise NotFound("User not found")
    return serialize_doc(enrollments.sync_enrollments(database, student))


@app.post("/enrollments", status_code=201)
def create_enrollment(body: EnrollmentIn, current=Depends(get_current_user)):
    database = require_db()
    require_role(current, ["admin"])
    return serialize_doc(enrollments.create_enrollment(database, body.student_id, body.course_id))


@app.get("/users/{user_id}/enrollments")
def user_enrollments(user_id: str, current=Depends(get_current_user)):
    database = require_db()
    if current.get("role") != "admin" and str(current["_id"]) != user_id:
        raise Forbidden("Access denied")
    return [serialize_doc(e) for e in database["enrollment"].find({"student_id": user_id})]


# ----------------------
# Tests and grading
# ----------------------
@app.get("/tests")
def list_tests(course_id: Optional[str] = None, current=Depends(get_current_user)):
    database = require_db()
    q: Dict[str, Any] = {"is_active": True}
    if course_id:
        q["course_id"] = course_id
    return [serialize_doc(public_test(t, current)) for t in database["test"].find(q)]


@app.get("/tests/{test_id}")
def get_test(test_id: str, current=Depends(get_current_user)):
    database = require_db()
    test = database["test"].find_one({"_id": oid(test_id)})
    if not test:
        raise NotFound("Test not found")
    return serialize_doc(public_test(test, current))


@app.post("/tests", status_code=201)
def create_test(body: TestIn, current=Depends(get_current_user)):
    database = require_db()
    require_role(current, ["admin"])
    if not database["course"].find_one({"_id": oid(body.course_id)}):
        raise NotFound("Course not found")
    return serialize_doc(create_document(database, "test", schemas.Test, body.model_dump()))


@app.put("/tests/{test_id}")
def update_test(test_id: str, body: TestIn, current=Depends(get_current_user)):
    database = require_db()
    require_role(current, ["admin"])
    test = database["test"].find_one({"_id": oid(test_id)})
    if not test:
        raise NotFound("Test not found")
    # results are only written through grading
    test.update(body.model_dump())
    return serialize_doc(save_document(database, "test", schemas.Test, test))


@app.delete("/tests/{test_id}")
def delete_test(test_id: str, current=Depends(get_current_user)):
    database = require_db()
    require_role(current, ["admin"])
    res = database["test"].delete_one({"_id": oid(test_id)})
    if res.deleted_count == 0:
        raise NotFound("Test not found")
    return {"message": "Test deleted successfully"}


@app.post("/tests/{test_id}/results")
def grade_test(test_id: str, body: GradeIn, current=Depends(get_current_user)):
    database = require_db()
    require_role(current, ["admin"])
    test = grading.record_result(
        database,
        test_id,
        student_id=body.student_id,
        score=body.score,
        grade=body.grade,
        max_score=body.max_score,
        answers=body.answers,
    )
    return {"message": "Grade saved successfully", "test": serialize_doc(test)}


@app.get("/student/my-results")
def my_results(current=Depends(get_current_user)):
    database = require_db()
    require_role(current, ["student"])
    course_ids = enrollments.accessible_course_ids(database, current)
    tests = list(database["test"].find({"is_active": True, "course_id": {"$in": course_ids}}))
    rows = grading.results_for_student(tests, str(current["_id"]))
    return [
        serialize_doc({
            "test_id": r["test_id"],
            "test_title": r["test_title"],
            "course_id": r["course_id"],
            "max_score": r["max_score"],
            "score": r["result"]["score"],
            "grade": r["result"]["grade"],
            "completed_at": r["result"]["completed_at"],
        })
        for r in rows
        if r["result"]
    ]


@app.get("/students/{student_id}/test-results")
def student_test_results(student_id: str, current=Depends(get_current_user)):
    database = require_db()
    if current.get("role") != "admin" and str(current["_id"]) != student_id:
        raise Forbidden("Access denied")
    tests = list(database["test"].find({"is_active": True}))
    return serialize_doc(grading.results_for_student(tests, student_id))


# ----------------------
# Statistics
# ----------------------
@app.get("/platform/stats")
def platform_stats():
    database = require_db()
    return stats.platform_stats(database)


@app.get("/user/stats")
def user_stats(current=Depends(get_current_user)):
    database = require_db()
    return stats.user_stats(database, current)


@app.get("/users/{user_id}/stats")
def student_stats(user_id: str, current=Depends(get_current_user)):
    database = require_db()
    if current.get("role") == "student" and str(current["_id"]) != user_id:
        raise Forbidden("Access denied")
    return stats.student_summary(database, user_id)


@app.get("/admin/stats")
def admin_stats(current=Depends(get_current_user)):
    database = require_db()
    require_role(current, ["admin"])
    return stats.admin_stats(database)


# ----------------------
# Admin endpoints
# ----------------------
@app.get("/admin/users")
def list_users(current=Depends(get_current_user)):
    database = require_db()
    require_role(current, ["admin"])
    return [serialize_doc(u) for u in database["user"].find().sort("created_at", -1)]


@app.get("/admin/pending-approvals")
def pending_approvals(current=Depends(get_current_user)):
    database = require_db()
    require_role(current, ["admin"])
    return [serialize_doc(u) for u in database["user"].find({"approved": False, "role": "student"})]


def _get_user(database, user_id: str) -> dict:
    user = database["user"].find_one({"_id": oid(user_id)})
    if not user:
        raise NotFound("User not found")
    return user


def _check_course_ids(database, course_ids: List[str]) -> List[str]:
    bad = [c for c in course_ids if not ObjectId.is_valid(c)]
    if bad:
        raise InvalidState(f"Invalid course id: {', '.join(bad)}")
    found = {
        str(c["_id"])
        for c in database["course"].find({"_id": {"$in": [ObjectId(c) for c in course_ids]}}, {"_id": 1})
    }
    missing = [c for c in course_ids if c not in found]
    if missing:
        raise NotFound(f"Course not found: {', '.join(missing)}")
    return course_ids


@app.post("/admin/approve-user/{user_id}")
def approve_user(user_id: str, body: ApproveUserRequest, current=Depends(get_current_user)):
    database = require_db()
    require_role(current, ["admin"])
    user = _get_user(database, user_id)
    user.update({
        "approved": True,
        "approved_by": str(current["_id"]),
        "approved_at": datetime.now(timezone.utc),
        "enrolled_courses": _check_course_ids(database, body.course_ids),
    })
    user = save_document(database, "user", schemas.User, user)
    logger.info("User %s approved with %d courses", user_id, len(body.course_ids))
    return {"message": "User approved successfully", "user": serialize_doc(user)}


@app.post("/admin/reject-user/{user_id}")
def reject_user(user_id: str, current=Depends(get_current_user)):
    database = require_db()
    require_role(current, ["admin"])
    user = _get_user(database, user_id)
    if user.get("approved"):
        raise InvalidState("Only pending signups can be rejected")
    database["user"].delete_one({"_id": user["_id"]})
    logger.info("Pending user %s rejected and removed", user_id)
    return {"message": "User rejected and removed"}


@app.put("/admin/users/{user_id}/approval")
def set_approval(user_id: str, body: ApprovalUpdate, current=Depends(get_current_user)):
    database = require_db()
    require_role(current, ["admin"])
    user = _get_user(database, user_id)
    user["approved"] = body.approved
    if body.approved and body.enrolled_courses:
        user["enrolled_courses"] = _check_course_ids(database, body.enrolled_courses)
    user = save_document(database, "user", schemas.User, user)
    verb = "approved and enrolled in courses" if body.approved else "rejected"
    return {"message": f"User {verb} successfully", "user": serialize_doc(user)}


@app.put("/admin/users/{user_id}/suspend")
def suspend_user(user_id: str, body: SuspendRequest, current=Depends(get_current_user)):
    database = require_db()
    require_role(current, ["admin"])
    user = _get_user(database, user_id)
    # access is revoked; enrollment rows and their progress are kept
    user["enrolled_courses"] = [c for c in user.get("enrolled_courses") or [] if c not in body.courses_to_remove]
    user = save_document(database, "user", schemas.User, user)
    return {"message": "User suspended from selected courses successfully", "user": serialize_doc(user)}


@app.put("/admin/users/{user_id}/courses")
def set_user_courses(user_id: str, body: CoursesUpdate, current=Depends(get_current_user)):
    database = require_db()
    require_role(current, ["admin"])
    user = _get_user(database, user_id)
    user["enrolled_courses"] = _check_course_ids(database, body.enrolled_courses)
    user = save_document(database, "user", schemas.User, user)
    return {"message": "User courses updated successfully", "user": serialize_doc(user)}


@app.get("/admin/student-results")
def admin_student_results(current=Depends(get_current_user)):
    database = require_db()
    require_role(current, ["admin"])
    tests = list(database["test"].find({"is_active": True}))
    out = []
    for student in database["user"].find({"role": "student", "active": {"$ne": False}}):
        rows = grading.results_for_student(tests, str(student["_id"]))
        if any(r["result"] for r in rows):
            out.append({"student": serialize_doc(student), "test_results": serialize_doc(rows)})
    return out


@app.get("/admin/course/{course_id}/students")
def admin_course_students(course_id: str, current=Depends(get_current_user)):
    database = require_db()
    require_role(current, ["admin"])
    return [serialize_doc(s) for s in enrollments.course_students(database, course_id)]


if __name__ == "__main__":
    import uvicorn
    port = int(os.getenv("PORT", 8000))
    uvicorn.run(app, host="0.0.0.0", port=port)
