import mongomock
import pytest
from fastapi.testclient import TestClient

import main
import schemas
from database import create_document, ensure_indexes

YOUTUBE = "https://www.youtube.com/watch?v=lesson{}"


@pytest.fixture
def mongo_db():
    database = mongomock.MongoClient().db
    ensure_indexes(database)
    return database


@pytest.fixture
def client(mongo_db, monkeypatch):
    monkeypatch.setattr(main, "db", mongo_db)
    return TestClient(main.app)


@pytest.fixture
def make_user(mongo_db):
    def _make(username, role="student", approved=True, enrolled_courses=None, **extra):
        return create_document(mongo_db, "user", schemas.User, {
            "username": username,
            "email": f"{username}@school.edu",
            "password_hash": "not-a-real-hash",
            "first_name": username.capitalize(),
            "last_name": "Tester",
            "role": role,
            "approved": approved,
            "enrolled_courses": enrolled_courses or [],
            **extra,
        })
    return _make


@pytest.fixture
def make_course(mongo_db):
    def _make(title="Python Basics", modules=4, duration=10, **extra):
        return create_document(mongo_db, "course", schemas.Course, {
            "title": title,
            "modules": [
                {"title": f"Lesson {i + 1}", "youtube_url": YOUTUBE.format(i), "duration": duration, "order_index": i}
                for i in range(modules)
            ],
            **extra,
        })
    return _make


@pytest.fixture
def make_enrollment(mongo_db):
    def _make(student, course, **extra):
        return create_document(mongo_db, "enrollment", schemas.Enrollment, {
            "student_id": str(student["_id"]),
            "course_id": str(course["_id"]),
            **extra,
        })
    return _make


@pytest.fixture
def make_test(mongo_db):
    def _make(course, **extra):
        return create_document(mongo_db, "test", schemas.Test, {
            "title": "Quiz",
            "course_id": str(course["_id"]),
            **extra,
        })
    return _make


@pytest.fixture
def admin(make_user):
    return make_user("admin", role="admin")


@pytest.fixture
def student(make_user):
    return make_user("alice")


def auth(user):
    return {"Authorization": f"Bearer {main.create_token(user)}"}
