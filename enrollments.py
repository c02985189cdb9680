"""
Enrollment records and their reconciliation with ``user.enrolled_courses``.

Approval grants course access through ``enrolled_courses`` without creating an
enrollment row, so the two can drift apart. ``sync_enrollments`` is the repair
step: it creates the missing rows and never deletes any.
"""
import logging
from typing import Any, Dict, List

from bson import ObjectId
from pymongo.errors import DuplicateKeyError

import schemas
from database import create_document, oid
from errors import InvalidState, NotFound

logger = logging.getLogger(__name__)


def accessible_course_ids(db, user: dict) -> List[str]:
    """Union of ``enrolled_courses`` and the courses the user has enrollment rows for."""
    ids = [str(c) for c in user.get("enrolled_courses") or []]
    for e in db["enrollment"].find({"student_id": str(user["_id"])}, {"course_id": 1}):
        if e["course_id"] not in ids:
            ids.append(e["course_id"])
    return ids


def _new_enrollment(db, student_id: str, course_id: str) -> Dict[str, Any]:
    return create_document(
        db,
        "enrollment",
        schemas.Enrollment,
        {"student_id": student_id, "course_id": course_id, "progress": 0, "completed_modules": []},
    )


def enroll(db, user: dict, course_id: str) -> Dict[str, Any]:
    """Self-enrollment; returns the existing row when there is one."""
    if not db["course"].find_one({"_id": oid(course_id)}):
        raise NotFound("Course not found")
    student_id = str(user["_id"])
    existing = db["enrollment"].find_one({"student_id": student_id, "course_id": course_id})
    if existing:
        return {"message": "Already enrolled", "enrollment": existing}
    enrollment = _new_enrollment(db, student_id, course_id)
    logger.info("Enrollment created for %s in course %s", student_id, course_id)
    return {"message": "Enrollment created successfully", "enrollment": enrollment}


def create_enrollment(db, student_id: str, course_id: str) -> Dict[str, Any]:
    if not db["user"].find_one({"_id": oid(student_id)}):
        raise NotFound("Student not found")
    if not db["course"].find_one({"_id": oid(course_id)}):
        raise NotFound("Course not found")
    if db["enrollment"].find_one({"student_id": student_id, "course_id": course_id}):
        raise InvalidState("Already enrolled in this course")
    try:
        return _new_enrollment(db, student_id, course_id)
    except DuplicateKeyError:
        raise InvalidState("Already enrolled in this course")


def sync_enrollments(db, user: dict) -> Dict[str, Any]:
    """Create an enrollment for every granted course that lacks one.

    Grants pointing at no course document are skipped and counted.
    """
    student_id = str(user["_id"])
    created = []
    skipped = []
    for course_id in user.get("enrolled_courses") or []:
        course_id = str(course_id)
        if db["enrollment"].find_one({"student_id": student_id, "course_id": course_id}):
            continue
        if not ObjectId.is_valid(course_id) or not db["course"].find_one({"_id": ObjectId(course_id)}):
            skipped.append(course_id)
            continue
        try:
            created.append(_new_enrollment(db, student_id, course_id))
        except DuplicateKeyError:
            # created by a concurrent sync
            continue
    if skipped:
        logger.warning("Skipped granted courses with no course document for %s: %s", student_id, skipped)
    logger.info("Synced enrollments for %s: %d created", student_id, len(created))
    return {
        "message": "Enrollments synced successfully",
        "created": len(created),
        "skipped": len(skipped),
        "enrollments": created,
    }


def course_students(db, course_id: str) -> List[Dict[str, Any]]:
    """Students with access to a course, through an enrollment row or ``enrolled_courses``."""
    seen = set()
    students = []
    enrolled_ids = [oid(e["student_id"]) for e in db["enrollment"].find({"course_id": course_id})]
    by_enrollment = db["user"].find({"_id": {"$in": enrolled_ids}, "role": "student"}) if enrolled_ids else []
    by_grant = db["user"].find({"enrolled_courses": course_id, "role": "student", "approved": True})
    for group in (by_enrollment, by_grant):
        for u in group:
            if u["_id"] in seen:
                continue
            seen.add(u["_id"])
            students.append(u)
    return students
