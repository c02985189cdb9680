"""
Module completion and enrollment progress.

A module completion is recorded in two places: the module's ``completed_by``
audit log inside the course document, and the caller's enrollment
(``completed_modules`` / ``progress``). The two are written one after the
other, course first, without a transaction. If the second write fails the
audit log is ahead of the progress counter until the next toggle recomputes it.
"""
import logging
import math
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Tuple

import schemas
from database import oid, save_document
from errors import AlreadyCompleted, Forbidden, NotFound

logger = logging.getLogger(__name__)


def round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


def compute_progress(completed_modules: List[str], course: Dict[str, Any]) -> int:
    total = len(course.get("modules") or [])
    if total == 0:
        return 0
    return min(100, round_half_up(100 * len(completed_modules) / total))


def find_module(course: Dict[str, Any], module_id: str) -> Optional[Dict[str, Any]]:
    return next((m for m in course.get("modules") or [] if m.get("id") == module_id), None)


def _load(db, course_id: str, module_id: str) -> Tuple[Dict[str, Any], Dict[str, Any]]:
    course = db["course"].find_one({"_id": oid(course_id)})
    if not course:
        raise NotFound("Course not found")
    module = find_module(course, module_id)
    if not module:
        raise NotFound("Module not found")
    return course, module


def _enrollment_for(db, user: dict, course_id: str) -> Optional[Dict[str, Any]]:
    enrollment = db["enrollment"].find_one({"student_id": str(user["_id"]), "course_id": course_id})
    if enrollment is None and user.get("role") != "admin":
        raise Forbidden("Not enrolled in this course")
    return enrollment


def refresh_progress(db, enrollment: Dict[str, Any], course: Dict[str, Any]) -> Dict[str, Any]:
    """Recompute progress from completed modules that still exist in the course and save."""
    module_ids = {m.get("id") for m in course.get("modules") or []}
    completed = []
    for mid in enrollment.get("completed_modules") or []:
        if mid in module_ids and mid not in completed:
            completed.append(mid)
    enrollment["completed_modules"] = completed
    enrollment["progress"] = compute_progress(completed, course)
    return save_document(db, "enrollment", schemas.Enrollment, enrollment)


def refresh_course_enrollments(db, course: Dict[str, Any]) -> int:
    """Recompute every enrollment of ``course`` after its module list changed."""
    count = 0
    for enrollment in db["enrollment"].find({"course_id": str(course["_id"])}):
        refresh_progress(db, enrollment, course)
        count += 1
    if count:
        logger.info("Recomputed progress of %d enrollments in course %s", count, course["_id"])
    return count


def _result(message: str, enrollment: Optional[Dict[str, Any]], module_completed: bool) -> Dict[str, Any]:
    return {
        "message": message,
        "progress": enrollment["progress"] if enrollment else 0,
        "is_completed": bool(enrollment and enrollment.get("is_completed")),
        "module_completed": module_completed,
        "enrollment": enrollment,
    }


def complete_module(db, course_id: str, module_id: str, user: dict) -> Dict[str, Any]:
    course, module = _load(db, course_id, module_id)
    enrollment = _enrollment_for(db, user, course_id)
    user_id = str(user["_id"])

    if any(c.get("user_id") == user_id for c in module.get("completed_by") or []):
        raise AlreadyCompleted()

    module.setdefault("completed_by", []).append(
        {"user_id": user_id, "completed_at": datetime.now(timezone.utc)}
    )
    save_document(db, "course", schemas.Course, course)

    if enrollment is not None:
        completed = enrollment.setdefault("completed_modules", [])
        if module_id not in completed:
            completed.append(module_id)
        enrollment = refresh_progress(db, enrollment, course)

    logger.info(
        "Module %s of course %s completed by %s (progress=%s)",
        module_id, course_id, user_id, enrollment["progress"] if enrollment else "n/a",
    )
    return _result("Module marked as completed", enrollment, True)


def uncomplete_module(db, course_id: str, module_id: str, user: dict) -> Dict[str, Any]:
    course, module = _load(db, course_id, module_id)
    enrollment = _enrollment_for(db, user, course_id)
    user_id = str(user["_id"])

    log = module.get("completed_by") or []
    remaining = [c for c in log if c.get("user_id") != user_id]
    if len(remaining) != len(log):
        module["completed_by"] = remaining
        save_document(db, "course", schemas.Course, course)

    if enrollment is not None:
        enrollment["completed_modules"] = [
            m for m in enrollment.get("completed_modules") or [] if m != module_id
        ]
        enrollment = refresh_progress(db, enrollment, course)

    logger.info("Module %s of course %s uncompleted by %s", module_id, course_id, user_id)
    return _result("Module completion removed", enrollment, False)


def module_completion(db, course_id: str, module_id: str, user: dict) -> Dict[str, Any]:
    _, module = _load(db, course_id, module_id)
    user_id = str(user["_id"])
    entry = next((c for c in module.get("completed_by") or [] if c.get("user_id") == user_id), None)
    return {
        "is_completed": entry is not None,
        "completed_at": entry.get("completed_at") if entry else None,
    }
