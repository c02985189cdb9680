"""
Analytics over enrollments and test results.

Everything is computed by scanning the collections at request time; there is
no cached or incrementally maintained aggregate. Averages are rounded half up
to whole percentages and are 0 for empty input.
"""
from typing import Any, Dict, Iterable, List

from bson import ObjectId

from database import get_documents, oid
from errors import NotFound
from progress import round_half_up


def _mean(values: List[float]) -> int:
    if not values:
        return 0
    return round_half_up(sum(values) / len(values))


def result_percentages(results: Iterable[Dict[str, Any]]) -> List[float]:
    return [
        r.get("score", 0) / r["max_score"] * 100
        for r in results
        if r.get("max_score")
    ]


def average_score(results: Iterable[Dict[str, Any]]) -> int:
    return _mean(result_percentages(results))


def overall_progress_average(enrollments: List[Dict[str, Any]]) -> int:
    # enrollment-weighted: one term per enrollment row
    return _mean([e.get("progress") or 0 for e in enrollments])


def completed_count(enrollments: List[Dict[str, Any]]) -> int:
    return sum(1 for e in enrollments if (e.get("progress") or 0) >= 100)


def completion_rate(enrollments: List[Dict[str, Any]]) -> int:
    if not enrollments:
        return 0
    return round_half_up(completed_count(enrollments) / len(enrollments) * 100)


def all_results(tests: Iterable[Dict[str, Any]]) -> List[Dict[str, Any]]:
    return [r for t in tests for r in t.get("results") or []]


def display_name(user: Dict[str, Any]) -> str:
    name = f"{user.get('first_name') or ''} {user.get('last_name') or ''}".strip()
    return name or user.get("username", "")


def student_breakdown(
    students: Iterable[Dict[str, Any]],
    enrollments: List[Dict[str, Any]],
    tests: List[Dict[str, Any]],
) -> List[Dict[str, Any]]:
    """Per-student progress and score averages, each averaged over the student's own rows."""
    results = all_results(tests)
    rows = []
    for student in students:
        sid = str(student["_id"])
        own_enrollments = [e for e in enrollments if e.get("student_id") == sid]
        own_results = [r for r in results if r.get("student_id") == sid]
        if not own_enrollments and not own_results:
            continue
        rows.append({
            "student_id": sid,
            "name": display_name(student),
            "progress": overall_progress_average(own_enrollments),
            "average_score": average_score(own_results),
            "tests_completed": len(own_results),
        })
    return rows


def admin_stats(db) -> Dict[str, Any]:
    enrollments = get_documents(db, "enrollment")
    results = all_results(db["test"].find({}))
    student_ids = {e["student_id"] for e in enrollments if e.get("student_id")}
    active_courses = db["course"].count_documents({"is_active": True})
    return {
        "total_courses": active_courses,
        "active_courses": active_courses,
        "total_students": db["user"].count_documents({"role": "student"}),
        "approved_students": db["user"].count_documents({"role": "student", "approved": True}),
        "students_enrolled": len(enrollments),
        "unique_students_enrolled": len(student_ids),
        "approved_enrolled_students": db["user"].count_documents({
            "role": "student",
            "approved": True,
            "_id": {"$in": [oid(s) for s in student_ids]},
        }),
        "average_score": average_score(results),
        "average_completion": overall_progress_average(enrollments),
        "course_completion_rate": completion_rate(enrollments),
        "completed_courses": completed_count(enrollments),
        "tests_completed": len(results),
    }


def user_stats(db, user: dict) -> Dict[str, Any]:
    tests = get_documents(db, "test", {"is_active": True})
    base = {
        "total_courses": db["course"].count_documents({"is_active": True}),
        "available_tests": len(tests),
        "user_role": user.get("role"),
    }
    if user.get("role") == "admin":
        students = list(db["user"].find({"role": "student", "active": {"$ne": False}}))
        enrollments = get_documents(db, "enrollment")
        return {
            **base,
            "total_students": len(students),
            "average_score": average_score(all_results(tests)),
            "overall_progress_average": overall_progress_average(enrollments),
            "student_progress_data": student_breakdown(students, enrollments, tests),
        }
    uid = str(user["_id"])
    own = [r for r in all_results(tests) if r.get("student_id") == uid]
    return {**base, "average_score": average_score(own)}


def student_summary(db, student_id: str) -> Dict[str, Any]:
    if not db["user"].find_one({"_id": oid(student_id)}):
        raise NotFound("User not found")
    enrollments = get_documents(db, "enrollment", {"student_id": student_id})
    course_ids = [ObjectId(e["course_id"]) for e in enrollments if ObjectId.is_valid(e["course_id"])]
    durations = {
        str(c["_id"]): c.get("duration") or 0
        for c in db["course"].find({"_id": {"$in": course_ids}}, {"duration": 1})
    } if course_ids else {}
    minutes = sum(
        (durations.get(e["course_id"], 0) * (e.get("progress") or 0)) // 100
        for e in enrollments
    )
    results = [r for r in all_results(db["test"].find({"is_active": True})) if r.get("student_id") == student_id]
    return {
        "enrolled_courses": len(enrollments),
        "completed_courses": sum(1 for e in enrollments if e.get("is_completed")),
        "minutes_learned": minutes,
        "average_score": average_score(results),
    }


def platform_stats(db) -> Dict[str, Any]:
    tests = get_documents(db, "test", {"is_active": True})
    return {
        "total_courses": db["course"].count_documents({"is_active": True}),
        "available_tests": len(tests),
        "overall_average_score": average_score(all_results(tests)),
    }
