"""Admin grading: one result per (test, student), replaced in place on re-grade."""
import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

import schemas
from database import oid, save_document
from errors import InvalidState, NotFound

logger = logging.getLogger(__name__)


def record_result(
    db,
    test_id: str,
    student_id: Optional[str],
    score: Optional[float],
    grade: Optional[str],
    max_score: Optional[float] = None,
    answers: Optional[List[Dict[str, Any]]] = None,
) -> Dict[str, Any]:
    if not student_id or score is None or not grade:
        raise InvalidState("Missing required fields: student_id, score, and grade are required")

    test = db["test"].find_one({"_id": oid(test_id)})
    if not test:
        raise NotFound("Test not found")
    if not db["user"].find_one({"_id": oid(student_id)}):
        raise NotFound("Student not found")

    result = {
        "student_id": student_id,
        "score": score,
        "max_score": max_score or test.get("max_score") or 100,
        "grade": grade,
        "answers": answers or [],
        "completed_at": datetime.now(timezone.utc),
    }

    results = test.setdefault("results", [])
    index = next((i for i, r in enumerate(results) if r.get("student_id") == student_id), None)
    if index is None:
        results.append(result)
    else:
        results[index] = {**results[index], **result}

    test = save_document(db, "test", schemas.Test, test)
    logger.info(
        "Grade %s (%s/%s) saved for student %s on test %s%s",
        grade, score, result["max_score"], student_id, test_id,
        " (re-graded)" if index is not None else "",
    )
    return test


def results_for_student(tests: List[Dict[str, Any]], student_id: str) -> List[Dict[str, Any]]:
    """One row per test: the student's result or None."""
    rows = []
    for test in tests:
        result = next((r for r in test.get("results") or [] if r.get("student_id") == student_id), None)
        rows.append({
            "test_id": test["_id"],
            "test_title": test.get("title"),
            "course_id": test.get("course_id"),
            "max_score": test.get("max_score") or 100,
            "result": result,
        })
    return rows
