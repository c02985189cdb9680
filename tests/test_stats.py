import grading
import progress
import stats


def test_average_score_uses_result_max_score():
    results = [{"score": 80, "max_score": 100}, {"score": 5, "max_score": 10}]
    assert stats.average_score(results) == 65


def test_empty_aggregates_are_zero():
    assert stats.average_score([]) == 0
    assert stats.overall_progress_average([]) == 0
    assert stats.completion_rate([]) == 0


def test_progress_average_is_enrollment_weighted():
    # one student with three rows, one with a single row
    rows = [
        {"student_id": "a", "progress": 100},
        {"student_id": "a", "progress": 100},
        {"student_id": "a", "progress": 100},
        {"student_id": "b", "progress": 0},
    ]
    assert stats.overall_progress_average(rows) == 75


def test_completion_rate():
    rows = [{"progress": 100}, {"progress": 100}, {"progress": 40}]
    assert stats.completion_rate(rows) == 67
    assert stats.completed_count(rows) == 2


def test_student_breakdown_averages_each_student_independently():
    students = [
        {"_id": "a", "first_name": "Ann", "last_name": "Lee"},
        {"_id": "b", "username": "bob"},
        {"_id": "c", "username": "idle"},
    ]
    enrollments = [
        {"student_id": "a", "progress": 50},
        {"student_id": "a", "progress": 100},
        {"student_id": "b", "progress": 20},
    ]
    tests = [
        {"results": [{"student_id": "a", "score": 9, "max_score": 10}, {"student_id": "b", "score": 1, "max_score": 2}]},
        {"results": [{"student_id": "a", "score": 70, "max_score": 100}]},
    ]

    rows = stats.student_breakdown(students, enrollments, tests)

    assert rows == [
        {"student_id": "a", "name": "Ann Lee", "progress": 75, "average_score": 80, "tests_completed": 2},
        {"student_id": "b", "name": "bob", "progress": 20, "average_score": 50, "tests_completed": 1},
    ]


def test_admin_stats(mongo_db, make_user, make_course, make_enrollment, make_test):
    course = make_course(modules=2)
    a, b = make_user("amy"), make_user("ben")
    make_user("pending", approved=False)
    make_enrollment(a, course)
    make_enrollment(b, course)
    ids = [m["id"] for m in course["modules"]]
    for mid in ids:
        progress.complete_module(mongo_db, str(course["_id"]), mid, a)
    test = make_test(course)
    grading.record_result(mongo_db, str(test["_id"]), str(a["_id"]), score=90, grade="A")
    grading.record_result(mongo_db, str(test["_id"]), str(b["_id"]), score=60, grade="C")

    out = stats.admin_stats(mongo_db)

    assert out["total_students"] == 3
    assert out["approved_students"] == 2
    assert out["students_enrolled"] == 2
    assert out["unique_students_enrolled"] == 2
    assert out["approved_enrolled_students"] == 2
    assert out["average_completion"] == 50
    assert out["course_completion_rate"] == 50
    assert out["completed_courses"] == 1
    assert out["average_score"] == 75
    assert out["tests_completed"] == 2


def test_user_stats_for_student_and_admin(mongo_db, admin, make_user, make_course, make_enrollment, make_test):
    course = make_course()
    a = make_user("amy")
    make_enrollment(a, course, progress=50)
    test = make_test(course)
    grading.record_result(mongo_db, str(test["_id"]), str(a["_id"]), score=40, grade="D", max_score=50)

    mine = stats.user_stats(mongo_db, a)
    assert mine == {"total_courses": 1, "available_tests": 1, "user_role": "student", "average_score": 80}

    overview = stats.user_stats(mongo_db, admin)
    assert overview["total_students"] == 1
    assert overview["overall_progress_average"] == 50
    assert overview["student_progress_data"][0]["tests_completed"] == 1


def test_student_summary(mongo_db, student, make_course, make_enrollment):
    long_course = make_course(modules=2, duration=90)
    make_enrollment(student, long_course, progress=50)
    make_enrollment(student, make_course(), progress=100)

    out = stats.student_summary(mongo_db, str(student["_id"]))

    assert out["enrolled_courses"] == 2
    assert out["completed_courses"] == 1
    # 180 * 50% + 40 * 100%
    assert out["minutes_learned"] == 130
    assert out["average_score"] == 0


def test_student_summary_ignores_rows_for_malformed_course_ids(mongo_db, student, make_course, make_enrollment):
    make_enrollment(student, make_course(), progress=50)
    mongo_db["enrollment"].insert_one({"student_id": str(student["_id"]), "course_id": "typo", "progress": 100})

    out = stats.student_summary(mongo_db, str(student["_id"]))

    assert out["enrolled_courses"] == 2
    assert out["minutes_learned"] == 20


def test_platform_stats_counts_active_only(mongo_db, make_course, make_test):
    make_course(is_active=False)
    course = make_course()
    make_test(course)
    make_test(course, is_active=False)

    assert stats.platform_stats(mongo_db) == {"total_courses": 1, "available_tests": 1, "overall_average_score": 0}
