from tests.conftest import YOUTUBE, auth


def test_root(client):
    assert client.get("/").json() == {"message": "Learning Portal API running"}


def test_requires_token(client):
    assert client.get("/user/stats").status_code == 401
    assert client.get("/user/stats", headers={"Authorization": "Bearer nope"}).status_code == 401


def test_register_then_login(client):
    res = client.post("/auth/register", json={
        "username": "newbie", "email": "newbie@school.edu", "password": "s3cret", "first_name": "New",
    })
    assert res.status_code == 201
    assert res.json()["user"]["approved"] is False
    assert "password_hash" not in res.json()["user"]

    assert client.post("/auth/login", json={"username": "newbie", "password": "wrong"}).status_code == 401
    token = client.post("/auth/login", json={"username": "newbie", "password": "s3cret"}).json()["access_token"]
    me = client.get("/me", headers={"Authorization": f"Bearer {token}"}).json()
    assert me["username"] == "newbie"


def test_pending_student_cannot_list_courses(client, make_user):
    pending = make_user("pending", approved=False)
    res = client.get("/courses", headers=auth(pending))
    assert res.status_code == 403


def test_students_only_see_accessible_courses(client, make_user, make_course, make_enrollment):
    granted, enrolled, other = make_course(title="Granted"), make_course(title="Enrolled"), make_course(title="Other")
    user = make_user("dana", enrolled_courses=[str(granted["_id"])])
    make_enrollment(user, enrolled)

    titles = sorted(c["title"] for c in client.get("/courses", headers=auth(user)).json())
    assert titles == ["Enrolled", "Granted"]
    assert client.get(f"/courses/{other['_id']}", headers=auth(user)).status_code == 403


def test_complete_and_uncomplete_endpoints(client, student, make_course, make_enrollment):
    course = make_course(modules=4)
    make_enrollment(student, course)
    mid = course["modules"][0]["id"]
    url = f"/courses/{course['_id']}/modules/{mid}/complete"

    res = client.post(url, headers=auth(student))
    assert res.status_code == 200
    assert res.json() == {
        "message": "Module marked as completed", "progress": 25, "is_completed": False, "module_completed": True,
    }

    again = client.post(url, headers=auth(student))
    assert again.status_code == 400
    assert again.json()["detail"] == "Module already completed"

    status = client.get(f"/courses/{course['_id']}/modules/{mid}/completion", headers=auth(student)).json()
    assert status["is_completed"] is True

    res = client.delete(url, headers=auth(student))
    assert res.status_code == 200
    assert res.json()["progress"] == 0


def test_complete_errors(client, make_user, make_course):
    course = make_course()
    outsider = make_user("out")
    mid = course["modules"][0]["id"]
    assert client.post(f"/courses/{course['_id']}/modules/{mid}/complete", headers=auth(outsider)).status_code == 403
    assert client.post(f"/courses/{course['_id']}/modules/nope/complete", headers=auth(outsider)).status_code == 404


def test_sync_endpoint(client, make_user, make_course):
    courses = [make_course(title=f"C{i}") for i in range(3)]
    user = make_user("sam", enrolled_courses=[str(c["_id"]) for c in courses])

    first = client.post("/student/sync-enrollments", headers=auth(user)).json()
    second = client.post("/student/sync-enrollments", headers=auth(user)).json()

    assert first["created"] == 3
    assert all(e["completed_modules"] == [] for e in first["enrollments"])
    assert second["created"] == 0
    assert len(client.get("/student/enrollments", headers=auth(user)).json()) == 3


def test_admin_sync_for_student(client, admin, make_user, make_course):
    course = make_course()
    user = make_user("sam", enrolled_courses=[str(course["_id"])])
    res = client.post(f"/admin/users/{user['_id']}/sync-enrollments", headers=auth(admin))
    assert res.json()["created"] == 1


def test_grading_endpoint(client, admin, student, make_course, make_test):
    test = make_test(make_course())
    url = f"/tests/{test['_id']}/results"

    assert client.post(url, json={"student_id": str(student["_id"]), "score": 80}, headers=auth(admin)).status_code == 400
    assert client.post(url, json={"student_id": str(student["_id"]), "score": 80, "grade": "B"}, headers=auth(student)).status_code == 403

    client.post(url, json={"student_id": str(student["_id"]), "score": 80, "grade": "B"}, headers=auth(admin))
    res = client.post(url, json={"student_id": str(student["_id"]), "score": 95, "grade": "A"}, headers=auth(admin))

    assert res.status_code == 200
    results = res.json()["test"]["results"]
    assert len(results) == 1
    assert results[0]["score"] == 95

    mine = client.get("/student/my-results", headers=auth(student)).json()
    assert mine == []


def test_invalid_grade_is_a_validation_error(client, admin, student, make_course, make_test):
    test = make_test(make_course())
    res = client.post(
        f"/tests/{test['_id']}/results",
        json={"student_id": str(student["_id"]), "score": 80, "grade": "Z"},
        headers=auth(admin),
    )
    assert res.status_code == 400
    assert res.json()["detail"]["errors"][0]["field"] == "results.0.grade"


def test_students_do_not_see_answers(client, student, make_course, make_test):
    make_test(make_course(), questions=[{"question": "Q", "options": ["a", "b"], "correct_answer": 1}])
    tests = client.get("/tests", headers=auth(student)).json()
    assert "correct_answer" not in tests[0]["questions"][0]


def test_create_course_validates_modules(client, admin):
    res = client.post("/courses", headers=auth(admin), json={
        "title": "Bad", "modules": [{"title": "M", "youtube_url": "https://vimeo.com/1", "duration": 5}],
    })
    assert res.status_code == 400
    assert res.json()["detail"]["errors"][0]["field"] == "modules.0.youtube_url"

    res = client.post("/courses", headers=auth(admin), json={
        "title": "Good", "modules": [{"title": "M", "youtube_url": YOUTUBE.format(1), "duration": 5}],
    })
    assert res.status_code == 201
    assert res.json()["duration"] == 5
    assert res.json()["modules"][0]["order_index"] == 0


def test_delete_course_is_soft(client, admin, make_course, mongo_db):
    course = make_course()
    assert client.delete(f"/courses/{course['_id']}", headers=auth(admin)).status_code == 200
    assert mongo_db["course"].find_one({"_id": course["_id"]})["is_active"] is False


def test_stats_shapes(client, admin, student):
    assert client.get("/admin/stats", headers=auth(student)).status_code == 403
    assert "course_completion_rate" in client.get("/admin/stats", headers=auth(admin)).json()
    assert "student_progress_data" in client.get("/user/stats", headers=auth(admin)).json()
    assert "student_progress_data" not in client.get("/user/stats", headers=auth(student)).json()
    assert client.get(f"/users/{admin['_id']}/stats", headers=auth(student)).status_code == 403


def test_approval_flow(client, admin, make_user, make_course, mongo_db):
    course = make_course()
    pending = make_user("newbie", approved=False)
    approved = make_user("veteran")

    assert [u["username"] for u in client.get("/admin/pending-approvals", headers=auth(admin)).json()] == ["newbie"]
    assert client.post(f"/admin/reject-user/{approved['_id']}", headers=auth(admin)).status_code == 400

    res = client.post(f"/admin/approve-user/{pending['_id']}", json={"course_ids": [str(course["_id"])]}, headers=auth(admin))
    assert res.json()["user"]["approved"] is True
    assert res.json()["user"]["enrolled_courses"] == [str(course["_id"])]
    # approval grants access without an enrollment row
    assert mongo_db["enrollment"].count_documents({}) == 0

    res = client.put(f"/admin/users/{pending['_id']}/suspend", json={"courses_to_remove": [str(course["_id"])]}, headers=auth(admin))
    assert res.json()["user"]["enrolled_courses"] == []


def test_approve_rejects_unknown_course_ids(client, admin, make_user, make_course, mongo_db):
    course = make_course()
    pending = make_user("newbie", approved=False)
    url = f"/admin/approve-user/{pending['_id']}"

    res = client.post(url, json={"course_ids": [str(course["_id"]), "typo"]}, headers=auth(admin))
    assert res.status_code == 400
    assert "typo" in res.json()["detail"]

    res = client.post(url, json={"course_ids": ["5f0c5b9a2d3e4f5a6b7c8d9e"]}, headers=auth(admin))
    assert res.status_code == 404

    stored = mongo_db["user"].find_one({"_id": pending["_id"]})
    assert stored["approved"] is False
    assert stored["enrolled_courses"] == []


def test_course_grants_are_checked(client, admin, student, make_course, mongo_db):
    course = make_course()
    url = f"/admin/users/{student['_id']}"

    assert client.put(f"{url}/courses", json={"enrolled_courses": ["typo"]}, headers=auth(admin)).status_code == 400
    res = client.put(
        f"{url}/approval",
        json={"approved": True, "enrolled_courses": [str(course["_id"]), "5f0c5b9a2d3e4f5a6b7c8d9e"]},
        headers=auth(admin),
    )
    assert res.status_code == 404
    assert mongo_db["user"].find_one({"_id": student["_id"]})["enrolled_courses"] == []

    res = client.put(f"{url}/courses", json={"enrolled_courses": [str(course["_id"])]}, headers=auth(admin))
    assert res.status_code == 200
    assert res.json()["user"]["enrolled_courses"] == [str(course["_id"])]


def test_stored_bad_grant_does_not_break_reads(client, student, make_course, mongo_db):
    course = make_course(title="Real")
    mongo_db["user"].update_one(
        {"_id": student["_id"]},
        {"$set": {"enrolled_courses": [str(course["_id"]), "typo", "5f0c5b9a2d3e4f5a6b7c8d9e"]}},
    )

    res = client.get("/courses", headers=auth(student))
    assert res.status_code == 200
    assert [c["title"] for c in res.json()] == ["Real"]

    synced = client.post("/student/sync-enrollments", headers=auth(student)).json()
    assert synced["created"] == 1
    assert synced["skipped"] == 2

    res = client.get(f"/users/{student['_id']}/stats", headers=auth(student))
    assert res.status_code == 200
    assert res.json()["enrolled_courses"] == 1


def test_adding_a_module_recomputes_enrollments(client, admin, student, make_course, make_enrollment, mongo_db):
    course = make_course(modules=4)
    make_enrollment(student, course, completed_modules=[m["id"] for m in course["modules"]], progress=100)
    assert mongo_db["enrollment"].find_one({})["is_completed"] is True

    res = client.post(
        f"/courses/{course['_id']}/modules",
        json={"title": "Lesson 5", "youtube_url": YOUTUBE.format(5), "duration": 10},
        headers=auth(admin),
    )
    assert res.status_code == 200

    row = mongo_db["enrollment"].find_one({})
    assert row["progress"] == 80
    assert row["is_completed"] is False
    assert row["completion_date"] is None


def test_replacing_modules_prunes_completions(client, admin, student, make_course, make_enrollment, mongo_db):
    course = make_course(modules=4)
    kept = course["modules"][:2]
    make_enrollment(student, course, completed_modules=[m["id"] for m in course["modules"][1:]], progress=75)

    res = client.put(f"/courses/{course['_id']}", json={"modules": kept}, headers=auth(admin))
    assert res.status_code == 200

    row = mongo_db["enrollment"].find_one({})
    assert row["completed_modules"] == [kept[1]["id"]]
    assert row["progress"] == 50
