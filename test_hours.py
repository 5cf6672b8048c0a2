from datetime import timedelta

from app import db, VolunteerLog, AuditLog, get_local_today


def log_payload(**overrides):
    payload = {
        "hours": 2,
        "minutes": 15,
        "date": get_local_today().strftime("%Y-%m-%d"),
        "description": "Sorted donations",
    }
    payload.update(overrides)
    return payload


def test_log_hours_starts_unapproved(client, login, volunteer):
    login(volunteer)
    response = client.post("/api/log-hours", json=log_payload())
    assert response.status_code == 201
    body = response.get_json()["log"]
    assert body["approved"] is False
    assert body["hours"] == 2
    assert body["minutes"] == 15


def test_log_hours_validation(client, login, volunteer):
    login(volunteer)
    tomorrow = (get_local_today() + timedelta(days=1)).strftime("%Y-%m-%d")

    cases = [
        (log_payload(hours=0, minutes=0), "minutes"),
        (log_payload(minutes=60), "minutes"),
        (log_payload(hours=25), "hours"),
        (log_payload(date=tomorrow), "date"),
        ({"hours": 1}, "date"),
    ]
    for payload, field in cases:
        response = client.post("/api/log-hours", json=payload)
        assert response.status_code == 400, payload
        assert field in response.get_json()["errors"], payload
    assert VolunteerLog.query.count() == 0


def test_minutes_only_log(client, login, volunteer):
    login(volunteer)
    response = client.post("/api/log-hours", json={
        "minutes": 45, "date": get_local_today().strftime("%Y-%m-%d")
    })
    assert response.status_code == 201
    assert response.get_json()["log"]["hours"] == 0


def test_group_logs_need_membership(client, login, volunteer, make_group):
    member_of = make_group(members=[volunteer])
    stranger_to = make_group()
    login(volunteer)

    response = client.post("/api/log-hours", json=log_payload(group_id=stranger_to.id))
    assert response.status_code == 403
    assert response.get_json()["error"] == "not_group_member"

    response = client.post("/api/log-hours", json=log_payload(group_id=member_of.id))
    assert response.status_code == 201
    assert response.get_json()["log"]["group_id"] == member_of.id
    assert client.post("/api/log-hours", json=log_payload(group_id=999)).status_code == 404


def test_my_logs_with_totals(client, login, volunteer, make_log):
    today = get_local_today()
    make_log(volunteer, today, hours=1, minutes=50)
    make_log(volunteer, today - timedelta(days=1), hours=0, minutes=30)
    make_log(volunteer, today - timedelta(days=2), hours=3, approved=False)
    login(volunteer)

    body = client.get("/api/log-hours").get_json()
    assert len(body["logs"]) == 3
    assert body["totals"]["approved"]["hours"] == 2
    assert body["totals"]["approved"]["minutes"] == 20
    assert body["totals"]["all"]["hours"] == 5


def test_admin_approves_and_rejects(client, login, admin, volunteer, make_log):
    today = get_local_today()
    pending = make_log(volunteer, today, approved=False)
    doomed = make_log(volunteer, today, approved=False)
    login(admin)

    body = client.get("/api/admin/hours/pending").get_json()
    assert {log["id"] for log in body["logs"]} == {pending.id, doomed.id}

    response = client.post(f"/api/admin/hours/{pending.id}/approve")
    assert response.status_code == 200
    db.session.refresh(pending)
    assert pending.approved
    assert pending.approved_by == admin.id
    assert client.post(f"/api/admin/hours/{pending.id}/approve").status_code == 409

    assert client.delete(f"/api/admin/hours/{doomed.id}").status_code == 200
    assert db.session.get(VolunteerLog, doomed.id) is None
    assert AuditLog.query.filter_by(action="hours_rejected").count() == 1


def test_hour_review_requires_admin(client, login, volunteer, make_log):
    log = make_log(volunteer, get_local_today(), approved=False)
    login(volunteer)
    assert client.get("/api/admin/hours/pending").status_code == 403
    assert client.post(f"/api/admin/hours/{log.id}/approve").status_code == 403


def test_volunteer_stats(client, login, admin, volunteer, make_user, make_log, make_shift):
    today = get_local_today()
    make_log(volunteer, today, hours=2, minutes=40)
    make_log(volunteer, today, hours=1, minutes=40)
    make_log(volunteer, today, hours=5, approved=False)
    make_shift(volunteers=[volunteer])
    login(volunteer)

    stats = client.get("/api/volunteer/stats").get_json()["stats"]
    assert stats["total_hours"] == 4
    assert stats["total_minutes"] == 20
    assert stats["pending_logs"] == 1
    assert stats["upcoming_shifts"] == 1

    other = make_user()
    assert client.get(f"/api/volunteer/stats?user_id={other.id}").status_code == 403

    login(admin)
    body = client.get(f"/api/volunteer/stats?user_id={volunteer.id}").get_json()
    assert body["user_id"] == volunteer.id
