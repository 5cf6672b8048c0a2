from datetime import timedelta

from app import db, Shift, ShiftSignup, AuditLog, get_local_now, ROLE_PENDING
from conftest import day_after_tomorrow_at
from scheduling import SHIFT_OPEN, SHIFT_FULL, SHIFT_CANCELLED, SHIFT_COMPLETED


def shift_payload(start=None, **overrides):
    start = start or day_after_tomorrow_at(9)
    payload = {
        "title": "Pantry restock",
        "location": "Warehouse A",
        "description": "Stack the shelves",
        "date": start.strftime("%Y-%m-%d"),
        "start_time": start.strftime("%H:%M"),
        "end_time": (start + timedelta(hours=3)).strftime("%H:%M"),
        "max_volunteers": 4,
    }
    payload.update(overrides)
    return payload


# ---------- management ----------

def test_admin_creates_shift(client, login, admin):
    login(admin)
    response = client.post("/api/shifts", json=shift_payload())
    assert response.status_code == 201
    body = response.get_json()["shift"]
    assert body["status"] == SHIFT_OPEN
    assert body["current_volunteers"] == 0

    shift = db.session.get(Shift, body["id"])
    assert shift.end_time - shift.start_time == timedelta(hours=3)
    assert shift.created_by == admin.id


def test_end_time_must_follow_start(client, login, admin):
    login(admin)
    response = client.post("/api/shifts", json=shift_payload(start_time="14:00", end_time="09:00"))
    assert response.status_code == 400
    assert "end_time" in response.get_json()["errors"]


def test_overnight_shift_with_end_date(client, login, admin):
    login(admin)
    start = day_after_tomorrow_at(22)
    response = client.post("/api/shifts", json=shift_payload(
        start=start, end_time="02:00", end_date=(start + timedelta(days=1)).strftime("%Y-%m-%d")
    ))
    assert response.status_code == 201


def test_capacity_must_be_positive(client, login, admin):
    login(admin)
    response = client.post("/api/shifts", json=shift_payload(max_volunteers=0))
    assert response.status_code == 400


def test_volunteer_cannot_create_shift(client, login, volunteer):
    login(volunteer)
    assert client.post("/api/shifts", json=shift_payload()).status_code == 403


def test_group_admin_creates_shift_for_own_group(client, login, volunteer, make_user, make_group):
    group = make_group(admins=[volunteer])
    other = make_group()
    login(volunteer)
    assert client.post("/api/shifts", json=shift_payload(group_id=group.id)).status_code == 201
    assert client.post("/api/shifts", json=shift_payload(group_id=other.id)).status_code == 403


def test_capacity_cannot_drop_below_roster(client, login, admin, make_user, make_shift):
    shift = make_shift(capacity=3, volunteers=[make_user(), make_user()])
    login(admin)
    response = client.put(f"/api/shifts/{shift.id}", json=shift_payload(shift.start_time, max_volunteers=1))
    assert response.status_code == 409
    assert response.get_json()["error"] == "capacity_below_signups"

    response = client.put(f"/api/shifts/{shift.id}", json=shift_payload(shift.start_time, max_volunteers=2))
    assert response.status_code == 200
    assert response.get_json()["shift"]["status"] == SHIFT_FULL


def test_cancelling_shift_notifies_roster(client, login, admin, make_user, make_shift, outbox):
    first, second = make_user(), make_user()
    shift = make_shift(volunteers=[first, second])
    login(admin)

    response = client.put(f"/api/shifts/{shift.id}", json=shift_payload(shift.start_time, status="CANCELLED"))
    assert response.status_code == 200
    assert response.get_json()["shift"]["status"] == SHIFT_CANCELLED
    assert sorted(m.recipients[0] for m in outbox) == sorted([first.email, second.email])

    reopened = client.put(f"/api/shifts/{shift.id}", json=shift_payload(shift.start_time, status="OPEN"))
    assert reopened.get_json()["shift"]["status"] == SHIFT_OPEN


def test_delete_shift(client, login, admin, volunteer, make_shift):
    shift = make_shift(volunteers=[volunteer])
    login(volunteer)
    assert client.delete(f"/api/shifts/{shift.id}").status_code == 403

    login(admin)
    assert client.delete(f"/api/shifts/{shift.id}").status_code == 200
    assert Shift.query.count() == 0
    assert ShiftSignup.query.count() == 0


# ---------- listing ----------

def test_list_defaults_to_upcoming(client, login, volunteer, make_shift):
    upcoming = make_shift(title="Tomorrow sorting")
    make_shift(start=get_local_now() - timedelta(days=3), title="Old sorting")
    login(volunteer)

    body = client.get("/api/shifts").get_json()
    assert [s["id"] for s in body["shifts"]] == [upcoming.id]
    assert body["total"] == 1
    assert body["shifts"][0]["is_signed_up"] is False

    past = client.get("/api/shifts?filter=past").get_json()
    assert [s["title"] for s in past["shifts"]] == ["Old sorting"]


def test_list_search_date_and_pagination(client, login, volunteer, make_shift):
    for hour in range(8, 13):
        make_shift(start=day_after_tomorrow_at(hour), title=f"Sorting {hour}")
    make_shift(start=day_after_tomorrow_at(15), title="Reading hour", location="Library")
    login(volunteer)

    assert client.get("/api/shifts?search=library").get_json()["total"] == 1
    day = day_after_tomorrow_at(0).strftime("%Y-%m-%d")
    assert client.get(f"/api/shifts?date={day}").get_json()["total"] == 6

    page = client.get("/api/shifts?per_page=4&page=2").get_json()
    assert page["pages"] == 2
    assert [s["title"] for s in page["shifts"]] == ["Sorting 12", "Reading hour"]


def test_list_rejects_bad_arguments(client, login, volunteer):
    login(volunteer)
    assert client.get("/api/shifts?filter=someday").status_code == 400
    assert client.get("/api/shifts?date=tomorrow").status_code == 400


def test_list_requires_login(client):
    assert client.get("/api/shifts").status_code == 401


def test_shift_detail_includes_roster(client, login, volunteer, make_shift):
    shift = make_shift(volunteers=[volunteer])
    login(volunteer)
    body = client.get(f"/api/shifts/{shift.id}").get_json()["shift"]
    assert body["volunteers"][0]["email"] == volunteer.email
    assert body["is_signed_up"] is True
    assert body["can_cancel"] is True
    assert client.get("/api/shifts/9999").status_code == 404


# ---------- signup ----------

def test_signup_sends_confirmation_with_calendar(client, login, volunteer, make_shift, outbox):
    shift = make_shift(capacity=2)
    login(volunteer)

    response = client.post(f"/api/shifts/{shift.id}/signup")
    assert response.status_code == 200
    assert response.get_json()["shift"]["current_volunteers"] == 1
    assert response.get_json()["shift"]["is_signed_up"] is True

    assert len(outbox) == 1
    assert outbox[0].recipients == [volunteer.email]
    assert outbox[0].attachments[0].filename.endswith(".ics")
    assert AuditLog.query.filter_by(action="shift_signup").count() == 1


def test_duplicate_signup_refused(client, login, volunteer, make_shift):
    shift = make_shift(volunteers=[volunteer])
    login(volunteer)
    response = client.post(f"/api/shifts/{shift.id}/signup")
    assert response.status_code == 409
    assert response.get_json()["error"] == "already_signed_up"
    assert ShiftSignup.query.count() == 1


def test_last_place_fills_shift(client, login, make_user, make_shift):
    shift = make_shift(capacity=2, volunteers=[make_user()])
    login(make_user())
    assert client.post(f"/api/shifts/{shift.id}/signup").get_json()["shift"]["status"] == SHIFT_FULL

    login(make_user())
    response = client.post(f"/api/shifts/{shift.id}/signup")
    assert response.status_code == 409
    assert response.get_json()["error"] == "shift_full"
    db.session.refresh(shift)
    assert shift.current_volunteers == 2


def test_pending_user_cannot_sign_up(client, login, make_user, make_shift):
    shift = make_shift()
    login(make_user(role=ROLE_PENDING))
    response = client.post(f"/api/shifts/{shift.id}/signup")
    assert response.status_code == 403
    assert response.get_json()["error"] == "approval_pending"


def test_cannot_join_cancelled_completed_or_started_shifts(client, login, volunteer, make_shift):
    cancelled = make_shift(status=SHIFT_CANCELLED)
    completed = make_shift(status=SHIFT_COMPLETED)
    started = make_shift(start=get_local_now() - timedelta(minutes=10))
    login(volunteer)

    assert client.post(f"/api/shifts/{cancelled.id}/signup").get_json()["error"] == "shift_not_open"
    assert client.post(f"/api/shifts/{completed.id}/signup").get_json()["error"] == "shift_not_open"
    response = client.post(f"/api/shifts/{started.id}/signup")
    assert response.status_code == 409
    assert response.get_json()["error"] == "shift_started"


# ---------- cancellation ----------

def test_cancel_before_cutoff_reopens_shift(client, login, volunteer, make_user, make_shift, outbox):
    shift = make_shift(capacity=2, volunteers=[volunteer, make_user()])
    assert shift.status == SHIFT_FULL
    login(volunteer)

    response = client.post(f"/api/shifts/{shift.id}/cancel")
    assert response.status_code == 200
    body = response.get_json()["shift"]
    assert body["status"] == SHIFT_OPEN
    assert body["current_volunteers"] == 1
    assert outbox[-1].recipients == [volunteer.email]


def test_cancel_inside_cutoff_is_refused(client, login, volunteer, make_shift):
    shift = make_shift(start=get_local_now() + timedelta(minutes=45), volunteers=[volunteer])
    login(volunteer)

    body = client.get(f"/api/shifts/{shift.id}").get_json()["shift"]
    assert body["can_cancel"] is False

    response = client.post(f"/api/shifts/{shift.id}/cancel")
    assert response.status_code == 400
    assert response.get_json()["error"] == "cancellation_window_closed"
    assert ShiftSignup.query.count() == 1


def test_cancel_without_signup(client, login, volunteer, make_shift):
    shift = make_shift()
    login(volunteer)
    assert client.post(f"/api/shifts/{shift.id}/cancel").status_code == 404


def test_admin_removes_volunteer_inside_cutoff(client, login, admin, volunteer, make_shift):
    shift = make_shift(start=get_local_now() + timedelta(minutes=20), volunteers=[volunteer])
    login(admin)
    response = client.delete(f"/api/shifts/{shift.id}/volunteers/{volunteer.id}")
    assert response.status_code == 200
    assert response.get_json()["shift"]["volunteers"] == []
    assert client.delete(f"/api/shifts/{shift.id}/volunteers/{volunteer.id}").status_code == 404


def test_volunteer_cannot_remove_others(client, login, volunteer, make_user, make_shift):
    other = make_user()
    shift = make_shift(volunteers=[other])
    login(volunteer)
    assert client.delete(f"/api/shifts/{shift.id}/volunteers/{other.id}").status_code == 403


def test_cancelled_status_survives_roster_changes(client, login, volunteer, make_user, make_shift):
    shift = make_shift(capacity=1, volunteers=[volunteer], status=SHIFT_CANCELLED)
    login(volunteer)
    assert client.post(f"/api/shifts/{shift.id}/cancel").get_json()["shift"]["status"] == SHIFT_CANCELLED


# ---------- my shifts and calendars ----------

def test_my_shifts(client, login, volunteer, make_shift):
    mine = make_shift(volunteers=[volunteer])
    old = make_shift(start=get_local_now() - timedelta(days=2), volunteers=[volunteer])
    make_shift()
    login(volunteer)

    assert [s["id"] for s in client.get("/api/shifts/my").get_json()["shifts"]] == [mine.id]
    assert [s["id"] for s in client.get("/api/shifts/my?filter=past").get_json()["shifts"]] == [old.id]
    assert len(client.get("/api/shifts/my?filter=all").get_json()["shifts"]) == 2
    assert client.get("/api/shifts/my?filter=vacant").status_code == 400


def test_public_calendar_lists_available_shifts(client, make_user, make_shift):
    make_shift(title="Open sorting")
    make_shift(title="Full sorting", capacity=1, volunteers=[make_user()])
    response = client.get("/calendar.ics")
    assert response.status_code == 200
    assert response.headers["Content-Type"].startswith("text/calendar")
    assert b"Open sorting" in response.data
    assert b"Full sorting" not in response.data


def test_personal_calendar_has_alarms(client, login, volunteer, make_shift):
    assert client.get("/my-calendar.ics").status_code == 401
    make_shift(title="My sorting", volunteers=[volunteer])
    login(volunteer)
    response = client.get("/my-calendar.ics")
    assert b"My sorting" in response.data
    assert b"BEGIN:VALARM" in response.data


# ---------- admin views ----------

def test_vacant_shifts(client, login, admin, make_user, make_shift):
    vacant = make_shift()
    make_shift(capacity=1, volunteers=[make_user()])
    make_shift(status=SHIFT_CANCELLED)
    login(admin)
    body = client.get("/api/admin/shifts/vacant").get_json()
    assert [s["id"] for s in body["shifts"]] == [vacant.id]


def test_export_shifts(client, login, admin, volunteer, make_shift):
    shift = make_shift(title="Export me", volunteers=[volunteer])
    login(admin)

    response = client.get("/api/admin/shifts/export?format=csv")
    assert response.headers["Content-Type"].startswith("text/csv")
    lines = response.data.decode().strip().splitlines()
    assert len(lines) == 2
    assert "Export me" in lines[1]
    assert volunteer.name in lines[1]

    response = client.get(f"/api/admin/shifts/export?format=ics&ids={shift.id}")
    assert b"BEGIN:VEVENT" in response.data
    assert client.get("/api/admin/shifts/export?format=xls").status_code == 400
