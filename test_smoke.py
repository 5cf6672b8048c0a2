"""
Smoke tests: every public route answers, API errors come back as JSON,
and security headers are present.
"""
from app import app, generate_shift_ical


def test_health(client):
    response = client.get("/api/health")
    assert response.status_code == 200
    assert response.get_json()["database"] == "ok"


def test_security_headers(client):
    response = client.get("/api/health")
    assert response.headers["X-Content-Type-Options"] == "nosniff"
    assert response.headers["X-Frame-Options"] == "DENY"
    assert response.headers["X-Response-Time"].endswith("s")


def test_json_errors(client):
    response = client.get("/api/does-not-exist")
    assert response.status_code == 404
    assert response.get_json() == {"error": "not_found"}

    response = client.delete("/api/health")
    assert response.status_code == 405
    assert response.get_json() == {"error": "method_not_allowed"}


def test_login_required_routes(client):
    for url in ("/api/dashboard", "/api/shifts/my", "/api/groups", "/api/log-hours", "/api/check-in/status"):
        response = client.get(url)
        assert response.status_code == 401, url
        assert response.get_json()["error"] == "login_required"


def test_volunteer_pages_answer(client, login, volunteer, make_shift):
    make_shift(volunteers=[volunteer])
    login(volunteer)
    for url in (
        "/api/auth/me", "/api/dashboard", "/api/shifts", "/api/shifts/my", "/api/groups",
        "/api/groups/my", "/api/log-hours", "/api/check-in/status", "/api/volunteer/stats",
        "/api/applications/mine", "/api/applications/draft", "/my-calendar.ics",
    ):
        assert client.get(url).status_code == 200, url


def test_admin_pages_answer(client, login, admin):
    login(admin)
    for url in (
        "/api/admin/stats", "/api/admin/volunteers", "/api/admin/applications",
        "/api/admin/shifts/vacant", "/api/admin/shifts/export", "/api/admin/check-ins",
        "/api/admin/hours/pending", "/api/admin/top-volunteers", "/api/admin/reports",
        "/api/admin/reports/monthly.pdf", "/api/admin/activity",
    ):
        assert client.get(url).status_code == 200, url


def test_shift_ical_has_two_alarms(client, volunteer, make_shift):
    shift = make_shift(title="Calendar sorting")
    payload = generate_shift_ical(shift, volunteer.name).decode()
    assert "SUMMARY:Volunteer shift: Calendar sorting" in payload
    assert payload.count("BEGIN:VALARM") == 2
    assert app.config["TESTING"]
