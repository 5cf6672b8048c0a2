"""
Shared fixtures for the volunteer portal tests.
Every test gets a fresh in-memory SQLite database.
"""
import os
import sys
from datetime import datetime, timedelta
from itertools import count

import pytest

sys.path.insert(0, os.path.dirname(os.path.abspath(__file__)))

# Set testing environment before importing app
os.environ['TESTING'] = 'True'
os.environ['SECRET_KEY'] = 'test-secret-key'
# Override database URL to use SQLite for testing
os.environ['DATABASE_URL'] = 'sqlite:///:memory:'
os.environ['CACHE_TYPE'] = 'NullCache'
os.environ['REMINDERS_TOKEN'] = 'test-reminders-token'

from app import (  # noqa: E402
    app, db, mail, cache, User, Shift, ShiftSignup, Group, GroupMember, VolunteerLog,
    get_local_now, ROLE_ADMIN, ROLE_VOLUNTEER, MEMBER_ROLE_MEMBER
)
from scheduling import SHIFT_OPEN  # noqa: E402

_sequence = count(1)


@pytest.fixture
def client():
    app.config['TESTING'] = True
    app.config['WTF_CSRF_ENABLED'] = False
    with app.app_context():
        db.create_all()
        yield app.test_client()
        db.session.remove()
        db.drop_all()


@pytest.fixture
def outbox(client):
    with mail.record_messages() as messages:
        yield messages


@pytest.fixture
def simple_cache(client):
    """Swap the suite's NullCache for a real in-memory cache."""
    app.config["CACHE_TYPE"] = "SimpleCache"
    cache.init_app(app)
    cache.clear()
    yield cache
    cache.clear()
    app.config["CACHE_TYPE"] = "NullCache"
    cache.init_app(app)


@pytest.fixture
def login(client):
    def _login(user):
        with client.session_transaction() as sess:
            sess['user_id'] = user.id
        return user
    return _login


@pytest.fixture
def make_user(client):
    def _make(name=None, email=None, role=ROLE_VOLUNTEER, password="password123", active=True, **fields):
        n = next(_sequence)
        user = User(
            name=name or f"Volunteer {n}",
            email=email or f"volunteer{n}@helpers.org",
            role=role,
            active=active,
            **fields
        )
        user.set_password(password)
        db.session.add(user)
        db.session.commit()
        return user
    return _make


@pytest.fixture
def admin(make_user):
    return make_user(name="Ada Admin", email="ada@helpers.org", role=ROLE_ADMIN)


@pytest.fixture
def volunteer(make_user):
    return make_user(name="Vic Volunteer", email="vic@helpers.org")


@pytest.fixture
def make_group(client):
    def _make(name=None, members=(), admins=(), **fields):
        group = Group(name=name or f"Group {next(_sequence)}", **fields)
        for user in members:
            group.members.append(GroupMember(user_id=user.id, role=MEMBER_ROLE_MEMBER))
        for user in admins:
            group.members.append(GroupMember(user_id=user.id, role="ADMIN"))
        db.session.add(group)
        db.session.commit()
        return group
    return _make


def day_after_tomorrow_at(hour):
    day = get_local_now().date() + timedelta(days=2)
    return datetime(day.year, day.month, day.day, hour)


@pytest.fixture
def make_shift(client):
    def _make(start=None, hours=3, capacity=3, status=SHIFT_OPEN, group=None, title=None,
              location="Community Center", volunteers=()):
        start = start or day_after_tomorrow_at(9)
        shift = Shift(
            title=title or f"Food bank sorting {next(_sequence)}",
            location=location,
            start_time=start,
            end_time=start + timedelta(hours=hours),
            max_volunteers=capacity,
            status=status,
            group_id=group.id if group else None
        )
        db.session.add(shift)
        for user in volunteers:
            db.session.add(ShiftSignup(shift=shift, user=user))
        shift.refresh_status()
        db.session.commit()
        return shift
    return _make


@pytest.fixture
def make_log(client):
    def _make(user, day, hours=1, minutes=0, approved=True, group=None, description="Sorting"):
        log = VolunteerLog(
            user_id=user.id,
            group_id=group.id if group else None,
            hours=hours,
            minutes=minutes,
            date=day,
            approved=approved,
            description=description
        )
        db.session.add(log)
        db.session.commit()
        return log
    return _make
