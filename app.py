import base64
from datetime import datetime, date, timedelta
from functools import wraps
import os
import secrets
import string
from zoneinfo import ZoneInfo
import time

from flask import (
    Flask, Response, request, session, make_response, jsonify, g, has_request_context
)
from flask_sqlalchemy import SQLAlchemy
from sqlalchemy import func
from sqlalchemy.exc import IntegrityError
from flask_wtf import FlaskForm
from flask_wtf.file import FileField, FileAllowed, FileRequired
from flask_mail import Mail, Message
from flask_caching import Cache
from wtforms import (
    StringField, TextAreaField, BooleanField, DateField, TimeField,
    PasswordField, IntegerField, SelectMultipleField
)
from wtforms.validators import (
    DataRequired, Optional, Email, Length, NumberRange, Regexp, AnyOf, ValidationError
)
from werkzeug.security import generate_password_hash, check_password_hash
from icalendar import Calendar, Event, Alarm
from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.cron import CronTrigger
from dotenv import load_dotenv

# Load environment variables from .env file BEFORE importing Config so it can read envs
load_dotenv()

from config import Config
import reporting
from scheduling import (
    SHIFT_OPEN, SHIFT_FULL, SHIFT_CANCELLED, SHIFT_COMPLETED,
    compose_shift_window, filter_shifts, status_for_roster, can_cancel,
    check_in_window, duration_minutes, split_minutes, normalize_hours,
    hours_total, is_available, is_vacant, paginate
)

app = Flask(__name__)
app.config.from_object(Config)
db = SQLAlchemy(app)
mail = Mail(app)
cache = Cache(app)


# Performance monitoring
@app.before_request
def before_request():
    g.start_time = time.time()


@app.after_request
def after_request(response):
    if hasattr(g, 'start_time'):
        response_time = time.time() - g.start_time
        response.headers['X-Response-Time'] = f"{response_time:.3f}s"

    # Security headers
    response.headers['X-Content-Type-Options'] = 'nosniff'
    response.headers['X-Frame-Options'] = 'DENY'
    response.headers['X-XSS-Protection'] = '1; mode=block'
    return response


# In-process scheduler for the dev server only; worker.py runs the jobs elsewhere
scheduler = None


def get_local_now():
    """Current wall-clock time in the organization's timezone, as a naive datetime.

    Shift times are entered as local date + time fields and stored naive, so
    every comparison against them goes through this helper.
    """
    return datetime.now(ZoneInfo(app.config["APP_TIMEZONE"])).replace(tzinfo=None)


def get_local_today():
    return get_local_now().date()


# ==========================
# MODELS
# ==========================

ROLE_ADMIN = "ADMIN"
ROLE_VOLUNTEER = "VOLUNTEER"
ROLE_GROUP_ADMIN = "GROUP_ADMIN"
ROLE_PENDING = "PENDING"
ROLES = (ROLE_ADMIN, ROLE_VOLUNTEER, ROLE_GROUP_ADMIN, ROLE_PENDING)

APPLICATION_PENDING = "PENDING"
APPLICATION_APPROVED = "APPROVED"
APPLICATION_REJECTED = "REJECTED"
APPLICATION_WITHDRAWN = "WITHDRAWN"
APPLICATION_STATUSES = (APPLICATION_PENDING, APPLICATION_APPROVED, APPLICATION_REJECTED, APPLICATION_WITHDRAWN)

MEMBER_ROLE_MEMBER = "MEMBER"
MEMBER_ROLE_ADMIN = "ADMIN"

WEEKDAYS = ("Monday", "Tuesday", "Wednesday", "Thursday", "Friday", "Saturday", "Sunday")


def _iso(value):
    return value.isoformat() if value else None


class User(db.Model):
    """
    Volunteers and administrators.
    - role ADMIN: full access to applications, shifts, groups and reports.
    - role GROUP_ADMIN: volunteer who also manages one or more groups.
    - role VOLUNTEER: approved volunteer, may sign up for shifts.
    - role PENDING: registered but not yet approved.
    """
    __tablename__ = "users"

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(120), nullable=False)
    email = db.Column(db.String(255), unique=True, nullable=False, index=True)
    phone = db.Column(db.String(30), nullable=True)
    password_hash = db.Column(db.String(255), nullable=False)
    role = db.Column(db.String(20), nullable=False, default=ROLE_PENDING, index=True)
    active = db.Column(db.Boolean, nullable=False, default=True, index=True)
    password_reset_required = db.Column(db.Boolean, default=False)
    failed_login_attempts = db.Column(db.Integer, default=0)
    locked_until = db.Column(db.DateTime, nullable=True)
    last_login = db.Column(db.DateTime, nullable=True)
    profile_image = db.Column(db.Text, nullable=True)  # base64 encoded image data
    profile_image_type = db.Column(db.String(32), nullable=True)
    created_at = db.Column(db.DateTime, default=datetime.utcnow, index=True)
    updated_at = db.Column(db.DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    signups = db.relationship("ShiftSignup", back_populates="user", cascade="all, delete-orphan")
    memberships = db.relationship("GroupMember", back_populates="user", cascade="all, delete-orphan")

    @property
    def is_admin(self) -> bool:
        return self.role == ROLE_ADMIN

    @property
    def is_approved(self) -> bool:
        return self.role != ROLE_PENDING

    def set_password(self, password: str):
        self.password_hash = generate_password_hash(password)

    def check_password(self, password: str) -> bool:
        return check_password_hash(self.password_hash, password)

    def is_locked(self):
        """Check if user account is locked due to failed login attempts."""
        return bool(self.locked_until and self.locked_until > datetime.utcnow())

    def lock_account(self, duration_minutes=15):
        """Lock user account for specified duration."""
        self.locked_until = datetime.utcnow() + timedelta(minutes=duration_minutes)
        db.session.commit()

    def unlock_account(self):
        """Unlock user account and reset failed attempts."""
        self.locked_until = None
        self.failed_login_attempts = 0
        db.session.commit()

    def to_dict(self):
        return {
            "id": self.id,
            "name": self.name,
            "email": self.email,
            "phone": self.phone,
            "role": self.role,
            "active": self.active,
            "password_reset_required": bool(self.password_reset_required),
            "image_url": f"/api/volunteers/{self.id}/image" if self.profile_image else None,
            "created_at": _iso(self.created_at),
            "updated_at": _iso(self.updated_at),
        }


class Application(db.Model):
    """A volunteer application, reviewed by an admin."""
    __tablename__ = "applications"

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey("users.id", ondelete="SET NULL"), nullable=True, index=True)
    name = db.Column(db.String(120), nullable=False)
    email = db.Column(db.String(255), nullable=False, index=True)
    phone = db.Column(db.String(30), nullable=False)
    address = db.Column(db.String(255), nullable=False)
    city = db.Column(db.String(120), nullable=False)
    state = db.Column(db.String(60), nullable=False)
    zip_code = db.Column(db.String(10), nullable=False)
    birthdate = db.Column(db.Date, nullable=False)
    volunteer_type = db.Column(db.String(60), nullable=False)
    covid_vaccinated = db.Column(db.Boolean, default=False)
    criminal_record = db.Column(db.Boolean, default=False)
    criminal_explanation = db.Column(db.Text, nullable=True)
    referral_source = db.Column(db.String(255), nullable=True)
    volunteer_experience = db.Column(db.Text, nullable=True)
    employment_experience = db.Column(db.Text, nullable=True)
    reference = db.Column(db.Text, nullable=False)
    interests = db.Column(db.Text, nullable=True)
    reason_for_volunteering = db.Column(db.Text, nullable=False)
    volunteer_position = db.Column(db.String(120), nullable=False)
    availability = db.Column(db.String(255), nullable=False)
    available_days = db.Column(db.JSON, nullable=False, default=list)
    status = db.Column(db.String(20), nullable=False, default=APPLICATION_PENDING, index=True)
    reviewed_by = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=True)
    reviewed_at = db.Column(db.DateTime, nullable=True)
    rejection_reason = db.Column(db.Text, nullable=True)
    created_at = db.Column(db.DateTime, default=datetime.utcnow, index=True)
    updated_at = db.Column(db.DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    user = db.relationship("User", foreign_keys=[user_id], backref="applications")
    reviewer = db.relationship("User", foreign_keys=[reviewed_by])

    def to_dict(self):
        return {
            "id": self.id,
            "user_id": self.user_id,
            "name": self.name,
            "email": self.email,
            "phone": self.phone,
            "address": self.address,
            "city": self.city,
            "state": self.state,
            "zip_code": self.zip_code,
            "birthdate": _iso(self.birthdate),
            "volunteer_type": self.volunteer_type,
            "covid_vaccinated": self.covid_vaccinated,
            "criminal_record": self.criminal_record,
            "criminal_explanation": self.criminal_explanation,
            "referral_source": self.referral_source,
            "volunteer_experience": self.volunteer_experience,
            "employment_experience": self.employment_experience,
            "reference": self.reference,
            "interests": self.interests,
            "reason_for_volunteering": self.reason_for_volunteering,
            "volunteer_position": self.volunteer_position,
            "availability": self.availability,
            "available_days": self.available_days or [],
            "status": self.status,
            "reviewed_by": self.reviewed_by,
            "reviewed_at": _iso(self.reviewed_at),
            "rejection_reason": self.rejection_reason,
            "created_at": _iso(self.created_at),
            "updated_at": _iso(self.updated_at),
        }


class ApplicationDraft(db.Model):
    """Partially completed application form, one per user."""
    __tablename__ = "application_drafts"

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey("users.id", ondelete="CASCADE"), unique=True, nullable=False)
    form_data = db.Column(db.JSON, nullable=False, default=dict)
    updated_at = db.Column(db.DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)


class Group(db.Model):
    """An organization volunteers can join; hours can be reported per group."""
    __tablename__ = "groups"

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(120), unique=True, nullable=False)
    description = db.Column(db.Text, nullable=True)
    category = db.Column(db.String(60), nullable=True)
    logo_url = db.Column(db.String(500), nullable=True)
    active = db.Column(db.Boolean, nullable=False, default=True, index=True)
    created_by = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=True)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)
    updated_at = db.Column(db.DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    members = db.relationship("GroupMember", back_populates="group", cascade="all, delete-orphan")
    shifts = db.relationship("Shift", back_populates="group")

    @property
    def member_count(self) -> int:
        return len(self.members)

    @property
    def shift_count(self) -> int:
        return len(self.shifts)

    def membership_for(self, user_id):
        return next((m for m in self.members if m.user_id == user_id), None)

    def to_dict(self, include_members=False):
        data = {
            "id": self.id,
            "name": self.name,
            "description": self.description,
            "category": self.category,
            "logo_url": self.logo_url,
            "active": self.active,
            "member_count": self.member_count,
            "shift_count": self.shift_count,
            "created_at": _iso(self.created_at),
            "updated_at": _iso(self.updated_at),
        }
        if include_members:
            data["members"] = [m.to_dict() for m in self.members]
        return data


class GroupMember(db.Model):
    __tablename__ = "group_members"

    id = db.Column(db.Integer, primary_key=True)
    group_id = db.Column(db.Integer, db.ForeignKey("groups.id", ondelete="CASCADE"), nullable=False)
    user_id = db.Column(db.Integer, db.ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    role = db.Column(db.String(20), nullable=False, default=MEMBER_ROLE_MEMBER)
    joined_at = db.Column(db.DateTime, default=datetime.utcnow)

    group = db.relationship("Group", back_populates="members")
    user = db.relationship("User", back_populates="memberships")

    __table_args__ = (db.UniqueConstraint('group_id', 'user_id', name='uq_group_member'),)

    def to_dict(self):
        return {
            "user_id": self.user_id,
            "name": self.user.name if self.user else None,
            "email": self.user.email if self.user else None,
            "role": self.role,
            "joined_at": _iso(self.joined_at),
        }


class Shift(db.Model):
    """
    A scheduled volunteer time slot with a capacity.
    Example: 'Food bank sorting', 2025-12-08 09:00-12:00, 6 volunteers.
    """
    __tablename__ = "shifts"

    id = db.Column(db.Integer, primary_key=True)
    title = db.Column(db.String(255), nullable=False)
    description = db.Column(db.Text, nullable=True)
    location = db.Column(db.String(255), nullable=False)
    start_time = db.Column(db.DateTime, nullable=False, index=True)
    end_time = db.Column(db.DateTime, nullable=False)
    max_volunteers = db.Column(db.Integer, nullable=False, default=1)
    status = db.Column(db.String(20), nullable=False, default=SHIFT_OPEN, index=True)
    group_id = db.Column(db.Integer, db.ForeignKey("groups.id", ondelete="SET NULL"), nullable=True, index=True)
    created_by = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=True)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)
    updated_at = db.Column(db.DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    group = db.relationship("Group", back_populates="shifts")
    signups = db.relationship(
        "ShiftSignup",
        back_populates="shift",
        cascade="all, delete-orphan",
        order_by="ShiftSignup.created_at"
    )
    check_ins = db.relationship("CheckIn", back_populates="shift", cascade="all, delete-orphan")
    logs = db.relationship("VolunteerLog", back_populates="shift")

    @property
    def current_volunteers(self) -> int:
        return len(self.signups)

    @property
    def spots_left(self) -> int:
        return max(0, self.max_volunteers - self.current_volunteers)

    def signup_for(self, user_id):
        return next((s for s in self.signups if s.user_id == user_id), None)

    def is_signed_up(self, user_id) -> bool:
        return self.signup_for(user_id) is not None

    def refresh_status(self):
        self.status = status_for_roster(self.status, self.current_volunteers, self.max_volunteers)

    def to_dict(self, viewer=None, now=None, include_volunteers=False):
        data = {
            "id": self.id,
            "title": self.title,
            "description": self.description,
            "location": self.location,
            "start_time": _iso(self.start_time),
            "end_time": _iso(self.end_time),
            "max_volunteers": self.max_volunteers,
            "current_volunteers": self.current_volunteers,
            "spots_left": self.spots_left,
            "status": self.status,
            "group": {"id": self.group.id, "name": self.group.name} if self.group else None,
        }
        if viewer is not None:
            signed_up = self.is_signed_up(viewer.id)
            data["is_signed_up"] = signed_up
            data["can_cancel"] = signed_up and can_cancel(
                self.start_time, now or get_local_now(), app.config["CANCELLATION_CUTOFF_MINUTES"]
            )
        if include_volunteers:
            data["volunteers"] = [
                {"id": s.user.id, "name": s.user.name, "email": s.user.email}
                for s in self.signups if s.user
            ]
        return data


class ShiftSignup(db.Model):
    """
    The record representing that a volunteer has committed to a shift.
    """
    __tablename__ = "shift_signups"

    id = db.Column(db.Integer, primary_key=True)
    shift_id = db.Column(db.Integer, db.ForeignKey("shifts.id", ondelete="CASCADE"), nullable=False, index=True)
    user_id = db.Column(db.Integer, db.ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)
    reminder_24h_sent_at = db.Column(db.DateTime, nullable=True)
    reminder_1h_sent_at = db.Column(db.DateTime, nullable=True)

    shift = db.relationship("Shift", back_populates="signups")
    user = db.relationship("User", back_populates="signups")

    __table_args__ = (db.UniqueConstraint('shift_id', 'user_id', name='uq_shift_signup'),)


class CheckIn(db.Model):
    """Manual attendance record against a shift."""
    __tablename__ = "check_ins"

    id = db.Column(db.Integer, primary_key=True)
    shift_id = db.Column(db.Integer, db.ForeignKey("shifts.id", ondelete="CASCADE"), nullable=False, index=True)
    user_id = db.Column(db.Integer, db.ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    check_in_time = db.Column(db.DateTime, nullable=False)
    check_out_time = db.Column(db.DateTime, nullable=True, index=True)
    notes = db.Column(db.Text, nullable=True)

    shift = db.relationship("Shift", back_populates="check_ins")
    user = db.relationship("User", backref="check_ins")

    @property
    def duration_minutes(self) -> int:
        return duration_minutes(self.check_in_time, self.check_out_time)

    def to_dict(self):
        return {
            "id": self.id,
            "shift_id": self.shift_id,
            "user_id": self.user_id,
            "check_in_time": _iso(self.check_in_time),
            "check_out_time": _iso(self.check_out_time),
            "duration_minutes": self.duration_minutes if self.check_out_time else None,
            "notes": self.notes,
        }


class VolunteerLog(db.Model):
    """Hours a volunteer served, either logged by hand or recorded at check-out."""
    __tablename__ = "volunteer_logs"

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    group_id = db.Column(db.Integer, db.ForeignKey("groups.id", ondelete="SET NULL"), nullable=True, index=True)
    shift_id = db.Column(db.Integer, db.ForeignKey("shifts.id", ondelete="SET NULL"), nullable=True)
    hours = db.Column(db.Integer, nullable=False, default=0)
    minutes = db.Column(db.Integer, nullable=False, default=0)
    description = db.Column(db.Text, nullable=True)
    date = db.Column(db.Date, nullable=False, index=True)
    approved = db.Column(db.Boolean, nullable=False, default=False, index=True)
    approved_by = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=True)
    approved_at = db.Column(db.DateTime, nullable=True)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)

    user = db.relationship("User", foreign_keys=[user_id], backref="volunteer_logs")
    group = db.relationship("Group")
    shift = db.relationship("Shift", back_populates="logs")

    def to_dict(self):
        return {
            "id": self.id,
            "user_id": self.user_id,
            "user_name": self.user.name if self.user else None,
            "group_id": self.group_id,
            "shift_id": self.shift_id,
            "hours": self.hours,
            "minutes": self.minutes,
            "description": self.description,
            "date": _iso(self.date),
            "approved": self.approved,
            "approved_at": _iso(self.approved_at),
            "created_at": _iso(self.created_at),
        }


class AuditLog(db.Model):
    """
    Audit trail for important security events and administrative actions.
    """
    __tablename__ = "audit_logs"

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=True, index=True)
    action = db.Column(db.String(100), nullable=False, index=True)
    resource_type = db.Column(db.String(50), nullable=True, index=True)
    resource_id = db.Column(db.Integer, nullable=True, index=True)
    ip_address = db.Column(db.String(45), nullable=True)
    user_agent = db.Column(db.Text, nullable=True)
    details = db.Column(db.JSON, nullable=True)
    created_at = db.Column(db.DateTime, default=datetime.utcnow, index=True)

    user = db.relationship("User", backref="audit_logs")

    def to_dict(self):
        return {
            "id": self.id,
            "user_id": self.user_id,
            "action": self.action,
            "resource_type": self.resource_type,
            "resource_id": self.resource_id,
            "details": self.details,
            "created_at": _iso(self.created_at),
        }


# ==========================
# FORMS
# ==========================

class ApiForm(FlaskForm):
    """JSON request bodies are validated through these forms; the session cookie carries auth."""
    class Meta:
        csrf = False


class RegisterForm(ApiForm):
    name = StringField("Name", validators=[DataRequired(), Length(max=120)])
    email = StringField("Email", validators=[DataRequired(), Email(), Length(max=255)])
    password = PasswordField(
        "Password",
        validators=[DataRequired(), Length(min=8, message="At least 8 characters")]
    )
    phone = StringField("Phone", validators=[Optional(), Length(max=30)])


class LoginForm(ApiForm):
    email = StringField("Email", validators=[DataRequired(), Email()])
    password = PasswordField("Password", validators=[DataRequired()])


class ChangePasswordForm(ApiForm):
    current_password = PasswordField("Current Password", validators=[DataRequired()])
    new_password = PasswordField(
        "New Password",
        validators=[DataRequired(), Length(min=8, message="At least 8 characters")]
    )


class ProfileForm(ApiForm):
    name = StringField("Name", validators=[DataRequired(), Length(max=120)])
    phone = StringField("Phone", validators=[Optional(), Length(max=30)])


class ProfileImageForm(ApiForm):
    image = FileField("Profile Image", validators=[
        FileRequired(message="No file provided"),
        FileAllowed(["jpg", "jpeg", "png", "gif"], message="Images only")
    ])


class ApplicationForm(ApiForm):
    name = StringField("Name", validators=[DataRequired(message="Name is required"), Length(max=120)])
    email = StringField("Email", validators=[DataRequired(), Email(message="Invalid email address"), Length(max=255)])
    phone = StringField("Phone", validators=[DataRequired(), Length(min=10, max=30, message="Phone number is required")])
    address = StringField("Address", validators=[DataRequired(message="Address is required"), Length(max=255)])
    city = StringField("City", validators=[DataRequired(message="City is required"), Length(max=120)])
    state = StringField("State", validators=[DataRequired(message="State is required"), Length(max=60)])
    zip_code = StringField("ZIP", validators=[DataRequired(), Regexp(r"^\d{5}(-\d{4})?$", message="Invalid ZIP code")])
    birthdate = DateField("Date of birth", validators=[DataRequired(message="Date of birth is required")], format="%Y-%m-%d")
    volunteer_type = StringField("Volunteer type", validators=[DataRequired(message="Volunteer type is required"), Length(max=60)])
    covid_vaccinated = BooleanField("COVID vaccinated")
    criminal_record = BooleanField("Criminal record")
    criminal_explanation = TextAreaField("Explanation", validators=[Length(max=2000)])
    referral_source = StringField("Referral source", validators=[Optional(), Length(max=255)])
    volunteer_experience = TextAreaField("Volunteer experience", validators=[Optional()])
    employment_experience = TextAreaField("Employment experience", validators=[Optional()])
    reference = TextAreaField("Reference", validators=[DataRequired(message="Reference is required")])
    interests = TextAreaField("Interests", validators=[Optional()])
    reason_for_volunteering = TextAreaField(
        "Reason for volunteering",
        validators=[DataRequired(message="Reason for volunteering is required")]
    )
    volunteer_position = StringField("Position", validators=[DataRequired(message="Volunteer position is required"), Length(max=120)])
    availability = StringField("Availability", validators=[DataRequired(message="Availability is required"), Length(max=255)])
    available_days = SelectMultipleField(
        "Available days",
        choices=[(d, d) for d in WEEKDAYS],
        validators=[DataRequired(message="At least one day must be selected")]
    )

    def validate_criminal_explanation(self, field):
        if self.criminal_record.data and not (field.data or "").strip():
            raise ValidationError("Please explain the criminal record.")


class ShiftForm(ApiForm):
    title = StringField("Shift Title", validators=[DataRequired(), Length(max=255)])
    description = TextAreaField("Description", validators=[Optional()])
    location = StringField("Location", validators=[DataRequired(), Length(max=255)])
    date = DateField("Date", validators=[DataRequired()], format="%Y-%m-%d")
    start_time = TimeField("Start Time", validators=[DataRequired()], format="%H:%M")
    end_time = TimeField("End Time", validators=[DataRequired()], format="%H:%M")
    end_date = DateField("End Date (overnight shifts)", validators=[Optional()], format="%Y-%m-%d")
    max_volunteers = IntegerField("Capacity", validators=[DataRequired(), NumberRange(min=1, max=500)])
    group_id = IntegerField("Group", validators=[Optional()])
    status = StringField("Status", validators=[Optional(), AnyOf([SHIFT_OPEN, SHIFT_CANCELLED])])

    def validate_end_time(self, field):
        if not (self.date.data and self.start_time.data and field.data):
            return
        try:
            compose_shift_window(self.date.data, self.start_time.data, field.data, self.end_date.data)
        except ValueError as e:
            raise ValidationError(str(e))

    def window(self):
        return compose_shift_window(self.date.data, self.start_time.data, self.end_time.data, self.end_date.data)


class CheckInForm(ApiForm):
    shift_id = IntegerField("Shift", validators=[DataRequired(message="Shift ID is required")])
    notes = TextAreaField("Notes", validators=[Optional(), Length(max=1000)])


class CheckOutForm(ApiForm):
    check_in_id = IntegerField("Check-in", validators=[DataRequired(message="Missing required field: check_in_id")])
    notes = TextAreaField("Notes", validators=[Optional(), Length(max=1000)])


class LogHoursForm(ApiForm):
    hours = IntegerField("Hours", default=0, validators=[NumberRange(min=0, max=24)])
    minutes = IntegerField("Minutes", default=0, validators=[NumberRange(min=0, max=59)])
    date = DateField("Date", validators=[DataRequired(message="Date is required")], format="%Y-%m-%d")
    description = TextAreaField("Description", validators=[Optional(), Length(max=1000)])
    group_id = IntegerField("Group", validators=[Optional()])

    def validate_minutes(self, field):
        if not (self.hours.data or 0) and not (field.data or 0):
            raise ValidationError("Log at least one minute of service.")

    def validate_date(self, field):
        if field.data and field.data > get_local_today():
            raise ValidationError("Hours cannot be logged for a future date.")


class GroupForm(ApiForm):
    name = StringField("Group Name", validators=[DataRequired(), Length(max=120)])
    description = TextAreaField("Description", validators=[Optional()])
    category = StringField("Category", validators=[Optional(), Length(max=60)])
    logo_url = StringField("Logo URL", validators=[Optional(), Length(max=500)])


class MemberRoleForm(ApiForm):
    role = StringField("Role", validators=[DataRequired(), AnyOf([MEMBER_ROLE_MEMBER, MEMBER_ROLE_ADMIN])])


class RoleForm(ApiForm):
    role = StringField("Role", validators=[DataRequired(), AnyOf(list(ROLES))])


class RejectForm(ApiForm):
    reason = TextAreaField("Reason", validators=[DataRequired(message="Rejection reason is required")])


class BulkEmailForm(ApiForm):
    subject = StringField("Subject", validators=[DataRequired(), Length(max=255)])
    message = TextAreaField("Message", validators=[DataRequired()])
    recipient_filter = StringField("Recipients", default="all", validators=[Optional(), AnyOf(["all", "active", "group"])])
    group_id = IntegerField("Group", validators=[Optional()])


def form_error(form):
    return jsonify({"error": "validation_error", "errors": form.errors}), 400


# ==========================
# SECURITY FUNCTIONS
# ==========================

def log_audit_event(action, user_id=None, resource_type=None, resource_id=None, details=None):
    """Log security and administrative events."""
    try:
        audit_log = AuditLog(
            user_id=user_id,
            action=action,
            resource_type=resource_type,
            resource_id=resource_id,
            details=details
        )
        if has_request_context():
            audit_log.ip_address = request.environ.get('HTTP_X_FORWARDED_FOR', request.remote_addr)
            audit_log.user_agent = request.environ.get('HTTP_USER_AGENT')
        db.session.add(audit_log)
        db.session.commit()
    except Exception as e:
        db.session.rollback()
        app.logger.warning(f"Failed to log audit event {action}: {e}")


def check_rate_limit(action, user_id, limit_per_hour=10):
    """Simple rate limiting for sensitive actions."""
    cutoff = datetime.utcnow() - timedelta(hours=1)
    recent_attempts = AuditLog.query.filter(
        AuditLog.user_id == user_id,
        AuditLog.action == action,
        AuditLog.created_at > cutoff
    ).count()

    return recent_attempts < limit_per_hour


def generate_temporary_password(length=12):
    alphabet = string.ascii_letters + string.digits
    return ''.join(secrets.choice(alphabet) for _ in range(length))


def normalize_email(raw: str) -> str:
    return (raw or "").strip().lower()


# ==========================
# AUTH HELPERS
# ==========================

def get_current_user():
    user_id = session.get("user_id")
    if not user_id:
        return None
    return db.session.get(User, user_id)


def login_required(view_func):
    @wraps(view_func)
    def wrapper(*args, **kwargs):
        user = get_current_user()
        if not user:
            return jsonify({"error": "login_required"}), 401
        if not user.active:
            session.pop("user_id", None)
            return jsonify({"error": "account_inactive"}), 403
        g.user = user
        return view_func(*args, **kwargs)
    return wrapper


def admin_required(view_func):
    @wraps(view_func)
    @login_required
    def wrapper(*args, **kwargs):
        if not g.user.is_admin:
            return jsonify({"error": "admin_required"}), 403
        return view_func(*args, **kwargs)
    return wrapper


def approved_volunteer_required(view_func):
    """Shift participation is limited to users whose application has been approved."""
    @wraps(view_func)
    @login_required
    def wrapper(*args, **kwargs):
        if not g.user.is_approved:
            return jsonify({"error": "approval_pending"}), 403
        return view_func(*args, **kwargs)
    return wrapper


def can_manage_group(user, group_id) -> bool:
    """Global admins manage every group; otherwise the user needs the group's ADMIN role."""
    if user.is_admin:
        return True
    if not group_id:
        return False
    membership = GroupMember.query.filter_by(
        group_id=group_id, user_id=user.id, role=MEMBER_ROLE_ADMIN
    ).first()
    return membership is not None


def can_manage_shift(user, shift) -> bool:
    return can_manage_group(user, shift.group_id)


# ==========================
# CACHED QUERIES
# ==========================

@cache.memoize(timeout=300)
def get_active_groups_cached():
    """Active groups with their counts, as plain dicts."""
    groups = Group.query.filter_by(active=True).order_by(Group.name.asc()).all()
    return [group.to_dict() for group in groups]


@cache.memoize(timeout=600)
def get_admin_stats_cached():
    """Admin dashboard counters."""
    now = get_local_now()
    month_start = datetime(now.year, now.month, 1)
    volunteer_roles = (ROLE_VOLUNTEER, ROLE_GROUP_ADMIN)

    total_volunteers = User.query.filter(User.role.in_(volunteer_roles)).count()

    shift_user_ids = {
        row.user_id for row in
        db.session.query(ShiftSignup.user_id).join(Shift, ShiftSignup.shift_id == Shift.id).filter(Shift.start_time >= month_start)
    }
    log_user_ids = {
        row.user_id for row in
        db.session.query(VolunteerLog.user_id).filter(VolunteerLog.date >= month_start.date())
    }
    active_ids = shift_user_ids | log_user_ids
    active_volunteers = User.query.filter(
        User.role.in_(volunteer_roles), User.id.in_(list(active_ids))
    ).count() if active_ids else 0

    upcoming = Shift.query.filter(Shift.start_time >= now).all()
    total_hours = hours_total(VolunteerLog.query.filter_by(approved=True).all())

    return {
        "total_volunteers": total_volunteers,
        "active_volunteers": active_volunteers,
        "total_shifts": Shift.query.count(),
        "upcoming_shifts": len(upcoming),
        "total_hours": round(total_hours, 2),
        "pending_approvals": VolunteerLog.query.filter_by(approved=False).count(),
        "vacant_shifts": sum(1 for s in upcoming if is_vacant(s, now)),
        "pending_applications": Application.query.filter_by(status=APPLICATION_PENDING).count(),
    }


def invalidate_caches():
    """Invalidate cached lists and counters after a write."""
    cache.delete_memoized(get_active_groups_cached)
    cache.delete_memoized(get_admin_stats_cached)


# ==========================
# EMAIL / CALENDAR
# ==========================

def send_email(to, subject, body, ical_attachment=None, ical_filename=None):
    """Send an email using Flask-Mail with optional iCal attachment."""
    msg = Message(subject, recipients=[to], body=body)

    if ical_attachment and ical_filename:
        msg.attach(ical_filename, "text/calendar", ical_attachment)

    try:
        mail.send(msg)
        return True
    except Exception as e:
        app.logger.error(f"Email send to {to} failed: {e}")
        return False


def _shift_when(shift):
    return (
        f"{shift.start_time.strftime('%A, %B %d, %Y')} "
        f"{shift.start_time.strftime('%I:%M %p')} - {shift.end_time.strftime('%I:%M %p')}"
    )


def generate_shift_ical(shift, volunteer_name=None):
    """Generate iCal data for a single shift, with 24h and 1h alarms."""
    cal = Calendar()
    cal.add('prodid', '-//Volunteer Portal//Shift Scheduler//EN')
    cal.add('version', '2.0')
    cal.add('method', 'REQUEST')

    event = Event()
    event.add('summary', f"Volunteer shift: {shift.title}")
    event.add('description', f"""You are signed up for this shift.

Shift: {shift.title}
Location: {shift.location}
Description: {shift.description or 'No description'}

Please check in when you arrive.""")
    event.add('dtstart', shift.start_time)
    event.add('dtend', shift.end_time)
    event.add('location', shift.location)
    event.add('uid', f"shift-{shift.id}@volunteerportal.org")
    if volunteer_name:
        event.add('attendee', volunteer_name)

    alarm_24h = Alarm()
    alarm_24h.add('action', 'DISPLAY')
    alarm_24h.add('description', f'Reminder: {shift.title} tomorrow')
    alarm_24h.add('trigger', timedelta(hours=-24))
    event.add_component(alarm_24h)

    alarm_1h = Alarm()
    alarm_1h.add('action', 'DISPLAY')
    alarm_1h.add('description', f'Starting soon: {shift.title} in 1 hour')
    alarm_1h.add('trigger', timedelta(hours=-1))
    event.add_component(alarm_1h)

    cal.add_component(event)
    return cal.to_ical()


def build_shifts_calendar(shifts, name, uid_prefix="shift", with_alarms=False):
    cal = Calendar()
    cal.add('prodid', '-//Volunteer Portal//volunteerportal.org//')
    cal.add('version', '2.0')
    cal.add('x-wr-calname', name)

    for s in shifts:
        event = Event()
        event.add('summary', s.title)
        event.add('dtstart', s.start_time)
        event.add('dtend', s.end_time)
        event.add('location', s.location)
        event.add('description', f"{s.description or ''}\n\n{s.current_volunteers}/{s.max_volunteers} volunteers")
        event.add('uid', f"{uid_prefix}-{s.id}@volunteerportal.org")
        if with_alarms:
            alarm = Alarm()
            alarm.add('action', 'DISPLAY')
            alarm.add('description', f'Reminder: {s.title} tomorrow')
            alarm.add('trigger', timedelta(hours=-24))
            event.add_component(alarm)

            alarm2 = Alarm()
            alarm2.add('action', 'DISPLAY')
            alarm2.add('description', f'Reminder: {s.title} in 1 hour')
            alarm2.add('trigger', timedelta(hours=-1))
            event.add_component(alarm2)
        cal.add_component(event)
    return cal.to_ical()


def ics_response(payload, filename):
    response = make_response(payload)
    response.headers['Content-Type'] = 'text/calendar; charset=utf-8'
    response.headers['Content-Disposition'] = f'attachment; filename={filename}'
    return response


def csv_response(payload, filename):
    response = make_response(payload)
    response.headers['Content-Type'] = 'text/csv; charset=utf-8'
    response.headers['Content-Disposition'] = f'attachment; filename={filename}'
    return response


def send_shift_confirmation(signup):
    """Send confirmation email when someone signs up for a shift."""
    shift = signup.shift
    volunteer = signup.user
    cutoff = app.config["CANCELLATION_CUTOFF_MINUTES"]

    subject = f"Confirmed: {shift.title}"
    body = f"""Hi {volunteer.name},

You're signed up for this shift:

  {shift.title}
  {_shift_when(shift)}
  Location: {shift.location}

What happens next:
- You'll get a reminder 24 hours before and again 1 hour before the shift
- Check in when you arrive so your hours are recorded
- Need to cancel? You can do so up to {cutoff} minutes before the start

An iCal event is attached to this email - add it to your calendar!

Thank you for volunteering!

- Volunteer Portal
"""
    ical_data = generate_shift_ical(shift, volunteer.name)
    ical_filename = f"shift_{shift.start_time.strftime('%Y%m%d')}_{shift.id}.ics"
    return send_email(volunteer.email, subject, body, ical_data, ical_filename)


def send_shift_cancellation(volunteer, shift):
    subject = f"Cancelled: {shift.title}"
    body = f"""Hi {volunteer.name},

Your registration for the following shift has been cancelled:

  {shift.title}
  {_shift_when(shift)}
  Location: {shift.location}

We hope to see you at another shift soon.

- Volunteer Portal
"""
    return send_email(volunteer.email, subject, body)


def send_shift_cancelled_notice(volunteer, shift):
    """Tell a rostered volunteer that the organizers cancelled the shift."""
    subject = f"Shift cancelled: {shift.title}"
    body = f"""Hi {volunteer.name},

Unfortunately the following shift has been cancelled by the organizers:

  {shift.title}
  {_shift_when(shift)}
  Location: {shift.location}

No action is needed on your part. Browse the open shifts to find another slot.

- Volunteer Portal
"""
    return send_email(volunteer.email, subject, body)


def send_shift_reminder(signup, label):
    """Send the 24h or 1h reminder for one signup."""
    shift = signup.shift
    volunteer = signup.user
    if label == "24h":
        subject = f"Reminder: {shift.title} is tomorrow"
        timing_text = "tomorrow"
    else:
        subject = f"Starting soon: {shift.title} in 1 hour"
        timing_text = "in about 1 hour"

    body = f"""Hi {volunteer.name},

Your volunteer shift starts {timing_text}:

  {shift.title}
  {_shift_when(shift)}
  Location: {shift.location}
  {shift.description or ''}

Remember to check in when you arrive.

- Volunteer Portal
"""
    ical_data = generate_shift_ical(shift, volunteer.name)
    return send_email(volunteer.email, subject, body, ical_data, f"shift_{shift.id}_reminder.ics")


def send_application_received(application):
    subject = "We received your volunteer application"
    body = f"""Hi {application.name},

Thank you for applying to volunteer with us as {application.volunteer_position}.
Our team will review your application and get back to you soon.

- Volunteer Portal
"""
    return send_email(application.email, subject, body)


def send_application_approved(application, temporary_password=None):
    subject = "Your volunteer application has been approved"
    body = f"""Hi {application.name},

Great news! Your application has been approved. You can now sign up for shifts.
"""
    if temporary_password:
        body += f"""
An account has been created for you:
  Email: {application.email}
  Temporary password: {temporary_password}

You will be asked to choose a new password when you first log in.
"""
    body += "\nWelcome aboard!\n\n- Volunteer Portal\n"
    return send_email(application.email, subject, body)


def send_application_rejected(application, reason):
    subject = "Update on your volunteer application"
    body = f"""Hi {application.name},

Thank you for your interest in volunteering. After review we are unable to
approve your application at this time.

Reason: {reason}

- Volunteer Portal
"""
    return send_email(application.email, subject, body)


# ==========================
# BACKGROUND JOBS
# ==========================

REMINDER_WINDOWS = (
    ("24h", timedelta(hours=23), timedelta(hours=25), "reminder_24h_sent_at"),
    ("1h", timedelta(minutes=55), timedelta(minutes=65), "reminder_1h_sent_at"),
)


def send_shift_reminders(now=None):
    """Send 24h and 1h reminders; each signup gets each reminder at most once."""
    now = now or get_local_now()
    sent_count = 0

    for label, lead_min, lead_max, sent_column in REMINDER_WINDOWS:
        shifts = (
            Shift.query
            .filter(
                Shift.start_time >= now + lead_min,
                Shift.start_time <= now + lead_max,
                Shift.status.in_([SHIFT_OPEN, SHIFT_FULL])
            )
            .options(db.selectinload(Shift.signups).joinedload(ShiftSignup.user))
            .all()
        )
        for shift in shifts:
            for signup in shift.signups:
                if getattr(signup, sent_column):
                    continue
                if send_shift_reminder(signup, label):
                    setattr(signup, sent_column, datetime.utcnow())
                    sent_count += 1
                    app.logger.info(f"Sent {label} reminder for shift {shift.id} to user {signup.user_id}")

    db.session.commit()
    return sent_count


def mark_completed_shifts(now=None):
    """Close out shifts whose end time has passed."""
    now = now or get_local_now()
    finished = Shift.query.filter(
        Shift.end_time < now,
        Shift.status.in_([SHIFT_OPEN, SHIFT_FULL])
    ).all()
    for shift in finished:
        shift.status = SHIFT_COMPLETED
    if finished:
        db.session.commit()
        invalidate_caches()
        app.logger.info(f"Marked {len(finished)} shifts completed")
    return len(finished)


def send_open_shift_digest(now=None):
    """Weekly email listing shifts that still need volunteers."""
    now = now or get_local_now()
    horizon = now + timedelta(days=app.config["OPEN_SHIFT_DIGEST_DAYS"])
    candidates = (
        Shift.query
        .filter(Shift.start_time > now, Shift.start_time <= horizon)
        .order_by(Shift.start_time.asc())
        .all()
    )
    shifts = [s for s in candidates if is_available(s, now)]
    if not shifts:
        return 0

    users = User.query.filter(
        User.active == True,  # noqa: E712
        User.role.in_([ROLE_VOLUNTEER, ROLE_GROUP_ADMIN])
    ).all()
    subject = "Open volunteer shifts this week"
    body = """Hello,

These shifts still need volunteers. Sign up in the volunteer portal:

"""
    for s in shifts:
        body += f"- {s.title} on {s.start_time.strftime('%A, %B %d')} at {s.start_time.strftime('%I:%M %p')} ({s.spots_left} spots left)\n"
    body += "\nThank you for your service!\n\n- Volunteer Portal"

    sent = 0
    for user in users:
        if send_email(user.email, subject, body):
            sent += 1
    return sent


def run_scheduled_jobs():
    """Reminder sweep plus shift completion, inside an app context."""
    with app.app_context():
        reminders = send_shift_reminders()
        completed = mark_completed_shifts()
        return reminders, completed


def run_weekly_digest():
    with app.app_context():
        return send_open_shift_digest()


def start_dev_scheduler():
    """Start the in-process scheduler used by ``python app.py``.

    Never called on import, so worker processes that import this module
    only run the jobs from their own scheduler.
    """
    global scheduler
    if scheduler is not None:
        return scheduler

    scheduler = BackgroundScheduler(timezone=app.config["APP_TIMEZONE"])
    scheduler.add_job(
        run_scheduled_jobs,
        'interval',
        minutes=5,
        id='shift-reminder-sweep',
        replace_existing=True
    )
    scheduler.add_job(
        run_weekly_digest,
        CronTrigger(day_of_week='sun', hour=10),
        id='weekly-open-shifts',
        replace_existing=True
    )
    scheduler.start()
    app.logger.info("In-process scheduler started")
    return scheduler


# ==========================
# ROUTES: HEALTH / AUTH
# ==========================

@app.route("/api/health")
def health_check():
    """Health check endpoint for monitoring."""
    try:
        db.session.execute(db.text('SELECT 1'))
        db_status = "ok"
    except Exception as e:
        app.logger.error(f"Health check database error: {e}")
        db_status = "error"
    status_code = 200 if db_status == "ok" else 503
    return jsonify({
        "status": "ok" if db_status == "ok" else "degraded",
        "database": db_status,
        "timestamp": datetime.utcnow().isoformat()
    }), status_code


@app.route("/api/auth/register", methods=["POST"])
def api_register():
    if not app.config.get("REGISTRATION_ENABLED", True):
        return jsonify({"error": "registration_disabled"}), 403

    form = RegisterForm()
    if not form.validate_on_submit():
        return form_error(form)

    email = normalize_email(form.email.data)
    if User.query.filter_by(email=email).first():
        return jsonify({"error": "email_taken"}), 409

    user = User(
        name=form.name.data.strip(),
        email=email,
        phone=(form.phone.data or "").strip() or None,
        role=ROLE_PENDING,
        active=True
    )
    user.set_password(form.password.data)
    db.session.add(user)
    try:
        db.session.commit()
    except IntegrityError:
        db.session.rollback()
        return jsonify({"error": "email_taken"}), 409

    session["user_id"] = user.id
    log_audit_event('user_registered', user_id=user.id, resource_type='user', resource_id=user.id)
    invalidate_caches()
    app.logger.info(f"New registration: {email}")
    return jsonify({"user": user.to_dict()}), 201


@app.route("/api/auth/login", methods=["POST"])
def api_login():
    form = LoginForm()
    if not form.validate_on_submit():
        return form_error(form)

    email = normalize_email(form.email.data)
    user = User.query.filter_by(email=email).first()

    if not user:
        log_audit_event('login_attempt_invalid_user', details={'email': email})
        return jsonify({"error": "invalid_credentials"}), 401

    if not user.active:
        log_audit_event('login_attempt_inactive_user', user_id=user.id)
        return jsonify({"error": "account_inactive"}), 403

    lockout_enabled = app.config.get('ENABLE_ACCOUNT_LOCKOUT', True)
    if lockout_enabled and user.is_locked():
        log_audit_event('login_attempt_locked_account', user_id=user.id)
        return jsonify({
            "error": "account_locked",
            "locked_until": _iso(user.locked_until)
        }), 423

    if user.check_password(form.password.data):
        user.failed_login_attempts = 0
        user.locked_until = None
        user.last_login = datetime.utcnow()
        db.session.commit()

        session["user_id"] = user.id
        log_audit_event('login_success', user_id=user.id)
        return jsonify({
            "user": user.to_dict(),
            "password_reset_required": bool(user.password_reset_required)
        })

    user.failed_login_attempts = (user.failed_login_attempts or 0) + 1
    max_attempts = app.config.get('MAX_FAILED_LOGIN_ATTEMPTS', 5)
    if lockout_enabled and user.failed_login_attempts >= max_attempts:
        user.lock_account(app.config.get('LOCKOUT_MINUTES', 15))
        log_audit_event('account_locked', user_id=user.id,
                        details={'failed_attempts': user.failed_login_attempts})
        app.logger.warning(f"Account locked after failed logins: {email}")
        return jsonify({
            "error": "account_locked",
            "locked_until": _iso(user.locked_until)
        }), 423

    db.session.commit()
    log_audit_event('login_failed', user_id=user.id,
                    details={'failed_attempts': user.failed_login_attempts})
    return jsonify({
        "error": "invalid_credentials",
        "attempts_remaining": max(0, max_attempts - user.failed_login_attempts)
    }), 401


@app.route("/api/auth/logout", methods=["POST"])
def api_logout():
    user_id = session.pop("user_id", None)
    if user_id:
        log_audit_event('logout', user_id=user_id)
    return jsonify({"ok": True})


@app.route("/api/auth/me")
@login_required
def api_me():
    user = g.user
    data = user.to_dict()
    data["groups"] = [
        {"id": m.group.id, "name": m.group.name, "role": m.role}
        for m in user.memberships if m.group and m.group.active
    ]
    return jsonify({"user": data})


@app.route("/api/auth/change-password", methods=["POST"])
@login_required
def api_change_password():
    user = g.user
    form = ChangePasswordForm()
    if not form.validate_on_submit():
        return form_error(form)

    if not user.check_password(form.current_password.data):
        log_audit_event('password_change_failed', user_id=user.id)
        return jsonify({"error": "invalid_current_password"}), 400

    user.set_password(form.new_password.data)
    user.password_reset_required = False
    db.session.commit()
    log_audit_event('password_changed', user_id=user.id)
    return jsonify({"ok": True})


# ==========================
# ROUTES: APPLICATIONS
# ==========================

@app.route("/api/applications", methods=["POST"])
def api_submit_application():
    form = ApplicationForm()
    if not form.validate_on_submit():
        return form_error(form)

    email = normalize_email(form.email.data)
    pending = Application.query.filter_by(email=email, status=APPLICATION_PENDING).first()
    if pending:
        return jsonify({"error": "application_pending", "application_id": pending.id}), 409

    current = get_current_user()
    linked_user = current if current and current.email == email else User.query.filter_by(email=email).first()

    application = Application(
        user_id=linked_user.id if linked_user else None,
        name=form.name.data.strip(),
        email=email,
        phone=form.phone.data.strip(),
        address=form.address.data.strip(),
        city=form.city.data.strip(),
        state=form.state.data.strip(),
        zip_code=form.zip_code.data.strip(),
        birthdate=form.birthdate.data,
        volunteer_type=form.volunteer_type.data,
        covid_vaccinated=form.covid_vaccinated.data,
        criminal_record=form.criminal_record.data,
        criminal_explanation=form.criminal_explanation.data or None,
        referral_source=form.referral_source.data or None,
        volunteer_experience=form.volunteer_experience.data or None,
        employment_experience=form.employment_experience.data or None,
        reference=form.reference.data,
        interests=form.interests.data or None,
        reason_for_volunteering=form.reason_for_volunteering.data,
        volunteer_position=form.volunteer_position.data,
        availability=form.availability.data,
        available_days=list(form.available_days.data),
        status=APPLICATION_PENDING
    )
    try:
        db.session.add(application)
        if linked_user:
            ApplicationDraft.query.filter_by(user_id=linked_user.id).delete()
        db.session.commit()
    except Exception as e:
        db.session.rollback()
        app.logger.error(f"Error saving application for {email}: {e}")
        return jsonify({"error": "server_error"}), 500

    log_audit_event('application_submitted', user_id=application.user_id,
                    resource_type='application', resource_id=application.id)
    invalidate_caches()
    send_application_received(application)
    return jsonify({"application": application.to_dict()}), 201


def _owns_application(user, application):
    return application.user_id == user.id or application.email == user.email


@app.route("/api/applications/mine")
@login_required
def api_my_applications():
    user = g.user
    applications = (
        Application.query
        .filter(db.or_(Application.user_id == user.id, Application.email == user.email))
        .order_by(Application.created_at.desc())
        .all()
    )
    return jsonify({"applications": [a.to_dict() for a in applications]})


@app.route("/api/applications/<int:application_id>/withdraw", methods=["POST"])
@login_required
def api_withdraw_application(application_id):
    user = g.user
    application = db.get_or_404(Application, application_id)
    if not _owns_application(user, application):
        return jsonify({"error": "forbidden"}), 403
    if application.status != APPLICATION_PENDING:
        return jsonify({"error": "not_pending"}), 409

    application.status = APPLICATION_WITHDRAWN
    db.session.commit()
    log_audit_event('application_withdrawn', user_id=user.id,
                    resource_type='application', resource_id=application.id)
    invalidate_caches()
    return jsonify({"application": application.to_dict()})


@app.route("/api/applications/draft", methods=["GET", "PUT"])
@login_required
def api_application_draft():
    user = g.user
    draft = ApplicationDraft.query.filter_by(user_id=user.id).first()

    if request.method == "GET":
        return jsonify({
            "form_data": draft.form_data if draft else None,
            "updated_at": _iso(draft.updated_at) if draft else None
        })

    payload = request.get_json(silent=True) or {}
    form_data = payload.get("form_data")
    if not isinstance(form_data, dict):
        return jsonify({"error": "invalid_form_data"}), 400

    if draft is None:
        draft = ApplicationDraft(user_id=user.id, form_data=form_data)
        db.session.add(draft)
    else:
        draft.form_data = form_data
        draft.updated_at = datetime.utcnow()
    db.session.commit()
    return jsonify({"ok": True, "updated_at": _iso(draft.updated_at)})


@app.route("/api/admin/applications")
@admin_required
def api_admin_applications():
    status = (request.args.get("status") or "").upper()
    query = Application.query
    if status:
        if status not in APPLICATION_STATUSES:
            return jsonify({"error": "invalid_status"}), 400
        query = query.filter_by(status=status)
    applications = query.order_by(Application.created_at.desc()).all()
    page = paginate(applications, request.args.get("page", 1), request.args.get("per_page", 20))
    return jsonify({
        "applications": [a.to_dict() for a in page["items"]],
        "page": page["page"],
        "per_page": page["per_page"],
        "total": page["total"],
        "pages": page["pages"],
    })


@app.route("/api/admin/applications/<int:application_id>/approve", methods=["POST"])
@admin_required
def api_approve_application(application_id):
    reviewer = g.user
    application = db.get_or_404(Application, application_id)
    if application.status != APPLICATION_PENDING:
        return jsonify({"error": "not_pending"}), 409

    temporary_password = None
    user = application.user or User.query.filter_by(email=application.email).first()
    if user is None:
        temporary_password = generate_temporary_password()
        user = User(
            name=application.name,
            email=application.email,
            phone=application.phone,
            role=ROLE_VOLUNTEER,
            active=True,
            password_reset_required=True
        )
        user.set_password(temporary_password)
        db.session.add(user)
    elif user.role == ROLE_PENDING:
        user.role = ROLE_VOLUNTEER

    application.user = user
    application.status = APPLICATION_APPROVED
    application.reviewed_by = reviewer.id
    application.reviewed_at = datetime.utcnow()
    try:
        db.session.commit()
    except Exception as e:
        db.session.rollback()
        app.logger.error(f"Error approving application {application_id}: {e}")
        return jsonify({"error": "server_error"}), 500

    log_audit_event('application_approved', user_id=reviewer.id,
                    resource_type='application', resource_id=application.id,
                    details={'volunteer_id': user.id, 'account_created': temporary_password is not None})
    invalidate_caches()
    send_application_approved(application, temporary_password)
    return jsonify({
        "application": application.to_dict(),
        "user": user.to_dict(),
        "account_created": temporary_password is not None
    })


@app.route("/api/admin/applications/<int:application_id>/reject", methods=["POST"])
@admin_required
def api_reject_application(application_id):
    reviewer = g.user
    application = db.get_or_404(Application, application_id)
    if application.status != APPLICATION_PENDING:
        return jsonify({"error": "not_pending"}), 409

    form = RejectForm()
    if not form.validate_on_submit():
        return form_error(form)

    application.status = APPLICATION_REJECTED
    application.rejection_reason = form.reason.data.strip()
    application.reviewed_by = reviewer.id
    application.reviewed_at = datetime.utcnow()
    db.session.commit()

    log_audit_event('application_rejected', user_id=reviewer.id,
                    resource_type='application', resource_id=application.id)
    invalidate_caches()
    send_application_rejected(application, application.rejection_reason)
    return jsonify({"application": application.to_dict()})


# ==========================
# ROUTES: SHIFTS
# ==========================

def _parse_date_arg(name):
    """Parse a YYYY-MM-DD query argument. Returns (date_or_None, error_response_or_None)."""
    raw = request.args.get(name)
    if not raw:
        return None, None
    try:
        return datetime.strptime(raw, "%Y-%m-%d").date(), None
    except ValueError:
        return None, (jsonify({"error": "invalid_date", "field": name}), 400)


def _page_payload(page, key, serialize):
    return {
        key: [serialize(item) for item in page["items"]],
        "page": page["page"],
        "per_page": page["per_page"],
        "total": page["total"],
        "pages": page["pages"],
    }


@app.route("/api/shifts")
@login_required
def api_shifts():
    user = g.user
    now = get_local_now()
    on_date, error = _parse_date_arg("date")
    if error:
        return error

    query = Shift.query.options(db.selectinload(Shift.signups), db.joinedload(Shift.group))
    group_id = request.args.get("group_id", type=int)
    if group_id:
        query = query.filter(Shift.group_id == group_id)

    try:
        shifts = filter_shifts(
            query.all(),
            request.args.get("filter", "upcoming"),
            now=now,
            on_date=on_date,
            search=request.args.get("search")
        )
    except ValueError:
        return jsonify({"error": "invalid_filter"}), 400

    page = paginate(shifts, request.args.get("page", 1), request.args.get("per_page", 20))
    return jsonify(_page_payload(page, "shifts", lambda s: s.to_dict(viewer=user, now=now)))


@app.route("/api/shifts/<int:shift_id>")
@login_required
def api_shift_detail(shift_id):
    user = g.user
    shift = db.get_or_404(Shift, shift_id)
    data = shift.to_dict(viewer=user, include_volunteers=True)
    data["can_manage"] = can_manage_shift(user, shift)
    return jsonify({"shift": data})


@app.route("/api/shifts", methods=["POST"])
@login_required
def api_create_shift():
    user = g.user
    form = ShiftForm()
    if not form.validate_on_submit():
        return form_error(form)

    group_id = form.group_id.data or None
    if group_id and not db.session.get(Group, group_id):
        return jsonify({"error": "group_not_found"}), 404
    if not can_manage_group(user, group_id):
        return jsonify({"error": "forbidden"}), 403

    start_dt, end_dt = form.window()
    shift = Shift(
        title=form.title.data.strip(),
        description=form.description.data or None,
        location=form.location.data.strip(),
        start_time=start_dt,
        end_time=end_dt,
        max_volunteers=form.max_volunteers.data,
        group_id=group_id,
        status=SHIFT_OPEN,
        created_by=user.id
    )
    try:
        db.session.add(shift)
        db.session.commit()
    except Exception as e:
        db.session.rollback()
        app.logger.error(f"Error creating shift: {e}")
        return jsonify({"error": "server_error"}), 500

    log_audit_event('shift_created', user_id=user.id, resource_type='shift', resource_id=shift.id)
    invalidate_caches()
    app.logger.info(f"Shift {shift.id} created by user {user.id}")
    return jsonify({"shift": shift.to_dict(viewer=user)}), 201


@app.route("/api/shifts/<int:shift_id>", methods=["PUT"])
@login_required
def api_update_shift(shift_id):
    user = g.user
    shift = db.get_or_404(Shift, shift_id)
    if not can_manage_shift(user, shift):
        return jsonify({"error": "forbidden"}), 403

    form = ShiftForm()
    if not form.validate_on_submit():
        return form_error(form)

    group_id = form.group_id.data or None
    if group_id != shift.group_id:
        if group_id and not db.session.get(Group, group_id):
            return jsonify({"error": "group_not_found"}), 404
        if not can_manage_group(user, group_id):
            return jsonify({"error": "forbidden"}), 403

    if form.max_volunteers.data < shift.current_volunteers:
        return jsonify({
            "error": "capacity_below_signups",
            "current_volunteers": shift.current_volunteers
        }), 409

    start_dt, end_dt = form.window()
    shift.title = form.title.data.strip()
    shift.description = form.description.data or None
    shift.location = form.location.data.strip()
    shift.start_time = start_dt
    shift.end_time = end_dt
    shift.max_volunteers = form.max_volunteers.data
    shift.group_id = group_id

    newly_cancelled = False
    requested_status = form.status.data or None
    if requested_status == SHIFT_CANCELLED and shift.status != SHIFT_CANCELLED:
        shift.status = SHIFT_CANCELLED
        newly_cancelled = True
    elif requested_status == SHIFT_OPEN and shift.status == SHIFT_CANCELLED:
        shift.status = status_for_roster(SHIFT_OPEN, shift.current_volunteers, shift.max_volunteers)
    else:
        shift.refresh_status()

    try:
        db.session.commit()
    except Exception as e:
        db.session.rollback()
        app.logger.error(f"Error updating shift {shift_id}: {e}")
        return jsonify({"error": "server_error"}), 500

    log_audit_event('shift_cancelled' if newly_cancelled else 'shift_updated', user_id=user.id,
                    resource_type='shift', resource_id=shift.id)
    invalidate_caches()

    if newly_cancelled:
        for signup in shift.signups:
            if signup.user:
                send_shift_cancelled_notice(signup.user, shift)

    return jsonify({"shift": shift.to_dict(viewer=user, include_volunteers=True)})


@app.route("/api/shifts/<int:shift_id>", methods=["DELETE"])
@admin_required
def api_delete_shift(shift_id):
    shift = db.get_or_404(Shift, shift_id)
    title = shift.title
    try:
        db.session.delete(shift)
        db.session.commit()
    except Exception as e:
        db.session.rollback()
        app.logger.error(f"Error deleting shift {shift_id}: {e}")
        return jsonify({"error": "server_error"}), 500

    log_audit_event('shift_deleted', user_id=g.user.id, resource_type='shift',
                    resource_id=shift_id, details={'title': title})
    invalidate_caches()
    return jsonify({"ok": True})


@app.route("/api/shifts/<int:shift_id>/signup", methods=["POST"])
@approved_volunteer_required
def api_shift_signup(shift_id):
    user = g.user
    shift = db.get_or_404(Shift, shift_id)
    now = get_local_now()

    if shift.status in (SHIFT_CANCELLED, SHIFT_COMPLETED):
        return jsonify({"error": "shift_not_open"}), 409
    if shift.start_time <= now:
        return jsonify({"error": "shift_started"}), 409
    if shift.is_signed_up(user.id):
        return jsonify({"error": "already_signed_up"}), 409
    if shift.current_volunteers >= shift.max_volunteers:
        return jsonify({"error": "shift_full"}), 409

    signup = ShiftSignup(shift=shift, user=user)
    db.session.add(signup)
    shift.refresh_status()
    try:
        db.session.commit()
    except IntegrityError:
        db.session.rollback()
        return jsonify({"error": "already_signed_up"}), 409

    log_audit_event('shift_signup', user_id=user.id, resource_type='shift', resource_id=shift.id)
    invalidate_caches()
    send_shift_confirmation(signup)
    return jsonify({"ok": True, "shift": shift.to_dict(viewer=user, now=now)})


@app.route("/api/shifts/<int:shift_id>/cancel", methods=["POST"])
@login_required
def api_shift_cancel(shift_id):
    user = g.user
    shift = db.get_or_404(Shift, shift_id)
    now = get_local_now()

    signup = shift.signup_for(user.id)
    if signup is None:
        return jsonify({"error": "not_signed_up"}), 404

    cutoff = app.config["CANCELLATION_CUTOFF_MINUTES"]
    if not can_cancel(shift.start_time, now, cutoff):
        return jsonify({
            "error": "cancellation_window_closed",
            "cutoff_minutes": cutoff
        }), 400

    shift.signups.remove(signup)
    shift.refresh_status()
    db.session.commit()

    log_audit_event('shift_signup_cancelled', user_id=user.id, resource_type='shift', resource_id=shift.id)
    invalidate_caches()
    send_shift_cancellation(user, shift)
    return jsonify({"ok": True, "shift": shift.to_dict(viewer=user, now=now)})


@app.route("/api/shifts/<int:shift_id>/volunteers/<int:user_id>", methods=["DELETE"])
@login_required
def api_remove_volunteer(shift_id, user_id):
    manager = g.user
    shift = db.get_or_404(Shift, shift_id)
    if not can_manage_shift(manager, shift):
        return jsonify({"error": "forbidden"}), 403

    signup = shift.signup_for(user_id)
    if signup is None:
        return jsonify({"error": "not_signed_up"}), 404

    volunteer = signup.user
    shift.signups.remove(signup)
    shift.refresh_status()
    db.session.commit()

    log_audit_event('shift_volunteer_removed', user_id=manager.id, resource_type='shift',
                    resource_id=shift.id, details={'volunteer_id': user_id})
    invalidate_caches()
    if volunteer:
        send_shift_cancellation(volunteer, shift)
    return jsonify({"ok": True, "shift": shift.to_dict(include_volunteers=True)})


@app.route("/api/shifts/my")
@login_required
def api_my_shifts():
    user = g.user
    now = get_local_now()
    bucket = request.args.get("filter", "upcoming")
    if bucket not in ("upcoming", "past", "all"):
        return jsonify({"error": "invalid_filter"}), 400

    shifts = [s.shift for s in ShiftSignup.query.filter_by(user_id=user.id).all()]
    shifts = filter_shifts(shifts, bucket, now=now)
    if bucket == "past":
        shifts.reverse()
    return jsonify({"shifts": [s.to_dict(viewer=user, now=now) for s in shifts]})


@app.route("/api/shifts/reminders", methods=["POST"])
def api_trigger_reminders():
    """External cron trigger for the reminder sweep."""
    expected = app.config.get("REMINDERS_TOKEN")
    auth_header = request.headers.get("Authorization", "")
    token = auth_header[7:] if auth_header.startswith("Bearer ") else None
    if not expected or not token or not secrets.compare_digest(token, expected):
        return jsonify({"error": "unauthorized"}), 401

    reminders_sent = send_shift_reminders()
    completed = mark_completed_shifts()
    app.logger.info(f"Reminder trigger: {reminders_sent} reminders sent, {completed} shifts completed")
    return jsonify({"reminders_sent": reminders_sent, "shifts_completed": completed})


@app.route("/calendar.ics")
def calendar_ics():
    now = get_local_now()
    shifts = filter_shifts(Shift.query.all(), "available", now=now)
    return ics_response(build_shifts_calendar(shifts, "Open volunteer shifts"), "volunteer_shifts.ics")


@app.route("/my-calendar.ics")
@login_required
def my_calendar_ics():
    user = g.user
    now = get_local_now()
    shifts = [s.shift for s in ShiftSignup.query.filter_by(user_id=user.id).all()]
    shifts = [s for s in filter_shifts(shifts, "upcoming", now=now) if s.status != SHIFT_CANCELLED]
    payload = build_shifts_calendar(shifts, "My volunteer shifts", uid_prefix="my-shift", with_alarms=True)
    return ics_response(payload, "my_volunteer_shifts.ics")


@app.route("/api/admin/shifts/vacant")
@admin_required
def api_vacant_shifts():
    now = get_local_now()
    shifts = filter_shifts(Shift.query.all(), "vacant", now=now)
    return jsonify({"shifts": [s.to_dict(now=now) for s in shifts]})


@app.route("/api/admin/shifts/export")
@admin_required
def api_export_shifts():
    export_format = request.args.get("format", "csv")
    if export_format not in ("csv", "ics"):
        return jsonify({"error": "invalid_format"}), 400

    ids = request.args.getlist("ids", type=int)
    if ids:
        shifts = Shift.query.filter(Shift.id.in_(ids)).order_by(Shift.start_time.asc()).all()
    else:
        shifts = filter_shifts(Shift.query.all(), "upcoming", now=get_local_now())

    stamp = get_local_now().strftime('%Y%m%d')
    if export_format == "ics":
        return ics_response(build_shifts_calendar(shifts, "Volunteer shifts"), f"shifts_{stamp}.ics")
    return csv_response(reporting.shifts_csv(shifts), f"shifts_{stamp}.csv")


# ==========================
# ROUTES: CHECK-INS
# ==========================

@app.route("/api/check-in", methods=["POST"])
@login_required
def api_check_in():
    user = g.user
    form = CheckInForm()
    if not form.validate_on_submit():
        return form_error(form)

    shift = db.session.get(Shift, form.shift_id.data)
    if shift is None:
        return jsonify({"error": "shift_not_found"}), 404
    if not shift.is_signed_up(user.id):
        return jsonify({"error": "not_signed_up"}), 403
    if shift.status == SHIFT_CANCELLED:
        return jsonify({"error": "shift_cancelled"}), 400

    now = get_local_now()
    opens_at, closes_at = check_in_window(shift.start_time, shift.end_time, app.config["CHECK_IN_EARLY_MINUTES"])
    if now < opens_at:
        return jsonify({"error": "check_in_not_open", "opens_at": _iso(opens_at)}), 400
    if now > closes_at:
        return jsonify({"error": "shift_ended"}), 400

    existing = CheckIn.query.filter_by(shift_id=shift.id, user_id=user.id, check_out_time=None).first()
    if existing:
        return jsonify({"error": "already_checked_in", "check_in": existing.to_dict()}), 409

    check_in = CheckIn(
        shift_id=shift.id,
        user_id=user.id,
        check_in_time=now,
        notes=form.notes.data or None
    )
    db.session.add(check_in)
    db.session.commit()
    log_audit_event('check_in', user_id=user.id, resource_type='shift', resource_id=shift.id)
    return jsonify({"check_in": check_in.to_dict()}), 201


@app.route("/api/check-out", methods=["POST"])
@login_required
def api_check_out():
    user = g.user
    form = CheckOutForm()
    if not form.validate_on_submit():
        return form_error(form)

    check_in = db.session.get(CheckIn, form.check_in_id.data)
    if check_in is None:
        return jsonify({"error": "check_in_not_found"}), 404
    if check_in.user_id != user.id and not user.is_admin:
        return jsonify({"error": "forbidden"}), 403
    if check_in.check_out_time is not None:
        return jsonify({"error": "already_checked_out"}), 409

    now = get_local_now()
    check_in.check_out_time = max(now, check_in.check_in_time)
    if form.notes.data:
        check_in.notes = form.notes.data

    log = None
    hours, minutes = split_minutes(check_in.duration_minutes)
    if hours or minutes:
        shift = check_in.shift
        log = VolunteerLog(
            user_id=check_in.user_id,
            group_id=shift.group_id,
            shift_id=shift.id,
            hours=hours,
            minutes=minutes,
            description=f"Shift: {shift.title}",
            date=check_in.check_in_time.date(),
            approved=True,
            approved_by=user.id,
            approved_at=datetime.utcnow()
        )
        db.session.add(log)

    try:
        db.session.commit()
    except Exception as e:
        db.session.rollback()
        app.logger.error(f"Error checking out {check_in.id}: {e}")
        return jsonify({"error": "server_error"}), 500

    log_audit_event('check_out', user_id=user.id, resource_type='check_in', resource_id=check_in.id)
    invalidate_caches()
    return jsonify({
        "check_in": check_in.to_dict(),
        "volunteer_log": log.to_dict() if log else None
    })


@app.route("/api/check-in/status")
@login_required
def api_check_in_status():
    user = g.user
    open_check_in = (
        CheckIn.query
        .filter_by(user_id=user.id, check_out_time=None)
        .order_by(CheckIn.check_in_time.desc())
        .first()
    )
    if open_check_in is None:
        return jsonify({"check_in": None})

    data = open_check_in.to_dict()
    data["shift"] = open_check_in.shift.to_dict() if open_check_in.shift else None
    return jsonify({"check_in": data})


@app.route("/api/admin/check-ins")
@admin_required
def api_admin_check_ins():
    query = CheckIn.query
    shift_id = request.args.get("shift_id", type=int)
    if shift_id:
        query = query.filter_by(shift_id=shift_id)
    check_ins = query.order_by(CheckIn.check_in_time.desc()).limit(200).all()

    results = []
    for c in check_ins:
        data = c.to_dict()
        data["user_name"] = c.user.name if c.user else None
        data["shift_title"] = c.shift.title if c.shift else None
        results.append(data)
    return jsonify({"check_ins": results})


# ==========================
# ROUTES: HOURS
# ==========================

def _hours_summary(logs):
    hours, minutes = normalize_hours(logs)
    return {"hours": hours, "minutes": minutes, "total_hours": round(hours_total(logs), 2)}


@app.route("/api/log-hours", methods=["POST"])
@login_required
def api_log_hours():
    user = g.user
    form = LogHoursForm()
    if not form.validate_on_submit():
        return form_error(form)

    group_id = form.group_id.data or None
    if group_id:
        group = db.session.get(Group, group_id)
        if group is None or not group.active:
            return jsonify({"error": "group_not_found"}), 404
        if group.membership_for(user.id) is None:
            return jsonify({"error": "not_group_member"}), 403

    log = VolunteerLog(
        user_id=user.id,
        group_id=group_id,
        hours=form.hours.data or 0,
        minutes=form.minutes.data or 0,
        description=(form.description.data or "").strip() or None,
        date=form.date.data,
        approved=False
    )
    try:
        db.session.add(log)
        db.session.commit()
    except Exception as e:
        db.session.rollback()
        app.logger.error(f"Error logging hours for user {user.id}: {e}")
        return jsonify({"error": "server_error"}), 500

    log_audit_event('hours_logged', user_id=user.id, resource_type='volunteer_log', resource_id=log.id)
    invalidate_caches()
    return jsonify({"log": log.to_dict()}), 201


@app.route("/api/log-hours")
@login_required
def api_my_logs():
    user = g.user
    logs = (
        VolunteerLog.query
        .filter_by(user_id=user.id)
        .order_by(VolunteerLog.date.desc(), VolunteerLog.created_at.desc())
        .all()
    )
    approved = [log for log in logs if log.approved]
    return jsonify({
        "logs": [log.to_dict() for log in logs],
        "totals": {
            "all": _hours_summary(logs),
            "approved": _hours_summary(approved),
        }
    })


@app.route("/api/admin/hours/pending")
@admin_required
def api_pending_hours():
    logs = (
        VolunteerLog.query
        .filter_by(approved=False)
        .order_by(VolunteerLog.date.asc())
        .all()
    )
    return jsonify({"logs": [log.to_dict() for log in logs]})


@app.route("/api/admin/hours/<int:log_id>/approve", methods=["POST"])
@admin_required
def api_approve_hours(log_id):
    log = db.get_or_404(VolunteerLog, log_id)
    if log.approved:
        return jsonify({"error": "already_approved"}), 409

    log.approved = True
    log.approved_by = g.user.id
    log.approved_at = datetime.utcnow()
    db.session.commit()
    log_audit_event('hours_approved', user_id=g.user.id, resource_type='volunteer_log', resource_id=log.id)
    invalidate_caches()
    return jsonify({"log": log.to_dict()})


@app.route("/api/admin/hours/<int:log_id>", methods=["DELETE"])
@admin_required
def api_delete_hours(log_id):
    log = db.get_or_404(VolunteerLog, log_id)
    details = {'volunteer_id': log.user_id, 'hours': log.hours, 'minutes': log.minutes, 'approved': log.approved}
    db.session.delete(log)
    db.session.commit()
    log_audit_event('hours_rejected', user_id=g.user.id, resource_type='volunteer_log',
                    resource_id=log_id, details=details)
    invalidate_caches()
    return jsonify({"ok": True})


def volunteer_stats(user):
    approved_logs = VolunteerLog.query.filter_by(user_id=user.id, approved=True).all()
    pending_count = VolunteerLog.query.filter_by(user_id=user.id, approved=False).count()
    hours, minutes = normalize_hours(approved_logs)
    now = get_local_now()
    shifts = [s.shift for s in user.signups]
    return {
        "total_hours": hours,
        "total_minutes": minutes,
        "total_shifts": len(shifts),
        "upcoming_shifts": sum(1 for s in shifts if s.start_time > now and s.status != SHIFT_CANCELLED),
        "completed_check_ins": CheckIn.query.filter(
            CheckIn.user_id == user.id, CheckIn.check_out_time.isnot(None)
        ).count(),
        "approved_logs": len(approved_logs),
        "pending_logs": pending_count,
        "groups": len(user.memberships),
    }


@app.route("/api/volunteer/stats")
@login_required
def api_volunteer_stats():
    user = g.user
    target_id = request.args.get("user_id", type=int) or user.id
    if target_id != user.id and not user.is_admin:
        return jsonify({"error": "forbidden"}), 403
    target = db.get_or_404(User, target_id)
    return jsonify({"user_id": target.id, "stats": volunteer_stats(target)})


# ==========================
# ROUTES: GROUPS
# ==========================

@app.route("/api/groups")
@login_required
def api_groups():
    groups = get_active_groups_cached()
    search = (request.args.get("search") or "").strip().lower()
    if search:
        groups = [
            grp for grp in groups
            if search in grp["name"].lower()
            or search in (grp["description"] or "").lower()
            or search in (grp["category"] or "").lower()
        ]
    return jsonify({"groups": groups})


@app.route("/api/groups/my")
@login_required
def api_my_groups():
    user = g.user
    groups = []
    for membership in user.memberships:
        if membership.group and membership.group.active:
            data = membership.group.to_dict()
            data["member_role"] = membership.role
            groups.append(data)
    groups.sort(key=lambda grp: grp["name"].lower())
    return jsonify({"groups": groups})


def _active_group_or_404(group_id):
    group = db.get_or_404(Group, group_id)
    if not group.active:
        return None
    return group


@app.route("/api/groups/<int:group_id>")
@login_required
def api_group_detail(group_id):
    user = g.user
    group = db.get_or_404(Group, group_id)
    if not group.active and not user.is_admin:
        return jsonify({"error": "not_found"}), 404
    data = group.to_dict(include_members=True)
    membership = group.membership_for(user.id)
    data["member_role"] = membership.role if membership else None
    data["can_manage"] = can_manage_group(user, group.id)
    return jsonify({"group": data})


@app.route("/api/groups", methods=["POST"])
@admin_required
def api_create_group():
    user = g.user
    form = GroupForm()
    if not form.validate_on_submit():
        return form_error(form)

    name = form.name.data.strip()
    if Group.query.filter(func.lower(Group.name) == name.lower()).first():
        return jsonify({"error": "group_exists"}), 409

    group = Group(
        name=name,
        description=form.description.data or None,
        category=form.category.data or None,
        logo_url=form.logo_url.data or None,
        created_by=user.id
    )
    group.members.append(GroupMember(user_id=user.id, role=MEMBER_ROLE_ADMIN))
    try:
        db.session.add(group)
        db.session.commit()
    except IntegrityError:
        db.session.rollback()
        return jsonify({"error": "group_exists"}), 409

    log_audit_event('group_created', user_id=user.id, resource_type='group', resource_id=group.id)
    invalidate_caches()
    return jsonify({"group": group.to_dict(include_members=True)}), 201


@app.route("/api/groups/<int:group_id>", methods=["PATCH"])
@login_required
def api_update_group(group_id):
    user = g.user
    group = db.get_or_404(Group, group_id)
    if not can_manage_group(user, group.id):
        return jsonify({"error": "forbidden"}), 403

    form = GroupForm()
    if not form.validate_on_submit():
        return form_error(form)

    name = form.name.data.strip()
    clash = Group.query.filter(func.lower(Group.name) == name.lower(), Group.id != group.id).first()
    if clash:
        return jsonify({"error": "group_exists"}), 409

    group.name = name
    group.description = form.description.data or None
    group.category = form.category.data or None
    group.logo_url = form.logo_url.data or None
    db.session.commit()

    log_audit_event('group_updated', user_id=user.id, resource_type='group', resource_id=group.id)
    invalidate_caches()
    return jsonify({"group": group.to_dict()})


@app.route("/api/groups/<int:group_id>", methods=["DELETE"])
@admin_required
def api_delete_group(group_id):
    group = db.get_or_404(Group, group_id)
    group.active = False
    db.session.commit()
    log_audit_event('group_deactivated', user_id=g.user.id, resource_type='group', resource_id=group.id)
    invalidate_caches()
    return jsonify({"ok": True})


@app.route("/api/groups/<int:group_id>/join", methods=["POST"])
@login_required
def api_join_group(group_id):
    user = g.user
    group = _active_group_or_404(group_id)
    if group is None:
        return jsonify({"error": "not_found"}), 404
    if group.membership_for(user.id):
        return jsonify({"error": "already_member"}), 409

    group.members.append(GroupMember(user_id=user.id, role=MEMBER_ROLE_MEMBER))
    try:
        db.session.commit()
    except IntegrityError:
        db.session.rollback()
        return jsonify({"error": "already_member"}), 409

    log_audit_event('group_joined', user_id=user.id, resource_type='group', resource_id=group.id)
    invalidate_caches()
    return jsonify({"ok": True, "group": group.to_dict()})


@app.route("/api/groups/<int:group_id>/leave", methods=["POST"])
@login_required
def api_leave_group(group_id):
    user = g.user
    group = db.get_or_404(Group, group_id)
    membership = group.membership_for(user.id)
    if membership is None:
        return jsonify({"error": "not_member"}), 404

    group.members.remove(membership)
    db.session.commit()
    log_audit_event('group_left', user_id=user.id, resource_type='group', resource_id=group.id)
    invalidate_caches()
    return jsonify({"ok": True})


@app.route("/api/groups/<int:group_id>/shifts")
@login_required
def api_group_shifts(group_id):
    user = g.user
    group = db.get_or_404(Group, group_id)
    now = get_local_now()
    shifts = filter_shifts(group.shifts, "upcoming", now=now)
    return jsonify({"shifts": [s.to_dict(viewer=user, now=now) for s in shifts]})


@app.route("/api/groups/<int:group_id>/volunteers")
@login_required
def api_group_volunteers(group_id):
    group = db.get_or_404(Group, group_id)
    members = sorted(group.members, key=lambda m: (m.user.name or "").lower() if m.user else "")
    return jsonify({"volunteers": [m.to_dict() for m in members]})


@app.route("/api/groups/<int:group_id>/members/<int:user_id>", methods=["PATCH", "DELETE"])
@login_required
def api_group_member(group_id, user_id):
    manager = g.user
    group = db.get_or_404(Group, group_id)
    if not can_manage_group(manager, group.id):
        return jsonify({"error": "forbidden"}), 403

    membership = group.membership_for(user_id)
    if membership is None:
        return jsonify({"error": "not_member"}), 404

    if request.method == "DELETE":
        group.members.remove(membership)
        db.session.commit()
        log_audit_event('group_member_removed', user_id=manager.id, resource_type='group',
                        resource_id=group.id, details={'member_id': user_id})
        invalidate_caches()
        return jsonify({"ok": True})

    form = MemberRoleForm()
    if not form.validate_on_submit():
        return form_error(form)
    membership.role = form.role.data
    db.session.commit()
    log_audit_event('group_member_role_changed', user_id=manager.id, resource_type='group',
                    resource_id=group.id, details={'member_id': user_id, 'role': membership.role})
    return jsonify({"member": membership.to_dict()})


@app.route("/api/groups/<int:group_id>/hours-report")
@login_required
def api_group_hours_report(group_id):
    user = g.user
    group = db.get_or_404(Group, group_id)
    if not can_manage_group(user, group.id):
        return jsonify({"error": "forbidden"}), 403

    start_date, error = _parse_date_arg("start_date")
    if error:
        return error
    end_date, error = _parse_date_arg("end_date")
    if error:
        return error
    if not start_date or not end_date:
        return jsonify({"error": "missing_dates"}), 400
    if end_date < start_date:
        return jsonify({"error": "invalid_date_range"}), 400

    logs = (
        VolunteerLog.query
        .filter(
            VolunteerLog.group_id == group.id,
            VolunteerLog.approved == True,  # noqa: E712
            VolunteerLog.date >= start_date,
            VolunteerLog.date <= end_date
        )
        .order_by(VolunteerLog.date.asc())
        .all()
    )
    if not logs:
        return jsonify({"error": "no_data"}), 404

    filename = f"group_{group.id}_hours_{start_date:%Y%m%d}_{end_date:%Y%m%d}.csv"
    return csv_response(reporting.hours_report_csv(logs), filename)


# ==========================
# ROUTES: ADMIN
# ==========================

@app.route("/api/admin/volunteers")
@admin_required
def api_admin_volunteers():
    query = User.query
    search = (request.args.get("search") or "").strip()
    if search:
        pattern = f"%{search}%"
        query = query.filter(db.or_(User.name.ilike(pattern), User.email.ilike(pattern)))

    role = (request.args.get("role") or "").upper()
    if role:
        if role not in ROLES:
            return jsonify({"error": "invalid_role"}), 400
        query = query.filter(User.role == role)

    active = (request.args.get("active") or "").lower()
    if active in ("true", "false"):
        query = query.filter(User.active == (active == "true"))

    users = query.order_by(User.name.asc()).all()
    page = paginate(users, request.args.get("page", 1), request.args.get("per_page", 20))
    return jsonify(_page_payload(page, "volunteers", lambda u: u.to_dict()))


@app.route("/api/volunteers/<int:user_id>", methods=["GET", "PATCH"])
@login_required
def api_volunteer_profile(user_id):
    user = g.user
    if user.id != user_id and not user.is_admin:
        return jsonify({"error": "forbidden"}), 403
    target = db.get_or_404(User, user_id)

    if request.method == "PATCH":
        form = ProfileForm()
        if not form.validate_on_submit():
            return form_error(form)
        target.name = form.name.data.strip()
        target.phone = (form.phone.data or "").strip() or None
        db.session.commit()
        log_audit_event('profile_updated', user_id=user.id, resource_type='user', resource_id=target.id)

    data = target.to_dict()
    data["stats"] = volunteer_stats(target)
    data["groups"] = [
        {"id": m.group.id, "name": m.group.name, "role": m.role}
        for m in target.memberships if m.group
    ]
    return jsonify({"volunteer": data})


ALLOWED_IMAGE_TYPES = {"image/jpeg", "image/png", "image/gif"}


@app.route("/api/profile/image", methods=["POST", "DELETE"])
@login_required
def api_profile_image():
    """Upload (multipart field ``image``) or remove the current user's profile image."""
    user = g.user
    if request.method == "DELETE":
        user.profile_image = None
        user.profile_image_type = None
        db.session.commit()
        log_audit_event('profile_image_removed', user_id=user.id, resource_type='user', resource_id=user.id)
        return jsonify({"message": "Profile image removed"})

    form = ProfileImageForm()
    if not form.validate_on_submit():
        return form_error(form)

    upload = form.image.data
    if upload.mimetype not in ALLOWED_IMAGE_TYPES:
        return jsonify({"error": "invalid_file_type"}), 400
    image_data = upload.read()
    if len(image_data) > app.config["PROFILE_IMAGE_MAX_BYTES"]:
        return jsonify({"error": "file_too_large"}), 400

    # Stored in the database so every web dyno can serve it
    user.profile_image = base64.b64encode(image_data).decode('utf-8')
    user.profile_image_type = upload.mimetype
    db.session.commit()
    log_audit_event('profile_image_uploaded', user_id=user.id, resource_type='user', resource_id=user.id,
                    details={'bytes': len(image_data), 'type': upload.mimetype})
    return jsonify({"message": "Image uploaded successfully", "image_url": user.to_dict()["image_url"]})


@app.route("/api/volunteers/<int:user_id>/image")
@login_required
def api_volunteer_image(user_id):
    target = db.get_or_404(User, user_id)
    if not target.profile_image:
        return jsonify({"error": "not_found"}), 404
    image_data = base64.b64decode(target.profile_image)
    return Response(image_data, mimetype=target.profile_image_type or 'image/jpeg')


@app.route("/api/admin/users/<int:user_id>/role", methods=["POST"])
@admin_required
def api_change_role(user_id):
    admin = g.user
    target = db.get_or_404(User, user_id)
    if target.id == admin.id:
        return jsonify({"error": "cannot_change_own_role"}), 400

    form = RoleForm()
    if not form.validate_on_submit():
        return form_error(form)

    old_role = target.role
    target.role = form.role.data
    db.session.commit()
    log_audit_event('user_role_changed', user_id=admin.id, resource_type='user', resource_id=target.id,
                    details={'old_role': old_role, 'new_role': target.role})
    invalidate_caches()
    return jsonify({"user": target.to_dict()})


@app.route("/api/admin/users/<int:user_id>/status", methods=["POST"])
@admin_required
def api_change_status(user_id):
    admin = g.user
    target = db.get_or_404(User, user_id)
    payload = request.get_json(silent=True) or {}
    active = payload.get("active")
    if not isinstance(active, bool):
        return jsonify({"error": "validation_error", "errors": {"active": ["Active status must be a boolean value"]}}), 400
    if target.id == admin.id and not active:
        return jsonify({"error": "cannot_deactivate_self"}), 400

    target.active = active
    db.session.commit()
    log_audit_event('user_activated' if active else 'user_deactivated', user_id=admin.id,
                    resource_type='user', resource_id=target.id)
    invalidate_caches()
    return jsonify({"user": target.to_dict()})


@app.route("/api/admin/users/<int:user_id>/unlock", methods=["POST"])
@admin_required
def api_unlock_user(user_id):
    target = db.get_or_404(User, user_id)
    target.unlock_account()
    log_audit_event('account_unlocked', user_id=g.user.id, resource_type='user', resource_id=target.id)
    return jsonify({"user": target.to_dict()})


@app.route("/api/admin/stats")
@admin_required
def api_admin_stats():
    return jsonify({"stats": get_admin_stats_cached()})


def _month_signups(now):
    month_start = datetime(now.year, now.month, 1)
    return ShiftSignup.query.join(Shift, ShiftSignup.shift_id == Shift.id).filter(Shift.start_time >= month_start).all()


@app.route("/api/admin/top-volunteers")
@admin_required
def api_top_volunteers():
    limit = min(max(request.args.get("limit", 5, type=int), 1), 50)
    now = get_local_now()
    approved_logs = VolunteerLog.query.filter_by(approved=True).all()
    return jsonify({"volunteers": reporting.top_volunteers(approved_logs, _month_signups(now), limit)})


@app.route("/api/admin/reports")
@admin_required
def api_admin_reports():
    report_type = request.args.get("type", "volunteer-hours")
    timeframe = request.args.get("timeframe", "month")
    if report_type not in reporting.REPORT_TYPES:
        return jsonify({"error": "invalid_report_type"}), 400
    if timeframe not in reporting.TIMEFRAMES:
        return jsonify({"error": "invalid_timeframe"}), 400

    now = get_local_now()
    start, end, prev_start, prev_end, labels = reporting.report_period(timeframe, now)

    current_logs = VolunteerLog.query.filter(
        VolunteerLog.approved == True,  # noqa: E712
        VolunteerLog.date >= start.date(),
        VolunteerLog.date <= end.date()
    ).all()
    previous_logs = VolunteerLog.query.filter(
        VolunteerLog.approved == True,  # noqa: E712
        VolunteerLog.date >= prev_start.date(),
        VolunteerLog.date < prev_end.date()
    ).all()

    if report_type == "volunteer-hours":
        chart = {"labels": labels, "data": reporting.bucket_hours(current_logs, timeframe, start)}
    else:
        group_names = [grp["name"] for grp in get_active_groups_cached()]
        entries = [(log.group.name if log.group else None, reporting.log_hours(log)) for log in current_logs]
        distribution = reporting.group_distribution(entries, group_names)
        chart = {"labels": [name for name, _ in distribution], "data": [hours for _, hours in distribution]}

    volunteer_roles = (ROLE_VOLUNTEER, ROLE_GROUP_ADMIN)
    total_volunteers = User.query.filter(User.role.in_(volunteer_roles)).count()
    previous_volunteers = User.query.filter(User.role.in_(volunteer_roles), User.created_at < start).count()
    current_shifts = Shift.query.filter(Shift.start_time >= start, Shift.start_time <= end).count()
    previous_shifts = Shift.query.filter(Shift.start_time >= prev_start, Shift.start_time < prev_end).count()
    current_hours = hours_total(current_logs)
    previous_hours = hours_total(previous_logs)

    return jsonify({
        "type": report_type,
        "timeframe": timeframe,
        "period": {"start": _iso(start), "end": _iso(end)},
        "chart": chart,
        "stats": {
            "volunteers": {
                "total": total_volunteers,
                "change": reporting.percent_change(total_volunteers, previous_volunteers),
            },
            "shifts": {
                "total": current_shifts,
                "change": reporting.percent_change(current_shifts, previous_shifts),
            },
            "hours": {
                "total": round(current_hours, 2),
                "change": reporting.percent_change(current_hours, previous_hours),
            },
        }
    })


@app.route("/api/admin/reports/monthly.pdf")
@admin_required
def api_monthly_report_pdf():
    now = get_local_now()
    year = request.args.get("year", now.year, type=int)
    month = request.args.get("month", now.month, type=int)
    if not 1 <= month <= 12 or not 1 <= year < date.max.year:
        return jsonify({"error": "invalid_month"}), 400

    first_day = date(year, month, 1)
    next_year, next_month = (year + 1, 1) if month == 12 else (year, month + 1)
    logs = (
        VolunteerLog.query
        .filter(
            VolunteerLog.approved == True,  # noqa: E712
            VolunteerLog.date >= first_day,
            VolunteerLog.date < date(next_year, next_month, 1)
        )
        .order_by(VolunteerLog.date.asc())
        .all()
    )

    pdf = reporting.monthly_hours_pdf(year, month, logs, generated_at=now)
    log_audit_event('report_generated', user_id=g.user.id, details={'year': year, 'month': month})
    response = make_response(pdf)
    response.headers['Content-Type'] = 'application/pdf'
    response.headers['Content-Disposition'] = f'attachment; filename=volunteer_hours_{year}_{month:02d}.pdf'
    return response


@app.route("/api/admin/activity")
@admin_required
def api_admin_activity():
    limit = min(max(request.args.get("limit", 50, type=int), 1), 200)
    entries = AuditLog.query.order_by(AuditLog.created_at.desc(), AuditLog.id.desc()).limit(limit).all()
    results = []
    for entry in entries:
        data = entry.to_dict()
        data["user_name"] = entry.user.name if entry.user else None
        results.append(data)
    return jsonify({"activity": results})


@app.route("/api/admin/volunteers/email", methods=["POST"])
@admin_required
def api_email_volunteers():
    admin = g.user
    if not check_rate_limit('bulk_email_volunteers', admin.id, limit_per_hour=3):
        return jsonify({"error": "rate_limited"}), 429

    form = BulkEmailForm()
    if not form.validate_on_submit():
        return form_error(form)

    recipient_filter = form.recipient_filter.data or "all"
    base = User.query.filter(
        User.active == True,  # noqa: E712
        User.role.in_([ROLE_VOLUNTEER, ROLE_GROUP_ADMIN])
    )
    if recipient_filter == "group":
        if not form.group_id.data:
            return jsonify({"error": "group_required"}), 400
        group = db.get_or_404(Group, form.group_id.data)
        member_ids = [m.user_id for m in group.members]
        recipients = base.filter(User.id.in_(member_ids)).all() if member_ids else []
    elif recipient_filter == "active":
        now = get_local_now()
        upcoming_ids = {
            row.user_id for row in
            db.session.query(ShiftSignup.user_id).join(Shift, ShiftSignup.shift_id == Shift.id).filter(Shift.start_time > now)
        }
        recipients = base.filter(User.id.in_(list(upcoming_ids))).all() if upcoming_ids else []
    else:
        recipients = base.all()

    sent = 0
    for volunteer in recipients:
        if send_email(volunteer.email, form.subject.data, form.message.data):
            sent += 1

    log_audit_event('bulk_email_volunteers', user_id=admin.id,
                    details={'filter': recipient_filter, 'recipients': len(recipients), 'sent': sent})
    app.logger.info(f"Bulk email by admin {admin.id}: {sent}/{len(recipients)} sent")
    return jsonify({"recipients": len(recipients), "sent": sent})


@app.route("/api/dashboard")
@login_required
def api_dashboard():
    user = g.user
    now = get_local_now()
    my_shifts = filter_shifts([s.shift for s in user.signups], "upcoming", now=now)
    open_check_in = CheckIn.query.filter_by(user_id=user.id, check_out_time=None).first()

    data = {
        "user": user.to_dict(),
        "upcoming_shifts": [s.to_dict(viewer=user, now=now) for s in my_shifts[:5]],
        "open_check_in": open_check_in.to_dict() if open_check_in else None,
        "stats": volunteer_stats(user),
    }
    if user.is_admin:
        data["admin_stats"] = get_admin_stats_cached()
    return jsonify(data)


# ==========================
# ERROR HANDLERS
# ==========================

@app.errorhandler(400)
def bad_request(e):
    return jsonify({"error": "bad_request"}), 400


@app.errorhandler(404)
def not_found(e):
    return jsonify({"error": "not_found"}), 404


@app.errorhandler(405)
def method_not_allowed(e):
    return jsonify({"error": "method_not_allowed"}), 405


@app.errorhandler(500)
def server_error(e):
    db.session.rollback()
    app.logger.error(f"Unhandled server error: {e}")
    return jsonify({"error": "server_error"}), 500


# ==========================
# CLI COMMANDS
# ==========================

@app.cli.command("init-db")
def init_db():
    """Create tables and the default admin account."""
    db.create_all()
    email = normalize_email(app.config["DEFAULT_ADMIN_EMAIL"])
    if not User.query.filter_by(email=email).first():
        admin = User(name="Administrator", email=email, role=ROLE_ADMIN, active=True,
                     password_reset_required=True)
        admin.set_password(app.config["DEFAULT_ADMIN_PASSWORD"])
        db.session.add(admin)
        db.session.commit()
        print(f"Created admin user: {email}")
    print("Database initialized.")


@app.cli.command("seed-demo")
def seed_demo():
    """Add sample groups and a week of shifts."""
    db.create_all()
    admin = User.query.filter_by(role=ROLE_ADMIN).first()

    groups = {}
    for name, category, description in (
        ("Food Bank", "Hunger relief", "Sorting and packing donations"),
        ("Park Cleanup Crew", "Environment", "Monthly cleanups in city parks"),
        ("Reading Buddies", "Education", "After-school reading support"),
    ):
        group = Group.query.filter_by(name=name).first()
        if group is None:
            group = Group(name=name, category=category, description=description,
                          created_by=admin.id if admin else None)
            db.session.add(group)
        groups[name] = group
    db.session.flush()

    today = get_local_today()
    samples = (
        ("Morning sorting", "Warehouse A", "Food Bank", 0, 9, 12, 6),
        ("Afternoon packing", "Warehouse A", "Food Bank", 1, 13, 16, 4),
        ("Riverside cleanup", "Riverside Park", "Park Cleanup Crew", 2, 8, 11, 10),
        ("Reading hour", "Central Library", "Reading Buddies", 3, 15, 17, 3),
        ("Weekend distribution", "Community Center", "Food Bank", 5, 10, 14, 8),
    )
    created = 0
    for title, location, group_name, offset, start_hour, end_hour, capacity in samples:
        day = today + timedelta(days=offset + 1)
        start_dt = datetime(day.year, day.month, day.day, start_hour)
        if Shift.query.filter_by(title=title, start_time=start_dt).first():
            continue
        db.session.add(Shift(
            title=title,
            location=location,
            start_time=start_dt,
            end_time=datetime(day.year, day.month, day.day, end_hour),
            max_volunteers=capacity,
            group_id=groups[group_name].id,
            created_by=admin.id if admin else None
        ))
        created += 1
    db.session.commit()
    invalidate_caches()
    print(f"Seeded {len(groups)} groups and {created} shifts.")


@app.cli.command("send-reminders")
def send_reminders_command():
    """Run the reminder sweep and shift completion once."""
    reminders_sent = send_shift_reminders()
    completed = mark_completed_shifts()
    print(f"Sent {reminders_sent} reminders, completed {completed} shifts.")


if __name__ == "__main__":
    # The reloader parent only watches files; jobs run in the serving child
    if os.environ.get("WERKZEUG_RUN_MAIN") == "true":
        start_dev_scheduler()
    app.run(debug=True)
