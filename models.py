from __future__ import annotations

from datetime import datetime

from sqlalchemy import JSON, Boolean, Column, DateTime, Integer, String, Text

from database import Base


class User(Base):
    __tablename__ = "users"

    id = Column(Integer, primary_key=True, index=True)

    # Public, user-editable id shown in the UI (e.g. "janedoe1234").
    handle = Column(String, unique=True, index=True, nullable=False)
    email = Column(String, unique=True, index=True, nullable=False)

    # Store password hash (bcrypt). Never store plaintext.
    password_hash = Column(String, nullable=False)

    full_name = Column(String, nullable=False)
    phone = Column(String, nullable=True)

    # "student" | "mentor"
    user_type = Column(String, nullable=False)

    # Student payload
    college = Column(String, nullable=True)
    college_verified = Column(Boolean, default=False, nullable=False)
    branch = Column(String, nullable=True)
    year = Column(String, nullable=True)
    region = Column(String, nullable=True)
    city = Column(String, nullable=True)
    state = Column(String, nullable=True)

    # Mentor payload
    job_title = Column(String, nullable=True)
    company = Column(String, nullable=True)
    experience = Column(String, nullable=True)
    expertise = Column(JSON, nullable=True)
    highest_qualification = Column(String, nullable=True)
    linkedin = Column(String, nullable=True)
    bio = Column(Text, nullable=True)

    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)

    __mapper_args__ = {"polymorphic_on": user_type}


class Student(User):
    __mapper_args__ = {"polymorphic_identity": "student"}


class Mentor(User):
    __mapper_args__ = {"polymorphic_identity": "mentor"}


class OtpRecord(Base):
    __tablename__ = "otp_records"

    # One live code per recipient; a new send overwrites the row.
    email = Column(String, primary_key=True)
    code = Column(String(6), nullable=False)
    created_at = Column(DateTime, nullable=False)
    expires_at = Column(DateTime, nullable=False, index=True)
    verified = Column(Boolean, default=False, nullable=False)
    # Cleared after a failed delivery so the user may retry right away.
    last_sent_at = Column(DateTime, nullable=True)


class VerifiedEmail(Base):
    __tablename__ = "verified_emails"

    email = Column(String, primary_key=True)
    verified_at = Column(DateTime, default=datetime.utcnow, nullable=False)


class KvEntry(Base):
    __tablename__ = "kv_entries"

    key = Column(String, primary_key=True)
    value = Column(Text, nullable=False)  # JSON document
    updated_at = Column(DateTime, default=datetime.utcnow, nullable=False)
