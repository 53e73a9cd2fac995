"""
Demo-mode user directory.

Replaces the old module-level user list: one instance is created at startup
and handed to request handlers, so tests can build their own.
"""

from __future__ import annotations

import logging
import os
import random
import re
import secrets
import time
from typing import Any, Callable, Dict, Optional

import bcrypt
from sqlalchemy.orm import sessionmaker

from errors import AuthError, ConflictError, ForbiddenError, NotFoundError, ValidationError
from models import Mentor, Student, User
from utils.otp_store import normalize_email


logger = logging.getLogger(__name__)

REQUIRE_EMAIL_VERIFICATION = os.getenv("REQUIRE_EMAIL_VERIFICATION", "1").lower() not in {"0", "false", "no"}

STUDENT_FIELDS = ("college", "branch", "year", "region", "city", "state")
MENTOR_FIELDS = ("job_title", "company", "experience", "expertise", "highest_qualification", "linkedin", "bio")

_HANDLE_RE = re.compile(r"^[a-z0-9_.-]{3,40}$")


def hash_password(password: str) -> str:
    # Multi-byte safe password truncation for bcrypt (max 72 bytes)
    safe_password = password.strip().encode("utf-8")[:72].decode("utf-8", errors="ignore")
    return bcrypt.hashpw(safe_password.encode("utf-8"), bcrypt.gensalt()).decode("utf-8")


def check_password(password: str, password_hash: str) -> bool:
    candidate = password.strip().encode("utf-8")[:72].decode("utf-8", errors="ignore")
    return bcrypt.checkpw(candidate.encode("utf-8"), password_hash.encode("utf-8"))


def student_handle(full_name: str) -> str:
    # firstnamelastname1234
    name_part = re.sub(r"\s+", "", full_name).lower()
    return f"{name_part}{random.randint(1000, 9999)}"


def mentor_handle() -> str:
    return f"demo_{int(time.time() * 1000)}_{secrets.token_hex(5)}"


def user_to_dict(user: User) -> Dict[str, Any]:
    data: Dict[str, Any] = {
        "id": user.id,
        "handle": user.handle,
        "email": user.email,
        "user_type": user.user_type,
        "full_name": user.full_name,
        "phone": user.phone or "",
    }
    if user.user_type == "student":
        data.update({f: getattr(user, f) or "" for f in STUDENT_FIELDS})
        data["college_verified"] = bool(user.college_verified)
    else:
        data.update({f: getattr(user, f) or "" for f in MENTOR_FIELDS})
        data["expertise"] = list(user.expertise or [])
    return data


class UserDirectory:
    def __init__(
        self,
        session_factory: sessionmaker,
        *,
        require_verified_email: bool = REQUIRE_EMAIL_VERIFICATION,
        is_email_verified: Optional[Callable[[str], bool]] = None,
    ) -> None:
        self._session_factory = session_factory
        self.require_verified_email = require_verified_email
        self._is_email_verified = is_email_verified

    def signup(self, data: Dict[str, Any], password: str) -> User:
        user_type = data.get("user_type")
        if user_type not in {"student", "mentor"}:
            raise ValidationError("user_type must be student or mentor")

        email = normalize_email(data.get("email") or "")
        full_name = (data.get("full_name") or "").strip()
        if not email:
            raise ValidationError("Email is required")
        if not full_name:
            raise ValidationError("Full name is required")
        if len((password or "").strip()) < 6:
            raise ValidationError("Password should be at least 6 characters")
        if self.require_verified_email and self._is_email_verified and not self._is_email_verified(email):
            raise ForbiddenError("Please verify your email before signing up")

        with self._session_factory() as db:
            if db.query(User).filter(User.email == email).first():
                raise ConflictError("Email already registered")

            common = {
                "email": email,
                "full_name": full_name,
                "phone": (data.get("phone") or "").strip() or None,
                "password_hash": hash_password(password),
            }
            if user_type == "student":
                user = Student(
                    handle=self._unique_handle(db, lambda: student_handle(full_name)),
                    college_verified=bool(data.get("college")),
                    **common,
                    **{f: data.get(f) for f in STUDENT_FIELDS},
                )
            else:
                user = Mentor(
                    handle=self._unique_handle(db, mentor_handle),
                    **common,
                    **{f: data.get(f) for f in MENTOR_FIELDS},
                )
            db.add(user)
            db.commit()
            db.refresh(user)
        logger.info("Registered %s %s", user_type, user.handle)
        return user

    def _unique_handle(self, db, make: Callable[[], str]) -> str:
        for _ in range(20):
            handle = make()
            if not db.query(User).filter(User.handle == handle).first():
                return handle
        raise ConflictError("Could not allocate a user id, please try again")

    def login(self, email: str, password: str, user_type: str) -> User:
        email = normalize_email(email)
        with self._session_factory() as db:
            user = db.query(User).filter(User.email == email).first()
        if not user or not check_password(password or "", user.password_hash):
            raise AuthError("Invalid email or password")
        if user.user_type != user_type:
            raise ForbiddenError(
                f"This account is registered as a {user.user_type}. Please use the correct login page."
            )
        return user

    def get(self, user_id: int) -> Optional[User]:
        with self._session_factory() as db:
            return db.get(User, user_id)

    def update_handle(self, user: User, new_handle: str) -> User:
        handle = (new_handle or "").strip().lower()
        if not _HANDLE_RE.match(handle):
            raise ValidationError("User id must be 3-40 characters: letters, digits, '.', '_' or '-'")
        with self._session_factory() as db:
            taken = db.query(User).filter(User.handle == handle, User.id != user.id).first()
            if taken:
                raise ConflictError("That user id is already taken")
            rec = db.get(User, user.id)
            if rec is None:
                raise NotFoundError("User not found")
            rec.handle = handle
            db.commit()
            db.refresh(rec)
        return rec

    def update_college(self, user: User, college: str) -> User:
        college = (college or "").strip()
        if user.user_type != "student":
            raise ValidationError("Only students have a college")
        if not college:
            raise ValidationError("College is required")
        with self._session_factory() as db:
            rec = db.get(User, user.id)
            if rec is None:
                raise NotFoundError("User not found")
            rec.college = college
            rec.college_verified = True
            db.commit()
            db.refresh(rec)
        return rec

    def delete(self, user: User) -> None:
        with self._session_factory() as db:
            rec = db.get(User, user.id)
            if rec is None:
                raise NotFoundError("User not found")
            db.delete(rec)
            db.commit()
        logger.info("Deleted account %s", user.handle)
