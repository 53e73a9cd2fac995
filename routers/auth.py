from __future__ import annotations

import os
from datetime import datetime, timedelta
from typing import List, Literal, Optional, Union

from fastapi import APIRouter, Depends, Request
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jose import JWTError, jwt
from pydantic import BaseModel, EmailStr

from errors import AuthError
from models import User
from utils.user_directory import UserDirectory, user_to_dict


router = APIRouter(prefix="/auth", tags=["auth"])
bearer = HTTPBearer(auto_error=False)

JWT_SECRET = os.getenv("JWT_SECRET", "change_me")
JWT_ALG = os.getenv("JWT_ALG", "HS256")
JWT_EXP_MIN = int(os.getenv("JWT_EXP_MIN", "43200"))  # 30 days default


def _now() -> datetime:
    return datetime.utcnow()


def create_token(*, user_id: int, user_type: str) -> str:
    payload = {
        "sub": str(user_id),
        "user_type": user_type,
        "iat": int(_now().timestamp()),
        "exp": int((_now() + timedelta(minutes=JWT_EXP_MIN)).timestamp()),
    }
    return jwt.encode(payload, JWT_SECRET, algorithm=JWT_ALG)


def get_directory(request: Request) -> UserDirectory:
    return request.app.state.users


def user_from_token(token: str, directory: UserDirectory) -> User:
    if not token:
        raise AuthError("Missing Authorization token")
    try:
        payload = jwt.decode(token, JWT_SECRET, algorithms=[JWT_ALG])
    except JWTError:
        raise AuthError("Invalid token")
    sub = payload.get("sub")
    if not sub or not str(sub).isdigit():
        raise AuthError("Invalid token")
    user = directory.get(int(sub))
    if not user:
        raise AuthError("User not found")
    return user


def get_current_user(
    creds: Optional[HTTPAuthorizationCredentials] = Depends(bearer),
    directory: UserDirectory = Depends(get_directory),
) -> User:
    return user_from_token(creds.credentials if creds else "", directory)


class _SignupBase(BaseModel):
    email: EmailStr
    password: str
    full_name: str
    phone: Optional[str] = None


class StudentSignupIn(_SignupBase):
    user_type: Literal["student"]
    college: Optional[str] = None
    branch: Optional[str] = None
    year: Optional[str] = None
    region: Optional[str] = None
    city: Optional[str] = None
    state: Optional[str] = None


class MentorSignupIn(_SignupBase):
    user_type: Literal["mentor"]
    job_title: Optional[str] = None
    company: Optional[str] = None
    experience: Optional[str] = None
    expertise: List[str] = []
    highest_qualification: Optional[str] = None
    linkedin: Optional[str] = None
    bio: Optional[str] = None


def _session_response(user: User) -> dict:
    return {
        "ok": True,
        "access_token": create_token(user_id=user.id, user_type=user.user_type),
        "token_type": "bearer",
        "user": user_to_dict(user),
    }


@router.post("/signup")
def signup(
    payload: Union[StudentSignupIn, MentorSignupIn],
    directory: UserDirectory = Depends(get_directory),
):
    data = payload.model_dump(exclude={"password"})
    user = directory.signup(data, payload.password)
    return _session_response(user)


class LoginIn(BaseModel):
    email: EmailStr
    password: str
    user_type: Literal["student", "mentor"]


@router.post("/login")
def login(payload: LoginIn, directory: UserDirectory = Depends(get_directory)):
    user = directory.login(str(payload.email), payload.password, payload.user_type)
    return _session_response(user)


@router.get("/me")
def me(user: User = Depends(get_current_user)):
    return {"ok": True, "user": user_to_dict(user)}


class HandleIn(BaseModel):
    handle: str


@router.put("/handle")
def update_handle(
    payload: HandleIn,
    user: User = Depends(get_current_user),
    directory: UserDirectory = Depends(get_directory),
):
    updated = directory.update_handle(user, payload.handle)
    return {"ok": True, "user": user_to_dict(updated)}


class CollegeIn(BaseModel):
    college: str


@router.put("/college")
def update_college(
    payload: CollegeIn,
    user: User = Depends(get_current_user),
    directory: UserDirectory = Depends(get_directory),
):
    updated = directory.update_college(user, payload.college)
    return {"ok": True, "user": user_to_dict(updated)}


@router.delete("/account")
def delete_account(
    user: User = Depends(get_current_user),
    directory: UserDirectory = Depends(get_directory),
):
    directory.delete(user)
    return {"ok": True}
