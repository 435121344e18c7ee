import sqlite3

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel

from backend.security import ROLES, require_admin
from database.db import create_user, get_user_by_id, list_users, set_user_active

router = APIRouter(dependencies=[Depends(require_admin)])


class UserCreate(BaseModel):
    username: str
    password: str
    full_name: str = ""
    role: str = "invigilator"


@router.get("/users")
def users(role: str | None = None):
    if role and role not in ROLES:
        raise HTTPException(status_code=400, detail="Invalid role filter.")
    return list_users(role)


@router.post("/users", status_code=201)
def create_account(payload: UserCreate):
    if payload.role not in ROLES:
        raise HTTPException(status_code=400, detail=f"Role must be one of: {', '.join(ROLES)}.")
    if not payload.username.strip() or not payload.password.strip():
        raise HTTPException(status_code=400, detail="Username and password are required.")

    try:
        user_id = create_user(
            payload.username,
            payload.password,
            full_name=payload.full_name,
            role=payload.role,
        )
    except sqlite3.IntegrityError:
        raise HTTPException(status_code=409, detail="Username already exists.")
    return get_user_by_id(user_id)


@router.post("/users/{user_id}/activate")
def activate_account(user_id: int):
    if not set_user_active(user_id, True):
        raise HTTPException(status_code=404, detail="User not found.")
    return get_user_by_id(user_id)


@router.delete("/users/{user_id}")
def deactivate_account(user_id: int, session: dict = Depends(require_admin)):
    if session.get("uid") == user_id:
        raise HTTPException(status_code=400, detail="You cannot deactivate your own account.")
    if not set_user_active(user_id, False):
        raise HTTPException(status_code=404, detail="User not found.")
    return {"ok": True, "message": "User deactivated"}
