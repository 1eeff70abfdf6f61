import logging
import re
from contextlib import asynccontextmanager
from typing import Optional

import uvicorn
from fastapi import Depends, FastAPI, Header, HTTPException
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel, ConfigDict, field_validator
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from canteen import config, models
from canteen.database import get_db, init_db
from canteen.security import (
    create_access_token,
    decode_token,
    get_current_user,
    get_password_hash,
    require_admin,
    verify_password,
)

logger = logging.getLogger(__name__)

ROLES = ("customer", "admin")


@asynccontextmanager
async def lifespan(app: FastAPI):
    config.setup_logging()
    init_db()
    yield


app = FastAPI(title="Canteen User Service", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# --- MODELS ---
def _check_phone(v):
    if v is None:
        return v
    if not re.match(r"^\+?\d{7,15}$", v):
        raise ValueError("Phone number is invalid (7 to 15 digits, optional leading +)")
    return v


class UserCreate(BaseModel):
    email: str
    password: str
    name: str
    phone: Optional[str] = None

    @field_validator("email")
    @classmethod
    def validate_email(cls, v):
        regex = r"^[a-zA-Z0-9._%+-]+@[a-zA-Z0-9.-]+\.[a-zA-Z]{2,}$"
        if not re.match(regex, v):
            raise ValueError("Email is invalid")
        return v.lower()

    @field_validator("phone")
    @classmethod
    def validate_phone(cls, v):
        return _check_phone(v)

    @field_validator("password")
    @classmethod
    def validate_password(cls, v):
        if len(v) < 8:
            raise ValueError("Password must be at least 8 characters")
        if not re.search(r"[A-Z]", v):
            raise ValueError("Password must contain an uppercase letter")
        if not re.search(r"[a-z]", v):
            raise ValueError("Password must contain a lowercase letter")
        if not re.search(r"\d", v):
            raise ValueError("Password must contain a digit")
        if not re.search(r"[@$!%*?&]", v):
            raise ValueError("Password must contain a special character (@$!%*?&)")
        return v

    @field_validator("name")
    @classmethod
    def validate_name(cls, v):
        if not v.strip():
            raise ValueError("Name is required")
        return v.strip()


class LoginRequest(BaseModel):
    email: str
    password: str


class ProfileUpdate(BaseModel):
    name: Optional[str] = None
    phone: Optional[str] = None

    @field_validator("phone")
    @classmethod
    def validate_phone(cls, v):
        return _check_phone(v)


class ProfileResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    name: Optional[str] = None
    email: str
    role: str
    phone: Optional[str] = None
    email_confirmed: bool


# --- API AUTH ---
@app.post("/register")
def register(user: UserCreate, db: Session = Depends(get_db)):
    db_user = db.query(models.Profile).filter(models.Profile.email == user.email).first()
    if db_user:
        raise HTTPException(400, "Email exists")

    new_user = models.Profile(
        email=user.email,
        hashed_password=get_password_hash(user.password),
        name=user.name,
        role="customer",
        phone=user.phone,
        email_confirmed=not config.REQUIRE_EMAIL_CONFIRMATION,
    )

    try:
        db.add(new_user)
        db.commit()
        db.refresh(new_user)
    except SQLAlchemyError as e:
        db.rollback()
        logger.error("Registration of %s failed: %s", user.email, e)
        raise HTTPException(500, "Could not create user")

    logger.info("Registered %s", new_user.email)
    return {"message": "User created", "id": new_user.id, "email_confirmed": new_user.email_confirmed}


@app.post("/login")
def login(req: LoginRequest, db: Session = Depends(get_db)):
    user = db.query(models.Profile).filter(models.Profile.email == req.email.lower()).first()
    if not user or not verify_password(req.password, user.hashed_password):
        raise HTTPException(401, "Incorrect email/password")
    if config.REQUIRE_EMAIL_CONFIRMATION and not user.email_confirmed:
        raise HTTPException(403, "Email not confirmed")

    token_data = {
        "sub": user.email,
        "id": user.id,
        "role": user.role,
        "name": user.name,
    }
    access_token = create_access_token(token_data)

    return {
        "access_token": access_token,
        "token_type": "bearer",
        "id": user.id,
        "email": user.email,
        "name": user.name,
        "role": user.role,
    }


@app.get("/verify")
def verify_token(authorization: str = Header(None)):
    if not authorization:
        raise HTTPException(401, "Missing Token")
    payload = decode_token(authorization)
    if payload is None:
        raise HTTPException(401, "Invalid Token")
    return payload


# --- API PROFILE ---
@app.get("/profiles/me", response_model=ProfileResponse)
def get_my_profile(user: dict = Depends(get_current_user), db: Session = Depends(get_db)):
    profile = db.query(models.Profile).filter(models.Profile.id == user["id"]).first()
    if not profile:
        raise HTTPException(404, "Profile not found")
    return profile


@app.put("/profiles/me", response_model=ProfileResponse)
def update_my_profile(update: ProfileUpdate, user: dict = Depends(get_current_user), db: Session = Depends(get_db)):
    profile = db.query(models.Profile).filter(models.Profile.id == user["id"]).first()
    if not profile:
        raise HTTPException(404, "Profile not found")
    if update.name is not None:
        profile.name = update.name
    if update.phone is not None:
        profile.phone = update.phone
    db.commit()
    db.refresh(profile)
    return profile


# --- ADMIN API ---
@app.put("/users/{user_id}/role")
def update_user_role(user_id: str, role: str, admin: dict = Depends(require_admin), db: Session = Depends(get_db)):
    if role not in ROLES:
        raise HTTPException(400, f"Unknown role '{role}'")
    user = db.query(models.Profile).filter(models.Profile.id == user_id).first()
    if not user:
        raise HTTPException(status_code=404, detail="User not found")
    user.role = role
    db.commit()
    logger.info("Role of %s set to %s by %s", user_id, role, admin.get("id"))
    return {"message": "Role updated", "role": role}


@app.put("/users/{user_id}/confirm")
def confirm_user_email(user_id: str, admin: dict = Depends(require_admin), db: Session = Depends(get_db)):
    user = db.query(models.Profile).filter(models.Profile.id == user_id).first()
    if not user:
        raise HTTPException(status_code=404, detail="User not found")
    user.email_confirmed = True
    db.commit()
    return {"message": "Email confirmed"}


if __name__ == "__main__":
    uvicorn.run(app, host="0.0.0.0", port=8001)
