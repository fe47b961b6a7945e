import logging
from fastapi import APIRouter, Depends, HTTPException, status
from fastapi.security import OAuth2PasswordRequestForm
from sqlalchemy.orm import Session

from app.core.auth_dependency import get_db
from app.core.security import hash_password, verify_password, create_access_token
from app.db.base import utcnow
from app.db.models.user import User
from app.schemas.auth import SignupRequest, TokenResponse

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/auth", tags=["Auth"])


# ✅ USER SIGNUP
@router.post("/signup", status_code=status.HTTP_201_CREATED)
def signup(payload: SignupRequest, db: Session = Depends(get_db)):
    email = payload.email.lower()
    existing_user = db.query(User).filter(User.email == email).first()
    if existing_user:
        raise HTTPException(status_code=409, detail="Email already registered")

    user = User(
        full_name=payload.full_name,
        email=email,
        password_hash=hash_password(payload.password),
        role=payload.role,
        school_name=payload.school_name,
    )

    db.add(user)
    db.commit()
    db.refresh(user)

    logger.info(f"User registered: user_id={user.id}, role={user.role}")

    return {
        "message": "User created successfully",
        "user_id": user.id
    }


# ✅ OAUTH2 LOGIN (Swagger sends "username", we treat it as email)
@router.post("/login", response_model=TokenResponse)
def login(
    form_data: OAuth2PasswordRequestForm = Depends(),
    db: Session = Depends(get_db)
):
    user = db.query(User).filter(User.email == form_data.username.lower()).first()

    if not user or not verify_password(form_data.password, user.password_hash):
        raise HTTPException(status_code=401, detail="Invalid credentials")

    user.last_login = utcnow()
    db.commit()

    token = create_access_token({"sub": user.id})

    return TokenResponse(access_token=token)
