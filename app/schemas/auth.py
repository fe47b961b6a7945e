"""
Pydantic schemas for authentication endpoints.
"""
from typing import Literal, Optional
from pydantic import BaseModel, EmailStr, Field, field_validator


class SignupRequest(BaseModel):
    """Request schema for user signup."""
    full_name: str = Field(..., min_length=1, max_length=255, description="User's full name")
    email: EmailStr = Field(..., description="User's email address")
    password: str = Field(..., min_length=8, description="User's password (min 8 characters)")
    role: Literal["student", "staff"] = Field(default="student", description="Account role")
    school_name: Optional[str] = Field(default=None, max_length=255, description="School name (optional)")

    @field_validator("password")
    @classmethod
    def validate_password_length(cls, v: str) -> str:
        """Validate password length in bytes (bcrypt limit is 72 bytes)."""
        if len(v.encode("utf-8")) > 72:
            raise ValueError("Password too long (bcrypt limit 72 bytes)")
        return v

    class Config:
        json_schema_extra = {
            "example": {
                "full_name": "Jane Wanjiku",
                "email": "jane@example.com",
                "password": "SecurePass123",
                "role": "staff",
                "school_name": "Nairobi Primary"
            }
        }


class TokenResponse(BaseModel):
    access_token: str
    token_type: str = "bearer"
