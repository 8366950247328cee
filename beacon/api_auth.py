from fastapi import APIRouter, Depends

from .auth import Principal
from .deps import Services, current_principal, get_services
from .models import User
from .schemas import LoginIn, ProfileUpdateIn, UserRegisterIn

router = APIRouter(prefix="/api/auth", tags=["auth"])


def _profile(user: User):
    return {
        "id": user.id,
        "username": user.username,
        "email": user.email,
        "createdAt": user.created_at.isoformat(),
        "updatedAt": user.updated_at.isoformat(),
    }


@router.post("/register", status_code=201)
def register_user(body: UserRegisterIn, services: Services = Depends(get_services)):
    user = services.accounts.register(body.username, body.email, body.password)
    return {
        "message": "User registered successfully",
        "userId": user.id,
        "apiKey": user.api_key,
        "username": user.username,
    }


@router.post("/login")
def login(body: LoginIn, services: Services = Depends(get_services)):
    user, token = services.accounts.login(body.username, body.password)
    return {
        "message": "Login successful",
        "token": token.token,
        "expiresAt": token.expires_at.isoformat(),
        "user": {"id": user.id, "username": user.username, "email": user.email, "apiKey": user.api_key},
    }


@router.get("/profile")
def profile(principal: Principal = Depends(current_principal), services: Services = Depends(get_services)):
    return {"user": _profile(services.accounts.profile(principal.user_id))}


@router.put("/profile")
def update_profile(
    body: ProfileUpdateIn,
    principal: Principal = Depends(current_principal),
    services: Services = Depends(get_services),
):
    user = services.accounts.update_profile(
        principal.user_id, body.email, body.current_password, body.new_password
    )
    return {"message": "Profile updated successfully", "user": _profile(user)}


@router.post("/refresh-api-key")
def refresh_api_key(
    principal: Principal = Depends(current_principal),
    services: Services = Depends(get_services),
):
    return {"message": "API key refreshed", "apiKey": services.accounts.refresh_api_key(principal.user_id)}
