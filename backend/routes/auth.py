from fastapi import APIRouter, HTTPException, status
from models import LoginRequest, SignupRequest, TokenResponse
from auth import create_access_token, validate_password_strength
from services.subscription_service import serialize_subscription, subscription_service
from services.tenant_service import tenant_service
from utils.errors import ValidationError
import logging

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/api/auth", tags=["auth"])


def _token_for(user: dict) -> str:
    return create_access_token({
        "user_id": user["user_id"],
        "tenant_id": user["tenant_id"],
        "email": user["email"],
        "role": user["role"],
    })


@router.post("/signup", response_model=TokenResponse, status_code=status.HTTP_201_CREATED)
async def signup(body: SignupRequest):
    """Register a clinic. Starts a 14-day trial on the free plan."""
    is_valid, message = validate_password_strength(body.password)
    if not is_valid:
        raise ValidationError(message)

    result = await tenant_service.register_tenant(body)
    user = result["user"]
    return TokenResponse(
        access_token=_token_for(user),
        user=user,
        subscription=result["subscription"],
    )


@router.post("/login", response_model=TokenResponse)
async def login(credentials: LoginRequest):
    """Tenant user login."""
    user = await tenant_service.authenticate(credentials.email, credentials.password)
    if not user:
        logger.info("Login failed for %s", credentials.email)
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid credentials"
        )

    subscription = await subscription_service.get(user["tenant_id"])
    public_user = {k: v for k, v in user.items() if k != "password_hash"}
    return TokenResponse(
        access_token=_token_for(user),
        user=public_user,
        subscription=serialize_subscription(subscription),
    )
