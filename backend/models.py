from pydantic import BaseModel, EmailStr, Field, ConfigDict
from typing import Optional, Dict, Any, Literal
from datetime import datetime, timezone
from enum import Enum
import uuid

# ============================================================================
# ENUMS (System Constants)
# ============================================================================

class PlanId(str, Enum):
    FREE = "free"
    BASIC = "basic"
    PROFESSIONAL = "professional"
    ENTERPRISE = "enterprise"

class SubscriptionStatus(str, Enum):
    ACTIVE = "active"
    CANCELED = "canceled"
    PAST_DUE = "past_due"
    TRIALING = "trialing"
    INCOMPLETE = "incomplete"

class BillingProvider(str, Enum):
    STRIPE = "stripe"
    MERCADOPAGO = "mercadopago"

class ResourceKind(str, Enum):
    PATIENT = "patient"
    TRANSACTION = "transaction"
    APPOINTMENT = "appointment"
    USER = "user"

class ModuleKey(str, Enum):
    FINANCE = "finance"
    PATIENTS = "patients"
    APPOINTMENTS = "appointments"
    REPORTS = "reports"
    CRM = "crm"
    INVENTORY = "inventory"
    PRESCRIPTIONS = "prescriptions"
    LOYALTY = "loyalty"
    COMMISSIONS = "commissions"
    RECORDS = "records"  # Electronic patient records
    AI = "ai"
    WHITE_LABEL = "white_label"
    MULTI_BRANCH = "multi_branch"
    CUSTOM_INTEGRATIONS = "custom_integrations"

class UserRole(str, Enum):
    ROLE_OWNER = "ROLE_OWNER"
    ROLE_ADMIN = "ROLE_ADMIN"
    ROLE_STAFF = "ROLE_STAFF"
    ROLE_SYSTEM = "ROLE_SYSTEM"

class UserStatus(str, Enum):
    ACTIVE = "ACTIVE"
    DISABLED = "DISABLED"

class AuditAction(str, Enum):
    TENANT_SIGNUP = "TENANT_SIGNUP"
    SUBSCRIPTION_CREATED = "SUBSCRIPTION_CREATED"
    SUBSCRIPTION_STATUS_CHANGED = "SUBSCRIPTION_STATUS_CHANGED"
    SUBSCRIPTION_CANCEL_REQUESTED = "SUBSCRIPTION_CANCEL_REQUESTED"
    SUBSCRIPTION_REACTIVATED = "SUBSCRIPTION_REACTIVATED"
    CHECKOUT_STARTED = "CHECKOUT_STARTED"
    PLAN_GATE_DENIED = "PLAN_GATE_DENIED"
    QUOTA_EXCEEDED = "QUOTA_EXCEEDED"
    PROVIDER_EVENT_FAILED = "PROVIDER_EVENT_FAILED"
    TENANT_PURGED = "TENANT_PURGED"

# ============================================================================
# DATA MODELS
# ============================================================================

def _utcnow() -> datetime:
    return datetime.now(timezone.utc)

class Tenant(BaseModel):
    model_config = ConfigDict(extra="ignore")

    tenant_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    name: str
    owner_email: EmailStr
    created_at: datetime = Field(default_factory=_utcnow)
    updated_at: datetime = Field(default_factory=_utcnow)

class User(BaseModel):
    model_config = ConfigDict(extra="ignore", use_enum_values=True)

    user_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    tenant_id: str
    email: EmailStr
    name: str
    password_hash: str
    role: UserRole = UserRole.ROLE_OWNER
    status: UserStatus = UserStatus.ACTIVE
    created_at: datetime = Field(default_factory=_utcnow)

class Subscription(BaseModel):
    """One row per tenant. Drives entitlements and the retention sweep."""
    model_config = ConfigDict(extra="ignore", use_enum_values=True)

    tenant_id: str
    plan: PlanId = PlanId.FREE
    status: SubscriptionStatus = SubscriptionStatus.INCOMPLETE
    start_date: datetime = Field(default_factory=_utcnow)
    end_date: Optional[datetime] = None
    cancel_at_period_end: bool = False
    canceled_at: Optional[datetime] = None
    provider: Optional[BillingProvider] = None
    stripe_customer_id: Optional[str] = None
    stripe_subscription_id: Optional[str] = None
    mercadopago_customer_id: Optional[str] = None
    mercadopago_preapproval_id: Optional[str] = None
    created_at: datetime = Field(default_factory=_utcnow)
    updated_at: datetime = Field(default_factory=_utcnow)

class AuditLog(BaseModel):
    model_config = ConfigDict(extra="ignore")

    audit_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    action: AuditAction
    actor_role: Optional[UserRole] = None
    actor_id: Optional[str] = None
    tenant_id: Optional[str] = None
    resource_type: Optional[str] = None
    resource_id: Optional[str] = None
    before_state: Optional[Dict[str, Any]] = None
    after_state: Optional[Dict[str, Any]] = None
    metadata: Optional[Dict[str, Any]] = None
    timestamp: datetime = Field(default_factory=_utcnow)

# ============================================================================
# REQUEST MODELS
# ============================================================================

class SignupRequest(BaseModel):
    clinic_name: str = Field(min_length=1, max_length=200)
    name: str = Field(min_length=1, max_length=200)
    email: EmailStr
    password: str = Field(min_length=8)

class LoginRequest(BaseModel):
    email: EmailStr
    password: str

class CheckoutRequest(BaseModel):
    """Request to start a provider checkout for a paid plan."""
    model_config = ConfigDict(extra="forbid")

    plan: PlanId
    provider: BillingProvider = BillingProvider.STRIPE
    success_url: Optional[str] = None
    cancel_url: Optional[str] = None

class CancelRequest(BaseModel):
    """Request to cancel the tenant's subscription."""
    model_config = ConfigDict(extra="forbid")

    provider: Optional[BillingProvider] = None
    at_period_end: bool = True

class ProviderStatusResponse(BaseModel):
    provider: Literal["stripe", "mercadopago"]
    configured: bool
    plans_available: Dict[str, bool]

class TokenResponse(BaseModel):
    access_token: str
    token_type: str = "bearer"
    user: Dict[str, Any]
    subscription: Optional[Dict[str, Any]] = None
