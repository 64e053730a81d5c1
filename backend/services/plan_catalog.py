"""Plan Catalog - quotas and module flags for every Clinify plan.

The catalog is a read-only lookup table. It is built once at process start
(``build_plan_catalog()``) and injected into the entitlement service; nothing
in it is mutable after construction.

Plan Structure:
- free: 50 patients, 1 user, basic reports
- basic: 200 patients, 3 users, advanced reports, basic CRM (R$ 99/mo)
- professional: unlimited patients, 10 users, every clinical module (R$ 299/mo)
- enterprise: unlimited everything + white-label, multi-branch, custom integrations (R$ 799/mo)
"""
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Dict, Mapping, Optional, Union, Any, List
from models import PlanId, ModuleKey, ResourceKind

UNLIMITED = -1

# Tri-state module flag: True / False / "basic" / "advanced"
ModuleFlag = Union[bool, str]

PAID_PLANS = frozenset({PlanId.BASIC, PlanId.PROFESSIONAL, PlanId.ENTERPRISE})

PLAN_HIERARCHY = {
    PlanId.FREE: 0,
    PlanId.BASIC: 1,
    PlanId.PROFESSIONAL: 2,
    PlanId.ENTERPRISE: 3,
}


# ============================================================================
# PLAN LIMITS
# ============================================================================
PLAN_LIMITS = {
    PlanId.FREE: {
        "patients": 50,
        "users": 1,
        "storage": "1GB",
        "appointments_per_month": 200,
        "transactions_per_month": 500,
    },
    PlanId.BASIC: {
        "patients": 200,
        "users": 3,
        "storage": "10GB",
        "appointments_per_month": 1000,
        "transactions_per_month": 2000,
    },
    PlanId.PROFESSIONAL: {
        "patients": UNLIMITED,
        "users": 10,
        "storage": "100GB",
        "appointments_per_month": UNLIMITED,
        "transactions_per_month": UNLIMITED,
    },
    PlanId.ENTERPRISE: {
        "patients": UNLIMITED,
        "users": UNLIMITED,
        "storage": "1TB",
        "appointments_per_month": UNLIMITED,
        "transactions_per_month": UNLIMITED,
    },
}


# ============================================================================
# PLAN MODULES
# ============================================================================
_CLINICAL_CORE = {
    ModuleKey.FINANCE: True,
    ModuleKey.PATIENTS: True,
    ModuleKey.APPOINTMENTS: True,
}

PLAN_MODULES = {
    PlanId.FREE: {
        **_CLINICAL_CORE,
        ModuleKey.REPORTS: "basic",
        ModuleKey.CRM: False,
        ModuleKey.INVENTORY: False,
        ModuleKey.PRESCRIPTIONS: False,
        ModuleKey.LOYALTY: False,
        ModuleKey.COMMISSIONS: False,
        ModuleKey.RECORDS: False,
        ModuleKey.AI: False,
    },
    PlanId.BASIC: {
        **_CLINICAL_CORE,
        ModuleKey.REPORTS: "advanced",
        ModuleKey.CRM: "basic",
        ModuleKey.INVENTORY: False,
        ModuleKey.PRESCRIPTIONS: False,
        ModuleKey.LOYALTY: False,
        ModuleKey.COMMISSIONS: False,
        ModuleKey.RECORDS: False,
        ModuleKey.AI: False,
    },
    PlanId.PROFESSIONAL: {
        **_CLINICAL_CORE,
        ModuleKey.REPORTS: "advanced",
        ModuleKey.CRM: "advanced",
        ModuleKey.INVENTORY: True,
        ModuleKey.PRESCRIPTIONS: True,
        ModuleKey.LOYALTY: True,
        ModuleKey.COMMISSIONS: True,
        ModuleKey.RECORDS: True,
        ModuleKey.AI: True,
    },
    PlanId.ENTERPRISE: {
        **_CLINICAL_CORE,
        ModuleKey.REPORTS: "advanced",
        ModuleKey.CRM: "advanced",
        ModuleKey.INVENTORY: True,
        ModuleKey.PRESCRIPTIONS: True,
        ModuleKey.LOYALTY: True,
        ModuleKey.COMMISSIONS: True,
        ModuleKey.RECORDS: True,
        ModuleKey.AI: True,
        ModuleKey.WHITE_LABEL: True,
        ModuleKey.MULTI_BRANCH: True,
        ModuleKey.CUSTOM_INTEGRATIONS: True,
    },
}


# ============================================================================
# PLAN DISPLAY DATA (prices in BRL)
# ============================================================================
PLAN_DISPLAY = {
    PlanId.FREE: {"name": "Free", "monthly_price": 0},
    PlanId.BASIC: {"name": "Basic", "monthly_price": 99},
    PlanId.PROFESSIONAL: {"name": "Professional", "monthly_price": 299},
    PlanId.ENTERPRISE: {"name": "Enterprise", "monthly_price": 799},
}


# ============================================================================
# CATALOG TYPES
# ============================================================================
@dataclass(frozen=True)
class PlanLimits:
    patients: int
    users: int
    storage: str
    appointments_per_month: int
    transactions_per_month: int

    def limit_for(self, kind: ResourceKind) -> int:
        return {
            ResourceKind.PATIENT: self.patients,
            ResourceKind.USER: self.users,
            ResourceKind.APPOINTMENT: self.appointments_per_month,
            ResourceKind.TRANSACTION: self.transactions_per_month,
        }[kind]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "patients": self.patients,
            "users": self.users,
            "storage": self.storage,
            "appointments_per_month": self.appointments_per_month,
            "transactions_per_month": self.transactions_per_month,
        }


@dataclass(frozen=True)
class PlanModules:
    flags: Mapping[ModuleKey, ModuleFlag] = field(default_factory=dict)

    def flag(self, module: ModuleKey) -> ModuleFlag:
        # Modules missing from a plan (enterprise-only flags) are off
        return self.flags.get(module, False)

    def to_dict(self) -> Dict[str, ModuleFlag]:
        return {module.value: self.flag(module) for module in ModuleKey}


@dataclass(frozen=True)
class PlanDefinition:
    plan: PlanId
    name: str
    monthly_price: int
    limits: PlanLimits
    modules: PlanModules

    def to_dict(self) -> Dict[str, Any]:
        return {
            "plan": self.plan.value,
            "name": self.name,
            "monthly_price": self.monthly_price,
            "currency": "BRL",
            "limits": self.limits.to_dict(),
            "modules": self.modules.to_dict(),
        }


class PlanCatalog:
    """Immutable plan lookup. Unknown plans resolve to ``free``."""

    def __init__(self, definitions: Mapping[PlanId, PlanDefinition]):
        missing = [plan.value for plan in PlanId if plan not in definitions]
        if missing:
            raise ValueError(f"Plan catalog is missing definitions for: {', '.join(missing)}")
        self._definitions = MappingProxyType(dict(definitions))

    def resolve_plan_id(self, value: Optional[Union[str, PlanId]]) -> PlanId:
        """Normalize a stored plan string; unknown or empty values are ``free``."""
        if isinstance(value, PlanId):
            return value
        try:
            return PlanId((value or "").strip().lower())
        except ValueError:
            return PlanId.FREE

    def get(self, plan: Optional[Union[str, PlanId]]) -> PlanDefinition:
        return self._definitions[self.resolve_plan_id(plan)]

    def get_limits(self, plan: Optional[Union[str, PlanId]]) -> PlanLimits:
        return self.get(plan).limits

    def get_modules(self, plan: Optional[Union[str, PlanId]]) -> PlanModules:
        return self.get(plan).modules

    def all_plans(self) -> List[PlanDefinition]:
        return sorted(self._definitions.values(), key=lambda d: PLAN_HIERARCHY[d.plan])

    def minimum_plan_for(self, module: ModuleKey) -> Optional[PlanId]:
        """Cheapest plan that grants any access to ``module``."""
        for definition in self.all_plans():
            if definition.modules.flag(module) is not False:
                return definition.plan
        return None


def build_plan_catalog() -> PlanCatalog:
    """Build the catalog from the static tables. Called once at startup."""
    definitions = {}
    for plan in PlanId:
        display = PLAN_DISPLAY[plan]
        definitions[plan] = PlanDefinition(
            plan=plan,
            name=display["name"],
            monthly_price=display["monthly_price"],
            limits=PlanLimits(**PLAN_LIMITS[plan]),
            modules=PlanModules(MappingProxyType(dict(PLAN_MODULES[plan]))),
        )
    return PlanCatalog(definitions)


def plan_meets_minimum(plan: PlanId, minimum: PlanId) -> bool:
    return PLAN_HIERARCHY[plan] >= PLAN_HIERARCHY[minimum]
