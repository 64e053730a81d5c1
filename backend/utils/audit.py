from database import database
from models import AuditLog, AuditAction, UserRole
from typing import Optional, Dict, Any, Union
import logging

logger = logging.getLogger(__name__)

def calculate_diff(before: Dict[str, Any], after: Dict[str, Any]) -> Dict[str, Any]:
    """Calculate the differences between before and after states.
    
    Returns a dict with:
    - added: fields that exist in after but not in before
    - removed: fields that exist in before but not in after
    - changed: fields that exist in both but have different values
    """
    if not before and not after:
        return {}
    if not before:
        return {"added": after}
    if not after:
        return {"removed": before}
    
    diff = {"added": {}, "removed": {}, "changed": {}}
    for key in set(before) | set(after):
        if key not in before:
            diff["added"][key] = after[key]
        elif key not in after:
            diff["removed"][key] = before[key]
        elif before[key] != after[key]:
            diff["changed"][key] = {"from": before[key], "to": after[key]}
    
    # Remove empty categories
    return {k: v for k, v in diff.items() if v}

async def create_audit_log(
    action: AuditAction,
    actor_role: Optional[Union[UserRole, str]] = None,
    actor_id: Optional[str] = None,
    tenant_id: Optional[str] = None,
    resource_type: Optional[str] = None,
    resource_id: Optional[str] = None,
    before_state: Optional[Dict[str, Any]] = None,
    after_state: Optional[Dict[str, Any]] = None,
    metadata: Optional[Dict[str, Any]] = None,
) -> str:
    """Create an audit log entry, storing a diff when both states are given.
    
    Audit failures are logged and never fail the calling operation.
    """
    try:
        db = database.get_db()
        
        enriched_metadata = dict(metadata) if metadata else {}
        if before_state and after_state:
            diff = calculate_diff(before_state, after_state)
            if diff:
                enriched_metadata["diff"] = diff
        
        if isinstance(actor_role, str):
            actor_role = UserRole(actor_role) if actor_role in UserRole._value2member_map_ else None
        
        audit_log = AuditLog(
            action=action,
            actor_role=actor_role,
            actor_id=actor_id,
            tenant_id=tenant_id,
            resource_type=resource_type,
            resource_id=resource_id,
            before_state=before_state,
            after_state=after_state,
            metadata=enriched_metadata or None,
        )
        
        await db.audit_logs.insert_one(audit_log.model_dump(mode="json"))
        logger.info(f"Audit log created: {action.value} tenant={tenant_id}")
        return audit_log.audit_id
    except Exception as e:
        logger.error(f"Failed to create audit log: {e}")
        # Never fail the main operation due to audit log failure
        return ""
