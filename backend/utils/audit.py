from database import database
from models import AuditLog, AuditAction
from typing import Optional, Dict, Any, List
import logging

logger = logging.getLogger(__name__)

def calculate_diff(before: Dict[str, Any], after: Dict[str, Any]) -> Dict[str, Any]:
    """Calculate the differences between before and after subscription states.
    
    Returns a dict with:
    - added: fields that exist in after but not in before
    - removed: fields that exist in before but not in after
    - changed: fields that exist in both but have different values
    """
    if not before and not after:
        return {}
    
    if not before:
        return {"added": after, "removed": {}, "changed": {}}
    
    if not after:
        return {"added": {}, "removed": before, "changed": {}}
    
    diff = {"added": {}, "removed": {}, "changed": {}}
    
    for key in set(before.keys()) | set(after.keys()):
        before_val = before.get(key)
        after_val = after.get(key)
        
        if key not in before:
            diff["added"][key] = after_val
        elif key not in after:
            diff["removed"][key] = before_val
        elif before_val != after_val:
            diff["changed"][key] = {"from": before_val, "to": after_val}
    
    # Remove empty categories
    return {k: v for k, v in diff.items() if v}

async def create_audit_log(
    action: AuditAction,
    actor_role: Optional[str] = None,
    actor_id: Optional[str] = None,
    tenant_id: Optional[str] = None,
    resource_type: Optional[str] = None,
    resource_id: Optional[str] = None,
    before_state: Optional[Dict[str, Any]] = None,
    after_state: Optional[Dict[str, Any]] = None,
    metadata: Optional[Dict[str, Any]] = None,
    reason_code: Optional[str] = None,
    ip_address: Optional[str] = None,
) -> str:
    """Create an audit log entry for a billing transition.
    
    Args:
        action: The audit action type
        actor_role: SYSTEM for webhook-driven changes, the user's role for intents
        actor_id: ID of the user performing the action
        tenant_id: Tenant whose billing state changed
        resource_type: Type of resource being modified (e.g., 'subscription')
        resource_id: ID of the specific resource
        before_state: State before the change
        after_state: State after the change
        metadata: Additional metadata
        reason_code: Optional reason code for the action
        ip_address: IP address of the request
    """
    try:
        db = database.get_db()
        
        enriched_metadata = metadata.copy() if metadata else {}
        if before_state is not None and after_state is not None:
            diff = calculate_diff(before_state, after_state)
            if diff:
                enriched_metadata["diff"] = diff
        
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
            reason_code=reason_code,
            ip_address=ip_address
        )
        
        doc = audit_log.model_dump(mode="json")
        await db.audit_logs.insert_one(doc)
        logger.info(f"Audit log created: {action.value} tenant={tenant_id}")
        return audit_log.audit_id
    except Exception as e:
        logger.error(f"Failed to create audit log: {e}")
        # Never fail the main operation due to audit log failure
        return ""

async def get_audit_logs_for_tenant(
    tenant_id: str,
    limit: int = 50
) -> List[Dict[str, Any]]:
    """Get billing audit logs for a tenant, newest first."""
    try:
        db = database.get_db()
        cursor = db.audit_logs.find(
            {"tenant_id": tenant_id},
            {"_id": 0}
        ).sort("timestamp", -1).limit(limit)
        
        return await cursor.to_list(length=limit)
    except Exception as e:
        logger.error(f"Failed to get audit logs for tenant: {e}")
        return []
