from fastapi import APIRouter, Depends, HTTPException, Header
from sqlalchemy.exc import SQLAlchemyError
from accountlink.settings import settings
from accountlink.core.errors import CollaboratorError
from accountlink.core.state_machine import Idle, flow_to_dict
from accountlink.observability.logging import log
from accountlink.store.state_store import get_state_store
from accountlink.store.database import session_scope
import accountlink.store.account_repo as account_repo
import accountlink.observability.metrics as metrics

router = APIRouter(prefix="/admin", tags=["admin"])

def require_admin(x_admin_key: str = Header(default="", alias="x-admin-key")):
    if not settings.ADMIN_RBAC_ENABLED:
        return
    # Secure default: if enabled but no key configured, reject all.
    if not settings.ADMIN_API_KEY:
        raise HTTPException(status_code=403, detail="Admin access disabled (no key configured)")
    if x_admin_key != settings.ADMIN_API_KEY:
        raise HTTPException(status_code=403, detail="Invalid admin key")

@router.get("/flow/{chat_identity_id}")
def get_flow_snapshot(chat_identity_id: str, _=Depends(require_admin)):
    """Read-only view of the linking flow and the bound account."""
    state = get_state_store().get(chat_identity_id)

    account = None
    try:
        with session_scope() as db:
            row = account_repo.get_by_chat_identity(db, chat_identity_id)
            if row is not None:
                account = {
                    "accountId": row.id,
                    "emailVerified": bool(row.email_verified),
                    "hasEmail": bool(row.email_address),
                    "displayName": row.display_name,
                }
    except SQLAlchemyError:
        account = {"error": "account_store_unavailable"}

    return {
        "chatIdentityId": chat_identity_id,
        "flow": flow_to_dict(state.flow),
        "pendingAction": (state.pendingAction or {}).get("name"),
        "recentEvents": len(state.recentEventKeys or []),
        "updatedAtEpoch": state.updatedAtEpoch,
        "account": account,
    }

@router.delete("/flow/{chat_identity_id}")
def reset_flow(chat_identity_id: str, _=Depends(require_admin)):
    """Drop the conversation state so the next message starts from Idle. Accounts are untouched."""
    try:
        get_state_store().clear(chat_identity_id)
    except CollaboratorError:
        raise HTTPException(status_code=503, detail="conversation_state_store_unavailable")
    log(event="admin_flow_reset", chatIdentityId=chat_identity_id)
    return {"chatIdentityId": chat_identity_id, "flow": flow_to_dict(Idle())}

@router.get("/stats")
def get_stats(_=Depends(require_admin)):
    """
    Observability snapshot backed by Redis counters.
    """
    return metrics.get_stats_snapshot()
