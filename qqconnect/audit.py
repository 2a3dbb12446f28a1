"""
Audit logging for login attempts. Security-relevant events only; never tokens, codes or state values.
GET /audit lists recent events.
"""
from fastapi import APIRouter, Depends, Request
from sqlalchemy.orm import Session

from qqconnect.database import get_db
from qqconnect.models import AuditLog

EVENT_CHALLENGE_ISSUED = "challenge_issued"
EVENT_LOGIN_OK = "login_ok"
EVENT_LOGIN_FAIL = "login_fail"

OUTCOME_SUCCESS = "success"
OUTCOME_FAIL = "fail"


def get_client_ip(request: Request | None) -> str | None:
    """Client IP if available (request.client.host). Forwarding headers are not trusted."""
    if request is None or request.client is None:
        return None
    return getattr(request.client, "host", None)


def log_audit(
    db: Session,
    event_type: str,
    *,
    reason: str | None = None,
    subject: str | None = None,
    ip: str | None = None,
    outcome: str = OUTCOME_SUCCESS,
) -> None:
    """Append one audit record."""
    db.add(
        AuditLog(
            event_type=event_type,
            reason=reason,
            subject=subject,
            ip=ip,
            outcome=outcome,
        )
    )
    db.commit()


def query_audit_logs(
    db: Session,
    *,
    limit: int = 100,
    event_type: str | None = None,
    outcome: str | None = None,
) -> list[dict]:
    """Most recent first; limit capped at 500."""
    q = db.query(AuditLog).order_by(AuditLog.created_at.desc(), AuditLog.id.desc())
    if event_type:
        q = q.filter(AuditLog.event_type == event_type)
    if outcome:
        q = q.filter(AuditLog.outcome == outcome)
    rows = q.limit(min(max(1, limit), 500)).all()
    return [
        {
            "created_at": r.created_at.isoformat() if r.created_at else None,
            "event_type": r.event_type,
            "reason": r.reason,
            "subject": r.subject,
            "ip": r.ip,
            "outcome": r.outcome,
        }
        for r in rows
    ]


router = APIRouter(tags=["audit"])


@router.get("/audit")
def list_audit_logs(
    limit: int = 100,
    event_type: str | None = None,
    outcome: str | None = None,
    db: Session = Depends(get_db),
):
    """List recent login events. Do not expose publicly in production."""
    return query_audit_logs(db, limit=limit, event_type=event_type, outcome=outcome)
