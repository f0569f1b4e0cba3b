import hashlib
import json
import logging
from datetime import datetime

logger = logging.getLogger(__name__)

RISK_LEVELS = ("LOW", "MEDIUM", "HIGH", "CRITICAL")
DEFAULT_ADMIN_ID = "unknown-admin"


def _deterministic_hash(payload):
    serialized = json.dumps(payload, sort_keys=True, separators=(",", ":"))
    return hashlib.sha256(serialized.encode("utf-8")).hexdigest()


def _normalized_risk(risk_level):
    level = (risk_level or "LOW").upper()
    if level not in RISK_LEVELS:
        return "LOW"
    return level


def ballot_change_risk(store, base="LOW"):
    """Editing the ballot is HIGH risk once any vote has been cast."""
    if store.total_votes() > 0:
        return "HIGH"
    return _normalized_risk(base)


def log_admin_event(store, admin_id, event_type, event_details=None, risk_level="LOW"):
    risk_level = _normalized_risk(risk_level)
    event_payload = {
        "event_type": event_type,
        "admin_id": admin_id or DEFAULT_ADMIN_ID,
        "timestamp": datetime.utcnow().replace(microsecond=0).isoformat() + "Z",
        "risk_level": risk_level,
        "event_details": event_details or {},
    }
    decision_hash = _deterministic_hash(event_payload)
    event_id, created_at = store.record_admin_event(
        event_payload["admin_id"], event_type, event_payload, risk_level, decision_hash
    )

    log = logger.warning if risk_level in ("HIGH", "CRITICAL") else logger.info
    log("Admin event %s by %s (%s)", event_type, event_payload["admin_id"], risk_level)

    return {
        "id": event_id,
        "created_at": created_at.isoformat() if created_at else None,
        "event_payload": event_payload,
        "decision_hash": decision_hash,
        "risk_level": risk_level,
    }


def verify_event_hash(event):
    return _deterministic_hash(event["event_details"]) == event["decision_hash"]
