from __future__ import annotations

import json
import logging
from typing import Any

from sqlalchemy.exc import SQLAlchemyError

from .clock import Clock, now_int
from .models import AuditEvent

log = logging.getLogger('authserver')
audit_logger = logging.getLogger('authserver.audit')

# never written to the audit trail, whatever the caller passes
SENSITIVE_KEYS = frozenset({
    'code', 'code_verifier', 'client_secret', 'password',
    'refresh_token', 'access_token', 'id_token', 'token',
})


def configure_logging(level: str = 'INFO', audit_log_path: str | None = None) -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format='%(asctime)s [%(name)s] %(levelname)s: %(message)s',
    )
    if audit_log_path:
        # audit trail as JSON lines in its own file
        if not any(isinstance(h, logging.FileHandler) and h.baseFilename.endswith(audit_log_path)
                   for h in audit_logger.handlers):
            handler = logging.FileHandler(audit_log_path)
            handler.setFormatter(logging.Formatter('%(message)s'))
            audit_logger.addHandler(handler)
        audit_logger.setLevel(logging.INFO)
        audit_logger.propagate = False


def scrub(metadata: dict[str, Any]) -> dict[str, Any]:
    return {k: v for k, v in metadata.items() if k not in SENSITIVE_KEYS and v is not None}


class Auditor:
    """Records every protocol outcome as a JSON log line and an ``audit_event`` row."""

    def __init__(self, db, clock: Clock):
        self.db = db
        self.clock = clock

    def record(self, action: str, outcome: str, actor: str | None = None,
               resource: str | None = None, ip_address: str | None = None, **metadata: Any) -> None:
        ts = now_int(self.clock)
        details = scrub(metadata)
        entry = {'ts': ts, 'event': action, 'outcome': outcome, 'actor': actor,
                 'resource': resource, 'ip': ip_address, **details}
        audit_logger.info(json.dumps(entry, default=str))
        try:
            with self.db.session() as s:
                s.add(AuditEvent(created_at=ts, action=action, outcome=outcome, actor=actor,
                                 resource=resource, ip_address=ip_address,
                                 details=json.dumps(details, default=str)))
        except SQLAlchemyError:
            # the protocol outcome stands even if the trail cannot be written
            log.exception('failed to persist audit event %s', action)
