"""
auth/activity.py -- Audit trail of identity and credential events.

A plain logging stream ("supportdesk.activity"), not an analytics pipeline.
Route the logger to its own handler in deployment if the events need to be
kept apart from request logs.

Events:
  auth.login  auth.logout  auth.session_claimed  auth.session_extended
  vault.saved  vault.decrypted  vault.revoked  vault.denied

Never pass tokens, passwords or plaintext as fields.
"""

from __future__ import annotations

import logging

from auth.models import SessionUser

activity_logger = logging.getLogger("supportdesk.activity")


def record(event: str, user: SessionUser | None, **fields) -> None:
    user_id = user.id if user else None
    activity_logger.info(
        "%s user_id=%s",
        event,
        user_id,
        extra={"event": event, "user_id": user_id, "email": user.email if user else None, **fields},
    )
