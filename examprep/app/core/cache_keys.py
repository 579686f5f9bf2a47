"""Shared-cache key builders and the cached payload envelope.

Key names are a contract with other collaborators (they invalidate by these
names), so every component builds keys here instead of formatting strings
inline. Cached JSON is wrapped in a versioned envelope; bump
``PAYLOAD_VERSION`` whenever a cached shape changes and old entries are read
as misses.
"""

import json
from typing import Any, Optional

PAYLOAD_VERSION = 1

_ABSENT = "none"


def _part(value: Optional[int]) -> str:
    return _ABSENT if value is None else str(value)


def session_lock_key(user_id: str) -> str:
    return f"session-creation-lock:{user_id}"


def idempotency_key(user_id: str, token: str) -> str:
    return f"session-idempotency:{user_id}:{token}"


def question_pool_key(
    subject_id: int, topic_id: Optional[int] = None, subtopic_id: Optional[int] = None
) -> str:
    return (
        f"questions:pool:subject:{subject_id}"
        f":topic:{_part(topic_id)}:subtopic:{_part(subtopic_id)}"
    )


def freemium_topics_key(subject_id: int, limit: int) -> str:
    return f"questions:freemium-topics:subject:{subject_id}:limit:{limit}"


def user_quota_key(user_id: str) -> str:
    return f"user:{user_id}:quota"


def user_cache_keys(user_id: str) -> list[str]:
    """Keys holding per-user state that a new session makes stale.

    Entries containing ``*`` are glob patterns.
    """
    return [
        user_quota_key(user_id),
        f"user:{user_id}:subscription",
        f"user:{user_id}:test-limits",
        f"api:practice-sessions:user:{user_id}:*",
    ]


def encode_payload(data: Any) -> bytes:
    """Serialize ``data`` inside a versioned envelope."""
    return json.dumps({"v": PAYLOAD_VERSION, "data": data}).encode("utf-8")


def decode_payload(raw: Optional[bytes]) -> Any:
    """Return the enveloped data, or None for a miss, a bad payload or a stale version."""
    if raw is None:
        return None
    try:
        envelope = json.loads(raw.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError):
        return None
    if not isinstance(envelope, dict) or envelope.get("v") != PAYLOAD_VERSION:
        return None
    return envelope.get("data")
