#!/usr/bin/env python3
"""security.py

Password hashing, audit logging and a per-key failure limiter.

Hashes are Argon2id (argon2-cffi). The module keeps one hasher; tests and
small deployments swap it with ``configure_password_hasher``.
"""

from __future__ import annotations

import logging
import threading
import time
from collections import defaultdict, deque
from typing import Deque, Dict, Optional, Tuple

from argon2 import PasswordHasher
from argon2.exceptions import InvalidHashError, VerificationError

audit_log = logging.getLogger("crtalk.audit")

# ────────────────────────────────────────────────────────────
# Audit logging
# ────────────────────────────────────────────────────────────

def log_audit_event(actor: str, action: str, target: str | None = None, details: str | None = None) -> None:
    """One line per security-relevant action, on the ``crtalk.audit`` logger."""
    audit_log.info("actor=%s action=%s target=%s details=%s", actor, action, target or "-", details or "-")


# ────────────────────────────────────────────────────────────
# Password hashing
# ────────────────────────────────────────────────────────────

def _make_hasher(time_cost: int, memory_cost: int, parallelism: int) -> PasswordHasher:
    return PasswordHasher(
        time_cost=int(time_cost),
        memory_cost=int(memory_cost),  # KiB
        parallelism=int(parallelism),
        hash_len=32,
        salt_len=16,
    )


_PWH = _make_hasher(3, 64 * 1024, 1)


def configure_password_hasher(time_cost: int = 3, memory_cost: int = 64 * 1024, parallelism: int = 1) -> None:
    global _PWH
    _PWH = _make_hasher(time_cost, memory_cost, parallelism)


def hash_password(password: str) -> str:
    return _PWH.hash(password)


def verify_password(password: str, stored_hash: str) -> bool:
    return verify_password_and_upgrade(password, stored_hash)[0]


def verify_password_and_upgrade(password: str, stored_hash: str) -> Tuple[bool, Optional[str]]:
    """(ok, new_hash). ``new_hash`` is set when the stored hash used older parameters."""
    if not (stored_hash or "").startswith("$argon2"):
        return False, None
    try:
        _PWH.verify(stored_hash, password)
    except (VerificationError, InvalidHashError):
        return False, None
    return True, (_PWH.hash(password) if _PWH.check_needs_rehash(stored_hash) else None)


# ────────────────────────────────────────────────────────────
# Per-key failure limiter
# ────────────────────────────────────────────────────────────
# Flask-Limiter throttles per client address; this one throttles per
# account name so a spray from many addresses still hits a ceiling.

_hits: Dict[str, Deque[float]] = defaultdict(deque)
_hits_lock = threading.Lock()


def simple_rate_limit(key: str, limit: int, window_sec: int) -> tuple[bool, float]:
    """Record one hit on ``key``. Returns (allowed, seconds_until_retry)."""
    if int(limit) <= 0 or int(window_sec) <= 0:
        return True, 0.0

    now = time.monotonic()
    with _hits_lock:
        window = _hits[key]
        while window and now - window[0] > window_sec:
            window.popleft()
        if len(window) >= int(limit):
            return False, max(0.0, window[0] + window_sec - now)
        window.append(now)
    return True, 0.0


def reset_rate_limit(key: str) -> None:
    with _hits_lock:
        _hits.pop(key, None)
