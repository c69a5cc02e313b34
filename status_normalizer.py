"""
Validator status normalization.

Backends speak different status vocabularies: beaconcha.in reports liveness
statuses such as ``active_online``, beacon nodes report ``active_ongoing`` and
friends, and goteth reports numeric codes. This module maps all of them into
one canonical status space and decides which transitions are worth an alert.

The raw token tables (BUCKETS, ALIASES) are kept apart from the decision
functions so new backend tokens only need a table entry.
"""

from typing import Any, Optional

PENDING = 'pending'
ACTIVE_ONLINE = 'active_online'
ACTIVE_OFFLINE = 'active_offline'
EXITING_ONLINE = 'exiting_online'
EXITED = 'exited'
SLASHED = 'slashed'

CANONICAL_STATUSES = (PENDING, ACTIVE_ONLINE, ACTIVE_OFFLINE, EXITING_ONLINE, EXITED, SLASHED)

# Buckets
BUCKET_PENDING = 'pending'
BUCKET_ACTIVE = 'active'
BUCKET_OTHER = 'other'

# Max uint64 on beacon nodes, max int64 on beaconcha.in
FAR_FUTURE_EPOCH = 18446744073709551615
NO_EXIT_THRESHOLD = 9223372036854775807

# Raw token -> bucket. Canonical liveness statuses are deliberately absent.
BUCKETS = {
    # beaconcha.in
    'pending': BUCKET_PENDING,
    'deposited': BUCKET_PENDING,
    # beacon node API
    'pending_initialized': BUCKET_PENDING,
    'pending_queued': BUCKET_PENDING,
    'active_ongoing': BUCKET_ACTIVE,
    'active_exiting': BUCKET_ACTIVE,
    # goteth t_status names and numeric codes
    'in_activation_queue': BUCKET_PENDING,
    'active': BUCKET_ACTIVE,
    '0': BUCKET_PENDING,
    '1': BUCKET_ACTIVE,
}

# Raw token -> canonical status for tokens outside the pending/active buckets
ALIASES = {
    'exiting_offline': EXITING_ONLINE,
    'slashing_online': SLASHED,
    'slashing_offline': SLASHED,
    'active_slashed': SLASHED,
    'exited_unslashed': EXITED,
    'exited_slashed': SLASHED,
    'withdrawal_possible': EXITED,
    'withdrawal_done': EXITED,
    'exit': EXITED,
    '2': EXITED,
    '3': SLASHED,
}

LIVENESS_STATUSES = (ACTIVE_ONLINE, ACTIVE_OFFLINE, EXITING_ONLINE)


def _token(raw: Any) -> str:
    if raw is None:
        return ''
    return str(raw).strip().lower()


def has_exit_scheduled(exit_epoch: Optional[Any]) -> bool:
    """True when exit_epoch is a real epoch rather than a "no exit" sentinel."""
    if exit_epoch is None or exit_epoch == '':
        return False
    return int(exit_epoch) < NO_EXIT_THRESHOLD


def normalize(raw_status: Any) -> str:
    """Collapse a backend status token into pending, active or other."""
    return BUCKETS.get(_token(raw_status), BUCKET_OTHER)


def effective_status(raw_status: Any, exit_epoch: Optional[Any] = None) -> str:
    """Resolve a raw status plus exit epoch into a canonical status."""
    bucket = normalize(raw_status)
    if bucket == BUCKET_ACTIVE:
        return EXITING_ONLINE if has_exit_scheduled(exit_epoch) else ACTIVE_ONLINE
    if bucket == BUCKET_PENDING:
        return PENDING

    token = _token(raw_status)
    return ALIASES.get(token, token)


def _is_active_like(status: str) -> bool:
    return status in (ACTIVE_ONLINE, ACTIVE_OFFLINE) or normalize(status) == BUCKET_ACTIVE


def _is_live(status: str) -> bool:
    return status in LIVENESS_STATUSES or normalize(status) == BUCKET_ACTIVE


def is_equivalent(new_status: Any, old_status: Any, exit_epoch: Optional[Any] = None) -> bool:
    """
    Decide whether new_status is the same state as old_status for alerting.

    The saved status is already canonical, so only the new status is resolved
    against exit_epoch. Not symmetric: leaving or entering the exit queue is
    never equivalent, online/offline flickers are.
    """
    new_eff = effective_status(new_status, exit_epoch)
    old_eff = effective_status(old_status, FAR_FUTURE_EPOCH)

    if old_eff == EXITING_ONLINE and new_eff == ACTIVE_ONLINE:
        return False
    if old_eff == EXITING_ONLINE and _is_active_like(new_eff):
        return False
    if new_eff == EXITING_ONLINE and old_eff != EXITING_ONLINE:
        return False
    if _is_live(old_eff) and _is_live(new_eff):
        return True
    return new_eff == old_eff


def is_spam_transition(old_status: Any, new_status: Any) -> bool:
    """True for active_online <-> active_offline flips, which are not actionable."""
    new_eff = effective_status(new_status, FAR_FUTURE_EPOCH)
    if new_eff == EXITING_ONLINE:
        return False

    old_eff = effective_status(old_status, FAR_FUTURE_EPOCH)
    pair = (ACTIVE_ONLINE, ACTIVE_OFFLINE)
    return old_eff in pair and new_eff in pair and old_eff != new_eff
