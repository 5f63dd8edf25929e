"""membership.py

Group membership state machine.

    (none) ──invite──────────▶ Invited ──accept──────▶ Active
    (none) ──apply───────────▶ PendingApproval ──approve──▶ Active
    (none) ──join_public─────▶ Active
    create_group ────────────▶ creator Active/Admin

A (user, group) pair owns at most one row. Inserts go through the store's
atomic ``try_insert``; transitions through ``update_status`` with the
expected prior status, so of two racing requests exactly one wins and the
other gets ``Conflict``.

``is_active_member`` is the one access predicate used by the message
pipeline and the realtime hub.
"""

from __future__ import annotations

from typing import List, Optional

from errors import ErrorKind, Result
from models import Group, Membership, MembershipStatus, Role
from security import log_audit_event
from stores import MembershipStore, UserStore

MAX_GROUP_NAME = 64


class MembershipAuthority:
    def __init__(self, memberships: MembershipStore, users: UserStore):
        self.memberships = memberships
        self.users = users

    # ── Queries ──────────────────────────────────────────────

    def is_active_member(self, group_id: str, user_id: str) -> bool:
        if not group_id or not user_id:
            return False
        m = self.memberships.get(user_id, group_id)
        return m is not None and m.is_active

    def get_membership(self, group_id: str, user_id: str) -> Optional[Membership]:
        return self.memberships.get(user_id, group_id)

    def list_public_groups(self) -> List[Group]:
        return self.memberships.list_public_groups()

    # ── Commands ─────────────────────────────────────────────

    def create_group(self, name, is_public: bool, creator_id: str) -> Result[Group]:
        name = str(name or "").strip()
        if not name:
            return Result.failure(ErrorKind.INVALID_INPUT, "Group name is required.")
        if len(name) > MAX_GROUP_NAME:
            return Result.failure(ErrorKind.INVALID_INPUT, f"Group name too long (max {MAX_GROUP_NAME}).")
        if self.users.get(creator_id) is None:
            return Result.failure(ErrorKind.NOT_FOUND, "Unknown user.")

        group = self.memberships.create_group(name, bool(is_public), creator_id)
        log_audit_event(creator_id, "group_create", group.id, "public" if group.is_public else "private")
        return Result.success(group)

    def invite(self, group_id: str, inviter_id: str, invitee_id: str) -> Result[Membership]:
        if self.memberships.get_group(group_id) is None:
            return Result.failure(ErrorKind.NOT_FOUND, "Group not found.")
        if self.users.get(invitee_id) is None:
            return Result.failure(ErrorKind.NOT_FOUND, "User not found.")
        if not self._is_active_admin(group_id, inviter_id):
            return Result.failure(ErrorKind.FORBIDDEN, "Only group admins can invite.")

        if not self.memberships.try_insert(invitee_id, group_id, Role.MEMBER, MembershipStatus.INVITED):
            return Result.failure(ErrorKind.CONFLICT, "User already has a membership in this group.")
        log_audit_event(inviter_id, "group_invite", group_id, invitee_id)
        return Result.success(Membership(invitee_id, group_id, Role.MEMBER, MembershipStatus.INVITED))

    def apply(self, group_id: str, user_id: str) -> Result[Membership]:
        if self.memberships.get_group(group_id) is None:
            return Result.failure(ErrorKind.NOT_FOUND, "Group not found.")
        if self.users.get(user_id) is None:
            return Result.failure(ErrorKind.NOT_FOUND, "User not found.")

        if not self.memberships.try_insert(user_id, group_id, Role.MEMBER, MembershipStatus.PENDING_APPROVAL):
            return Result.failure(ErrorKind.CONFLICT, "Already a member or pending.")
        log_audit_event(user_id, "group_apply", group_id)
        return Result.success(Membership(user_id, group_id, Role.MEMBER, MembershipStatus.PENDING_APPROVAL))

    def accept_invitation(self, group_id: str, user_id: str) -> Result[Membership]:
        current = self.memberships.get(user_id, group_id)
        if current is None or current.status != MembershipStatus.INVITED:
            return Result.failure(ErrorKind.NOT_FOUND, "No pending invitation.")

        if not self.memberships.update_status(
            user_id, group_id, MembershipStatus.INVITED, MembershipStatus.ACTIVE
        ):
            return Result.failure(ErrorKind.CONFLICT, "Invitation already handled.")
        log_audit_event(user_id, "group_accept", group_id)
        return Result.success(Membership(user_id, group_id, current.role, MembershipStatus.ACTIVE))

    def approve_application(self, group_id: str, approver_id: str, applicant_id: str) -> Result[Membership]:
        if not self._is_active_admin(group_id, approver_id):
            return Result.failure(ErrorKind.FORBIDDEN, "Only group admins can approve.")

        current = self.memberships.get(applicant_id, group_id)
        if current is None:
            return Result.failure(ErrorKind.NOT_FOUND, "No application from this user.")
        if current.status != MembershipStatus.PENDING_APPROVAL:
            return Result.failure(ErrorKind.CONFLICT, "Membership is not pending approval.")

        if not self.memberships.update_status(
            applicant_id, group_id, MembershipStatus.PENDING_APPROVAL, MembershipStatus.ACTIVE
        ):
            return Result.failure(ErrorKind.CONFLICT, "Application already handled.")
        log_audit_event(approver_id, "group_approve", group_id, applicant_id)
        return Result.success(Membership(applicant_id, group_id, current.role, MembershipStatus.ACTIVE))

    def join_public(self, group_id: str, user_id: str) -> Result[Membership]:
        group = self.memberships.get_group(group_id)
        if group is None:
            return Result.failure(ErrorKind.NOT_FOUND, "Group not found.")
        if not group.is_public:
            return Result.failure(ErrorKind.FORBIDDEN, "Group is private.")
        if self.users.get(user_id) is None:
            return Result.failure(ErrorKind.NOT_FOUND, "User not found.")

        if not self.memberships.try_insert(user_id, group_id, Role.MEMBER, MembershipStatus.ACTIVE):
            return Result.failure(ErrorKind.CONFLICT, "Already a member or pending.")
        log_audit_event(user_id, "group_join", group_id)
        return Result.success(Membership(user_id, group_id, Role.MEMBER, MembershipStatus.ACTIVE))

    def _is_active_admin(self, group_id: str, user_id: str) -> bool:
        m = self.memberships.get(user_id, group_id)
        return m is not None and m.is_active_admin
