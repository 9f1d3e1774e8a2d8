"""Tests for operation kinds and their finish policies."""
from __future__ import annotations

import pytest

from slotpanel.operations import (
    FINISH_POLICIES,
    Operation,
    OperationKind,
    Refresh,
    policy_for,
)


def test_every_kind_has_a_policy() -> None:
    """Each operation kind maps to a finish policy."""
    assert set(FINISH_POLICIES) == set(OperationKind)


@pytest.mark.parametrize(
    ("kind", "command"),
    [
        (OperationKind.CREATE_BACKUP, "backup-slot"),
        (OperationKind.RESTORE_BACKUP, "rollback-slot"),
        (OperationKind.SWITCH_SLOT, "switch"),
        (OperationKind.SWITCH_ONCE, "switch-once"),
        (OperationKind.SYNC_SLOTS, "sync"),
        (OperationKind.HEALTH_CHECK, "health-check"),
        (OperationKind.SLOT_DIFF, "slot-diff"),
        (OperationKind.APPLY_UPDATE_FROM_FILE, "update"),
        (OperationKind.APPLY_UPDATE_FROM_NETWORK, "netupdate"),
        (OperationKind.VERIFY_INTEGRITY, "verify-integrity"),
        (OperationKind.ENTER_ENVIRONMENT, "enter-slot"),
    ],
)
def test_kind_maps_to_tool_command(kind: OperationKind, command: str) -> None:
    """Kinds map to the subcommand of the managed tool."""
    assert Operation.create(kind).command == command


def test_progress_is_tracked_only_for_updates() -> None:
    """Only the two update kinds extract progress."""
    tracked = {kind for kind, policy in FINISH_POLICIES.items() if policy.tracks_progress}

    assert tracked == {
        OperationKind.APPLY_UPDATE_FROM_FILE,
        OperationKind.APPLY_UPDATE_FROM_NETWORK,
    }


def test_refresh_hooks() -> None:
    """Create-backup rescans the catalog; switch refreshes the current slot."""
    assert policy_for(OperationKind.CREATE_BACKUP).refresh is Refresh.CATALOG
    assert policy_for(OperationKind.SWITCH_SLOT).refresh is Refresh.CURRENT_SLOT
    assert policy_for(OperationKind.SWITCH_ONCE).refresh is Refresh.NONE


def test_notes_replace_messages_for_reports() -> None:
    """Health check and slot diff append a note and emit no message."""
    for kind in (OperationKind.HEALTH_CHECK, OperationKind.SLOT_DIFF):
        policy = policy_for(kind)
        assert policy.message is None
        assert policy.note


def test_operation_normalises_arguments() -> None:
    """Arguments are stored as a tuple of strings."""
    operation = Operation.create(OperationKind.RESTORE_BACKUP, ["b", 3])

    assert operation.arguments == ("b", "3")
    assert operation.privileged is True
