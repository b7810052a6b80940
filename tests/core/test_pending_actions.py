from types import SimpleNamespace
from unittest.mock import patch

from accountlink.core.pending_actions import (
    PendingAction,
    register_action,
    run_pending_action,
    unregister_action,
)


def test_round_trip_through_dict():
    action = PendingAction("share_food", {"item": "soup", "qty": 2})
    assert PendingAction.from_dict(action.to_dict()) == action


def test_from_dict_rejects_garbage():
    assert PendingAction.from_dict(None) is None
    assert PendingAction.from_dict({"payload": {}}) is None
    assert PendingAction.from_dict({"name": "x", "payload": "nope"}) == PendingAction("x", {})


def test_registered_handler_receives_account_and_payload():
    seen = []

    @register_action("test_share")
    def _handler(account, payload):
        seen.append((account.id, payload))
        return "shared"

    try:
        out = run_pending_action(PendingAction("test_share", {"item": "rice"}), SimpleNamespace(id="acc-1"))
    finally:
        unregister_action("test_share")

    assert out == "shared"
    assert seen == [("acc-1", {"item": "rice"})]


@patch("accountlink.core.pending_actions.log")
def test_unknown_action_is_logged_and_skipped(mock_log):
    out = run_pending_action(PendingAction("nobody_handles_this"), SimpleNamespace(id="acc-1"))

    assert out is None
    assert mock_log.call_args.kwargs["event"] == "pending_action_unhandled"
