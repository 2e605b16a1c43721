from datetime import timedelta

import pytest

from config import BreachType, Priority, TicketStatus
from core import DomainException
from sla.application import SyncRequest
from sla.domain import UNSET, SLACalculator, SlaInstance, SlaTarget, SyncOptions, TrackedTicket

from conftest import NOW


def make_ticket(**overrides) -> TrackedTicket:
    values = dict(
        id="t-1",
        priority=Priority.P3,
        status=TicketStatus.NEW,
        first_response_due_at=NOW + timedelta(hours=1),
        due_at=NOW + timedelta(hours=24),
    )
    values.update(overrides)
    return TrackedTicket(**values)


def make_instance(**overrides) -> SlaInstance:
    values = dict(
        id="i-1",
        ticket_id="t-1",
        priority=Priority.P3,
        first_response_due_at=NOW - timedelta(minutes=5),
        resolution_due_at=NOW + timedelta(hours=24),
    )
    values.update(overrides)
    return SlaInstance(**values)


class TestComputeNextDueAt:
    def test_first_response_takes_precedence(self):
        ticket = make_ticket()
        assert SLACalculator.compute_next_due_at(ticket, None, None) == ticket.first_response_due_at

    def test_first_response_precedes_even_when_resolution_is_earlier(self):
        ticket = make_ticket(
            first_response_due_at=NOW + timedelta(hours=5),
            due_at=NOW + timedelta(hours=2),
        )
        assert SLACalculator.compute_next_due_at(ticket, None, None) == ticket.first_response_due_at

    def test_responded_ticket_moves_to_resolution(self):
        ticket = make_ticket(first_response_at=NOW)
        assert SLACalculator.compute_next_due_at(ticket, None, None) == ticket.due_at

    def test_breached_first_response_moves_to_resolution(self):
        ticket = make_ticket()
        assert SLACalculator.compute_next_due_at(ticket, NOW, None) == ticket.due_at

    def test_paused_ticket_has_no_deadline(self):
        ticket = make_ticket(sla_paused_at=NOW)
        assert SLACalculator.compute_next_due_at(ticket, None, None) is None

    def test_completed_ticket_has_no_deadline(self):
        ticket = make_ticket(first_response_at=NOW, completed_at=NOW)
        assert SLACalculator.compute_next_due_at(ticket, None, None) is None

    def test_both_breached_has_no_deadline(self):
        assert SLACalculator.compute_next_due_at(make_ticket(), NOW, NOW) is None

    def test_missing_first_response_due_falls_through(self):
        ticket = make_ticket(first_response_due_at=None)
        assert SLACalculator.compute_next_due_at(ticket, None, None) == ticket.due_at


class TestDetectBreach:
    def test_first_response_due(self):
        assert SLACalculator.detect_breach(make_instance(), make_ticket(), NOW) == BreachType.FIRST_RESPONSE

    def test_due_exactly_now_counts(self):
        instance = make_instance(first_response_due_at=NOW)
        assert SLACalculator.detect_breach(instance, make_ticket(), NOW) == BreachType.FIRST_RESPONSE

    def test_resolution_due_after_response(self):
        instance = make_instance(resolution_due_at=NOW - timedelta(minutes=1))
        ticket = make_ticket(first_response_at=NOW - timedelta(hours=2))
        assert SLACalculator.detect_breach(instance, ticket, NOW) == BreachType.RESOLUTION

    def test_paused_instance_never_breaches(self):
        instance = make_instance(paused_at=NOW - timedelta(hours=1))
        assert SLACalculator.detect_breach(instance, make_ticket(), NOW) is None

    def test_already_breached_is_not_breached_again(self):
        instance = make_instance(first_response_breached_at=NOW - timedelta(minutes=1))
        assert SLACalculator.detect_breach(instance, make_ticket(), NOW) is None

    def test_nothing_due(self):
        instance = make_instance(first_response_due_at=NOW + timedelta(minutes=1))
        assert SLACalculator.detect_breach(instance, make_ticket(), NOW) is None


class TestNextDueAfterBreach:
    def test_first_response_breach_moves_to_resolution(self):
        instance = make_instance()
        assert (
            SLACalculator.next_due_after_breach(instance, BreachType.FIRST_RESPONSE)
            == instance.resolution_due_at
        )

    def test_first_response_breach_with_resolution_already_breached(self):
        instance = make_instance(resolution_breached_at=NOW)
        assert SLACalculator.next_due_after_breach(instance, BreachType.FIRST_RESPONSE) is None

    def test_resolution_breach_clears_scan_key(self):
        assert SLACalculator.next_due_after_breach(make_instance(), BreachType.RESOLUTION) is None


@pytest.mark.parametrize("priority,expected", [
    (Priority.P4, Priority.P3),
    (Priority.P3, Priority.P2),
    (Priority.P2, Priority.P1),
    (Priority.P1, None),
])
def test_escalation_ladder(priority, expected):
    assert SLACalculator.next_priority(priority) == expected


def test_fallback_targets():
    assert SLACalculator.fallback_target(Priority.P1) == SlaTarget(1, 4)
    assert SLACalculator.fallback_target(Priority.P4) == SlaTarget(24, 168)


def test_sla_target_validation():
    with pytest.raises(DomainException):
        SlaTarget(0, 4)
    with pytest.raises(DomainException):
        SlaTarget(4, 4)


def test_unset_is_a_falsy_singleton():
    assert not UNSET
    assert type(UNSET)() is UNSET
    assert SyncOptions().has_policy_override is False
    assert SyncOptions(policy_config_id=None).has_policy_override is True


def test_ticket_label_prefers_display_id():
    assert make_ticket(display_id="SUP_20260115_004", number=4).label == "SUP_20260115_004"
    assert make_ticket(number=4).label == "#4"


class TestSyncRequest:
    def test_omitted_policy_is_unset(self):
        options = SyncRequest().to_options()
        assert options.policy_config_id is UNSET

    def test_explicit_null_unlinks(self):
        options = SyncRequest.model_validate({"policy_config_id": None}).to_options()
        assert options.has_policy_override
        assert options.policy_config_id is None

    def test_reset_flags_pass_through(self):
        options = SyncRequest(reset_resolution=True).to_options()
        assert options.reset_resolution is True
        assert options.reset_first_response is False
