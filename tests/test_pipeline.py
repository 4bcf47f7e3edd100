from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from conftest import fake_lead
from crm.core.exceptions import InvalidState, InvalidTransition, NotFoundError
from crm.services.pipeline import DEFAULT_GRAPH, TransitionGraph, PipelineService


def test_default_graph_edges():
    assert DEFAULT_GRAPH.next_statuses("new") == frozenset({"qualified", "lost"})
    assert DEFAULT_GRAPH.next_statuses("contacted") == frozenset({"meeting_scheduled", "proposal_sent", "lost"})
    assert DEFAULT_GRAPH.can_transition("proposal_sent", "won")
    assert not DEFAULT_GRAPH.can_transition("new", "won")


def test_terminal_states_have_no_exits():
    for status in ("won", "lost"):
        assert DEFAULT_GRAPH.is_terminal(status)
        assert DEFAULT_GRAPH.next_statuses(status) == frozenset()
    assert not DEFAULT_GRAPH.is_terminal("new")


def test_unknown_status_has_no_exits():
    assert DEFAULT_GRAPH.next_statuses("archived") == frozenset()
    assert not DEFAULT_GRAPH.is_terminal("archived")


def test_every_non_terminal_state_can_be_lost():
    for status in DEFAULT_GRAPH.statuses:
        if not DEFAULT_GRAPH.is_terminal(status):
            assert DEFAULT_GRAPH.can_transition(status, "lost")


def test_previous_statuses():
    assert DEFAULT_GRAPH.previous_statuses("negotiation") == frozenset({"meeting_scheduled", "proposal_sent"})
    assert DEFAULT_GRAPH.previous_statuses("new") == frozenset()


def test_graph_rejects_dangling_targets():
    with pytest.raises(ValueError):
        TransitionGraph({"new": ("qualified",)})


def test_validate_reports_allowed_statuses():
    with pytest.raises(InvalidTransition) as exc_info:
        DEFAULT_GRAPH.validate("new", "negotiation")

    err = exc_info.value
    assert err.status_code == 400
    assert err.details == {
        "current_status": "new",
        "requested_status": "negotiation",
        "allowed_statuses": ["lost", "qualified"],
    }


async def test_change_status_rejects_invalid_transition_without_writes(session):
    service = PipelineService(session)
    with patch("crm.services.lead_store.get_lead", AsyncMock(return_value=fake_lead(status="new"))), \
         patch("crm.services.pipeline.get_status_by_id", AsyncMock(return_value=SimpleNamespace(id=6, name="negotiation"))), \
         patch("crm.services.pipeline.close_open_stage", AsyncMock()) as close_stage:
        with pytest.raises(InvalidTransition):
            await service.change_status(1, 1, 6, acting_user_id=7)

    close_stage.assert_not_awaited()
    session.rollback.assert_awaited()
    session.commit.assert_not_awaited()


async def test_change_status_from_terminal_status(session):
    service = PipelineService(session)
    with patch("crm.services.lead_store.get_lead", AsyncMock(return_value=fake_lead(status="won"))), \
         patch("crm.services.pipeline.get_status_by_id", AsyncMock(return_value=SimpleNamespace(id=8, name="lost"))):
        with pytest.raises(InvalidTransition) as exc_info:
            await service.change_status(1, 1, 8, acting_user_id=7)
    assert exc_info.value.allowed_statuses == []


async def test_change_status_closes_and_opens_stage(session):
    closed = SimpleNamespace(id=3, duration_hours=1.5)
    opened = SimpleNamespace(id=4, sequence=2)
    session.execute.return_value = MagicMock(rowcount=1)

    service = PipelineService(session)
    with patch("crm.services.lead_store.get_lead", AsyncMock(return_value=fake_lead(status="new"))), \
         patch("crm.services.pipeline.get_status_by_id", AsyncMock(return_value=SimpleNamespace(id=2, name="qualified"))), \
         patch("crm.services.pipeline.close_open_stage", AsyncMock(return_value=closed)), \
         patch("crm.services.pipeline.open_stage", AsyncMock(return_value=opened)) as open_stage:
        change = await service.change_status(1, 1, 2, acting_user_id=7, notes="called")

    assert change.previous_status == "new"
    assert change.new_status == "qualified"
    assert change.stage_id == 4
    assert change.sequence == 2
    assert change.closed_stage_id == 3
    assert change.closed_duration_hours == 1.5
    assert open_stage.await_args.kwargs["user_id"] == 7
    session.commit.assert_awaited_once()


async def test_change_status_loses_race(session):
    # Another writer moved the lead between the read and the CAS update
    session.execute.return_value = MagicMock(rowcount=0)

    service = PipelineService(session)
    with patch("crm.services.lead_store.get_lead", AsyncMock(return_value=fake_lead(status="new"))), \
         patch("crm.services.pipeline.get_status_by_id", AsyncMock(return_value=SimpleNamespace(id=2, name="qualified"))), \
         patch("crm.services.pipeline.close_open_stage", AsyncMock(return_value=None)), \
         patch("crm.services.pipeline.open_stage", AsyncMock(return_value=SimpleNamespace(id=4, sequence=2))):
        with pytest.raises(InvalidState):
            await service.change_status(1, 1, 2, acting_user_id=7)

    session.rollback.assert_awaited()


async def test_change_status_on_other_tenants_lead(session):
    service = PipelineService(session)
    with patch("crm.services.lead_store.get_lead", AsyncMock(side_effect=NotFoundError("Lead 1 not found"))):
        with pytest.raises(NotFoundError):
            await service.change_status(2, 1, 2, acting_user_id=7)


async def test_next_statuses_for_terminal_lead_skip_query(session):
    service = PipelineService(session)
    with patch("crm.services.lead_store.get_lead", AsyncMock(return_value=fake_lead(status="lost"))):
        assert await service.get_next_possible_statuses(1, 1) == []
    session.execute.assert_not_awaited()
