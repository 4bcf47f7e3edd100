from datetime import datetime, timedelta, timezone
from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from sqlalchemy.dialects import postgresql

from crm.core.exceptions import InvalidArgument, NotFoundError
from crm.services.activities import (
    ActivityPriority,
    ActivityTracker,
    FollowUpState,
    classify_follow_up,
    coerce_enum,
    follow_up_sort_key,
)

NOW = datetime(2024, 6, 1, 12, 0, tzinfo=timezone.utc)


def test_classify_follow_up():
    assert classify_follow_up(NOW - timedelta(hours=1), "pending", NOW) is FollowUpState.OVERDUE
    assert classify_follow_up(NOW + timedelta(hours=1), "pending", NOW) is FollowUpState.UPCOMING


def test_follow_up_due_right_now_is_upcoming():
    assert classify_follow_up(NOW, "pending", NOW) is FollowUpState.UPCOMING


def test_only_pending_dated_activities_are_classified():
    assert classify_follow_up(NOW - timedelta(hours=1), "completed", NOW) is None
    assert classify_follow_up(NOW - timedelta(hours=1), "cancelled", NOW) is None
    assert classify_follow_up(None, "pending", NOW) is None


def test_naive_follow_up_dates_are_treated_as_utc():
    naive = datetime(2024, 6, 1, 11, 0)
    assert classify_follow_up(naive, "pending", NOW) is FollowUpState.OVERDUE


def test_pending_follow_ups_order_by_priority_then_date():
    rows = [
        ("low", NOW + timedelta(hours=1)),
        ("urgent", NOW + timedelta(days=3)),
        ("high", NOW + timedelta(hours=5)),
        ("urgent", NOW + timedelta(hours=2)),
        ("medium", None),
        ("medium", NOW + timedelta(hours=4)),
    ]
    ordered = sorted(rows, key=lambda r: follow_up_sort_key(*r))
    assert ordered == [
        ("urgent", NOW + timedelta(hours=2)),
        ("urgent", NOW + timedelta(days=3)),
        ("high", NOW + timedelta(hours=5)),
        ("medium", NOW + timedelta(hours=4)),
        ("medium", None),
        ("low", NOW + timedelta(hours=1)),
    ]


def test_priority_rank():
    assert ActivityPriority.URGENT.rank < ActivityPriority.HIGH.rank < ActivityPriority.MEDIUM.rank < ActivityPriority.LOW.rank


def test_coerce_enum_rejects_unknown_values():
    with pytest.raises(InvalidArgument) as exc_info:
        coerce_enum(ActivityPriority, "critical", "priority")
    assert "urgent" in exc_info.value.details["allowed"]


async def test_log_activity_rejects_unknown_type_before_touching_storage(session):
    tracker = ActivityTracker(session)
    with pytest.raises(InvalidArgument):
        await tracker.log_activity(1, 1, 7, "fax", "Sent a fax")
    session.execute.assert_not_awaited()
    session.add.assert_not_called()


async def test_log_activity_on_missing_lead(session):
    tracker = ActivityTracker(session)
    with patch("crm.services.lead_store.get_lead", AsyncMock(side_effect=NotFoundError("Lead 1 not found"))):
        with pytest.raises(NotFoundError):
            await tracker.log_activity(1, 1, 7, "call", "Left voicemail")
    session.add.assert_not_called()
    session.rollback.assert_awaited()


async def test_log_activity(session):
    tracker = ActivityTracker(session)
    follow_up = NOW + timedelta(days=1)
    with patch("crm.services.lead_store.get_lead", AsyncMock()):
        activity = await tracker.log_activity(
            1, 5, 7, "call", "Intro call", next_follow_up_date=follow_up, priority="high"
        )

    session.add.assert_called_once_with(activity)
    session.commit.assert_awaited_once()
    assert activity.activity_type == "call"
    assert activity.priority == "high"
    assert activity.status == "pending"
    assert activity.next_follow_up_date == follow_up


async def test_bulk_update_counts_only_tenant_rows(session):
    session.execute.return_value = MagicMock(rowcount=2)
    tracker = ActivityTracker(session)

    updated = await tracker.bulk_update_follow_up_dates(1, [3, 4, 4, 999], NOW)

    assert updated == 2
    session.commit.assert_awaited_once()


async def test_bulk_update_with_no_ids(session):
    tracker = ActivityTracker(session)
    assert await tracker.bulk_update_follow_up_dates(1, [], NOW) == 0
    session.execute.assert_not_awaited()


def compiled_sql(stmt):
    return str(stmt.compile(dialect=postgresql.dialect()))


async def test_pending_follow_ups_include_ones_due_right_now(session):
    session.execute.return_value = MagicMock(all=MagicMock(return_value=[]))
    tracker = ActivityTracker(session)

    with patch("crm.services.activities.utcnow", return_value=NOW):
        assert await tracker.list_pending_follow_ups(1) == []

    sql = compiled_sql(session.execute.await_args.args[0])
    assert "next_follow_up_date >= " in sql
    assert "next_follow_up_date > " not in sql


async def test_follow_up_summary_counts_ones_due_right_now(session):
    session.execute.return_value = MagicMock(
        one=MagicMock(return_value=SimpleNamespace(
            total_pending=1, urgent_pending=0, high_pending=0, due_within_24h=1, due_within_week=1,
        ))
    )
    tracker = ActivityTracker(session)

    with patch("crm.services.activities.utcnow", return_value=NOW):
        summary = await tracker.get_follow_up_summary(1)

    assert summary["total_pending"] == 1
    sql = compiled_sql(session.execute.await_args.args[0])
    assert "next_follow_up_date >= " in sql
    assert "next_follow_up_date > " not in sql
