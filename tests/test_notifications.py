# tests/test_notifications.py
from datetime import timedelta

import pytest
from sqlmodel import Session

from conftest import T0
from docflow.errors import NotificationNotFoundError
from docflow.models import NotificationPriority, NotificationType


@pytest.fixture()
def center(services):
    return services.notifications


@pytest.fixture()
def filled(engine, center, seed):
    """Five notifications for alice (one minute apart), one for bob"""
    kinds = [
        (NotificationType.task_assigned, NotificationPriority.medium),
        (NotificationType.sla_warning, NotificationPriority.high),
        (NotificationType.task_assigned, NotificationPriority.medium),
        (NotificationType.sla_breach, NotificationPriority.urgent),
        (NotificationType.workflow_completed, NotificationPriority.low),
    ]
    with Session(engine) as session:
        ids = [
            center.create(
                session, seed.alice.id, type_, f"n{i}", priority=priority,
                instance_id="wfi_1", now=T0 + timedelta(minutes=i),
            ).id
            for i, (type_, priority) in enumerate(kinds)
        ]
        center.create(session, seed.bob.id, NotificationType.task_assigned, "for bob", now=T0)
        session.commit()
    return ids


def test_list_is_newest_first_and_paginated(center, seed, filled):
    page = center.list(seed.alice.id, limit=2)
    assert page.total == 5
    assert page.limit == 2 and page.offset == 0
    assert [n.title for n in page.items] == ["n4", "n3"]

    page = center.list(seed.alice.id, limit=2, offset=4)
    assert [n.title for n in page.items] == ["n0"]


def test_limit_is_clamped(center, seed, filled):
    assert center.list(seed.alice.id, limit=0).limit == 1
    assert center.list(seed.alice.id, limit=100000).limit == 100


def test_filters(center, seed, filled):
    assigned = center.list(seed.alice.id, type=NotificationType.task_assigned)
    assert assigned.total == 2
    urgent = center.list(seed.alice.id, priority=NotificationPriority.urgent)
    assert [n.title for n in urgent.items] == ["n3"]


def test_action_url_points_at_instance(center, seed, filled):
    item = center.list(seed.alice.id, limit=1).items[0]
    assert item.action_url == "/workflows/wfi_1"
    assert item.read is False and item.read_at is None


def test_mark_read_and_unread_count(center, seed, filled):
    assert center.unread_count(seed.alice.id) == 5
    read_at = T0 + timedelta(hours=1)

    dto = center.mark_read(filled[0], seed.alice.id, now=read_at)
    assert dto.read is True and dto.read_at == read_at
    # marking again keeps the first read time
    assert center.mark_read(filled[0], seed.alice.id, now=read_at + timedelta(hours=1)).read_at == read_at

    assert center.unread_count(seed.alice.id) == 4
    assert center.list(seed.alice.id, unread_only=True).total == 4


def test_other_users_notification_is_not_found(center, seed, filled):
    with pytest.raises(NotificationNotFoundError):
        center.mark_read(filled[0], seed.bob.id)
    with pytest.raises(NotificationNotFoundError):
        center.mark_read("ntf_missing", seed.alice.id)
    assert center.unread_count(seed.alice.id) == 5


def test_mark_all_read_by_type(center, seed, filled):
    assert center.mark_all_read(seed.alice.id, types=[NotificationType.task_assigned], now=T0) == 2
    assert center.unread_count(seed.alice.id) == 3

    assert center.mark_all_read(seed.alice.id, now=T0) == 3
    assert center.unread_count(seed.alice.id) == 0
    assert center.mark_all_read(seed.alice.id, now=T0) == 0
    # bob untouched
    assert center.unread_count(seed.bob.id) == 1


def test_create_many_skips_duplicates(engine, center, seed):
    with Session(engine) as session:
        count = center.create_many(
            session, [seed.alice.id, seed.bob.id, seed.alice.id, ""],
            NotificationType.task_assigned, "hello", now=T0,
        )
        session.commit()
    assert count == 2
    assert center.unread_count(seed.alice.id) == 1
