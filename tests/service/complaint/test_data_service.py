import asyncio
import random
from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy.exc import OperationalError

from conftest import ADMIN, AGENT, OTHER_AGENT, OTHER_USER, USER, complaint_form
from complaint_desk.model.change.change_event import ChangeEvent
from complaint_desk.model.chat.chat_message import ChatMessage
from complaint_desk.service.complaint.data_service import ComplaintDataService
from complaint_desk.service.complaint.status import STATUS_ORDER
from complaint_desk.service.errors import (
    AuthorizationError,
    BackendUnavailableError,
    NotFoundError,
    StateTransitionError,
    ValidationError,
)


async def _submitted(open_session):
    user = await open_session(USER)
    complaint = await user.submit(complaint_form())
    return user, complaint


async def _assigned(open_session):
    user, complaint = await _submitted(open_session)
    admin = await open_session(ADMIN)
    await admin.assign(complaint.id, AGENT.id, AGENT.name)
    agent = await open_session(AGENT)
    return user, admin, agent, complaint


@pytest.mark.asyncio
async def test_submit_creates_pending_complaint(open_session):
    user, complaint = await _submitted(open_session)

    assert complaint.status == "pending"
    assert complaint.agent_id is None
    assert complaint.created_at == complaint.updated_at
    assert [c.id for c in user.complaints] == [complaint.id]


@pytest.mark.asyncio
async def test_submit_ignores_caller_status(open_session):
    user = await open_session(USER)
    complaint = await user.submit(complaint_form(status="resolved", agentId="A9"))

    assert complaint.status == "pending"
    assert complaint.agent_id is None


@pytest.mark.asyncio
async def test_submit_creates_no_notification(open_session):
    user, _ = await _submitted(open_session)

    assert user.notifications == []


@pytest.mark.asyncio
@pytest.mark.parametrize("field", ["title", "description", "category"])
async def test_submit_rejects_blank_required_fields(open_session, field):
    user = await open_session(USER)

    with pytest.raises(ValidationError):
        await user.submit(complaint_form(**{field: "   "}))
    assert user.complaints == []


@pytest.mark.asyncio
async def test_submit_requires_owner_matching_session(open_session):
    user = await open_session(USER)

    with pytest.raises(ValidationError):
        await user.submit(complaint_form(user_id=None))
    with pytest.raises(AuthorizationError):
        await user.submit(complaint_form(user_id=OTHER_USER.id))


@pytest.mark.asyncio
async def test_assign_moves_to_assigned_and_notifies_owner(open_session):
    user, admin, agent, complaint = await _assigned(open_session)

    assigned = admin.get_complaint(complaint.id)
    assert assigned.status == "assigned"
    assert assigned.agent_id == AGENT.id
    assert assigned.agent_name == "Sarah"

    owner_notes = user.unread_notifications(USER.id)
    assert [n.type for n in owner_notes] == ["assignment"]
    assert "Sarah" in owner_notes[0].message
    assert [n.type for n in agent.unread_notifications(AGENT.id)] == ["assignment"]
    assert [c.id for c in agent.by_agent(AGENT.id)] == [complaint.id]


@pytest.mark.asyncio
async def test_assign_twice_fails_and_keeps_first_agent(open_session):
    _, admin, _, complaint = await _assigned(open_session)

    with pytest.raises(StateTransitionError):
        await admin.assign(complaint.id, OTHER_AGENT.id, OTHER_AGENT.name)

    assert admin.get_complaint(complaint.id).agent_id == AGENT.id


@pytest.mark.asyncio
async def test_assign_requires_admin(open_session):
    _, complaint = await _submitted(open_session)
    agent = await open_session(AGENT)

    with pytest.raises(AuthorizationError):
        await agent.assign(complaint.id, AGENT.id, AGENT.name)


@pytest.mark.asyncio
async def test_assign_unknown_complaint(open_session):
    admin = await open_session(ADMIN)

    with pytest.raises(NotFoundError):
        await admin.assign("missing", AGENT.id, AGENT.name)


@pytest.mark.asyncio
async def test_status_walk_is_monotonic_and_notifies(open_session):
    user, admin, agent, complaint = await _assigned(open_session)
    seen = [admin.get_complaint(complaint.id).status]

    await agent.update_status(complaint.id, "in-progress")
    await admin.refresh_complaints()
    seen.append(admin.get_complaint(complaint.id).status)
    await agent.update_status(complaint.id, "resolved")
    await admin.refresh_complaints()
    seen.append(admin.get_complaint(complaint.id).status)

    ranks = [STATUS_ORDER[s] for s in seen]
    assert ranks == sorted(ranks)
    assert seen == ["assigned", "in-progress", "resolved"]
    types = [n.type for n in user.notifications]
    assert "status_update" in types
    assert "resolution" in types


@pytest.mark.asyncio
async def test_status_update_bumps_updated_at(open_session):
    _, admin, agent, complaint = await _assigned(open_session)
    before = admin.get_complaint(complaint.id)

    updated = await agent.update_status(complaint.id, "resolved")

    assert updated.updated_at >= before.updated_at
    assert updated.created_at == complaint.created_at


@pytest.mark.asyncio
async def test_backward_transition_fails(open_session):
    _, admin, agent, complaint = await _assigned(open_session)
    await agent.update_status(complaint.id, "resolved")

    for target in ("pending", "assigned", "in-progress"):
        with pytest.raises(StateTransitionError):
            await admin.update_status(complaint.id, target)
    await admin.refresh_complaints()
    assert admin.get_complaint(complaint.id).status == "resolved"


@pytest.mark.asyncio
async def test_skipping_assignment_is_illegal(open_session):
    _, complaint = await _submitted(open_session)
    admin = await open_session(ADMIN)
    agent = await open_session(AGENT)

    for service in (admin, agent):
        with pytest.raises(StateTransitionError):
            await service.update_status(complaint.id, "resolved")
        with pytest.raises(StateTransitionError):
            await service.update_status(complaint.id, "resolved")

    await admin.refresh_complaints()
    stored = admin.get_complaint(complaint.id)
    assert stored.status == "pending"
    assert stored.agent_id is None


@pytest.mark.asyncio
async def test_only_assigned_agent_or_admin_updates_status(open_session):
    user, admin, _, complaint = await _assigned(open_session)
    stranger = await open_session(OTHER_AGENT)

    with pytest.raises(AuthorizationError):
        await stranger.update_status(complaint.id, "in-progress")
    with pytest.raises(AuthorizationError):
        await user.update_status(complaint.id, "in-progress")

    await admin.update_status(complaint.id, "in-progress")


@pytest.mark.asyncio
async def test_resolution_closes_chat_and_opens_feedback(open_session):
    user, _, agent, complaint = await _assigned(open_session)

    await agent.update_status(complaint.id, "resolved")
    await user.refresh_complaints()
    assert user.get_complaint(complaint.id).status == "resolved"

    with pytest.raises(StateTransitionError):
        await user.send_message(complaint.id, USER.id, USER.name, USER.role, "still broken")
    assert user.messages_for_complaint(complaint.id) == []

    feedback = await user.submit_feedback(complaint.id, USER.id, 5, "  quick fix  ")
    assert feedback.rating == 5
    assert feedback.comment == "quick fix"

    with pytest.raises(ValidationError):
        await user.submit_feedback(complaint.id, USER.id, 4)
    assert (await user.get_feedback(complaint.id)).id == feedback.id
    assert user.get_complaint(complaint.id).status == "resolved"


@pytest.mark.asyncio
async def test_feedback_preconditions(open_session):
    user, admin, agent, complaint = await _assigned(open_session)

    with pytest.raises(StateTransitionError):
        await user.submit_feedback(complaint.id, USER.id, 5)

    await agent.update_status(complaint.id, "resolved")

    with pytest.raises(ValidationError):
        await user.submit_feedback(complaint.id, USER.id, 0)
    with pytest.raises(ValidationError):
        await user.submit_feedback(complaint.id, USER.id, 6)
    with pytest.raises(ValidationError):
        await user.submit_feedback(complaint.id, USER.id, True)
    with pytest.raises(AuthorizationError):
        await admin.submit_feedback(complaint.id, ADMIN.id, 3)
    with pytest.raises(AuthorizationError):
        await user.submit_feedback(complaint.id, OTHER_USER.id, 3)

    assert await user.get_feedback(complaint.id) is None


@pytest.mark.asyncio
async def test_chat_requires_assignment(open_session):
    user, complaint = await _submitted(open_session)

    with pytest.raises(StateTransitionError):
        await user.send_message(complaint.id, USER.id, USER.name, USER.role, "hello?")


@pytest.mark.asyncio
async def test_chat_between_owner_and_agent(open_session):
    user, admin, agent, complaint = await _assigned(open_session)

    await user.send_message(complaint.id, USER.id, USER.name, USER.role, "Any update?")
    await agent.send_message(complaint.id, AGENT.id, AGENT.name, AGENT.role, "Replacement shipped")
    await admin.send_message(complaint.id, ADMIN.id, ADMIN.name, ADMIN.role, "Escalated")

    texts = [m.message for m in user.messages_for_complaint(complaint.id)]
    assert texts == ["Any update?", "Replacement shipped", "Escalated"]
    assert [m.message for m in agent.messages_for_complaint(complaint.id)] == texts
    assert "message" in [n.type for n in agent.unread_notifications(AGENT.id)]
    assert "message" in [n.type for n in user.unread_notifications(USER.id)]


@pytest.mark.asyncio
async def test_chat_rejects_outsiders_and_impersonation(open_session):
    user, _, _, complaint = await _assigned(open_session)
    stranger = await open_session(OTHER_AGENT)

    with pytest.raises(AuthorizationError):
        await stranger.send_message(complaint.id, OTHER_AGENT.id, OTHER_AGENT.name, "agent", "hi")
    with pytest.raises(AuthorizationError):
        await user.send_message(complaint.id, AGENT.id, AGENT.name, "agent", "spoofed")
    with pytest.raises(ValidationError):
        await user.send_message(complaint.id, USER.id, USER.name, USER.role, "   ")
    assert user.messages_for_complaint(complaint.id) == []


def test_messages_for_complaint_sorts_out_of_order_delivery(backend):
    base = datetime(2024, 1, 1, tzinfo=timezone.utc)
    messages = [
        ChatMessage(
            id=str(i),
            complaint_id="C1" if i % 2 == 0 else "C2",
            sender_id="U1",
            sender_name="Alice",
            sender_role="user",
            message=f"m{i}",
            created_at=base + timedelta(minutes=i // 2),
        )
        for i in range(12)
    ]
    shuffled = list(messages)
    random.Random(7).shuffle(shuffled)
    service = ComplaintDataService(backend)
    service._messages = shuffled

    result = service.messages_for_complaint("C1")

    assert [m.created_at for m in result] == sorted(m.created_at for m in result)
    assert {m.id for m in result} == {m.id for m in messages if m.complaint_id == "C1"}


def test_messages_for_complaint_keeps_delivery_order_on_ties(backend):
    stamp = datetime(2024, 1, 1, tzinfo=timezone.utc)
    service = ComplaintDataService(backend)
    service._messages = [
        ChatMessage(
            id=str(i),
            complaint_id="C1",
            sender_id="U1",
            sender_name="Alice",
            sender_role="user",
            message=f"m{i}",
            created_at=stamp,
        )
        for i in (3, 1, 2)
    ]

    assert [m.id for m in service.messages_for_complaint("C1")] == ["3", "1", "2"]


@pytest.mark.asyncio
async def test_visibility_scopes(open_session):
    user, admin, agent, complaint = await _assigned(open_session)
    other = await open_session(OTHER_USER)
    await other.submit(complaint_form(user_id=OTHER_USER.id, user_name=OTHER_USER.name, title="Late delivery"))
    await admin.refresh_complaints()
    await user.refresh_complaints()
    await agent.refresh_complaints()

    assert len(admin.complaints) == 2
    assert [c.id for c in user.complaints] == [complaint.id]
    assert [c.id for c in agent.complaints] == [complaint.id]
    assert admin.complaints[0].title == "Late delivery"
    assert admin.by_user(USER.id) == user.complaints


@pytest.mark.asyncio
async def test_status_counts(open_session):
    _, admin, _, _ = await _assigned(open_session)
    user = await open_session(USER)
    await user.submit(complaint_form(title="Second"))
    await admin.refresh_complaints()

    assert admin.status_counts() == {"pending": 1, "assigned": 1, "in-progress": 0, "resolved": 0}


@pytest.mark.asyncio
async def test_notifications_read_is_monotonic(open_session):
    user, _, agent, complaint = await _assigned(open_session)
    await agent.update_status(complaint.id, "in-progress")
    first = user.unread_notifications(USER.id)[0]

    await user.mark_notification_read(first.id)
    assert first.id not in [n.id for n in user.unread_notifications(USER.id)]

    assert await user.mark_all_notifications_read(USER.id) == 1
    assert user.unread_notifications(USER.id) == []
    assert all(n.read for n in user.notifications)
    assert await user.mark_all_notifications_read(USER.id) == 0


@pytest.mark.asyncio
async def test_notifications_belong_to_recipient(open_session):
    user, _, agent, _ = await _assigned(open_session)
    note = user.unread_notifications(USER.id)[0]

    with pytest.raises(AuthorizationError):
        await agent.mark_notification_read(note.id)
    with pytest.raises(AuthorizationError):
        await agent.mark_all_notifications_read(USER.id)
    with pytest.raises(NotFoundError):
        await user.mark_notification_read("missing")


@pytest.mark.asyncio
async def test_attachments(open_session):
    from complaint_desk.model.attachment.attachment_request import AttachmentRequest

    user, _, agent, complaint = await _assigned(open_session)
    request = AttachmentRequest(file_name="photo.jpg", file_path="U1/photo.jpg", file_size=2048, content_type="image/jpeg")

    await user.add_attachment(complaint.id, request)
    with pytest.raises(AuthorizationError):
        await agent.add_attachment(complaint.id, request)

    listed = await agent.attachments_for_complaint(complaint.id)
    assert [a.file_name for a in listed] == ["photo.jpg"]

    stranger = await open_session(OTHER_USER)
    with pytest.raises(AuthorizationError):
        await stranger.attachments_for_complaint(complaint.id)


@pytest.mark.asyncio
async def test_remote_changes_reach_other_sessions(open_session):
    user, complaint = await _submitted(open_session)
    admin = await open_session(ADMIN)
    assert user.notifications == []

    await admin.assign(complaint.id, AGENT.id, AGENT.name)

    # no explicit refresh on the user session
    assert user.get_complaint(complaint.id).status == "assigned"
    assert [n.type for n in user.unread_notifications(USER.id)] == ["assignment"]


@pytest.mark.asyncio
async def test_failed_refresh_keeps_last_good_projection(open_session, backend, monkeypatch):
    user, complaint = await _submitted(open_session)
    calls = []

    async def broken(*args):
        calls.append(args)
        raise OperationalError("SELECT", {}, Exception("connection refused"))

    monkeypatch.setattr(backend, "fetch_complaints", broken)

    assert await user.refresh_complaints() is False
    assert [c.id for c in user.complaints] == [complaint.id]
    assert "complaints" in user.last_error
    assert len(calls) == 2

    monkeypatch.undo()
    assert await user.refresh_complaints() is True
    assert user.last_error is None


@pytest.mark.asyncio
async def test_notice_is_kept_per_collection(open_session, backend, monkeypatch):
    user, complaint = await _submitted(open_session)

    async def broken(*args):
        raise OperationalError("SELECT", {}, Exception("connection refused"))

    monkeypatch.setattr(backend, "fetch_notifications", broken)
    assert await user.refresh_notifications() is False

    # a healthy complaints refresh does not hide the notifications failure
    assert await user.refresh_complaints() is True
    assert "notifications" in user.last_error


@pytest.mark.asyncio
async def test_slow_event_refresh_does_not_overwrite_newer_projection(open_session, backend, monkeypatch):
    user, first = await _submitted(open_session)
    real_fetch = backend.fetch_complaints
    started = asyncio.Event()
    gate = asyncio.Event()
    calls = []

    async def slow_first_fetch(principal):
        calls.append(principal)
        result = await real_fetch(principal)
        if len(calls) == 1:
            started.set()
            await gate.wait()
        return result

    monkeypatch.setattr(backend, "fetch_complaints", slow_first_fetch)

    # an older change event is still loading when the user submits again
    pending = asyncio.create_task(user._on_complaints_changed(ChangeEvent(table="complaints", event="UPDATE")))
    await started.wait()
    second = await user.submit(complaint_form(title="Second issue"))
    gate.set()
    await pending

    assert {c.id for c in user.complaints} == {first.id, second.id}
    assert user.last_error is None


@pytest.mark.asyncio
async def test_results_in_flight_at_stop_are_dropped(open_session, backend, monkeypatch):
    user, _ = await _submitted(open_session)
    started = asyncio.Event()
    gate = asyncio.Event()
    real_fetch = backend.fetch_complaints

    async def slow_fetch(principal):
        result = await real_fetch(principal)
        started.set()
        await gate.wait()
        return result

    monkeypatch.setattr(backend, "fetch_complaints", slow_fetch)
    pending = asyncio.create_task(user.refresh_complaints())
    await started.wait()
    await user.stop()
    gate.set()
    await pending

    assert user.complaints == []


@pytest.mark.asyncio
async def test_notification_events_only_refresh_the_recipient(open_session, backend, monkeypatch):
    user, complaint = await _submitted(open_session)
    bystander = await open_session(OTHER_USER)
    admin = await open_session(ADMIN)
    agent = await open_session(AGENT)
    real_fetch = backend.fetch_notifications
    loaded_for = []

    async def counting_fetch(user_id):
        loaded_for.append(user_id)
        return await real_fetch(user_id)

    monkeypatch.setattr(backend, "fetch_notifications", counting_fetch)

    await admin.assign(complaint.id, AGENT.id, AGENT.name)

    assert OTHER_USER.id not in loaded_for
    assert {USER.id, AGENT.id} <= set(loaded_for)
    assert [n.type for n in agent.unread_notifications(AGENT.id)] == ["assignment"]
    assert bystander.notifications == []

    loaded_for.clear()
    await backend.change_feed.publish(ChangeEvent(table="notifications", event="RESYNC"))
    assert OTHER_USER.id in loaded_for


@pytest.mark.asyncio
async def test_failed_mutation_raises_and_leaves_projection(open_session, backend, monkeypatch):
    user, complaint = await _submitted(open_session)
    calls = []

    async def broken(*args):
        calls.append(args)
        raise OperationalError("INSERT", {}, Exception("connection refused"))

    monkeypatch.setattr(backend, "insert_complaint", broken)

    with pytest.raises(BackendUnavailableError):
        await user.submit(complaint_form(title="Another"))
    assert [c.id for c in user.complaints] == [complaint.id]
    assert len(calls) == 1


@pytest.mark.asyncio
async def test_snapshots_are_copies(open_session):
    user, _ = await _submitted(open_session)

    snapshot = user.complaints
    snapshot.clear()

    assert len(user.complaints) == 1


@pytest.mark.asyncio
async def test_stop_tears_down_subscriptions(open_session, feed):
    user = await open_session(USER)
    await user.submit(complaint_form())
    assert feed.subscriber_count() == 3

    await user.stop()

    assert feed.subscriber_count() == 0
    assert user.principal is None
    assert user.complaints == []
    assert user.notifications == []
    assert user.messages == []
    with pytest.raises(AuthorizationError):
        await user.submit(complaint_form())


@pytest.mark.asyncio
async def test_no_principal_means_empty_projection(backend):
    service = ComplaintDataService(backend)

    assert await service.refresh_all() is True
    assert service.complaints == []
    assert service.unread_notifications(USER.id) == []
