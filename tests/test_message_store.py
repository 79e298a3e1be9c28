from datetime import timedelta
from uuid import uuid4

import pytest
from sqlmodel import func, select

from app.core.exceptions import (
    InvalidMessage,
    InvalidPhase,
    InvalidReference,
    MessageNotFound,
    SessionNotFound,
    Unauthorized,
)
from app.db.models import Message, MessageStatus, MessageType
from app.schemas.message import AttachmentRef
from conftest import T, Recorder, schedule


async def count_messages(session, consultation_id):
    result = await session.execute(
        select(func.count()).select_from(Message).where(Message.consultation_id == consultation_id)
    )
    return result.scalar_one()


@pytest.mark.asyncio
async def test_append_stores_sent_message(messages, parties, clock):
    message = await messages.append(parties.cid, parties.patient.id, "I have a headache")

    assert message.status == MessageStatus.SENT
    assert message.seq == 1
    assert message.sender_id == parties.patient.id
    assert message.created_at == clock.now
    assert message.is_edited is False

    stored = await messages.list_by_session(parties.cid)
    assert [m.id for m in stored] == [message.id]


@pytest.mark.asyncio
async def test_append_by_non_participant_persists_nothing(messages, session, parties):
    with pytest.raises(Unauthorized):
        await messages.append(parties.cid, parties.stranger.id, "hello")

    assert await count_messages(session, parties.cid) == 0


@pytest.mark.asyncio
async def test_append_to_unknown_session(messages, parties):
    with pytest.raises(SessionNotFound):
        await messages.append(uuid4(), parties.patient.id, "hello")


@pytest.mark.asyncio
@pytest.mark.parametrize("content", ["", "   \n"])
async def test_empty_text_is_rejected(messages, session, parties, content):
    with pytest.raises(InvalidMessage):
        await messages.append(parties.cid, parties.patient.id, content)

    assert await count_messages(session, parties.cid) == 0


@pytest.mark.asyncio
async def test_attachment_messages_need_an_attachment(messages, parties):
    with pytest.raises(InvalidMessage):
        await messages.append(parties.cid, parties.patient.id, "", MessageType.IMAGE)

    scan = AttachmentRef(url="https://files.example.com/scan.png", name="scan.png", size="204800")
    message = await messages.append(parties.cid, parties.patient.id, "", MessageType.IMAGE, attachment=scan)
    assert message.attachment == scan
    assert message.message_type == MessageType.IMAGE


@pytest.mark.asyncio
async def test_reply_must_resolve_in_same_session(messages, session, parties):
    other = await schedule(session, parties.doctor_profile, parties.patient_profile, scheduled_at=T + timedelta(days=1))
    elsewhere = await messages.append(other.id, parties.doctor.id, "See you tomorrow")

    with pytest.raises(InvalidReference):
        await messages.append(parties.cid, parties.patient.id, "Replying", reply_to_message_id=elsewhere.id)
    with pytest.raises(InvalidReference):
        await messages.append(parties.cid, parties.patient.id, "Replying", reply_to_message_id=uuid4())

    first = await messages.append(parties.cid, parties.doctor.id, "How long has it lasted?")
    reply = await messages.append(parties.cid, parties.patient.id, "Two days", reply_to_message_id=first.id)
    assert reply.reply_to_message_id == first.id


@pytest.mark.asyncio
async def test_ordering_is_stable_when_timestamps_tie(messages, parties):
    # Frozen clock: every append gets the same created_at
    senders = [parties.patient.id, parties.doctor.id] * 5
    sent = [await messages.append(parties.cid, sender, f"message {i}") for i, sender in enumerate(senders)]

    listed = await messages.list_by_session(parties.cid)
    assert [m.id for m in listed] == [m.id for m in sent]
    assert [m.seq for m in listed] == list(range(1, 11))


@pytest.mark.asyncio
async def test_created_at_never_runs_backwards(messages, parties, clock):
    first = await messages.append(parties.cid, parties.patient.id, "first")
    clock.advance(seconds=-30)
    second = await messages.append(parties.cid, parties.doctor.id, "second")

    assert second.created_at >= first.created_at
    listed = await messages.list_by_session(parties.cid)
    assert [m.content for m in listed] == ["first", "second"]


@pytest.mark.asyncio
async def test_list_checks_reader_is_participant(messages, parties):
    await messages.append(parties.cid, parties.patient.id, "hello")
    with pytest.raises(Unauthorized):
        await messages.list_by_session(parties.cid, reader_id=parties.stranger.id)


@pytest.mark.asyncio
async def test_mark_read_twice_is_a_noop(messages, channel, parties):
    message = await messages.append(parties.cid, parties.patient.id, "hello")
    updates = Recorder()
    subscription = await channel.subscribe(parties.cid, on_insert=Recorder(), on_update=updates)

    first = await messages.mark_read(message.id, parties.doctor.id)
    second = await messages.mark_read(message.id, parties.doctor.id)
    await subscription.drain()

    assert first.status == MessageStatus.READ
    assert second.status == MessageStatus.READ
    assert second.updated_at == first.updated_at
    assert len(updates) == 1


@pytest.mark.asyncio
async def test_sender_cannot_mark_own_message(messages, parties):
    message = await messages.append(parties.cid, parties.patient.id, "hello")

    with pytest.raises(Unauthorized):
        await messages.mark_read(message.id, parties.patient.id)
    with pytest.raises(Unauthorized):
        await messages.mark_read(message.id, parties.stranger.id)
    with pytest.raises(MessageNotFound):
        await messages.mark_read(uuid4(), parties.doctor.id)


@pytest.mark.asyncio
async def test_status_only_moves_forward(messages, parties):
    message = await messages.append(parties.cid, parties.patient.id, "hello")

    delivered = await messages.mark_delivered(message.id, parties.doctor.id)
    assert delivered.status == MessageStatus.DELIVERED

    read = await messages.mark_read(message.id, parties.doctor.id)
    assert read.status == MessageStatus.READ

    late = await messages.mark_delivered(message.id, parties.doctor.id)
    assert late.status == MessageStatus.READ


@pytest.mark.asyncio
async def test_edit_by_sender(messages, parties, clock):
    message = await messages.append(parties.cid, parties.doctor.id, "Take paracetamol 500mg")
    clock.advance(minutes=1)

    edited = await messages.edit(message.id, parties.doctor.id, "Take paracetamol 650mg")
    assert edited.content == "Take paracetamol 650mg"
    assert edited.is_edited is True
    assert edited.edited_at == clock.now
    assert edited.created_at == message.created_at

    with pytest.raises(Unauthorized):
        await messages.edit(message.id, parties.patient.id, "tampered")
    with pytest.raises(InvalidMessage):
        await messages.edit(message.id, parties.doctor.id, "  ")


@pytest.mark.asyncio
async def test_only_text_can_be_edited(messages, parties):
    report = AttachmentRef(url="https://files.example.com/report.pdf", name="report.pdf", size="1024")
    message = await messages.append(
        parties.cid, parties.patient.id, "", MessageType.FILE_ATTACHMENT, attachment=report
    )
    with pytest.raises(InvalidMessage):
        await messages.edit(message.id, parties.patient.id, "new caption")


@pytest.mark.asyncio
async def test_two_party_chat(messages, channel, parties):
    doctor_inserts, doctor_updates = Recorder(), Recorder()
    patient_inserts, patient_updates = Recorder(), Recorder()
    doctor_sub = await channel.subscribe(parties.cid, on_insert=doctor_inserts, on_update=doctor_updates)
    patient_sub = await channel.subscribe(parties.cid, on_insert=patient_inserts, on_update=patient_updates)

    m1 = await messages.append(parties.cid, parties.patient.id, "I have a headache")
    await doctor_sub.drain()
    assert [m.id for m in doctor_inserts.calls] == [m1.id]
    assert doctor_inserts.calls[0].status == MessageStatus.SENT

    await messages.mark_read(m1.id, parties.doctor.id)
    await patient_sub.drain()
    assert [m.id for m in patient_updates.calls] == [m1.id]
    assert patient_updates.calls[0].status == MessageStatus.READ


@pytest.mark.asyncio
async def test_append_after_end_is_rejected(messages, presence, session, parties):
    await presence.report_join(parties.cid, "doctor")
    await presence.report_end(parties.cid)

    with pytest.raises(InvalidPhase):
        await messages.append(parties.cid, parties.patient.id, "one more thing")
    assert await count_messages(session, parties.cid) == 0


@pytest.mark.asyncio
async def test_resend_with_same_client_id_is_stored_once(messages, session, channel, parties):
    key = uuid4()
    inserts = Recorder()
    subscription = await channel.subscribe(parties.cid, on_insert=inserts, on_update=Recorder())

    first = await messages.append(parties.cid, parties.patient.id, "I have a headache", client_message_id=key)
    again = await messages.append(parties.cid, parties.patient.id, "I have a headache", client_message_id=key)
    await subscription.drain()

    assert again.id == first.id
    assert again.client_message_id == key
    assert await count_messages(session, parties.cid) == 1
    assert len(inserts) == 1
    await channel.unsubscribe(subscription)


@pytest.mark.asyncio
async def test_resend_after_end_returns_the_stored_message(messages, presence, parties):
    key = uuid4()
    first = await messages.append(parties.cid, parties.patient.id, "Thank you doctor", client_message_id=key)
    await presence.report_join(parties.cid, "doctor")
    await presence.report_end(parties.cid)

    again = await messages.append(parties.cid, parties.patient.id, "Thank you doctor", client_message_id=key)
    assert again.id == first.id

    with pytest.raises(InvalidPhase):
        await messages.append(parties.cid, parties.patient.id, "Thank you doctor", client_message_id=uuid4())


@pytest.mark.asyncio
async def test_client_id_of_another_sender_is_rejected(messages, session, parties):
    key = uuid4()
    await messages.append(parties.cid, parties.patient.id, "hello", client_message_id=key)

    with pytest.raises(InvalidMessage):
        await messages.append(parties.cid, parties.doctor.id, "hello", client_message_id=key)
    assert await count_messages(session, parties.cid) == 1


@pytest.mark.asyncio
async def test_messages_carry_sender_name_and_role(messages, parties):
    sent = await messages.append(parties.cid, parties.patient.id, "I have a headache")
    await messages.append(parties.cid, parties.doctor.id, "Since when?")
    read = await messages.mark_read(sent.id, parties.doctor.id)

    assert (sent.sender_name, sent.sender_role) == ("Arjun Nair", "patient")
    assert (read.sender_name, read.sender_role) == ("Arjun Nair", "patient")
    listed = await messages.list_by_session(parties.cid)
    assert [(m.sender_name, m.sender_role) for m in listed] == [
        ("Arjun Nair", "patient"),
        ("Meera Iyer", "doctor"),
    ]


@pytest.mark.asyncio
async def test_timestamps_are_stored_as_naive_utc(messages, session_factory, parties, clock):
    sent = await messages.append(parties.cid, parties.patient.id, "hello")

    async with session_factory() as fresh:
        stored = await fresh.get(Message, sent.id)
    assert stored.created_at == clock.now
    assert stored.created_at.tzinfo is None
