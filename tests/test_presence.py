import asyncio
from datetime import timedelta

import pytest

from app.core.exceptions import ConsultationError, InvalidPhase, OutOfWindow
from app.db.models import SessionPhase
from app.schemas.consultation import ParticipantRole
from app.services.audit_service import AuditService
from app.services.consultation_service import ConsultationService
from app.services.message_service import MessageService
from app.services.presence_service import (
    PHASE_RANK,
    PresenceService,
    join_window_open,
    seconds_until_join_window,
)
from conftest import T, Recorder

DOCTOR = ParticipantRole.DOCTOR
PATIENT = ParticipantRole.PATIENT


def test_join_window_boundaries():
    assert not join_window_open(T, T - timedelta(minutes=16))
    assert join_window_open(T, T - timedelta(minutes=15))
    assert join_window_open(T, T - timedelta(minutes=14))
    # No upper bound: late joiners are let in
    assert join_window_open(T, T + timedelta(hours=3))

    assert seconds_until_join_window(T, T - timedelta(minutes=16)) == 60
    assert seconds_until_join_window(T, T - timedelta(minutes=15, seconds=0.5)) == 1
    assert seconds_until_join_window(T, T - timedelta(minutes=15)) == 0
    assert seconds_until_join_window(T, T) == 0


@pytest.mark.asyncio
@pytest.mark.parametrize("minutes_before, allowed", [(16, False), (15, True), (14, True)])
async def test_report_join_respects_window(presence, parties, clock, minutes_before, allowed):
    clock.set(T - timedelta(minutes=minutes_before))

    if allowed:
        state = await presence.report_join(parties.cid, DOCTOR)
        assert state.phase == SessionPhase.IN_PROGRESS
        assert state.phase_started_at == clock.now
    else:
        with pytest.raises(OutOfWindow) as excinfo:
            await presence.report_join(parties.cid, DOCTOR)
        assert excinfo.value.seconds_remaining == 60
        assert excinfo.value.details == {"seconds_remaining": 60}
        state = await presence.get_state(parties.cid)
        assert state.phase == SessionPhase.SCHEDULED
        assert state.doctor_joined is False


@pytest.mark.asyncio
async def test_session_lifecycle(presence, messages, parties, clock):
    clock.set(T - timedelta(minutes=20))
    with pytest.raises(OutOfWindow):
        await presence.report_join(parties.cid, DOCTOR)

    clock.set(T - timedelta(minutes=10))
    state = await presence.report_join(parties.cid, DOCTOR)
    assert state.phase == SessionPhase.IN_PROGRESS
    assert state.doctor_joined is True
    started_at = state.phase_started_at

    clock.set(T - timedelta(minutes=5))
    state = await presence.report_join(parties.cid, PATIENT)
    assert state.phase == SessionPhase.IN_PROGRESS
    assert state.patient_joined is True
    assert state.phase_started_at == started_at

    state = await presence.report_leave(parties.cid, DOCTOR)
    assert state.doctor_joined is False
    assert state.patient_joined is True
    assert state.phase == SessionPhase.IN_PROGRESS

    state = await presence.report_end(parties.cid)
    assert state.phase == SessionPhase.COMPLETED
    assert (state.doctor_joined, state.patient_joined) == (False, False)
    assert state.phase_ended_at == clock.now

    with pytest.raises(InvalidPhase):
        await messages.append(parties.cid, parties.patient.id, "Thanks doctor")


@pytest.mark.asyncio
async def test_leaving_and_rejoining_keeps_session_in_progress(presence, parties):
    await presence.report_join(parties.cid, PATIENT)
    await presence.report_leave(parties.cid, PATIENT)
    state = await presence.report_join(parties.cid, PATIENT)

    assert state.phase == SessionPhase.IN_PROGRESS
    assert state.patient_joined is True


@pytest.mark.asyncio
async def test_report_end_is_idempotent(presence, parties, clock):
    await presence.report_join(parties.cid, DOCTOR)
    first = await presence.report_end(parties.cid)
    clock.advance(minutes=5)
    second = await presence.report_end(parties.cid)

    assert second.phase == SessionPhase.COMPLETED
    assert second.phase_ended_at == first.phase_ended_at


@pytest.mark.asyncio
async def test_end_requires_a_started_session(presence, parties):
    with pytest.raises(InvalidPhase):
        await presence.report_end(parties.cid)

    await presence.cancel(parties.cid, reason="Doctor unavailable")
    with pytest.raises(InvalidPhase):
        await presence.report_end(parties.cid)


@pytest.mark.asyncio
async def test_terminal_sessions_reject_joins_and_ignore_leaves(presence, parties):
    await presence.report_join(parties.cid, DOCTOR)
    await presence.report_end(parties.cid)

    with pytest.raises(InvalidPhase):
        await presence.report_join(parties.cid, PATIENT)
    state = await presence.report_leave(parties.cid, DOCTOR)
    assert state.phase == SessionPhase.COMPLETED
    assert state.doctor_joined is False


@pytest.mark.asyncio
async def test_cancel(presence, parties):
    await presence.report_join(parties.cid, PATIENT)
    state = await presence.cancel(parties.cid, actor_id=parties.doctor.id, reason="Emergency")
    assert state.phase == SessionPhase.CANCELLED
    assert (state.doctor_joined, state.patient_joined) == (False, False)

    again = await presence.cancel(parties.cid)
    assert again.phase == SessionPhase.CANCELLED
    assert again.phase_ended_at == state.phase_ended_at


@pytest.mark.asyncio
async def test_completed_session_cannot_be_cancelled(presence, parties):
    await presence.report_join(parties.cid, DOCTOR)
    await presence.report_end(parties.cid)
    with pytest.raises(InvalidPhase):
        await presence.cancel(parties.cid)


@pytest.mark.asyncio
async def test_phase_never_moves_backwards(presence, channel, parties, clock):
    observed = Recorder()
    subscription = await channel.subscribe_presence(parties.cid, on_phase=observed)

    operations = [
        lambda: presence.report_leave(parties.cid, DOCTOR),
        lambda: presence.report_end(parties.cid),
        lambda: presence.report_join(parties.cid, PATIENT),
        lambda: presence.report_leave(parties.cid, PATIENT),
        lambda: presence.report_join(parties.cid, DOCTOR),
        lambda: presence.report_leave(parties.cid, DOCTOR),
        lambda: presence.report_join(parties.cid, DOCTOR),
        lambda: presence.report_end(parties.cid),
        lambda: presence.report_join(parties.cid, PATIENT),
        lambda: presence.cancel(parties.cid),
        lambda: presence.report_leave(parties.cid, PATIENT),
        lambda: presence.report_end(parties.cid),
    ]
    returned = []
    for operation in operations:
        clock.advance(seconds=1)
        try:
            returned.append((await operation()).phase)
        except ConsultationError:
            returned.append((await presence.get_state(parties.cid)).phase)
    await subscription.drain()

    for phases in (returned, [state.phase for state in observed.calls]):
        ranks = [PHASE_RANK[phase] for phase in phases]
        assert ranks == sorted(ranks)
    assert returned[-1] == SessionPhase.COMPLETED


@pytest.mark.asyncio
async def test_unchanged_reports_are_not_published(presence, channel, parties):
    observed = Recorder()
    subscription = await channel.subscribe_presence(parties.cid, on_phase=observed)

    await presence.report_join(parties.cid, DOCTOR)
    await presence.report_join(parties.cid, DOCTOR)
    await presence.report_leave(parties.cid, PATIENT)
    await subscription.drain()

    assert len(observed) == 1
    assert observed.calls[0].phase == SessionPhase.IN_PROGRESS
    assert observed.calls[0].doctor_joined is True


@pytest.mark.asyncio
async def test_concurrent_reports_do_not_lose_updates(session_factory, channel, locks, clock, parties):
    async def report(method, role):
        async with session_factory() as session:
            service = PresenceService(session, channel, locks=locks, clock=clock)
            return await getattr(service, method)(parties.cid, role)

    await asyncio.gather(*(report("report_join", role) for role in (DOCTOR, PATIENT) * 5))
    async with session_factory() as session:
        state = await ConsultationService(session).get_state(parties.cid)
    assert state.phase == SessionPhase.IN_PROGRESS
    assert (state.doctor_joined, state.patient_joined) == (True, True)

    await asyncio.gather(report("report_leave", DOCTOR), report("report_leave", PATIENT))
    async with session_factory() as session:
        state = await ConsultationService(session).get_state(parties.cid)
    assert (state.doctor_joined, state.patient_joined) == (False, False)
    assert state.phase == SessionPhase.IN_PROGRESS
    assert locks.active_keys() == 0


@pytest.mark.asyncio
async def test_concurrent_appends_get_distinct_positions(session_factory, channel, locks, clock, parties):
    async def send(sender_id, text):
        async with session_factory() as session:
            return await MessageService(session, channel, locks=locks, clock=clock).append(parties.cid, sender_id, text)

    sent = await asyncio.gather(*(
        send(parties.patient.id if i % 2 else parties.doctor.id, f"message {i}") for i in range(8)
    ))
    assert sorted(m.seq for m in sent) == list(range(1, 9))


@pytest.mark.asyncio
async def test_phase_transitions_are_audited(presence, session, parties):
    await presence.report_join(parties.cid, DOCTOR, actor_id=parties.doctor.id)
    await presence.report_join(parties.cid, PATIENT, actor_id=parties.patient.id)
    await presence.report_end(parties.cid, actor_id=parties.doctor.id)

    entries = await AuditService(session).list_for_consultation(parties.cid)
    assert [e.action for e in entries] == ["consultation.doctor_joined", "consultation.ended"]
    assert entries[0].payload == {"from": "scheduled", "to": "in_progress"}
    assert entries[1].actor_id == parties.doctor.id
