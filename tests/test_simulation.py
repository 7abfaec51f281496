"""Tests for the autonomous simulation loop."""

import asyncio

import pytest

from conversation_state import SYSTEM_AUTHOR
from events import ProtocolEvent
from simulation import SimulationState

from conftest import wait_until


def _replies(session):
    return [m for m in session.messages if m.is_visible_turn]


def _monologues(session):
    return [m for m in session.messages if m.is_internal_monologue]


@pytest.mark.asyncio
async def test_single_message_turns_stop_at_cap_and_alternate(session, provider):
    assert session.start_simulation(3, 1) is True
    await session.wait_for_simulation()

    sim = session.simulation
    assert len(provider.calls) == 3
    assert [m.author for m in _replies(session)] == ["Philosopher", "Scientist", "Philosopher"]
    assert sim.current_turn == 3
    assert sim.state == SimulationState.IDLE
    assert sim.stop_reason == "completed"
    assert session.roster.active == "p2"
    assert provider.max_active == 1


@pytest.mark.asyncio
async def test_two_message_turns(session, provider):
    session.start_simulation(3, 2)
    await session.wait_for_simulation()

    assert len(session.messages) == 12
    assert len(_replies(session)) == 6
    assert len(_monologues(session)) == 6
    assert not any(m.is_loading for m in session.messages)
    assert session.simulation.current_turn == 3
    assert not session.is_simulating
    assert session.roster.active == "p1"
    assert [c["persona"] for c in provider.calls] == ["Philosopher", "Scientist"] * 3


@pytest.mark.asyncio
async def test_prompts_follow_the_latest_reply(session, provider):
    session.set_topic("Is time real?")
    session.start_simulation(2, 1)
    await session.wait_for_simulation()

    assert provider.calls[0]["prompt"] == "Is time real?"
    assert provider.calls[1]["prompt"] == "Philosopher reply 1"


@pytest.mark.asyncio
async def test_failure_stops_the_loop(session, provider):
    provider.fail_on = {2}

    session.start_simulation(5, 1)
    await session.wait_for_simulation()

    sim = session.simulation
    assert sim.stop_reason == "error"
    assert sim.state == SimulationState.IDLE
    assert sim.current_turn == 1
    assert len(provider.calls) == 2
    assert session.messages[-1].author == SYSTEM_AUTHOR
    assert not session.is_busy


@pytest.mark.asyncio
async def test_stop_lets_in_flight_turn_finish_without_chaining(session, provider):
    provider.release = asyncio.Event()
    session.start_simulation(5, 2)
    await wait_until(lambda: provider.active == 1)

    session.stop_simulation()
    provider.release.set()
    await session.wait_for_simulation()

    assert len(provider.calls) == 1
    assert session.simulation.current_turn == 0
    assert session.simulation.stop_reason == "stopped"
    assert not any(m.is_loading for m in session.messages)
    assert _replies(session)[-1].text == "Philosopher reply 1"


@pytest.mark.asyncio
async def test_restart_after_stop_keeps_only_the_new_schedule(make_session, provider):
    session = make_session(turn_delay_seconds=0.4)
    assert session.start_simulation(5, 1) is True
    await asyncio.sleep(0.1)
    session.stop_simulation()
    assert session.start_simulation(1, 1) is True

    # The stopped run would have ticked 0.3s after the restart
    await asyncio.sleep(0.35)
    assert provider.calls == []

    await session.wait_for_simulation()
    assert len(provider.calls) == 1
    assert session.simulation.stop_reason == "completed"
    assert session.simulation.current_turn == 1


@pytest.mark.asyncio
async def test_branch_switch_stops_simulation(make_session, provider):
    session = make_session(turn_delay_seconds=0.05)
    await session.send_message("Hello")
    branch_id = session.store.fork(session.messages[0].id)
    calls_before = len(provider.calls)

    session.start_simulation(5, 1)
    assert await session.select_branch(branch_id) is True
    await session.wait_for_simulation()

    assert session.simulation.stop_reason == "branch_switch"
    assert len(provider.calls) == calls_before
    assert session.store.active_branch_id == branch_id


@pytest.mark.asyncio
async def test_start_is_rejected_while_running(session, provider):
    provider.release = asyncio.Event()
    assert session.start_simulation(2, 1) is True
    assert session.start_simulation(2, 1) is False
    assert await session.send_message("Hi") is False

    provider.release.set()
    await session.wait_for_simulation()


@pytest.mark.asyncio
async def test_invalid_arguments(session):
    with pytest.raises(ValueError):
        session.start_simulation(3, 3)
    with pytest.raises(ValueError):
        session.simulation.start(0, 1)
    with pytest.raises(ValueError):
        session.start_simulation(max_turns=0)
    assert not session.is_simulating


@pytest.mark.asyncio
async def test_simulation_events(session, provider):
    seen = []
    session.subscribe(lambda event, data: seen.append((event, data)))

    session.start_simulation(1, 1)
    await session.wait_for_simulation()

    events = [e for e, _ in seen]
    assert events[0] == ProtocolEvent.SIMULATION_STARTED
    assert events[-1] == ProtocolEvent.SIMULATION_STOPPED
    assert seen[-1][1]["reason"] == "completed"
    assert seen[-1][1]["current_turn"] == 1
