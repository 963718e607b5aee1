"""Tests for the card state machine."""

from __future__ import annotations

import asyncio

from gather_orchestrator.conversation.card import (
    CardState,
    CardStateMachine,
    IdleCard,
    MessageCard,
    StreamingCard,
    TaskCreatedCard,
    ThinkingCard,
)
from gather_orchestrator.models import Task


def _created() -> TaskCreatedCard:
    return TaskCreatedCard(task=Task(id="t1", title="Renew passport"))


def test_starts_idle() -> None:
    assert CardStateMachine().state == IdleCard()


def test_set_replaces_and_notifies() -> None:
    machine = CardStateMachine()
    seen: list[CardState] = []
    machine.subscribe(seen.append)

    machine.set(ThinkingCard(status="Understanding what you need..."))
    machine.set(MessageCard(text="Hi"))
    assert machine.state == MessageCard(text="Hi")
    assert [type(s) for s in seen] == [ThinkingCard, MessageCard]


def test_unsubscribe() -> None:
    machine = CardStateMachine()
    seen: list[CardState] = []
    unsubscribe = machine.subscribe(seen.append)
    unsubscribe()
    machine.reset()
    assert seen == []


def test_append_token_starts_and_extends_stream() -> None:
    machine = CardStateMachine()
    machine.set(ThinkingCard())
    machine.append_token("Hel")
    machine.append_token("lo")
    assert machine.state == StreamingCard(partial_text="Hello")


def test_replace_stream_text() -> None:
    machine = CardStateMachine()
    machine.append_token("{")
    machine.replace_stream_text("Working")
    assert machine.state == StreamingCard(partial_text="Working")


def test_no_auto_dismiss_outside_compact_view() -> None:
    machine = CardStateMachine(compact_view=False)
    machine.set(_created())
    assert not machine.auto_dismiss_pending


async def test_auto_dismiss_in_compact_view() -> None:
    machine = CardStateMachine(auto_dismiss_seconds=0.01, compact_view=True)
    machine.set(_created())
    assert machine.auto_dismiss_pending
    await asyncio.sleep(0.05)
    assert machine.state == IdleCard()
    assert not machine.auto_dismiss_pending


async def test_later_transition_cancels_auto_dismiss() -> None:
    machine = CardStateMachine(auto_dismiss_seconds=0.01, compact_view=True)
    machine.set(_created())
    machine.set(MessageCard(text="Still here"))
    assert not machine.auto_dismiss_pending
    await asyncio.sleep(0.05)
    assert machine.state == MessageCard(text="Still here")
