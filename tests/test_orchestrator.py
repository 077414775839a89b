from __future__ import annotations

import asyncio
from typing import Any, Optional

import pytest

from core.config import POLL_MODE_REQUEST, PollConfig, RoomConfig
from core.errors import UpstreamError
from core.membership import RoomMembershipManager
from core.models import (
    Character,
    MessageKind,
    MessageOrigin,
    PollSelection,
    ProcessedMessageRecord,
    RemoteMessage,
    ReplyOutcome,
    Room,
)
from core.orchestrator import PollOrchestrator


def _nomi(text: str) -> RemoteMessage:
    return RemoteMessage(id=None, text=text, origin=MessageOrigin.CHARACTER)


def _user(text: str) -> RemoteMessage:
    return RemoteMessage(id=None, text=text, origin=MessageOrigin.USER)


def _room_line(text: str, sender_id: Optional[str] = None) -> RemoteMessage:
    return RemoteMessage(
        id=None,
        text=text,
        origin=MessageOrigin.CHARACTER,
        sender_id=sender_id,
        room_wide=True,
    )


class FakeChat:
    def __init__(self) -> None:
        self.characters: list[Character] = []
        self.messages: dict[str, list[RemoteMessage]] = {}
        self.room_messages: dict[str, list[RemoteMessage]] = {}
        self.rooms: list[Room] = []
        self.fetched: list[Optional[str]] = []
        self.replies: dict[str, ReplyOutcome] = {}
        self.sent: list[tuple[str, Optional[str], str]] = []
        self.fail_fetch_for: set[str] = set()
        self.fail_send_for: set[str] = set()

    async def list_characters(self) -> list[Character]:
        return list(self.characters)

    async def fetch_messages(
        self, room_id: Optional[str] = None, character_id: Optional[str] = None
    ) -> list[RemoteMessage]:
        if character_id in self.fail_fetch_for:
            raise UpstreamError("fetch failed", 500, "boom")
        self.fetched.append(room_id)
        if room_id in self.room_messages:
            return list(self.room_messages[room_id])
        return list(self.messages.get(character_id or "", []))

    async def list_rooms(self) -> list[Room]:
        return list(self.rooms)

    async def request_reply(self, room_id: str, character_id: Optional[str]) -> ReplyOutcome:
        return self.replies.get(character_id or "", ReplyOutcome())

    async def send_message(self, character_id: str, room_id: Optional[str], text: str) -> dict[str, Any]:
        if character_id in self.fail_send_for:
            raise UpstreamError("send failed", 503, "unavailable", attempts=[(404, ""), (503, "")])
        self.sent.append((character_id, room_id, text))
        return {}


class FakeEngine:
    def __init__(self, answers: Optional[dict[str, str]] = None, fail: bool = False) -> None:
        self.answers = answers or {}
        self.fail = fail
        self.questions: list[str] = []

    async def complete(self, system_prompt: str, user_prompt: str) -> str:
        return await self.answer(user_prompt)

    async def answer(self, question: str) -> str:
        self.questions.append(question)
        if self.fail:
            raise UpstreamError("LLM API error: 500", 500, "")
        return self.answers.get(question, "Because.")


class FakeStore:
    def __init__(self) -> None:
        self.records: list[ProcessedMessageRecord] = []
        self.selections: list[PollSelection] = []
        self.fail_insert = False

    def insert(self, record: ProcessedMessageRecord) -> ProcessedMessageRecord:
        if self.fail_insert:
            raise RuntimeError("database is locked")
        self.records.append(record)
        return record

    def exists_by_character_and_text(self, character_id: str, text: str) -> bool:
        return any(
            r.character_id == character_id and r.original_text == text for r in self.records
        )

    def exists_by_room_and_text(self, room_id: str, text: str) -> bool:
        return any(r.room_id == room_id and r.original_text == text for r in self.records)

    def list_selections(self) -> list[PollSelection]:
        return list(self.selections)

    def rebind_room(self, old_room_id: str, new_room: Room) -> int:
        moved = 0
        rebound = []
        for s in self.selections:
            if s.room_id == old_room_id:
                s = PollSelection(s.character_id, new_room.id, s.character_name, new_room.name)
                moved += 1
            rebound.append(s)
        self.selections = rebound
        return moved


def _orchestrator(
    chat: FakeChat, engine: FakeEngine, store: FakeStore, config: Optional[PollConfig] = None
) -> PollOrchestrator:
    return PollOrchestrator(
        chat=chat,
        engine=engine,
        store=store,
        selections=store,
        config=config or PollConfig(),
    )


def test_question_is_answered_sent_and_recorded() -> None:
    chat = FakeChat()
    chat.characters = [Character("paige-1", "Paige")]
    chat.messages["paige-1"] = [_nomi("What's the capital of France?")]
    engine = FakeEngine({"What's the capital of France?": "Paris is the capital of France."})
    store = FakeStore()

    report = asyncio.run(_orchestrator(chat, engine, store).run_pass())

    assert chat.sent == [("paige-1", None, "Paris is the capital of France.")]
    assert len(store.records) == 1
    record = store.records[0]
    assert record.kind is MessageKind.QUESTION_ANSWERED
    assert record.extracted_question == "What's the capital of France?"
    assert record.answer == "Paris is the capital of France."
    assert record.character_name == "Paige"
    assert report.total_characters_checked == 1
    assert report.messages_processed == 1


def test_statement_gets_fixed_prompt_and_regular_record() -> None:
    chat = FakeChat()
    chat.characters = [Character("rex-1", "Rex")]
    chat.messages["rex-1"] = [_nomi("Hello there")]
    engine = FakeEngine()
    store = FakeStore()

    asyncio.run(_orchestrator(chat, engine, store).run_pass())

    assert chat.sent == [("rex-1", None, "Ask me a question")]
    assert engine.questions == []
    assert len(store.records) == 1
    assert store.records[0].kind is MessageKind.REGULAR
    assert store.records[0].extracted_question is None


def test_same_message_on_two_ticks_is_handled_once() -> None:
    chat = FakeChat()
    chat.characters = [Character("paige-1", "Paige")]
    chat.messages["paige-1"] = [_nomi("Why?")]
    engine = FakeEngine()
    store = FakeStore()
    orchestrator = _orchestrator(chat, engine, store)

    asyncio.run(orchestrator.run_pass())
    second = asyncio.run(orchestrator.run_pass())

    assert len(store.records) == 1
    assert len(chat.sent) == 1
    assert len(engine.questions) == 1
    assert second.messages_found == 1
    assert second.messages_processed == 0


def test_user_messages_are_ignored() -> None:
    chat = FakeChat()
    chat.characters = [Character("paige-1", "Paige")]
    chat.messages["paige-1"] = [_user("Can you hear me?"), _nomi("Yes.")]
    store = FakeStore()

    asyncio.run(_orchestrator(chat, FakeEngine(), store).run_pass())

    assert [r.original_text for r in store.records] == ["Yes."]


def test_monologue_is_stripped_before_asking() -> None:
    chat = FakeChat()
    chat.characters = [Character("paige-1", "Paige")]
    chat.messages["paige-1"] = [_nomi("*leans in* Is the moon made of cheese?")]
    engine = FakeEngine()
    store = FakeStore()

    asyncio.run(_orchestrator(chat, engine, store).run_pass())

    assert engine.questions == ["Is the moon made of cheese?"]
    # Dedup key keeps the raw text.
    assert store.records[0].original_text == "*leans in* Is the moon made of cheese?"


def test_long_answers_are_truncated_before_sending() -> None:
    long_answer = "Sure. " + "a" * 900
    chat = FakeChat()
    chat.characters = [Character("paige-1", "Paige")]
    chat.messages["paige-1"] = [_nomi("Tell me more?")]
    store = FakeStore()

    asyncio.run(
        _orchestrator(chat, FakeEngine({"Tell me more?": long_answer}), store).run_pass()
    )

    assert chat.sent[0][2] == "Sure."
    assert store.records[0].answer == "Sure."


def test_monologue_only_message_is_passthrough() -> None:
    chat = FakeChat()
    chat.characters = [Character("paige-1", "Paige")]
    chat.messages["paige-1"] = [_nomi("*sighs*")]
    store = FakeStore()

    asyncio.run(_orchestrator(chat, FakeEngine(), store).run_pass())

    assert chat.sent == []
    assert store.records[0].kind is MessageKind.PASSTHROUGH


def test_empty_fallback_prompt_records_without_replying() -> None:
    chat = FakeChat()
    chat.characters = [Character("rex-1", "Rex")]
    chat.messages["rex-1"] = [_nomi("Hello there")]
    store = FakeStore()
    config = PollConfig(fallback_prompt="")

    asyncio.run(_orchestrator(chat, FakeEngine(), store, config).run_pass())

    assert chat.sent == []
    assert store.records[0].kind is MessageKind.PASSTHROUGH


def test_one_failing_character_does_not_stop_the_pass() -> None:
    chat = FakeChat()
    chat.characters = [Character("a", "A"), Character("b", "B"), Character("c", "C")]
    chat.messages = {"a": [_nomi("Hi")], "b": [_nomi("Hey")], "c": [_nomi("Yo?")]}
    chat.fail_fetch_for = {"a"}
    chat.fail_send_for = {"b"}
    store = FakeStore()

    report = asyncio.run(_orchestrator(chat, FakeEngine(), store).run_pass())

    assert report.total_characters_checked == 3
    assert [r.character_id for r in store.records] == ["c"]
    assert {e["nomiUuid"] for e in report.errors} == {"a", "b"}
    assert report.to_dict()["errors"][0]["upstreamStatus"] == 500


def test_ai_failure_leaves_message_unrecorded_for_next_tick() -> None:
    chat = FakeChat()
    chat.characters = [Character("paige-1", "Paige")]
    chat.messages["paige-1"] = [_nomi("Why?")]
    store = FakeStore()
    engine = FakeEngine(fail=True)
    orchestrator = _orchestrator(chat, engine, store)

    report = asyncio.run(orchestrator.run_pass())
    assert store.records == []
    assert chat.sent == []
    assert len(report.errors) == 1

    engine.fail = False
    asyncio.run(orchestrator.run_pass())
    assert len(store.records) == 1


def test_insert_failure_after_send_is_reported() -> None:
    chat = FakeChat()
    chat.characters = [Character("paige-1", "Paige")]
    chat.messages["paige-1"] = [_nomi("Why?")]
    store = FakeStore()
    store.fail_insert = True

    report = asyncio.run(_orchestrator(chat, FakeEngine(), store).run_pass())

    assert len(chat.sent) == 1
    assert report.errors and "database is locked" in report.errors[0]["error"]


def test_stored_selections_take_precedence_over_all_characters() -> None:
    chat = FakeChat()
    chat.characters = [Character("a", "A"), Character("b", "B")]
    chat.messages = {"a": [_nomi("Hi")], "b": [_nomi("Hey")]}
    store = FakeStore()
    store.selections = [PollSelection("b", "room-1", "B", "Inquisitorium")]

    report = asyncio.run(_orchestrator(chat, FakeEngine(), store).run_pass())

    assert report.total_characters_checked == 1
    assert chat.sent == [("b", "room-1", "Ask me a question")]
    assert store.records[0].room_id == "room-1"


def test_nothing_polled_when_unselected_and_poll_all_disabled() -> None:
    chat = FakeChat()
    chat.characters = [Character("a", "A")]
    store = FakeStore()
    config = PollConfig(poll_all_when_unselected=False)

    report = asyncio.run(_orchestrator(chat, FakeEngine(), store, config).run_pass())

    assert report.total_characters_checked == 0


def test_request_mode_uses_reply_and_skips_pending() -> None:
    chat = FakeChat()
    chat.replies = {
        "a": ReplyOutcome(message=_nomi("Any news?")),
        "b": ReplyOutcome(pending=True),
    }
    store = FakeStore()
    store.selections = [
        PollSelection("a", "room-1", "A"),
        PollSelection("b", "room-1", "B"),
    ]
    config = PollConfig(mode=POLL_MODE_REQUEST)

    report = asyncio.run(_orchestrator(chat, FakeEngine(), store, config).run_pass())

    assert [r.character_id for r in store.records] == ["a"]
    assert report.errors == []


def test_process_message_propagates_errors() -> None:
    chat = FakeChat()
    chat.fail_send_for = {"paige-1"}
    store = FakeStore()
    orchestrator = _orchestrator(chat, FakeEngine(), store)

    with pytest.raises(UpstreamError) as excinfo:
        asyncio.run(orchestrator.process_message("paige-1", "Why?", "Paige"))
    assert excinfo.value.status_codes == [404, 503]
    assert store.records == []


def test_process_message_skips_duplicates() -> None:
    chat = FakeChat()
    store = FakeStore()
    orchestrator = _orchestrator(chat, FakeEngine(), store)

    first = asyncio.run(orchestrator.process_message("paige-1", "Why?", "Paige"))
    second = asyncio.run(orchestrator.process_message("paige-1", "Why?", "Paige"))

    assert first is not None
    assert second is None
    assert len(chat.sent) == 1


def test_room_wide_line_without_speaker_is_answered_once_per_room() -> None:
    chat = FakeChat()
    chat.room_messages["room-1"] = [_room_line("Why is the sky blue?")]
    engine = FakeEngine()
    store = FakeStore()
    store.selections = [
        PollSelection("paige-1", "room-1", "Paige", "Inquisitorium"),
        PollSelection("rex-1", "room-1", "Rex", "Inquisitorium"),
    ]

    report = asyncio.run(_orchestrator(chat, engine, store).run_pass())
    again = asyncio.run(_orchestrator(chat, engine, store).run_pass())

    assert engine.questions == ["Why is the sky blue?"]
    assert chat.sent == [("paige-1", "room-1", "Because.")]
    assert [r.character_id for r in store.records] == ["paige-1"]
    assert report.messages_found == 2
    assert report.messages_processed == 1
    assert again.messages_processed == 0


def test_room_wide_line_is_credited_to_its_speaker_only() -> None:
    chat = FakeChat()
    chat.room_messages["room-1"] = [_room_line("Why is the sky blue?", sender_id="rex-1")]
    engine = FakeEngine()
    store = FakeStore()
    store.selections = [
        PollSelection("paige-1", "room-1", "Paige", "Inquisitorium"),
        PollSelection("rex-1", "room-1", "Rex", "Inquisitorium"),
    ]

    asyncio.run(_orchestrator(chat, engine, store).run_pass())

    assert chat.sent == [("rex-1", "room-1", "Because.")]
    assert [r.character_id for r in store.records] == ["rex-1"]


def test_empty_history_refreshes_vanished_room_and_refetches() -> None:
    chat = FakeChat()
    new_room = Room("room-new", "Inquisitorium", (Character("paige-1", "Paige"),), True)
    chat.rooms = [new_room]
    chat.room_messages["room-new"] = [_nomi("Is anyone there?")]
    store = FakeStore()
    store.selections = [PollSelection("paige-1", "room-old", "Paige", "Inquisitorium")]
    rooms = RoomMembershipManager(chat, store, RoomConfig())
    orchestrator = PollOrchestrator(
        chat=chat,
        engine=FakeEngine(),
        store=store,
        selections=store,
        config=PollConfig(),
        rooms=rooms,
    )

    report = asyncio.run(orchestrator.run_pass())

    assert chat.fetched == ["room-old", "room-new"]
    assert chat.sent == [("paige-1", "room-new", "Because.")]
    assert store.records[0].room_id == "room-new"
    assert store.selections[0].room_id == "room-new"
    assert report.messages_processed == 1


def test_empty_history_of_live_room_is_not_refetched() -> None:
    chat = FakeChat()
    chat.rooms = [Room("room-1", "Inquisitorium")]
    store = FakeStore()
    store.selections = [PollSelection("paige-1", "room-1", "Paige", "Inquisitorium")]
    orchestrator = PollOrchestrator(
        chat=chat,
        engine=FakeEngine(),
        store=store,
        selections=store,
        config=PollConfig(),
        rooms=RoomMembershipManager(chat, store, RoomConfig()),
    )

    asyncio.run(orchestrator.run_pass())

    assert chat.fetched == ["room-1"]
    assert store.selections[0].room_id == "room-1"
