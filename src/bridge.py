"""Per-request composition of the bridge components.

A Bridge bundles the clients and core services built for one set of
credentials. Storage is scoped to the credentials' user, so one caller never
sees or polls another caller's selections and message log. ``open_bridge``
owns the HTTP clients and closes them when the request or poll tick is done.
"""

from __future__ import annotations

from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import AsyncIterator

from adapters.sqlite_storage import SQLiteStorage
from client import build_answer_engine, build_chat_client
from core.config import BridgeOptions, Credentials
from core.dispatcher import ActionDispatcher
from core.membership import RoomMembershipManager
from core.orchestrator import PollOrchestrator
from core.ports import AnswerEnginePort, ChatClientPort


@dataclass
class Bridge:
    chat: ChatClientPort
    engine: AnswerEnginePort
    orchestrator: PollOrchestrator
    membership: RoomMembershipManager
    dispatcher: ActionDispatcher


def assemble_bridge(
    chat: ChatClientPort,
    engine: AnswerEnginePort,
    storage: SQLiteStorage,
    options: BridgeOptions,
) -> Bridge:
    """Wire core services around already-built clients."""

    membership = RoomMembershipManager(chat, storage, options.room)
    orchestrator = PollOrchestrator(
        chat=chat,
        engine=engine,
        store=storage,
        selections=storage,
        config=options.poll,
        rooms=membership,
    )
    dispatcher = ActionDispatcher(
        chat=chat,
        engine=engine,
        orchestrator=orchestrator,
        membership=membership,
        store=storage,
        selections=storage,
        room_config=options.room,
    )
    return Bridge(
        chat=chat,
        engine=engine,
        orchestrator=orchestrator,
        membership=membership,
        dispatcher=dispatcher,
    )


@asynccontextmanager
async def open_bridge(
    credentials: Credentials, storage: SQLiteStorage, options: BridgeOptions
) -> AsyncIterator[Bridge]:
    chat = build_chat_client(credentials, options)
    engine = build_answer_engine(credentials, options)
    try:
        yield assemble_bridge(chat, engine, storage.for_user(credentials.user_id), options)
    finally:
        await chat.aclose()
        await engine.aclose()
