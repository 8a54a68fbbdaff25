from __future__ import annotations

import uuid
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Iterable

from engine.protocol import ContextMessage

GREETING_ID = "init"
RESET_GREETING_ID = "init-reset"

# Locally injected greetings; never sent to the model.
SENTINEL_IDS = frozenset({GREETING_ID, RESET_GREETING_ID})


class TurnStatus(str, Enum):
    COMPLETE = "complete"
    STREAMING = "streaming"
    FAILED = "failed"


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _new_turn_id() -> str:
    return uuid.uuid4().hex


@dataclass
class Turn:
    role: str
    content: str = ""
    id: str = field(default_factory=_new_turn_id)
    created_at: str = field(default_factory=_now_iso)
    status: TurnStatus = TurnStatus.COMPLETE

    @property
    def is_sentinel(self) -> bool:
        return self.id in SENTINEL_IDS

    def copy(self) -> Turn:
        return replace(self)


class Conversation:
    """Insertion-ordered turns for one assistant session.

    Only the host controller holds a Conversation; everything handed out is a
    copy. At most one turn is STREAMING at a time.
    """

    def __init__(self) -> None:
        self._turns: list[Turn] = []

    def __len__(self) -> int:
        return len(self._turns)

    def __bool__(self) -> bool:
        return bool(self._turns)

    @property
    def last(self) -> Turn | None:
        return self._turns[-1] if self._turns else None

    @property
    def streaming_turn(self) -> Turn | None:
        for turn in reversed(self._turns):
            if turn.status == TurnStatus.STREAMING:
                return turn
        return None

    def snapshot(self) -> tuple[Turn, ...]:
        return tuple(t.copy() for t in self._turns)

    def append_user(self, text: str) -> Turn:
        turn = Turn(role="user", content=text)
        self._turns.append(turn)
        return turn

    def append_placeholder(self) -> Turn:
        if self.streaming_turn is not None:
            raise RuntimeError("A turn is already streaming")
        turn = Turn(role="assistant", content="", status=TurnStatus.STREAMING)
        self._turns.append(turn)
        return turn

    def append_chunk(self, text: str) -> Turn | None:
        """Append to the last turn if it is an assistant turn; otherwise drop."""
        turn = self.last
        if turn is None or turn.role != "assistant":
            return None
        turn.content += text
        return turn

    def finish_streaming(self) -> Turn | None:
        turn = self.streaming_turn
        if turn is not None:
            turn.status = TurnStatus.COMPLETE
        return turn

    def fail_streaming(self, failure_text: str) -> Turn | None:
        turn = self.streaming_turn
        if turn is None:
            return None
        turn.status = TurnStatus.FAILED
        if not turn.content:
            turn.content = failure_text
        return turn

    def seed_greeting(self, text: str) -> Turn | None:
        if self._turns:
            return None
        turn = Turn(role="assistant", content=text, id=GREETING_ID)
        self._turns.append(turn)
        return turn

    def reset(self, text: str) -> Turn:
        turn = Turn(role="assistant", content=text, id=RESET_GREETING_ID)
        self._turns = [turn]
        return turn

    def context(self) -> tuple[ContextMessage, ...]:
        return build_context(self._turns)


def build_context(turns: Iterable[Turn]) -> tuple[ContextMessage, ...]:
    """Ordered model context: every turn except sentinels, failed replies and
    the empty in-flight placeholder."""
    context: list[ContextMessage] = []
    for turn in turns:
        if turn.id in SENTINEL_IDS:
            continue
        if turn.status == TurnStatus.FAILED:
            continue
        if turn.status == TurnStatus.STREAMING and not turn.content:
            continue
        context.append(ContextMessage(role=turn.role, content=turn.content))
    return tuple(context)


def task_context_prompt(tasks: Iterable[Any]) -> str:
    """Prompt prefix listing the user's current tasks.

    Accepts dicts or objects exposing ``title`` and ``status``; entries without
    a title are skipped. Returns "" when nothing usable is left.
    """
    lines = []
    for task in tasks or ():
        if isinstance(task, dict):
            title = task.get("title")
            status = task.get("status")
        else:
            title = getattr(task, "title", None)
            status = getattr(task, "status", None)
        if not isinstance(title, str) or not title.strip():
            continue
        lines.append(f"- {title.strip()} (Status: {status or 'unknown'})")
    if not lines:
        return ""
    task_list = "\n".join(lines)
    return (
        "Considering my current tasks, which are:\n"
        f"{task_list}\n\n---\n\n"
        "I want to ask you the following: "
    )
