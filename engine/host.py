from __future__ import annotations

from typing import Callable

from PySide6.QtCore import QObject, QThread, QTimer, Qt, Signal, Slot

from core.llm_config import DEFAULT_CONFIG, load_config
from core.state import EngineState, EngineStatus, LoadProgress
from engine.backend import ModelBackend, backend_factory
from engine.history import Conversation, Turn
from engine.protocol import (
    GENERATION_FAILED,
    ChatChunkEvent,
    ChatCommand,
    ChatCompleteEvent,
    ChatErrorEvent,
    ContextMessage,
    Event,
    LoadCommand,
    LoadCompleteEvent,
    LoadErrorEvent,
    LoadProgressEvent,
    ResetCommand,
    ResetCompleteEvent,
)
from engine.worker import InferenceWorker

EVENT_DISPATCH = {
    LoadProgressEvent: lambda host, ev: host.on_load_progress(ev.text, ev.progress, ev.request_id),
    LoadCompleteEvent: lambda host, ev: host.on_load_complete(ev.request_id),
    LoadErrorEvent: lambda host, ev: host.on_load_error(ev.message, ev.request_id),
    ChatChunkEvent: lambda host, ev: host.on_chunk(ev.text, ev.request_id),
    ChatCompleteEvent: lambda host, ev: host.on_chat_complete(ev.request_id),
    ChatErrorEvent: lambda host, ev: host.on_chat_error(ev.message, ev.code, ev.request_id),
    ResetCompleteEvent: lambda host, ev: host.on_reset_complete(ev.request_id),
}


class AssistantHost(QObject):
    """Main-thread controller for the assistant worker.

    Sole writer of the conversation and the engine state. Talks to the worker
    only through sig_command / InferenceWorker.sig_event; every command gets a
    fresh request id and events for any other id are discarded.
    """

    sig_command = Signal(object)
    sig_state = Signal(object)
    sig_progress = Signal(object)
    sig_turn_added = Signal(object)
    sig_turn_updated = Signal(object)
    sig_conversation_reset = Signal()
    sig_trace = Signal(str)

    def __init__(
        self,
        config: dict | None = None,
        backend_factory_fn: Callable[[], ModelBackend] | None = None,
        threaded: bool = True,
    ):
        super().__init__()
        self.config = load_config() if config is None else {**DEFAULT_CONFIG, **config}
        self._backend_factory = backend_factory_fn or backend_factory(self.config)
        self._threaded = threaded
        self._worker: QObject | None = None
        self._thread: QThread | None = None
        self._closed = False

        self._state = EngineState()
        self._progress = LoadProgress()
        self._conversation = Conversation()

        self._next_request_id = 0
        self._active_load_id: int | None = None
        self._active_chat_id: int | None = None
        self._active_reset_id: int | None = None

        self._load_timer = QTimer(self)
        self._load_timer.setSingleShot(True)
        self._load_timer.timeout.connect(self._on_load_timeout)

    # ------------------------------------------------------------------
    # Read-only views
    # ------------------------------------------------------------------

    @property
    def state(self) -> EngineState:
        return self._state

    @property
    def progress(self) -> LoadProgress:
        return self._progress

    @property
    def conversation(self) -> tuple[Turn, ...]:
        return self._conversation.snapshot()

    @property
    def has_worker(self) -> bool:
        return self._worker is not None

    def context(self) -> tuple[ContextMessage, ...]:
        return self._conversation.context()

    # ------------------------------------------------------------------
    # Worker lifecycle
    # ------------------------------------------------------------------

    def _create_worker(self) -> QObject:
        return InferenceWorker(self._backend_factory, system_prompt=self.config.get("system_prompt", ""))

    def _attach_worker(self, worker: QObject) -> None:
        worker.sig_event.connect(self._on_worker_event)
        worker.sig_trace.connect(self._on_worker_trace)
        self.sig_command.connect(worker.handle_command)
        self._worker = worker

        if not self._threaded:
            return

        thread = QThread()
        thread.setObjectName("jelli-inference")
        worker.moveToThread(thread)
        # release() runs on the worker thread just before it exits.
        thread.finished.connect(worker.release, Qt.ConnectionType.DirectConnection)
        self._thread = thread
        thread.start()

    def _teardown_worker(self) -> None:
        worker = self._worker
        if worker is None:
            return
        self._worker = None

        for signal, slot in (
            (worker.sig_event, self._on_worker_event),
            (worker.sig_trace, self._on_worker_trace),
            (self.sig_command, worker.handle_command),
        ):
            try:
                signal.disconnect(slot)
            except (TypeError, RuntimeError):
                pass

        thread, self._thread = self._thread, None
        if thread is None:
            worker.release()
            return

        thread.requestInterruption()
        thread.quit()
        if not thread.wait(3000):
            self.sig_trace.emit("[HOST] WARNING: worker thread unresponsive, terminating")
            thread.terminate()
            thread.wait(1000)

    def _next_id(self) -> int:
        self._next_request_id += 1
        return self._next_request_id

    def _set_state(self, status: EngineStatus, message: str = "") -> None:
        self._state = self._state.transition(status, message)
        self.sig_trace.emit(f"[HOST] state -> {status.value}" + (f" ({message})" if message else ""))
        self.sig_state.emit(self._state)

    # ------------------------------------------------------------------
    # Public operations
    # ------------------------------------------------------------------

    def initialize(self) -> bool:
        """Create a fresh worker and start loading the model.

        Only valid on first mount (UNINITIALIZED) or as the retry after ERROR.
        """
        if self._closed:
            self.sig_trace.emit("ERROR: initialize after shutdown")
            return False
        if self._state.status not in (EngineStatus.UNINITIALIZED, EngineStatus.ERROR):
            self.sig_trace.emit(f"ERROR: initialize rejected, state={self._state.status.value}")
            return False

        self._teardown_worker()
        self._active_chat_id = None
        self._active_reset_id = None

        self._attach_worker(self._create_worker())
        self._set_state(EngineStatus.LOADING)
        self._progress = LoadProgress("Initializing…", 0.0)
        self.sig_progress.emit(self._progress)

        rid = self._next_id()
        self._active_load_id = rid
        timeout_ms = int(self.config.get("load_timeout_ms") or 0)
        if timeout_ms > 0:
            self._load_timer.start(timeout_ms)
        self.sig_command.emit(LoadCommand(request_id=rid))
        return True

    def send_message(self, text: str) -> bool:
        if not self._state.can_send or not self.has_worker:
            self.sig_trace.emit(f"ERROR: send rejected, state={self._state.status.value}")
            return False
        if self._active_reset_id is not None:
            self.sig_trace.emit("ERROR: send rejected, reset pending")
            return False
        if not isinstance(text, str) or not text.strip():
            self.sig_trace.emit("ERROR: send rejected, empty message")
            return False

        user_turn = self._conversation.append_user(text)
        assistant_turn = self._conversation.append_placeholder()
        history = self._conversation.context()
        self._set_state(EngineStatus.GENERATING)

        rid = self._next_id()
        self._active_chat_id = rid
        self.sig_turn_added.emit(user_turn.copy())
        self.sig_turn_added.emit(assistant_turn.copy())
        self.sig_trace.emit(f"[HOST] chat: request={rid}, history_len={len(history)}")
        self.sig_command.emit(ChatCommand(history=history, request_id=rid))
        return True

    def reset(self) -> bool:
        if not self.has_worker:
            self.sig_trace.emit("ERROR: reset rejected, no worker")
            return False
        if self._state.status == EngineStatus.GENERATING:
            self.sig_trace.emit("ERROR: reset rejected while generating")
            return False
        if self._active_reset_id is not None:
            self.sig_trace.emit("ERROR: reset rejected, reset already pending")
            return False

        rid = self._next_id()
        self._active_reset_id = rid
        self.sig_command.emit(ResetCommand(request_id=rid))
        return True

    def shutdown(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._load_timer.stop()
        self._teardown_worker()
        self._active_load_id = None
        self._active_chat_id = None
        self._active_reset_id = None

    # ------------------------------------------------------------------
    # Event handlers
    # ------------------------------------------------------------------

    @Slot(object)
    def _on_worker_event(self, event: Event) -> None:
        if self._closed:
            return
        handler = EVENT_DISPATCH.get(type(event))
        if handler is None:
            self.sig_trace.emit(f"[HOST] REJECTED unknown event: {event!r}")
            return
        handler(self, event)

    @Slot(str)
    def _on_worker_trace(self, message: str) -> None:
        self.sig_trace.emit(message)

    @staticmethod
    def _is_stale(active_id: int | None, request_id: int | None) -> bool:
        return request_id is not None and request_id != active_id

    def on_load_progress(self, text: str, progress: float, request_id: int | None = None) -> None:
        if self._is_stale(self._active_load_id, request_id):
            return
        if self._state.status != EngineStatus.LOADING:
            return
        self._progress = LoadProgress(text, progress)
        self.sig_progress.emit(self._progress)

    def on_load_complete(self, request_id: int | None = None) -> None:
        if self._is_stale(self._active_load_id, request_id):
            return
        if self._state.status != EngineStatus.LOADING:
            return
        self._load_timer.stop()
        self._active_load_id = None
        self._set_state(EngineStatus.READY)

        greeting = self._conversation.seed_greeting(self.config["greeting"])
        if greeting is not None:
            self.sig_turn_added.emit(greeting.copy())

    def on_load_error(self, message: str, request_id: int | None = None) -> None:
        if self._is_stale(self._active_load_id, request_id):
            return
        if self._state.status != EngineStatus.LOADING:
            return
        self._load_timer.stop()
        self._active_load_id = None
        self._set_state(EngineStatus.ERROR, message)

    @Slot()
    def _on_load_timeout(self) -> None:
        if self._state.status != EngineStatus.LOADING or self._active_load_id is None:
            return
        self.sig_trace.emit(f"ERROR: load request {self._active_load_id} timed out")
        self._active_load_id = None
        self._set_state(EngineStatus.ERROR, "Model load timed out.")

    def on_chunk(self, text: str, request_id: int | None = None) -> None:
        if self._is_stale(self._active_chat_id, request_id):
            return
        turn = self._conversation.append_chunk(text)
        if turn is None:
            self.sig_trace.emit("[HOST] chunk dropped: last turn is not an assistant turn")
            return
        self.sig_turn_updated.emit(turn.copy())

    def on_chat_complete(self, request_id: int | None = None) -> None:
        if self._is_stale(self._active_chat_id, request_id):
            return
        self._active_chat_id = None
        turn = self._conversation.finish_streaming()
        if turn is not None:
            self.sig_turn_updated.emit(turn.copy())
        if self._state.status == EngineStatus.GENERATING:
            self._set_state(EngineStatus.READY)

    def on_chat_error(self, message: str, code: str = GENERATION_FAILED, request_id: int | None = None) -> None:
        if self._is_stale(self._active_chat_id, request_id):
            self.sig_trace.emit(f"[HOST] stale chat error ignored: {message}")
            return
        self.sig_trace.emit(f"ERROR: generation failed [{code}]: {message}")
        if self._state.status != EngineStatus.GENERATING:
            return
        self._active_chat_id = None
        turn = self._conversation.fail_streaming(self.config["failure_text"])
        if turn is not None:
            self.sig_turn_updated.emit(turn.copy())
        self._set_state(EngineStatus.READY)

    def on_reset_complete(self, request_id: int | None = None) -> None:
        if self._is_stale(self._active_reset_id, request_id):
            return
        self._active_reset_id = None
        greeting = self._conversation.reset(self.config["reset_greeting"])
        self.sig_conversation_reset.emit()
        self.sig_turn_added.emit(greeting.copy())
