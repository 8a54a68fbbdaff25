from __future__ import annotations

from enum import Enum
from typing import Callable

from PySide6.QtCore import QObject, QThread, Signal, Slot

from engine.backend import ModelBackend, to_messages
from engine.protocol import (
    NOT_READY,
    ChatChunkEvent,
    ChatCommand,
    ChatCompleteEvent,
    ChatErrorEvent,
    Command,
    LoadCommand,
    LoadCompleteEvent,
    LoadErrorEvent,
    LoadProgressEvent,
    ResetCommand,
    ResetCompleteEvent,
)


class WorkerStatus(str, Enum):
    UNLOADED = "UNLOADED"
    LOADING = "LOADING"
    READY = "READY"
    GENERATING = "GENERATING"
    ERROR = "ERROR"


COMMAND_DISPATCH = {
    LoadCommand: "_on_load",
    ChatCommand: "_on_chat",
    ResetCommand: "_on_reset",
}


class InferenceWorker(QObject):
    """Owns the model and serves protocol commands one at a time.

    Lives on its own QThread; commands arrive through a queued connection, so
    a command sent while another is running waits in the thread's mailbox.
    Nothing raised by the backend escapes a slot: every failure becomes an
    error event.
    """

    sig_event = Signal(object)
    sig_trace = Signal(str)

    def __init__(self, backend_factory: Callable[[], ModelBackend], system_prompt: str = ""):
        super().__init__()
        self._backend_factory = backend_factory
        self._system_prompt = system_prompt
        self._backend: ModelBackend | None = None
        self.status = WorkerStatus.UNLOADED

    @Slot(object)
    def handle_command(self, command: Command) -> None:
        method_name = COMMAND_DISPATCH.get(type(command))
        if method_name is None:
            self.sig_trace.emit(f"[WORKER] REJECTED unknown command: {command!r}")
            return
        getattr(self, method_name)(command)

    def _interrupted(self) -> bool:
        return QThread.currentThread().isInterruptionRequested()

    def _on_load(self, command: LoadCommand) -> None:
        rid = command.request_id
        if self.status == WorkerStatus.READY:
            self.sig_trace.emit("[WORKER] load: already loaded")
            self.sig_event.emit(LoadCompleteEvent(request_id=rid))
            return

        self.status = WorkerStatus.LOADING
        self._close_backend()

        def report(text: str, progress: float) -> None:
            self.sig_event.emit(LoadProgressEvent(text=text, progress=progress, request_id=rid))

        try:
            backend = self._backend_factory()
            self._backend = backend
            backend.load(report)
        except Exception as e:
            self._close_backend()
            self.status = WorkerStatus.ERROR
            self.sig_trace.emit(f"ERROR: load failed: {e}")
            self.sig_event.emit(LoadErrorEvent(message=f"Load Failed: {e}", request_id=rid))
            return

        self.status = WorkerStatus.READY
        self.sig_trace.emit("[WORKER] model online")
        self.sig_event.emit(LoadCompleteEvent(request_id=rid))

    def _on_chat(self, command: ChatCommand) -> None:
        rid = command.request_id
        if self.status != WorkerStatus.READY or self._backend is None:
            self.sig_trace.emit(f"[WORKER] chat: REJECTED status={self.status.value}")
            self.sig_event.emit(
                ChatErrorEvent(message="Engine not initialized.", code=NOT_READY, request_id=rid)
            )
            return

        self.status = WorkerStatus.GENERATING
        self.sig_trace.emit(f"[WORKER] chat: msgs={len(command.history)}")
        chunks = 0
        try:
            for text in self._backend.stream(to_messages(command.history, self._system_prompt)):
                if self._interrupted():
                    self.sig_event.emit(
                        ChatErrorEvent(message="Generation interrupted.", code="interrupted", request_id=rid)
                    )
                    return
                if not text:
                    continue
                chunks += 1
                self.sig_event.emit(ChatChunkEvent(text=text, request_id=rid))
        except Exception as e:
            self.sig_trace.emit(f"ERROR: generation failed after {chunks} chunks: {e}")
            self.sig_event.emit(ChatErrorEvent(message=str(e), request_id=rid))
            return
        finally:
            self.status = WorkerStatus.READY

        self.sig_trace.emit(f"[WORKER] chat: done, chunks={chunks}")
        self.sig_event.emit(ChatCompleteEvent(request_id=rid))

    def _on_reset(self, command: ResetCommand) -> None:
        if self.status == WorkerStatus.READY and self._backend is not None:
            try:
                self._backend.reset()
            except Exception as e:
                # The next prompt is evaluated from scratch regardless.
                self.sig_trace.emit(f"[WORKER] reset: cache clear failed: {e}")
        self.sig_trace.emit("[WORKER] reset: conversation cache cleared")
        self.sig_event.emit(ResetCompleteEvent(request_id=command.request_id))

    def _close_backend(self) -> None:
        backend, self._backend = self._backend, None
        if backend is None:
            return
        try:
            backend.close()
        except Exception as e:
            self.sig_trace.emit(f"[WORKER] backend close failed: {e}")

    @Slot()
    def release(self) -> None:
        self._close_backend()
        self.status = WorkerStatus.UNLOADED
