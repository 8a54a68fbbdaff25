import argparse
import sys

from PySide6.QtCore import QCoreApplication

from core.event_ledger import EventLedger
from core.llm_config import load_config
from core.paths import LOG_DIR
from core.state import EngineStatus
from engine.host import AssistantHost

APP_VERSION = "0.1.0"


class ConsoleSession:
    """Feeds prompts to the host one at a time and prints the streamed reply."""

    def __init__(self, app, host: AssistantHost, prompts: list[str], verbose: bool = False):
        self.app = app
        self.host = host
        self.prompts = list(prompts)
        self.verbose = verbose
        self.exit_code = 0
        self._printed: dict[str, int] = {}

        host.sig_state.connect(self._on_state)
        host.sig_progress.connect(self._on_progress)
        host.sig_turn_added.connect(self._on_turn)
        host.sig_turn_updated.connect(self._on_turn)
        if verbose:
            host.sig_trace.connect(lambda msg: print(msg, file=sys.stderr))

    def _on_progress(self, progress) -> None:
        print(f"[{progress.percent:3d}%] {progress.text}", file=sys.stderr)

    def _on_turn(self, turn) -> None:
        if turn.role != "assistant":
            return
        seen = self._printed.get(turn.id, 0)
        if seen == 0:
            sys.stdout.write("jelli> ")
        sys.stdout.write(turn.content[seen:])
        sys.stdout.flush()
        self._printed[turn.id] = len(turn.content)
        if turn.status != "streaming":
            sys.stdout.write("\n")

    def _on_state(self, state) -> None:
        if state.status == EngineStatus.ERROR:
            print(f"error: {state.message}", file=sys.stderr)
            self.exit_code = 1
            self.app.quit()
        elif state.status == EngineStatus.READY:
            if not self.prompts:
                self.app.quit()
                return
            prompt = self.prompts.pop(0)
            print(f"you> {prompt}")
            self.host.send_message(prompt)


def main(argv=None):
    parser = argparse.ArgumentParser(prog="jelli-assistant", description="Run the Jelli assistant headless.")
    parser.add_argument("prompts", nargs="*", help="messages to send, in order")
    parser.add_argument("--model", help="path to a GGUF model (overrides config)")
    parser.add_argument("--verbose", action="store_true", help="print traces to stderr")
    args = parser.parse_args(argv)

    app = QCoreApplication(sys.argv[:1])
    config = load_config()
    if args.model:
        config["gguf_path"] = args.model

    ledger = EventLedger(LOG_DIR / "events.db", app_version=APP_VERSION)
    host = AssistantHost(config)

    # ---- Event Ledger wiretap ----
    host.sig_state.connect(
        lambda s: ledger.record(
            "host", "state", "status_changed",
            payload={"status": s.status, "message": s.message},
            severity=3 if s.status == EngineStatus.ERROR else 1)
    )
    host.sig_conversation_reset.connect(
        lambda: ledger.record("host", "lifecycle", "conversation_reset")
    )
    host.sig_trace.connect(
        lambda msg: (
            ledger.record(
                "host", "error", "trace_warning",
                payload={"message": msg},
                severity=2)
            if any(k in msg.upper() for k in ("ERROR", "WARN", "REJECTED"))
            else None
        )
    )

    session = ConsoleSession(app, host, args.prompts, verbose=args.verbose)

    app.aboutToQuit.connect(host.shutdown)
    app.aboutToQuit.connect(ledger.shutdown)

    host.initialize()
    app.exec()
    return session.exit_code


if __name__ == "__main__":
    raise SystemExit(main())
