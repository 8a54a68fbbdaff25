from __future__ import annotations

import os
from typing import Callable, Iterator, Protocol, Sequence

from engine.protocol import ContextMessage

ProgressReporter = Callable[[str, float], None]


class ModelBackend(Protocol):
    """Opaque text generator owned by the worker thread."""

    def load(self, report: ProgressReporter) -> None: ...

    def stream(self, messages: Sequence[dict]) -> Iterator[str]: ...

    def reset(self) -> None: ...

    def close(self) -> None: ...


def extract_delta(chunk: dict) -> str:
    choices = chunk.get("choices", []) if isinstance(chunk, dict) else []
    if not choices:
        return ""
    delta = choices[0].get("delta") or {}
    content = delta.get("content")
    return content if isinstance(content, str) else ""


class LlamaBackend:
    # Stop sequences to keep prompt scaffolding out of the stream
    _STOP_SEQUENCES = ["<|end|>", "<|im_end|>", "</s>"]

    # Minimum context size before giving up on fallback retries
    _MIN_CTX = 512

    def __init__(self, path, n_ctx=4096, n_gpu_layers=-1, temp=0.7, top_p=0.9, max_tokens=1024):
        self.path = path
        self.n_ctx = n_ctx
        self.n_gpu_layers = n_gpu_layers
        self.temp = temp
        self.top_p = top_p
        self.max_tokens = max_tokens
        self.llm = None

    def load(self, report: ProgressReporter) -> None:
        report("Checking model file", 0.05)
        if not self.path:
            raise RuntimeError("No GGUF model configured.")
        if not os.path.exists(self.path):
            raise RuntimeError(f"Model file not found: {self.path}")

        try:
            from llama_cpp import Llama
        except ImportError as exc:
            raise RuntimeError(
                "llama-cpp-python is not installed. Install it to use the local assistant."
            ) from exc

        n_ctx = self.n_ctx
        fraction = 0.2
        while n_ctx >= self._MIN_CTX:
            report(f"Initializing backend (n_ctx={n_ctx})", fraction)
            try:
                self.llm = Llama(
                    model_path=self.path,
                    n_ctx=n_ctx,
                    n_gpu_layers=self.n_gpu_layers,
                    verbose=False,
                )
                break
            except Exception as ctx_err:
                err_lower = str(ctx_err).lower()
                # Only retry on context-allocation failures
                if "llama_context" in err_lower or "kv cache" in err_lower or "memory" in err_lower:
                    n_ctx = n_ctx // 2
                    fraction = min(0.8, fraction + 0.1)
                    if n_ctx >= self._MIN_CTX:
                        continue
                raise

        if self.llm is None:
            raise RuntimeError(
                f"Failed to create llama_context: n_ctx={self.n_ctx} is too large. "
                f"Tried down to {self._MIN_CTX}. Reduce ctx_limit or free VRAM."
            )

        report("Warming up", 0.9)
        self.llm.reset()
        report("Ready", 1.0)

    def stream(self, messages: Sequence[dict]) -> Iterator[str]:
        if self.llm is None:
            raise RuntimeError("Model offline.")
        chunks = self.llm.create_chat_completion(
            messages=list(messages),
            temperature=self.temp,
            top_p=self.top_p,
            max_tokens=self.max_tokens,
            stream=True,
            stop=self._STOP_SEQUENCES,
        )
        for chunk in chunks:
            text = extract_delta(chunk)
            if text:
                yield text

    def reset(self) -> None:
        if self.llm is not None:
            self.llm.reset()

    def close(self) -> None:
        llm, self.llm = self.llm, None
        if llm is not None and hasattr(llm, "close"):
            llm.close()


def backend_factory(config: dict) -> Callable[[], ModelBackend]:
    def _create() -> ModelBackend:
        return LlamaBackend(
            config.get("gguf_path"),
            n_ctx=int(config.get("ctx_limit", 4096)),
            n_gpu_layers=int(config.get("n_gpu_layers", -1)),
            temp=float(config.get("temp", 0.7)),
            top_p=float(config.get("top_p", 0.9)),
            max_tokens=int(config.get("max_tokens", 1024)),
        )

    return _create


def to_messages(history: Sequence[ContextMessage], system_prompt: str = "") -> list[dict]:
    messages = []
    if system_prompt:
        messages.append({"role": "system", "content": system_prompt})
    messages.extend(m.to_dict() for m in history)
    return messages
