import threading
from collections.abc import Callable
from pathlib import Path

PromptLoader = Callable[[str], str]


def file_loader(templates_dir: Path) -> PromptLoader:
    def _load(task_type: str) -> str:
        return (templates_dir / f"{task_type}.system.md").read_text(encoding="utf-8")

    return _load


class PromptCache:
    """Read-through cache of system prompts keyed by task type.

    Loads happen outside the lock; two racing misses both load and the
    second write stores the same text.
    """

    def __init__(self, loader: PromptLoader):
        self._loader = loader
        self._prompts: dict[str, str] = {}
        self._lock = threading.Lock()

    def get(self, task_type: str) -> str:
        with self._lock:
            cached = self._prompts.get(task_type)
        if cached is not None:
            return cached

        prompt = self._loader(task_type)
        with self._lock:
            self._prompts[task_type] = prompt
        return prompt

    def clear(self) -> None:
        with self._lock:
            self._prompts.clear()
