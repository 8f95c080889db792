from dataclasses import dataclass
from typing import Any, Protocol


class ProviderError(Exception):
    def __init__(
        self,
        status_code: int,
        code: str,
        message: str,
        payload: Any = None,
    ):
        super().__init__(message)
        self.status_code = status_code
        self.code = code
        self.message = message
        self.payload = payload


@dataclass(frozen=True)
class FlatText:
    """Response that exposes its text as a single ``output_text`` field."""

    text: str


@dataclass(frozen=True)
class BlockList:
    """Response whose text is spread across ``output[].content[]`` blocks."""

    fragments: tuple[str, ...]

    @property
    def text(self) -> str:
        return "\n".join(self.fragments).strip()


ResponseText = FlatText | BlockList


def parse_flat_text(payload: dict[str, Any]) -> FlatText | None:
    value = payload.get("output_text")
    if isinstance(value, str) and value:
        return FlatText(text=value)
    return None


def parse_block_list(payload: dict[str, Any]) -> BlockList:
    fragments: list[str] = []
    output = payload.get("output")
    for item in output if isinstance(output, list) else []:
        if not isinstance(item, dict):
            continue
        content = item.get("content")
        for block in content if isinstance(content, list) else []:
            if isinstance(block, dict) and isinstance(block.get("text"), str):
                fragments.append(block["text"])
    return BlockList(fragments=tuple(fragments))


def parse_response_text(payload: dict[str, Any]) -> ResponseText:
    return parse_flat_text(payload) or parse_block_list(payload)


@dataclass(frozen=True)
class UsageReport:
    prompt_tokens: int | None
    completion_tokens: int | None
    total_tokens: int | None

    @classmethod
    def from_payload(cls, payload: dict[str, Any]) -> "UsageReport":
        usage_raw = payload.get("usage")
        usage = usage_raw if isinstance(usage_raw, dict) else {}

        def _int(*keys: str) -> int | None:
            for key in keys:
                value = usage.get(key)
                if isinstance(value, int) and not isinstance(value, bool):
                    return value
            return None

        return cls(
            prompt_tokens=_int("input_tokens", "prompt_tokens"),
            completion_tokens=_int("output_tokens", "completion_tokens"),
            total_tokens=_int("total_tokens"),
        )

    def resolve(self, estimated_prompt_tokens: int) -> tuple[int, int | None, int]:
        """Fill gaps in reported usage: prompt falls back to the estimate."""
        prompt = (
            self.prompt_tokens if self.prompt_tokens is not None else estimated_prompt_tokens
        )
        total = (
            self.total_tokens
            if self.total_tokens is not None
            else prompt + (self.completion_tokens or 0)
        )
        return prompt, self.completion_tokens, total


class AIProvider(Protocol):
    async def create_response(self, body: dict[str, Any]) -> dict[str, Any]:
        """Call the completions endpoint and return the raw JSON payload."""

    async def create_embeddings(self, model: str, inputs: list[str]) -> dict[str, Any]:
        """Call the embeddings endpoint and return the raw JSON payload."""


class AIProviderFactory(Protocol):
    def __call__(self, api_key: str) -> AIProvider:
        """Build a provider client bound to one tenant's credential."""
