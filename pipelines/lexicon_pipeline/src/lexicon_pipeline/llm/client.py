from __future__ import annotations

from typing import Protocol


class LLMClient(Protocol):
    def generate_response(self, text: str, timeout_s: float | None = None) -> str:
        """
        Return the model's raw text answer for `text`.

        Never raises for transport or provider failures: an empty string means no usable answer
        (timeout, HTTP error, no text candidate).
        """
        ...
