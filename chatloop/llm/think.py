from typing import List, Union

from chatloop.streaming.events import ReasoningFragment, TextFragment


class ThinkSplitter:
    """
    Incrementally splits streamed content into narrative and reasoning.

    Text between <think> and </think> is reasoning, everything else is
    narrative. Tags may be split across chunks, so a trailing fragment that
    could be the start of a tag is held back until the next feed() or flush().
    """

    OPEN = "<think>"
    CLOSE = "</think>"

    def __init__(self) -> None:
        self._buf: str = ""
        self._in_think: bool = False

    @property
    def in_think(self) -> bool:
        return self._in_think

    def feed(self, chunk: str) -> List[Union[TextFragment, ReasoningFragment]]:
        if not chunk:
            return []
        self._buf += chunk
        parts: List[Union[TextFragment, ReasoningFragment]] = []

        while self._buf:
            tag = self.CLOSE if self._in_think else self.OPEN
            idx = self._buf.find(tag)
            if idx != -1:
                self._emit(parts, self._buf[:idx])
                self._buf = self._buf[idx + len(tag):]
                self._in_think = not self._in_think
                continue

            held = self._partial_tag_length(self._buf, tag)
            self._emit(parts, self._buf[: len(self._buf) - held])
            self._buf = self._buf[len(self._buf) - held:]
            break

        return parts

    def flush(self) -> List[Union[TextFragment, ReasoningFragment]]:
        parts: List[Union[TextFragment, ReasoningFragment]] = []
        self._emit(parts, self._buf)
        self._buf = ""
        return parts

    def _emit(self, parts, text: str) -> None:
        if not text:
            return
        if self._in_think:
            parts.append(ReasoningFragment(text))
        else:
            parts.append(TextFragment(text))

    @staticmethod
    def _partial_tag_length(buf: str, tag: str) -> int:
        for size in range(min(len(buf), len(tag) - 1), 0, -1):
            if tag.startswith(buf[-size:]):
                return size
        return 0
