# app/chat/client/frame_parser.py
"""
Incremental parser for the chat stream.

Bytes may arrive split anywhere, including inside a frame or a multi-byte
character. Frames are released only once their separator has been seen;
whatever is left over when the stream ends is parsed by ``close()``.
"""

import codecs
from typing import AsyncIterable, AsyncIterator, List, Optional, Union

from app.chat.entity.frame import (
    DEFAULT_EVENT,
    DONE_PAYLOAD,
    FRAME_SEPARATOR,
    Frame,
    FrameEvent,
)


def parse_frame(raw: str) -> Optional[Frame]:
    """Parse one separator-delimited block; blocks without data are skipped."""
    if not raw.strip():
        return None

    event = DEFAULT_EVENT
    data_lines: List[str] = []
    for line in raw.split("\n"):
        if line.startswith("event:"):
            event = line[len("event:"):].strip() or DEFAULT_EVENT
        elif line.startswith("data:"):
            value = line[len("data:"):]
            # one optional space follows the colon; the rest is payload
            data_lines.append(value[1:] if value.startswith(" ") else value)

    data = "\n".join(data_lines)
    if not data:
        return None
    return Frame(event=event, data=data)


class FrameParser:
    """
    Stateful frame parser for one stream.

    Use ``feed`` for incremental chunks, or ``feed_snapshot`` when the
    transport hands over the whole body received so far; in the latter case
    only text past what was already processed is parsed, so no frame is
    emitted twice.
    """

    def __init__(self):
        self._buffer = ""
        self._processed = 0
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._saw_terminal = False
        self._closed = False

    @property
    def saw_terminal(self) -> bool:
        return self._saw_terminal

    def feed(self, chunk: Union[bytes, str]) -> List[Frame]:
        self._ensure_open()
        text = self._decoder.decode(chunk) if isinstance(chunk, (bytes, bytearray)) else chunk
        self._processed += len(text)
        return self._consume(text)

    def feed_snapshot(self, snapshot: str) -> List[Frame]:
        self._ensure_open()
        if len(snapshot) <= self._processed:
            return []
        suffix = snapshot[self._processed:]
        self._processed = len(snapshot)
        return self._consume(suffix)

    def close(self) -> List[Frame]:
        """
        Flush the stream. Leftover text is parsed as a final frame, and a
        ``done`` frame is synthesized if no terminal frame was ever seen.
        """
        if self._closed:
            return []

        self._buffer += self._decoder.decode(b"", final=True)
        frames = []
        frame = parse_frame(self._normalized(self._buffer))
        if frame is not None:
            frames.append(self._track(frame))
        self._buffer = ""

        if not self._saw_terminal:
            frames.append(self._track(Frame(event=FrameEvent.DONE.value, data=DONE_PAYLOAD)))
        self._closed = True
        return frames

    def _ensure_open(self) -> None:
        if self._closed:
            raise RuntimeError("FrameParser is closed")

    @staticmethod
    def _normalized(text: str) -> str:
        return text.replace("\r\n", "\n") if "\r" in text else text

    def _track(self, frame: Frame) -> Frame:
        if frame.is_terminal:
            self._saw_terminal = True
        return frame

    def _consume(self, text: str) -> List[Frame]:
        # A CRLF split across chunks is joined here before normalizing
        self._buffer = self._normalized(self._buffer + text)
        frames = []
        while True:
            idx = self._buffer.find(FRAME_SEPARATOR)
            if idx == -1:
                break
            raw, self._buffer = self._buffer[:idx], self._buffer[idx + len(FRAME_SEPARATOR):]
            frame = parse_frame(raw)
            if frame is not None:
                frames.append(self._track(frame))
        return frames


async def iter_frames(chunks: AsyncIterable[Union[bytes, str]]) -> AsyncIterator[Frame]:
    """Frames from an async byte stream, ending with the flushed tail."""
    parser = FrameParser()
    async for chunk in chunks:
        for frame in parser.feed(chunk):
            yield frame
    for frame in parser.close():
        yield frame
