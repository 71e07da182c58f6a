"""
Standard MIDI File decoding: header, chunks and track events.

Only the parts needed to rebuild note timing are interpreted (note on/off and
tempo), everything else is decoded just far enough to stay in sync.
"""

from __future__ import annotations

import heapq
import logging
from dataclasses import dataclass, field
from enum import IntEnum
from itertools import groupby
from operator import attrgetter
from pathlib import Path
from typing import BinaryIO, Iterator

from typing_extensions import Self

logger = logging.getLogger(__name__)

# See https://ccrma.stanford.edu/~craig/14q/midifile/MidiFileFormat.html
# also https://www.blitter.com/~russtopia/MIDI/~jglatt/tech/midifile.htm

HEADER_MAGIC = b"MThd"
TRACK_MAGIC = b"MTrk"
HEADER_SIZE = 14

# Microseconds per quarter note, 120 BPM
DEFAULT_TEMPO = 500_000

MAX_VARLEN = 0x0FFFFFFF
MAX_VARLEN_BYTES = 4

NOTE_OFF = 0x80
NOTE_ON = 0x90

MIDI1_EVLEN = {
    0x80: 3,  # Note off
    0x90: 3,  # Note on
    0xA0: 3,  # Polyphonic key pressure
    0xB0: 3,  # Control Change
    0xC0: 2,  # Program Change
    0xD0: 2,  # Channel pressure
    0xE0: 3,  # Pitch bend
    0xF1: 2,  # MIDI Time code
    0xF2: 3,  # Song position pointer
    0xF3: 2,  # Song select
    0xF6: 1,  # Tune request
    0xF8: 1,  # Timing clock
    0xFA: 1,  # Start
    0xFB: 1,  # Continue
    0xFC: 1,  # Stop
    0xFE: 1,  # Active sensing
}


class MIDIError(Exception):
    """Base class of all errors raised while decoding a MIDI file"""


class MIDIFormatError(MIDIError, ValueError):
    """The buffer is not a Standard MIDI File"""


class TruncatedDataError(MIDIError, EOFError):
    """A read would go past the end of the buffer"""


class TruncatedChunkError(MIDIError):
    """A chunk declares more bytes than the buffer holds

    The bytes that were available are kept in `chunk`, so that the caller
    can decide to use them anyway.
    """

    def __init__(self, chunk: Chunk, declared: int):
        super().__init__(
            f"{chunk.tag!r} chunk declares {declared} bytes, "
            f"but only {len(chunk.data)} are available"
        )
        self.chunk = chunk
        self.declared = declared


def write_varlen(value: int) -> bytes:
    if not (0 <= value <= MAX_VARLEN):
        raise ValueError(f"Cannot encode {value} as a variable-length quantity")

    res = [value & 0x7F]
    value >>= 7
    while value:
        res.append(0x80 | (value & 0x7F))
        value >>= 7
    return bytes(reversed(res))


def smpte_ticks_per_second(division: int) -> int:
    # Upper byte is the negated frame rate (-24, -25, -29 or -30)
    frames_per_second = 256 - (division >> 8)
    ticks_per_frame = division & 0xFF
    return frames_per_second * ticks_per_frame


@dataclass
class ByteReader:
    """Bounds-checked big-endian cursor over a byte buffer"""

    data: bytes
    pos: int = 0

    @property
    def remaining(self) -> int:
        return max(0, len(self.data) - self.pos)

    @property
    def at_end(self) -> bool:
        return self.pos >= len(self.data)

    def _need(self, n: int) -> None:
        if n > self.remaining:
            raise TruncatedDataError(
                f"Expecting {n} bytes at offset {self.pos}, "
                f"but only {self.remaining} are left"
            )

    def read_bytes(self, n: int) -> bytes:
        self._need(n)
        res = bytes(self.data[self.pos : self.pos + n])
        self.pos += n
        return res

    def skip(self, n: int) -> None:
        self._need(n)
        self.pos += n

    def peek_u8(self) -> int:
        self._need(1)
        return self.data[self.pos]

    def read_u8(self) -> int:
        res = self.peek_u8()
        self.pos += 1
        return res

    def read_u16(self) -> int:
        return int.from_bytes(self.read_bytes(2), byteorder="big")

    def read_u32(self) -> int:
        return int.from_bytes(self.read_bytes(4), byteorder="big")

    def read_varlen(self) -> int:
        start = self.pos
        res = 0
        for _ in range(MAX_VARLEN_BYTES):
            byte = self.read_u8()
            res = (res << 7) | (byte & 0x7F)
            if byte & 0x80 == 0:
                return res
        raise MIDIFormatError(
            f"Variable-length quantity at offset {start} "
            f"is longer than {MAX_VARLEN_BYTES} bytes"
        )


@dataclass
class Event:
    tick: int
    delta_time: int
    data: bytes


class SysexEvent(Event):
    pass


class MIDIEvent(Event):
    """Channel voice or system common message, status byte included"""

    @property
    def status(self) -> int:
        return self.data[0]

    @property
    def kind(self) -> int:
        return self.status & 0xF0 if self.status < 0xF0 else self.status

    @property
    def channel(self) -> int | None:
        return self.status & 0x0F if self.status < 0xF0 else None

    @property
    def note(self) -> int:
        return self.data[1]

    @property
    def velocity(self) -> int:
        return self.data[2]

    @property
    def is_note_on(self) -> bool:
        return self.kind == NOTE_ON and self.velocity > 0

    @property
    def is_note_off(self) -> bool:
        # A note on with velocity 0 is the usual way of writing a note off
        return self.kind == NOTE_OFF or (self.kind == NOTE_ON and self.velocity == 0)


@dataclass
class MetaEvent(Event):
    class MetaType(IntEnum):
        SEQUENCE_NUMBER = 0x00
        TEXT_EVENT = 0x01
        COPYRIGHT_NOTICE = 0x02
        SEQUENCE_OR_TRACK_NAME = 0x03
        INSTRUMENT_NAME = 0x04
        LYRICS_TEXT = 0x05
        MARKER_TEXT = 0x06
        CUE_POINT = 0x07
        CHANNEL_PREFIX_ASSIGNMENT = 0x20
        END_OF_TRACK = 0x2F
        TEMPO_SETTING = 0x51
        SMPTE_OFFSET = 0x54
        TIME_SIGNATURE = 0x58
        KEY_SIGNATURE = 0x59
        SEQUENCER_SPECIFIC = 0x7F

    meta_type: MetaType | int

    @classmethod
    def parse_type(cls, value: int) -> MetaType | int:
        try:
            return cls.MetaType(value)
        except ValueError:
            return value

    @property
    def tempo(self) -> int | None:
        """Microseconds per quarter note, for a well-formed tempo event"""
        if self.meta_type == self.MetaType.TEMPO_SETTING and len(self.data) == 3:
            return int.from_bytes(self.data, byteorder="big")
        return None


@dataclass
class Track:
    events: list[Event] = field(default_factory=list)
    end_tick: int = 0
    truncated: bool = False

    @classmethod
    def decode(cls, reader: ByteReader) -> Self:
        track = cls()
        tick = 0
        running_status: int | None = None
        # Set when a status byte was found where data was expected: it starts
        # the next event, without a delta time of its own
        resync = False

        while not reader.at_end:
            start = reader.pos
            try:
                delta = 0 if resync else reader.read_varlen()
                resync = False
                status = reader.peek_u8()
                if status & 0x80:
                    reader.skip(1)
                elif running_status is not None:
                    # Data byte: repeat of the previous channel message
                    status = running_status
                else:
                    reader.skip(1)
                    tick += delta
                    logger.debug(
                        f"Dropping data byte {status:#04x} at offset {start}, "
                        "no running status in effect"
                    )
                    continue

                event: Event
                if status == 0xFF:
                    meta_type = reader.read_u8()
                    length = reader.read_varlen()
                    event = MetaEvent(
                        tick=tick + delta,
                        delta_time=delta,
                        data=reader.read_bytes(length),
                        meta_type=MetaEvent.parse_type(meta_type),
                    )
                elif status in {0xF0, 0xF7}:
                    length = reader.read_varlen()
                    event = SysexEvent(
                        tick=tick + delta,
                        delta_time=delta,
                        data=reader.read_bytes(length),
                    )
                else:
                    if status < 0xF0:
                        running_status = status
                    evlen = MIDI1_EVLEN.get(status & 0xF0 if status < 0xF0 else status, 1)
                    data = bytearray([status])
                    while len(data) < evlen and not reader.peek_u8() & 0x80:
                        data.append(reader.read_u8())
                    if len(data) < evlen:
                        logger.debug(
                            f"Dropping incomplete message {bytes(data).hex()} at offset {start}"
                        )
                        tick += delta
                        resync = True
                        continue
                    event = MIDIEvent(tick=tick + delta, delta_time=delta, data=bytes(data))

            except (TruncatedDataError, MIDIFormatError) as err:
                logger.warning(f"Track data cut short at offset {start}: {err}")
                track.truncated = True
                break

            tick += delta
            track.events.append(event)
            if (
                isinstance(event, MetaEvent)
                and event.meta_type == MetaEvent.MetaType.END_OF_TRACK
            ):
                break

        track.end_tick = tick
        return track


@dataclass
class Chunk:
    tag: bytes
    data: bytes

    @classmethod
    def read(cls, reader: ByteReader) -> Self:
        tag = reader.read_bytes(4)
        length = reader.read_u32()
        if length > reader.remaining:
            raise TruncatedChunkError(
                cls(tag=tag, data=reader.read_bytes(reader.remaining)),
                declared=length,
            )
        return cls(tag=tag, data=reader.read_bytes(length))


@dataclass
class File:
    format: int
    division: int
    tracks: list[Track]
    ntracks: int = 0

    @property
    def smpte(self) -> bool:
        return bool(self.division & 0x8000)

    @property
    def ticks_per_second(self) -> int | None:
        return smpte_ticks_per_second(self.division) if self.smpte else None

    @classmethod
    def open(cls, path: str | Path) -> Self:
        with Path(path).open("rb") as fd:
            return cls.from_io(fd)

    @classmethod
    def from_io(cls, io: BinaryIO) -> Self:
        return cls.from_bytes(io.read())

    @classmethod
    def from_bytes(cls, buf: bytes) -> Self:
        if len(buf) < HEADER_SIZE:
            raise MIDIFormatError(
                f"Expecting at least {HEADER_SIZE} bytes, but got only {len(buf)}"
            )

        reader = ByteReader(buf)
        magic = reader.read_bytes(4)
        if magic != HEADER_MAGIC:
            raise MIDIFormatError(f"Expected 'MThd' magic, got {magic!r}")

        hlen = reader.read_u32()
        if hlen < 6:
            raise MIDIFormatError(f"Expected header len of at least 6, got {hlen}")

        fmt, ntracks, division = reader.read_u16(), reader.read_u16(), reader.read_u16()
        if division == 0 or (division & 0x8000 and smpte_ticks_per_second(division) == 0):
            raise MIDIFormatError(f"Invalid time division {division:#06x}")
        reader.skip(min(hlen - 6, reader.remaining))

        tracks = []
        while reader.remaining >= 8:
            truncated = False
            try:
                chunk = Chunk.read(reader)
            except TruncatedChunkError as err:
                logger.warning(str(err))
                chunk, truncated = err.chunk, True

            if chunk.tag != TRACK_MAGIC:
                logger.debug(f"Skipping {chunk.tag!r} chunk ({len(chunk.data)} bytes)")
                continue

            track = Track.decode(ByteReader(chunk.data))
            track.truncated |= truncated
            tracks.append(track)
            logger.debug(
                f"Track {len(tracks) - 1}: {len(track.events)} events, "
                f"{track.end_tick} ticks"
            )

        if reader.remaining:
            logger.debug(f"Ignoring {reader.remaining} trailing bytes")
        if len(tracks) != ntracks:
            logger.warning(f"Header declares {ntracks} tracks, found {len(tracks)}")

        return cls(format=fmt, division=division, tracks=tracks, ntracks=ntracks)

    def __iter__(self) -> Iterator[tuple[int, list[Event]]]:
        """Events of all tracks grouped by absolute tick, in track order on ties"""
        merged = heapq.merge(*(t.events for t in self.tracks), key=attrgetter("tick"))
        for tick, events in groupby(merged, key=attrgetter("tick")):
            yield tick, list(events)
