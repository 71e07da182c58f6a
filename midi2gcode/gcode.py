"""
Motion command generation.

Each note becomes a linear move of the X axis whose feed rate follows the
note frequency, so that the stepper motor sings it. Silences become dwells.
"""

from __future__ import annotations

import logging
import re
from abc import abstractmethod
from dataclasses import dataclass, field
from typing import Iterable, Iterator

from typing_extensions import Self

from .notes import Note, note_frequency

logger = logging.getLogger(__name__)

# Hz per mm/s of axis speed
FREQUENCY_PER_SPEED = 10.0

EPSILON = 1e-9


def fmt(value: float) -> str:
    return f"{value:.3f}".rstrip("0").rstrip(".")


@dataclass
class MachineConfig:
    max_speed: float = 200.0  # mm/s
    steps_per_mm: float = 80.0
    axis_bound: float = 200.0  # mm
    acceleration: float | None = None  # mm/s²
    jerk: float | None = None  # mm/s

    def __post_init__(self):
        for name in ("max_speed", "steps_per_mm", "axis_bound", "acceleration", "jerk"):
            value = getattr(self, name)
            if value is not None and value <= 0:
                raise ValueError(f"Expected a positive {name}, but got {value}")


@dataclass(frozen=True)
class Command:
    comment: str = field(default="", kw_only=True)

    @abstractmethod
    def code(self) -> str: ...

    def __str__(self) -> str:
        if self.comment:
            return f"{self.code()} ; {self.comment}"
        return self.code()


@dataclass(frozen=True)
class Raw(Command):
    text: str

    def code(self) -> str:
        return self.text


@dataclass(frozen=True)
class Dwell(Command):
    ms: int

    def code(self) -> str:
        return f"G4 P{self.ms}"


@dataclass(frozen=True)
class Move(Command):
    x: float
    feed: int
    rapid: bool = False

    def code(self) -> str:
        return f"{'G0' if self.rapid else 'G1'} X{fmt(self.x)} F{self.feed}"


@dataclass(frozen=True)
class Ramp:
    """Trapezoidal speed profile of one move"""

    entry_speed: float
    peak_speed: float
    accel_time: float
    cruise_time: float

    def __str__(self) -> str:
        return (
            f"ramp {fmt(self.entry_speed)}->{fmt(self.peak_speed)}mm/s "
            f"accel {fmt(self.accel_time)}s cruise {fmt(self.cruise_time)}s"
        )


class GCodeGenerator:
    def __init__(self, config: MachineConfig | None = None):
        self.config = config or MachineConfig()

    def speed(self, pitch: int) -> float:
        return min(self.config.max_speed, note_frequency(pitch) / FREQUENCY_PER_SPEED)

    @staticmethod
    def feed(speed: float) -> int:
        # F0 would stall the axis
        return max(1, int(speed * 60))

    def ramp(self, speed: float, duration: float) -> Ramp:
        """
        Accelerate from the entry speed for at most half of the note, cruise,
        then decelerate symmetrically. Neither the entry speed nor the speed
        gained may exceed what the acceleration allows in that half.
        """
        acceleration = self.config.acceleration
        if acceleration is None:
            return Ramp(speed, speed, 0.0, duration)

        reachable = acceleration * duration / 2
        entry = min(self.config.jerk or 0.0, speed, reachable)
        peak = min(speed, entry + reachable)
        accel_time = (peak - entry) / acceleration
        return Ramp(
            entry_speed=entry,
            peak_speed=peak,
            accel_time=accel_time,
            cruise_time=max(0.0, duration - 2 * accel_time),
        )

    def preamble(self) -> Iterator[Command]:
        cfg = self.config
        yield Raw("G21", comment="Set units to millimeters")
        yield Raw("G90", comment="Use absolute coordinates")
        yield Raw("M83", comment="Use relative distances for extrusion")
        yield Raw("M104 S0", comment="Turn off hotend")
        yield Raw("M140 S0", comment="Turn off heated bed")
        yield Raw(f"M92 X{fmt(cfg.steps_per_mm)}", comment="Set X steps per mm")
        if cfg.acceleration is not None:
            yield Raw(f"M204 S{fmt(cfg.acceleration)}", comment="Set acceleration")
        if cfg.jerk is not None:
            yield Raw(f"M205 X{fmt(cfg.jerk)}", comment="Set X jerk")
        yield Raw("G28", comment="Home all axes")

    def home(self) -> Move:
        return Move(0.0, self.feed(self.config.max_speed), rapid=True, comment="Return to start")

    def commands(self, notes: Iterable[Note]) -> Iterator[Command]:
        bound = self.config.axis_bound
        position = 0.0
        elapsed = 0.0

        yield from self.preamble()

        for note in notes:
            if note.onset > elapsed:
                gap = note.onset - elapsed
                yield Dwell(int(gap * 1000), comment=f"Pause for {gap:.3f} seconds")
                elapsed = note.onset

            speed = self.speed(note.pitch)
            feed = self.feed(speed)
            distance = speed * note.duration

            comment = f"Play note {note.pitch} at {note.frequency:.2f}Hz"
            if self.config.acceleration is not None:
                comment += f", {self.ramp(speed, note.duration)}"

            if position + distance > bound + EPSILON:
                position = 0.0
                yield self.home()

            if distance <= bound + EPSILON:
                position += distance
                yield Move(position, feed, comment=comment)
            else:
                logger.debug(f"Note {note.pitch} travels {distance:.1f}mm, folding it")
                for i, position in enumerate(self.fold(distance)):
                    yield Move(position, feed, comment=comment if i == 0 else "")

            elapsed = note.offset

        yield self.home()
        yield Raw("M84", comment="Disable motors")

    def fold(self, distance: float) -> Iterator[float]:
        """Turning points of a move from 0 that is longer than the axis"""
        bound = self.config.axis_bound
        forward = True
        while distance > EPSILON:
            step = min(distance, bound)
            yield step if forward else bound - step
            distance -= step
            forward = not forward

    def generate(self, notes: Iterable[Note]) -> str:
        return "".join(f"{cmd}\n" for cmd in self.commands(notes))


WORD_RE = re.compile(r"([A-Z])\s*([-+]?\d*\.?\d+)")


@dataclass(frozen=True)
class Segment:
    start: float
    end: float
    feed: float  # mm/min
    rapid: bool = False

    @property
    def length(self) -> float:
        return abs(self.end - self.start)

    @property
    def duration(self) -> float:
        return self.length * 60 / self.feed if self.feed else 0.0


@dataclass
class Toolpath:
    """X axis path of a command stream, as a previewer would read it back"""

    segments: list[Segment] = field(default_factory=list)
    dwell: float = 0.0  # seconds

    @classmethod
    def from_text(cls, text: str) -> Self:
        path = cls()
        x = 0.0
        feed = 0.0

        for line in text.splitlines():
            words = dict(WORD_RE.findall(line.split(";", 1)[0].upper()))
            if "G" not in words:
                continue

            g = int(float(words["G"]))
            if g in (0, 1):
                feed = float(words.get("F", feed))
                if "X" in words:
                    end = float(words["X"])
                    path.segments.append(Segment(x, end, feed, rapid=g == 0))
                    x = end
            elif g == 4:
                path.dwell += float(words.get("P", 0)) / 1000 + float(words.get("S", 0))
            elif g == 28:
                x = 0.0

        return path

    @property
    def length(self) -> float:
        return sum(s.length for s in self.segments)

    @property
    def max_x(self) -> float:
        return max((max(s.start, s.end) for s in self.segments), default=0.0)

    @property
    def estimated_duration(self) -> float:
        return self.dwell + sum(s.duration for s in self.segments)
