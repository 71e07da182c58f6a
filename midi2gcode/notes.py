from __future__ import annotations

import logging
from bisect import bisect_right
from dataclasses import dataclass, replace
from itertools import chain
from operator import attrgetter
from typing import Iterable

from typing_extensions import Self

from . import smf

logger = logging.getLogger(__name__)

A4_PITCH = 69
A4_FREQUENCY = 440.0

NOTE_NAMES = ("C", "C#", "D", "D#", "E", "F", "F#", "G", "G#", "A", "A#", "B")


def note_frequency(pitch: float) -> float:
    """Equal temperament, MIDI pitch 69 is A4 at 440Hz"""
    return A4_FREQUENCY * 2 ** ((pitch - A4_PITCH) / 12)


def ticks_to_seconds(ticks: int, division: int, tempo: int = smf.DEFAULT_TEMPO) -> float:
    if division & 0x8000:
        # SMPTE timing does not depend on tempo
        return ticks / smf.smpte_ticks_per_second(division)
    return ticks * tempo / (division * 1_000_000)


@dataclass(frozen=True)
class Note:
    pitch: int
    velocity: int
    onset: float
    duration: float

    @property
    def offset(self) -> float:
        return self.onset + self.duration

    @property
    def frequency(self) -> float:
        return note_frequency(self.pitch)

    @property
    def name(self) -> str:
        return f"{NOTE_NAMES[self.pitch % 12]}{self.pitch // 12 - 1}"


class TempoMap:
    """
    Piecewise tick to seconds conversion over the tempo changes of a file.

    Tempo events of every track apply file-wide, which is how format 1 files
    use their conductor track.
    """

    def __init__(self, division: int, changes: Iterable[tuple[int, int]] = ()):
        self.division = division
        self._ticks = [0]
        self._seconds = [0.0]
        self._tempos = [smf.DEFAULT_TEMPO]
        for tick, tempo in sorted(changes, key=lambda change: change[0]):
            self.add(tick, tempo)

    @classmethod
    def from_file(cls, midi: smf.File) -> Self:
        changes = [
            (ev.tick, ev.tempo)
            for track in midi.tracks
            for ev in track.events
            if isinstance(ev, smf.MetaEvent) and ev.tempo is not None
        ]
        return cls(midi.division, changes)

    def add(self, tick: int, tempo: int) -> None:
        if tick < self._ticks[-1]:
            raise ValueError(
                f"Tempo change at tick {tick} comes before the last one "
                f"at tick {self._ticks[-1]}"
            )
        if tick == self._ticks[-1]:
            self._tempos[-1] = tempo
        else:
            self._seconds.append(self.seconds(tick))
            self._ticks.append(tick)
            self._tempos.append(tempo)

    def seconds(self, tick: int) -> float:
        i = bisect_right(self._ticks, tick) - 1
        return self._seconds[i] + ticks_to_seconds(
            tick - self._ticks[i], self.division, self._tempos[i]
        )


class NoteReconstructor:
    """
    Pairs the note on and note off events of one track into Notes.

    Open notes are keyed by pitch: a second note on for a pitch that is
    already sounding replaces the earlier onset, and a note off for a pitch
    that is not sounding is ignored.

    Without a tempo map, ticks are converted with the tempo in effect when
    the note closes, for both the onset and the duration.
    """

    def __init__(self, division: int, tempo_map: TempoMap | None = None):
        self.division = division
        self.tempo_map = tempo_map
        self.tempo = smf.DEFAULT_TEMPO
        # pitch -> (onset tick, on velocity)
        self.open_notes: dict[int, tuple[int, int]] = {}
        self.notes: list[Note] = []

    def feed(self, event: smf.Event) -> None:
        if isinstance(event, smf.MetaEvent):
            if (tempo := event.tempo) is not None:
                self.tempo = tempo
        elif isinstance(event, smf.MIDIEvent):
            if event.is_note_on:
                self.open(event.note, event.tick, event.velocity)
            elif event.is_note_off:
                self.close(event.note, event.tick)

    def open(self, pitch: int, tick: int, velocity: int) -> None:
        if pitch in self.open_notes:
            logger.debug(f"Note {pitch} retriggered at tick {tick}, dropping earlier onset")
        self.open_notes[pitch] = (tick, velocity)

    def close(self, pitch: int, tick: int) -> Note | None:
        try:
            start, velocity = self.open_notes.pop(pitch)
        except KeyError:
            logger.debug(f"Ignoring note off for {pitch} at tick {tick}, note is not on")
            return None
        return self._resolve(pitch, velocity, start, tick)

    def flush(self, end_tick: int) -> list[Note]:
        """Close every note still sounding at the end of the track"""
        flushed = [
            self._resolve(pitch, 0, start, end_tick)
            for pitch, (start, _) in self.open_notes.items()
        ]
        if flushed:
            logger.debug(f"Closed {len(flushed)} dangling notes at tick {end_tick}")
        self.open_notes.clear()
        return flushed

    def _resolve(self, pitch: int, velocity: int, start: int, end: int) -> Note:
        if self.tempo_map is not None:
            onset = self.tempo_map.seconds(start)
            duration = self.tempo_map.seconds(end) - onset
        else:
            onset = ticks_to_seconds(start, self.division, self.tempo)
            duration = ticks_to_seconds(end - start, self.division, self.tempo)

        note = Note(pitch=pitch, velocity=velocity, onset=onset, duration=duration)
        self.notes.append(note)
        return note


def track_notes(
    track: smf.Track, division: int, tempo_map: TempoMap | None = None
) -> list[Note]:
    rec = NoteReconstructor(division, tempo_map)
    for event in track.events:
        rec.feed(event)
    rec.flush(track.end_tick)
    return rec.notes


def merge_timeline(tracks: Iterable[Iterable[Note]]) -> list[Note]:
    # sorted() is stable: equal onsets keep their decode order
    return sorted(chain.from_iterable(tracks), key=attrgetter("onset"))


def build_timeline(
    midi: smf.File,
    integrate_tempo: bool = False,
    min_velocity: int = 0,
    transpose: int = 0,
) -> list[Note]:
    tempo_map = TempoMap.from_file(midi) if integrate_tempo else None

    per_track = []
    for i, track in enumerate(midi.tracks):
        notes = track_notes(track, midi.division, tempo_map)
        logger.debug(f"Track {i}: {len(notes)} notes")
        per_track.append(filter_notes(notes, min_velocity, transpose))

    timeline = merge_timeline(per_track)
    logger.info(f"Timeline has {len(timeline)} notes from {len(midi.tracks)} tracks")
    return timeline


def filter_notes(notes: Iterable[Note], min_velocity: int = 0, transpose: int = 0) -> list[Note]:
    res = []
    for note in notes:
        if note.velocity < min_velocity:
            continue
        if transpose:
            pitch = note.pitch + transpose
            if not (0 <= pitch <= 127):
                logger.debug(f"Dropping {note.name}, transposed out of range")
                continue
            note = replace(note, pitch=pitch)
        res.append(note)
    return res
