import pytest

from midi2gcode.gcode import (
    Command,
    Dwell,
    GCodeGenerator,
    MachineConfig,
    Move,
    Raw,
    Toolpath,
    fmt,
)
from midi2gcode.notes import Note

PREAMBLE = [
    "G21 ; Set units to millimeters",
    "G90 ; Use absolute coordinates",
    "M83 ; Use relative distances for extrusion",
    "M104 S0 ; Turn off hotend",
    "M140 S0 ; Turn off heated bed",
    "M92 X80 ; Set X steps per mm",
    "G28 ; Home all axes",
]

EPILOGUE = [
    "G0 X0 F12000 ; Return to start",
    "M84 ; Disable motors",
]


def a4(onset, duration=1.0):
    # 440Hz plays at 44mm/s
    return Note(pitch=69, velocity=100, onset=onset, duration=duration)


@pytest.mark.parametrize(
    "value,text",
    [
        pytest.param(0.0, "0", id="zero"),
        pytest.param(44.0, "44", id="integer"),
        pytest.param(12.5, "12.5", id="fraction"),
        pytest.param(0.12345, "0.123", id="rounded"),
    ],
)
def test_fmt(value, text):
    assert fmt(value) == text


@pytest.mark.parametrize(
    "command,line",
    [
        pytest.param(Dwell(250), "G4 P250", id="dwell"),
        pytest.param(Move(12.5, 600), "G1 X12.5 F600", id="move"),
        pytest.param(Move(0.0, 12000, rapid=True), "G0 X0 F12000", id="rapid"),
        pytest.param(Raw("M84", comment="Off"), "M84 ; Off", id="comment"),
    ],
)
def test_command_lines(command, line):
    assert str(command) == line


@pytest.mark.parametrize(
    "field",
    ["max_speed", "steps_per_mm", "axis_bound", "acceleration", "jerk"],
)
@pytest.mark.parametrize("value", [0, -1.5])
def test_invalid_config(field, value):
    with pytest.raises(ValueError):
        MachineConfig(**{field: value})


def test_speed_is_bounded_and_monotonic():
    gen = GCodeGenerator(MachineConfig(max_speed=120))
    speeds = [gen.speed(pitch) for pitch in range(128)]
    assert max(speeds) == 120
    assert all(a <= b for a, b in zip(speeds, speeds[1:]))
    assert gen.speed(69) == 44.0


def test_empty_timeline():
    assert GCodeGenerator().generate([]).splitlines() == PREAMBLE + EPILOGUE


def test_single_note():
    lines = GCodeGenerator().generate([a4(0.0)]).splitlines()
    assert lines == PREAMBLE + ["G1 X44 F2640 ; Play note 69 at 440.00Hz"] + EPILOGUE


def test_silence_becomes_dwell():
    lines = GCodeGenerator().generate([a4(1.5), a4(3.0, 0.5)]).splitlines()
    assert lines[len(PREAMBLE) :] == [
        "G4 P1500 ; Pause for 1.500 seconds",
        "G1 X44 F2640 ; Play note 69 at 440.00Hz",
        "G4 P500 ; Pause for 0.500 seconds",
        "G1 X66 F2640 ; Play note 69 at 440.00Hz",
    ] + EPILOGUE


def test_overlapping_notes_do_not_dwell():
    gen = GCodeGenerator()
    commands = list(gen.commands([a4(0.0, 2.0), a4(1.0, 1.0), a4(2.0, 0.5)]))
    assert not any(isinstance(cmd, Dwell) for cmd in commands)


def test_return_to_origin_at_bound():
    gen = GCodeGenerator(MachineConfig(axis_bound=100))
    moves = [
        cmd.code()
        for cmd in gen.commands([a4(0.0), a4(1.0), a4(2.0)])
        if isinstance(cmd, Move)
    ]
    assert moves == [
        "G1 X44 F2640",
        "G1 X88 F2640",
        "G0 X0 F12000",
        "G1 X44 F2640",
        "G0 X0 F12000",
    ]


def test_long_note_is_folded():
    gen = GCodeGenerator(MachineConfig(axis_bound=50))
    moves = [cmd.code() for cmd in gen.commands([a4(0.0, 3.0)]) if isinstance(cmd, Move)]
    assert moves == [
        "G0 X0 F12000",
        "G1 X50 F2640",
        "G1 X0 F2640",
        "G1 X32 F2640",
        "G0 X0 F12000",
    ]


def test_position_stays_within_bound():
    config = MachineConfig(max_speed=300, axis_bound=75)
    notes = [
        Note(pitch=40 + i % 50, velocity=100, onset=i * 0.3, duration=0.1 + (i % 7) * 0.4)
        for i in range(200)
    ]
    path = Toolpath.from_text(GCodeGenerator(config).generate(notes))
    assert path.max_x <= 75 + 1e-3
    assert all(seg.feed <= 300 * 60 for seg in path.segments)
    assert min(min(seg.start, seg.end) for seg in path.segments) >= 0


def test_travel_matches_notes():
    notes = [a4(0.0), a4(1.0, 0.5), Note(pitch=81, velocity=1, onset=2.0, duration=0.25)]
    path = Toolpath.from_text(GCodeGenerator().generate(notes))
    played = [seg for seg in path.segments if not seg.rapid]
    assert sum(seg.length for seg in played) == pytest.approx(44 + 22 + 88 * 0.25, abs=1e-2)
    assert sum(seg.duration for seg in played) == pytest.approx(1.75, rel=1e-3)
    assert path.dwell == pytest.approx(0.5)


def test_acceleration_preamble():
    lines = GCodeGenerator(MachineConfig(acceleration=1000, jerk=8)).generate([]).splitlines()
    assert "M204 S1000 ; Set acceleration" in lines
    assert "M205 X8 ; Set X jerk" in lines
    assert lines.index("M205 X8 ; Set X jerk") < lines.index("G28 ; Home all axes")


def test_ramp_annotation():
    gen = GCodeGenerator(MachineConfig(acceleration=1000, jerk=8))
    [move] = [cmd for cmd in gen.commands([a4(0.0)]) if isinstance(cmd, Move) and not cmd.rapid]
    assert move.comment == "Play note 69 at 440.00Hz, ramp 8->44mm/s accel 0.036s cruise 0.928s"


@pytest.mark.parametrize(
    "speed,duration,entry,peak",
    [
        pytest.param(44.0, 1.0, 8.0, 44.0, id="cruise"),
        pytest.param(44.0, 0.01, 5.0, 10.0, id="short-note"),
        pytest.param(4.0, 1.0, 4.0, 4.0, id="slower-than-jerk"),
        pytest.param(44.0, 0.0, 0.0, 0.0, id="zero-length"),
    ],
)
def test_ramp(speed, duration, entry, peak):
    gen = GCodeGenerator(MachineConfig(acceleration=1000, jerk=8))
    ramp = gen.ramp(speed, duration)
    assert ramp.entry_speed == pytest.approx(entry)
    assert ramp.peak_speed == pytest.approx(peak)
    assert ramp.entry_speed <= 1000 * duration / 2 + 1e-9
    assert ramp.peak_speed <= speed
    assert 2 * ramp.accel_time + ramp.cruise_time == pytest.approx(duration)


def test_ramp_without_jerk_starts_at_rest():
    ramp = GCodeGenerator(MachineConfig(acceleration=100)).ramp(20.0, 1.0)
    assert ramp.entry_speed == 0.0
    assert ramp.peak_speed == 20.0
    assert ramp.accel_time == pytest.approx(0.2)


def test_toolpath_from_text():
    path = Toolpath.from_text(
        "; header comment\n"
        "G28\n"
        "G1 X10 F600\n"
        "G4 P500\n"
        "g0 x0 f1200 ; back\n"
        "M84\n"
    )
    assert path.segments[0].length == 10
    assert path.segments[1].rapid
    assert path.length == 20
    assert path.max_x == 10
    assert path.dwell == 0.5
    assert path.estimated_duration == pytest.approx(2.0)


def test_toolpath_keeps_feed():
    path = Toolpath.from_text("G1 F600\nG1 X5\nG1 X10\n")
    assert [seg.feed for seg in path.segments] == [600, 600]
    assert path.estimated_duration == pytest.approx(1.0)


def test_feed_is_never_zero():
    gen = GCodeGenerator(MachineConfig(max_speed=0.01))
    assert gen.feed(0.01) == 1
    lines = gen.generate([a4(0.0)]).splitlines()
    assert "G1 X0.01 F1 ; Play note 69 at 440.00Hz" in lines
    assert "G0 X0 F1 ; Return to start" in lines


def test_command_code_is_abstract():
    assert getattr(Command.code, "__isabstractmethod__", False)
