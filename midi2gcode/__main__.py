import argparse
import logging
import sys
from binascii import hexlify
from dataclasses import replace
from pathlib import Path

from midi2gcode import smf
from midi2gcode.gcode import GCodeGenerator, MachineConfig, Toolpath
from midi2gcode.notes import build_timeline
from midi2gcode.profiles import BUILTIN_PROFILES, find_profile, load_profiles

logger = logging.getLogger("midi2gcode")


def get_profiles(args):
    if args.profiles_file:
        return load_profiles(args.profiles_file)
    return list(BUILTIN_PROFILES)


def get_machine_config(args) -> MachineConfig:
    if args.profile:
        profile = find_profile(args.profile, get_profiles(args))
        logger.info(f"Using printer profile {profile.name}")
        config = profile.machine_config()
    else:
        config = MachineConfig()

    overrides = {
        "max_speed": args.max_speed,
        "steps_per_mm": args.steps_per_mm,
        "axis_bound": args.axis_bound,
        "acceleration": args.acceleration,
        "jerk": args.jerk,
    }
    return replace(config, **{k: v for k, v in overrides.items() if v is not None})


def get_timeline(args):
    midi = smf.File.open(args.file)
    logger.info(
        f"{args.file}: format {midi.format}, {len(midi.tracks)} tracks, "
        f"division {midi.division}"
    )
    return build_timeline(
        midi,
        integrate_tempo=args.integrate_tempo,
        min_velocity=args.min_velocity,
        transpose=args.transpose,
    )


def convert_file(args) -> None:
    config = get_machine_config(args)
    notes = get_timeline(args)
    gcode = GCodeGenerator(config).generate(notes)

    path = Toolpath.from_text(gcode)
    logger.info(
        f"{len(path.segments)} moves, {path.length:.1f}mm travelled, "
        f"up to X{path.max_x:.1f}, about {path.estimated_duration:.1f}s"
    )

    if args.output == "-":
        sys.stdout.write(gcode)
        return

    output = Path(args.output) if args.output else Path(args.file).with_suffix(".gcode")
    output.parent.mkdir(parents=True, exist_ok=True)
    output.write_text(gcode, encoding="utf-8")
    print(f"Converted {args.file} to {output}")


def print_notes(args) -> None:
    for note in get_timeline(args):
        print(
            f"{note.onset:10.4f}s {note.duration:9.4f}s "
            f"{note.name:>4} ({note.pitch:3d}) vel {note.velocity:3d}"
        )


def print_events(args) -> None:
    midi = smf.File.open(args.file)
    for tick, events in midi:
        parts = []
        for ev in events:
            if isinstance(ev, smf.MetaEvent):
                parts.append(f"FF{int(ev.meta_type):02X}:{hexlify(ev.data).decode().upper()}")
            else:
                parts.append(hexlify(ev.data).decode().upper())
        print(f"{tick:8d} {' '.join(parts)}")


def print_profiles(args) -> None:
    for profile in get_profiles(args):
        print(profile)


def main(argv=None) -> int:
    args = parser.parse_args(argv)

    if args.debug:
        logging.basicConfig(level=logging.DEBUG)
    elif args.info:
        logging.basicConfig(level=logging.INFO)

    if not hasattr(args, "func"):
        parser.print_usage()
        return 2

    try:
        args.func(args)
    except (OSError, smf.MIDIError, ValueError, KeyError) as err:
        logger.error(f"{type(err).__name__}: {err}")
        return 1
    return 0


parser = argparse.ArgumentParser(
    "midi2gcode",
    formatter_class=argparse.ArgumentDefaultsHelpFormatter,
)

parser.add_argument("-I", "--info", action="store_true", help="Enable info logging")
parser.add_argument("-D", "--debug", action="store_true", help="Enable debug logging")
subparsers = parser.add_subparsers()

timeline_options = argparse.ArgumentParser(add_help=False)
timeline_options.add_argument("file", help="MIDI file to read")
timeline_options.add_argument(
    "--integrate-tempo",
    action="store_true",
    help="Convert ticks across every tempo change of the file, "
    "instead of using the tempo in effect when each note ends",
)
timeline_options.add_argument(
    "--min-velocity",
    type=int,
    default=0,
    help="Drop notes softer than this (notes left open at the end of a track have velocity 0)",
)
timeline_options.add_argument(
    "--transpose",
    type=int,
    default=0,
    help="Semitones to shift every note by",
)

profile_options = argparse.ArgumentParser(add_help=False)
profile_options.add_argument(
    "--profiles-file",
    help="JSON file with additional printer profiles under 'customPrinters'",
)


parser_convert = subparsers.add_parser(
    "convert",
    help="Convert a MIDI file to G-code",
    parents=[timeline_options, profile_options],
    formatter_class=argparse.ArgumentDefaultsHelpFormatter,
)
parser_convert.set_defaults(func=convert_file)
parser_convert.add_argument(
    "-o",
    "--output",
    help="Output file, '-' for stdout (default: input file with a .gcode suffix)",
)
parser_convert.add_argument("-p", "--profile", help="Printer profile name")
parser_convert.add_argument("--max-speed", type=float, help="Maximum speed in mm/s")
parser_convert.add_argument("--steps-per-mm", type=float, help="X steps per mm")
parser_convert.add_argument("--axis-bound", type=float, help="X travel available in mm")
parser_convert.add_argument("--acceleration", type=float, help="Acceleration in mm/s²")
parser_convert.add_argument("--jerk", type=float, help="Jerk in mm/s")

parser_notes = subparsers.add_parser(
    "notes",
    help="Print the note timeline of a MIDI file",
    parents=[timeline_options],
    formatter_class=argparse.ArgumentDefaultsHelpFormatter,
)
parser_notes.set_defaults(func=print_notes)

parser_events = subparsers.add_parser("events", help="Print the events of a MIDI file")
parser_events.set_defaults(func=print_events)
parser_events.add_argument("file", help="MIDI file to read")

parser_profiles = subparsers.add_parser(
    "profiles", help="List printer profiles", parents=[profile_options]
)
parser_profiles.set_defaults(func=print_profiles)

if __name__ == "__main__":
    sys.exit(main())
