from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Iterable

from typing_extensions import Self

from .gcode import MachineConfig

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PrinterProfile:
    name: str
    manufacturer: str
    bed_size_x: float  # mm
    bed_size_y: float  # mm
    max_speed: float  # mm/s
    acceleration: float  # mm/s²
    jerk: float  # mm/s
    steps_per_mm: float
    is_custom: bool = False

    @classmethod
    def from_json(cls, obj: dict[str, Any]) -> Self:
        try:
            return cls(
                name=obj["name"],
                manufacturer=obj.get("manufacturer", ""),
                bed_size_x=float(obj["bedSizeX"]),
                bed_size_y=float(obj["bedSizeY"]),
                max_speed=float(obj["maxSpeed"]),
                acceleration=float(obj["acceleration"]),
                jerk=float(obj["jerk"]),
                steps_per_mm=float(obj["stepsPerMm"]),
                is_custom=True,
            )
        except KeyError as err:
            raise ValueError(f"Printer profile {obj.get('name', '?')!r} misses {err}") from err

    def machine_config(self) -> MachineConfig:
        # Notes are played on the X axis only
        return MachineConfig(
            max_speed=self.max_speed,
            steps_per_mm=self.steps_per_mm,
            axis_bound=self.bed_size_x,
            acceleration=self.acceleration,
            jerk=self.jerk,
        )

    def __str__(self) -> str:
        custom = " [custom]" if self.is_custom else ""
        return (
            f"{self.name} ({self.manufacturer}){custom} "
            f"bed {self.bed_size_x:g}x{self.bed_size_y:g}mm, "
            f"{self.max_speed:g}mm/s, {self.acceleration:g}mm/s², "
            f"jerk {self.jerk:g}mm/s, {self.steps_per_mm:g} steps/mm"
        )


BUILTIN_PROFILES = (
    PrinterProfile("Prusa MK3S+", "Prusa Research", 250, 210, 200, 1000, 8, 100),
    PrinterProfile("Prusa Mini+", "Prusa Research", 180, 180, 180, 1000, 8, 100),
    PrinterProfile("Ender 3", "Creality", 220, 220, 180, 500, 8, 80),
    PrinterProfile("Ender 3 V2", "Creality", 220, 220, 200, 500, 8, 80),
    PrinterProfile("Ender 5", "Creality", 220, 220, 200, 500, 8, 80),
    PrinterProfile("CR-10", "Creality", 300, 300, 180, 500, 8, 80),
    PrinterProfile("Voron 2.4", "Voron Design", 350, 350, 300, 3000, 10, 80),
    PrinterProfile("Rat Rig V-Core 3", "Rat Rig", 300, 300, 300, 3000, 10, 80),
    PrinterProfile("Artillery Sidewinder X1", "Artillery", 300, 300, 150, 1000, 8, 80),
    PrinterProfile("Flashforge Creator Pro", "Flashforge", 225, 145, 150, 1000, 8, 88),
)


def load_profiles(path: str | Path) -> list[PrinterProfile]:
    """Built-in profiles followed by the custom ones found in a JSON file"""
    with Path(path).open(encoding="utf-8") as fd:
        doc = json.load(fd)
    if not isinstance(doc, dict):
        raise ValueError(f"Expected a JSON object in {path}")

    custom = [PrinterProfile.from_json(p) for p in doc.get("customPrinters", [])]
    logger.info(f"Loaded {len(custom)} custom printer profiles from {path}")
    return [*BUILTIN_PROFILES, *custom]


def find_profile(
    name: str, profiles: Iterable[PrinterProfile] = BUILTIN_PROFILES
) -> PrinterProfile:
    for profile in profiles:
        if profile.name.casefold() == name.casefold():
            return profile
    raise KeyError(f"Unknown printer profile {name!r}")
