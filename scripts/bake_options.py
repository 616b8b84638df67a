#!/usr/bin/env python3

from __future__ import annotations

import argparse
import math
from dataclasses import dataclass
from typing import Dict, List, Mapping, Optional, Tuple


SHAPE_BLENDS = ("power", "cubic")
# Worker stdout protocol: "BAKE " followed by one JSON object per line.
PROGRESS_PREFIX = "BAKE "

# Chamber geometry shared by validation and grain placement.
WALL_THICKNESS = 8.0
TOP_MARGIN = 12.0


@dataclass(frozen=True)
class BakeOption:
    name: str
    kind: str
    default: object
    minimum: Optional[float] = None
    maximum: Optional[float] = None
    help: str = ""
    choices: Tuple[str, ...] = ()

    @property
    def flag(self) -> str:
        return "--" + self.name.replace("_", "-")

    @property
    def label(self) -> str:
        return self.name.replace("_", " ").capitalize()


BAKE_OPTIONS: Dict[str, BakeOption] = {
    option.name: option
    for option in (
        BakeOption("duration", "float", 60.0, 0.5, 600.0, "Playback duration in seconds."),
        BakeOption("fps", "int", 30, 1, 120, "Requested sampling rate (frames per second)."),
        BakeOption("grains", "int", 3500, 1, 20000, "Total grain count."),
        BakeOption("fill", "float", 1.0, 0.01, 1.0, "Fraction of the grain count actually simulated."),
        BakeOption("neck", "float", 16.0, 1.0, 500.0, "Neck half-width."),
        BakeOption("half_height", "float", 330.0, 20.0, 2000.0, "Chamber half-height."),
        BakeOption("bulb", "float", 205.0, 2.0, 2000.0, "Bulb half-width at the caps."),
        BakeOption("grain_radius", "float", 2.6, 0.5, 50.0, "Grain radius."),
        BakeOption("shape", "choice", "power", help="Wall blend: power or cubic.", choices=SHAPE_BLENDS),
        BakeOption("power", "float", 2.0, 0.25, 8.0, "Exponent of the power-law blend."),
        BakeOption("cubic_c1", "float", 0.15, 0.0, 1.0, "First control value of the cubic blend."),
        BakeOption("cubic_c2", "float", 0.85, 0.0, 1.0, "Second control value of the cubic blend."),
        BakeOption("tilt", "float", 0.0, -30.0, 30.0, "Gravity tilt in degrees."),
        BakeOption("wall_step", "float", 8.0, 1.0, 100.0, "Wall slat height."),
        BakeOption("seed", "int", None, 0, 2**31 - 1, "Random seed (fresh entropy when omitted)."),
    )
}

OPTION_ALIASES: Dict[str, str] = {
    "H": "half_height",
    "halfHeight": "half_height",
    "r": "grain_radius",
    "grainRadius": "grain_radius",
    "wallStep": "wall_step",
    "blend": "shape",
    "c1": "cubic_c1",
    "c2": "cubic_c2",
}


def clamp_int(name: str, value: object, minimum: int, maximum: int) -> int:
    if isinstance(value, float) and value.is_integer():
        value = int(value)
    try:
        result = int(value)
    except (TypeError, ValueError) as exc:
        raise ValueError(f"{name} must be an integer.") from exc

    if result < minimum or result > maximum:
        raise ValueError(f"{name} must be between {minimum} and {maximum}.")
    return result


def clamp_float(name: str, value: object, minimum: float, maximum: float) -> float:
    try:
        result = float(value)
    except (TypeError, ValueError) as exc:
        raise ValueError(f"{name} must be a number.") from exc

    if not math.isfinite(result):
        raise ValueError(f"{name} must be a finite number.")
    if result < minimum or result > maximum:
        raise ValueError(f"{name} must be between {minimum} and {maximum}.")
    return result


def canonical_name(key: str) -> str:
    text = str(key).strip()
    if text in OPTION_ALIASES:
        return OPTION_ALIASES[text]
    text = text.lstrip("-").replace("-", "_")
    return OPTION_ALIASES.get(text, text)


def coerce_option(option: BakeOption, value: object) -> object:
    if option.kind == "int":
        return clamp_int(option.label, value, int(option.minimum), int(option.maximum))
    if option.kind == "float":
        return clamp_float(option.label, value, float(option.minimum), float(option.maximum))
    text = str(value).strip().lower()
    if text not in option.choices:
        choices = ", ".join(option.choices)
        raise ValueError(f"{option.label} must be one of: {choices}.")
    return text


def validate_resolved(options: Mapping[str, object]) -> None:
    if float(options["neck"]) >= float(options["bulb"]):
        raise ValueError("Neck must be narrower than the bulb.")
    if float(options["cubic_c1"]) > float(options["cubic_c2"]):
        raise ValueError("Cubic c1 must not exceed cubic c2.")
    radius = float(options["grain_radius"])
    if radius + WALL_THICKNESS / 2 >= float(options["bulb"]):
        raise ValueError("Grain radius is too large for the bulb.")
    # Grains start between the top cap clearance and the neck plane.
    top = -float(options["half_height"]) + max(TOP_MARGIN, radius + WALL_THICKNESS / 2)
    if top >= -radius:
        raise ValueError("Grain radius is too large for the chamber height.")


def resolve_bake_options(values: Mapping[str, object]) -> Dict[str, object]:
    resolved: Dict[str, object] = {}
    for name, option in BAKE_OPTIONS.items():
        raw = values.get(name)
        if raw is None or (isinstance(raw, str) and not raw.strip()):
            resolved[name] = option.default
        else:
            resolved[name] = coerce_option(option, raw)
    validate_resolved(resolved)
    return resolved


def parse_bake_payload(payload: Mapping[str, object]) -> Dict[str, object]:
    # Sparse on purpose: the worker fills every gap with its own defaults.
    options: Dict[str, object] = {}
    for key, raw in payload.items():
        if raw is None or (isinstance(raw, str) and not raw.strip()):
            continue
        name = canonical_name(key)
        option = BAKE_OPTIONS.get(name)
        if option is None:
            raise ValueError(f"Unknown bake option `{key}`.")
        options[name] = coerce_option(option, raw)
    resolve_bake_options(options)
    return options


def options_to_argv(options: Mapping[str, object]) -> List[str]:
    argv: List[str] = []
    for name, value in options.items():
        if value is None:
            continue
        argv.extend([BAKE_OPTIONS[name].flag, str(value)])
    return argv


def add_bake_arguments(parser: argparse.ArgumentParser) -> None:
    for option in BAKE_OPTIONS.values():
        kwargs: Dict[str, object] = {"dest": option.name, "default": None, "help": option.help}
        if option.kind == "int":
            kwargs["type"] = int
        elif option.kind == "float":
            kwargs["type"] = float
        else:
            kwargs["choices"] = option.choices
        parser.add_argument(option.flag, **kwargs)
