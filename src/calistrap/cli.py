#!/usr/bin/env python3
"""
calistrap CLI - camera calibration and reconstruction bootstrap.

Usage:
    calistrap calibrate -i scene.json -c checkers_dir -o out.json
    calistrap bootstrap -i scene.json -t tracks.json -p pairs_dir -o out.json
    calistrap --help
"""

from __future__ import annotations

import argparse
import dataclasses
import logging
import sys
from pathlib import Path

import numpy as np

from .config import LOG_LEVELS, create_default_config, load_config
from .dataio import load_board_detections, load_pairs, load_scene, load_tracks, save_scene
from .errors import CalibrationError
from .pipeline import run_bootstrap, run_calibration
from .types import PipelineConfig

logger = logging.getLogger(__name__)


def setup_logging(level: str = "info") -> None:
    """
    Configure the root logger from a verbosity name.

    "trace" maps to DEBUG, "fatal" to CRITICAL.
    """
    levels = {
        "fatal": logging.CRITICAL,
        "error": logging.ERROR,
        "warning": logging.WARNING,
        "info": logging.INFO,
        "debug": logging.DEBUG,
        "trace": logging.DEBUG,
    }
    logging.basicConfig(
        level=levels[level],
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        force=True,
    )


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="calistrap",
        description="Checkerboard calibration and two-view reconstruction bootstrap",
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    def add_common(sub: argparse.ArgumentParser) -> None:
        sub.add_argument("-i", "--input", type=Path, required=True, help="Input scene (.json)")
        sub.add_argument("-o", "--output", type=Path, required=True, help="Output scene (.json)")
        sub.add_argument("--config", type=Path, default=None, help="Pipeline config (.toml)")
        sub.add_argument("--seed", type=int, default=None, help="Random seed")
        sub.add_argument(
            "-v", "--verbose-level",
            choices=LOG_LEVELS,
            default=None,
            help="Log verbosity",
        )

    calibrate = subparsers.add_parser("calibrate", help="Calibrate intrinsics from checkerboards")
    add_common(calibrate)
    calibrate.add_argument(
        "-c", "--checkers", type=Path, required=True,
        help="Folder with checkers_<viewId>.json files",
    )
    calibrate.add_argument("--square-size", type=float, default=None, help="Board square size")
    calibrate.add_argument(
        "--inner-grids", action="store_true",
        help="Single image holding several boards",
    )
    calibrate.add_argument(
        "--simple-pinhole", action="store_true",
        help="Inner grids: square pixels, centered principal point, no distortion",
    )
    calibrate.add_argument(
        "--distance", type=float, default=None,
        help="Inner grids: camera to grid distance prior",
    )

    bootstrap = subparsers.add_parser("bootstrap", help="Seed a reconstruction from the best pair")
    add_common(bootstrap)
    bootstrap.add_argument("-t", "--tracks", type=Path, required=True, help="Tracks (.json)")
    bootstrap.add_argument(
        "-p", "--pairs", type=Path, required=True,
        help="Folder with pairs_<n>.json files",
    )
    bootstrap.add_argument("--workers", type=int, default=None, help="Pair scoring threads")

    return parser


def resolve_config(args: argparse.Namespace) -> PipelineConfig:
    """
    Load the config file (or defaults) and apply command-line overrides.
    """
    config = load_config(args.config) if args.config else create_default_config()

    if args.seed is not None:
        config = dataclasses.replace(config, seed=args.seed)
    if args.verbose_level is not None:
        config = dataclasses.replace(config, log_level=args.verbose_level)

    if args.command == "calibrate":
        overrides = {}
        if args.square_size is not None:
            overrides["square_size"] = args.square_size
        if args.inner_grids:
            overrides["mode"] = "inner_grids"
        if args.simple_pinhole:
            overrides["use_simple_pinhole"] = True
        if args.distance is not None:
            overrides["distance"] = args.distance
        if overrides:
            config = dataclasses.replace(
                config, calibration=dataclasses.replace(config.calibration, **overrides)
            )

    elif args.command == "bootstrap" and args.workers is not None:
        config = dataclasses.replace(
            config, bootstrap=dataclasses.replace(config.bootstrap, max_workers=args.workers)
        )

    return config


def run_calibrate(args: argparse.Namespace, config: PipelineConfig) -> None:
    scene = load_scene(args.input)
    detections = load_board_detections(args.checkers, sorted(scene.views))
    rng = np.random.default_rng(config.seed)

    calibrated = run_calibration(scene, detections, config, rng=rng)
    save_scene(calibrated, args.output)


def run_bootstrap_command(args: argparse.Namespace, config: PipelineConfig) -> None:
    scene = load_scene(args.input)
    tracks = load_tracks(args.tracks)
    pairs = load_pairs(args.pairs)

    result = run_bootstrap(scene, tracks, pairs, config)
    save_scene(result.scene, args.output)


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    try:
        config = resolve_config(args)
    except (OSError, ValueError) as e:
        setup_logging("error")
        logger.error("Invalid configuration: %s", e)
        return 1

    setup_logging(config.log_level)

    try:
        if args.command == "calibrate":
            run_calibrate(args, config)
        else:
            run_bootstrap_command(args, config)
    except CalibrationError as e:
        logger.error("%s failed: %s", args.command, e)
        return 1
    except (OSError, KeyError, ValueError) as e:
        logger.error("Invalid input: %s", e)
        return 1

    return 0


if __name__ == "__main__":
    sys.exit(main())
