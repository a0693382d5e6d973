"""Command line access to the peak search and the spot predictor.

Usage examples:

- Find peaks on a single-panel image stored as a NumPy array:
    python -m sfx_reduce peaks frame.npy

- Use another configuration directory and a lower threshold:
    python -m sfx_reduce peaks frame.npy --config ./my_config --threshold 300

- Predict spots for an unrotated cell (lengths in Angstrom, angles in degrees):
    python -m sfx_reduce predict --cell 79 79 38 90 90 90

The detector is read from ``detector.yaml`` and the processing parameters
from ``processing.yaml`` in the active configuration directory (see
:mod:`sfx_reduce.config.loader`).
"""

from __future__ import annotations

import argparse
import dataclasses
import logging
import sys
from pathlib import Path

import numpy as np

from sfx_reduce.config import get_config_bundle, load_settings
from sfx_reduce.debug_utils import configure_logging
from sfx_reduce.geometry.prediction import predict_to_res
from sfx_reduce.model.cell import UnitCell
from sfx_reduce.model.crystal import Crystal
from sfx_reduce.model.detector import Detector
from sfx_reduce.model.image import Image
from sfx_reduce.peaks.search import search_peaks

logger = logging.getLogger(__name__)

ANGSTROM = 1e-10


def _load_context(config_dir: str | None):
    bundle = get_config_bundle(Path(config_dir) if config_dir else None)
    settings = load_settings(bundle)
    detector = Detector.from_mapping(bundle.detector)
    return settings, detector


def _load_panels(path: str, detector: Detector) -> list[np.ndarray]:
    data = np.load(path)
    if data.ndim == 2:
        return [data]
    if data.ndim == 3 and data.shape[0] == len(detector):
        return [data[i] for i in range(data.shape[0])]
    raise SystemExit(
        f"{path}: expected a 2-D array or one slice per panel, got shape {data.shape}"
    )


def _cmd_peaks(args: argparse.Namespace) -> None:
    settings, detector = _load_context(args.config)
    overrides = {
        key: value
        for key, value in (
            ("threshold", args.threshold),
            ("min_snr", args.min_snr),
            ("min_gradient", args.min_gradient),
        )
        if value is not None
    }
    peak_settings = dataclasses.replace(settings.peak_search, **overrides)

    image = Image(
        detector=detector,
        data=_load_panels(args.image, detector),
        wavelength=args.wavelength or settings.beam.wavelength,
        bandwidth=settings.beam.bandwidth,
        filename=args.image,
    )
    features = search_peaks(image, peak_settings)
    print(features.to_dataframe().to_string(index=False))
    logger.info("%d peaks found in %s", len(features), args.image)


def _cmd_predict(args: argparse.Namespace) -> None:
    settings, detector = _load_context(args.config)
    a, b, c, al, be, ga = args.cell
    cell = UnitCell.from_parameters(a * ANGSTROM, b * ANGSTROM, c * ANGSTROM, al, be, ga)

    panels = [np.zeros((p.h, p.w)) for p in detector]
    image = Image(
        detector=detector,
        data=panels,
        wavelength=args.wavelength or settings.beam.wavelength,
        bandwidth=args.bandwidth if args.bandwidth is not None else settings.beam.bandwidth,
    )
    crystal = image.add_crystal(
        Crystal(cell=cell, profile_radius=settings.beam.profile_radius)
    )
    max_res = 1.0 / (args.max_res * ANGSTROM) if args.max_res else None
    reflections = predict_to_res(crystal, max_res, settings.prediction)

    table = reflections.to_dataframe()[
        ["h", "k", "l", "panel", "fs", "ss", "exerr", "partiality"]
    ]
    print(table.to_string(index=False))
    logger.info("%d reflections predicted", len(reflections))


def _build_parser() -> argparse.ArgumentParser:
    ap = argparse.ArgumentParser(prog="sfx-reduce", description="sfx_reduce command line tools")
    ap.add_argument("--log-level", default=None, help="Logging level (default INFO)")
    subparsers = ap.add_subparsers(dest="command")

    peaks_parser = subparsers.add_parser("peaks", help="Search an image for peaks")
    peaks_parser.add_argument("image", help="Image stored as a .npy array")
    peaks_parser.add_argument("--config", default=None, help="Configuration directory")
    peaks_parser.add_argument("--threshold", type=float, default=None, help="Seed threshold (ADU)")
    peaks_parser.add_argument("--min-snr", type=float, default=None, help="Minimum I/sigma(I)")
    peaks_parser.add_argument("--min-gradient", type=float, default=None, help="Minimum squared gradient")
    peaks_parser.add_argument("--wavelength", type=float, default=None, help="Wavelength (m)")
    peaks_parser.set_defaults(func=_cmd_peaks)

    predict_parser = subparsers.add_parser("predict", help="Predict spot positions for a cell")
    predict_parser.add_argument(
        "--cell",
        type=float,
        nargs=6,
        required=True,
        metavar=("A", "B", "C", "ALPHA", "BETA", "GAMMA"),
        help="Cell lengths (Angstrom) and angles (degrees)",
    )
    predict_parser.add_argument("--config", default=None, help="Configuration directory")
    predict_parser.add_argument("--wavelength", type=float, default=None, help="Wavelength (m)")
    predict_parser.add_argument("--bandwidth", type=float, default=None, help="Fractional bandwidth")
    predict_parser.add_argument("--max-res", type=float, default=None, help="Resolution limit (Angstrom)")
    predict_parser.set_defaults(func=_cmd_predict)

    return ap


def main(argv: list[str] | None = None) -> None:
    argv = list(sys.argv[1:] if argv is None else argv)
    ap = _build_parser()
    args = ap.parse_args(argv)

    configure_logging(args.log_level)

    handler = getattr(args, "func", None)
    if handler is None:
        ap.print_help()
        return

    handler(args)


if __name__ == "__main__":  # pragma: no cover
    main()
